import re
from typing import Iterable, List, Optional

from clipthread.app.services.analysis import COMMON_WORDS
from clipthread.app.services.taxonomy import SessionTypeProfile, find_all_keywords, find_keyword

PROPER_NOUN = re.compile(r"\b([A-Z][a-z]{3,15})\b")
TITLE_PREFIX = re.compile(r"^(?:research(?:ing)?|find(?:ing)?|get(?:ting)?)\s+", re.IGNORECASE)
MAX_TITLE_LENGTH = 60
MAX_INTENT_TITLE_LENGTH = 50


def _proper_noun(content: str, profile: SessionTypeProfile) -> Optional[str]:
    skip = set(COMMON_WORDS) | {w.lower() for w in profile.label.split()}
    for match in PROPER_NOUN.finditer(content):
        word = match.group(1)
        if word.lower() not in skip:
            return word
    return None


def generate_label(profile: SessionTypeProfile, content: str) -> str:
    """
    Label for a new session: known entities first (places, then brands or
    cuisines), then the first proper noun, then the plain template.
    """
    for table in profile.entity_tables:
        entity = find_keyword(content, table)
        if entity:
            return f"{profile.label} - {entity}"
    noun = _proper_noun(content, profile)
    if noun:
        return f"{profile.label} - {noun}"
    return profile.label


def _truncate(title: str) -> str:
    title = title.strip()
    if len(title) <= MAX_TITLE_LENGTH:
        return title
    return title[: MAX_TITLE_LENGTH - 3].rstrip() + "..."


def _entity_title(profile: SessionTypeProfile, text: str) -> Optional[str]:
    if not profile.title_noun or not profile.entity_tables:
        return None
    places: List[str] = find_all_keywords(text, profile.entity_tables[0])
    qualifiers: List[str] = []
    for table in profile.entity_tables[1:]:
        qualifiers.extend(find_all_keywords(text, table))

    place = places[0] if places else None
    noun = profile.title_noun
    if len(qualifiers) >= 2:
        title = f"{qualifiers[0]} vs {qualifiers[1]}"
        return f"{title} - {place}" if place else title
    if qualifiers and place:
        return f"{qualifiers[0]} {noun} - {place}"
    if place:
        return f"{noun} in {place}"
    if qualifiers:
        return f"{qualifiers[0]} {noun}"
    return None


def focused_title(
    profile: SessionTypeProfile,
    texts: Iterable[str],
    primary_intent: str,
    objective: str,
    fallback: str,
) -> str:
    """Title written after consolidation, when the whole session is known."""
    title = _entity_title(profile, " ".join(texts))
    if title:
        return _truncate(title)
    intent = primary_intent.strip()
    if intent and len(intent) < MAX_INTENT_TITLE_LENGTH:
        return intent
    if objective.strip():
        stripped = TITLE_PREFIX.sub("", objective.strip())
        return _truncate(stripped[:1].upper() + stripped[1:])
    return _truncate(fallback)
