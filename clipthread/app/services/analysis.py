import re
from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Sequence

from clipthread.app.models.capture_event import CaptureEvent
from clipthread.app.services.taxonomy import SessionTypeProfile, contains_keyword

CONTENT_PATTERNS = (
    ("url", re.compile(r"https?://\S+", re.IGNORECASE)),
    ("email", re.compile(r"\b[\w.+-]+@[\w-]+\.[\w.]+\b")),
    ("phone", re.compile(r"\(?\b\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b")),
    ("date", re.compile(r"\b\d{1,2}[/-]\d{1,2}[/-]\d{2,4}\b")),
    ("location", re.compile(r"\b\d+\s+\w+\s+(?:street|st|avenue|ave|road|rd|boulevard|blvd)\b", re.IGNORECASE)),
    ("business", re.compile(r"\b(?:inc|llc|ltd|corp|company|co)\b\.?", re.IGNORECASE)),
)

COMMON_WORDS = frozenset("""
the and for with this that from they have been were what when where which while
your about there their these those would could should into over under more most
some such than then them very just also only like here http https www com html
research session item items page click view more best guide review reviews
""".split())

RECENT_ITEMS_LIMIT = 10
KEYWORD_LIMIT = 10


def detect_content_type(content: str) -> str:
    for name, pattern in CONTENT_PATTERNS:
        if pattern.search(content):
            return name
    return "text"


def extract_keywords(contents: Sequence[str], limit: int = KEYWORD_LIMIT) -> List[str]:
    words = Counter()
    for content in contents:
        for word in re.findall(r"[a-zA-Z]{4,}", content.lower()):
            if word not in COMMON_WORDS:
                words[word] += 1
    # Stable order: frequency, then first appearance.
    return [w for w, _ in words.most_common(limit)]


def timespan(items: Sequence[CaptureEvent]) -> Dict[str, Any]:
    if not items:
        return {"start": None, "end": None, "minutes": 0}
    times = sorted(item.timestamp for item in items)
    return {
        "start": times[0].isoformat(),
        "end": times[-1].isoformat(),
        "minutes": round((times[-1] - times[0]).total_seconds() / 60, 1),
    }


def derive_progress_status(contents: Sequence[str]) -> str:
    count = len(contents)
    text = " ".join(contents)
    if count <= 2:
        return "just_started"
    if contains_keyword(text, ("book", "buy", "purchase", "reserve")):
        return "ready_to_decide"
    if contains_keyword(text, ("compare", "vs", "versus", "review")):
        return "comparing_options"
    if count <= 5:
        return "gathering_information"
    return "in_progress"


def build_progress_metadata(
    profile: SessionTypeProfile,
    items: Sequence[CaptureEvent],
    context_summary: Dict[str, Any],
    intent_analysis: Dict[str, Any],
    now: datetime,
):
    """
    Recomputes the per-member metadata blobs. Research results already folded
    into the blobs are carried over untouched.
    """
    contents = [item.content for item in items]
    keywords = extract_keywords(contents)

    summary = dict(context_summary)
    summary["session_progress"] = {"total_items": len(items), "last_updated": now.isoformat()}
    summary["all_items"] = [
        {
            "event_id": item.id,
            "preview": item.content[:100],
            "source_app": item.source_app,
            "timestamp": item.timestamp.isoformat(),
        }
        for item in items[-RECENT_ITEMS_LIMIT:]
    ]
    summary["content_keywords"] = keywords
    if "session_research" not in summary:
        topic = ", ".join(keywords[:3]) or "mixed content"
        summary["session_summary"] = f"{profile.label} with {len(items)} items covering {topic}"

    intent = dict(intent_analysis)
    intent["basic_analysis"] = {
        "content_types": dict(Counter(detect_content_type(c) for c in contents)),
        "source_applications": sorted({item.source_app for item in items if item.source_app}),
        "timespan": timespan(items),
    }
    intent["content_keywords"] = keywords
    return summary, intent
