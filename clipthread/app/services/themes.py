from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

from clipthread.app.services.taxonomy import MAJOR_CITIES, contains_keyword, find_all_keywords

EVENT_TYPES = (
    "wedding", "conference", "meeting", "vacation", "trip", "business trip", "honeymoon",
    "anniversary", "birthday", "graduation", "interview", "presentation",
)
PROJECT_TYPES = (
    "website", "app", "presentation", "report", "proposal", "research", "analysis",
    "study", "design", "development",
)
TEMPORAL_KEYWORDS = (
    "next week", "next month", "this weekend", "next weekend",
    "january", "february", "march", "april", "may", "june", "july", "august",
    "september", "october", "november", "december", "2024", "2025", "2026",
)

CONTENT_THEMES = (
    ("accommodation", ("hotel", "resort", "suite", "room", "stay")),
    ("dining", ("restaurant", "menu", "dining", "food", "bar")),
    ("travel", ("flight", "airport", "trip", "travel")),
    ("business", ("meeting", "conference", "business", "office")),
    ("luxury", ("luxury", "premium", "five star", "5 star", "rooftop")),
    ("budget", ("budget", "cheap", "affordable", "deal", "discount")),
)


@dataclass(frozen=True)
class ThemeMatch:
    kind: str  # location, event, temporal, project
    value: str
    label: str
    session_type: str
    confidence: float


class ThemeDetector:
    """
    Finds themes shared between a new piece of content and the existing members
    of a session. Checked in order: location, event, temporal, project.
    """

    def __init__(
        self,
        cities: Sequence[str] = MAJOR_CITIES,
        events: Sequence[str] = EVENT_TYPES,
        temporal: Sequence[str] = TEMPORAL_KEYWORDS,
        projects: Sequence[str] = PROJECT_TYPES,
    ):
        self.cities = cities
        self.events = events
        self.temporal = temporal
        self.projects = projects

    def _shared(self, content: str, session_text: str, table: Sequence[str]) -> Optional[str]:
        for keyword in table:
            if contains_keyword(content, (keyword,)) and contains_keyword(session_text, (keyword,)):
                return keyword
        return None

    def shared_themes(self, content: str, session_contents: Iterable[str]) -> List[ThemeMatch]:
        session_text = " ".join(session_contents)
        if not content or not session_text:
            return []

        matches = []
        city = self._shared(content, session_text, self.cities)
        if city:
            matches.append(ThemeMatch("location", city, f"{city} Planning", "travel_research", 0.8))
        event = self._shared(content, session_text, self.events)
        if event:
            matches.append(ThemeMatch("event", event, f"{event.title()} Planning", "event_planning", 0.75))
        timeframe = self._shared(content, session_text, self.temporal)
        if timeframe:
            matches.append(ThemeMatch("temporal", timeframe, f"{timeframe.title()} Planning", "general_research", 0.65))
        project = self._shared(content, session_text, self.projects)
        if project:
            matches.append(ThemeMatch("project", project, f"{project.title()} Project", "project_research", 0.7))
        return matches

    def detect(self, content: str, session_contents: Iterable[str]) -> Optional[ThemeMatch]:
        matches = self.shared_themes(content, session_contents)
        return matches[0] if matches else None

    def content_themes(self, contents: Iterable[str], limit: int = 3) -> List[str]:
        """Coarse themes for intent analysis: cities first, then activity categories."""
        text = " ".join(contents)
        themes = find_all_keywords(text, self.cities)
        for name, keywords in CONTENT_THEMES:
            if contains_keyword(text, keywords):
                themes.append(name)
        return themes[:limit]
