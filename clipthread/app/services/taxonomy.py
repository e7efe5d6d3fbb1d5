import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

HOTEL_KEYWORDS = (
    "hotel", "hotels", "resort", "inn", "suite", "booking", "marriott", "hilton",
    "hyatt", "sheraton", "ritz", "four seasons", "shangri",
)
RESTAURANT_KEYWORDS = ("restaurant", "restaurants", "menu", "reservation", "dining", "cuisine", "michelin", "yelp")
TRAVEL_KEYWORDS = ("flight", "flights", "airline", "airport", "vacation", "trip", "travel", "destination")

HOTEL_BRANDS = (
    "Hilton", "Marriott", "Hyatt", "Sheraton", "Ritz", "Four Seasons", "Shangri",
    "Thompson", "W Hotel", "Westin", "Renaissance",
)
MAJOR_CITIES = (
    "Toronto", "Montreal", "Vancouver", "New York", "Los Angeles", "Chicago", "Boston",
    "Austin", "Miami", "Seattle", "Portland", "Denver", "Las Vegas", "London", "Paris",
    "Tokyo", "Sydney", "San Francisco", "Washington", "Atlanta", "Dallas", "Houston",
    "Philadelphia", "Phoenix",
)
CUISINE_TYPES = (
    "Italian", "French", "Japanese", "Chinese", "Mexican", "Thai", "Indian",
    "Mediterranean", "Steakhouse",
)

DEFAULT_GOALS = ("Complete comprehensive analysis", "Make informed decisions")
DEFAULT_NEXT_STEPS = ("Review findings", "Take appropriate action")


@lru_cache(maxsize=256)
def _pattern(words: Tuple[str, ...]) -> re.Pattern:
    alternatives = "|".join(re.escape(w) for w in sorted(words, key=len, reverse=True))
    return re.compile(rf"\b(?:{alternatives})\b", re.IGNORECASE)


def find_keyword(text: str, keywords: Sequence[str]) -> Optional[str]:
    """First keyword (in table order) that appears in text as a whole word."""
    if not text or not keywords:
        return None
    for keyword in keywords:
        if _pattern((keyword,)).search(text):
            return keyword
    return None


def find_all_keywords(text: str, keywords: Sequence[str]) -> List[str]:
    return [k for k in keywords if text and _pattern((k,)).search(text)]


def contains_keyword(text: str, keywords: Sequence[str]) -> bool:
    return bool(text and keywords and _pattern(tuple(keywords)).search(text))


def is_url(text: str) -> bool:
    return bool(re.match(r"^\s*https?://", text))


@dataclass(frozen=True)
class SessionTypeProfile:
    """Everything the engine knows about one kind of session."""
    session_type: str
    label: str
    keywords: Tuple[str, ...] = ()
    # Entity tables tried in order when building labels; the first table holds places.
    entity_tables: Tuple[Tuple[str, ...], ...] = ()
    title_noun: Optional[str] = None
    intents: Tuple[Tuple[Tuple[str, ...], str], ...] = ()
    default_intent: str = "Gathering information"
    goals: Tuple[str, ...] = DEFAULT_GOALS
    next_steps: Tuple[str, ...] = DEFAULT_NEXT_STEPS

    def primary_intent(self, text: str) -> str:
        for triggers, intent in self.intents:
            if contains_keyword(text, triggers):
                return intent
        return self.default_intent


DEFAULT_PROFILES = (
    SessionTypeProfile(
        session_type="hotel_research",
        label="Hotel Research",
        keywords=HOTEL_KEYWORDS,
        entity_tables=(MAJOR_CITIES, HOTEL_BRANDS),
        title_noun="Hotels",
        intents=(
            (("book", "reserve", "reservation"), "Planning to book hotel accommodations"),
            (("compare", "vs", "versus"), "Comparing hotel options"),
        ),
        default_intent="Researching hotel options",
        goals=("Select optimal accommodation", "Compare pricing and amenities"),
        next_steps=("Check availability and rates", "Make reservation"),
    ),
    SessionTypeProfile(
        session_type="restaurant_research",
        label="Restaurant Research",
        keywords=RESTAURANT_KEYWORDS,
        entity_tables=(MAJOR_CITIES, CUISINE_TYPES),
        title_noun="Restaurants",
        intents=(
            (("book", "reserve", "reservation"), "Planning restaurant reservations"),
            (("compare", "vs", "versus"), "Comparing dining options"),
        ),
        default_intent="Exploring dining options",
        goals=("Choose best dining option", "Evaluate cuisine and atmosphere"),
        next_steps=("Check availability", "Make reservation"),
    ),
    SessionTypeProfile(
        session_type="travel_research",
        label="Travel Research",
        keywords=TRAVEL_KEYWORDS,
        entity_tables=(MAJOR_CITIES,),
        title_noun="Trip",
        intents=((("book", "reserve", "ticket"), "Booking travel arrangements"),),
        default_intent="Planning travel itinerary",
        goals=("Plan comprehensive itinerary", "Optimize travel logistics"),
        next_steps=("Book accommodations", "Arrange transportation"),
    ),
    SessionTypeProfile(
        session_type="product_research",
        label="Product Research",
        intents=(
            (("buy", "purchase", "order"), "Preparing to purchase product"),
            (("compare", "vs", "versus", "review"), "Comparing product options"),
        ),
        default_intent="Researching product options",
        goals=("Make informed purchase decision", "Compare features and pricing"),
        next_steps=("Finalize product selection", "Proceed with purchase"),
    ),
    SessionTypeProfile(
        session_type="academic_research",
        label="Academic Research",
        default_intent="Conducting academic research",
        goals=("Gather comprehensive information", "Analyze research findings"),
        next_steps=("Synthesize findings", "Prepare analysis"),
    ),
    SessionTypeProfile(
        session_type="general_research",
        label="Research Session",
        default_intent="Gathering information",
    ),
    SessionTypeProfile(
        session_type="event_planning",
        label="Event Planning",
        entity_tables=(MAJOR_CITIES,),
        default_intent="Planning an event",
    ),
    SessionTypeProfile(
        session_type="project_research",
        label="Project Research",
        default_intent="Researching project requirements",
    ),
)


class SessionTaxonomy:
    """
    Strategy table keyed by session type. New types are added with register()
    without touching the evaluators that consult it.
    """

    def __init__(self, profiles: Iterable[SessionTypeProfile] = DEFAULT_PROFILES):
        self._profiles: Dict[str, SessionTypeProfile] = {}
        for profile in profiles:
            self.register(profile)

    def register(self, profile: SessionTypeProfile) -> None:
        self._profiles[profile.session_type] = profile

    def types(self) -> List[str]:
        return list(self._profiles)

    def get(self, session_type: str) -> SessionTypeProfile:
        profile = self._profiles.get(session_type)
        if profile is None:
            return SessionTypeProfile(
                session_type=session_type,
                label=session_type.replace("_", " ").title(),
            )
        return profile

    def match_keywords(self, content: str) -> Optional[str]:
        """Type of the first profile whose keyword table matches content."""
        for profile in self._profiles.values():
            if profile.keywords and contains_keyword(content, profile.keywords):
                return profile.session_type
        return None

    def matches_type(self, session_type: str, content: str) -> bool:
        return contains_keyword(content, self.get(session_type).keywords)

    def detect_fallback(self, content: str, source_app: str, browser_apps: Sequence[str]) -> Optional[str]:
        """
        Deterministic type detection used when the classifier cannot answer.
        Only browser content can start a session this way.
        """
        if not is_browser(source_app, browser_apps):
            return None
        detected = self.match_keywords(content)
        if detected:
            return detected
        text = content.strip()
        if 5 < len(text) < 500 and not is_url(text) and any(c.isupper() for c in text):
            return "general_research"
        return None


def is_browser(source_app: str, browser_apps: Sequence[str]) -> bool:
    app = (source_app or "").strip().lower()
    return any(app == b.lower() for b in browser_apps)
