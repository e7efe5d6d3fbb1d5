import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence, Tuple

from clipthread.app.core.config import Settings, settings as default_settings
from clipthread.app.db.store import SessionStore
from clipthread.app.models.capture_event import CaptureEvent
from clipthread.app.models.research import MembershipResult
from clipthread.app.models.session import RetypeProposal, Session
from clipthread.app.services.pipeline import PipelineExecutor
from clipthread.app.services.taxonomy import SessionTaxonomy, is_url
from clipthread.app.services.themes import ThemeDetector, ThemeMatch
from clipthread.app.workflows.classification import SESSION_MEMBERSHIP

logger = logging.getLogger(__name__)

ACCEPT_CONFIDENCE = 0.6
CROSS_THEME_CONFIDENCE = 0.4
RETYPE_CONFIDENCE = 0.3


@dataclass(frozen=True)
class MembershipDecision:
    session: Optional[Session]
    rule: str  # keyword, classifier, cross_theme, thematic, fallback_general, fallback_theme, no_match
    confidence: float = 0.0
    reasoning: str = ""
    theme: Optional[ThemeMatch] = None
    retype: Optional[RetypeProposal] = None

    @property
    def matched(self) -> bool:
        return self.session is not None


NO_MATCH = MembershipDecision(session=None, rule="no_match")


class MembershipCache:
    """Bounded LRU of classifier answers keyed by (session, member count, content)."""

    def __init__(self, maxsize: int = 256):
        self.maxsize = maxsize
        self._entries: "OrderedDict[Tuple[str, int, str], MembershipResult]" = OrderedDict()

    @staticmethod
    def key(session: Session, content: str) -> Tuple[str, int, str]:
        return session.id, session.item_count, " ".join(content.lower().split())

    def get(self, key) -> Optional[MembershipResult]:
        result = self._entries.get(key)
        if result is not None:
            self._entries.move_to_end(key)
        return result

    def put(self, key, result: MembershipResult) -> None:
        self._entries[key] = result
        self._entries.move_to_end(key)
        while len(self._entries) > self.maxsize:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self):
        return len(self._entries)


class MembershipEvaluator:
    """
    Decides whether an event joins one of the candidate sessions.

    Candidates are tried in the order given; the first one that accepts wins.
    For each candidate: keyword table for its type, then the classifier, then
    shared themes. When the classifier cannot answer, keyword and theme
    heuristics decide alone.
    """

    def __init__(
        self,
        store: SessionStore,
        executor: PipelineExecutor,
        taxonomy: SessionTaxonomy,
        themes: ThemeDetector,
        config: Optional[Settings] = None,
        cache: Optional[MembershipCache] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.executor = executor
        self.taxonomy = taxonomy
        self.themes = themes
        self.settings = config or default_settings
        self.cache = cache or MembershipCache()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def evaluate(self, event: CaptureEvent, candidates: Sequence[Session]) -> MembershipDecision:
        for session in candidates:
            decision = await self._evaluate_candidate(event, session)
            if decision is not None:
                logger.info(
                    "Event %s joins session %s via %s (confidence %.2f)",
                    event.id, session.id, decision.rule, decision.confidence,
                )
                return decision
        return NO_MATCH

    async def _evaluate_candidate(self, event: CaptureEvent, session: Session) -> Optional[MembershipDecision]:
        if self.taxonomy.matches_type(session.session_type, event.content):
            return MembershipDecision(session, "keyword", 1.0, f"content matches {session.session_type} keywords")

        contents = [item.content for item in self.store.get_session_items(session.id)]
        result = await self._classify(event, session, contents)
        if result is None:
            return self._fallback(event, session, contents)

        if result.belongs and result.confidence > ACCEPT_CONFIDENCE:
            return MembershipDecision(session, "classifier", result.confidence, result.reasoning)

        theme = None
        if result.confidence > RETYPE_CONFIDENCE:
            theme = self.themes.detect(event.content, contents)
        if theme is None:
            return None

        if result.belongs and result.confidence > CROSS_THEME_CONFIDENCE:
            return MembershipDecision(
                session, "cross_theme", result.confidence, f"shared {theme.kind}: {theme.value}", theme=theme
            )
        return self._theme_decision(event, session, theme, "thematic", result.confidence)

    async def _classify(self, event: CaptureEvent, session: Session, contents: List[str]) -> Optional[MembershipResult]:
        key = self.cache.key(session, event.content)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        run = await self.executor.run(
            SESSION_MEMBERSHIP,
            {
                "content": event.content,
                "context": {"source_app": event.source_app, "window_title": event.window_title},
                "existing_session": {
                    "id": session.id,
                    "session_type": session.session_type,
                    "label": session.label,
                    "items": [{"content": c} for c in contents],
                },
            },
            timeout=self.settings.CLASSIFIER_TIMEOUT_SECONDS,
        )
        state = run.state
        if not run.succeeded or state.get("last_error") or state.get("belongs") is None:
            reason = run.error or (state.get("last_error") or {}).get("message")
            logger.warning("Membership classifier unavailable for session %s: %s", session.id, reason)
            return None

        result = MembershipResult(
            belongs=state["belongs"], confidence=state["confidence"], reasoning=state.get("reasoning", "")
        )
        self.cache.put(key, result)
        return result

    def _fallback(self, event: CaptureEvent, session: Session, contents: List[str]) -> Optional[MembershipDecision]:
        text = event.content.strip()
        if session.session_type == "general_research" and len(text) > 5 and not is_url(text):
            return MembershipDecision(session, "fallback_general", 0.5, "general research accepts free text")

        if self._clock() - session.last_activity <= self.settings.theme_window:
            theme = self.themes.detect(event.content, contents)
            if theme is not None:
                return self._theme_decision(event, session, theme, "fallback_theme", theme.confidence)
        return None

    @staticmethod
    def _theme_decision(
        event: CaptureEvent, session: Session, theme: ThemeMatch, rule: str, confidence: float
    ) -> MembershipDecision:
        retype = None
        if theme.session_type != session.session_type:
            retype = RetypeProposal(
                session_id=session.id,
                current_type=session.session_type,
                proposed_type=theme.session_type,
                proposed_label=theme.label,
                theme_kind=theme.kind,
                theme_value=theme.value,
                confidence=theme.confidence,
                triggering_event_id=event.id,
            )
        return MembershipDecision(
            session, rule, confidence, f"shared {theme.kind}: {theme.value}", theme=theme, retype=retype
        )
