import logging
from typing import Any, Dict, List

from clipthread.app.models.capture_event import CaptureEvent
from clipthread.app.models.research import ResearchProgress
from clipthread.app.models.session import Session

logger = logging.getLogger(__name__)


class SessionObserver:
    """Push interface for session lifecycle notifications. Override what you need."""

    def session_created(self, session: Session, event: CaptureEvent, standalone: bool) -> None:
        pass

    def session_updated(self, session_id: str, session_type: str, item_count: int, activated: bool) -> None:
        pass

    def session_intent_analyzed(
        self, session_id: str, primary_intent: str, progress_status: str, themes: List[str]
    ) -> None:
        pass

    def session_research_started(self, session_id: str, session_type: str, item_count: int) -> None:
        pass

    def session_research_progress(self, session_id: str, progress: ResearchProgress) -> None:
        pass

    def session_research_completed(self, session_id: str, summary: Dict[str, Any]) -> None:
        pass

    def session_research_failed(self, session_id: str, reason: str) -> None:
        pass

    def sessions_cleared(self, count: int) -> None:
        pass


class NotificationHub(SessionObserver):
    """
    Fans every notification out to the subscribed observers. A failing
    observer is logged and skipped so it cannot break ingestion.
    """

    def __init__(self):
        self._observers: List[SessionObserver] = []

    def subscribe(self, observer: SessionObserver) -> None:
        if observer not in self._observers:
            self._observers.append(observer)

    def unsubscribe(self, observer: SessionObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def _fanout(self, method: str, *args) -> None:
        for observer in list(self._observers):
            try:
                getattr(observer, method)(*args)
            except Exception:
                logger.exception("Observer %s failed on %s", type(observer).__name__, method)

    def session_created(self, session, event, standalone):
        self._fanout("session_created", session, event, standalone)

    def session_updated(self, session_id, session_type, item_count, activated):
        self._fanout("session_updated", session_id, session_type, item_count, activated)

    def session_intent_analyzed(self, session_id, primary_intent, progress_status, themes):
        self._fanout("session_intent_analyzed", session_id, primary_intent, progress_status, themes)

    def session_research_started(self, session_id, session_type, item_count):
        self._fanout("session_research_started", session_id, session_type, item_count)

    def session_research_progress(self, session_id, progress):
        self._fanout("session_research_progress", session_id, progress)

    def session_research_completed(self, session_id, summary):
        self._fanout("session_research_completed", session_id, summary)

    def session_research_failed(self, session_id, reason):
        self._fanout("session_research_failed", session_id, reason)

    def sessions_cleared(self, count):
        self._fanout("sessions_cleared", count)
