from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from clipthread.app.models.capture_event import CaptureEvent
from clipthread.app.models.session import Session, SessionMember, SessionStatus

CANDIDATE_STATUSES = (SessionStatus.DORMANT, SessionStatus.ACTIVE, SessionStatus.CONSOLIDATED)


class SessionStore(ABC):
    """
    Persistence contract for sessions, their members and the captured events.
    Implementations raise StoreError on backend failure and SessionNotFound
    when an update targets a missing session.
    """

    @abstractmethod
    def save_event(self, event: CaptureEvent) -> None: ...

    @abstractmethod
    def insert_session(self, session: Session, first_event_id: str) -> Session:
        """Stores a new session together with its first member (sequence 1)."""

    @abstractmethod
    def get_session(self, session_id: str) -> Optional[Session]: ...

    @abstractmethod
    def list_candidate_sessions(
        self, since: datetime, statuses: Sequence[SessionStatus] = CANDIDATE_STATUSES
    ) -> List[Session]:
        """Sessions with last_activity >= since, most recent first."""

    @abstractmethod
    def add_member(self, session_id: str, event_id: str, added_at: datetime) -> Tuple[SessionMember, bool]:
        """
        Appends event_id to the session with the next sequence number.
        Re-adding an existing pair returns the stored member and False.
        """

    @abstractmethod
    def touch_session(self, session_id: str, at: datetime) -> None:
        """Moves last_activity forward to `at`; never backwards."""

    @abstractmethod
    def update_session_status(self, session_id: str, status: SessionStatus) -> None: ...

    @abstractmethod
    def update_session_label(self, session_id: str, label: str, session_type: Optional[str] = None) -> None: ...

    @abstractmethod
    def update_session_summary(
        self,
        session_id: str,
        context_summary: Optional[Dict[str, Any]] = None,
        intent_analysis: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Overwrites whichever blobs are given, as a whole."""

    @abstractmethod
    def get_session_items(self, session_id: str) -> List[CaptureEvent]:
        """Member events in sequence order."""

    @abstractmethod
    def list_sessions(self, session_type: Optional[str] = None) -> List[Session]: ...

    @abstractmethod
    def search_sessions(self, query: str) -> List[Session]: ...

    @abstractmethod
    def clear_all_sessions(self) -> int: ...


def session_matches(session: Session, query: str) -> bool:
    needle = query.strip().lower()
    if not needle:
        return False
    haystack = [
        session.label,
        session.session_type,
        str(session.context_summary.get("session_summary", "")),
        " ".join(session.context_summary.get("content_keywords", [])),
    ]
    return any(needle in text.lower() for text in haystack)
