from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from clipthread.app.core.exceptions import SessionNotFound
from clipthread.app.db.store import CANDIDATE_STATUSES, SessionStore, session_matches
from clipthread.app.models.capture_event import CaptureEvent
from clipthread.app.models.session import Session, SessionMember, SessionStatus


class InMemorySessionStore(SessionStore):
    """Process-local store. Used by default and in tests."""

    def __init__(self):
        self._sessions: Dict[str, Session] = {}
        self._members: Dict[str, List[SessionMember]] = {}
        self._events: Dict[str, CaptureEvent] = {}

    def _require(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def _snapshot(self, session: Session) -> Session:
        copy = session.model_copy(deep=True)
        copy.member_order = [m.event_id for m in self._members.get(session.id, [])]
        return copy

    def save_event(self, event: CaptureEvent) -> None:
        self._events[event.id] = event

    def insert_session(self, session: Session, first_event_id: str) -> Session:
        stored = session.model_copy(deep=True)
        stored.member_order = []
        self._sessions[stored.id] = stored
        self._members[stored.id] = [SessionMember(
            session_id=stored.id, event_id=first_event_id, sequence_order=1, added_at=stored.start_time,
        )]
        return self._snapshot(stored)

    def get_session(self, session_id: str) -> Optional[Session]:
        session = self._sessions.get(session_id)
        return self._snapshot(session) if session else None

    def list_candidate_sessions(
        self, since: datetime, statuses: Sequence[SessionStatus] = CANDIDATE_STATUSES
    ) -> List[Session]:
        found = [
            s for s in self._sessions.values()
            if s.status in statuses and s.last_activity >= since
        ]
        found.sort(key=lambda s: s.last_activity, reverse=True)
        return [self._snapshot(s) for s in found]

    def add_member(self, session_id: str, event_id: str, added_at: datetime) -> Tuple[SessionMember, bool]:
        self._require(session_id)
        members = self._members[session_id]
        for member in members:
            if member.event_id == event_id:
                return member, False
        seq = members[-1].sequence_order + 1 if members else 1
        member = SessionMember(session_id=session_id, event_id=event_id, sequence_order=seq, added_at=added_at)
        members.append(member)
        return member, True

    def touch_session(self, session_id: str, at: datetime) -> None:
        session = self._require(session_id)
        if at > session.last_activity:
            session.last_activity = at

    def update_session_status(self, session_id: str, status: SessionStatus) -> None:
        self._require(session_id).status = status

    def update_session_label(self, session_id: str, label: str, session_type: Optional[str] = None) -> None:
        session = self._require(session_id)
        session.label = label
        if session_type:
            session.session_type = session_type

    def update_session_summary(
        self,
        session_id: str,
        context_summary: Optional[Dict[str, Any]] = None,
        intent_analysis: Optional[Dict[str, Any]] = None,
    ) -> None:
        session = self._require(session_id)
        if context_summary is not None:
            session.context_summary = dict(context_summary)
        if intent_analysis is not None:
            session.intent_analysis = dict(intent_analysis)

    def get_session_items(self, session_id: str) -> List[CaptureEvent]:
        self._require(session_id)
        return [
            self._events[m.event_id]
            for m in self._members[session_id]
            if m.event_id in self._events
        ]

    def list_sessions(self, session_type: Optional[str] = None) -> List[Session]:
        found = [
            s for s in self._sessions.values()
            if session_type is None or s.session_type == session_type
        ]
        found.sort(key=lambda s: s.last_activity, reverse=True)
        return [self._snapshot(s) for s in found]

    def search_sessions(self, query: str) -> List[Session]:
        return [s for s in self.list_sessions() if session_matches(s, query)]

    def clear_all_sessions(self) -> int:
        count = len(self._sessions)
        self._sessions.clear()
        self._members.clear()
        return count
