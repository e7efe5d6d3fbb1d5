import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from arango import ArangoClient
from arango.exceptions import ArangoError

from clipthread.app.core.config import Settings, settings as default_settings
from clipthread.app.core.exceptions import SessionNotFound, StoreError
from clipthread.app.db.store import CANDIDATE_STATUSES, SessionStore
from clipthread.app.models.capture_event import CaptureEvent
from clipthread.app.models.session import Session, SessionMember, SessionStatus

logger = logging.getLogger(__name__)

SESSIONS = "Sessions"
MEMBERS = "SessionMembers"
EVENTS = "CaptureEvents"

# Projection shared by every query that returns sessions.
WITH_MEMBERS = """
        LET members = (
            FOR m IN SessionMembers
                FILTER m.session_id == s._key
                SORT m.sequence_order ASC
                RETURN m.event_id
        )
        RETURN MERGE(s, {member_order: members})
"""


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


class ArangoDB:
    def __init__(self, config: Optional[Settings] = None):
        self.settings = config or default_settings
        self.client = ArangoClient(hosts=self.settings.ARANGO_HOST)
        self.db = None

    def initialize(self):
        try:
            sys_db = self.client.db(
                "_system", username=self.settings.ARANGO_USERNAME, password=self.settings.ARANGO_PASSWORD
            )
            if not sys_db.has_database(self.settings.ARANGO_DB_NAME):
                sys_db.create_database(self.settings.ARANGO_DB_NAME)

            self.db = self.client.db(
                self.settings.ARANGO_DB_NAME,
                username=self.settings.ARANGO_USERNAME,
                password=self.settings.ARANGO_PASSWORD,
            )

            for col in (SESSIONS, MEMBERS, EVENTS):
                if not self.db.has_collection(col):
                    self.db.create_collection(col)

            # One row per (session, event); makes add_member idempotent under retries.
            self.db.collection(MEMBERS).add_persistent_index(fields=["session_id", "event_id"], unique=True)
            self.db.collection(SESSIONS).add_persistent_index(fields=["last_activity"])

            logger.info("Connected to ArangoDB: %s", self.settings.ARANGO_DB_NAME)
            return self.db
        except ArangoError as e:
            logger.error("Failed to connect to ArangoDB: %s", e)
            raise StoreError("ArangoDB initialization failed", {"error": str(e)}) from e

    def get_db(self):
        if not self.db:
            self.initialize()
        return self.db


class ArangoSessionStore(SessionStore):
    def __init__(self, database=None):
        # Accepts a python-arango StandardDatabase (or a mock in tests).
        self.db = database

    @classmethod
    def connect(cls, config: Optional[Settings] = None) -> "ArangoSessionStore":
        return cls(ArangoDB(config).get_db())

    def _query(self, query: str, bind_vars: Dict[str, Any]) -> List[Any]:
        try:
            cursor = self.db.aql.execute(query, bind_vars=bind_vars)
            return list(cursor)
        except ArangoError as e:
            logger.error("AQL query failed: %s", e)
            raise StoreError("AQL query failed", {"error": str(e)}) from e

    def _update(self, session_id: str, patch: Dict[str, Any]) -> None:
        query = """
        FOR s IN Sessions
            FILTER s._key == @session_id
            UPDATE s WITH @patch IN Sessions OPTIONS { mergeObjects: false }
            RETURN NEW._key
        """
        if not self._query(query, {"session_id": session_id, "patch": patch}):
            raise SessionNotFound(session_id)

    @staticmethod
    def _to_session(doc: Dict[str, Any]) -> Session:
        doc = dict(doc)
        doc["id"] = doc.pop("_key")
        return Session.model_validate(doc)

    def save_event(self, event: CaptureEvent) -> None:
        doc = event.model_dump(mode="json")
        doc["_key"] = event.id
        try:
            self.db.collection(EVENTS).insert(doc, overwrite=True)
        except ArangoError as e:
            raise StoreError("Failed to save capture event", {"event_id": event.id, "error": str(e)}) from e

    def insert_session(self, session: Session, first_event_id: str) -> Session:
        doc = session.model_dump(mode="json", exclude={"id", "member_order"})
        doc["_key"] = session.id
        doc["start_time"] = _iso(session.start_time)
        doc["last_activity"] = _iso(session.last_activity)
        member = {
            "session_id": session.id,
            "event_id": first_event_id,
            "sequence_order": 1,
            "added_at": doc["start_time"],
        }
        # Single query so a session never exists without its first member.
        query = """
        LET created = (INSERT @session INTO Sessions RETURN NEW._key)
        INSERT @member INTO SessionMembers
        RETURN created[0]
        """
        self._query(query, {"session": doc, "member": member})
        return session.model_copy(update={"member_order": [first_event_id]})

    def get_session(self, session_id: str) -> Optional[Session]:
        query = "FOR s IN Sessions FILTER s._key == @session_id" + WITH_MEMBERS
        rows = self._query(query, {"session_id": session_id})
        return self._to_session(rows[0]) if rows else None

    def list_candidate_sessions(
        self, since: datetime, statuses: Sequence[SessionStatus] = CANDIDATE_STATUSES
    ) -> List[Session]:
        query = """
        FOR s IN Sessions
            FILTER s.status IN @statuses AND s.last_activity >= @since
            SORT s.last_activity DESC
        """ + WITH_MEMBERS
        rows = self._query(query, {"statuses": [s.value for s in statuses], "since": _iso(since)})
        return [self._to_session(r) for r in rows]

    def add_member(self, session_id: str, event_id: str, added_at: datetime) -> Tuple[SessionMember, bool]:
        if self.get_session(session_id) is None:
            raise SessionNotFound(session_id)
        query = """
        LET existing = FIRST(
            FOR m IN SessionMembers
                FILTER m.session_id == @session_id AND m.event_id == @event_id
                RETURN m
        )
        LET next_seq = existing ? existing.sequence_order : (MAX(
            FOR m IN SessionMembers FILTER m.session_id == @session_id RETURN m.sequence_order
        ) || 0) + 1
        UPSERT { session_id: @session_id, event_id: @event_id }
            INSERT { session_id: @session_id, event_id: @event_id, sequence_order: next_seq, added_at: @added_at }
            UPDATE {}
            IN SessionMembers
        RETURN { member: NEW, created: OLD == null }
        """
        rows = self._query(query, {"session_id": session_id, "event_id": event_id, "added_at": _iso(added_at)})
        row = rows[0]
        return SessionMember.model_validate(row["member"]), bool(row["created"])

    def touch_session(self, session_id: str, at: datetime) -> None:
        query = """
        FOR s IN Sessions
            FILTER s._key == @session_id
            UPDATE s WITH { last_activity: s.last_activity < @at ? @at : s.last_activity } IN Sessions
            RETURN NEW._key
        """
        if not self._query(query, {"session_id": session_id, "at": _iso(at)}):
            raise SessionNotFound(session_id)

    def update_session_status(self, session_id: str, status: SessionStatus) -> None:
        self._update(session_id, {"status": status.value})

    def update_session_label(self, session_id: str, label: str, session_type: Optional[str] = None) -> None:
        patch = {"label": label}
        if session_type:
            patch["session_type"] = session_type
        self._update(session_id, patch)

    def update_session_summary(
        self,
        session_id: str,
        context_summary: Optional[Dict[str, Any]] = None,
        intent_analysis: Optional[Dict[str, Any]] = None,
    ) -> None:
        patch = {}
        if context_summary is not None:
            patch["context_summary"] = context_summary
        if intent_analysis is not None:
            patch["intent_analysis"] = intent_analysis
        if patch:
            self._update(session_id, patch)

    def get_session_items(self, session_id: str) -> List[CaptureEvent]:
        if self.get_session(session_id) is None:
            raise SessionNotFound(session_id)
        query = """
        FOR m IN SessionMembers
            FILTER m.session_id == @session_id
            SORT m.sequence_order ASC
            LET e = DOCUMENT("CaptureEvents", m.event_id)
            FILTER e != null
            RETURN e
        """
        rows = self._query(query, {"session_id": session_id})
        return [CaptureEvent.model_validate(r) for r in rows]

    def list_sessions(self, session_type: Optional[str] = None) -> List[Session]:
        query = """
        FOR s IN Sessions
            FILTER @session_type == null OR s.session_type == @session_type
            SORT s.last_activity DESC
        """ + WITH_MEMBERS
        rows = self._query(query, {"session_type": session_type})
        return [self._to_session(r) for r in rows]

    def search_sessions(self, query: str) -> List[Session]:
        needle = query.strip().lower()
        if not needle:
            return []
        aql = """
        FOR s IN Sessions
            FILTER CONTAINS(LOWER(s.label), @q)
                OR CONTAINS(LOWER(s.session_type), @q)
                OR CONTAINS(LOWER(TO_STRING(s.context_summary.session_summary)), @q)
                OR CONTAINS(LOWER(CONCAT_SEPARATOR(" ", s.context_summary.content_keywords)), @q)
            SORT s.last_activity DESC
        """ + WITH_MEMBERS
        rows = self._query(aql, {"q": needle})
        return [self._to_session(r) for r in rows]

    def clear_all_sessions(self) -> int:
        try:
            sessions = self.db.collection(SESSIONS)
            count = sessions.count()
            sessions.truncate()
            self.db.collection(MEMBERS).truncate()
            return count
        except ArangoError as e:
            raise StoreError("Failed to clear sessions", {"error": str(e)}) from e
