from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from arango.exceptions import ArangoError

from clipthread.app.core.exceptions import SessionNotFound, StoreError
from clipthread.app.db.arango import ArangoSessionStore
from clipthread.app.db.memory import InMemorySessionStore
from clipthread.app.models.session import Session, SessionStatus
from clipthread.tests.fakes import START, make_event


def make_session(session_id="s1", at=START, session_type="hotel_research", label="Hotel Research - Toronto"):
    return Session(id=session_id, session_type=session_type, label=label, start_time=at, last_activity=at)


class TestInMemoryStore:
    def test_insert_stores_first_member(self):
        store = InMemorySessionStore()
        created = store.insert_session(make_session(), "e1")

        assert created.member_order == ["e1"]
        assert store.get_session("s1").status == SessionStatus.DORMANT

    def test_add_member_sequences_and_is_idempotent(self):
        store = InMemorySessionStore()
        store.insert_session(make_session(), "e1")

        second, created = store.add_member("s1", "e2", START)
        again, created_again = store.add_member("s1", "e2", START)

        assert (second.sequence_order, created) == (2, True)
        assert (again.sequence_order, created_again) == (2, False)
        assert store.get_session("s1").member_order == ["e1", "e2"]

    def test_candidates_filtered_by_window_and_sorted_by_recency(self):
        store = InMemorySessionStore()
        store.insert_session(make_session("old", START - timedelta(hours=3)), "e1")
        store.insert_session(make_session("mid", START - timedelta(minutes=30)), "e2")
        store.insert_session(make_session("new", START - timedelta(minutes=5)), "e3")

        found = store.list_candidate_sessions(START - timedelta(hours=1))

        assert [s.id for s in found] == ["new", "mid"]

    def test_touch_never_moves_backwards(self):
        store = InMemorySessionStore()
        store.insert_session(make_session(), "e1")

        store.touch_session("s1", START + timedelta(minutes=10))
        store.touch_session("s1", START + timedelta(minutes=5))

        assert store.get_session("s1").last_activity == START + timedelta(minutes=10)

    def test_missing_session_raises(self):
        store = InMemorySessionStore()
        with pytest.raises(SessionNotFound):
            store.add_member("nope", "e1", START)
        with pytest.raises(SessionNotFound):
            store.update_session_status("nope", SessionStatus.ACTIVE)
        assert store.get_session("nope") is None

    def test_items_follow_sequence_order(self):
        store = InMemorySessionStore()
        first, second = make_event("Hilton Toronto"), make_event("Marriott Toronto")
        store.save_event(first)
        store.save_event(second)
        store.insert_session(make_session(), first.id)
        store.add_member("s1", second.id, START)

        assert [e.content for e in store.get_session_items("s1")] == ["Hilton Toronto", "Marriott Toronto"]

    def test_search_matches_label_type_and_keywords(self):
        store = InMemorySessionStore()
        store.insert_session(make_session(), "e1")
        store.insert_session(make_session("s2", session_type="academic_research", label="Academic Research"), "e2")
        store.update_session_summary("s2", context_summary={"content_keywords": ["transformer"]})

        assert [s.id for s in store.search_sessions("toronto")] == ["s1"]
        assert [s.id for s in store.search_sessions("TRANSFORMER")] == ["s2"]
        assert store.search_sessions("   ") == []

    def test_snapshots_are_copies(self):
        store = InMemorySessionStore()
        store.insert_session(make_session(), "e1")

        snapshot = store.get_session("s1")
        snapshot.label = "changed"
        snapshot.context_summary["x"] = 1

        assert store.get_session("s1").label == "Hotel Research - Toronto"
        assert store.get_session("s1").context_summary == {}

    def test_clear_returns_count(self):
        store = InMemorySessionStore()
        store.insert_session(make_session(), "e1")
        store.insert_session(make_session("s2"), "e2")

        assert store.clear_all_sessions() == 2
        assert store.list_sessions() == []


def session_doc(key="s1"):
    return {
        "_key": key,
        "session_type": "hotel_research",
        "label": "Hotel Research - Toronto",
        "start_time": START.isoformat(),
        "last_activity": START.isoformat(),
        "status": "active",
        "member_order": ["e1", "e2"],
        "context_summary": {},
        "intent_analysis": {},
    }


def mock_db(*results):
    db = MagicMock()
    cursors = []
    for rows in results:
        cursor = MagicMock()
        cursor.__iter__.return_value = iter(rows)
        cursors.append(cursor)
    db.aql.execute.side_effect = cursors
    return db


class TestArangoStore:
    def test_get_session_maps_key_to_id(self):
        db = mock_db([session_doc()])
        session = ArangoSessionStore(db).get_session("s1")

        assert session.id == "s1"
        assert session.member_order == ["e1", "e2"]
        assert db.aql.execute.call_args[1]["bind_vars"] == {"session_id": "s1"}

    def test_candidates_bind_statuses_and_window(self):
        db = mock_db([session_doc("a"), session_doc("b")])
        found = ArangoSessionStore(db).list_candidate_sessions(START)

        assert [s.id for s in found] == ["a", "b"]
        bind_vars = db.aql.execute.call_args[1]["bind_vars"]
        assert bind_vars["statuses"] == ["dormant", "active", "consolidated"]
        assert bind_vars["since"] == START.isoformat()

    def test_insert_session_writes_first_member(self):
        db = mock_db(["s1"])
        created = ArangoSessionStore(db).insert_session(make_session(), "e1")

        bind_vars = db.aql.execute.call_args[1]["bind_vars"]
        assert bind_vars["session"]["_key"] == "s1"
        assert bind_vars["member"] == {
            "session_id": "s1", "event_id": "e1", "sequence_order": 1, "added_at": START.isoformat(),
        }
        assert created.member_order == ["e1"]

    def test_add_member_reports_created_flag(self):
        member = {"session_id": "s1", "event_id": "e3", "sequence_order": 3, "added_at": START.isoformat()}
        db = mock_db([session_doc()], [{"member": member, "created": True}])

        stored, created = ArangoSessionStore(db).add_member("s1", "e3", START)

        assert stored.sequence_order == 3
        assert created is True

    def test_add_member_to_missing_session(self):
        db = mock_db([])
        with pytest.raises(SessionNotFound):
            ArangoSessionStore(db).add_member("s1", "e3", START)

    def test_update_on_missing_session(self):
        db = mock_db([])
        with pytest.raises(SessionNotFound):
            ArangoSessionStore(db).update_session_status("gone", SessionStatus.ACTIVE)

    def test_backend_errors_become_store_errors(self):
        db = MagicMock()
        db.aql.execute.side_effect = ArangoError("boom")
        with pytest.raises(StoreError):
            ArangoSessionStore(db).list_sessions()

    def test_clear_truncates_both_collections(self):
        db = MagicMock()
        db.collection.return_value.count.return_value = 4

        assert ArangoSessionStore(db).clear_all_sessions() == 4
        assert db.collection.return_value.truncate.call_count == 2
