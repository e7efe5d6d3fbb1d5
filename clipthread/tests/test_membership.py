from datetime import timedelta

import pytest

from clipthread.app.db.memory import InMemorySessionStore
from clipthread.app.models.session import Session
from clipthread.app.services.candidates import CandidateFinder
from clipthread.app.services.membership import MembershipCache, MembershipEvaluator
from clipthread.app.services.pipeline import PipelineExecutor
from clipthread.app.services.taxonomy import SessionTaxonomy
from clipthread.app.services.themes import ThemeDetector
from clipthread.app.workflows.classification import build_membership_pipeline
from clipthread.tests.fakes import (
    START, FakeClassifier, FixedClock, build_manager, make_event, make_settings, membership,
)


class World:
    def __init__(self, classifier, **settings):
        self.store = InMemorySessionStore()
        self.clock = FixedClock()
        self.classifier = classifier
        executor = PipelineExecutor(clock=self.clock)
        executor.register(build_membership_pipeline(classifier))
        self.evaluator = MembershipEvaluator(
            self.store, executor, SessionTaxonomy(), ThemeDetector(),
            config=make_settings(**settings), cache=MembershipCache(), clock=self.clock,
        )

    def session(self, session_id, session_type, *contents, at=START) -> Session:
        events = [make_event(c) for c in contents]
        for event in events:
            self.store.save_event(event)
        self.store.insert_session(
            Session(id=session_id, session_type=session_type, label=session_type, start_time=at, last_activity=at),
            events[0].id,
        )
        for event in events[1:]:
            self.store.add_member(session_id, event.id, at)
        return self.store.get_session(session_id)

    async def evaluate(self, content, *sessions):
        return await self.evaluator.evaluate(make_event(content), list(sessions))


@pytest.mark.asyncio
async def test_keyword_match_skips_classifier():
    world = World(FakeClassifier(membership=membership(False, 0.9)))
    hotels = world.session("s1", "hotel_research", "Hilton Toronto downtown")

    decision = await world.evaluate("Marriott Toronto rooftop bar", hotels)

    assert decision.rule == "keyword"
    assert decision.session.id == "s1"
    assert world.classifier.calls == []


@pytest.mark.asyncio
async def test_confident_classifier_accepts():
    world = World(FakeClassifier(membership=membership(True, 0.8, "same topic")))
    notes = world.session("s1", "academic_research", "Attention is all you need")

    decision = await world.evaluate("Positional encoding in Transformer models", notes)

    assert decision.rule == "classifier"
    assert decision.confidence == pytest.approx(0.8)
    assert decision.retype is None


@pytest.mark.asyncio
async def test_moderate_confidence_with_shared_city_is_cross_theme():
    world = World(FakeClassifier(membership=membership(True, 0.5)))
    food = world.session("s1", "restaurant_research", "Best Italian restaurant Toronto")

    decision = await world.evaluate("CN Tower tickets Toronto", food)

    assert decision.rule == "cross_theme"
    assert decision.theme.kind == "location"
    assert decision.theme.value == "Toronto"
    assert decision.retype is None


@pytest.mark.asyncio
async def test_moderate_confidence_without_theme_is_rejected():
    world = World(FakeClassifier(membership=membership(True, 0.5)))
    food = world.session("s1", "restaurant_research", "Best Italian restaurant Toronto")

    decision = await world.evaluate("Quantum computing overview", food)

    assert not decision.matched
    assert decision.rule == "no_match"


@pytest.mark.asyncio
async def test_weak_answer_with_shared_event_proposes_retype():
    world = World(FakeClassifier(membership=membership(False, 0.35)))
    hotels = world.session("s1", "hotel_research", "Hilton wedding venue packages")

    decision = await world.evaluate("Wedding cake ideas", hotels)

    assert decision.rule == "thematic"
    assert decision.retype.current_type == "hotel_research"
    assert decision.retype.proposed_type == "event_planning"
    assert decision.retype.proposed_label == "Wedding Planning"


@pytest.mark.asyncio
async def test_very_weak_answer_ignores_themes():
    world = World(FakeClassifier(membership=membership(False, 0.2)))
    hotels = world.session("s1", "hotel_research", "Hilton wedding venue packages")

    decision = await world.evaluate("Wedding cake ideas", hotels)

    assert not decision.matched


@pytest.mark.asyncio
async def test_classifier_timeout_falls_back_to_themes():
    classifier = FakeClassifier(membership=membership(True, 0.9), delay=1)
    world = World(classifier, CLASSIFIER_TIMEOUT_SECONDS=0.05)
    hotels = world.session("s1", "hotel_research", "Hilton Toronto downtown")

    decision = await world.evaluate("CN Tower Toronto", hotels)

    assert decision.rule == "fallback_theme"
    assert decision.retype.proposed_type == "travel_research"
    assert decision.retype.proposed_label == "Toronto Planning"


@pytest.mark.asyncio
async def test_fallback_themes_respect_window():
    world = World(FakeClassifier.unavailable())
    hotels = world.session("s1", "hotel_research", "Hilton Toronto downtown")
    world.clock.advance(timedelta(hours=3).total_seconds())

    decision = await world.evaluate("CN Tower Toronto", hotels)

    assert not decision.matched


@pytest.mark.asyncio
async def test_general_research_fallback_accepts_free_text_only():
    world = World(FakeClassifier.unavailable())
    general = world.session("s1", "general_research", "Notes about gardening")

    text = await world.evaluate("Tomato planting schedule", general)
    url = await world.evaluate("https://example.com/tomatoes", general)

    assert text.rule == "fallback_general"
    assert not url.matched


@pytest.mark.asyncio
async def test_first_accepting_candidate_wins():
    world = World(FakeClassifier(membership=membership(True, 0.9)))
    recent = world.session("recent", "academic_research", "Graph neural networks")
    older = world.session("older", "academic_research", "Graph theory basics", at=START - timedelta(minutes=20))

    decision = await world.evaluate("Message passing layers", recent, older)

    assert decision.session.id == "recent"
    assert len(world.classifier.calls) == 1


@pytest.mark.asyncio
async def test_classifier_answers_are_cached_per_session_state():
    world = World(FakeClassifier(membership=membership(True, 0.9)))
    notes = world.session("s1", "academic_research", "Graph neural networks")

    first = await world.evaluate("Message passing layers", notes)
    second = await world.evaluate("message  passing LAYERS", notes)

    assert first.rule == second.rule == "classifier"
    assert len(world.classifier.calls) == 1
    assert len(world.evaluator.cache) == 1


def test_candidates_are_recent_first_and_holding_session_leads():
    store = InMemorySessionStore()
    clock = FixedClock()
    event = make_event("Hilton Toronto")
    for session_id, minutes in (("a", 50), ("b", 10), ("stale", 90)):
        at = START - timedelta(minutes=minutes)
        store.insert_session(
            Session(id=session_id, session_type="hotel_research", label="x", start_time=at, last_activity=at),
            event.id if session_id == "a" else f"{session_id}-first",
        )

    found = CandidateFinder(store, clock).find_candidates(event, timedelta(hours=1))

    assert [s.id for s in found] == ["a", "b"]
    assert [s.id for s in CandidateFinder(store, clock).find_candidates(make_event("x"), timedelta(hours=1))] == ["b", "a"]


def test_cache_evicts_least_recently_used():
    cache = MembershipCache(maxsize=2)
    session = Session(id="s", session_type="t", label="l", start_time=START, last_activity=START)
    for text in ("one", "two", "three"):
        cache.put(cache.key(session, text), membership(True, 0.9))

    assert len(cache) == 2
    assert cache.get(cache.key(session, "one")) is None
    assert cache.get(cache.key(session, "three")) is not None


# Content -> stubbed membership answer. None means the classifier cannot answer.
SCRIPTED_ANSWERS = {
    "Hilton Toronto suite booking": None,
    "Marriott Toronto rooftop bar": membership(False, 0.1),
    "CN Tower tickets Toronto": membership(True, 0.5),
    "Toronto wedding cake ideas": membership(False, 0.35),
    "Quantum computing lecture notes": None,
    "Tomato planting schedule": None,
}


async def replay_script():
    clock = FixedClock()
    classifier = FakeClassifier(membership=lambda content, existing_session: SCRIPTED_ANSWERS[content])
    manager = build_manager(classifier=classifier, clock=clock)

    results = []
    for content in SCRIPTED_ANSWERS:
        results.append(await manager.on_event(make_event(content)))
        await manager.consolidation.drain()
        clock.advance(60)

    first_seen = {}
    for result in results:
        first_seen.setdefault(result.session.id, len(first_seen))
    return [
        (result.rule, first_seen[result.session.id], result.session.session_type, result.session.label)
        for result in results
    ]


@pytest.mark.asyncio
async def test_membership_is_deterministic_with_stubbed_classifier():
    first = await replay_script()
    second = await replay_script()

    assert first == second
    assert [rule for rule, *_ in first] == [
        "created", "keyword", "cross_theme", "thematic", "created", "fallback_general",
    ]
    assert [index for _, index, *_ in first] == [0, 0, 0, 0, 1, 1]
    assert first[3][2] == "travel_research"
    assert first[5][2] == "general_research"
