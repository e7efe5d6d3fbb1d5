import asyncio
import json
from types import SimpleNamespace

import httpx
import pytest

from clipthread.app.core.exceptions import ClassifierMalformed, ClassifierUnavailable, SearchUnavailable
from clipthread.app.core.rate_limiter import TokenBucket
from clipthread.app.services.classifier import LLMClassifier, parse_json_payload
from clipthread.app.services.search import SerpApiSearch
from clipthread.tests.fakes import make_settings


class FakeLLM:
    def __init__(self, content=None, error=None, delay=0.0):
        self.content = content
        self.error = error
        self.delay = delay
        self.messages = []

    async def ainvoke(self, messages):
        self.messages.append(messages)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return SimpleNamespace(content=self.content)


def classifier_with(llm, **overrides) -> LLMClassifier:
    return LLMClassifier(
        config=make_settings(**overrides),
        llm=llm,
        limiter=TokenBucket(capacity=100, refill_rate=100),
        session_types=["hotel_research", "general_research"],
    )


@pytest.mark.asyncio
async def test_detect_session_type_parses_fenced_json():
    llm = FakeLLM('```json\n{"sessionType": "Hotel Research", "confidence": 0.82, "reasoning": "hotel"}\n```')
    result = await classifier_with(llm).detect_session_type("Hilton Toronto", {"source_app": "Google Chrome"})

    assert result.session_type == "hotel_research"
    assert result.confidence == pytest.approx(0.82)
    prompt = llm.messages[0][1].content
    assert "Hilton Toronto" in prompt
    assert "hotel_research, general_research" in prompt


@pytest.mark.asyncio
async def test_membership_prompt_includes_recent_items():
    llm = FakeLLM(json.dumps({"belongs": True, "confidence": 0.7, "reasoning": "same city"}))
    existing = {
        "session_type": "hotel_research",
        "label": "Hotel Research - Toronto",
        "items": [{"content": "Hilton Toronto downtown"}, {"content": "Marriott Toronto"}],
    }

    result = await classifier_with(llm).evaluate_membership("Fairmont Royal York", {}, existing)

    assert result.belongs is True
    prompt = llm.messages[0][1].content
    assert "Hotel Research - Toronto" in prompt
    assert "Marriott Toronto" in prompt
    assert "Items (2)" in prompt


@pytest.mark.asyncio
async def test_consolidate_accepts_camel_case_fields():
    llm = FakeLLM(json.dumps({
        "objective": "Pick a hotel",
        "summary": "Two options compared.",
        "primaryIntent": "Compare hotels",
        "goals": ["choose"],
        "nextSteps": ["book"],
    }))

    result = await classifier_with(llm).consolidate(
        {"session_type": "hotel_research", "label": "Hotels"},
        [{"aspect": "pricing", "query": "hilton price", "findings": ["$200 a night"]}],
    )

    assert result.primary_intent == "Compare hotels"
    assert result.next_steps == ["book"]
    assert "$200 a night" in llm.messages[0][1].content


@pytest.mark.asyncio
@pytest.mark.parametrize("content", [
    "not json at all",
    '["a", "list"]',
    '{"sessionType": "hotel_research", "confidence": 1.5}',
    '{"confidence": 0.9}',
])
async def test_malformed_payloads(content):
    with pytest.raises(ClassifierMalformed):
        await classifier_with(FakeLLM(content)).detect_session_type("x", {})


@pytest.mark.asyncio
async def test_transport_error_is_unavailable():
    llm = FakeLLM(error=ConnectionError("reset by peer"))
    with pytest.raises(ClassifierUnavailable):
        await classifier_with(llm).detect_session_type("x", {})


@pytest.mark.asyncio
async def test_slow_classifier_times_out():
    llm = FakeLLM('{"sessionType": "general_research", "confidence": 0.9}', delay=1)
    with pytest.raises(ClassifierUnavailable):
        await classifier_with(llm, CLASSIFIER_TIMEOUT_SECONDS=0.05).detect_session_type("x", {})


@pytest.mark.asyncio
async def test_unconfigured_classifier_is_unavailable():
    classifier = LLMClassifier(config=make_settings())
    assert classifier.configured is False
    with pytest.raises(ClassifierUnavailable):
        await classifier.detect_session_type("x", {})


def test_parse_json_payload_rejects_non_text():
    with pytest.raises(ClassifierMalformed):
        parse_json_payload(None)


@pytest.mark.asyncio
async def test_token_bucket_spends_burst_then_refills():
    bucket = TokenBucket(capacity=2, refill_rate=50)
    await bucket.wait_for_token()
    await bucket.wait_for_token()
    assert bucket.available < 1
    await bucket.wait_for_token()


def serp_search(handler, **overrides) -> SerpApiSearch:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SerpApiSearch(config=make_settings(SERPAPI_API_KEY="test-key", **overrides), client=client)


@pytest.mark.asyncio
async def test_serpapi_results_include_answer_box_first():
    def handler(request):
        assert request.url.params["q"] == "hilton toronto"
        return httpx.Response(200, json={
            "answer_box": {"title": "Hilton", "snippet": "4 stars", "link": "https://hilton.com"},
            "organic_results": [
                {"title": "One", "snippet": "first", "link": "https://one"},
                {"title": "Two", "snippet": "second", "link": "https://two"},
            ],
        })

    search = serp_search(handler)
    results = await search.search("hilton toronto", limit=1)
    await search.close()

    assert [r.kind for r in results] == ["answer_box", "organic"]
    assert results[1].url == "https://one"


@pytest.mark.asyncio
async def test_serpapi_errors_are_unavailable():
    search = serp_search(lambda request: httpx.Response(503))
    with pytest.raises(SearchUnavailable):
        await search.search("anything")
    await search.close()


@pytest.mark.asyncio
async def test_serpapi_without_key_is_unavailable():
    with pytest.raises(SearchUnavailable):
        await SerpApiSearch(config=make_settings()).search("anything")
