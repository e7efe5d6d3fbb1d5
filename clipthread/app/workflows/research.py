from typing import Any, Dict, List, Optional

from clipthread.app.services.pipeline import TERMINATE, Pipeline, PipelineState
from clipthread.app.services.search import SearchProvider

RESEARCH_QUERY_GENERATION = "research_query_generation"
RESEARCH = "research"

MAX_QUERIES_PER_ITEM = 3
ANCHOR_CONTENT_LENGTH = 150
MAX_FINDINGS = 5

VISUAL_HINT_KEYS = ("detected_text", "description", "page_title")


class QueryGenerationState(PipelineState, total=False):
    event: Dict[str, Any]
    session_type: str
    max_queries: int
    queries: List[Dict[str, Any]]


class ResearchState(PipelineState, total=False):
    query: Dict[str, Any]
    results: List[Dict[str, Any]]
    finding: Optional[Dict[str, Any]]


def _anchor_text(event: Dict[str, Any]) -> str:
    return " ".join(event.get("content", "").split())[:ANCHOR_CONTENT_LENGTH]


def _visual_hint(event: Dict[str, Any]) -> Optional[str]:
    visual = (event.get("analysis") or {}).get("visual_context") or {}
    for key in VISUAL_HINT_KEYS:
        value = visual.get(key)
        if isinstance(value, str) and value.strip():
            return " ".join(value.split())[:80]
    return None


def anchor_query(state: QueryGenerationState):
    event = state["event"]
    content = _anchor_text(event)
    analysis = event.get("analysis") or {}
    return {"queries": [{
        "source_event_id": event["id"],
        "aspect": "original_content_research",
        "search_query": f"{content} detailed information reviews features pricing availability",
        "known_info": analysis.get("context_insights") or content,
    }]}


def has_context_hints(state: QueryGenerationState) -> str:
    event = state["event"]
    tags = (event.get("analysis") or {}).get("tags") or []
    if tags or _visual_hint(event):
        return "contextual_queries"
    return TERMINATE


def contextual_queries(state: QueryGenerationState):
    event = state["event"]
    content = _anchor_text(event)
    limit = min(state.get("max_queries", MAX_QUERIES_PER_ITEM), MAX_QUERIES_PER_ITEM)
    queries = list(state.get("queries", []))

    tags = (event.get("analysis") or {}).get("tags") or []
    if tags:
        queries.append({
            "source_event_id": event["id"],
            "aspect": "contextual_research",
            "search_query": f"{content} {' '.join(tags[:2])} information guide",
            "known_info": ", ".join(tags),
        })
    hint = _visual_hint(event)
    if hint:
        queries.append({
            "source_event_id": event["id"],
            "aspect": "visual_context_research",
            "search_query": f"{content} {hint}",
            "known_info": hint,
        })
    return {"queries": queries[:limit]}


def build_query_generation_pipeline() -> Pipeline:
    return (
        Pipeline(name=RESEARCH_QUERY_GENERATION, state_schema=QueryGenerationState)
        .add_step("anchor_query", anchor_query)
        .add_step("contextual_queries", contextual_queries)
        .add_branch("anchor_query", has_context_hints, ["contextual_queries"])
    )


def has_results(state: ResearchState) -> str:
    return "synthesize" if state.get("results") else TERMINATE


def synthesize(state: ResearchState):
    query = state["query"]
    findings: List[str] = []
    sources = []
    for result in state.get("results", []):
        snippet = " ".join((result.get("snippet") or "").split())
        if snippet and snippet not in findings and len(findings) < MAX_FINDINGS:
            findings.append(snippet)
        if result.get("url"):
            sources.append({"title": result.get("title", ""), "url": result["url"]})
    return {"finding": {
        "source_event_id": query["source_event_id"],
        "aspect": query["aspect"],
        "query": query["search_query"],
        "findings": findings,
        "sources": sources,
        "summary": " ".join(findings[:2]),
    }}


def build_research_pipeline(search: SearchProvider) -> Pipeline:
    async def lookup(state: ResearchState):
        results = await search.search(state["query"]["search_query"])
        return {"results": [r.model_dump() for r in results]}

    return (
        Pipeline(name=RESEARCH, state_schema=ResearchState)
        .add_step("lookup", lookup)
        .add_step("synthesize", synthesize)
        .add_branch("lookup", has_results, ["synthesize"])
    )
