from typing import Any, Dict, List, Optional

from clipthread.app.models.research import ConsolidationResult
from clipthread.app.services.classifier import ClassifierService
from clipthread.app.services.pipeline import Pipeline, PipelineState
from clipthread.app.services.taxonomy import SessionTaxonomy

SESSION_CONSOLIDATION = "session_consolidation"


class ConsolidationState(PipelineState, total=False):
    session_context: Dict[str, Any]
    findings: List[Dict[str, Any]]
    result: Optional[Dict[str, Any]]
    used_template: bool


def template_result(taxonomy: SessionTaxonomy, session_context: Dict[str, Any]) -> ConsolidationResult:
    """Deterministic consolidation keyed by session type. Every field is filled."""
    profile = taxonomy.get(session_context.get("session_type", "general_research"))
    entities = session_context.get("entities", [])
    comparables = session_context.get("comparables", [])
    aspects = session_context.get("aspects", [])
    topic = profile.label.lower()

    if len(comparables) > 1:
        objective = f"Compare {comparables[0]} and {comparables[1]}"
    elif entities:
        objective = f"Research {entities[0]}"
    else:
        objective = f"Complete {topic}"

    summary = (
        f"Completed {topic} with {session_context.get('findings_count', 0)} key findings "
        f"from {session_context.get('total_sources', 0)} sources covering "
        f"{', '.join(aspects[:3]) or 'general research'}."
    )

    goals = list(profile.goals)
    if len(comparables) > 1:
        goals.insert(0, f"Finalize selection between {comparables[0]} and {comparables[1]}")

    return ConsolidationResult(
        objective=objective,
        summary=summary,
        primary_intent=profile.primary_intent(" ".join(session_context.get("contents", []))),
        goals=goals,
        next_steps=list(profile.next_steps),
    )


def build_consolidation_pipeline(classifier: ClassifierService, taxonomy: SessionTaxonomy) -> Pipeline:
    async def classify(state: ConsolidationState):
        result = await classifier.consolidate(state["session_context"], state.get("findings", []))
        return {"result": result.model_dump()}

    def route(state: ConsolidationState) -> str:
        return "fill_gaps" if state.get("result") else "apply_template"

    def apply_template(state: ConsolidationState):
        result = template_result(taxonomy, state["session_context"])
        return {"result": result.model_dump(), "used_template": True}

    def fill_gaps(state: ConsolidationState):
        result = ConsolidationResult.model_validate(state["result"])
        missing = result.missing_fields()
        if not missing:
            return {"used_template": False}
        template = template_result(taxonomy, state["session_context"])
        patched = result.model_copy(update={name: getattr(template, name) for name in missing})
        return {"result": patched.model_dump(), "used_template": True}

    return (
        Pipeline(name=SESSION_CONSOLIDATION, state_schema=ConsolidationState)
        .add_step("classify", classify)
        .add_step("apply_template", apply_template)
        .add_step("fill_gaps", fill_gaps)
        .add_branch("classify", route, ["fill_gaps", "apply_template"])
    )
