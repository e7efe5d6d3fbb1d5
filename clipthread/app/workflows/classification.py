from typing import Any, Dict, Optional

from clipthread.app.services.classifier import ClassifierService
from clipthread.app.services.pipeline import Pipeline, PipelineState

SESSION_TYPE_DETECTION = "session_type_detection"
SESSION_MEMBERSHIP = "session_membership"


class SessionTypeState(PipelineState, total=False):
    content: str
    context: Dict[str, Any]
    session_type: Optional[str]
    confidence: float
    reasoning: str


class MembershipState(PipelineState, total=False):
    content: str
    context: Dict[str, Any]
    existing_session: Dict[str, Any]
    belongs: Optional[bool]
    confidence: float
    reasoning: str


def build_session_type_pipeline(classifier: ClassifierService) -> Pipeline:
    async def detect_type(state: SessionTypeState):
        result = await classifier.detect_session_type(state["content"], state.get("context", {}))
        return {"session_type": result.session_type, "confidence": result.confidence, "reasoning": result.reasoning}

    return Pipeline(name=SESSION_TYPE_DETECTION, state_schema=SessionTypeState).add_step("detect_type", detect_type)


def build_membership_pipeline(classifier: ClassifierService) -> Pipeline:
    async def score_membership(state: MembershipState):
        result = await classifier.evaluate_membership(
            state["content"], state.get("context", {}), state["existing_session"]
        )
        return {"belongs": result.belongs, "confidence": result.confidence, "reasoning": result.reasoning}

    return Pipeline(name=SESSION_MEMBERSHIP, state_schema=MembershipState).add_step("score_membership", score_membership)
