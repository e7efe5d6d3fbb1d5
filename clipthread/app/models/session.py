from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class SessionStatus(str, Enum):
    DORMANT = "dormant"
    ACTIVE = "active"
    CONSOLIDATED = "consolidated"


# Consolidated may fall back to Active when a new member arrives; nothing returns to Dormant.
ALLOWED_TRANSITIONS = {
    SessionStatus.DORMANT: {SessionStatus.ACTIVE},
    SessionStatus.ACTIVE: {SessionStatus.CONSOLIDATED},
    SessionStatus.CONSOLIDATED: {SessionStatus.ACTIVE},
}


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    return current == target or target in ALLOWED_TRANSITIONS[current]


class Session(BaseModel):
    id: str
    session_type: str
    label: str
    start_time: datetime
    last_activity: datetime
    status: SessionStatus = SessionStatus.DORMANT
    member_order: List[str] = []
    context_summary: Dict[str, Any] = {}
    intent_analysis: Dict[str, Any] = {}

    @property
    def item_count(self) -> int:
        return len(self.member_order)


class SessionMember(BaseModel):
    session_id: str
    event_id: str
    sequence_order: int
    added_at: datetime


class RetypeProposal(BaseModel):
    """A broader theme that would absorb a session under a new type and label."""
    session_id: str
    current_type: str
    proposed_type: str
    proposed_label: str
    theme_kind: str
    theme_value: str
    confidence: float
    triggering_event_id: Optional[str] = None
