from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class SessionTypeResult(BaseModel):
    session_type: str = Field(alias="sessionType")
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""

    class Config:
        populate_by_name = True

    @field_validator("session_type")
    @classmethod
    def normalize_type(cls, v: str) -> str:
        v = v.strip().lower().replace(" ", "_")
        if not v:
            raise ValueError("empty session type")
        return v


class MembershipResult(BaseModel):
    belongs: bool
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""


class ConsolidationResult(BaseModel):
    objective: str = ""
    summary: str = ""
    primary_intent: str = Field(default="", alias="primaryIntent")
    goals: List[str] = []
    next_steps: List[str] = Field(default=[], alias="nextSteps")

    class Config:
        populate_by_name = True

    def missing_fields(self) -> List[str]:
        missing = [name for name in ("objective", "summary", "primary_intent") if not getattr(self, name).strip()]
        if not [g for g in self.goals if g.strip()]:
            missing.append("goals")
        if not [s for s in self.next_steps if s.strip()]:
            missing.append("next_steps")
        return missing


class SearchResult(BaseModel):
    title: str = ""
    snippet: str = ""
    url: str = ""
    kind: str = "organic"


class ResearchQuery(BaseModel):
    source_event_id: str
    aspect: str
    search_query: str
    known_info: str = ""


class ResearchFinding(BaseModel):
    source_event_id: str
    aspect: str
    query: str
    findings: List[str] = []
    sources: List[Dict[str, Any]] = []
    summary: str = ""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ResearchProgress(BaseModel):
    phase: str  # queries_generated, searching, query_failed, consolidating
    progress: int = 0
    total_queries: int = 0
    completed_queries: int = 0
    current_query: Optional[str] = None
    current_aspect: Optional[str] = None
    detail: Optional[str] = None
