from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class StepOutcome:
    step: str
    ok: bool
    duration_ms: float
    error: Optional[str] = None

    @classmethod
    def from_log(cls, entry: Dict[str, Any]) -> "StepOutcome":
        return cls(
            step=entry["step"],
            ok=entry["ok"],
            duration_ms=entry.get("duration_ms", 0.0),
            error=entry.get("error"),
        )


@dataclass(slots=True)
class PipelineRun:
    id: str
    pipeline_name: str
    started_at: datetime
    status: RunStatus = RunStatus.RUNNING
    state: Dict[str, Any] = field(default_factory=dict)
    step_log: List[StepOutcome] = field(default_factory=list)
    ended_at: Optional[datetime] = None
    error: Optional[Exception] = None

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pipeline_name": self.pipeline_name,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "steps": [
                {"step": o.step, "ok": o.ok, "duration_ms": o.duration_ms, "error": o.error}
                for o in self.step_log
            ],
            "error": str(self.error) if self.error else None,
        }
