from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class ItemAnalysis(BaseModel):
    """Prior single-item analysis attached by the capture layer."""
    content_type: Optional[str] = None
    tags: List[str] = []
    context_insights: Optional[str] = None
    visual_context: Dict[str, Any] = {}


class CaptureEvent(BaseModel):
    id: str
    content: str
    source_app: str = Field(default="", alias="sourceApp")
    window_title: str = Field(default="", alias="windowTitle")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    visual_context_ref: Optional[str] = Field(default=None, alias="visualContextRef")
    analysis: Optional[ItemAnalysis] = None

    @field_validator("timestamp")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        # Capture sources without an offset report UTC.
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    class Config:
        populate_by_name = True
        frozen = True
