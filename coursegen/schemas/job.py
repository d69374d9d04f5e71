"""Pipeline job schemas."""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from datetime import datetime
from typing import Any, Dict, List, Optional


class JobCreate(BaseModel):
    """Schema for creating a pipeline job."""
    title: str = Field(..., min_length=1, max_length=255)
    # Jobs without documents start at analysis
    has_documents: bool = True

    @field_validator('title')
    @classmethod
    def strip_title(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Title cannot be blank")
        return v


class JobResponse(BaseModel):
    """Job row as stored."""
    id: str
    title: str
    has_documents: bool
    stage: str
    progress: Dict[str, Any]
    version: int
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @field_validator("stage", mode="before")
    @classmethod
    def stage_value(cls, v: Any) -> Any:
        return getattr(v, "value", v)


class JobProgressResponse(BaseModel):
    """Stage and progress payload, as read by status pollers."""
    id: str
    stage: str
    progress: Dict[str, Any]


class JobSummaryResponse(BaseModel):
    job_id: str
    stage: str
    current_step: int
    percentage: int
    message: str = ""
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    last_updated: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    is_stuck: bool = False
    transition_count: int = 0


class StageTransitionResponse(BaseModel):
    """One audited transition attempt."""
    id: int
    job_id: str
    step_id: int
    status: str
    from_stage: Optional[str] = None
    to_stage: Optional[str] = None
    accepted: bool
    reason: Optional[str] = None
    trigger_source: str
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class StageStartRequest(BaseModel):
    """Payloads for the work items of one stage; one item per payload."""
    payloads: List[Dict[str, Any]] = Field(default_factory=list)


class CancelRequest(BaseModel):
    reason: str = "Cancelled by user"


class WorkItemResponse(BaseModel):
    id: str
    job_id: str
    step_id: int
    payload: Dict[str, Any]
    status: str
    retry_count: int = 0
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
