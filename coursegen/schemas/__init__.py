"""Pydantic schemas for API validation."""

from .job import (
    JobCreate,
    JobResponse,
    JobProgressResponse,
    JobSummaryResponse,
    StageTransitionResponse,
    StageStartRequest,
    WorkItemResponse,
    CancelRequest,
)
from .trace import GenerationTraceResponse

__all__ = [
    "JobCreate",
    "JobResponse",
    "JobProgressResponse",
    "JobSummaryResponse",
    "StageTransitionResponse",
    "StageStartRequest",
    "WorkItemResponse",
    "CancelRequest",
    "GenerationTraceResponse",
]
