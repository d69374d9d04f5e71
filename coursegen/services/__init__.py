"""Business logic services."""

from .progress_store import ProgressStore
from .artifact_service import ArtifactService
from .trace_service import TraceService
from .work_queue import WorkQueue
from .pipeline_service import PipelineService

__all__ = ["ProgressStore", "ArtifactService", "TraceService", "WorkQueue", "PipelineService"]
