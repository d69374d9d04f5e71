"""Database models."""

from .job import PipelineJob
from .transition import StageTransition
from .artifact import StageArtifact
from .trace import GenerationTrace
from .work_item import WorkItem

__all__ = [
    "PipelineJob", "StageTransition", "StageArtifact",
    "GenerationTrace", "WorkItem",
]
