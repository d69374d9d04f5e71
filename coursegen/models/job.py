"""Pipeline job model: one row per course generation run."""

from sqlalchemy import Boolean, Column, DateTime, Enum, Index, Integer, JSON, String, Text
from sqlalchemy.sql import func

from ..database import Base
from ..pipeline.stages import JobStage


class PipelineJob(Base):
    """
    A long-running, multi-stage generation job.

    ``stage`` and ``progress`` are only ever written together by
    ProgressStore.advance_stage. ``version`` is bumped on every write and
    guards the compare-and-swap update against concurrent workers.
    """

    __tablename__ = "pipeline_jobs"
    __table_args__ = (
        Index("ix_pipeline_jobs_stage", "stage"),
        Index("ix_pipeline_jobs_updated_at", "updated_at"),
    )

    # Primary key (UUID format)
    id = Column(String(50), primary_key=True)

    title = Column(String(255), nullable=False)

    # Jobs without uploaded documents skip processing and summarization.
    has_documents = Column(Boolean, nullable=False, default=True)

    # State machine
    stage = Column(
        Enum(JobStage, name="job_stage", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=JobStage.PENDING,
    )
    progress = Column(JSON, nullable=False, default=dict)
    version = Column(Integer, nullable=False, default=0)

    error_message = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now())
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
