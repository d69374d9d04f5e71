"""Queued unit of stage work."""

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, JSON, String, Text
from sqlalchemy.sql import func

from ..database import Base


class WorkItem(Base):
    """
    One stage invocation waiting for (or claimed by) a worker.

    Status transitions: queued -> running -> completed | failed
    Failed items with retry_count below the configured limit go back to queued.
    """

    __tablename__ = "work_items"
    __table_args__ = (
        Index("ix_work_items_status_created", "status", "created_at"),
    )

    # Primary key (UUID format)
    id = Column(String(50), primary_key=True)

    job_id = Column(String(50), ForeignKey("pipeline_jobs.id", ondelete="CASCADE"), nullable=False)
    step_id = Column(Integer, nullable=False)
    payload = Column(JSON, nullable=False, default=dict)

    # Allowed values: queued, running, completed, failed
    status = Column(String(20), nullable=False, default="queued")
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
