"""Append-only audit log of every attempted stage transition."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.sql import func

from ..database import Base


class StageTransition(Base):
    """Immutable record of one advance_stage call.

    Accepted transitions are written in the same transaction as the job
    update. Rejected ones are written afterwards on their own, so a
    postmortem can see which worker lost which race.
    """

    __tablename__ = "stage_transitions"
    __table_args__ = (
        Index("ix_stage_transitions_job_id", "job_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(50), ForeignKey("pipeline_jobs.id", ondelete="CASCADE"), nullable=False)
    step_id = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False)
    from_stage = Column(String(40), nullable=True)
    # Null when the update only touched progress (no stage change).
    to_stage = Column(String(40), nullable=True)
    accepted = Column(Boolean, nullable=False)
    reason = Column(Text, nullable=True)
    # entrypoint, worker, worker-fallback, api, ...
    trigger_source = Column(String(50), nullable=False, default="system")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
