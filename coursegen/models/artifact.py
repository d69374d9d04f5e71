"""Validated stage artifacts."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, JSON, String, UniqueConstraint
from sqlalchemy.sql import func

from ..database import Base


class StageArtifact(Base):
    """
    An artifact that passed the validator for one item of one stage.

    Multi-item stages (several documents of one job) store one row per
    item_key; the stage is complete once every item has a row.
    """

    __tablename__ = "stage_artifacts"
    __table_args__ = (
        UniqueConstraint("job_id", "step_id", "item_key", name="uq_stage_artifacts_item"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(50), ForeignKey("pipeline_jobs.id", ondelete="CASCADE"), nullable=False)
    step_id = Column(Integer, nullable=False)
    item_key = Column(String(255), nullable=False, default="default")
    payload = Column(JSON, nullable=False)
    strategy_used = Column(String(50), nullable=False)
    # True when produced by the emergency fallback placeholder
    degraded = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
