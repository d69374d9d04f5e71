"""Generation trace model for observability tooling."""

from sqlalchemy import Column, DateTime, Index, Integer, JSON, String, Text
from sqlalchemy.sql import func

from ..database import Base


class GenerationTrace(Base):
    """One regeneration engine run, recorded for the admin trace view.

    Status values: success, degraded, failed
    """

    __tablename__ = "generation_traces"
    __table_args__ = (
        Index("ix_generation_traces_job_id", "job_id"),
        Index("ix_generation_traces_stage_status", "stage", "status"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(50), nullable=False)
    step_id = Column(Integer, nullable=False)
    stage = Column(String(40), nullable=False)
    # Handler-defined sub-phase, e.g. "summarize_document"
    phase = Column(String(100), nullable=False, default="")
    item_key = Column(String(255), nullable=True)
    status = Column(String(20), nullable=False)
    strategy_used = Column(String(50), nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    models_used = Column(JSON, nullable=False, default=list)
    issues = Column(JSON, nullable=False, default=list)
    prompt_text = Column(Text, nullable=True)
    error = Column(Text, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
