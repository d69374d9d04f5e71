"""Generation traces: one row per regeneration engine run.

Writes never raise; a failed trace is logged and the stage carries on.
Reads are for the admin trace view.

Usage:
    TraceService(db).record(job_id, step_id=3, stage="stage_3_summarizing",
                            status="success", strategy_used="none", attempts=0)
"""

import logging
from typing import Iterable, List, Optional

import sqlalchemy.exc
from sqlalchemy.orm import Session

from ..models import GenerationTrace

logger = logging.getLogger(__name__)

TRACE_STATUSES = ("success", "degraded", "failed")


class TraceService:
    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        job_id: str,
        step_id: int,
        stage: str,
        status: str,
        strategy_used: Optional[str] = None,
        attempts: int = 0,
        models_used: Iterable[str] = (),
        issues: Iterable[dict] = (),
        prompt_text: Optional[str] = None,
        error: Optional[str] = None,
        duration_ms: Optional[int] = None,
        phase: str = "",
        item_key: Optional[str] = None,
    ) -> Optional[GenerationTrace]:
        """Write a trace row. Never raises."""
        try:
            trace = GenerationTrace(
                job_id=job_id,
                step_id=step_id,
                stage=stage,
                phase=phase,
                item_key=item_key,
                status=status,
                strategy_used=strategy_used,
                attempts=attempts,
                models_used=list(models_used),
                issues=list(issues),
                prompt_text=prompt_text,
                error=error,
                duration_ms=duration_ms,
            )
            self.db.add(trace)
            self.db.commit()
            return trace
        except sqlalchemy.exc.SQLAlchemyError as e:
            logger.warning("Failed to write generation trace: %s", e)
            self.db.rollback()
            return None

    def list_traces(
        self,
        stage: Optional[str] = None,
        status: Optional[str] = None,
        job_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[GenerationTrace]:
        """Traces newest first, optionally filtered."""
        query = self.db.query(GenerationTrace)
        if stage:
            query = query.filter(GenerationTrace.stage == stage)
        if status:
            query = query.filter(GenerationTrace.status == status)
        if job_id:
            query = query.filter(GenerationTrace.job_id == job_id)
        return (
            query.order_by(GenerationTrace.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
