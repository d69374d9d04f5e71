"""Admin endpoints: generation traces and stuck jobs."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import List, Optional

from ..database import get_db
from ..schemas.job import JobResponse
from ..schemas.trace import GenerationTraceResponse
from ..services.progress_store import ProgressStore
from ..services.trace_service import TraceService

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.get("/traces", response_model=List[GenerationTraceResponse])
def list_traces(
    stage: Optional[str] = Query(None),
    status: Optional[str] = Query(None, pattern="^(success|degraded|failed)$"),
    job_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    """Regeneration traces, newest first."""
    return TraceService(db).list_traces(stage=stage, status=status, job_id=job_id, limit=limit, offset=offset)


@router.get("/jobs/stuck", response_model=List[JobResponse])
def list_stuck_jobs(
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
):
    """Running jobs with no progress update for the configured threshold."""
    return ProgressStore(db).list_stuck_jobs(limit=limit)
