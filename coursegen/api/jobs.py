"""Pipeline job endpoints: create, inspect, start stages, approve, cancel, restart."""

import logging
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import List

from ..database import get_db
from ..schemas.job import (
    CancelRequest,
    JobCreate,
    JobProgressResponse,
    JobResponse,
    JobSummaryResponse,
    StageStartRequest,
    StageTransitionResponse,
    WorkItemResponse,
)
from ..services.pipeline_service import PipelineService
from ..services.progress_store import ProgressStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


@router.post("", response_model=JobResponse, status_code=201)
def create_job(request: JobCreate, db: Session = Depends(get_db)):
    """Create a pipeline job in the pending stage."""
    return PipelineService(db).create_job(request.title, has_documents=request.has_documents)


@router.get("/{job_id}", response_model=JobResponse)
def get_job(job_id: str, db: Session = Depends(get_db)):
    return ProgressStore(db).get_model(job_id)


@router.get("/{job_id}/progress", response_model=JobProgressResponse)
def get_progress(job_id: str, db: Session = Depends(get_db)):
    """Current stage and progress payload. Read-only."""
    return ProgressStore(db).get_job(job_id)


@router.get("/{job_id}/summary", response_model=JobSummaryResponse)
def get_summary(job_id: str, db: Session = Depends(get_db)):
    return ProgressStore(db).get_summary(job_id)


@router.get("/{job_id}/transitions", response_model=List[StageTransitionResponse])
def get_transitions(
    job_id: str,
    limit: int = Query(200, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    """Audit log of every transition attempt, rejected ones included."""
    return ProgressStore(db).get_history(job_id, limit=limit)


@router.post("/{job_id}/stages/{step_id}/start", response_model=List[WorkItemResponse], status_code=202)
def start_stage(
    job_id: str,
    step_id: int,
    request: StageStartRequest,
    db: Session = Depends(get_db),
):
    """Initialize a stage and queue one work item per payload."""
    items = PipelineService(db).start_stage(job_id, step_id, request.payloads, trigger_source="api")
    logger.info(f"Stage {step_id} of job {job_id} started with {len(items)} item(s)")
    return items


@router.post("/{job_id}/stages/{step_id}/approve", response_model=JobProgressResponse)
def approve_stage(job_id: str, step_id: int, db: Session = Depends(get_db)):
    """Approve a stage awaiting approval; the job moves to the next step's init stage (or completes after step 5)."""
    store = ProgressStore(db)
    store.approve_stage(job_id, step_id)
    return store.get_job(job_id)


@router.post("/{job_id}/cancel", response_model=JobProgressResponse)
def cancel_job(job_id: str, request: CancelRequest, db: Session = Depends(get_db)):
    store = ProgressStore(db)
    store.cancel_job(job_id, reason=request.reason)
    return store.get_job(job_id)


@router.post("/{job_id}/restart", response_model=JobProgressResponse)
def restart_job(job_id: str, db: Session = Depends(get_db)):
    """Send a completed, failed or cancelled job back to pending."""
    PipelineService(db).restart(job_id)
    return ProgressStore(db).get_job(job_id)
