"""Progress store: the only writer of a job's stage and progress.

``advance_stage`` is one atomic operation. Inside a single transaction it
re-reads the job, checks the transition table against the stage it just
read, merges the step record into the progress payload by step id, and
writes stage + progress + version with a compare-and-swap on ``version``.
Concurrent workers therefore either see each other's writes or lose the
CAS and retry against the fresh row; a read-modify-write never silently
overwrites another worker's progress.

Every attempt is audited in ``stage_transitions``, rejected ones included.
"""

from __future__ import annotations

import copy
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.config import settings
from ..exceptions import (
    ConcurrentUpdateError,
    DatabaseError,
    IllegalTransitionError,
    JobNotFoundError,
)
from ..models import PipelineJob, StageArtifact, StageTransition
from ..pipeline.stages import (
    FINALIZE_STEP,
    STEPS,
    TERMINAL_STAGES,
    JobStage,
    StepStatus,
    allowed_next_for_job,
    first_step_for,
    get_step,
    is_at_or_beyond,
    is_legal_for_job,
    next_step_after,
    parse_status,
    target_stage,
)

logger = logging.getLogger(__name__)

# Lost compare-and-swap races tolerated before giving up.
MAX_CAS_RETRIES = 5

_STEP_WEIGHT = 100 / len(STEPS)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def new_progress() -> dict:
    """Progress payload of a job that has not started (or was restarted)."""
    return {
        "current_step": 0,
        "percentage": 0,
        "message": "",
        "error": None,
        "updated_at": None,
        "steps": [
            {
                "step_id": step.step_id,
                "name": step.name,
                "status": StepStatus.PENDING.value,
                "started_at": None,
                "completed_at": None,
                "message": "",
                "error": None,
                "error_details": None,
                "metadata": {},
            }
            for step in STEPS
        ],
    }


def _percentage(step_id: int, status: StepStatus) -> int:
    if status == StepStatus.COMPLETED or status == StepStatus.AWAITING_APPROVAL:
        return round(step_id * _STEP_WEIGHT)
    if status == StepStatus.IN_PROGRESS:
        return round((step_id - 1) * _STEP_WEIGHT + _STEP_WEIGHT / 2)
    return round((step_id - 1) * _STEP_WEIGHT)


def merge_step_record(
    progress: Optional[dict],
    step_id: int,
    status: StepStatus,
    message: str,
    now: datetime,
    metadata: Optional[dict] = None,
    error: Optional[str] = None,
    error_details: Optional[dict] = None,
) -> dict:
    """Return a new progress payload with one step's record merged in.

    Other steps' records are kept as they are. A completed step stays
    completed; later reports only add messages and metadata.
    """
    merged = copy.deepcopy(progress) if progress else new_progress()
    steps = merged.setdefault("steps", [])
    record = next((s for s in steps if s.get("step_id") == step_id), None)
    if record is None:
        record = next(s for s in new_progress()["steps"] if s["step_id"] == step_id)
        steps.append(record)
        steps.sort(key=lambda s: s["step_id"])

    stamp = now.isoformat()
    locked = record.get("status") == StepStatus.COMPLETED.value
    if not locked:
        record["status"] = status.value
        if status == StepStatus.IN_PROGRESS and not record.get("started_at"):
            record["started_at"] = stamp
        if status in (StepStatus.COMPLETED, StepStatus.FAILED):
            record["completed_at"] = stamp
    if message:
        record["message"] = message
    if metadata:
        record.setdefault("metadata", {}).update(metadata)
    if error:
        record["error"] = error
        record["error_details"] = error_details

    if status not in (StepStatus.FAILED, StepStatus.CANCELLED):
        merged["percentage"] = max(merged.get("percentage") or 0, _percentage(step_id, status))
    merged["current_step"] = step_id
    if message:
        merged["message"] = message
    if error:
        merged["error"] = error
    merged["updated_at"] = stamp
    return merged


class ProgressStore:
    """
    Reads and writes job stage/progress.

    Every mutation goes through ``_apply``, which owns the transaction,
    the legality check and the compare-and-swap.
    """

    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_job(self, title: str, has_documents: bool = True, job_id: Optional[str] = None) -> PipelineJob:
        job = PipelineJob(
            id=job_id or str(uuid.uuid4()),
            title=title,
            has_documents=has_documents,
            stage=JobStage.PENDING,
            progress=new_progress(),
            version=0,
        )
        try:
            self.db.add(job)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise DatabaseError("Failed to create job", e)
        self.db.refresh(job)
        logger.info(f"Created job {job.id}: {title}", extra={"has_documents": has_documents})
        return job

    def advance_stage(
        self,
        job_id: str,
        step_id: int,
        status: StepStatus | str,
        message: str = "",
        metadata: Optional[dict] = None,
        error: Optional[str] = None,
        error_details: Optional[dict] = None,
        trigger_source: str = "worker",
    ) -> dict:
        """Record a step status report and move the job's stage accordingly.

        Returns the merged progress payload.

        Raises:
            InvalidProgressUpdateError: unknown step id or status.
            JobNotFoundError: no such job.
            IllegalTransitionError: the table forbids the move from the
                stage persisted right now. The stage is left unchanged.
            ConcurrentUpdateError: lost the optimistic lock too often.
        """
        status = parse_status(status)
        target = target_stage(step_id, status)
        return self._apply(
            job_id, step_id, status, target,
            message=message, metadata=metadata, error=error,
            error_details=error_details, trigger_source=trigger_source,
        )

    def _apply(
        self,
        job_id: str,
        step_id: int,
        status: StepStatus,
        target: Optional[JobStage],
        message: str = "",
        metadata: Optional[dict] = None,
        error: Optional[str] = None,
        error_details: Optional[dict] = None,
        trigger_source: str = "worker",
    ) -> dict:
        for attempt in range(1, MAX_CAS_RETRIES + 1):
            try:
                job = self._load(job_id, for_update=True)
                current = JobStage(job.stage)

                # Upload reports and running-stage heartbeats only touch progress.
                progress_only = target is None or (
                    target == current and status == StepStatus.IN_PROGRESS
                )
                if not progress_only and not is_legal_for_job(current, target, job.has_documents):
                    self.db.rollback()
                    self._record_rejection(job_id, step_id, status, current, target, trigger_source)
                    raise IllegalTransitionError(
                        job_id, current.value, target.value,
                        allowed=[s.value for s in allowed_next_for_job(current, job.has_documents)],
                    )

                now = _now()
                restart = target == JobStage.PENDING and not progress_only
                base = new_progress() if restart else job.progress
                progress = merge_step_record(
                    base, step_id, status, message, now,
                    metadata=metadata, error=error, error_details=error_details,
                )
                new_stage = current if progress_only else target

                values: dict[str, Any] = {
                    "stage": new_stage,
                    "progress": progress,
                    "version": job.version + 1,
                    "updated_at": now,
                }
                if restart:
                    values.update(started_at=None, completed_at=None, error_message=None)
                else:
                    if job.started_at is None and new_stage != JobStage.PENDING:
                        values["started_at"] = now
                    if new_stage in TERMINAL_STAGES and not progress_only:
                        values["completed_at"] = now
                    if new_stage == JobStage.FAILED and not progress_only:
                        values["error_message"] = error or message

                result = self.db.execute(
                    update(PipelineJob)
                    .where(PipelineJob.id == job_id, PipelineJob.version == job.version)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    self.db.rollback()
                    logger.info(
                        "Lost optimistic lock on job %s (attempt %d), re-reading", job_id, attempt,
                    )
                    continue

                if restart:
                    # Old artifacts would count toward the next run's completion barrier.
                    dropped = self.db.execute(
                        delete(StageArtifact).where(StageArtifact.job_id == job_id)
                    ).rowcount
                    logger.info(f"Dropping {dropped} artifact(s) of job {job_id} on restart")

                self.db.add(StageTransition(
                    job_id=job_id,
                    step_id=step_id,
                    status=status.value,
                    from_stage=current.value,
                    to_stage=None if progress_only else new_stage.value,
                    accepted=True,
                    trigger_source=trigger_source,
                ))
                self.db.commit()
            except SQLAlchemyError as e:
                self.db.rollback()
                raise DatabaseError(f"Failed to advance job {job_id}", e)

            if not progress_only:
                logger.info(
                    f"Job {job_id}: {current.value} -> {new_stage.value}",
                    extra={"step_id": step_id, "status": status.value, "trigger_source": trigger_source},
                )
            return progress

        raise ConcurrentUpdateError(job_id, MAX_CAS_RETRIES)

    def _record_rejection(
        self,
        job_id: str,
        step_id: int,
        status: StepStatus,
        current: JobStage,
        target: JobStage,
        trigger_source: str,
    ) -> None:
        """Audit a rejected transition. Never raises."""
        try:
            self.db.add(StageTransition(
                job_id=job_id,
                step_id=step_id,
                status=status.value,
                from_stage=current.value,
                to_stage=target.value,
                accepted=False,
                reason=f"{current.value} -> {target.value} not allowed",
                trigger_source=trigger_source,
            ))
            self.db.commit()
        except SQLAlchemyError as e:
            logger.warning("Failed to audit rejected transition: %s", e)
            self.db.rollback()

    def initialize_stage(self, job_id: str, step_id: int, trigger_source: str = "entrypoint") -> bool:
        """Idempotently enter *step_id*'s init stage.

        Returns True when this call performed the transition, False when
        the job was already at or beyond it (a benign race with another
        initializer).

        Raises:
            IllegalTransitionError: the job is somewhere the stage cannot
                be entered from and has not passed it (e.g. failed).
        """
        step = get_step(step_id)
        try:
            self.advance_stage(
                job_id, step_id, StepStatus.PENDING,
                message=f"{step.name} queued",
                trigger_source=trigger_source,
            )
            return True
        except IllegalTransitionError as e:
            if self.is_benign_race(e):
                logger.info(
                    f"Stage {e.to_stage} already reached by job {job_id} (currently {e.from_stage})",
                    extra={"trigger_source": trigger_source},
                )
                return False
            raise

    @staticmethod
    def is_benign_race(error: IllegalTransitionError) -> bool:
        """An illegal transition whose target the job already reached or passed."""
        return is_at_or_beyond(error.from_stage, error.to_stage)

    def cancel_job(self, job_id: str, reason: str = "Cancelled", trigger_source: str = "api") -> dict:
        job = self._load(job_id)
        step_id = (job.progress or {}).get("current_step") or 1
        return self.advance_stage(
            job_id, step_id, StepStatus.CANCELLED,
            message=reason, trigger_source=trigger_source,
        )

    def restart_job(self, job_id: str, trigger_source: str = "api") -> dict:
        """Send a completed, failed or cancelled job back to pending with fresh progress."""
        return self._apply(
            job_id, 1, StepStatus.PENDING, JobStage.PENDING,
            message="Restarted", trigger_source=trigger_source,
        )

    def approve_stage(self, job_id: str, step_id: int, trigger_source: str = "api") -> dict:
        """Approve a stage awaiting approval and enter the next step.

        Approving the last generation step finishes the job: nothing else
        is queued after it, so it goes through finalizing to completed here.
        """
        step = get_step(step_id)
        next_id = next_step_after(step_id)
        progress = self.advance_stage(
            job_id, next_id, StepStatus.PENDING,
            message=f"{step.name} approved",
            trigger_source=trigger_source,
        )
        if next_id == FINALIZE_STEP:
            progress = self.advance_stage(
                job_id, FINALIZE_STEP, StepStatus.COMPLETED,
                message="Course ready",
                trigger_source=trigger_source,
            )
        return progress

    # ------------------------------------------------------------------
    # Reads (no side effects)
    # ------------------------------------------------------------------

    def _load(self, job_id: str, for_update: bool = False) -> PipelineJob:
        query = self.db.query(PipelineJob).filter(PipelineJob.id == job_id)
        if for_update:
            # Row lock on PostgreSQL; SQLite compiles it away and relies on the CAS.
            query = query.with_for_update()
        job = query.populate_existing().first()
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def get_job(self, job_id: str) -> dict:
        job = self._load(job_id)
        return {
            "id": job.id,
            "title": job.title,
            "has_documents": job.has_documents,
            "stage": JobStage(job.stage).value,
            "progress": copy.deepcopy(job.progress) or new_progress(),
            "version": job.version,
            "error_message": job.error_message,
        }

    def get_model(self, job_id: str) -> PipelineJob:
        return self._load(job_id)

    def first_step(self, job_id: str) -> int:
        """Step a fresh run of this job starts at."""
        job = self._load(job_id)
        return first_step_for(job.has_documents)

    def get_history(self, job_id: str, limit: int = 200) -> list[StageTransition]:
        self._load(job_id)
        return (
            self.db.query(StageTransition)
            .filter(StageTransition.job_id == job_id)
            .order_by(StageTransition.id.asc())
            .limit(limit)
            .all()
        )

    def _is_stuck(self, job: PipelineJob, now: datetime) -> bool:
        stage = JobStage(job.stage)
        if stage in TERMINAL_STAGES or stage == JobStage.PENDING:
            return False
        updated = _as_utc(job.updated_at)
        return updated is not None and now - updated > timedelta(minutes=settings.stuck_after_minutes)

    def get_summary(self, job_id: str) -> dict:
        job = self._load(job_id)
        now = _now()
        started, finished = _as_utc(job.started_at), _as_utc(job.completed_at)
        duration = None
        if started is not None:
            duration = ((finished or now) - started).total_seconds()
        transitions = (
            self.db.query(StageTransition)
            .filter(
                StageTransition.job_id == job_id,
                StageTransition.accepted.is_(True),
                StageTransition.to_stage.isnot(None),
            )
            .count()
        )
        progress = job.progress or {}
        return {
            "job_id": job.id,
            "stage": JobStage(job.stage).value,
            "current_step": progress.get("current_step", 0),
            "percentage": progress.get("percentage", 0),
            "message": progress.get("message", ""),
            "error": progress.get("error"),
            "started_at": started,
            "last_updated": _as_utc(job.updated_at),
            "duration_seconds": duration,
            "is_stuck": self._is_stuck(job, now),
            "transition_count": transitions,
        }

    def list_stuck_jobs(self, limit: int = 100) -> list[PipelineJob]:
        """Non-terminal, started jobs with no update for ``stuck_after_minutes``."""
        cutoff = _now() - timedelta(minutes=settings.stuck_after_minutes)
        idle = [JobStage.PENDING, *TERMINAL_STAGES]
        return (
            self.db.query(PipelineJob)
            .filter(PipelineJob.stage.notin_(idle), PipelineJob.updated_at < cutoff)
            .order_by(PipelineJob.updated_at.asc())
            .limit(limit)
            .all()
        )

