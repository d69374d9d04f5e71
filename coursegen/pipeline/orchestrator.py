"""Pipeline orchestrator: runs one stage invocation for one job.

Per work item the sequence is:

    1. fallback initialization (only when the primary initializer has not
       run yet; idempotent, so racing it is harmless)
    2. advance to the running stage
    3. call the stage handler for its raw output
    4. push the output through the regeneration engine
    5. store the accepted artifact and a generation trace
    6. complete the stage once every item of it has an artifact,
       or fail it with the aggregated validation issues

Illegal transitions anywhere in the sequence are classified instead of
raised: a benign race (another worker got there first) ends the item
quietly, anything else is logged as an error and the item stops.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, Protocol

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.logging_config import job_context
from ..database import SessionLocal
from ..exceptions import IllegalTransitionError, StageHandlerNotFoundError
from ..generation.regenerator import RegenerationEngine, RegenerationResult
from ..generation.schema import Issue, SchemaLike
from ..services.artifact_service import ArtifactService
from ..services.progress_store import ProgressStore
from ..services.trace_service import TraceService
from .stages import FINALIZE_STEP, JobStage, PipelineStep, StepStatus, entry_stages, get_step

logger = logging.getLogger(__name__)

DEFAULT_ITEM_KEY = "default"


@dataclass(frozen=True)
class StageOutput:
    """What a handler produced: the raw generator output and the prompt behind it."""

    raw: Any
    prompt: str = ""
    phase: str = ""


class StageHandler(Protocol):
    step_id: int
    schema: SchemaLike

    def handle(self, job: dict, payload: dict) -> StageOutput:
        ...


@dataclass(frozen=True)
class StageOutcome:
    # completed | in_progress | failed | skipped | rejected
    status: str
    job_id: str
    step_id: int
    item_key: str = DEFAULT_ITEM_KEY
    strategy_used: Optional[str] = None
    degraded: bool = False
    issues: tuple[Issue, ...] = ()
    message: str = ""


class HandlerRegistry:
    """Stage handlers keyed by step id."""

    def __init__(self, handlers: Iterable[StageHandler] = ()) -> None:
        self._handlers: dict[int, StageHandler] = {}
        for handler in handlers:
            self.register(handler)

    def register(self, handler: StageHandler) -> None:
        get_step(handler.step_id)
        self._handlers[handler.step_id] = handler

    def get(self, step_id: int) -> StageHandler:
        try:
            return self._handlers[step_id]
        except KeyError:
            raise StageHandlerNotFoundError(step_id)

    def __contains__(self, step_id: int) -> bool:
        return step_id in self._handlers


class PipelineOrchestrator:
    """
    Drives stage work items through handler, regeneration and the progress store.

    Args:
        registry: Stage handlers.
        regenerator: Regeneration engine shared by all stages.
        session_factory: Creates one database session per stage run.
        enabled_strategies: Repair strategies to use (default: configured).
        max_attempts_per_strategy: Attempts per strategy (default: configured).
        on_stage_complete: Called with ``(job_id, step_id)`` after a stage
            completes.
    """

    def __init__(
        self,
        registry: HandlerRegistry,
        regenerator: RegenerationEngine,
        session_factory: Callable[[], Session] = SessionLocal,
        enabled_strategies: Optional[Iterable[str]] = None,
        max_attempts_per_strategy: Optional[int] = None,
        on_stage_complete: Optional[Callable[[str, int], None]] = None,
    ) -> None:
        self.registry = registry
        self.regenerator = regenerator
        self.session_factory = session_factory
        self.enabled_strategies = list(enabled_strategies) if enabled_strategies is not None else None
        self.max_attempts_per_strategy = (
            settings.regeneration_max_attempts if max_attempts_per_strategy is None else max_attempts_per_strategy
        )
        if self.max_attempts_per_strategy < 1:
            raise ValueError("max_attempts_per_strategy must be at least 1")
        self.on_stage_complete = on_stage_complete

    def run_stage(self, job_id: str, step_id: int, payload: Optional[dict] = None) -> StageOutcome:
        """Run one work item of *step_id* for *job_id*."""
        payload = dict(payload or {})
        item_key = str(payload.get("item_key", DEFAULT_ITEM_KEY))
        total_items = max(int(payload.get("total_items", 1)), 1)
        handler = self.registry.get(step_id)
        step = get_step(step_id)

        with job_context(job_id):
            db = self.session_factory()
            try:
                store = ProgressStore(db)
                try:
                    return self._run(db, store, handler, step, job_id, item_key, total_items, payload)
                except IllegalTransitionError as e:
                    return self._classify(e, job_id, step_id, item_key)
            finally:
                db.close()

    def _run(
        self,
        db: Session,
        store: ProgressStore,
        handler: StageHandler,
        step: PipelineStep,
        job_id: str,
        item_key: str,
        total_items: int,
        payload: dict,
    ) -> StageOutcome:
        self._ensure_initialized(store, job_id, step)
        store.advance_stage(
            job_id, step.step_id, StepStatus.IN_PROGRESS,
            message=f"{step.name} running",
            metadata={"total_items": total_items},
        )

        job = store.get_job(job_id)
        started = time.monotonic()
        try:
            output = handler.handle(job, payload)
        except Exception as e:
            logger.error(f"Stage handler for {step.name} raised: {e}", exc_info=True)
            return self._fail(store, job_id, step, item_key, f"Stage handler failed: {e}")
        if not isinstance(output, StageOutput):
            output = StageOutput(raw=output)

        result = self.regenerator.regenerate(
            handler.schema,
            output.raw,
            output.prompt,
            enabled_strategies=self.enabled_strategies,
            max_attempts_per_strategy=self.max_attempts_per_strategy,
        )
        self._trace(db, job_id, step, item_key, output, result, started)

        if not result.success:
            return self._fail(
                store, job_id, step, item_key,
                result.error or "Generation failed",
                issues=result.issues,
            )

        artifacts = ArtifactService(db)
        artifacts.save(
            job_id, step.step_id, result.artifact,
            strategy_used=result.strategy_used,
            degraded=result.degraded,
            item_key=item_key,
        )
        done = artifacts.count(job_id, step.step_id)

        if done < total_items:
            store.advance_stage(
                job_id, step.step_id, StepStatus.IN_PROGRESS,
                message=f"{step.name}: {done}/{total_items} items done",
                metadata={"completed_items": done, "total_items": total_items},
            )
            return StageOutcome(
                "in_progress", job_id, step.step_id, item_key,
                strategy_used=result.strategy_used, degraded=result.degraded,
                message=f"{done}/{total_items} items done",
            )

        try:
            store.advance_stage(
                job_id, step.step_id, StepStatus.COMPLETED,
                message=f"{step.name} complete",
                metadata={"completed_items": done, "total_items": total_items},
            )
            if getattr(handler, "requires_approval", False):
                store.advance_stage(
                    job_id, step.step_id, StepStatus.AWAITING_APPROVAL,
                    message=f"{step.name} awaiting approval",
                )
        except IllegalTransitionError as e:
            if not ProgressStore.is_benign_race(e):
                raise
            # The last two items finished together; the other one completed the stage.
            logger.info(f"{step.name} of job {job_id} already completed by another worker")
            return StageOutcome(
                "completed", job_id, step.step_id, item_key,
                strategy_used=result.strategy_used, degraded=result.degraded,
                message="already completed",
            )

        if self.on_stage_complete is not None:
            self.on_stage_complete(job_id, step.step_id)
        return StageOutcome(
            "completed", job_id, step.step_id, item_key,
            strategy_used=result.strategy_used, degraded=result.degraded,
            message=f"{step.name} complete",
        )

    def _ensure_initialized(self, store: ProgressStore, job_id: str, step: PipelineStep) -> None:
        """Fallback initializer: enter the init stage if nobody has yet."""
        current = JobStage(store.get_job(job_id)["stage"])
        if current not in entry_stages(step.step_id):
            return
        if current == JobStage.PENDING and store.first_step(job_id) != step.step_id:
            # A fresh run only starts at its first step; the item is rejected further on.
            return
        if store.initialize_stage(job_id, step.step_id, trigger_source="worker-fallback"):
            logger.warning(
                f"Primary initializer had not run; worker initialized {step.name} for job {job_id}",
                extra={"from_stage": current.value},
            )

    def _fail(
        self,
        store: ProgressStore,
        job_id: str,
        step: PipelineStep,
        item_key: str,
        error: str,
        issues: tuple[Issue, ...] = (),
    ) -> StageOutcome:
        message = "Generation failed, please retry"
        store.advance_stage(
            job_id, step.step_id, StepStatus.FAILED,
            message=message,
            error=error,
            error_details={"item_key": item_key, "issues": [i.to_dict() for i in issues]},
        )
        logger.error(
            f"{step.name} failed for job {job_id}: {error}",
            extra={"item_key": item_key, "issue_count": len(issues)},
        )
        return StageOutcome(
            "failed", job_id, step.step_id, item_key,
            issues=tuple(issues), message=message,
        )

    def _classify(self, error: IllegalTransitionError, job_id: str, step_id: int, item_key: str) -> StageOutcome:
        if ProgressStore.is_benign_race(error):
            logger.info(
                f"Benign race on job {job_id}: {error.from_stage} already at or past {error.to_stage}",
                extra={"step_id": step_id, "item_key": item_key},
            )
            return StageOutcome("skipped", job_id, step_id, item_key, message=error.message)

        logger.error(
            f"Illegal transition on job {job_id}: {error.from_stage} -> {error.to_stage}",
            extra={"step_id": step_id, "item_key": item_key, "allowed": error.allowed},
        )
        return StageOutcome("rejected", job_id, step_id, item_key, message=error.message)

    def _trace(
        self,
        db: Session,
        job_id: str,
        step: PipelineStep,
        item_key: str,
        output: StageOutput,
        result: RegenerationResult,
        started: float,
    ) -> None:
        if not result.success:
            status = "failed"
        elif result.degraded:
            status = "degraded"
        else:
            status = "success"
        TraceService(db).record(
            job_id=job_id,
            step_id=step.step_id,
            stage=step.running.value,
            phase=output.phase,
            item_key=item_key,
            status=status,
            strategy_used=result.strategy_used,
            attempts=result.attempts,
            models_used=result.models_used,
            issues=[i.to_dict() for i in result.issues],
            prompt_text=output.prompt or None,
            error=result.error,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    def finalize(self, job_id: str) -> StageOutcome:
        """Move a job whose last stage is done through finalizing to completed."""
        with job_context(job_id):
            db = self.session_factory()
            try:
                store = ProgressStore(db)
                try:
                    store.advance_stage(job_id, FINALIZE_STEP, StepStatus.IN_PROGRESS, message="Finalizing")
                    store.advance_stage(job_id, FINALIZE_STEP, StepStatus.COMPLETED, message="Course ready")
                except IllegalTransitionError as e:
                    return self._classify(e, job_id, FINALIZE_STEP, DEFAULT_ITEM_KEY)
                logger.info(f"Job {job_id} completed")
                return StageOutcome("completed", job_id, FINALIZE_STEP, message="Course ready")
            finally:
                db.close()
