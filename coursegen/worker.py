"""
Polling worker for stage work items.

Checks the work_items table every WORKER_POLL_INTERVAL seconds, claims one
item at a time per thread, and runs it through the pipeline orchestrator.
Items whose stage failed are closed for good (a failed stage needs an
explicit restart); unexpected errors re-queue the item up to
WORK_ITEM_MAX_RETRIES times.

When the last generation stage completes, the worker finalizes the job.

Usage:
    STAGE_HANDLERS=mypackage.handlers:build_handlers python -m coursegen.worker
"""

import importlib
import logging
import threading
import time
from typing import Callable, Optional

from sqlalchemy.orm import Session

from .core.config import ConfigurationError, settings
from .core.logging_config import setup_logging
from .database import SessionLocal, init_db
from .generation.generator import default_generator
from .generation.regenerator import RegenerationEngine
from .pipeline.orchestrator import HandlerRegistry, PipelineOrchestrator, StageOutcome
from .pipeline.stages import GENERATION_STEPS
from .services.work_queue import WorkQueue

logger = logging.getLogger("coursegen.worker")


def load_handlers(path: str) -> HandlerRegistry:
    """Import ``module:callable`` and register the handlers it returns."""
    if ":" not in path:
        raise ConfigurationError(f"STAGE_HANDLERS must look like 'module:callable', got {path!r}")
    module_name, attr = path.split(":", 1)
    factory = getattr(importlib.import_module(module_name), attr)
    return HandlerRegistry(factory())


def build_orchestrator(
    registry: HandlerRegistry,
    session_factory: Callable[[], Session] = SessionLocal,
) -> PipelineOrchestrator:
    """Orchestrator wired to the configured generator and repair chain."""
    regenerator = RegenerationEngine(
        generator=default_generator(),
        escalation_models=settings.get_escalation_models(),
    )
    orchestrator = PipelineOrchestrator(
        registry,
        regenerator,
        session_factory=session_factory,
        enabled_strategies=settings.get_enabled_strategies(),
    )

    def _finalize_after_last_stage(job_id: str, step_id: int) -> None:
        if step_id == GENERATION_STEPS[-1] and not getattr(registry.get(step_id), "requires_approval", False):
            orchestrator.finalize(job_id)

    orchestrator.on_stage_complete = _finalize_after_last_stage
    return orchestrator


def process_item(
    orchestrator: PipelineOrchestrator,
    session_factory: Callable[[], Session] = SessionLocal,
) -> Optional[StageOutcome]:
    """
    Claim and run one work item.

    Returns the stage outcome, or None when the queue was empty or the
    item raised.
    """
    db = session_factory()
    try:
        queue = WorkQueue(db)
        item = queue.dequeue()
        if item is None:
            return None

        logger.info(f"Processing work item {item.id}: job {item.job_id} step {item.step_id}")
        try:
            outcome = orchestrator.run_stage(item.job_id, item.step_id, item.payload)
        except Exception as e:
            logger.error(f"Work item {item.id} error: {e}", exc_info=True)
            queue.fail(item.id, str(e))
            return None

        if outcome.status in ("failed", "rejected"):
            queue.fail(item.id, outcome.message or outcome.status, retry=False)
        else:
            queue.complete(item.id)
        return outcome
    finally:
        db.close()


def run_worker(
    orchestrator: PipelineOrchestrator,
    stop_event: Optional[threading.Event] = None,
    poll_interval: Optional[float] = None,
    session_factory: Callable[[], Session] = SessionLocal,
) -> None:
    """Poll for work until *stop_event* is set."""
    stop_event = stop_event or threading.Event()
    interval = settings.worker_poll_interval if poll_interval is None else poll_interval

    while not stop_event.is_set():
        try:
            db = session_factory()
            try:
                has_work = WorkQueue(db).pending_count() > 0
            finally:
                db.close()
            if has_work:
                process_item(orchestrator, session_factory)
                continue
        except Exception as e:
            logger.error(f"Worker loop error: {e}", exc_info=True)
        stop_event.wait(interval)


def main() -> None:
    """Start WORKER_CONCURRENCY polling threads."""
    setup_logging(log_level=settings.log_level, log_format=settings.log_format)
    settings.validate_production_config()
    if not settings.stage_handlers:
        raise ConfigurationError("STAGE_HANDLERS is not set; the worker has nothing to run")

    init_db()
    orchestrator = build_orchestrator(load_handlers(settings.stage_handlers))

    stop_event = threading.Event()
    threads = [
        threading.Thread(
            target=run_worker,
            args=(orchestrator, stop_event),
            name=f"worker-{index}",
            daemon=True,
        )
        for index in range(settings.worker_concurrency)
    ]
    logger.info(f"Worker started with {len(threads)} thread(s), polling every {settings.worker_poll_interval}s")
    for thread in threads:
        thread.start()

    try:
        while any(t.is_alive() for t in threads):
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Worker shutting down")
        stop_event.set()
        for thread in threads:
            thread.join(timeout=30)


if __name__ == "__main__":
    main()
