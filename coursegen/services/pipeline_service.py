"""Pipeline entry points: create jobs, start stages, restart.

``start_stage`` is the primary stage initializer. Workers carry a fallback
initializer (see the orchestrator); both go through the same idempotent
``ProgressStore.initialize_stage``, so whichever runs second is a no-op.
"""

import logging
from typing import List, Optional, Sequence

from sqlalchemy.orm import Session

from ..models import PipelineJob, WorkItem
from ..pipeline.stages import GENERATION_STEPS, get_step
from ..exceptions import InvalidProgressUpdateError
from .progress_store import ProgressStore
from .work_queue import WorkQueue

logger = logging.getLogger(__name__)


class PipelineService:
    """
    Orchestrates job creation and stage start-up.

    Encapsulates the progress store and the work queue behind the
    operations the API exposes.
    """

    def __init__(self, db: Session):
        self.db = db
        self.store = ProgressStore(db)
        self.queue = WorkQueue(db)

    def create_job(self, title: str, has_documents: bool = True) -> PipelineJob:
        return self.store.create_job(title, has_documents=has_documents)

    def start_stage(
        self,
        job_id: str,
        step_id: int,
        payloads: Optional[Sequence[dict]] = None,
        trigger_source: str = "entrypoint",
    ) -> List[WorkItem]:
        """Enter *step_id*'s init stage and enqueue one work item per payload.

        With several payloads each gets an ``item_key`` (its index unless
        given) and ``total_items``, which the orchestrator uses as the
        per-stage completion barrier.

        Raises:
            InvalidProgressUpdateError: *step_id* is not a generation step.
            IllegalTransitionError: the stage cannot be entered from the
                job's current stage.
        """
        step = get_step(step_id)
        if step_id not in GENERATION_STEPS:
            raise InvalidProgressUpdateError(
                f"Step {step_id} ({step.name}) is not started through the queue",
                field="step_id",
            )

        payloads = list(payloads or [{}])
        initialized = self.store.initialize_stage(job_id, step_id, trigger_source=trigger_source)
        if not initialized:
            logger.info(f"Stage {step.name} of job {job_id} was already initialized")

        items = []
        total = len(payloads)
        for index, payload in enumerate(payloads):
            payload = dict(payload)
            payload.setdefault("item_key", str(index) if total > 1 else "default")
            payload["total_items"] = total
            items.append(self.queue.enqueue(job_id, step_id, payload))

        logger.info(
            f"Started {step.name} for job {job_id} with {total} item(s)",
            extra={"step_id": step_id, "trigger_source": trigger_source},
        )
        return items

    def start_pipeline(self, job_id: str, payloads: Optional[Sequence[dict]] = None) -> List[WorkItem]:
        """Start the first step of a fresh job (analysis when it has no documents)."""
        return self.start_stage(job_id, self.store.first_step(job_id), payloads)

    def restart(self, job_id: str) -> dict:
        """Send a finished job back to pending.

        The job's stored artifacts are dropped in the same transaction as the
        stage change, so a restarted run never counts stale items.
        """
        progress = self.store.restart_job(job_id)
        logger.info(f"Restarted job {job_id}")
        return progress
