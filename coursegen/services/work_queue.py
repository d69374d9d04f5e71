"""Database-backed queue of stage work items."""

import uuid
import logging
from datetime import datetime, timezone
from typing import Optional, List

from sqlalchemy import update
from sqlalchemy.orm import Session

from ..core.config import settings
from ..models import WorkItem

logger = logging.getLogger(__name__)

# Claim attempts per dequeue when other workers keep winning the same row.
_CLAIM_RETRIES = 5


class WorkQueue:
    """
    Manages stage work items.

    Items are enqueued by the pipeline service, claimed by workers, and
    tracked through queued -> running -> completed/failed transitions.
    Claiming is a conditional UPDATE, so two workers never run one item.
    """

    def __init__(self, db: Session):
        self.db = db

    def enqueue(self, job_id: str, step_id: int, payload: Optional[dict] = None) -> WorkItem:
        item = WorkItem(
            id=str(uuid.uuid4()),
            job_id=job_id,
            step_id=step_id,
            payload=payload or {},
            status="queued",
            # Set here rather than by the server so items enqueued in one call keep their order.
            created_at=datetime.now(timezone.utc),
        )
        self.db.add(item)
        self.db.commit()
        self.db.refresh(item)

        logger.info(f"Enqueued work item {item.id} for job {job_id} step {step_id}")
        return item

    def dequeue(self) -> Optional[WorkItem]:
        """
        Claim the oldest queued item for processing.

        Sets status to 'running' and records started_at.

        Returns:
            The claimed item, or None if nothing is queued
        """
        for _ in range(_CLAIM_RETRIES):
            item = (
                self.db.query(WorkItem)
                .filter(WorkItem.status == "queued")
                .order_by(WorkItem.created_at.asc(), WorkItem.id.asc())
                .first()
            )
            if not item:
                return None

            claimed = self.db.execute(
                update(WorkItem)
                .where(WorkItem.id == item.id, WorkItem.status == "queued")
                .values(status="running", started_at=datetime.now(timezone.utc))
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
            if claimed.rowcount == 1:
                self.db.refresh(item)
                logger.info(f"Claimed work item {item.id} (job {item.job_id}, step {item.step_id})")
                return item
        return None

    def complete(self, item_id: str) -> WorkItem:
        """Mark an item as done."""
        item = self._get(item_id)
        item.status = "completed"
        item.completed_at = datetime.now(timezone.utc)
        self.db.commit()
        self.db.refresh(item)
        return item

    def fail(self, item_id: str, error_message: str, retry: bool = True) -> WorkItem:
        """
        Mark an item as failed.

        Re-queues it while retry_count stays within work_item_max_retries,
        unless *retry* is False.
        """
        item = self._get(item_id)
        item.retry_count += 1

        if retry and item.retry_count <= settings.work_item_max_retries:
            item.status = "queued"
            item.error_message = f"Retry after: {error_message}"
            logger.info(f"Work item {item_id} failed, re-queuing (retry {item.retry_count})")
        else:
            item.status = "failed"
            item.error_message = error_message
            item.completed_at = datetime.now(timezone.utc)
            logger.warning(f"Work item {item_id} failed permanently: {error_message[:200]}")

        self.db.commit()
        self.db.refresh(item)
        return item

    def _get(self, item_id: str) -> WorkItem:
        item = self.db.get(WorkItem, item_id)
        if not item:
            raise ValueError(f"Work item not found: {item_id}")
        return item

    def get_item(self, item_id: str) -> Optional[WorkItem]:
        return self.db.get(WorkItem, item_id)

    def list_for_job(self, job_id: str) -> List[WorkItem]:
        return (
            self.db.query(WorkItem)
            .filter(WorkItem.job_id == job_id)
            .order_by(WorkItem.created_at.asc())
            .all()
        )

    def pending_count(self) -> int:
        return self.db.query(WorkItem).filter(WorkItem.status == "queued").count()
