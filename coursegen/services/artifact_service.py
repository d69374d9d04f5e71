"""Storage of validated stage artifacts."""

import logging
from typing import Any, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..exceptions import DatabaseError
from ..models import StageArtifact

logger = logging.getLogger(__name__)


class ArtifactService:
    """
    Saves accepted artifacts, one row per (job, step, item).

    Saving the same item twice (a retried work item) overwrites the
    earlier row, so the per-stage item count stays exact.
    """

    def __init__(self, db: Session):
        self.db = db

    def save(
        self,
        job_id: str,
        step_id: int,
        payload: Any,
        strategy_used: str,
        degraded: bool = False,
        item_key: str = "default",
    ) -> StageArtifact:
        try:
            artifact = self._get(job_id, step_id, item_key)
            if artifact is None:
                artifact = StageArtifact(job_id=job_id, step_id=step_id, item_key=item_key)
                self.db.add(artifact)
            artifact.payload = payload
            artifact.strategy_used = strategy_used
            artifact.degraded = degraded
            self.db.commit()
        except IntegrityError:
            # Another worker inserted the same item first; overwrite theirs.
            self.db.rollback()
            artifact = self._get(job_id, step_id, item_key)
            artifact.payload = payload
            artifact.strategy_used = strategy_used
            artifact.degraded = degraded
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise DatabaseError(f"Failed to save artifact for job {job_id} step {step_id}", e)

        self.db.refresh(artifact)
        logger.debug(
            f"Saved artifact {job_id}/{step_id}/{item_key}",
            extra={"strategy_used": strategy_used, "degraded": degraded},
        )
        return artifact

    def _get(self, job_id: str, step_id: int, item_key: str) -> Optional[StageArtifact]:
        return (
            self.db.query(StageArtifact)
            .filter(
                StageArtifact.job_id == job_id,
                StageArtifact.step_id == step_id,
                StageArtifact.item_key == item_key,
            )
            .first()
        )

    def count(self, job_id: str, step_id: int) -> int:
        return (
            self.db.query(StageArtifact)
            .filter(StageArtifact.job_id == job_id, StageArtifact.step_id == step_id)
            .count()
        )

    def list_for_step(self, job_id: str, step_id: int) -> List[StageArtifact]:
        return (
            self.db.query(StageArtifact)
            .filter(StageArtifact.job_id == job_id, StageArtifact.step_id == step_id)
            .order_by(StageArtifact.item_key.asc())
            .all()
        )
