"""
Persistence of batch records.

A batch is one ``image_batches`` row whose ``successful_images`` and
``failed_images`` JSON lists grow one outcome at a time. Every append
recomputes the status; conflicting writers are detected through the row's
version counter and retried.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm.exc import StaleDataError

from .database_models import ImageBatch, BatchStatus, db_manager
from .errors import BatchNotFound
from .executor import Outcome

logger = logging.getLogger(__name__)

MAX_APPEND_ATTEMPTS = 20


def compute_status(total: int, successful: int, failed: int) -> BatchStatus:
    """Status implied by the recorded outcome counts"""
    if successful + failed < total:
        return BatchStatus.PROCESSING
    if failed == 0:
        return BatchStatus.COMPLETED
    if successful == 0:
        return BatchStatus.FAILED
    return BatchStatus.PARTIAL


def default_batch_name(batch_id: str) -> str:
    return f"Batch {batch_id[-8:]}"


class BatchStore:
    """Create, update and read batch records"""

    @staticmethod
    def _utc_now():
        return datetime.now(timezone.utc)

    @staticmethod
    def _get_batch(session, batch_id: str, user_id: Optional[str] = None) -> ImageBatch:
        batch = session.get(ImageBatch, batch_id)
        if not batch or (user_id is not None and batch.user_id != user_id):
            raise BatchNotFound(f"Batch {batch_id} not found",
                                details={'batch_id': batch_id})
        return batch

    def create_batch(self, user_id: str, total_images: int, name: Optional[str] = None,
                     remaining_tokens: int = 0, batch_id: Optional[str] = None) -> Dict[str, Any]:
        """Create a batch in ``processing`` with empty outcome lists"""
        if total_images < 0:
            raise ValueError("total_images cannot be negative")

        batch_id = batch_id or uuid.uuid4().hex
        with db_manager.get_session() as session:
            batch = ImageBatch(
                batch_id=batch_id,
                name=(name or '').strip() or default_batch_name(batch_id),
                user_id=user_id,
                total_images=total_images,
                successful_images=[],
                failed_images=[],
                status=compute_status(total_images, 0, 0),
                remaining_tokens=remaining_tokens,
                tokens_used=0,
            )
            session.add(batch)
            if batch.is_terminal:
                batch.completed_at = self._utc_now()
            session.commit()

            logger.info(
                f"Created batch {batch.batch_id} for user {user_id} with {total_images} images")
            return batch.to_dict()

    def append_outcome(self, batch_id: str, outcome: Outcome,
                       remaining_tokens: Optional[int] = None,
                       tokens_debited: int = 0) -> Dict[str, Any]:
        """Record one image outcome and recompute the batch status.

        Appending an ``image_id`` that is already recorded is a no-op.
        """
        entry = outcome.to_dict()

        for attempt in range(1, MAX_APPEND_ATTEMPTS + 1):
            with db_manager.get_session() as session:
                batch = self._get_batch(session, batch_id)

                if outcome.image_id in batch.recorded_image_ids():
                    logger.debug(
                        f"Outcome for image {outcome.image_id} already recorded on batch {batch_id}")
                    return batch.to_dict()

                if batch.recorded_count >= batch.total_images:
                    raise ValueError(
                        f"Batch {batch_id} already has all {batch.total_images} outcomes")

                # New list objects so the JSON columns are flagged dirty
                if outcome.success:
                    batch.successful_images = list(batch.successful_images or []) + [entry]
                    batch.tokens_used = (batch.tokens_used or 0) + tokens_debited
                else:
                    batch.failed_images = list(batch.failed_images or []) + [entry]

                if remaining_tokens is not None:
                    batch.remaining_tokens = remaining_tokens

                batch.status = compute_status(
                    batch.total_images,
                    len(batch.successful_images),
                    len(batch.failed_images))
                if batch.is_terminal and not batch.completed_at:
                    batch.completed_at = self._utc_now()

                try:
                    session.commit()
                except StaleDataError:
                    session.rollback()
                    logger.warning(
                        f"Concurrent update on batch {batch_id}, retrying append "
                        f"(attempt {attempt}/{MAX_APPEND_ATTEMPTS})")
                    continue

                return batch.to_dict()

        raise RuntimeError(
            f"Could not append outcome to batch {batch_id} after {MAX_APPEND_ATTEMPTS} attempts")

    def finalize(self, batch_id: str) -> Dict[str, Any]:
        """Confirm the terminal status once every outcome is recorded.

        Idempotent: a finalized batch is returned unchanged.
        """
        with db_manager.get_session() as session:
            batch = self._get_batch(session, batch_id)

            if batch.recorded_count < batch.total_images:
                raise ValueError(
                    f"Batch {batch_id} has {batch.total_images - batch.recorded_count} outstanding images")

            status = compute_status(batch.total_images,
                                    batch.successful_images_count,
                                    batch.failed_images_count)
            if batch.status != status or not batch.completed_at:
                batch.status = status
                batch.completed_at = batch.completed_at or self._utc_now()
                session.commit()

            logger.info(
                f"Batch {batch_id} finished as {batch.status.value}: "
                f"{batch.successful_images_count} succeeded, {batch.failed_images_count} failed")
            return batch.to_dict()

    def get_batch(self, batch_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Latest committed state of a batch; other users' batches are not found"""
        with db_manager.get_session() as session:
            return self._get_batch(session, batch_id, user_id).to_dict()

    def list_batches(self, user_id: str, limit: int = 50, offset: int = 0,
                     status_filter: Optional[str] = None) -> List[Dict[str, Any]]:
        """Caller's batches, newest first"""
        with db_manager.get_session() as session:
            query = session.query(ImageBatch).filter(ImageBatch.user_id == user_id)
            if status_filter:
                query = query.filter(ImageBatch.status == BatchStatus(status_filter))
            batches = (query.order_by(ImageBatch.created_at.desc(), ImageBatch.batch_id)
                       .offset(offset).limit(limit).all())
            return [batch.to_summary_dict() for batch in batches]

    def rename_batch(self, batch_id: str, user_id: str, name: str) -> Dict[str, Any]:
        name = (name or '').strip()
        if not name:
            raise ValueError("Batch name cannot be empty")
        if len(name) > 255:
            raise ValueError("Batch name is too long (max 255 characters)")

        for attempt in range(MAX_APPEND_ATTEMPTS):
            with db_manager.get_session() as session:
                batch = self._get_batch(session, batch_id, user_id)
                batch.name = name
                try:
                    session.commit()
                except StaleDataError:
                    session.rollback()
                    continue
                logger.info(f"Renamed batch {batch_id} to '{name}'")
                return batch.to_dict()

        raise RuntimeError(f"Could not rename batch {batch_id}")


# Global batch store instance
batch_store = BatchStore()
