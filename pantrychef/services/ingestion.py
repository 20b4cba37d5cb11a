"""Image ingestion: validate, persist, enqueue."""

import logging
from collections.abc import Callable

from sqlalchemy.orm import Session

from pantrychef.config import get_settings
from pantrychef.exceptions import (
    EnqueueError,
    JobNotFoundError,
    JobStateError,
    StorageError,
    ValidationError,
)
from pantrychef.models.recognition_job import RecognitionJob
from pantrychef.services.job_queue import JobQueue
from pantrychef.services.storage import FileSystemObjectStore, ObjectStore

logger = logging.getLogger(__name__)

# Called with the job id once the job row is committed (e.g. a Celery task's .delay)
Dispatcher = Callable[[str], object]


class ImageIngestor:
    """Accepts uploaded images and turns them into queued recognition jobs."""

    def __init__(
        self,
        db: Session,
        store: ObjectStore | None = None,
        dispatch: Dispatcher | None = None,
    ):
        self.db = db
        self.settings = get_settings()
        self.store = store or FileSystemObjectStore()
        self.queue = JobQueue(db)
        self.dispatch = dispatch

    def validate(self, image_bytes: bytes, content_type: str) -> None:
        """Raise ValidationError for empty, oversized or non-image uploads."""
        if not image_bytes:
            raise ValidationError("Image is empty")
        if content_type not in self.settings.allowed_image_types:
            raise ValidationError(
                f"Invalid file type. Allowed types: {', '.join(self.settings.allowed_image_types)}"
            )
        if len(image_bytes) > self.settings.max_image_bytes:
            max_mb = self.settings.max_image_bytes / (1024 * 1024)
            raise ValidationError(f"File too large. Maximum size is {max_mb:g}MB.")

    def submit(self, user_id: int, image_bytes: bytes, content_type: str) -> RecognitionJob:
        """Persist an image and enqueue it for recognition.

        Persist-then-enqueue: if the store write fails nothing is enqueued; if
        the enqueue fails the stored image is deleted (best-effort).

        Raises:
            ValidationError: Malformed input
            StorageError: The image could not be stored
            EnqueueError: The image was stored but the job could not be created
        """
        self.validate(image_bytes, content_type)

        image_ref = self.store.put(image_bytes, content_type)

        try:
            job = self.queue.enqueue(user_id, image_ref, content_type)
        except EnqueueError:
            self._rollback_image(image_ref)
            raise

        if self.dispatch is not None:
            try:
                self.dispatch(job.id)
            except Exception as e:
                # Job stays queued; the periodic requeue task will deliver it
                logger.warning(f"Failed to dispatch recognition job {job.id}: {e}")

        return job

    def _rollback_image(self, image_ref: str) -> None:
        try:
            self.store.delete(image_ref)
            logger.info(f"Removed orphaned image {image_ref}")
        except StorageError as e:
            logger.error(f"Failed to remove orphaned image {image_ref}: {e}")

    def get_job(self, user_id: int, job_id: str) -> RecognitionJob:
        """Get a job for status polling."""
        job = self.queue.get(job_id, user_id=user_id)
        if job is None:
            raise JobNotFoundError(f"Recognition job {job_id} not found")
        return job

    def cancel(self, user_id: int, job_id: str) -> RecognitionJob:
        """Cancel a job that has not been claimed by a worker yet."""
        job = self.get_job(user_id, job_id)
        if not self.queue.cancel(job_id, user_id):
            self.db.refresh(job)
            if job.job_status.is_terminal:
                raise JobStateError(f"Recognition job {job_id} already finished as {job.status}")
            raise JobStateError(
                f"Recognition job {job_id} is being processed and cannot be cancelled"
            )
        self.db.refresh(job)
        logger.info(f"Cancelled recognition job {job_id}")
        return job
