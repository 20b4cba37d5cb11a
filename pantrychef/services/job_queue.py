"""Database-backed recognition job queue.

Delivery is at-least-once. A job is claimed with a single conditional UPDATE
(compare-and-set on status and visibility deadline), so two workers can never
hold the same job; a claim whose worker dies expires after the visibility
timeout and the job becomes claimable again.
"""

import logging
from datetime import timedelta
from typing import Any

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from pantrychef.config import get_settings
from pantrychef.exceptions import EnqueueError
from pantrychef.models.enums import JobStatus
from pantrychef.models.recognition_job import RecognitionJob
from pantrychef.utils_time import utcnow

logger = logging.getLogger(__name__)


class JobQueue:
    """Queue operations over the ``recognition_jobs`` table."""

    def __init__(self, db: Session, visibility_timeout: float | None = None):
        self.db = db
        settings = get_settings()
        self.visibility_timeout = timedelta(
            seconds=visibility_timeout
            if visibility_timeout is not None
            else settings.visibility_timeout_seconds
        )

    @staticmethod
    def _claimable(now):
        return or_(
            RecognitionJob.status == JobStatus.QUEUED.value,
            and_(
                RecognitionJob.status == JobStatus.PROCESSING.value,
                RecognitionJob.visible_at < now,
            ),
        )

    def enqueue(self, user_id: int, image_ref: str, content_type: str) -> RecognitionJob:
        """Create a queued job. Raises EnqueueError if the row cannot be written."""
        job = RecognitionJob(
            user_id=user_id,
            image_ref=image_ref,
            content_type=content_type,
            status=JobStatus.QUEUED.value,
            submitted_at=utcnow(),
            attempts=0,
        )
        try:
            self.db.add(job)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to enqueue recognition job for {image_ref}: {e}")
            raise EnqueueError(f"Failed to enqueue recognition job: {e}") from e
        self.db.refresh(job)
        logger.info(f"Enqueued recognition job {job.id} for user {user_id}")
        return job

    def get(self, job_id: str, user_id: int | None = None) -> RecognitionJob | None:
        query = self.db.query(RecognitionJob).filter(RecognitionJob.id == job_id)
        if user_id is not None:
            query = query.filter(RecognitionJob.user_id == user_id)
        return query.first()

    def claim(self, worker_id: str, job_id: str | None = None) -> RecognitionJob | None:
        """Atomically move a job to processing.

        Args:
            worker_id: Identifier recorded as the job's owner
            job_id: Specific job to claim, or None for the oldest claimable job

        Returns:
            The claimed job, or None if nothing was claimable
        """
        if job_id is None:
            ids = self.claimable_job_ids(limit=1)
            if not ids:
                return None
            job_id = ids[0]

        now = utcnow()
        result = self.db.execute(
            update(RecognitionJob)
            .where(RecognitionJob.id == job_id, self._claimable(now))
            .values(
                status=JobStatus.PROCESSING.value,
                claimed_by=worker_id,
                visible_at=now + self.visibility_timeout,
                attempts=RecognitionJob.attempts + 1,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if result.rowcount != 1:
            logger.debug(f"Job {job_id} not claimable by {worker_id}")
            return None

        job = self.db.get(RecognitionJob, job_id)
        self.db.refresh(job)
        logger.info(f"Worker {worker_id} claimed job {job_id} (delivery {job.attempts})")
        return job

    def claim_batch(self, worker_id: str, limit: int) -> list[RecognitionJob]:
        """Claim up to ``limit`` jobs, oldest first."""
        claimed = []
        for job_id in self.claimable_job_ids(limit=limit * 2):
            if len(claimed) >= limit:
                break
            job = self.claim(worker_id, job_id)
            if job is not None:
                claimed.append(job)
        return claimed

    def claimable_job_ids(
        self, limit: int | None = None, queued_grace: float | None = None
    ) -> list[str]:
        """Ids of queued jobs and of processing jobs whose claim has expired.

        With ``queued_grace``, queued jobs submitted less than that many seconds
        ago are left out; their first dispatch is likely still in the broker.
        """
        now = utcnow()
        claimable = self._claimable(now)
        if queued_grace is not None:
            claimable = and_(
                claimable,
                or_(
                    RecognitionJob.status != JobStatus.QUEUED.value,
                    RecognitionJob.submitted_at <= now - timedelta(seconds=queued_grace),
                ),
            )
        stmt = (
            select(RecognitionJob.id)
            .where(claimable)
            .order_by(RecognitionJob.submitted_at, RecognitionJob.id)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.db.execute(stmt).scalars())

    def extend_visibility(self, job_id: str, worker_id: str) -> bool:
        """Push the visibility deadline forward while a worker still holds the job."""
        result = self.db.execute(
            update(RecognitionJob)
            .where(
                RecognitionJob.id == job_id,
                RecognitionJob.status == JobStatus.PROCESSING.value,
                RecognitionJob.claimed_by == worker_id,
            )
            .values(visible_at=utcnow() + self.visibility_timeout)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount == 1

    def _finish(self, job_id: str, worker_id: str | None, values: dict[str, Any]) -> bool:
        conditions = [
            RecognitionJob.id == job_id,
            RecognitionJob.status == JobStatus.PROCESSING.value,
        ]
        if worker_id is not None:
            conditions.append(RecognitionJob.claimed_by == worker_id)
        result = self.db.execute(
            update(RecognitionJob)
            .where(*conditions)
            .values(processed_at=utcnow(), visible_at=None, **values)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if result.rowcount != 1:
            logger.warning(f"Job {job_id} is no longer held by {worker_id}; result discarded")
            return False
        return True

    def complete(
        self,
        job_id: str,
        worker_id: str | None,
        candidates: list[dict],
        report: dict,
    ) -> bool:
        """Mark a held job completed with its candidates and report attached."""
        return self._finish(
            job_id,
            worker_id,
            {
                "status": JobStatus.COMPLETED.value,
                "candidates": candidates,
                "report": report,
                "failure_reason": None,
                "error_message": None,
            },
        )

    def fail(
        self,
        job_id: str,
        worker_id: str | None,
        reason: str,
        message: str | None = None,
        candidates: list[dict] | None = None,
        report: dict | None = None,
    ) -> bool:
        """Mark a held job failed with a reason string."""
        return self._finish(
            job_id,
            worker_id,
            {
                "status": JobStatus.FAILED.value,
                "failure_reason": reason,
                "error_message": message,
                "candidates": candidates,
                "report": report,
            },
        )

    def cancel(self, job_id: str, user_id: int) -> bool:
        """Cancel a job that no worker has claimed yet."""
        result = self.db.execute(
            update(RecognitionJob)
            .where(
                RecognitionJob.id == job_id,
                RecognitionJob.user_id == user_id,
                RecognitionJob.status == JobStatus.QUEUED.value,
            )
            .values(status=JobStatus.CANCELLED.value, processed_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount == 1
