"""Celery tasks for ingredient recognition."""

import logging

from pantrychef.celery_app import app as celery_app
from pantrychef.config import get_settings
from pantrychef.database import SessionLocal
from pantrychef.services.job_queue import JobQueue
from pantrychef.services.recognition_worker import build_recognition_worker

logger = logging.getLogger(__name__)


@celery_app.task(name="tasks.process_recognition_job")
def process_recognition_job(job_id: str) -> dict:
    """Process one recognition job.

    Args:
        job_id: ID of the RecognitionJob record

    Returns:
        Dict with the job's final status
    """
    db = SessionLocal()
    try:
        worker = build_recognition_worker(db)
        job = worker.process(job_id)
        if job is None:
            # Already claimed, finished or cancelled; redelivery is a no-op
            logger.info(f"Recognition job {job_id} not claimable, skipping")
            return {"job_id": job_id, "skipped": True}
        return {
            "job_id": job.id,
            "status": job.status,
            "failure_reason": job.failure_reason,
        }
    except Exception as e:
        logger.exception(f"Error processing recognition job {job_id}")
        return {"job_id": job_id, "error": str(e)}
    finally:
        db.close()


@celery_app.task(name="tasks.requeue_recognition_jobs")
def requeue_recognition_jobs(limit: int = 100) -> dict:
    """Redeliver stale queued jobs and jobs whose visibility timeout expired.

    Runs every minute via celery-beat. Covers dispatches that never reached
    the broker and workers that died mid-job. Queued jobs inside the grace
    period are skipped so a slow backlog doesn't pile up duplicate messages.
    """
    db = SessionLocal()
    try:
        job_ids = JobQueue(db).claimable_job_ids(
            limit=limit, queued_grace=get_settings().requeue_grace_seconds
        )
        for job_id in job_ids:
            process_recognition_job.delay(job_id)
        if job_ids:
            logger.info(f"Requeued {len(job_ids)} recognition jobs")
        return {"requeued": len(job_ids)}
    finally:
        db.close()
