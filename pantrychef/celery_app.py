"""Celery application configuration."""

from celery import Celery

from pantrychef.config import get_settings

settings = get_settings()

app = Celery(
    "pantrychef",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["pantrychef.tasks.recognition"],
)

# Celery configuration
app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    # A task must finish before its job's claim expires and another worker takes it
    task_time_limit=settings.visibility_timeout_seconds,
    task_soft_time_limit=int(settings.visibility_timeout_seconds * 0.8),
    # At-least-once delivery: ack after the task body runs, one job per worker slot
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    broker_transport_options={"visibility_timeout": settings.visibility_timeout_seconds},
    beat_schedule={
        "requeue-recognition-jobs": {
            "task": "tasks.requeue_recognition_jobs",
            "schedule": 60.0,
        },
    },
)
