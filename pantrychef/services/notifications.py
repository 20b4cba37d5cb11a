"""Recognition completion events over Redis pub/sub."""

import json
import logging
from enum import StrEnum

import redis

from pantrychef.config import get_settings
from pantrychef.schemas.pantry import ReconciliationReport
from pantrychef.utils_time import utcnow

logger = logging.getLogger(__name__)
settings = get_settings()


class RecognitionEventType(StrEnum):
    """Event types published to a user's recognition channel."""

    RECOGNITION_COMPLETED = "recognition_completed"
    RECOGNITION_FAILED = "recognition_failed"


# Synchronous Redis client shared by API endpoints and workers
_sync_redis: redis.Redis | None = None


def get_sync_redis() -> redis.Redis:
    """Get synchronous Redis client for publishing events."""
    global _sync_redis
    if _sync_redis is None:
        _sync_redis = redis.from_url(settings.redis_url)
    return _sync_redis


def recognition_channel(user_id: int) -> str:
    return f"user:{user_id}:recognition"


class RecognitionNotifier:
    """Fire-and-forget notifications for UI and push collaborators."""

    def __init__(self, client: redis.Redis | None = None):
        self._client = client

    @property
    def client(self) -> redis.Redis:
        return self._client or get_sync_redis()

    def on_recognition_complete(self, job_id: str, report: ReconciliationReport) -> None:
        """Publish a job's outcome. Delivery is best-effort."""
        event_type = (
            RecognitionEventType.RECOGNITION_FAILED
            if report.failure_reason
            else RecognitionEventType.RECOGNITION_COMPLETED
        )
        message = {
            "type": event_type,
            "job_id": job_id,
            "user_id": report.user_id,
            "timestamp": utcnow().isoformat(),
            "data": report.model_dump(mode="json"),
        }
        try:
            channel = recognition_channel(report.user_id)
            self.client.publish(channel, json.dumps(message))
            logger.debug(f"Published {event_type} to {channel}")
        except Exception as e:
            # Don't fail the job if pub/sub fails
            logger.error(f"Failed to publish recognition event for job {job_id}: {e}")
