"""RecognitionJob model for tracking image uploads through recognition."""

import uuid

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text

from pantrychef.database import Base
from pantrychef.models.enums import JobStatus
from pantrychef.models.mixins import TimestampMixin
from pantrychef.utils_time import utcnow


class RecognitionJob(Base, TimestampMixin):
    """A queued image awaiting (or done with) ingredient recognition.

    The row is the queue entry: workers claim it by compare-and-set on
    ``status`` and ``visible_at``, so a job is processed by one worker at a time.
    """

    __tablename__ = "recognition_jobs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(Integer, nullable=False, index=True)
    image_ref = Column(String(255), nullable=False)
    content_type = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False, default=JobStatus.QUEUED.value, index=True)
    submitted_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    # Claim bookkeeping
    attempts = Column(Integer, nullable=False, default=0)
    claimed_by = Column(String(100), nullable=True)
    visible_at = Column(DateTime(timezone=True), nullable=True)  # reclaimable after this

    # Outcome
    failure_reason = Column(String(50), nullable=True)  # e.g. "InferenceTimeout"
    error_message = Column(Text, nullable=True)
    candidates = Column(JSON, nullable=True)  # list of {label, confidence, bounding_region?}
    report = Column(JSON, nullable=True)  # ReconciliationReport as dict
    processed_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def job_status(self) -> JobStatus:
        return JobStatus(self.status)
