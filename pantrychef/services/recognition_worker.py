"""Recognition worker: claim a job, infer, resolve, reconcile, report."""

import logging
import os
import socket
import threading
import time
import uuid
from collections.abc import Callable

from sqlalchemy.orm import Session

from pantrychef.config import get_settings
from pantrychef.exceptions import InferenceError, InferenceFailure, StorageError
from pantrychef.models.recognition_job import RecognitionJob
from pantrychef.schemas.pantry import ReconciliationReport
from pantrychef.schemas.recognition import RecognitionCandidate
from pantrychef.services.confidence_resolver import ConfidenceResolver
from pantrychef.services.inference import InferenceBackend, build_inference_backend
from pantrychef.services.job_queue import JobQueue
from pantrychef.services.match_cache import get_match_cache
from pantrychef.services.notifications import RecognitionNotifier
from pantrychef.services.pantry_service import PantryReconciler
from pantrychef.services.storage import FileSystemObjectStore

logger = logging.getLogger(__name__)

DELIVERY_LIMIT_EXCEEDED = "DeliveryLimitExceeded"
STORAGE_FAILURE = "StorageError"
INTERNAL_FAILURE = "InternalError"


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class RecognitionWorker:
    """Processes recognition jobs from the shared queue.

    Failures are recorded on the job (status polling exposes them) and are
    never raised to the caller.
    """

    def __init__(
        self,
        db: Session,
        backend: InferenceBackend,
        resolver: ConfidenceResolver | None = None,
        reconciler: PantryReconciler | None = None,
        notifier: RecognitionNotifier | None = None,
        worker_id: str | None = None,
        max_attempts: int | None = None,
        backoff_base: float | None = None,
        backoff_max: float | None = None,
        inference_timeout: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        settings = get_settings()
        self.db = db
        self.queue = JobQueue(db)
        self.backend = backend
        self.resolver = resolver or ConfidenceResolver()
        self.reconciler = reconciler or PantryReconciler(db)
        self.notifier = notifier or RecognitionNotifier()
        self.worker_id = worker_id or default_worker_id()
        self.max_attempts = max_attempts or settings.inference_max_attempts
        self.backoff_base = settings.inference_backoff_base if backoff_base is None else backoff_base
        self.backoff_max = settings.inference_backoff_max if backoff_max is None else backoff_max
        self.inference_timeout = inference_timeout or settings.inference_timeout_seconds
        self.max_deliveries = settings.max_job_deliveries
        self.batch_size = settings.worker_batch_size
        self.poll_interval = settings.poll_interval_seconds
        self.poll_timeout = settings.poll_timeout_seconds
        self.sleep = sleep
        self.clock = clock

    def process(self, job_id: str | None = None) -> RecognitionJob | None:
        """Claim and process one job (a specific one, or the oldest claimable).

        Returns:
            The job in its final state, or None if nothing could be claimed
        """
        job = self.queue.claim(self.worker_id, job_id)
        if job is None:
            return None
        self._process_claimed(job)
        return self.queue.get(job.id)

    def run_once(self, batch_size: int | None = None) -> list[RecognitionJob]:
        """Claim a bounded batch and process each job in turn."""
        jobs = self.queue.claim_batch(self.worker_id, batch_size or self.batch_size)
        for job in jobs:
            self._process_claimed(job)
        return [self.queue.get(job.id) for job in jobs]

    def poll(self, poll_timeout: float | None = None) -> RecognitionJob | None:
        """Wait up to ``poll_timeout`` seconds for a job and process it."""
        timeout = self.poll_timeout if poll_timeout is None else poll_timeout
        deadline = self.clock() + timeout
        while True:
            job = self.process()
            if job is not None:
                return job
            remaining = deadline - self.clock()
            if remaining <= 0:
                return None
            self.sleep(min(self.poll_interval, remaining))

    def _process_claimed(self, job: RecognitionJob) -> None:
        job_id, user_id, image_ref = job.id, job.user_id, job.image_ref

        if job.attempts > self.max_deliveries:
            self._fail(
                job_id,
                user_id,
                DELIVERY_LIMIT_EXCEEDED,
                f"Job was delivered {job.attempts} times without completing",
            )
            return

        try:
            candidates = self._infer_with_retries(job_id, image_ref)
        except InferenceError as e:
            self._fail(job_id, user_id, e.reason.value, str(e))
            return
        except StorageError as e:
            self._fail(job_id, user_id, STORAGE_FAILURE, str(e))
            return
        except Exception as e:
            logger.exception(f"Inference backend crashed on recognition job {job_id}")
            self._fail(job_id, user_id, INTERNAL_FAILURE, str(e))
            return

        try:
            resolved = self.resolver.resolve(candidates, source_job_id=job_id)
            report = self.reconciler.reconcile(user_id, resolved, source_job_id=job_id)
        except Exception as e:
            logger.exception(f"Error processing recognition job {job_id}")
            self.db.rollback()
            self._fail(job_id, user_id, INTERNAL_FAILURE, str(e), candidates=candidates)
            return

        completed = self.queue.complete(
            job_id,
            self.worker_id,
            candidates=[c.model_dump(mode="json") for c in candidates],
            report=report.model_dump(mode="json"),
        )
        if completed:
            logger.info(
                f"Completed recognition job {job_id}: {len(candidates)} candidates, "
                f"{len(resolved)} resolved"
            )
            self.notifier.on_recognition_complete(job_id, report)

    def _fail(
        self,
        job_id: str,
        user_id: int,
        reason: str,
        message: str,
        candidates: list[RecognitionCandidate] | None = None,
    ) -> None:
        report = ReconciliationReport(user_id=user_id, job_id=job_id, failure_reason=reason)
        failed = self.queue.fail(
            job_id,
            self.worker_id,
            reason,
            message,
            candidates=[c.model_dump(mode="json") for c in candidates] if candidates else None,
            report=report.model_dump(mode="json"),
        )
        if failed:
            logger.warning(f"Recognition job {job_id} failed: {reason}: {message}")
            self.notifier.on_recognition_complete(job_id, report)

    def _infer_with_retries(self, job_id: str, image_ref: str) -> list[RecognitionCandidate]:
        last_error: InferenceError | StorageError | None = None
        for attempt in range(1, self.max_attempts + 1):
            self.queue.extend_visibility(job_id, self.worker_id)
            try:
                return self._infer_with_deadline(image_ref)
            except InferenceError as e:
                if not e.retryable:
                    raise
                last_error = e
            except StorageError as e:
                last_error = e

            logger.warning(
                f"Inference attempt {attempt}/{self.max_attempts} for job {job_id} failed: "
                f"{last_error}"
            )
            if attempt < self.max_attempts:
                self.sleep(self.backoff(attempt))

        raise last_error

    def backoff(self, attempt: int) -> float:
        """Exponential delay before retry number ``attempt`` (1-based)."""
        return min(self.backoff_max, self.backoff_base * 2 ** (attempt - 1))

    def _infer_with_deadline(self, image_ref: str) -> list[RecognitionCandidate]:
        """Run inference on a daemon thread and give up after the hard deadline."""
        outcome: dict = {}
        done = threading.Event()

        def target() -> None:
            try:
                outcome["result"] = self.backend.infer(image_ref)
            except BaseException as e:  # re-raised on the calling thread
                outcome["error"] = e
            finally:
                done.set()

        threading.Thread(target=target, name=f"infer-{image_ref}", daemon=True).start()
        if not done.wait(self.inference_timeout):
            raise InferenceError(
                InferenceFailure.TIMEOUT,
                f"Inference exceeded {self.inference_timeout:g}s deadline",
            )
        if "error" in outcome:
            raise outcome["error"]
        return list(outcome["result"])


def build_recognition_worker(db: Session, worker_id: str | None = None) -> RecognitionWorker:
    """Wire a worker with the configured store, backend and match cache hook."""
    store = FileSystemObjectStore()
    cache = get_match_cache()
    return RecognitionWorker(
        db,
        backend=build_inference_backend(store),
        reconciler=PantryReconciler(db, on_fingerprint_change=cache.invalidate),
        worker_id=worker_id,
    )
