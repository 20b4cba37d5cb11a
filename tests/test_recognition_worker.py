"""Tests for the recognition worker."""

import threading
from unittest.mock import MagicMock

import pytest
from sqlalchemy import update

from pantrychef.exceptions import InferenceError, InferenceFailure, StorageError
from pantrychef.models.enums import JobStatus
from pantrychef.models.pantry import PantryItem
from pantrychef.models.recognition_job import RecognitionJob
from pantrychef.schemas.recognition import RecognitionCandidate
from pantrychef.services.job_queue import JobQueue
from pantrychef.services.recognition_worker import RecognitionWorker
from pantrychef.utils_time import utcnow


class FakeBackend:
    """Returns (or raises) scripted results; the last one repeats."""

    timeout = 5.0

    def __init__(self, *results):
        self.results = list(results)
        self.calls = 0

    def infer(self, image_ref):
        self.calls += 1
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, BaseException):
            raise result
        return result


def candidates(*pairs):
    return [RecognitionCandidate(label=label, confidence=conf) for label, conf in pairs]


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def notifier():
    return MagicMock()


@pytest.fixture
def make_worker(db, sleeps, notifier):
    def _make(backend, **kwargs):
        kwargs.setdefault("worker_id", "worker-test")
        kwargs.setdefault("max_attempts", 3)
        kwargs.setdefault("backoff_base", 1.0)
        kwargs.setdefault("backoff_max", 30.0)
        return RecognitionWorker(
            db, backend=backend, notifier=notifier, sleep=sleeps.append, **kwargs
        )

    return _make


@pytest.fixture
def job(db):
    return JobQueue(db).enqueue(1, "photo.png", "image/png")


class TestSuccess:
    """Tests for jobs that complete."""

    def test_completes_and_updates_pantry(self, db, make_worker, notifier, job):
        """Test the full claim, infer, resolve, reconcile path."""
        backend = FakeBackend(
            candidates(("tomato", 0.9), ("Tomato", 0.4), ("eggs", 0.85), ("milk", 0.7))
        )

        finished = make_worker(backend).process(job.id)

        assert finished.status == JobStatus.COMPLETED
        assert finished.failure_reason is None
        assert len(finished.candidates) == 4
        outcomes = {item["ingredient_id"]: item["outcome"] for item in finished.report["items"]}
        assert outcomes == {
            "tomato": "created",
            "egg": "created",
            "milk": "pending_confirmation",
        }
        pantry = {item.ingredient_id: item.quantity for item in db.query(PantryItem).all()}
        assert pantry == {"tomato": 1.0, "egg": 1.0}

        notifier.on_recognition_complete.assert_called_once()
        job_id, report = notifier.on_recognition_complete.call_args[0]
        assert job_id == job.id
        assert report.failure_reason is None

    def test_nothing_recognized_completes_with_empty_report(self, db, make_worker, job):
        """Test that an empty result is a successful job, not a failure."""
        finished = make_worker(FakeBackend([])).process(job.id)

        assert finished.status == JobStatus.COMPLETED
        assert finished.report["items"] == []
        assert db.query(PantryItem).count() == 0

    def test_transient_failure_is_retried(self, make_worker, sleeps, job):
        """Test that an unavailable backend is retried with backoff."""
        backend = FakeBackend(
            InferenceError(InferenceFailure.UNAVAILABLE, "503"),
            candidates(("egg", 0.9)),
        )

        finished = make_worker(backend).process(job.id)

        assert finished.status == JobStatus.COMPLETED
        assert backend.calls == 2
        assert sleeps == [1.0]

    def test_process_without_id_takes_next_job(self, make_worker, job):
        """Test that process() claims the oldest claimable job."""
        finished = make_worker(FakeBackend([])).process()

        assert finished.id == job.id
        assert finished.status == JobStatus.COMPLETED

    def test_run_once_processes_batch(self, db, make_worker):
        """Test that run_once drains up to batch_size jobs."""
        queue = JobQueue(db)
        for i in range(3):
            queue.enqueue(1, f"{i}.png", "image/png")

        finished = make_worker(FakeBackend([])).run_once(batch_size=2)

        assert [job.status for job in finished] == [JobStatus.COMPLETED] * 2
        assert len(queue.claimable_job_ids()) == 1


class TestFailures:
    """Tests for jobs that end in Failed."""

    def test_repeated_timeouts_fail_job(self, make_worker, sleeps, notifier, job):
        """Test that exhausting retries on timeouts fails the job with InferenceTimeout."""
        backend = FakeBackend(InferenceError(InferenceFailure.TIMEOUT, "timed out"))

        finished = make_worker(backend).process(job.id)

        assert finished.status == JobStatus.FAILED
        assert finished.failure_reason == "InferenceTimeout"
        assert backend.calls == 3
        assert sleeps == [1.0, 2.0]
        report = notifier.on_recognition_complete.call_args[0][1]
        assert report.failure_reason == "InferenceTimeout"

    def test_invalid_input_is_not_retried(self, make_worker, sleeps, job):
        """Test that InferenceInvalidInput fails immediately."""
        backend = FakeBackend(InferenceError(InferenceFailure.INVALID_INPUT, "bad image"))

        finished = make_worker(backend).process(job.id)

        assert finished.status == JobStatus.FAILED
        assert finished.failure_reason == "InferenceInvalidInput"
        assert backend.calls == 1
        assert sleeps == []

    def test_unavailable_backend_fails_after_retries(self, make_worker, job):
        """Test the failure reason after persistent unavailability."""
        backend = FakeBackend(InferenceError(InferenceFailure.UNAVAILABLE, "connection refused"))

        finished = make_worker(backend).process(job.id)

        assert finished.failure_reason == "InferenceUnavailable"
        assert backend.calls == 3

    def test_missing_image_fails_with_storage_error(self, make_worker, job):
        """Test that an unreadable image fails the job after retries."""
        backend = FakeBackend(StorageError("no such image"))

        finished = make_worker(backend).process(job.id)

        assert finished.status == JobStatus.FAILED
        assert finished.failure_reason == "StorageError"
        assert backend.calls == 3

    def test_hung_backend_hits_deadline(self, make_worker, job):
        """Test that a backend that never answers is cut off at the deadline."""
        release = threading.Event()

        class HungBackend:
            timeout = 0.05

            def infer(self, image_ref):
                release.wait(5)
                return []

        try:
            finished = make_worker(
                HungBackend(), max_attempts=1, inference_timeout=0.05
            ).process(job.id)
        finally:
            release.set()

        assert finished.status == JobStatus.FAILED
        assert finished.failure_reason == "InferenceTimeout"

    def test_unexpected_error_fails_with_internal_error(self, make_worker, job):
        """Test that a resolver crash is recorded rather than raised."""
        resolver = MagicMock()
        resolver.resolve.side_effect = RuntimeError("boom")

        finished = make_worker(FakeBackend(candidates(("egg", 0.9))), resolver=resolver).process(
            job.id
        )

        assert finished.status == JobStatus.FAILED
        assert finished.failure_reason == "InternalError"
        assert finished.candidates == [
            {"label": "egg", "confidence": 0.9, "bounding_region": None}
        ]

    def test_backend_crash_fails_with_internal_error(self, make_worker, notifier, sleeps, job):
        """Test that an unexpected backend exception fails the job without retrying."""
        backend = FakeBackend(IndexError("list index out of range"))

        finished = make_worker(backend).process(job.id)

        assert finished.status == JobStatus.FAILED
        assert finished.failure_reason == "InternalError"
        assert "list index out of range" in finished.error_message
        assert backend.calls == 1
        assert sleeps == []
        notifier.on_recognition_complete.assert_called_once()

    def test_delivery_limit_fails_job(self, db, make_worker, job):
        """Test that a job redelivered too many times is failed without inference."""
        db.execute(update(RecognitionJob).where(RecognitionJob.id == job.id).values(attempts=5))
        db.commit()
        backend = FakeBackend([])

        finished = make_worker(backend).process(job.id)

        assert finished.status == JobStatus.FAILED
        assert finished.failure_reason == "DeliveryLimitExceeded"
        assert backend.calls == 0

    def test_failed_job_never_stays_queued(self, db, make_worker, job):
        """Test that every failure path reaches a terminal state."""
        make_worker(FakeBackend(InferenceError(InferenceFailure.TIMEOUT))).process(job.id)

        assert JobQueue(db).get(job.id).job_status.is_terminal
        assert JobQueue(db).claimable_job_ids() == []


class TestRedelivery:
    """Tests for at-least-once delivery."""

    def test_redelivered_job_does_not_double_count(self, db, make_worker, job):
        """Test that a job re-run after a crash leaves quantities unchanged."""
        crashed = make_worker(FakeBackend(candidates(("tomato", 0.9))), worker_id="worker-a")
        crashed.queue.complete = MagicMock(side_effect=RuntimeError("worker killed"))
        with pytest.raises(RuntimeError):
            crashed.process(job.id)

        # Claim expires, another worker picks the job up
        db.execute(
            update(RecognitionJob)
            .where(RecognitionJob.id == job.id)
            .values(visible_at=utcnow().replace(year=2000))
        )
        db.commit()
        finished = make_worker(
            FakeBackend(candidates(("tomato", 0.9))), worker_id="worker-b"
        ).process(job.id)

        assert finished.status == JobStatus.COMPLETED
        assert finished.attempts == 2
        assert finished.report["items"][0]["outcome"] == "duplicate"
        assert db.query(PantryItem).one().quantity == 1.0

    def test_unclaimable_job_is_skipped(self, db, make_worker, job):
        """Test that processing a finished job does nothing."""
        worker = make_worker(FakeBackend(candidates(("egg", 0.9))))
        worker.process(job.id)

        assert worker.process(job.id) is None
        assert db.query(PantryItem).one().quantity == 1.0


class TestPollingAndBackoff:
    """Tests for polling and the retry schedule."""

    def test_poll_returns_none_when_queue_empty(self, make_worker, sleeps):
        """Test that poll gives up after the timeout."""
        ticks = iter([0.0, 0.5, 1.5, 2.5])
        worker = make_worker(FakeBackend([]), clock=lambda: next(ticks))
        worker.poll_interval = 1.0

        assert worker.poll(poll_timeout=2.0) is None
        assert sleeps == [1.0, 0.5]

    def test_poll_processes_available_job(self, make_worker, job):
        """Test that poll returns as soon as a job is processed."""
        finished = make_worker(FakeBackend([])).poll(poll_timeout=0)

        assert finished.id == job.id

    def test_backoff_is_exponential_and_capped(self, make_worker):
        """Test the backoff schedule."""
        worker = make_worker(FakeBackend([]), backoff_base=0.5, backoff_max=3.0)

        assert [worker.backoff(n) for n in range(1, 6)] == [0.5, 1.0, 2.0, 3.0, 3.0]
