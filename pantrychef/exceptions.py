"""Error taxonomy for the recognition pipeline."""

from enum import StrEnum


class PantryChefError(Exception):
    """Base class for pipeline errors."""


class ValidationError(PantryChefError):
    """Bad input. Never retried, surfaced to the caller immediately."""


class StorageError(PantryChefError):
    """The object store could not read or write an image."""


class EnqueueError(StorageError):
    """The image was stored but the recognition job could not be enqueued."""


class InferenceFailure(StrEnum):
    """Failure reasons reported by inference backends."""

    TIMEOUT = "InferenceTimeout"
    UNAVAILABLE = "InferenceUnavailable"
    INVALID_INPUT = "InferenceInvalidInput"


class InferenceError(PantryChefError):
    """The inference backend failed to produce candidates."""

    def __init__(self, reason: InferenceFailure, message: str = ""):
        super().__init__(message or reason.value)
        self.reason = reason

    @property
    def retryable(self) -> bool:
        return self.reason != InferenceFailure.INVALID_INPUT


class ReconciliationError(PantryChefError):
    """A single pantry item update failed. Isolated to that item."""

    def __init__(self, ingredient_id: str, message: str):
        super().__init__(f"{ingredient_id}: {message}")
        self.ingredient_id = ingredient_id


class JobNotFoundError(PantryChefError):
    """No recognition job with that id is visible to the caller."""


class JobStateError(PantryChefError):
    """The job is not in a state that allows the requested transition."""


class CacheMiss(KeyError):  # noqa: N818
    """No fresh cache entry for a fingerprint. Triggers recomputation."""
