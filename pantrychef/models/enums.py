"""Enums for model fields."""

from enum import StrEnum


class JobStatus(StrEnum):
    """Lifecycle of a recognition job."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Check if no further transitions are possible."""
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class StorageLocation(StrEnum):
    """Where a pantry item is kept."""

    REFRIGERATOR = "refrigerator"
    FREEZER = "freezer"
    PANTRY = "pantry"
    SPICE_RACK = "spice_rack"


class IngredientCategory(StrEnum):
    """Ingredient categories, used for shelf life and default storage."""

    PRODUCE = "produce"
    MEAT = "meat"
    DAIRY = "dairy"
    GRAINS = "grains"
    SPICES = "spices"
    CONDIMENTS = "condiments"
    BEVERAGES = "beverages"
    OTHER = "other"
