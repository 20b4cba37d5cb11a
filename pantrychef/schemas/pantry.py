"""Pantry schemas."""

from enum import StrEnum

from pydantic import BaseModel, Field


class ItemOutcome(StrEnum):
    """What reconciliation did with one resolved ingredient."""

    CREATED = "created"
    UPDATED = "updated"
    PENDING_CONFIRMATION = "pending_confirmation"
    DUPLICATE = "duplicate"
    FAILED = "failed"


class ReconciliationItem(BaseModel):
    """Per-ingredient line of a reconciliation report."""

    ingredient_id: str
    canonical_name: str
    confidence: float
    outcome: ItemOutcome
    pantry_item_id: int | None = None
    quantity: float | None = None
    error: str | None = None


class ReconciliationReport(BaseModel):
    """Result of merging one job's ingredients into a pantry."""

    user_id: int
    job_id: str
    items: list[ReconciliationItem] = Field(default_factory=list)
    fingerprint: str | None = None
    failure_reason: str | None = None  # Set when the job itself failed

    def _with(self, *outcomes: ItemOutcome) -> list[ReconciliationItem]:
        return [item for item in self.items if item.outcome in outcomes]

    @property
    def applied(self) -> list[ReconciliationItem]:
        return self._with(ItemOutcome.CREATED, ItemOutcome.UPDATED)

    @property
    def pending_confirmation(self) -> list[ReconciliationItem]:
        return self._with(ItemOutcome.PENDING_CONFIRMATION)

    @property
    def failed(self) -> list[ReconciliationItem]:
        return self._with(ItemOutcome.FAILED)

    @property
    def changed(self) -> bool:
        """Check if any pantry row was written."""
        return bool(self.applied)


class PantryStatsResponse(BaseModel):
    """Summary counts for a user's pantry."""

    total_items: int
    expiring_items: int
    low_stock_items: int
    items_by_category: dict[str, int]
    items_by_location: dict[str, int]
    fingerprint: str
