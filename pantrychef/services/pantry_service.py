"""Pantry service: snapshots, fingerprints, and merging recognized ingredients."""

import hashlib
import logging
import threading
from collections import defaultdict
from collections.abc import Callable, Hashable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from pantrychef.config import get_settings
from pantrychef.exceptions import ReconciliationError
from pantrychef.models.enums import StorageLocation
from pantrychef.models.pantry import PantryItem
from pantrychef.models.pantry_observation import PantryObservation
from pantrychef.schemas.pantry import (
    ItemOutcome,
    PantryStatsResponse,
    ReconciliationItem,
    ReconciliationReport,
)
from pantrychef.schemas.recognition import ResolvedIngredient
from pantrychef.services.taxonomy import IngredientTaxonomy, get_default_taxonomy, normalize_unit
from pantrychef.utils_time import as_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PantrySnapshotItem:
    """Immutable copy of one pantry row."""

    item_id: int
    ingredient_id: str
    quantity: float
    unit: str
    storage_location: str
    expiration_date: datetime | None


@dataclass(frozen=True)
class PantrySnapshot:
    """A user's pantry as read in a single query."""

    user_id: int
    items: tuple[PantrySnapshotItem, ...]
    taken_at: datetime = field(default_factory=utcnow)

    @property
    def fingerprint(self) -> str:
        return pantry_fingerprint(self.user_id, self.items)

    def by_ingredient(self) -> dict[str, list[PantrySnapshotItem]]:
        grouped: dict[str, list[PantrySnapshotItem]] = defaultdict(list)
        for item in self.items:
            if item.quantity > 0:
                grouped[item.ingredient_id].append(item)
        return dict(grouped)


def quantity_bucket(quantity: float) -> int:
    """Quantity in thousandths of a unit, so float noise keeps the same fingerprint."""
    return round(quantity * 1000)


def pantry_fingerprint(user_id: int, items: Iterable[PantrySnapshotItem]) -> str:
    """Stable hash of a user's effective ingredient set.

    Only (ingredient, unit, quantity bucket) of items with positive quantity
    contribute; notes, timestamps and storage location do not.
    """
    totals: dict[tuple[str, str], float] = defaultdict(float)
    for item in items:
        if item.quantity > 0:
            unit = normalize_unit(item.unit) or item.unit
            totals[(item.ingredient_id, unit)] += item.quantity

    digest = hashlib.sha256(f"user:{user_id}".encode())
    for (ingredient_id, unit), quantity in sorted(totals.items()):
        digest.update(f"|{ingredient_id}:{unit}:{quantity_bucket(quantity)}".encode())
    return digest.hexdigest()


class KeyedLocks:
    """One mutex per key, created on demand and dropped when unused."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Hashable, list] = {}  # key -> [lock, holders]

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


# Shared by every reconciler in the process
_item_locks = KeyedLocks()


class PantryService:
    """Read-side pantry operations."""

    def __init__(self, db: Session, taxonomy: IngredientTaxonomy | None = None):
        self.db = db
        self.taxonomy = taxonomy or get_default_taxonomy()
        self.settings = get_settings()

    def snapshot(self, user_id: int) -> PantrySnapshot:
        """Read the user's pantry once into immutable values."""
        rows = (
            self.db.query(PantryItem)
            .filter(PantryItem.user_id == user_id)
            .order_by(PantryItem.ingredient_id, PantryItem.storage_location)
            .all()
        )
        return PantrySnapshot(
            user_id=user_id,
            items=tuple(
                PantrySnapshotItem(
                    item_id=row.id,
                    ingredient_id=row.ingredient_id,
                    quantity=float(row.quantity or 0.0),
                    unit=row.unit,
                    storage_location=row.storage_location,
                    expiration_date=as_utc(row.expiration_date),
                )
                for row in rows
            ),
        )

    def fingerprint(self, user_id: int) -> str:
        return self.snapshot(user_id).fingerprint

    def expiring_items(self, user_id: int, within_days: int | None = None) -> list[PantryItem]:
        """Items with stock that expire within the window (already expired included)."""
        days = self.settings.expiring_soon_days if within_days is None else within_days
        cutoff = utcnow() + timedelta(days=days)
        rows = (
            self.db.query(PantryItem)
            .filter(
                PantryItem.user_id == user_id,
                PantryItem.quantity > 0,
                PantryItem.expiration_date.is_not(None),
            )
            .all()
        )
        expiring = [row for row in rows if as_utc(row.expiration_date) <= cutoff]
        return sorted(expiring, key=lambda row: as_utc(row.expiration_date))

    def stats(self, user_id: int, within_days: int | None = None) -> PantryStatsResponse:
        """Totals, expiring and low-stock counts for a user's pantry."""
        snapshot = self.snapshot(user_id)
        by_category: dict[str, int] = defaultdict(int)
        by_location: dict[str, int] = defaultdict(int)
        low_stock = 0
        for item in snapshot.items:
            by_category[self.taxonomy.category_of(item.ingredient_id).value] += 1
            by_location[item.storage_location] += 1
            portion_qty, portion_unit = self.taxonomy.portion(item.ingredient_id)
            one_portion = self.taxonomy.convert(portion_qty, portion_unit, item.unit)
            if item.quantity < (one_portion if one_portion is not None else 1.0):
                low_stock += 1

        return PantryStatsResponse(
            total_items=len(snapshot.items),
            expiring_items=len(self.expiring_items(user_id, within_days)),
            low_stock_items=low_stock,
            items_by_category=dict(by_category),
            items_by_location=dict(by_location),
            fingerprint=snapshot.fingerprint,
        )


class PantryReconciler:
    """Merges one job's resolved ingredients into a user's pantry.

    Each ingredient is applied in its own transaction under a lock keyed by
    (user, ingredient, location), and is recorded as a PantryObservation so a
    redelivered job cannot apply twice. One item failing does not roll back
    the others.
    """

    def __init__(
        self,
        db: Session,
        taxonomy: IngredientTaxonomy | None = None,
        auto_accept_threshold: float | None = None,
        on_fingerprint_change: Callable[[str], object] | None = None,
        locks: KeyedLocks | None = None,
    ):
        settings = get_settings()
        self.db = db
        self.taxonomy = taxonomy or get_default_taxonomy()
        self.pantry = PantryService(db, self.taxonomy)
        self.auto_accept_threshold = (
            settings.auto_accept_threshold
            if auto_accept_threshold is None
            else auto_accept_threshold
        )
        self.on_fingerprint_change = on_fingerprint_change
        self.locks = locks or _item_locks

    def reconcile(
        self,
        user_id: int,
        resolved: Iterable[ResolvedIngredient],
        source_job_id: str | None = None,
    ) -> ReconciliationReport:
        """Apply resolved ingredients and report the outcome per item.

        Args:
            user_id: Pantry owner
            resolved: Output of ConfidenceResolver for one job
            source_job_id: Dedupe key; defaults to each ingredient's source_job_id

        Returns:
            ReconciliationReport with one line per ingredient
        """
        resolved = list(resolved)
        job_id = source_job_id or (resolved[0].source_job_id if resolved else "")
        if resolved and not job_id:
            raise ValueError("reconcile requires a source job id to deduplicate observations")
        previous_fingerprint = self.pantry.fingerprint(user_id)
        report = ReconciliationReport(user_id=user_id, job_id=job_id)

        for ingredient in resolved:
            if ingredient.confidence < self.auto_accept_threshold:
                report.items.append(
                    ReconciliationItem(
                        ingredient_id=ingredient.ingredient_id,
                        canonical_name=ingredient.canonical_name,
                        confidence=ingredient.confidence,
                        outcome=ItemOutcome.PENDING_CONFIRMATION,
                    )
                )
                continue

            try:
                report.items.append(self._apply(user_id, ingredient, job_id))
            except ReconciliationError as e:
                logger.error(f"Reconciliation failed for user {user_id}: {e}")
                report.items.append(
                    ReconciliationItem(
                        ingredient_id=ingredient.ingredient_id,
                        canonical_name=ingredient.canonical_name,
                        confidence=ingredient.confidence,
                        outcome=ItemOutcome.FAILED,
                        error=str(e),
                    )
                )

        report.fingerprint = previous_fingerprint
        if report.changed:
            report.fingerprint = self.pantry.fingerprint(user_id)
            if self.on_fingerprint_change is not None:
                self.on_fingerprint_change(previous_fingerprint)

        logger.info(
            f"Reconciled job {job_id} for user {user_id}: "
            f"{len(report.applied)} applied, {len(report.pending_confirmation)} pending, "
            f"{len(report.failed)} failed"
        )
        return report

    def _apply(
        self, user_id: int, ingredient: ResolvedIngredient, job_id: str
    ) -> ReconciliationItem:
        location = self.taxonomy.default_location(ingredient.category)
        key = (user_id, ingredient.ingredient_id, location.value)
        with self.locks.hold(key):
            try:
                return self._increment_or_create(user_id, ingredient, location, job_id)
            except SQLAlchemyError as e:
                self.db.rollback()
                raise ReconciliationError(ingredient.ingredient_id, str(e)) from e

    def _increment_or_create(
        self,
        user_id: int,
        ingredient: ResolvedIngredient,
        location: StorageLocation,
        job_id: str,
    ) -> ReconciliationItem:
        line = {
            "ingredient_id": ingredient.ingredient_id,
            "canonical_name": ingredient.canonical_name,
            "confidence": ingredient.confidence,
        }

        # Claim the observation first; a unique violation means this job already applied it
        observation = PantryObservation(
            user_id=user_id, job_id=job_id, ingredient_id=ingredient.ingredient_id
        )
        self.db.add(observation)
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            existing = self._find_item(user_id, ingredient.ingredient_id, location)
            logger.info(f"Job {job_id} already applied '{ingredient.ingredient_id}'")
            return ReconciliationItem(
                **line,
                outcome=ItemOutcome.DUPLICATE,
                pantry_item_id=existing.id if existing else None,
                quantity=existing.quantity if existing else None,
            )

        item = self._find_item(user_id, ingredient.ingredient_id, location)
        outcome = ItemOutcome.CREATED
        if item is None:
            item = self._create_item(user_id, ingredient, location)
            if item is None:
                # Lost an insert race with another process
                item = self._find_item(user_id, ingredient.ingredient_id, location)
                outcome = self._increment(item, ingredient)
        else:
            outcome = self._increment(item, ingredient)

        observation.pantry_item_id = item.id
        self.db.commit()
        self.db.refresh(item)
        return ReconciliationItem(
            **line, outcome=outcome, pantry_item_id=item.id, quantity=item.quantity
        )

    def _find_item(
        self, user_id: int, ingredient_id: str, location: StorageLocation
    ) -> PantryItem | None:
        return (
            self.db.query(PantryItem)
            .filter(
                PantryItem.user_id == user_id,
                PantryItem.ingredient_id == ingredient_id,
                PantryItem.storage_location == location.value,
            )
            .first()
        )

    def _create_item(
        self,
        user_id: int,
        ingredient: ResolvedIngredient,
        location: StorageLocation,
    ) -> PantryItem | None:
        """Insert a new row, or return None if a concurrent insert won."""
        quantity, unit = self.taxonomy.portion(ingredient.ingredient_id)
        shelf_life = self.taxonomy.shelf_life_days(ingredient.category, location)
        now = utcnow()
        item = PantryItem(
            user_id=user_id,
            ingredient_id=ingredient.ingredient_id,
            name=ingredient.canonical_name,
            quantity=quantity,
            unit=unit,
            storage_location=location.value,
            expiration_date=now + timedelta(days=shelf_life),
            last_updated_at=now,
        )
        try:
            # Savepoint rollback keeps the observation row from this transaction
            with self.db.begin_nested():
                self.db.add(item)
        except IntegrityError:
            return None
        return item

    def _increment(self, item: PantryItem, ingredient: ResolvedIngredient) -> ItemOutcome:
        quantity, unit = self.taxonomy.portion(ingredient.ingredient_id)
        converted = self.taxonomy.convert(quantity, unit, item.unit)
        increment = converted if converted is not None else 1.0
        # Increment in SQL so concurrent writers from other processes never lose an update
        self.db.execute(
            update(PantryItem)
            .where(PantryItem.id == item.id)
            .values(quantity=PantryItem.quantity + increment, last_updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return ItemOutcome.UPDATED
