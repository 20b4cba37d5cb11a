"""Tests for pantry snapshots, fingerprints and stats."""

import threading
import time

from pantrychef.services.pantry_service import (
    KeyedLocks,
    PantryService,
    PantrySnapshotItem,
    pantry_fingerprint,
    quantity_bucket,
)


def snapshot_item(ingredient_id, quantity, unit="each", location="pantry", expiration_date=None):
    return PantrySnapshotItem(
        item_id=1,
        ingredient_id=ingredient_id,
        quantity=quantity,
        unit=unit,
        storage_location=location,
        expiration_date=expiration_date,
    )


class TestFingerprint:
    """Tests for pantry fingerprints."""

    def test_order_independent(self):
        """Test that item order doesn't change the fingerprint."""
        a = [snapshot_item("egg", 6), snapshot_item("flour", 500, "g")]

        assert pantry_fingerprint(1, a) == pantry_fingerprint(1, list(reversed(a)))

    def test_scoped_to_user(self):
        """Test that equal pantries of different users don't share a key."""
        items = [snapshot_item("egg", 6)]

        assert pantry_fingerprint(1, items) != pantry_fingerprint(2, items)

    def test_ignores_location_and_expiry(self, add_pantry_item, db):
        """Test that fields irrelevant to matching don't affect the fingerprint."""
        service = PantryService(db)
        add_pantry_item(1, "egg", 6, location="refrigerator", expires_in_days=3, notes="farm")
        add_pantry_item(2, "egg", 6, location="pantry", expires_in_days=None)

        items_1 = service.snapshot(1).items
        items_2 = service.snapshot(2).items
        assert pantry_fingerprint(1, items_1) == pantry_fingerprint(1, items_2)

    def test_any_quantity_change_changes_fingerprint(self):
        """Test that a one-unit change, which can move match scores, changes the key."""
        assert pantry_fingerprint(1, [snapshot_item("egg", 2)]) != pantry_fingerprint(
            1, [snapshot_item("egg", 3)]
        )
        assert pantry_fingerprint(1, [snapshot_item("flour", 1000, "g")]) != pantry_fingerprint(
            1, [snapshot_item("flour", 1001, "g")]
        )

    def test_float_noise_keeps_fingerprint(self):
        """Test that summing split rows doesn't change the key through rounding error."""
        split = [
            snapshot_item("milk", 0.1, "l", location="refrigerator"),
            snapshot_item("milk", 0.2, "l", location="pantry"),
        ]

        assert pantry_fingerprint(1, split) == pantry_fingerprint(
            1, [snapshot_item("milk", 0.3, "l")]
        )

    def test_empty_stock_is_ignored(self):
        """Test that zero-quantity rows are the same as no row."""
        assert pantry_fingerprint(1, [snapshot_item("egg", 0)]) == pantry_fingerprint(1, [])

    def test_unit_aliases_are_normalized(self):
        """Test that unit spellings don't change the fingerprint."""
        assert pantry_fingerprint(1, [snapshot_item("flour", 500, "grams")]) == pantry_fingerprint(
            1, [snapshot_item("flour", 500, "g")]
        )

    def test_quantity_bucket(self):
        """Test bucketing to thousandths of a unit."""
        assert quantity_bucket(1) == 1000
        assert quantity_bucket(0.1 + 0.2) == quantity_bucket(0.3) == 300
        assert quantity_bucket(2) != quantity_bucket(3)


class TestSnapshot:
    """Tests for snapshots."""

    def test_snapshot_groups_by_ingredient(self, db, add_pantry_item):
        """Test that in-stock items are grouped per ingredient across locations."""
        add_pantry_item(1, "butter", 250, unit="g", location="refrigerator")
        add_pantry_item(1, "butter", 500, unit="g", location="freezer")
        add_pantry_item(1, "egg", 0)

        grouped = PantryService(db).snapshot(1).by_ingredient()

        assert set(grouped) == {"butter"}
        assert sum(item.quantity for item in grouped["butter"]) == 750

    def test_snapshot_is_per_user(self, db, add_pantry_item):
        """Test that a snapshot only contains the user's items."""
        add_pantry_item(1, "egg", 6)
        add_pantry_item(2, "milk", 1000, unit="ml")

        snapshot = PantryService(db).snapshot(1)

        assert [item.ingredient_id for item in snapshot.items] == ["egg"]
        assert snapshot.items[0].expiration_date.tzinfo is not None


class TestStats:
    """Tests for expiring items and stats."""

    def test_expiring_items(self, db, add_pantry_item):
        """Test that items expiring within the window (or already expired) are listed."""
        add_pantry_item(1, "milk", 1000, unit="ml", expires_in_days=1)
        add_pantry_item(1, "egg", 6, expires_in_days=-1)
        add_pantry_item(1, "rice", 1000, unit="g", location="pantry", expires_in_days=200)
        add_pantry_item(1, "salt", 100, unit="g", location="spice_rack", expires_in_days=None)
        add_pantry_item(1, "tomato", 0, expires_in_days=1)

        expiring = PantryService(db).expiring_items(1, within_days=3)

        assert [item.ingredient_id for item in expiring] == ["egg", "milk"]

    def test_stats(self, db, add_pantry_item):
        """Test pantry summary counts."""
        add_pantry_item(1, "milk", 200, unit="ml", expires_in_days=1)
        add_pantry_item(1, "egg", 6)
        add_pantry_item(1, "flour", 2, unit="kg", location="pantry")

        stats = PantryService(db).stats(1, within_days=3)

        assert stats.total_items == 3
        assert stats.expiring_items == 1
        # 200 ml of milk is below one 1000 ml portion
        assert stats.low_stock_items == 1
        assert stats.items_by_category == {"dairy": 2, "grains": 1}
        assert stats.items_by_location == {"refrigerator": 2, "pantry": 1}
        assert stats.fingerprint == PantryService(db).fingerprint(1)


def test_keyed_locks_serialize_same_key():
    """Test that holders of one key never overlap and unused locks are dropped."""
    locks = KeyedLocks()
    active = []
    overlaps = []

    def hold():
        with locks.hold(("user", "egg")):
            active.append(1)
            if len(active) > 1:
                overlaps.append(True)
            time.sleep(0.01)
            active.pop()

    threads = [threading.Thread(target=hold) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert overlaps == []
    assert len(locks) == 0
