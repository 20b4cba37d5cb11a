"""Pantry item model for tracking what the user has at home."""

from sqlalchemy import Column, DateTime, Float, Integer, String, Text, UniqueConstraint

from pantrychef.database import Base
from pantrychef.models.enums import StorageLocation
from pantrychef.models.mixins import TimestampMixin
from pantrychef.utils_time import utcnow


class PantryItem(Base, TimestampMixin):
    """One ingredient held by a user in one storage location."""

    __tablename__ = "pantry_items"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "ingredient_id", "storage_location", name="uq_pantry_user_ingredient_location"
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    ingredient_id = Column(String(100), nullable=False)  # Canonical ingredient id, e.g. "tomato"
    name = Column(String(255), nullable=False)  # Display name
    quantity = Column(Float, nullable=False, default=0.0)
    unit = Column(String(20), nullable=False, default="each")
    storage_location = Column(String(20), nullable=False, default=StorageLocation.PANTRY.value)
    expiration_date = Column(DateTime(timezone=True), nullable=True)
    last_updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    notes = Column(Text, nullable=True)  # Free text, ignored by matching
