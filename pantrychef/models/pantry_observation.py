"""Record of recognition results already applied to a pantry."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint

from pantrychef.database import Base
from pantrychef.utils_time import utcnow


class PantryObservation(Base):
    """Marks that a job's ingredient was merged into the pantry.

    Written in the same transaction as the quantity increment, so redelivering
    a job can never apply the same observation twice.
    """

    __tablename__ = "pantry_observations"
    __table_args__ = (
        UniqueConstraint("job_id", "ingredient_id", name="uq_observation_job_ingredient"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    job_id = Column(String(36), nullable=False, index=True)
    ingredient_id = Column(String(100), nullable=False)
    pantry_item_id = Column(Integer, ForeignKey("pantry_items.id", ondelete="SET NULL"))
    observed_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
