"""Shared columns for pipeline models."""

from sqlalchemy import Column, DateTime, func

from pantrychef.utils_time import utcnow


class TimestampMixin:
    """Row creation and modification times.

    ``created_at`` is also the recency tie-breaker when ranking recipes, so it
    is set in Python with microsecond precision rather than left to the server.
    """

    created_at = Column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )


class SoftDeleteMixin:
    """Rows retired from use without being removed."""

    deleted_at = Column(DateTime(timezone=True), nullable=True)

    @classmethod
    def live(cls):
        """Filter clause selecting rows that are not soft-deleted."""
        return cls.deleted_at.is_(None)

    def soft_delete(self) -> None:
        self.deleted_at = utcnow()
