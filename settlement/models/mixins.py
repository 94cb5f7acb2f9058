# settlement/models/mixins.py
"""Shared SQLAlchemy mixins and column helpers."""

from datetime import datetime, timezone

from sqlalchemy import JSON, event
from sqlalchemy.dialects import postgresql

from settlement.extensions import db


def utcnow() -> datetime:
    """Naive UTC timestamp (columns are stored without tz)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Portable: JSON on SQLite, JSONB on Postgres
JSONType = JSON().with_variant(postgresql.JSONB(), "postgresql")


class TimestampMixin:
    """Adds created_at and updated_at columns with auto-refresh behavior."""

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)
    updated_at = db.Column(
        db.DateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
        index=True,
    )

    @staticmethod
    def _set_updated_at(mapper, connection, target):
        """Ensure updated_at is always refreshed before update."""
        target.updated_at = utcnow()

    @classmethod
    def __declare_last__(cls):
        event.listen(cls, "before_update", cls._set_updated_at)
