"""
Shared column types and mixins for ORM models.

All timestamps are stored and returned as timezone-aware UTC datetimes,
including on SQLite where the driver drops tzinfo.
"""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import TypeDecorator


# Use JSONB for PostgreSQL, JSON for other databases (testing)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """DateTime column that always round-trips aware UTC values."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class TimestampMixin:
    """Adds created_at / updated_at columns."""

    created_at = Column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
        comment="Row creation time (UTC)"
    )
    updated_at = Column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
        comment="Last modification time (UTC)"
    )
