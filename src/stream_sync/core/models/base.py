"""SQLAlchemy declarative base and shared column types for all ORM models.

Provides:
- UtcDateTime: timezone-aware timestamp column that always round-trips as UTC
- PortableJSON: JSONB on PostgreSQL, generic JSON elsewhere
- Base: the DeclarativeBase subclass all models inherit from
- TimestampMixin: created_at / updated_at columns
- utcnow(): the clock used for application-side defaults

Column types are chosen so the same models run unchanged on PostgreSQL in
production and on SQLite in the test suite.  Defaults are therefore applied
application-side rather than through ``server_default=NOW()``.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(tz=UTC)


class UtcDateTime(sa.types.TypeDecorator):
    """``TIMESTAMP WITH TIME ZONE`` that always binds and returns aware UTC values.

    SQLite has no timezone support and hands back naive datetimes; naive
    values read from the database are interpreted as UTC.  Naive values
    bound from application code are rejected early so comparisons never mix
    aware and naive datetimes.
    """

    impl = sa.DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime bound to a UTC column")
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


PortableJSON = sa.JSON().with_variant(JSONB(), "postgresql")
"""JSON column type: JSONB on PostgreSQL, generic JSON on other dialects."""


class Base(DeclarativeBase):
    """Shared declarative base for all Stream Sync models."""

    type_annotation_map = {
        uuid.UUID: sa.Uuid(as_uuid=True),
        datetime: UtcDateTime(),
    }


class TimestampMixin:
    """Adds created_at and updated_at columns.

    ``updated_at`` is refreshed by the ORM on every UPDATE issued through the
    unit of work; bulk ``update()`` statements must set it explicitly.
    """

    created_at: Mapped[datetime] = mapped_column(
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
