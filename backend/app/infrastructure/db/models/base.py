"""
Base Model for SQLModel ORM

Provides common fields and column types for all database models.
Follows Single Responsibility Principle - only defines base schema.
"""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import JSON, DateTime
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field, SQLModel


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# Timestamps are stored timezone-aware (TIMESTAMPTZ)
UTCDateTime = DateTime(timezone=True)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    """UUID v4 rendered as text (ids are stored as VARCHAR(36))."""
    return str(uuid4())


class TimestampMixin(SQLModel):
    """
    Mixin providing timestamp fields for models.

    Follows Interface Segregation - separates timestamp concern.
    """

    created_at: datetime = Field(
        default_factory=utc_now,
        sa_type=UTCDateTime,
        nullable=False,
        description="Record creation timestamp (UTC)"
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_type=UTCDateTime,
        nullable=False,
        sa_column_kwargs={"onupdate": utc_now},
        description="Last update timestamp (UTC)"
    )


class UUIDMixin(SQLModel):
    """
    Mixin providing a text UUID primary key.

    Follows Single Responsibility - only handles ID generation.
    """

    id: str = Field(
        default_factory=new_id,
        primary_key=True,
        max_length=36,
        nullable=False,
        description="Unique identifier (UUID v4)"
    )
