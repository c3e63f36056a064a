"""
Daily Interaction Usage Model

One row per (user, UTC calendar day). Rows are created lazily on the first
interaction of the day, so the counter resets implicitly by date key.
"""

from datetime import date
from typing import Optional

from sqlalchemy import CheckConstraint, UniqueConstraint
from sqlmodel import Field

from app.infrastructure.db.models.base import TimestampMixin, UUIDMixin


class DailyInteractionUsage(UUIDMixin, TimestampMixin, table=True):
    """Per-day interaction counter with a snapshot of the plan's limit."""

    __tablename__ = "daily_interaction_usage"
    __table_args__ = (
        UniqueConstraint("user_id", "usage_date", name="uq_daily_interaction_usage_user_date"),
        CheckConstraint("interactions_used >= 0", name="ck_daily_interaction_usage_non_negative"),
        CheckConstraint(
            "daily_limit IS NULL OR interactions_used <= daily_limit",
            name="ck_daily_interaction_usage_within_limit",
        ),
    )

    user_id: str = Field(..., max_length=36, index=True, nullable=False)
    usage_date: date = Field(..., nullable=False)
    interactions_used: int = Field(default=0, nullable=False)
    # NULL = unlimited
    daily_limit: Optional[int] = Field(default=None)
    subscription_id: Optional[str] = Field(default=None, max_length=36)
