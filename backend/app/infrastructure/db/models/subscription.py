"""
Subscription Database Model

SQLModel table for the local subscription ledger (mirror of Stripe).
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import Index, text
from sqlmodel import Field

from app.infrastructure.db.models.base import TimestampMixin, UUIDMixin, UTCDateTime


class UserSubscription(UUIDMixin, TimestampMixin, table=True):
    """
    One Stripe subscription as seen by the ledger.

    stripe_subscription_id is the natural idempotency key; a user holds at
    most one live (active or trialing) subscription at a time.
    """

    __tablename__ = "user_subscriptions"
    __table_args__ = (
        Index(
            "uq_user_subscriptions_live_user",
            "user_id",
            unique=True,
            postgresql_where=text("status IN ('active', 'trialing')"),
            sqlite_where=text("status IN ('active', 'trialing')"),
        ),
    )

    user_id: str = Field(..., max_length=36, index=True, nullable=False)
    plan_id: str = Field(
        ...,
        foreign_key="subscription_plans.id",
        max_length=50,
        nullable=False,
    )

    # Stripe IDs
    stripe_customer_id: str = Field(..., max_length=255, index=True, nullable=False)
    stripe_subscription_id: str = Field(
        ...,
        max_length=255,
        unique=True,
        index=True,
        nullable=False,
    )

    status: str = Field(..., max_length=32, index=True, nullable=False)

    # Billing period dates
    current_period_start: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    current_period_end: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    trial_start: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    trial_end: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    canceled_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    cancel_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    cancel_at_period_end: bool = Field(default=False, nullable=False)
