"""
Plan Catalog Database Models

subscription_plans holds one row per sellable plan and points at its
current Stripe price. subscription_plan_prices keeps every price the plan
ever had; prices are never edited in place.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import CheckConstraint, Column, Index, String, text
from sqlmodel import Field

from app.infrastructure.db.models.base import (
    JSONType,
    TimestampMixin,
    UUIDMixin,
    UTCDateTime,
    utc_now,
)


class SubscriptionPlan(TimestampMixin, table=True):
    """
    Plan catalog entry.

    daily_interactions_limit: NULL means unlimited, 0..n is a hard daily cap.
    """

    __tablename__ = "subscription_plans"
    __table_args__ = (
        CheckConstraint(
            "daily_interactions_limit IS NULL OR daily_interactions_limit >= 0",
            name="ck_subscription_plans_limit_non_negative",
        ),
    )

    id: str = Field(
        primary_key=True,
        max_length=50,
        description="Plan slug, e.g. 'basic'"
    )
    name: str = Field(..., max_length=100, nullable=False)

    # Stripe references (current price)
    stripe_price_id: Optional[str] = Field(
        default=None,
        max_length=255,
        unique=True,
        index=True,
        description="Current Stripe price"
    )
    stripe_product_id: Optional[str] = Field(default=None, max_length=255)

    daily_interactions_limit: Optional[int] = Field(default=None)

    price_cents: int = Field(default=0, nullable=False)
    currency: str = Field(default="brl", max_length=3, nullable=False)
    interval: str = Field(
        default="month",
        sa_column=Column(String(10), nullable=False, server_default="month"),
    )
    features: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSONType, nullable=False),
        description="Marketing feature bullets"
    )
    active: bool = Field(default=True, nullable=False)


class SubscriptionPlanPrice(UUIDMixin, table=True):
    """One (historic or current) Stripe price of a plan."""

    __tablename__ = "subscription_plan_prices"
    __table_args__ = (
        # At most one current version per plan
        Index(
            "uq_subscription_plan_prices_current",
            "plan_id",
            unique=True,
            postgresql_where=text("is_current"),
            sqlite_where=text("is_current"),
        ),
    )

    plan_id: str = Field(
        ...,
        foreign_key="subscription_plans.id",
        max_length=50,
        index=True,
        nullable=False,
    )
    stripe_price_id: str = Field(..., max_length=255, unique=True, nullable=False)
    amount_cents: int = Field(..., nullable=False)
    currency: str = Field(default="brl", max_length=3, nullable=False)
    billing_interval: str = Field(default="month", max_length=10, nullable=False)
    is_current: bool = Field(default=False, nullable=False)
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_type=UTCDateTime,
        nullable=False,
    )
