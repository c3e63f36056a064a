"""
Subscription Audit Model

Append-only record of every decision taken by the webhook handler, the
reconciliation sweep and user cancellations.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import Column, Text
from sqlmodel import Field

from app.infrastructure.db.models.base import UUIDMixin, UTCDateTime, utc_now


class SubscriptionAuditEntry(UUIDMixin, table=True):
    """One audit log line."""

    __tablename__ = "subscription_reconciliation_audit"

    action: str = Field(..., max_length=16, nullable=False, description="created|updated|skipped|error")
    source: str = Field(..., max_length=16, nullable=False, description="webhook|reconcile|cancel")

    stripe_subscription_id: Optional[str] = Field(default=None, max_length=255, index=True)
    stripe_customer_id: Optional[str] = Field(default=None, max_length=255)
    user_id: Optional[str] = Field(default=None, max_length=36)
    plan_id: Optional[str] = Field(default=None, max_length=50)

    status_stripe: Optional[str] = Field(default=None, max_length=32)
    status_db: Optional[str] = Field(default=None, max_length=32)
    period_end_stripe: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    period_end_db: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)

    event_id: Optional[str] = Field(default=None, max_length=255)
    reason: Optional[str] = Field(default=None, max_length=100)
    error: Optional[str] = Field(default=None, sa_column=Column(Text))

    created_at: datetime = Field(
        default_factory=utc_now,
        sa_type=UTCDateTime,
        nullable=False,
        index=True,
    )
