"""
Stripe Webhook Event Model

Idempotency ledger: one row per distinct Stripe event id, written in the
same transaction as the state change the event caused.
"""

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from app.infrastructure.db.models.base import UTCDateTime, utc_now


class StripeWebhookEvent(SQLModel, table=True):
    """Processed (or deliberately ignored) Stripe event."""

    __tablename__ = "stripe_webhook_events"

    event_id: str = Field(primary_key=True, max_length=255)
    event_type: str = Field(..., max_length=100, nullable=False)
    provider_created_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    outcome: str = Field(default="applied", max_length=16, nullable=False, description="applied|ignored")
    processed_at: datetime = Field(
        default_factory=utc_now,
        sa_type=UTCDateTime,
        nullable=False,
        index=True,
    )
