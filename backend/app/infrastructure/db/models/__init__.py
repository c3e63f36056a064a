"""
SQLModel ORM Models for NutriChat Billing

Exports all database models for Alembic autogenerate and application use.
Import models here to register them with SQLModel.metadata.
"""

from app.infrastructure.db.models.base import (
    JSONType,
    TimestampMixin,
    UUIDMixin,
    UTCDateTime,
    new_id,
    utc_now,
)
from app.infrastructure.db.models.plan import SubscriptionPlan, SubscriptionPlanPrice
from app.infrastructure.db.models.subscription import UserSubscription
from app.infrastructure.db.models.usage import DailyInteractionUsage
from app.infrastructure.db.models.audit import SubscriptionAuditEntry
from app.infrastructure.db.models.webhook_event import StripeWebhookEvent


__all__ = [
    # Base
    "JSONType",
    "TimestampMixin",
    "UUIDMixin",
    "UTCDateTime",
    "new_id",
    "utc_now",
    # Plan catalog
    "SubscriptionPlan",
    "SubscriptionPlanPrice",
    # Ledger
    "UserSubscription",
    "DailyInteractionUsage",
    "SubscriptionAuditEntry",
    "StripeWebhookEvent",
]
