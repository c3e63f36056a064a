"""
Repository Layer for NutriChat Billing

Exports all repository classes for dependency injection.
"""

from app.infrastructure.db.repositories.base_repository import (
    BaseRepository,
    dialect_insert,
)
from app.infrastructure.db.repositories.plan_repository import PlanRepository
from app.infrastructure.db.repositories.subscription_repository import SubscriptionRepository
from app.infrastructure.db.repositories.usage_repository import UsageRepository
from app.infrastructure.db.repositories.audit_repository import AuditRepository
from app.infrastructure.db.repositories.webhook_event_repository import WebhookEventRepository


__all__ = [
    # Base
    "BaseRepository",
    "dialect_insert",
    # Repositories
    "PlanRepository",
    "SubscriptionRepository",
    "UsageRepository",
    "AuditRepository",
    "WebhookEventRepository",
]
