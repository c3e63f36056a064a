"""
Payments Infrastructure Module

Stripe client wrapper used by ingestion, reconciliation and plan admin.
"""

from app.infrastructure.payments.stripe_service import (
    StripeService,
    SubscriptionPage,
    get_stripe_service,
)

__all__ = ["StripeService", "SubscriptionPage", "get_stripe_service"]
