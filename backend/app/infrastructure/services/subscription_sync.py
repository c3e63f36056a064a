"""
Subscription Sync

The single path from a Stripe subscription to the local ledger. The
webhook handler, the reconciliation sweep and user cancellation all
resolve owners and write rows through this module, so they cannot drift
apart in how Stripe fields are mapped.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.subscription import (
    AuditAction,
    AuditSource,
    LIVE_STATUSES,
    ProviderSubscription,
    as_utc,
)
from app.infrastructure.db.models.plan import SubscriptionPlan
from app.infrastructure.db.models.subscription import UserSubscription
from app.infrastructure.db.repositories.audit_repository import AuditRepository
from app.infrastructure.db.repositories.plan_repository import PlanRepository
from app.infrastructure.db.repositories.subscription_repository import SubscriptionRepository
from app.infrastructure.exceptions import LookupFailure
from app.infrastructure.payments.stripe_service import StripeService
from app.infrastructure.users.user_directory import UserDirectory


logger = logging.getLogger(__name__)


@dataclass
class AppliedChange:
    """Outcome of writing one provider subscription to the ledger."""
    row: UserSubscription
    action: AuditAction
    previous_status: Optional[str] = None


class SubscriptionSync:
    """Owner resolution plus the shared ledger write."""

    def __init__(self, stripe_service: StripeService, user_directory: UserDirectory):
        self._stripe = stripe_service
        self._users = user_directory

    # =========================================================================
    # Resolution
    # =========================================================================

    async def resolve_plan(
        self,
        session: AsyncSession,
        provider: ProviderSubscription,
    ) -> SubscriptionPlan:
        """
        Raises:
            LookupFailure: kind "price" if the subscription has no price,
                kind "plan" if the price maps to no plan.
        """
        if not provider.price_id:
            raise LookupFailure("price", provider.id, "Subscription has no price")
        plan = await PlanRepository(session).get_by_stripe_price_id(provider.price_id)
        if plan is None:
            raise LookupFailure("plan", provider.price_id)
        return plan

    async def resolve_user(self, provider: ProviderSubscription) -> str:
        """
        Stripe customer -> email -> Supabase user id.

        Raises:
            LookupFailure: kind "customer_email" or "user".
            BillingProviderError: the customer could not be fetched.
        """
        email = await self._stripe.get_customer_email(provider.customer_id)
        if not email:
            raise LookupFailure("customer_email", provider.customer_id, "Customer has no email")
        user_id = await self._users.get_user_id_by_email(email)
        if not user_id:
            raise LookupFailure("user", email)
        return user_id

    # =========================================================================
    # Ledger write
    # =========================================================================

    @staticmethod
    async def find_conflicting_live(
        session: AsyncSession,
        user_id: str,
        provider: ProviderSubscription,
    ) -> Optional[UserSubscription]:
        """Another live subscription of the user, if `provider` would be a second one."""
        if provider.mapped_status not in LIVE_STATUSES:
            return None
        live = await SubscriptionRepository(session).get_live_by_user(user_id)
        if live is not None and live.stripe_subscription_id != provider.id:
            return live
        return None

    async def apply(
        self,
        session: AsyncSession,
        provider: ProviderSubscription,
        user_id: str,
        plan_id: str,
        source: AuditSource,
        event_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> AppliedChange:
        """
        Upsert the ledger row and append exactly one audit entry.

        Runs inside the caller's transaction.
        """
        subscriptions = SubscriptionRepository(session)
        existing = await subscriptions.get_by_stripe_subscription_id(provider.id)
        previous_status = existing.status if existing else None
        previous_period_end = as_utc(existing.current_period_end) if existing else None

        row, inserted = await subscriptions.upsert_from_provider(provider, user_id, plan_id)
        action = AuditAction.CREATED if inserted else AuditAction.UPDATED

        await AuditRepository(session).append(
            action,
            source,
            stripe_subscription_id=provider.id,
            stripe_customer_id=provider.customer_id,
            user_id=row.user_id,
            plan_id=row.plan_id,
            status_stripe=provider.status,
            status_db=previous_status,
            period_end_stripe=provider.current_period_end,
            period_end_db=previous_period_end,
            event_id=event_id,
            reason=reason,
        )
        logger.info(
            f"[{source.value.upper()}] {action.value} {provider.id}: "
            f"{previous_status or '-'} -> {row.status}"
        )
        return AppliedChange(row=row, action=action, previous_status=previous_status)
