"""
Subscription Service

User-initiated subscription commands. Checkout and the billing portal only
hand the user over to Stripe; the ledger learns about the result from the
webhooks. Cancellation is the one place where the local ledger changes
because of our own request rather than a Stripe notification: Stripe is
asked first, and its answer is mirrored through the shared sync path.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config.settings import Settings, get_settings
from app.domain.subscription import (
    AuditSource,
    BillingPortalResponse,
    CancelResponse,
    CheckoutResponse,
    SubscriptionStatus,
)
from app.infrastructure.db.database import unit_of_work
from app.infrastructure.db.repositories.plan_repository import PlanRepository
from app.infrastructure.db.repositories.subscription_repository import SubscriptionRepository
from app.infrastructure.exceptions import ConflictError, NotFoundError, ValidationError
from app.infrastructure.payments.stripe_service import StripeService
from app.infrastructure.services.subscription_sync import SubscriptionSync


logger = logging.getLogger(__name__)


class SubscriptionService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        stripe_service: StripeService,
        sync: SubscriptionSync,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self._session_factory = session_factory
        self._stripe = stripe_service
        self._sync = sync
        self._trial_days = settings.checkout_trial_days
        self._app_url = settings.frontend_url.rstrip("/")

    async def cancel_now(self, user_id: str) -> CancelResponse:
        """
        Cancel the user's live subscription immediately.

        Raises:
            ConflictError: the user has no live subscription.
            BillingProviderError: Stripe refused or could not be reached.
        """
        async with self._session_factory() as session:
            live = await SubscriptionRepository(session).get_live_by_user(user_id)
            if live is None:
                raise ConflictError("No active subscription to cancel", details={"user_id": user_id})
            stripe_subscription_id = live.stripe_subscription_id
            plan_id = live.plan_id

        provider = await self._stripe.cancel_subscription(stripe_subscription_id)

        async with unit_of_work(self._session_factory, "cancel_subscription") as session:
            change = await self._sync.apply(
                session, provider, user_id, plan_id, AuditSource.CANCEL, reason="user_requested"
            )

        logger.info(f"User {user_id} canceled {stripe_subscription_id}")
        return CancelResponse(
            subscription_status=SubscriptionStatus(change.row.status),
            message="Subscription canceled. You will not be charged again.",
        )

    async def create_checkout(self, user_id: str, email: Optional[str], price_id: str) -> CheckoutResponse:
        """
        Start a hosted Stripe checkout for one of the active plans.

        A free trial is attached only when the user never held a subscription.

        Raises:
            NotFoundError: `price_id` is not the current price of an active plan.
            ConflictError: the user already has a live subscription, in the
                ledger or on Stripe.
            ValidationError: the account has no email to bill.
            BillingProviderError: Stripe refused or could not be reached.
        """
        async with self._session_factory() as session:
            plan = await PlanRepository(session).get_by_stripe_price_id(price_id)
            if plan is None or not plan.active or plan.stripe_price_id != price_id:
                raise NotFoundError(f"No active plan for price {price_id}", operation="create_checkout",
                                    table="subscription_plans")
            subscriptions = SubscriptionRepository(session)
            live = await subscriptions.get_live_by_user(user_id)
            if live is not None:
                raise ConflictError(
                    "You already have an active subscription. Cancel it before starting a new one.",
                    details={"user_id": user_id, "subscription_status": live.status},
                )
            ever_subscribed = await subscriptions.has_ever_subscribed(user_id)

        if not email:
            raise ValidationError("An email address is required to subscribe", details={"user_id": user_id})

        customer_id = await self._stripe.find_or_create_customer(email, user_id)
        # The ledger can lag behind Stripe until the webhooks arrive
        if await self._stripe.has_live_subscription(customer_id):
            logger.warning(f"Checkout refused: customer {customer_id} already subscribed on Stripe")
            raise ConflictError(
                "A subscription is already linked to this billing account. Please contact support.",
                details={"user_id": user_id, "stripe_customer_id": customer_id},
            )

        trial_days = self._trial_days if self._trial_days and not ever_subscribed else None
        session_id, url = await self._stripe.create_checkout_session(
            customer_id,
            price_id,
            success_url=f"{self._app_url}/subscription/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{self._app_url}/subscription/canceled",
            user_id=user_id,
            trial_days=trial_days,
        )
        logger.info(f"User {user_id} started checkout {session_id} for plan {plan.id}")
        return CheckoutResponse(session_id=session_id, checkout_url=url, trial_days=trial_days)

    async def create_portal(self, user_id: str) -> BillingPortalResponse:
        """
        Raises:
            ConflictError: the user has no live subscription to manage.
            BillingProviderError: Stripe refused or could not be reached.
        """
        async with self._session_factory() as session:
            live = await SubscriptionRepository(session).get_live_by_user(user_id)
        if live is None:
            raise ConflictError(
                "An active subscription is required to manage billing", details={"user_id": user_id}
            )
        url = await self._stripe.create_billing_portal_session(
            live.stripe_customer_id, return_url=f"{self._app_url}/plans-manage"
        )
        return BillingPortalResponse(url=url)
