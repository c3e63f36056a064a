"""
Stripe Payment Service

Clean Architecture infrastructure service wrapping the Stripe API.
Stripe is the billing authority; this service is the only place that talks
to it. Every call goes through one injected stripe.StripeClient (no global
api_key) and runs in a worker thread so the event loop never blocks.
"""

import asyncio
import json
import logging
from typing import Any, Optional

import stripe
from stripe import SignatureVerificationError, StripeError

from app.config.settings import Settings, get_settings
from app.domain.subscription import LIVE_STATUSES, ProviderSubscription
from app.infrastructure.exceptions import (
    BillingProviderError,
    ConfigurationError,
    SignatureVerificationError as WebhookSignatureError,
    WebhookPayloadError,
)


logger = logging.getLogger(__name__)

DUPLICATE_CANCELATION_REASON = "duplicate_subscription_detected"
LIVE_STRIPE_STATUSES = frozenset(s.value for s in LIVE_STATUSES)


def _to_dict(obj: Any) -> dict[str, Any]:
    """StripeObject -> plain JSON dict."""
    if isinstance(obj, dict) and not isinstance(obj, stripe.StripeObject):
        return obj
    return json.loads(str(obj))


class SubscriptionPage:
    """One page of a subscriptions.list call."""

    def __init__(self, subscriptions: list[dict[str, Any]], has_more: bool):
        self.subscriptions = subscriptions
        self.has_more = has_more

    @property
    def last_id(self) -> Optional[str]:
        return self.subscriptions[-1]["id"] if self.subscriptions else None


class StripeService:
    """
    Stripe payment processing service.

    Methods translate StripeError into BillingProviderError so callers only
    ever see the application's exception hierarchy.
    """

    def __init__(
        self,
        client: Optional[stripe.StripeClient] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self._webhook_secret = settings.stripe_webhook_secret
        self._webhook_tolerance = settings.stripe_webhook_tolerance_seconds

        if client is None:
            if not settings.stripe_secret_key:
                raise ConfigurationError(
                    "Stripe is not configured",
                    missing_keys=["STRIPE_SECRET_KEY"],
                )
            client = stripe.StripeClient(
                settings.stripe_secret_key,
                http_client=stripe.RequestsClient(timeout=settings.stripe_timeout_seconds),
                max_network_retries=settings.stripe_max_network_retries,
            )
        self._client = client

    async def _call(self, operation: str, func, *args, **kwargs) -> Any:
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except StripeError as e:
            logger.error(f"Stripe {operation} failed: {e}")
            raise BillingProviderError(
                f"Stripe {operation} failed: {getattr(e, 'user_message', None) or e}",
                operation=operation,
                original_error=e,
            ) from e

    # =========================================================================
    # Webhook Verification
    # =========================================================================

    def verify_webhook(self, payload: bytes, signature: str) -> dict[str, Any]:
        """
        Verify the Stripe-Signature header, then decode the JSON body.

        The signature is checked against the raw bytes before anything is
        parsed.

        Raises:
            SignatureVerificationError: bad or expired signature.
            WebhookPayloadError: body is not valid JSON.
            ConfigurationError: no webhook secret configured.
        """
        if not self._webhook_secret:
            raise ConfigurationError(
                "Stripe webhook secret is not configured",
                missing_keys=["STRIPE_WEBHOOK_SECRET"],
            )

        try:
            body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        except UnicodeDecodeError as e:
            # Stripe signs UTF-8 text, so such a body cannot carry a valid signature
            raise WebhookSignatureError("Invalid signature: body is not UTF-8", original_error=e) from e

        try:
            stripe.WebhookSignature.verify_header(
                body,
                signature,
                self._webhook_secret,
                self._webhook_tolerance,
            )
        except SignatureVerificationError as e:
            raise WebhookSignatureError(f"Invalid signature: {e}", original_error=e) from e

        try:
            data = json.loads(body)
        except ValueError as e:
            raise WebhookPayloadError(f"Invalid payload: {e}", original_error=e) from e
        if not isinstance(data, dict):
            raise WebhookPayloadError("Invalid payload: expected a JSON object")
        return data

    # =========================================================================
    # Subscription Queries
    # =========================================================================

    async def get_subscription(self, subscription_id: str) -> ProviderSubscription:
        """Retrieve a subscription by ID."""
        obj = await self._call(
            "subscriptions.retrieve",
            self._client.subscriptions.retrieve,
            subscription_id,
        )
        return ProviderSubscription.from_stripe(_to_dict(obj))

    async def list_subscriptions(
        self,
        status: str,
        limit: int = 50,
        starting_after: Optional[str] = None,
    ) -> SubscriptionPage:
        """
        One page of subscriptions with the given status.

        Returns raw dicts so the caller can skip individual malformed
        records instead of failing the whole page.
        """
        params: dict[str, Any] = {"status": status, "limit": limit}
        if starting_after:
            params["starting_after"] = starting_after
        page = await self._call(
            "subscriptions.list",
            self._client.subscriptions.list,
            params=params,
        )
        data = _to_dict(page)
        return SubscriptionPage(
            subscriptions=list(data.get("data") or []),
            has_more=bool(data.get("has_more")),
        )

    async def get_customer_email(self, customer_id: str) -> Optional[str]:
        """Email on the Stripe customer, None if absent or the customer is deleted."""
        obj = await self._call(
            "customers.retrieve",
            self._client.customers.retrieve,
            customer_id,
        )
        customer = _to_dict(obj)
        if customer.get("deleted"):
            return None
        return customer.get("email") or None

    # =========================================================================
    # Subscription Commands
    # =========================================================================

    async def cancel_subscription(self, subscription_id: str) -> ProviderSubscription:
        """Cancel immediately (no proration handling)."""
        obj = await self._call(
            "subscriptions.cancel",
            self._client.subscriptions.cancel,
            subscription_id,
        )
        logger.info(f"Canceled subscription {subscription_id} on Stripe")
        return ProviderSubscription.from_stripe(_to_dict(obj))

    async def flag_duplicate(self, subscription_id: str) -> ProviderSubscription:
        """Schedule a duplicate subscription to end with its current period."""
        obj = await self._call(
            "subscriptions.update",
            self._client.subscriptions.update,
            subscription_id,
            params={
                "cancel_at_period_end": True,
                "metadata": {"cancelation_reason": DUPLICATE_CANCELATION_REASON},
            },
        )
        logger.warning(f"Flagged duplicate subscription {subscription_id} for cancellation")
        return ProviderSubscription.from_stripe(_to_dict(obj))

    # =========================================================================
    # Customers & Checkout
    # =========================================================================

    async def find_or_create_customer(self, email: str, user_id: str) -> str:
        """Customer id for the email, creating the customer on first checkout."""
        page = await self._call(
            "customers.list",
            self._client.customers.list,
            params={"email": email, "limit": 1},
        )
        existing = _to_dict(page).get("data") or []
        if existing:
            return existing[0]["id"]

        customer = await self._call(
            "customers.create",
            self._client.customers.create,
            params={"email": email, "metadata": {"user_id": user_id}},
        )
        logger.info(f"Created Stripe customer {customer.id} for user {user_id}")
        return customer.id

    async def has_live_subscription(self, customer_id: str) -> bool:
        """Whether Stripe itself holds an active or trialing subscription for the customer."""
        page = await self._call(
            "subscriptions.list",
            self._client.subscriptions.list,
            params={"customer": customer_id, "status": "all", "limit": 100},
        )
        return any(
            sub.get("status") in LIVE_STRIPE_STATUSES
            for sub in _to_dict(page).get("data") or []
        )

    async def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        user_id: str,
        trial_days: Optional[int] = None,
    ) -> tuple[str, str]:
        """
        Hosted subscription checkout for one price.

        Returns:
            (session id, checkout url)
        """
        subscription_data: dict[str, Any] = {"metadata": {"source": "nutrichat", "user_id": user_id}}
        if trial_days:
            subscription_data["trial_period_days"] = trial_days
        session = await self._call(
            "checkout.sessions.create",
            self._client.checkout.sessions.create,
            params={
                "mode": "subscription",
                "customer": customer_id,
                "line_items": [{"price": price_id, "quantity": 1}],
                "success_url": success_url,
                "cancel_url": cancel_url,
                "client_reference_id": user_id,
                "subscription_data": subscription_data,
                "metadata": {"source": "nutrichat"},
            },
        )
        logger.info(f"Created checkout session {session.id} for customer {customer_id}")
        return session.id, session.url

    async def create_billing_portal_session(self, customer_id: str, return_url: str) -> str:
        """Customer portal url (payment method, invoices)."""
        session = await self._call(
            "billing_portal.sessions.create",
            self._client.billing_portal.sessions.create,
            params={"customer": customer_id, "return_url": return_url},
        )
        return session.url

    # =========================================================================
    # Prices
    # =========================================================================

    async def create_price(
        self,
        product_id: str,
        unit_amount: int,
        currency: str,
        interval: str,
        plan_id: Optional[str] = None,
    ) -> str:
        """Create a recurring price and return its id."""
        params: dict[str, Any] = {
            "product": product_id,
            "unit_amount": unit_amount,
            "currency": currency,
            "recurring": {"interval": interval},
        }
        if plan_id:
            params["metadata"] = {"plan_id": plan_id}
        price = await self._call("prices.create", self._client.prices.create, params=params)
        logger.info(f"Created Stripe price {price.id} for product {product_id}")
        return price.id

    async def deactivate_price(self, price_id: str) -> None:
        """Archive a price so it can no longer be used for new subscriptions."""
        await self._call(
            "prices.update",
            self._client.prices.update,
            price_id,
            params={"active": False},
        )
        logger.info(f"Deactivated Stripe price {price_id}")


# =============================================================================
# Singleton Instance (Dependency Injection Ready)
# =============================================================================

_stripe_service_instance: Optional[StripeService] = None


def get_stripe_service() -> StripeService:
    """Get or create Stripe service singleton."""
    global _stripe_service_instance

    if _stripe_service_instance is None:
        _stripe_service_instance = StripeService()

    return _stripe_service_instance
