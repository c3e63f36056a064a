"""
Webhook Service

Applies verified Stripe events to the subscription ledger.

Each event is applied as one unit of work: the event id is claimed
(INSERT ... ON CONFLICT DO NOTHING) in the same transaction as the ledger
write and its audit entry. A redelivered event finds its id already
claimed and changes nothing.

Handled events:
- invoice.payment_succeeded: primary creation path for subscriptions
- invoice.payment_failed: re-sync from Stripe (usually past_due)
- customer.subscription.created/updated/deleted: conform the ledger row
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.domain.events import (
    BillingEvent,
    InvoiceEvent,
    SubscriptionEvent,
    parse_event,
)
from app.domain.subscription import AuditAction, AuditSource, ProviderSubscription
from app.infrastructure.db.database import unit_of_work
from app.infrastructure.db.models.subscription import UserSubscription
from app.infrastructure.db.repositories.audit_repository import AuditRepository
from app.infrastructure.db.repositories.subscription_repository import SubscriptionRepository
from app.infrastructure.db.repositories.webhook_event_repository import WebhookEventRepository
from app.infrastructure.exceptions import LookupFailure
from app.infrastructure.payments.stripe_service import StripeService
from app.infrastructure.services.subscription_sync import SubscriptionSync


logger = logging.getLogger(__name__)


class WebhookOutcome(str, Enum):
    PROCESSED = "processed"
    IGNORED = "ignored"
    ALREADY_PROCESSED = "already_processed"
    SKIPPED = "skipped"


@dataclass
class WebhookResult:
    outcome: WebhookOutcome
    event_id: str
    event_type: str


class WebhookService:
    """Stripe event ingestion."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        stripe_service: StripeService,
        sync: SubscriptionSync,
    ):
        self._session_factory = session_factory
        self._stripe = stripe_service
        self._sync = sync

    async def handle(self, payload: bytes, signature: str) -> WebhookResult:
        """
        Verify, parse and apply one webhook delivery.

        Raises:
            SignatureVerificationError / WebhookPayloadError: reject (400).
            LookupFailure: payment succeeded for an unknown plan or user (422).
            DatabaseError / BillingProviderError: transient, Stripe retries.
        """
        event = parse_event(self._stripe.verify_webhook(payload, signature))
        logger.info(f"[WEBHOOK] Received {event.type} ({event.id})")
        return await self.apply_event(event)

    async def apply_event(self, event: BillingEvent) -> WebhookResult:
        # Replay short-circuit; the claim inside each unit of work is authoritative
        if await self._already_recorded(event.id):
            logger.info(f"[WEBHOOK] Event {event.id} already processed")
            return self._result(event, WebhookOutcome.ALREADY_PROCESSED)

        if isinstance(event, SubscriptionEvent):
            return await self._apply_subscription_state(event, event.subscription)

        if isinstance(event, InvoiceEvent):
            if not event.subscription_id:
                logger.info(f"[WEBHOOK] Invoice {event.invoice_id} has no subscription")
                return await self._record_ignored(event)
            provider = await self._stripe.get_subscription(event.subscription_id)
            if event.succeeded:
                return await self._apply_payment_succeeded(event, provider)
            return await self._apply_subscription_state(event, provider)

        logger.info(f"[WEBHOOK] Unhandled event type: {event.type}")
        return await self._record_ignored(event)

    # =========================================================================
    # Event Handlers
    # =========================================================================

    async def _apply_payment_succeeded(
        self,
        event: InvoiceEvent,
        provider: ProviderSubscription,
    ) -> WebhookResult:
        """Create or refresh the subscription a successful payment belongs to."""
        try:
            async with self._session_factory() as session:
                plan = await self._sync.resolve_plan(session, provider)
            user_id = await self._sync.resolve_user(provider)
        except LookupFailure as e:
            logger.error(f"[WEBHOOK] Cannot apply {event.id}: {e.message}")
            await self._audit_lookup_error(event, provider, e)
            raise

        async with self._session_factory() as session:
            conflict = await self._sync.find_conflicting_live(session, user_id, provider)

        if conflict is not None:
            return await self._skip_duplicate(event, provider, user_id, plan.id, conflict)

        async with unit_of_work(self._session_factory, "webhook_payment_succeeded") as session:
            if not await self._claim(session, event):
                return self._result(event, WebhookOutcome.ALREADY_PROCESSED)
            await self._sync.apply(
                session, provider, user_id, plan.id, AuditSource.WEBHOOK, event_id=event.id
            )
        return self._result(event, WebhookOutcome.PROCESSED)

    async def _apply_subscription_state(
        self,
        event: BillingEvent,
        provider: ProviderSubscription,
    ) -> WebhookResult:
        """
        Conform the ledger row to the Stripe subscription.

        A row that does not exist yet is created when its plan and user can
        be resolved; otherwise the event is accepted and left for the
        reconciliation sweep.
        """
        async with self._session_factory() as session:
            existing = await SubscriptionRepository(session).get_by_stripe_subscription_id(provider.id)
            try:
                plan_id: Optional[str] = (await self._sync.resolve_plan(session, provider)).id
                plan_error: Optional[LookupFailure] = None
            except LookupFailure as e:
                plan_id, plan_error = None, e

        if existing is not None:
            user_id = existing.user_id
            if plan_id is None:
                logger.warning(f"[WEBHOOK] {plan_error.message}; keeping plan {existing.plan_id}")
                plan_id = existing.plan_id
        else:
            try:
                if plan_error is not None:
                    raise plan_error
                user_id = await self._sync.resolve_user(provider)
            except LookupFailure as e:
                logger.warning(
                    f"[WEBHOOK] {event.type} for unknown subscription {provider.id}: "
                    f"{e.message}; leaving it to reconciliation"
                )
                return await self._record_skipped(event, provider, None, e.reason)

        # An existing row turning live again can collide with a newer live subscription
        async with self._session_factory() as session:
            conflict = await self._sync.find_conflicting_live(session, user_id, provider)
        if conflict is not None:
            return await self._skip_duplicate(event, provider, user_id, plan_id, conflict)

        async with unit_of_work(self._session_factory, "webhook_subscription_state") as session:
            if not await self._claim(session, event):
                return self._result(event, WebhookOutcome.ALREADY_PROCESSED)
            await self._sync.apply(
                session, provider, user_id, plan_id, AuditSource.WEBHOOK, event_id=event.id
            )
        return self._result(event, WebhookOutcome.PROCESSED)

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _already_recorded(self, event_id: str) -> bool:
        async with self._session_factory() as session:
            return await WebhookEventRepository(session).get_by_id(event_id) is not None

    @staticmethod
    async def _claim(session: AsyncSession, event: BillingEvent, outcome: str = "applied") -> bool:
        claimed = await WebhookEventRepository(session).claim(
            event.id, event.type, provider_created_at=event.created, outcome=outcome
        )
        if not claimed:
            logger.info(f"[WEBHOOK] Event {event.id} claimed concurrently, skipping")
        return claimed

    async def _record_ignored(self, event: BillingEvent) -> WebhookResult:
        async with unit_of_work(self._session_factory, "webhook_ignored") as session:
            if not await self._claim(session, event, outcome="ignored"):
                return self._result(event, WebhookOutcome.ALREADY_PROCESSED)
        return self._result(event, WebhookOutcome.IGNORED)

    async def _record_skipped(
        self,
        event: BillingEvent,
        provider: ProviderSubscription,
        user_id: Optional[str],
        reason: str,
    ) -> WebhookResult:
        async with unit_of_work(self._session_factory, "webhook_skipped") as session:
            if not await self._claim(session, event, outcome="ignored"):
                return self._result(event, WebhookOutcome.ALREADY_PROCESSED)
            await AuditRepository(session).append(
                AuditAction.SKIPPED,
                AuditSource.WEBHOOK,
                stripe_subscription_id=provider.id,
                stripe_customer_id=provider.customer_id,
                user_id=user_id,
                status_stripe=provider.status,
                period_end_stripe=provider.current_period_end,
                event_id=event.id,
                reason=reason,
            )
        return self._result(event, WebhookOutcome.SKIPPED)

    async def _skip_duplicate(
        self,
        event: BillingEvent,
        provider: ProviderSubscription,
        user_id: str,
        plan_id: Optional[str],
        conflict: UserSubscription,
    ) -> WebhookResult:
        """
        The user already holds another live subscription: schedule this one
        to end on Stripe and leave the ledger row as it is.
        """
        logger.warning(
            f"[WEBHOOK] User {user_id} already holds {conflict.stripe_subscription_id}; "
            f"flagging duplicate {provider.id}"
        )
        await self._stripe.flag_duplicate(provider.id)
        async with unit_of_work(self._session_factory, "webhook_duplicate") as session:
            if not await self._claim(session, event, outcome="ignored"):
                return self._result(event, WebhookOutcome.ALREADY_PROCESSED)
            await AuditRepository(session).append(
                AuditAction.SKIPPED,
                AuditSource.WEBHOOK,
                stripe_subscription_id=provider.id,
                stripe_customer_id=provider.customer_id,
                user_id=user_id,
                plan_id=plan_id,
                status_stripe=provider.status,
                status_db=conflict.status,
                period_end_stripe=provider.current_period_end,
                event_id=event.id,
                reason="duplicate_subscription",
            )
        return self._result(event, WebhookOutcome.SKIPPED)

    async def _audit_lookup_error(
        self,
        event: BillingEvent,
        provider: ProviderSubscription,
        error: LookupFailure,
    ) -> None:
        """Record the failure without claiming the event, so Stripe's retry can apply it later."""
        async with unit_of_work(self._session_factory, "webhook_lookup_error") as session:
            await AuditRepository(session).append(
                AuditAction.ERROR,
                AuditSource.WEBHOOK,
                stripe_subscription_id=provider.id,
                stripe_customer_id=provider.customer_id,
                status_stripe=provider.status,
                period_end_stripe=provider.current_period_end,
                event_id=event.id,
                reason=error.reason,
                error=error.message,
            )

    @staticmethod
    def _result(event: BillingEvent, outcome: WebhookOutcome) -> WebhookResult:
        return WebhookResult(outcome=outcome, event_id=event.id, event_type=event.type)
