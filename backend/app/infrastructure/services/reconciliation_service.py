"""
Reconciliation Service

Periodic sweep that pulls live subscriptions from Stripe and repairs the
local ledger: rows the webhooks never created, and rows whose status or
billing period drifted. Per-record failures are collected in the summary
and never stop the sweep.
"""

import logging
import time
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config.settings import Settings, get_settings
from app.domain.reconciliation import (
    Divergence,
    RecordError,
    RepairedRecord,
    SkippedRecord,
    SweepSummary,
)
from app.domain.subscription import (
    RECONCILED_STATUSES,
    AuditAction,
    AuditSource,
    ProviderSubscription,
    as_utc,
)
from app.infrastructure.db.database import unit_of_work
from app.infrastructure.db.repositories.audit_repository import AuditRepository
from app.infrastructure.db.repositories.subscription_repository import SubscriptionRepository
from app.infrastructure.exceptions import DatabaseError, LookupFailure, NutriChatError
from app.infrastructure.payments.stripe_service import StripeService
from app.infrastructure.services.subscription_sync import SubscriptionSync


logger = logging.getLogger(__name__)


def periods_match(
    local: Optional[datetime],
    remote: Optional[datetime],
    tolerance_seconds: float,
) -> bool:
    """Period ends equal within `tolerance_seconds` (both missing counts as equal)."""
    local, remote = as_utc(local), as_utc(remote)
    if local is None or remote is None:
        return local is None and remote is None
    return abs((local - remote).total_seconds()) <= tolerance_seconds


class _Skip(Exception):
    """Internal: the record is skipped with a reason."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ReconciliationService:
    """Stripe -> ledger convergence sweep."""

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
        self._page_size = settings.reconcile_page_size
        self._tolerance = settings.reconcile_period_tolerance_seconds

    async def run(self) -> SweepSummary:
        """
        Sweep active, then trialing subscriptions.

        Raises:
            BillingProviderError: a page could not be listed (sweep-level).
        """
        started = time.monotonic()
        summary = SweepSummary()

        for status in RECONCILED_STATUSES:
            starting_after: Optional[str] = None
            while True:
                page = await self._stripe.list_subscriptions(
                    status.value,
                    limit=self._page_size,
                    starting_after=starting_after,
                )
                for raw in page.subscriptions:
                    await self._reconcile_record(raw, summary)
                if not page.has_more or not page.last_id:
                    break
                starting_after = page.last_id

        summary.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"[RECONCILE] Done in {summary.duration_ms}ms: "
            f"repaired={summary.repaired_count} divergences={summary.divergences_count} "
            f"skipped={summary.skipped_count} errors={summary.error_count}"
        )
        return summary

    # =========================================================================
    # Per-record processing
    # =========================================================================

    async def _reconcile_record(self, raw: dict[str, Any], summary: SweepSummary) -> None:
        subscription_id = raw.get("id")
        provider: Optional[ProviderSubscription] = None
        try:
            provider = ProviderSubscription.from_stripe(raw)
            await self._reconcile(provider, summary)
        except _Skip as skip:
            summary.add_skipped(SkippedRecord(stripe_subscription_id=subscription_id, reason=skip.reason))
            await self._audit_safely(AuditAction.SKIPPED, provider, subscription_id, reason=skip.reason)
        except (NutriChatError, KeyError, TypeError, ValueError) as e:
            logger.error(f"[RECONCILE] {subscription_id}: {e}")
            summary.add_error(RecordError(stripe_subscription_id=subscription_id, error=str(e)))
            await self._audit_safely(
                AuditAction.ERROR, provider, subscription_id, reason="record_failed", error=str(e)
            )

    async def _reconcile(self, provider: ProviderSubscription, summary: SweepSummary) -> None:
        try:
            async with self._session_factory() as session:
                plan = await self._sync.resolve_plan(session, provider)
            user_id = await self._sync.resolve_user(provider)
        except LookupFailure as e:
            raise _Skip(e.reason if e.kind != "price" else "no_price") from e

        if provider.current_period_start is None or provider.current_period_end is None:
            raise _Skip("missing_period")

        async with unit_of_work(self._session_factory, "reconcile_record") as session:
            existing = await SubscriptionRepository(session).get_by_stripe_subscription_id(provider.id)

            if existing is None:
                summary.add_divergence(Divergence(
                    stripe_subscription_id=provider.id,
                    kind="missing",
                    status_stripe=provider.status,
                    period_end_stripe=provider.current_period_end,
                ))
                if await self._sync.find_conflicting_live(session, user_id, provider) is not None:
                    raise _Skip("duplicate_subscription")
                change = await self._sync.apply(
                    session, provider, user_id, plan.id, AuditSource.RECONCILE, reason="missing"
                )
                summary.add_repaired(RepairedRecord(
                    stripe_subscription_id=provider.id, action="created", user_id=change.row.user_id
                ))
                return

            status_matches = existing.status == provider.mapped_status.value
            period_matches = periods_match(
                existing.current_period_end, provider.current_period_end, self._tolerance
            )
            if status_matches and period_matches:
                raise _Skip("up_to_date")

            summary.add_divergence(Divergence(
                stripe_subscription_id=provider.id,
                kind="mismatch",
                status_stripe=provider.status,
                status_db=existing.status,
                period_end_stripe=provider.current_period_end,
                period_end_db=as_utc(existing.current_period_end),
            ))
            if await self._sync.find_conflicting_live(session, existing.user_id, provider) is not None:
                raise _Skip("duplicate_subscription")
            change = await self._sync.apply(
                session, provider, existing.user_id, plan.id, AuditSource.RECONCILE, reason="mismatch"
            )
            summary.add_repaired(RepairedRecord(
                stripe_subscription_id=provider.id, action="updated", user_id=change.row.user_id
            ))

    async def _audit_safely(
        self,
        action: AuditAction,
        provider: Optional[ProviderSubscription],
        subscription_id: Optional[str],
        reason: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """Audit write that cannot abort the sweep."""
        try:
            async with unit_of_work(self._session_factory, "reconcile_audit") as session:
                await AuditRepository(session).append(
                    action,
                    AuditSource.RECONCILE,
                    stripe_subscription_id=subscription_id,
                    stripe_customer_id=provider.customer_id if provider else None,
                    status_stripe=provider.status if provider else None,
                    period_end_stripe=provider.current_period_end if provider else None,
                    reason=reason,
                    error=error,
                )
        except DatabaseError as e:
            logger.error(f"[RECONCILE] Could not audit {subscription_id}: {e.message}")
