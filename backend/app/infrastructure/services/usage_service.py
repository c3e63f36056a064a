"""
Usage Service

Daily interaction quota: the read-side check, the atomic increment, and
the guard that wraps protected operations.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.domain.subscription import (
    InteractionStatus,
    Limited,
    SubscriptionStatus,
    SubscriptionStatusResponse,
    as_utc,
    denial_message,
    next_reset_time,
    quota_from_limit,
    usage_day,
    utcnow,
)
from app.infrastructure.db.database import unit_of_work
from app.infrastructure.db.models.plan import SubscriptionPlan
from app.infrastructure.db.models.subscription import UserSubscription
from app.infrastructure.db.repositories.plan_repository import PlanRepository
from app.infrastructure.db.repositories.subscription_repository import SubscriptionRepository
from app.infrastructure.db.repositories.usage_repository import UsageRepository
from app.infrastructure.exceptions import QuotaExceededError


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class _Entitlement:
    subscription: Optional[UserSubscription]
    plan: Optional[SubscriptionPlan]
    denial_reason: Optional[str]


class UsageService:
    """Per-user daily interaction accounting."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def _entitlement(
        self,
        session: AsyncSession,
        user_id: str,
        now: datetime,
    ) -> _Entitlement:
        """Live subscription and plan of the user, or why there is none."""
        subscriptions = SubscriptionRepository(session)
        live = await subscriptions.get_live_by_user(user_id)
        if live is None:
            latest = await subscriptions.get_latest_by_user(user_id)
            reason = "inactive_status" if latest else "no_subscription"
            return _Entitlement(subscription=latest, plan=None, denial_reason=reason)

        period_end = as_utc(live.current_period_end)
        if period_end is not None and period_end <= now:
            return _Entitlement(subscription=live, plan=None, denial_reason="period_ended")

        plan = await PlanRepository(session).get_by_id(live.plan_id)
        return _Entitlement(subscription=live, plan=plan, denial_reason=None)

    async def can_interact(self, user_id: str, now: Optional[datetime] = None) -> InteractionStatus:
        """Whether the user may interact right now, with remaining quota."""
        now = now or utcnow()
        reset_time = next_reset_time(now)

        async with self._session_factory() as session:
            entitlement = await self._entitlement(session, user_id, now)
            sub = entitlement.subscription
            status = SubscriptionStatus(sub.status) if sub else None
            common = dict(
                subscription_status=status,
                current_period_end=as_utc(sub.current_period_end) if sub else None,
                reset_time=reset_time,
                is_trialing=status == SubscriptionStatus.TRIALING,
                trial_ends_at=as_utc(sub.trial_end) if sub and status == SubscriptionStatus.TRIALING else None,
            )

            if entitlement.denial_reason is not None:
                return InteractionStatus(
                    can_interact=False,
                    remaining_interactions=0,
                    daily_limit=None,
                    denial_reason=entitlement.denial_reason,
                    **common,
                )

            plan = entitlement.plan
            # A dangling plan reference allows nothing
            quota = quota_from_limit(plan.daily_interactions_limit) if plan else Limited(0)
            used = await UsageRepository(session).used_on(user_id, usage_day(now))

        allowed = quota.allows(used)
        return InteractionStatus(
            can_interact=allowed,
            remaining_interactions=quota.remaining(used),
            daily_limit=quota.daily_limit,
            plan_name=plan.name if plan else None,
            plan_type=plan.id if plan else None,
            denial_reason=None if allowed else "quota_exceeded",
            **common,
        )

    async def record_interaction(self, user_id: str, now: Optional[datetime] = None) -> bool:
        """
        Consume one interaction for today.

        Returns:
            False when the user has no live subscription or the daily limit
            is already reached; the counter is never clamped.
        """
        now = now or utcnow()
        day = usage_day(now)
        async with unit_of_work(self._session_factory, "record_interaction") as session:
            entitlement = await self._entitlement(session, user_id, now)
            if entitlement.denial_reason is not None:
                return False
            plan = entitlement.plan
            daily_limit = plan.daily_interactions_limit if plan else 0

            usage = UsageRepository(session)
            await usage.ensure_row(user_id, day, daily_limit, entitlement.subscription.id)
            new_count = await usage.try_increment(user_id, day)

        if new_count is None:
            logger.info(f"[USAGE] Daily limit reached for user {user_id}")
            return False
        logger.debug(f"[USAGE] User {user_id} at {new_count} interactions on {day}")
        return True

    async def release_interaction(self, user_id: str, now: Optional[datetime] = None) -> None:
        """Undo one `record_interaction` of the same day."""
        day = usage_day(now or utcnow())
        async with unit_of_work(self._session_factory, "release_interaction") as session:
            released = await UsageRepository(session).release(user_id, day)
        if not released:
            logger.warning(f"[USAGE] Nothing to release for user {user_id} on {day}")

    async def get_status(self, user_id: str, now: Optional[datetime] = None) -> SubscriptionStatusResponse:
        """Subscription status view for the caller, including trial eligibility."""
        status = await self.can_interact(user_id, now)
        async with self._session_factory() as session:
            ever_subscribed = await SubscriptionRepository(session).has_ever_subscribed(user_id)
        return SubscriptionStatusResponse(
            subscription_status=status.subscription_status,
            plan_type=status.plan_type,
            plan_name=status.plan_name,
            daily_limit=status.daily_limit,
            remaining_interactions=status.remaining_interactions,
            current_period_end=status.current_period_end,
            reset_time=status.reset_time,
            is_trialing=status.is_trialing,
            trial_eligible=not ever_subscribed,
        )


class InteractionGuard:
    """
    Runs an operation only if the user still has quota.

    The interaction is reserved with the atomic increment before the
    operation starts, so concurrent requests can never run more operations
    than the limit allows. A failed operation gives its reservation back.
    """

    def __init__(self, usage_service: UsageService):
        self._usage = usage_service

    @staticmethod
    def _denied(status: InteractionStatus) -> QuotaExceededError:
        return QuotaExceededError(
            denial_message(status),
            reset_time=status.reset_time,
            daily_limit=status.daily_limit,
            subscription_status=status.subscription_status.value if status.subscription_status else None,
            reason=status.denial_reason or "quota_exceeded",
        )

    async def check(self, user_id: str) -> InteractionStatus:
        """
        Raises:
            QuotaExceededError: the user may not interact right now.
        """
        status = await self._usage.can_interact(user_id)
        if not status.can_interact:
            raise self._denied(status)
        return status

    async def run(self, user_id: str, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Raises:
            QuotaExceededError: before `operation` is started.
        """
        now = utcnow()
        await self.check(user_id)
        if not await self._usage.record_interaction(user_id, now=now):
            # Another request took the last interaction after the check
            status = await self._usage.can_interact(user_id, now=now)
            if status.can_interact:
                status = status.model_copy(update={
                    "can_interact": False,
                    "remaining_interactions": 0,
                    "denial_reason": "quota_exceeded",
                })
            raise self._denied(status)

        try:
            return await operation()
        except Exception:
            await self._usage.release_interaction(user_id, now=now)
            raise
