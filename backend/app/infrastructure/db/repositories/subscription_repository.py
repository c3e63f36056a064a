"""
Subscription Repository

Data access layer for the subscription ledger.
Follows Repository pattern for Clean Architecture.
"""

import logging
from typing import Optional

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from app.domain.subscription import LIVE_STATUSES, ProviderSubscription
from app.infrastructure.db.models.base import new_id, utc_now
from app.infrastructure.db.models.subscription import UserSubscription
from app.infrastructure.db.repositories.base_repository import BaseRepository, dialect_insert


logger = logging.getLogger(__name__)

_LIVE_VALUES = [status.value for status in LIVE_STATUSES]


class SubscriptionRepository(BaseRepository[UserSubscription]):
    """
    Repository for subscription data access.

    Every write from Stripe data (webhook, reconciliation, cancellation)
    goes through upsert_from_provider so that both paths map fields the
    same way.
    """

    def __init__(self, session: AsyncSession):
        super().__init__(UserSubscription, session)

    # =========================================================================
    # Query Methods
    # =========================================================================

    async def get_by_stripe_subscription_id(
        self,
        stripe_subscription_id: str,
    ) -> Optional[UserSubscription]:
        statement = select(UserSubscription).where(
            UserSubscription.stripe_subscription_id == stripe_subscription_id
        )
        result = await self._session.execute(statement)
        return result.scalar_one_or_none()

    async def get_live_by_user(self, user_id: str) -> Optional[UserSubscription]:
        """The user's active or trialing subscription, if any."""
        statement = (
            select(UserSubscription)
            .where(
                UserSubscription.user_id == user_id,
                col(UserSubscription.status).in_(_LIVE_VALUES),
            )
            .order_by(col(UserSubscription.updated_at).desc())
        )
        result = await self._session.execute(statement)
        return result.scalars().first()

    async def get_latest_by_user(self, user_id: str) -> Optional[UserSubscription]:
        """Most recently touched subscription of the user, whatever its status."""
        statement = (
            select(UserSubscription)
            .where(UserSubscription.user_id == user_id)
            .order_by(col(UserSubscription.updated_at).desc())
        )
        result = await self._session.execute(statement)
        return result.scalars().first()

    async def has_ever_subscribed(self, user_id: str) -> bool:
        """True if the ledger holds any subscription for the user (trial eligibility)."""
        statement = select(UserSubscription.id).where(UserSubscription.user_id == user_id).limit(1)
        result = await self._session.execute(statement)
        return result.first() is not None

    async def count_by_status(self) -> dict[str, int]:
        statement = (
            select(UserSubscription.status, func.count())
            .group_by(UserSubscription.status)
        )
        result = await self._session.execute(statement)
        return {status: count for status, count in result.all()}

    # =========================================================================
    # Command Methods
    # =========================================================================

    async def upsert_from_provider(
        self,
        provider: ProviderSubscription,
        user_id: str,
        plan_id: str,
    ) -> tuple[UserSubscription, bool]:
        """
        Insert or conform the ledger row keyed by stripe_subscription_id.

        The owning user never changes on conflict; plan and all mirrored
        Stripe fields do (last applied wins).

        Returns:
            The row and whether this statement inserted it. The conflict
            branch keeps the existing primary key, so a returned id equal to
            the one proposed here means the insert won.

        Raises:
            UnknownProviderStatusError: if Stripe reports an unknown status.
        """
        now = utc_now()
        status = provider.mapped_status

        values = {
            "id": new_id(),
            "user_id": user_id,
            "plan_id": plan_id,
            "stripe_customer_id": provider.customer_id,
            "stripe_subscription_id": provider.id,
            "status": status.value,
            "current_period_start": provider.current_period_start,
            "current_period_end": provider.current_period_end,
            "trial_start": provider.trial_start,
            "trial_end": provider.trial_end,
            "canceled_at": provider.canceled_at,
            "cancel_at": provider.cancel_at,
            "cancel_at_period_end": provider.cancel_at_period_end,
            "created_at": now,
            "updated_at": now,
        }

        stmt = dialect_insert(self._session, UserSubscription).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["stripe_subscription_id"],
            set_={
                "plan_id": stmt.excluded.plan_id,
                "stripe_customer_id": stmt.excluded.stripe_customer_id,
                "status": stmt.excluded.status,
                "current_period_start": stmt.excluded.current_period_start,
                "current_period_end": stmt.excluded.current_period_end,
                "trial_start": stmt.excluded.trial_start,
                "trial_end": stmt.excluded.trial_end,
                "canceled_at": stmt.excluded.canceled_at,
                "cancel_at": stmt.excluded.cancel_at,
                "cancel_at_period_end": stmt.excluded.cancel_at_period_end,
                "updated_at": now,
            },
        ).returning(UserSubscription)

        result = await self._session.scalars(
            stmt, execution_options={"populate_existing": True}
        )
        row = result.one()
        logger.info(
            f"Upserted subscription {provider.id} for user {row.user_id} "
            f"(status={row.status}, plan={row.plan_id})"
        )
        return row, row.id == values["id"]
