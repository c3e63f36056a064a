"""
Plan Repository

Data access for the plan catalog and its versioned prices.
"""

import logging
from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from app.infrastructure.db.models.base import utc_now
from app.infrastructure.db.models.plan import SubscriptionPlan, SubscriptionPlanPrice
from app.infrastructure.db.repositories.base_repository import BaseRepository


logger = logging.getLogger(__name__)


class PlanRepository(BaseRepository[SubscriptionPlan]):
    """Plan catalog access."""

    def __init__(self, session: AsyncSession):
        super().__init__(SubscriptionPlan, session)

    async def get_by_stripe_price_id(self, stripe_price_id: str) -> Optional[SubscriptionPlan]:
        """
        Resolve a Stripe price to its plan.

        Prices retired by a rotation still resolve through the version
        history, so subscribers on an old price keep their plan.
        """
        statement = select(SubscriptionPlan).where(
            SubscriptionPlan.stripe_price_id == stripe_price_id
        )
        result = await self._session.execute(statement)
        plan = result.scalar_one_or_none()
        if plan:
            return plan

        statement = (
            select(SubscriptionPlan)
            .join(SubscriptionPlanPrice, col(SubscriptionPlanPrice.plan_id) == col(SubscriptionPlan.id))
            .where(SubscriptionPlanPrice.stripe_price_id == stripe_price_id)
        )
        result = await self._session.execute(statement)
        return result.scalars().first()

    async def list_plans(self, active_only: bool = True) -> list[SubscriptionPlan]:
        """Plans ordered by price."""
        statement = select(SubscriptionPlan)
        if active_only:
            statement = statement.where(col(SubscriptionPlan.active).is_(True))
        statement = statement.order_by(col(SubscriptionPlan.price_cents), col(SubscriptionPlan.id))
        result = await self._session.execute(statement)
        return list(result.scalars().all())

    async def get_current_version(self, plan_id: str) -> Optional[SubscriptionPlanPrice]:
        statement = select(SubscriptionPlanPrice).where(
            SubscriptionPlanPrice.plan_id == plan_id,
            col(SubscriptionPlanPrice.is_current).is_(True),
        )
        result = await self._session.execute(statement)
        return result.scalar_one_or_none()

    async def list_versions(self, plan_id: str) -> list[SubscriptionPlanPrice]:
        """Price history of a plan, newest first."""
        statement = (
            select(SubscriptionPlanPrice)
            .where(SubscriptionPlanPrice.plan_id == plan_id)
            .order_by(col(SubscriptionPlanPrice.created_at).desc())
        )
        result = await self._session.execute(statement)
        return list(result.scalars().all())

    async def rotate_price(
        self,
        plan: SubscriptionPlan,
        stripe_price_id: str,
        amount_cents: int,
        interval: str,
        features: Optional[list[str]] = None,
        name: Optional[str] = None,
    ) -> SubscriptionPlanPrice:
        """
        Make `stripe_price_id` the plan's current price.

        Flips the existing current version off, inserts the new current
        version and points the plan row at it. Must run inside the caller's
        transaction; nothing is committed here.
        """
        await self._session.execute(
            update(SubscriptionPlanPrice)
            .where(
                col(SubscriptionPlanPrice.plan_id) == plan.id,
                col(SubscriptionPlanPrice.is_current).is_(True),
            )
            .values(is_current=False)
            .execution_options(synchronize_session=False)
        )

        version = SubscriptionPlanPrice(
            plan_id=plan.id,
            stripe_price_id=stripe_price_id,
            amount_cents=amount_cents,
            currency=plan.currency,
            billing_interval=interval,
            is_current=True,
        )
        self._session.add(version)

        plan.stripe_price_id = stripe_price_id
        plan.price_cents = amount_cents
        plan.interval = interval
        if features is not None:
            plan.features = list(features)
        if name is not None:
            plan.name = name
        plan.updated_at = utc_now()
        self._session.add(plan)

        await self._session.flush()
        logger.info(f"Plan {plan.id} now priced by {stripe_price_id} (version {version.id})")
        return version
