"""
Plan Admin Service

Plan catalog listing and atomic price rotation.

Rotation order matters: the new Stripe price is created first, the local
switch happens in one transaction, and the old Stripe price is archived
only after that transaction committed. A failure anywhere before the
commit leaves the previous version current.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.domain.subscription import (
    AdminPlanResponse,
    BillingInterval,
    PlanResponse,
    PlanUpdateRequest,
    PlanUpdateResponse,
    PriceVersionResponse,
    SubscriptionStatus,
)
from app.infrastructure.db.database import unit_of_work
from app.infrastructure.db.models.plan import SubscriptionPlan, SubscriptionPlanPrice
from app.infrastructure.db.repositories.plan_repository import PlanRepository
from app.infrastructure.db.repositories.subscription_repository import SubscriptionRepository
from app.infrastructure.exceptions import BillingProviderError, NotFoundError, ValidationError
from app.infrastructure.payments.stripe_service import StripeService


logger = logging.getLogger(__name__)


def _plan_response(plan: SubscriptionPlan) -> PlanResponse:
    return PlanResponse(
        id=plan.id,
        name=plan.name,
        daily_limit=plan.daily_interactions_limit,
        price_id=plan.stripe_price_id,
        product_id=plan.stripe_product_id,
        price_cents=plan.price_cents,
        currency=plan.currency,
        interval=BillingInterval(plan.interval),
        features=list(plan.features or []),
    )


def _version_response(version: SubscriptionPlanPrice) -> PriceVersionResponse:
    return PriceVersionResponse(
        id=version.id,
        stripe_price_id=version.stripe_price_id,
        price_cents=version.amount_cents,
        currency=version.currency,
        interval=BillingInterval(version.billing_interval),
        is_current=version.is_current,
        created_at=version.created_at,
    )


class PlanAdminService:
    """Catalog reads and price rotation."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        stripe_service: Optional[StripeService] = None,
    ):
        self._session_factory = session_factory
        self._stripe = stripe_service

    # =========================================================================
    # Queries
    # =========================================================================

    async def list_plans(self) -> list[PlanResponse]:
        """Active plans, cheapest first."""
        async with self._session_factory() as session:
            plans = await PlanRepository(session).list_plans(active_only=True)
        return [_plan_response(plan) for plan in plans]

    async def list_plans_with_history(self) -> list[AdminPlanResponse]:
        async with self._session_factory() as session:
            repo = PlanRepository(session)
            plans = await repo.list_plans(active_only=False)
            result = []
            for plan in plans:
                versions = await repo.list_versions(plan.id)
                result.append(AdminPlanResponse(
                    **_plan_response(plan).model_dump(),
                    active=plan.active,
                    price_versions=[_version_response(v) for v in versions],
                ))
        return result

    async def status_counts(self) -> dict[str, int]:
        """Subscription count per status (every status present) plus total."""
        async with self._session_factory() as session:
            counts = await SubscriptionRepository(session).count_by_status()
        result = {status.value: counts.get(status.value, 0) for status in SubscriptionStatus}
        result["total"] = sum(counts.values())
        return result

    # =========================================================================
    # Price rotation
    # =========================================================================

    async def update_plan_price(self, request: PlanUpdateRequest) -> PlanUpdateResponse:
        """
        Rotate a plan to a new price.

        Raises:
            NotFoundError: unknown plan.
            ValidationError: the plan has no Stripe product.
            BillingProviderError: the new price could not be created.
            DatabaseError: the local switch failed (old version stays current).
        """
        if self._stripe is None:
            raise ValidationError("Stripe is not configured")

        async with self._session_factory() as session:
            repo = PlanRepository(session)
            plan = await repo.get_by_id(request.plan_id)
            if plan is None:
                raise NotFoundError(f"Plan {request.plan_id} not found", operation="update_plan_price",
                                    table="subscription_plans")
            if not plan.stripe_product_id:
                raise ValidationError(
                    f"Plan {plan.id} has no Stripe product",
                    details={"plan_id": plan.id},
                )
            current = await repo.get_current_version(plan.id)
            old_price_id = current.stripe_price_id if current else plan.stripe_price_id
            product_id = plan.stripe_product_id
            currency = plan.currency

        new_price_id = await self._stripe.create_price(
            product_id,
            request.new_price_cents,
            currency,
            request.interval.value,
            plan_id=request.plan_id,
        )

        try:
            async with unit_of_work(self._session_factory, "rotate_plan_price") as session:
                repo = PlanRepository(session)
                plan = await repo.get_by_id(request.plan_id)
                if plan is None:
                    raise NotFoundError(f"Plan {request.plan_id} not found", operation="update_plan_price",
                                        table="subscription_plans")
                version = await repo.rotate_price(
                    plan,
                    new_price_id,
                    request.new_price_cents,
                    request.interval.value,
                    features=request.features,
                    name=request.name,
                )
                version_id = version.id
        except Exception:
            await self._archive_unused_price(new_price_id)
            raise

        if old_price_id and old_price_id != new_price_id:
            try:
                await self._stripe.deactivate_price(old_price_id)
            except BillingProviderError as e:
                logger.warning(f"[PLANS] Old price {old_price_id} still active on Stripe: {e.message}")

        logger.info(f"[PLANS] Plan {request.plan_id} rotated to {new_price_id}")
        return PlanUpdateResponse(plan_id=request.plan_id, new_price_id=new_price_id, version_id=version_id)

    async def _archive_unused_price(self, price_id: str) -> None:
        try:
            await self._stripe.deactivate_price(price_id)
        except BillingProviderError as e:
            logger.error(f"[PLANS] Could not archive unused price {price_id}: {e.message}")
