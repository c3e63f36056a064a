"""
Subscription API Routes

REST API endpoints for the caller's subscription.
Follows FastAPI best practices with dependency injection.
"""

import logging

from fastapi import APIRouter, Depends

from app.domain.subscription import (
    BillingPortalResponse,
    CancelResponse,
    CheckoutRequest,
    CheckoutResponse,
    PlanResponse,
    SubscriptionStatusResponse,
)
from app.api.dependencies import (
    CurrentUser,
    get_current_user,
    get_current_user_id,
    get_plan_catalog_service,
    get_subscription_service,
    get_usage_service,
)
from app.infrastructure.services.plan_admin_service import PlanAdminService
from app.infrastructure.services.subscription_service import SubscriptionService
from app.infrastructure.services.usage_service import UsageService


logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# Subscription Status Endpoints
# =============================================================================

@router.get("/subscription/status", response_model=SubscriptionStatusResponse)
async def get_subscription_status(
    user_id: str = Depends(get_current_user_id),
    usage: UsageService = Depends(get_usage_service),
):
    """
    Get the current user's subscription status and today's remaining quota.

    trial_eligible is true only for users who never held a subscription.
    """
    return await usage.get_status(user_id)


@router.get("/subscription/plans", response_model=list[PlanResponse])
async def list_plans(
    catalog: PlanAdminService = Depends(get_plan_catalog_service),
):
    """Active plans with their current price (public)."""
    return await catalog.list_plans()


# =============================================================================
# Checkout & Billing Portal
# =============================================================================

@router.post("/subscription/checkout", response_model=CheckoutResponse)
async def create_checkout(
    request: CheckoutRequest,
    user: CurrentUser = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """
    Start a Stripe checkout for the plan priced by `price_id`.

    404 for an unknown or retired price, 409 when the user already holds a
    live subscription (in the ledger or on Stripe).
    """
    return await service.create_checkout(user.id, user.email, request.price_id)


@router.post("/subscription/billing-portal", response_model=BillingPortalResponse)
async def create_billing_portal(
    user_id: str = Depends(get_current_user_id),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Stripe customer portal for the caller's live subscription (409 without one)."""
    return await service.create_portal(user_id)


# =============================================================================
# Cancellation
# =============================================================================

@router.post("/subscription/cancel", response_model=CancelResponse)
async def cancel_subscription(
    user_id: str = Depends(get_current_user_id),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """
    Cancel the caller's subscription immediately.

    409 when there is no active or trialing subscription.
    """
    logger.info(f"Cancellation requested by user {user_id}")
    return await service.cancel_now(user_id)
