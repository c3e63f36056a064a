"""
Admin Routes for Plan Management

Plan catalog administration and subscription overview.
Protected by API key authentication.
"""

import logging
import secrets

from fastapi import APIRouter, Depends, Header, HTTPException, status

from app.api.dependencies import get_plan_admin_service, get_plan_catalog_service
from app.config.settings import get_settings
from app.domain.subscription import AdminPlanResponse, PlanUpdateRequest, PlanUpdateResponse
from app.infrastructure.services.plan_admin_service import PlanAdminService

logger = logging.getLogger(__name__)


# =============================================================================
# Admin API Key Authentication
# =============================================================================

async def verify_admin_api_key(
    x_admin_key: str = Header(..., description="Admin API key for protected operations")
) -> bool:
    """
    Verify admin API key from header.

    The admin key should be set in environment variable ADMIN_API_KEY.
    """
    expected_key = get_settings().admin_api_key

    if not expected_key:
        logger.error("ADMIN_API_KEY environment variable not set")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin authentication not configured"
        )

    # Use secrets.compare_digest for timing-attack resistance
    if not secrets.compare_digest(x_admin_key, expected_key):
        logger.warning("Invalid admin API key attempt")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin API key"
        )

    return True


router = APIRouter(
    prefix="/api/admin",
    tags=["admin"],
    dependencies=[Depends(verify_admin_api_key)]  # Protect ALL admin routes
)


@router.get("/plans", response_model=list[AdminPlanResponse])
async def list_plans(
    catalog: PlanAdminService = Depends(get_plan_catalog_service),
):
    """All plans (active or not) with their price history, newest first."""
    return await catalog.list_plans_with_history()


@router.put("/plans", response_model=PlanUpdateResponse)
async def update_plan_price(
    request: PlanUpdateRequest,
    service: PlanAdminService = Depends(get_plan_admin_service),
):
    """
    Rotate a plan to a new price.

    This endpoint:
    1. Creates the new recurring price on Stripe
    2. Switches the current price version locally in one transaction
    3. Archives the previous Stripe price once the switch is committed

    Existing subscribers stay on the price they signed up with.
    """
    logger.info(f"[ADMIN] Price rotation for plan {request.plan_id}: {request.new_price_cents}/{request.interval.value}")
    return await service.update_plan_price(request)


@router.get("/subscriptions/status-counts")
async def subscription_status_counts(
    catalog: PlanAdminService = Depends(get_plan_catalog_service),
):
    """Number of subscriptions per status."""
    return {"counts": await catalog.status_counts()}
