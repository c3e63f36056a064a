"""
Cron Routes

Scheduled jobs triggered by the platform scheduler. When CRON_SECRET is
set, callers must send it as a bearer token.
"""

import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.api.dependencies import get_maintenance_service, get_reconciliation_service
from app.config.settings import get_settings
from app.domain.reconciliation import CleanupSummary, SweepSummary
from app.infrastructure.exceptions import BillingProviderError
from app.infrastructure.services.maintenance_service import MaintenanceService
from app.infrastructure.services.reconciliation_service import ReconciliationService

logger = logging.getLogger(__name__)

cron_bearer = HTTPBearer(auto_error=False)


async def verify_cron_secret(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(cron_bearer),
) -> bool:
    """Check the bearer token against CRON_SECRET (open when unset)."""
    expected = get_settings().cron_secret
    if not expected:
        return True

    if not credentials or not secrets.compare_digest(credentials.credentials, expected):
        logger.warning("Invalid cron secret attempt")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid cron secret",
        )
    return True


router = APIRouter(
    prefix="/api/cron",
    tags=["cron"],
    dependencies=[Depends(verify_cron_secret)],
)


@router.get("/stripe-reconcile", response_model=SweepSummary)
async def stripe_reconcile(
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    """
    Pull active and trialing subscriptions from Stripe and repair the ledger.

    Record-level problems are reported in the summary; only a failure to
    reach Stripe fails the whole run (502).
    """
    try:
        return await service.run()
    except BillingProviderError as e:
        logger.error(f"[RECONCILE] Sweep aborted: {e.message}")
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={"ok": False, "error": e.message},
        )


@router.get("/cleanup", response_model=CleanupSummary)
async def cleanup(
    service: MaintenanceService = Depends(get_maintenance_service),
):
    """Delete webhook event records and audit entries past retention."""
    return await service.cleanup()
