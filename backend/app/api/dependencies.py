"""
API Dependencies

FastAPI dependency injection for authentication and common services.

Security: JWT tokens are verified cryptographically using Supabase JWKS (ES256)
with HS256 fallback via the JWT secret. Never decode without verification.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import jwt
from jwt import PyJWKClient
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.config.settings import get_settings


logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

# Cached JWKS client, shared across requests.
# PyJWKClient caches keys internally and refreshes ~every 10 min.
_jwks_client: Optional[PyJWKClient] = None


def _get_jwks_client() -> PyJWKClient:
    """Return a singleton PyJWKClient for the Supabase JWKS endpoint."""
    global _jwks_client
    if _jwks_client is None:
        settings = get_settings()
        jwks_url = f"{settings.supabase_url}/auth/v1/.well-known/jwks.json"
        _jwks_client = PyJWKClient(jwks_url, cache_keys=True)
    return _jwks_client


def _decode_with_jwks(token: str, issuer: str) -> dict:
    """Verify JWT using Supabase JWKS endpoint (ES256 asymmetric keys)."""
    client = _get_jwks_client()
    signing_key = client.get_signing_key_from_jwt(token)
    return jwt.decode(
        token,
        signing_key.key,
        algorithms=["ES256"],
        issuer=issuer,
        audience="authenticated",
        options={"require": ["exp", "sub", "iss"]},
    )


def _decode_with_secret(token: str, secret: str, issuer: str) -> dict:
    """Verify JWT using HS256 symmetric secret (legacy Supabase signing)."""
    return jwt.decode(
        token,
        secret,
        algorithms=["HS256"],
        issuer=issuer,
        audience="authenticated",
        options={"require": ["exp", "sub", "iss"]},
    )


@dataclass(frozen=True)
class CurrentUser:
    id: str
    email: Optional[str] = None


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> CurrentUser:
    """
    Extract and verify the caller from a Supabase JWT.

    Verification strategy (in order):
      1. JWKS (ES256): preferred, follows key rotation.
      2. HS256 with ``SUPABASE_JWT_SECRET``: legacy signing fallback.

    Returns:
        Authenticated user (``sub`` and ``email`` claims).

    Raises:
        HTTPException 401: token missing, expired, or invalid.
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = credentials.credentials
    settings = get_settings()
    issuer = f"{settings.supabase_url}/auth/v1"

    payload: Optional[dict] = None

    # --- Strategy 1: JWKS (ES256) ---
    try:
        payload = _decode_with_jwks(token, issuer)
    except (jwt.exceptions.PyJWKClientError, jwt.InvalidTokenError) as jwks_err:
        logger.debug("JWKS verification failed, trying HS256 fallback: %s", jwks_err)

    # --- Strategy 2: HS256 fallback ---
    if payload is None and settings.supabase_jwt_secret:
        try:
            payload = _decode_with_secret(
                token, settings.supabase_jwt_secret, issuer
            )
        except jwt.ExpiredSignatureError:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Token has expired",
            )
        except jwt.InvalidTokenError as e:
            logger.warning("HS256 JWT verification also failed: %s", e)

    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or unverifiable token",
        )

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: missing user ID",
        )

    return CurrentUser(id=user_id, email=payload.get("email") or None)


async def get_current_user_id(user: CurrentUser = Depends(get_current_user)) -> str:
    """Authenticated user ID (``sub`` claim)."""
    return user.id


# =============================================================================
# Service providers
# Routers should import from api.dependencies, not the infrastructure modules.
# Tests replace the leaf providers through app.dependency_overrides.
# =============================================================================

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: E402

from app.infrastructure.ai.assistant_service import (  # noqa: E402
    AssistantService,
    get_assistant_service,
)
from app.infrastructure.db.database import get_session_factory  # noqa: E402
from app.infrastructure.payments.stripe_service import (  # noqa: E402
    StripeService,
    get_stripe_service,
)
from app.infrastructure.services.maintenance_service import MaintenanceService  # noqa: E402
from app.infrastructure.services.plan_admin_service import PlanAdminService  # noqa: E402
from app.infrastructure.services.reconciliation_service import ReconciliationService  # noqa: E402
from app.infrastructure.services.subscription_service import SubscriptionService  # noqa: E402
from app.infrastructure.services.subscription_sync import SubscriptionSync  # noqa: E402
from app.infrastructure.services.usage_service import InteractionGuard, UsageService  # noqa: E402
from app.infrastructure.services.webhook_service import WebhookService  # noqa: E402
from app.infrastructure.users.user_directory import UserDirectory, get_user_directory  # noqa: E402


SessionFactory = async_sessionmaker[AsyncSession]


def get_subscription_sync(
    stripe_service: StripeService = Depends(get_stripe_service),
    user_directory: UserDirectory = Depends(get_user_directory),
) -> SubscriptionSync:
    return SubscriptionSync(stripe_service, user_directory)


def get_webhook_service(
    session_factory: SessionFactory = Depends(get_session_factory),
    stripe_service: StripeService = Depends(get_stripe_service),
    sync: SubscriptionSync = Depends(get_subscription_sync),
) -> WebhookService:
    return WebhookService(session_factory, stripe_service, sync)


def get_reconciliation_service(
    session_factory: SessionFactory = Depends(get_session_factory),
    stripe_service: StripeService = Depends(get_stripe_service),
    sync: SubscriptionSync = Depends(get_subscription_sync),
) -> ReconciliationService:
    return ReconciliationService(session_factory, stripe_service, sync)


def get_subscription_service(
    session_factory: SessionFactory = Depends(get_session_factory),
    stripe_service: StripeService = Depends(get_stripe_service),
    sync: SubscriptionSync = Depends(get_subscription_sync),
) -> SubscriptionService:
    return SubscriptionService(session_factory, stripe_service, sync)


def get_usage_service(
    session_factory: SessionFactory = Depends(get_session_factory),
) -> UsageService:
    return UsageService(session_factory)


def get_interaction_guard(
    usage_service: UsageService = Depends(get_usage_service),
) -> InteractionGuard:
    return InteractionGuard(usage_service)


def get_plan_catalog_service(
    session_factory: SessionFactory = Depends(get_session_factory),
) -> PlanAdminService:
    """Read-only catalog access (no Stripe client needed)."""
    return PlanAdminService(session_factory)


def get_plan_admin_service(
    session_factory: SessionFactory = Depends(get_session_factory),
    stripe_service: StripeService = Depends(get_stripe_service),
) -> PlanAdminService:
    return PlanAdminService(session_factory, stripe_service)


def get_maintenance_service(
    session_factory: SessionFactory = Depends(get_session_factory),
) -> MaintenanceService:
    return MaintenanceService(session_factory)


__all__ = [
    "AssistantService",
    "CurrentUser",
    "get_assistant_service",
    "get_current_user",
    "get_current_user_id",
    "get_interaction_guard",
    "get_maintenance_service",
    "get_plan_admin_service",
    "get_plan_catalog_service",
    "get_reconciliation_service",
    "get_subscription_service",
    "get_subscription_sync",
    "get_usage_service",
    "get_webhook_service",
]
