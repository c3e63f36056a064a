"""
NutriChat Billing - FastAPI Application

Main entry point for the backend API.
Provides the Stripe webhook receiver, the reconciliation cron, the
subscription and admin endpoints, and the quota-guarded assistant.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config.settings import settings
from app.domain.subscription import utcnow
from app.infrastructure.exceptions import (
    NutriChatError,
    AIServiceError,
    BillingProviderError,
    ConfigurationError,
    ConflictError,
    LookupFailure,
    NotFoundError,
    QuotaExceededError,
    SignatureVerificationError,
    ValidationError,
)

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    logger.info(f"NutriChat Billing starting in {settings.environment} mode...")

    if settings.database_url or settings.supabase_password:
        from app.infrastructure.db.database import init_db
        await init_db()
        logger.info("SQLModel database connection pool initialized")

    yield

    # Shutdown
    if settings.database_url or settings.supabase_password:
        from app.infrastructure.db.database import close_db
        await close_db()
        logger.info("SQLModel database connection pool closed")

    logger.info("NutriChat Billing shutting down...")


app = FastAPI(
    title="NutriChat Billing",
    description="Subscription ledger, Stripe sync and quota-guarded nutrition assistant",
    version="1.0.0",
    lifespan=lifespan,
    debug=settings.debug,
)

# CORS configuration from Settings
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# Exception Handlers
# ============================================================================

@app.exception_handler(SignatureVerificationError)
async def signature_error_handler(request: Request, exc: SignatureVerificationError):
    """Handle webhook signature failures."""
    logger.warning(f"Webhook signature verification failed: {exc.message}")
    return JSONResponse(
        status_code=400,
        content=exc.to_dict(),
    )


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    """Handle validation errors (including malformed webhook payloads)."""
    return JSONResponse(
        status_code=400,
        content=exc.to_dict(),
    )


@app.exception_handler(NotFoundError)
async def not_found_error_handler(request: Request, exc: NotFoundError):
    """Handle not found errors."""
    return JSONResponse(
        status_code=404,
        content=exc.to_dict(),
    )


@app.exception_handler(ConflictError)
async def conflict_error_handler(request: Request, exc: ConflictError):
    """Handle requests that conflict with the ledger state."""
    return JSONResponse(
        status_code=409,
        content=exc.to_dict(),
    )


@app.exception_handler(LookupFailure)
async def lookup_failure_handler(request: Request, exc: LookupFailure):
    """Unresolvable plan or user: non-2xx so Stripe retries the delivery."""
    return JSONResponse(
        status_code=422,
        content=exc.to_dict(),
    )


@app.exception_handler(QuotaExceededError)
async def quota_exceeded_handler(request: Request, exc: QuotaExceededError):
    """Handle denied interactions."""
    return JSONResponse(
        status_code=429,
        content=exc.to_dict(),
        headers={"Retry-After": str(max(0, int((exc.reset_time - utcnow()).total_seconds())))},
    )


@app.exception_handler(BillingProviderError)
async def billing_provider_error_handler(request: Request, exc: BillingProviderError):
    """Handle Stripe failures."""
    return JSONResponse(
        status_code=502,
        content=exc.to_dict(),
    )


@app.exception_handler(AIServiceError)
async def ai_service_error_handler(request: Request, exc: AIServiceError):
    """Handle assistant failures."""
    return JSONResponse(
        status_code=502,
        content=exc.to_dict(),
    )


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    """Handle missing configuration."""
    logger.error(f"Configuration error: {exc.message}")
    return JSONResponse(
        status_code=503,
        content=exc.to_dict(),
    )


@app.exception_handler(NutriChatError)
async def general_error_handler(request: Request, exc: NutriChatError):
    """Handle all other application errors."""
    return JSONResponse(
        status_code=500,
        content=exc.to_dict(),
    )


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "nutrichat-billing"}


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "NutriChat Billing API",
        "version": "1.0.0",
        "docs": "/docs",
    }


# ============================================================================
# Import and register routers
# ============================================================================

from app.api.routes import admin, chat, cron, subscriptions, webhooks  # noqa: E402

app.include_router(webhooks.router, prefix="/api", tags=["Webhooks"])
app.include_router(subscriptions.router, prefix="/api", tags=["Subscription"])
app.include_router(chat.router, prefix="/api", tags=["Chat"])
app.include_router(admin.router)
app.include_router(cron.router)
