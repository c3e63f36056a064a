"""
Application Settings for NutriChat Billing

Centralized configuration using Pydantic Settings with .env support.
All environment variables are validated at startup.
"""

from functools import lru_cache
from typing import Optional
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Stripe is the billing authority; Supabase provides identity (JWT + the
    email -> user lookup RPC); the local PostgreSQL database holds the
    subscription ledger, usage counters and audit log.
    """

    # Supabase Configuration
    supabase_url: str
    supabase_anon_key: Optional[str] = None
    supabase_service_role_key: str
    supabase_jwt_secret: Optional[str] = None

    # Google AI Configuration (accepts GOOGLE_API_KEY or GEMINI_API_KEY)
    google_api_key: Optional[str] = None
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.5-flash"

    # Application Settings
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # CORS Configuration
    frontend_url: str = "http://localhost:3000"
    allowed_origins: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    # Stripe Configuration
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_timeout_seconds: int = 20
    stripe_max_network_retries: int = 2
    stripe_webhook_tolerance_seconds: int = 300
    # Checkout: trial offered only to users who never subscribed (0 disables)
    checkout_trial_days: int = 7

    # Admin / Cron Authentication
    admin_api_key: Optional[str] = None
    cron_secret: Optional[str] = None

    # Reconciliation
    reconcile_page_size: int = 50
    reconcile_period_tolerance_seconds: float = 1.0

    # Retention for webhook events and audit entries
    audit_retention_days: int = 90

    # Database Configuration (SQLModel/SQLAlchemy)
    supabase_password: Optional[str] = None
    database_url: Optional[str] = None
    database_pool_size: int = 5
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_echo: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @model_validator(mode="after")
    def validate_keys(self) -> "Settings":
        """Normalize API key aliases and check production requirements."""
        # Normalize gemini_api_key to google_api_key
        if not self.google_api_key and self.gemini_api_key:
            self.google_api_key = self.gemini_api_key

        if self.is_production:
            missing = [
                name for name in ("stripe_secret_key", "stripe_webhook_secret")
                if not getattr(self, name)
            ]
            if missing:
                raise ValueError(
                    f"{', '.join(m.upper() for m in missing)} required in production"
                )

        if self.reconcile_page_size < 1 or self.reconcile_page_size > 100:
            raise ValueError("RECONCILE_PAGE_SIZE must be between 1 and 100")

        if self.checkout_trial_days < 0:
            raise ValueError("CHECKOUT_TRIAL_DAYS cannot be negative")

        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment.lower() == "development"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export for direct import
settings = get_settings()
