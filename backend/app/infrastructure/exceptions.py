"""
Custom Exceptions for NutriChat Billing

Hierarchical exception classes for proper error handling across layers.
"""

from datetime import datetime
from typing import Optional, Dict, Any


class NutriChatError(Exception):
    """Base exception for all NutriChat errors."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.original_error = original_error

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details
        }


class ValidationError(NutriChatError):
    """Raised when input validation fails."""
    pass


class DatabaseError(NutriChatError):
    """Raised when database operations fail."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if table:
            details["table"] = table
        super().__init__(message, details, original_error)


class NotFoundError(DatabaseError):
    """Raised when a requested resource is not found."""
    pass


class ConflictError(NutriChatError):
    """Raised when the request conflicts with the current ledger state."""
    pass


# =============================================================================
# Billing / Webhook Errors
# =============================================================================

class BillingProviderError(NutriChatError):
    """Raised when a Stripe API call fails or cannot be reached."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        super().__init__(message, details, original_error)


class SignatureVerificationError(NutriChatError):
    """Raised when a webhook signature does not match the shared secret."""
    pass


class WebhookPayloadError(ValidationError):
    """Raised when a verified webhook body cannot be parsed into an event."""
    pass


class UnknownProviderStatusError(ValidationError):
    """Raised when Stripe reports a subscription status we do not know."""

    def __init__(self, provider_status: str):
        super().__init__(
            f"Unknown provider subscription status: {provider_status!r}",
            details={"provider_status": provider_status},
        )
        self.provider_status = provider_status


class LookupFailure(NutriChatError):
    """
    Raised when a provider reference cannot be resolved locally.

    kind is one of: price, plan, customer_email, user.
    """

    def __init__(
        self,
        kind: str,
        reference: Optional[str],
        message: Optional[str] = None,
    ):
        super().__init__(
            message or f"Could not resolve {kind} for {reference!r}",
            details={"kind": kind, "reference": reference},
        )
        self.kind = kind
        self.reference = reference

    @property
    def reason(self) -> str:
        """Short machine-readable reason for audit entries."""
        return f"{self.kind}_not_found"


# =============================================================================
# Quota Errors
# =============================================================================

class QuotaExceededError(NutriChatError):
    """
    Raised by the interaction guard when a user may not interact right now.

    This is expected control flow, not a system failure; the API maps it to
    a 429 response that always carries the reset time.
    """

    def __init__(
        self,
        message: str,
        reset_time: datetime,
        daily_limit: Optional[int] = None,
        subscription_status: Optional[str] = None,
        reason: str = "quota_exceeded",
    ):
        super().__init__(
            message,
            details={
                "reason": reason,
                "remaining_interactions": 0,
                "daily_limit": daily_limit,
                "subscription_status": subscription_status,
                "reset_time": reset_time.isoformat(),
            },
        )
        self.reset_time = reset_time
        self.daily_limit = daily_limit
        self.subscription_status = subscription_status
        self.reason = reason


class AIServiceError(NutriChatError):
    """Raised when the assistant (Gemini) call fails."""

    def __init__(
        self,
        message: str,
        model: Optional[str] = None,
        operation: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if model:
            details["model"] = model
        if operation:
            details["operation"] = operation
        super().__init__(message, details, original_error)


class ConfigurationError(NutriChatError):
    """Raised when configuration is missing or invalid."""

    def __init__(
        self,
        message: str,
        missing_keys: Optional[list] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if missing_keys:
            details["missing_keys"] = missing_keys
        super().__init__(message, details, original_error)
