"""
Subscription Domain Models

Domain models for subscription management following Clean Architecture.
Enums, the quota value type, the normalized provider subscription, and the
request/response DTOs of the subscription bounded context.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Any, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from app.infrastructure.exceptions import UnknownProviderStatusError


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle status (mirrors Stripe)."""
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    UNPAID = "unpaid"
    PAUSED = "paused"


# Statuses that mean "the user currently holds this subscription".
LIVE_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})

# Statuses the reconciliation sweep pulls from Stripe.
RECONCILED_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)


class BillingInterval(str, Enum):
    """Billing interval of a plan price."""
    MONTH = "month"
    YEAR = "year"


class AuditAction(str, Enum):
    """Decision recorded in the audit log."""
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"
    ERROR = "error"


class AuditSource(str, Enum):
    """Which part of the system made the decision."""
    WEBHOOK = "webhook"
    RECONCILE = "reconcile"
    CANCEL = "cancel"


# =============================================================================
# Status Mapping (shared by ingestion and reconciliation)
# =============================================================================

_PROVIDER_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.INCOMPLETE_EXPIRED,
    "unpaid": SubscriptionStatus.UNPAID,
    "paused": SubscriptionStatus.PAUSED,
}

PROVIDER_STATUSES = frozenset(_PROVIDER_STATUS_MAP)


def map_provider_status(provider_status: str) -> SubscriptionStatus:
    """
    Map a Stripe subscription status to the local status.

    Raises:
        UnknownProviderStatusError: for values Stripe does not document.
    """
    try:
        return _PROVIDER_STATUS_MAP[provider_status]
    except KeyError:
        raise UnknownProviderStatusError(provider_status) from None


# =============================================================================
# Quota
# =============================================================================

@dataclass(frozen=True)
class Unlimited:
    """Plan without a daily interaction cap."""

    @property
    def daily_limit(self) -> None:
        return None

    def allows(self, used: int) -> bool:
        return True

    def remaining(self, used: int) -> None:
        return None


@dataclass(frozen=True)
class Limited:
    """Plan capped at `limit` interactions per UTC day."""
    limit: int

    def __post_init__(self) -> None:
        if self.limit < 0:
            raise ValueError(f"Daily limit must be >= 0, got {self.limit}")

    @property
    def daily_limit(self) -> int:
        return self.limit

    def allows(self, used: int) -> bool:
        return used < self.limit

    def remaining(self, used: int) -> int:
        return max(0, self.limit - used)


Quota = Union[Unlimited, Limited]

UNLIMITED = Unlimited()


def quota_from_limit(daily_limit: Optional[int]) -> Quota:
    """Build a Quota from the stored column value (NULL means unlimited)."""
    if daily_limit is None:
        return UNLIMITED
    return Limited(daily_limit)


# =============================================================================
# Time helpers
# =============================================================================

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def usage_day(now: Optional[datetime] = None) -> date:
    """Calendar day (UTC) that keys the daily usage counter."""
    return (now or utcnow()).astimezone(timezone.utc).date()


def next_reset_time(now: Optional[datetime] = None) -> datetime:
    """Next UTC midnight, when the daily counter rolls over."""
    tomorrow = usage_day(now) + timedelta(days=1)
    return datetime.combine(tomorrow, time.min, tzinfo=timezone.utc)


def _from_epoch(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _ref_id(value: Any) -> Optional[str]:
    """Stripe references are either an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, Mapping):
        return value.get("id")
    return str(value)


# =============================================================================
# Provider Subscription (normalized Stripe subscription)
# =============================================================================

class ProviderSubscription(BaseModel):
    """
    The fields of a Stripe subscription that the ledger mirrors.

    Built once at the boundary from the raw Stripe JSON; everything
    downstream works with this typed view.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    customer_id: str
    status: str
    price_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    cancel_at: Optional[datetime] = None
    cancel_at_period_end: bool = False
    metadata: dict[str, str] = Field(default_factory=dict)

    @property
    def mapped_status(self) -> SubscriptionStatus:
        return map_provider_status(self.status)

    @classmethod
    def from_stripe(cls, obj: Mapping[str, Any]) -> "ProviderSubscription":
        """
        Parse a Stripe subscription object.

        Newer API versions carry the billing period on the subscription
        item rather than on the subscription itself; both are accepted.
        """
        items = (obj.get("items") or {}).get("data") or []
        first_item = items[0] if items else {}
        price = first_item.get("price") or {}

        period_start = first_item.get("current_period_start") or obj.get("current_period_start")
        period_end = first_item.get("current_period_end") or obj.get("current_period_end")

        return cls(
            id=obj["id"],
            customer_id=_ref_id(obj.get("customer")),
            status=obj["status"],
            price_id=_ref_id(price) if price else None,
            current_period_start=_from_epoch(period_start),
            current_period_end=_from_epoch(period_end),
            trial_start=_from_epoch(obj.get("trial_start")),
            trial_end=_from_epoch(obj.get("trial_end")),
            canceled_at=_from_epoch(obj.get("canceled_at")),
            cancel_at=_from_epoch(obj.get("cancel_at")),
            cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
            metadata={str(k): str(v) for k, v in (obj.get("metadata") or {}).items()},
        )


# =============================================================================
# Request/Response DTOs
# =============================================================================

DenialReason = Literal["no_subscription", "inactive_status", "period_ended", "quota_exceeded"]


class InteractionStatus(BaseModel):
    """Result of the interaction check for one user."""
    can_interact: bool
    remaining_interactions: Optional[int] = Field(
        description="Interactions left today; null for unlimited plans"
    )
    daily_limit: Optional[int] = Field(description="Daily cap; null for unlimited plans")
    subscription_status: Optional[SubscriptionStatus] = None
    plan_name: Optional[str] = None
    plan_type: Optional[str] = None
    current_period_end: Optional[datetime] = None
    reset_time: datetime
    is_trialing: bool = False
    trial_ends_at: Optional[datetime] = None
    denial_reason: Optional[DenialReason] = None


class SubscriptionStatusResponse(BaseModel):
    """Response DTO for the caller's subscription status."""
    subscription_status: Optional[SubscriptionStatus] = None
    plan_type: Optional[str] = None
    plan_name: Optional[str] = None
    daily_limit: Optional[int] = None
    remaining_interactions: Optional[int] = None
    current_period_end: Optional[datetime] = None
    reset_time: datetime
    is_trialing: bool = False
    trial_eligible: bool = Field(description="True when the user never held a subscription")


class PlanUpdateRequest(BaseModel):
    """Admin request to rotate a plan's price."""
    plan_id: str = Field(..., min_length=1)
    new_price_cents: int = Field(..., gt=0, description="New price in minor currency units")
    interval: BillingInterval
    features: Optional[list[str]] = None
    name: Optional[str] = Field(None, min_length=1, max_length=100)


class PlanUpdateResponse(BaseModel):
    """Result of a price rotation."""
    success: bool = True
    plan_id: str
    new_price_id: str
    version_id: str


class PriceVersionResponse(BaseModel):
    """One historic or current price of a plan."""
    id: str
    stripe_price_id: str
    price_cents: int
    currency: str
    interval: BillingInterval
    is_current: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PlanResponse(BaseModel):
    """Public plan listing entry."""
    id: str
    name: str
    daily_limit: Optional[int] = None
    price_id: Optional[str] = None
    product_id: Optional[str] = None
    price_cents: int
    currency: str
    interval: BillingInterval
    features: list[str] = Field(default_factory=list)


class AdminPlanResponse(PlanResponse):
    """Plan listing entry with its price history."""
    active: bool = True
    price_versions: list[PriceVersionResponse] = Field(default_factory=list)


class CancelResponse(BaseModel):
    """Result of an immediate cancellation."""
    success: bool = True
    subscription_status: SubscriptionStatus
    message: str


class CheckoutRequest(BaseModel):
    price_id: str = Field(..., min_length=1, description="Stripe price of the chosen plan")


class CheckoutResponse(BaseModel):
    """Hosted checkout the client redirects to."""
    success: bool = True
    session_id: str
    checkout_url: str
    trial_days: Optional[int] = None


class BillingPortalResponse(BaseModel):
    success: bool = True
    url: str


# =============================================================================
# Denial messages (Business Logic)
# =============================================================================

_STATUS_DENIAL_MESSAGES = {
    SubscriptionStatus.CANCELED: "Your subscription was canceled. Reactivate it to keep using NutriChat.",
    SubscriptionStatus.PAST_DUE: "Your subscription is past due. Update your payment details to continue.",
    SubscriptionStatus.UNPAID: "There is an unpaid invoice on your subscription. Settle it to continue.",
    SubscriptionStatus.INCOMPLETE: "Your first payment has not completed yet.",
    SubscriptionStatus.INCOMPLETE_EXPIRED: "Your first payment expired. Subscribe to a plan to continue.",
    SubscriptionStatus.PAUSED: "Your subscription is paused. Resume it to continue.",
}


def denial_message(status: InteractionStatus) -> str:
    """Human-readable explanation of why an interaction was refused."""
    reset = status.reset_time.strftime("%Y-%m-%d %H:%M UTC")
    if status.denial_reason == "quota_exceeded":
        return (
            f"You reached the daily limit of {status.daily_limit} interactions. "
            f"It resets at {reset}."
        )
    if status.subscription_status in _STATUS_DENIAL_MESSAGES:
        return _STATUS_DENIAL_MESSAGES[status.subscription_status]
    if status.denial_reason == "period_ended":
        return "Your billing period has ended. Renew your plan to continue."
    return "You need an active subscription to use NutriChat. Subscribe to a plan to continue."
