"""
Billing Event Domain Models

Stripe webhook payloads parsed into one typed variant per event family.
The webhook handler parses once at the boundary and dispatches on the
variant type; nothing downstream touches the raw JSON.
"""

from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from app.domain.subscription import ProviderSubscription, _ref_id
from app.infrastructure.exceptions import WebhookPayloadError


SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"

SUBSCRIPTION_EVENT_TYPES = frozenset({
    SUBSCRIPTION_CREATED,
    SUBSCRIPTION_UPDATED,
    SUBSCRIPTION_DELETED,
})
INVOICE_EVENT_TYPES = frozenset({
    INVOICE_PAYMENT_FAILED,
    INVOICE_PAYMENT_SUCCEEDED,
})


class _EventBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: str
    created: datetime


class SubscriptionEvent(_EventBase):
    """customer.subscription.created / updated / deleted"""
    subscription: ProviderSubscription


class InvoiceEvent(_EventBase):
    """invoice.payment_failed / invoice.payment_succeeded"""
    invoice_id: str
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.type == INVOICE_PAYMENT_SUCCEEDED


class UnhandledEvent(_EventBase):
    """Any event type the ledger does not react to."""


BillingEvent = Union[SubscriptionEvent, InvoiceEvent, UnhandledEvent]


def _invoice_subscription_id(invoice: Mapping[str, Any]) -> Optional[str]:
    # Older API versions expose invoice.subscription, newer ones nest it
    # under invoice.parent.subscription_details.
    direct = _ref_id(invoice.get("subscription"))
    if direct:
        return direct
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return _ref_id(details.get("subscription"))


def parse_event(payload: Mapping[str, Any]) -> BillingEvent:
    """
    Parse a verified Stripe event payload into its typed variant.

    Raises:
        WebhookPayloadError: if required fields are missing or malformed.
    """
    try:
        event_id = payload["id"]
        event_type = payload["type"]
        created = datetime.fromtimestamp(int(payload.get("created") or 0), tz=timezone.utc)
        obj = (payload.get("data") or {}).get("object")

        if event_type in SUBSCRIPTION_EVENT_TYPES:
            if not isinstance(obj, Mapping):
                raise WebhookPayloadError(f"Event {event_id} has no subscription object")
            return SubscriptionEvent(
                id=event_id,
                type=event_type,
                created=created,
                subscription=ProviderSubscription.from_stripe(obj),
            )

        if event_type in INVOICE_EVENT_TYPES:
            if not isinstance(obj, Mapping):
                raise WebhookPayloadError(f"Event {event_id} has no invoice object")
            return InvoiceEvent(
                id=event_id,
                type=event_type,
                created=created,
                invoice_id=obj["id"],
                customer_id=_ref_id(obj.get("customer")),
                subscription_id=_invoice_subscription_id(obj),
            )

        return UnhandledEvent(id=event_id, type=event_type, created=created)

    except (KeyError, TypeError, ValueError, PydanticValidationError) as e:
        raise WebhookPayloadError(
            f"Malformed webhook payload: {e}",
            details={"event_id": payload.get("id") if isinstance(payload, Mapping) else None},
            original_error=e,
        ) from e
