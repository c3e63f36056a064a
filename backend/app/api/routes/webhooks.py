"""
Stripe Webhook Handler

Receives Stripe webhook deliveries and hands them to the WebhookService.
Idempotent: each event id is applied at most once, backed by the database.

Responses (Stripe retries every non-2xx):
- 200 processed / ignored / skipped / already_processed
- 400 missing or invalid signature, malformed payload
- 422 payment succeeded but plan or user could not be resolved
- 500 storage failure (the whole unit was rolled back)
"""

import logging

from fastapi import APIRouter, Depends, Request, HTTPException, status

from app.api.dependencies import get_webhook_service
from app.infrastructure.services.webhook_service import WebhookService


logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    service: WebhookService = Depends(get_webhook_service),
):
    """
    Handle Stripe webhook events.

    The raw body is read before anything else: the signature covers the
    exact bytes Stripe sent.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    if not signature:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing Stripe signature"
        )

    result = await service.handle(payload, signature)
    return {
        "received": True,
        "status": result.outcome.value,
        "event_id": result.event_id,
    }
