# backend/coachline/routes/stripe_webhooks.py
"""
Stripe Webhook Endpoint

Verifies the signature and hands the event to StripeWebhookService. Any
2xx tells Stripe to stop retrying, so handler failures surface as 5xx.
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from ..api.dependencies import get_stripe_webhook_service
from ..core.exceptions import DomainException
from ..schemas.webhook import WebhookAck
from ..services.stripe_webhook_service import StripeWebhookService
from ._errors import handle_domain_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/stripe", tags=["stripe-webhooks"])


@router.post("", response_model=WebhookAck)
async def handle_stripe_event(
    request: Request,
    webhook_service: StripeWebhookService = Depends(get_stripe_webhook_service),
) -> WebhookAck:
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    if not signature:
        logger.warning("Missing Stripe signature header")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Missing stripe-signature header"
        )

    try:
        result = await asyncio.to_thread(webhook_service.verify_and_process, payload, signature)
    except DomainException as e:
        logger.error(
            "Stripe webhook processing failed", extra={"code": e.code, "error": e.message}
        )
        handle_domain_exception(e)
    return WebhookAck(**result)
