"""
Billing API routes.

- POST /api/billing/webhook: Handle Stripe webhooks
"""
from fastapi import APIRouter, Request
from starlette.concurrency import run_in_threadpool

from replyflow.core.errors import AppError
from replyflow.core.logging import log_event
from replyflow.features.billing.provider import BillingProviderError, BillingWebhookError
from replyflow.features.billing.service import process_webhook


router = APIRouter(prefix="/billing", tags=["billing"])


@router.post("/webhook")
async def handle_webhook(request: Request):
    """
    Handle Stripe webhook events.

    Verifies the signature on the raw body and reconciles the event
    (idempotent). Delivery is at-least-once, so every outcome other than a
    bad signature or a datastore fault is acknowledged with 200.

    Returns:
        {"received": true, "event_id": str, "outcome": str}

    Errors:
        400: Invalid signature or payload
        503: Billing disabled, or datastore unavailable (sender will retry)
    """
    body = await request.body()
    headers = dict(request.headers)

    try:
        ack = await run_in_threadpool(process_webhook, headers, body)
    except BillingWebhookError as e:
        log_event("warning", "billing.webhook.rejected", error_code="invalid_signature", extra={"reason": e})
        raise AppError(str(e), code="invalid_signature", status_code=400)
    except BillingProviderError as e:
        raise AppError(str(e), code="billing_disabled", status_code=503)

    return {"received": True, "event_id": ack.event_id, "outcome": ack.outcome.value}
