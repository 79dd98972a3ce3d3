"""
Webhook API routes.

- POST /api/webhooks/razorpay: Razorpay subscription and payment events
"""
from fastapi import APIRouter, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from polaris.core.logging import log_event
from polaris.features.subscriptions.razorpay_provider import SIGNATURE_HEADER
from polaris.features.subscriptions.webhooks import ingest_webhook


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post("/razorpay")
async def razorpay_webhook(request: Request):
    """
    Handle Razorpay webhook events.

    Verifies the signature over the raw body, deduplicates by event id and
    applies the event to the subscription.

    Returns:
        200: {"received": true} | {"duplicate": true} | {"received": true, "warning": str}
        401: Missing or invalid signature
        400: Malformed JSON or payload
        500: Unexpected failure (Razorpay retries)
    """
    # Unsigned deliveries are refused before the body is read
    if not request.headers.get(SIGNATURE_HEADER):
        log_event("warning", "webhook.missing_signature", request_id=None, error_code="UNAUTHORIZED")
        return JSONResponse(status_code=401, content={"error": "Missing webhook signature"})

    # Raw body is required for signature verification
    body = await request.body()
    outcome = await run_in_threadpool(ingest_webhook, body, dict(request.headers))
    return JSONResponse(status_code=outcome.status_code, content=outcome.body)
