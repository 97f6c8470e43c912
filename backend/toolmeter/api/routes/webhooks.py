"""Stripe webhook endpoint."""

import stripe
import structlog
from fastapi import APIRouter, Depends, HTTPException, Request

from toolmeter.billing.events import decode_event
from toolmeter.core.exceptions import StoreUnavailableError, WebhookValidationError
from toolmeter.monitoring.alerts import security_event
from toolmeter.schemas.entitlements import WebhookAck
from toolmeter.services import EntitlementServices, get_services

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(request: Request, services: EntitlementServices = Depends(get_services)):
    """Verify, deduplicate and apply a Stripe webhook event.

    Nothing is mutated before the signature check passes. Once the event ID is
    claimed the response is always a 200: a failed apply goes to the retry
    queue rather than back to Stripe, whose redelivery would be dropped as a
    duplicate anyway.
    """
    try:
        ip = await services.webhook_guard.check(request)
    except WebhookValidationError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.reason) from exc

    if not services.billing.webhook_secret:
        logger.error("stripe_webhook_secret_missing")
        raise HTTPException(status_code=503, detail="Stripe webhook endpoint is not configured")

    body = await request.body()
    sig_header = request.headers.get("stripe-signature")
    if not sig_header:
        raise HTTPException(status_code=400, detail="Missing stripe-signature header")

    try:
        event = services.billing.construct_event(body, sig_header)
    except ValueError:
        await security_event("invalid_signature", "high", ip_address=ip, reason="invalid_payload")
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        await security_event("invalid_signature", "high", ip_address=ip, reason="signature_mismatch")
        raise HTTPException(status_code=400, detail="Invalid signature")

    event_id = event["id"]
    event_type = event["type"]
    try:
        claimed = await services.store.claim_webhook_event(event_id, event_type)
    except StoreUnavailableError as exc:
        # Not claimed, so Stripe's redelivery will be processed normally
        await services.health.mark_unhealthy("webhook_claim_failed")
        raise HTTPException(status_code=503, detail="Temporarily unable to process webhook") from exc

    if not claimed:
        logger.info("stripe_duplicate_event_ignored", event_id=event_id)
        return WebhookAck()

    logger.info("stripe_webhook_received", event_id=event_id, event_type=event_type)

    try:
        billing_event = decode_event(event)
    except ValueError as exc:
        logger.error("stripe_event_undecodable", event_id=event_id, event_type=event_type, error=str(exc))
        return WebhookAck()

    try:
        await services.reconciler.handle_event(billing_event)
    except StoreUnavailableError as exc:
        logger.warning("stripe_event_apply_failed", event_id=event_id, error=str(exc))
        services.retry_queue.enqueue(billing_event)

    return WebhookAck()
