"""Provider webhook endpoints"""
import json
import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from creatorpay.core.config import settings
from creatorpay.core.metrics import webhook_events_counter
from creatorpay.db.session import get_db
from creatorpay.schemas.paystack_events import parse_paystack_event
from creatorpay.schemas.stripe_events import parse_stripe_event
from creatorpay.services.paystack_webhooks import build_paystack_router
from creatorpay.services.stripe_webhooks import build_stripe_router
from creatorpay.services.webhook_services import WebhookServices, get_webhook_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

stripe_router = build_stripe_router(settings.RETRY_UNLISTED_EVENT_FAILURES)
paystack_router = build_paystack_router(settings.RETRY_UNLISTED_EVENT_FAILURES)


def _reject(provider: str, detail: str) -> HTTPException:
    webhook_events_counter.labels(provider=provider, event_type="unverified", outcome="rejected").inc()
    return HTTPException(400, detail)


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    services: WebhookServices = Depends(get_webhook_services),
):
    """Handle Stripe webhook events

    The body is read as raw bytes; the signature covers the exact payload Stripe sent.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    if not sig_header:
        raise _reject("stripe", "Missing stripe-signature header")

    try:
        raw_event = services.stripe.construct_event(payload, sig_header)
        event = parse_stripe_event(raw_event)
    except stripe.error.SignatureVerificationError as e:
        logger.error(f"Invalid webhook signature: {e}")
        raise _reject("stripe", "Invalid signature")
    except ValueError as e:
        logger.error(f"Invalid webhook payload: {e}")
        raise _reject("stripe", str(e))

    # Handlers use the sync Session and blocking provider clients
    response = await run_in_threadpool(stripe_router.dispatch, event, db, services, raw_event)
    return JSONResponse(status_code=response.status_code, content=response.body)


@router.post("/paystack")
async def paystack_webhook(
    request: Request,
    db: Session = Depends(get_db),
    services: WebhookServices = Depends(get_webhook_services),
):
    """Handle Paystack webhook events (x-paystack-signature is HMAC-SHA512 of the body)"""
    payload = await request.body()
    signature = request.headers.get("x-paystack-signature")

    if not signature:
        raise _reject("paystack", "Missing x-paystack-signature header")
    if not services.paystack.verify_signature(payload, signature):
        logger.error("Invalid Paystack webhook signature")
        raise _reject("paystack", "Invalid signature")

    try:
        raw_event = json.loads(payload)
        event = parse_paystack_event(raw_event)
    except ValueError as e:
        logger.error(f"Invalid Paystack payload: {e}")
        raise _reject("paystack", str(e))

    response = await run_in_threadpool(paystack_router.dispatch, event, db, services, raw_event)
    return JSONResponse(status_code=response.status_code, content=response.body)
