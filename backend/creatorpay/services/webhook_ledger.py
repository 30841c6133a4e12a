"""Idempotency ledger for provider webhook events"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from creatorpay.models.webhook_event import (
    WebhookEvent,
    STATUS_RECEIVED,
    STATUS_PROCESSING,
    STATUS_PROCESSED,
    STATUS_SKIPPED,
    STATUS_FAILED,
)

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 2000

# Keys worth keeping from data.object; full payloads can carry customer PII
_SNAPSHOT_KEYS = (
    "id", "object", "reference", "status", "amount", "amount_paid", "amount_refunded",
    "currency", "customer", "subscription", "invoice", "charge", "payment_intent",
    "mode", "payment_status", "transfer_code", "transaction_reference", "billing_reason",
)


def build_payload_snapshot(provider: str, payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Reduce a raw provider payload to the fields needed for audit and replay triage"""
    if not isinstance(payload, dict):
        return {}

    if provider == "stripe":
        data = (payload.get("data") or {}).get("object") or {}
        snapshot = {
            "id": payload.get("id"),
            "type": payload.get("type"),
            "created": payload.get("created"),
            "account": payload.get("account"),
        }
    else:
        data = payload.get("data") or {}
        snapshot = {"event": payload.get("event")}

    if isinstance(data, dict):
        snapshot["object"] = {key: data[key] for key in _SNAPSHOT_KEYS if key in data}
    return snapshot


def get_event(db: Session, event_id: str) -> Optional[WebhookEvent]:
    return db.query(WebhookEvent).filter(WebhookEvent.event_id == event_id).first()


def record_event(
    db: Session,
    event_id: str,
    provider: str,
    event_type: str,
    payload: Optional[Dict[str, Any]] = None,
) -> WebhookEvent:
    """Insert the ledger row for an event, or count a redelivery of one we have seen.

    Two deliveries racing on the unique event_id both end up with the same row.
    """
    webhook_event = get_event(db, event_id)
    if webhook_event:
        webhook_event.retry_count = (webhook_event.retry_count or 0) + 1
        db.commit()
        return webhook_event

    webhook_event = WebhookEvent(
        event_id=event_id,
        provider=provider,
        event_type=event_type,
        status=STATUS_RECEIVED,
        retry_count=0,
        payload=payload,
    )
    db.add(webhook_event)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        webhook_event = get_event(db, event_id)
        if webhook_event is None:
            raise
        webhook_event.retry_count = (webhook_event.retry_count or 0) + 1
        db.commit()
        return webhook_event

    db.refresh(webhook_event)
    return webhook_event


def is_processed(webhook_event: WebhookEvent) -> bool:
    return webhook_event.status == STATUS_PROCESSED


def mark_processing(db: Session, webhook_event: WebhookEvent) -> None:
    webhook_event.status = STATUS_PROCESSING
    db.commit()


def mark_processed(db: Session, webhook_event: WebhookEvent, processing_time_ms: Optional[int] = None) -> None:
    webhook_event.status = STATUS_PROCESSED
    webhook_event.error = None
    webhook_event.processing_time_ms = processing_time_ms
    webhook_event.processed_at = datetime.now(timezone.utc)
    db.commit()


def mark_skipped(
    db: Session,
    webhook_event: WebhookEvent,
    reason: Optional[str] = None,
    processing_time_ms: Optional[int] = None,
) -> None:
    """Terminal state for events that needed no work (duplicates, unknown types, lost lock races)"""
    webhook_event.status = STATUS_SKIPPED
    webhook_event.error = reason
    webhook_event.processing_time_ms = processing_time_ms
    webhook_event.processed_at = datetime.now(timezone.utc)
    db.commit()


def mark_failed(db: Session, event_id: str, error: str, processing_time_ms: Optional[int] = None) -> None:
    """Record a handler failure.

    Runs after the handler's transaction was rolled back, so the row is looked up
    again. A failure to write the ledger is logged and never masks the original error.
    """
    try:
        webhook_event = get_event(db, event_id)
        if webhook_event is None:
            logger.error(f"Ledger row for {event_id} vanished before it could be marked failed")
            return
        webhook_event.status = STATUS_FAILED
        webhook_event.error = (error or "")[:MAX_ERROR_LENGTH]
        webhook_event.processing_time_ms = processing_time_ms
        db.commit()
    except SQLAlchemyError as e:
        logger.error(f"Failed to mark webhook event {event_id} as failed: {e}")
        db.rollback()
