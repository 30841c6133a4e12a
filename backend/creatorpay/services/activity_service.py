"""Activity feed entries and operator alerts"""
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from creatorpay.core.logging import alert_logger
from creatorpay.models.activity import Activity

logger = logging.getLogger(__name__)

# Activity types
SUBSCRIPTION_CREATED = "subscription_created"
SUBSCRIPTION_RENEWED = "subscription_renewed"
SUBSCRIPTION_PAST_DUE = "subscription_past_due"
SUBSCRIPTION_CANCELED = "subscription_canceled"
PAYMENT_RECEIVED = "payment_received"
PAYMENT_FAILED = "payment_failed"
PAYMENT_REFUNDED = "payment_refunded"
REFUND_FAILED = "refund_failed"
DISPUTE_CREATED = "dispute_created"
DISPUTE_WON = "dispute_won"
DISPUTE_LOST = "dispute_lost"
REQUEST_ACCEPTED = "request_accepted"
CHECKOUT_CONVERTED = "checkout_converted"
CHECKOUT_ABANDONED = "checkout_abandoned"
FEE_MISMATCH = "fee_mismatch"
FEE_MISSING = "fee_missing"
PLATFORM_DEBIT_RECOVERED = "platform_debit_recovered"
PLATFORM_DEBIT_RECOVERY_FAILED = "platform_debit_recovery_failed"
PAYOUT_STATUS_CHANGED = "payout_status_changed"
PAYOUT_INITIATED = "payout_initiated"
PAYOUT_COMPLETED = "payout_completed"
PAYOUT_FAILED = "payout_failed"
PAYOUT_MISMATCH = "payout_mismatch"


def record_activity(db: Session, user_id: str, activity_type: str, payload: Optional[Dict[str, Any]] = None) -> Activity:
    """Add an activity row to the caller's transaction (not committed here)"""
    activity = Activity(user_id=user_id, type=activity_type, payload=payload or {})
    db.add(activity)
    return activity


def alert_operator(title: str, level: int = logging.WARNING, **fields: Any) -> None:
    """Emit an operator-facing alert on the alerts logger"""
    details = " ".join(f"{key}={value}" for key, value in fields.items())
    alert_logger.log(level, f"{title} | {details}" if details else title)


def record_attribution(
    db: Session,
    creator_id: str,
    subscription_id: str,
    view_id: Optional[str] = None,
    request_id: Optional[str] = None,
) -> None:
    """Credit the checkout page view and accepted request that led to a payment"""
    if request_id:
        record_activity(db, creator_id, REQUEST_ACCEPTED, {
            "request_id": request_id,
            "subscription_id": subscription_id,
        })
    if view_id:
        record_activity(db, creator_id, CHECKOUT_CONVERTED, {
            "view_id": view_id,
            "subscription_id": subscription_id,
        })
