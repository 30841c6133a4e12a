"""Subscription state machine shared by the Stripe and Paystack handlers

    active -> past_due      payment failed
    past_due -> active      later payment succeeded
    * -> canceled           provider deletion or disable
    canceled -> active      only through a new successful charge (re-subscription)

Providers do not deliver events in order, so every status change carries the
provider's event timestamp and a change older than the last applied one is ignored.
"""
import calendar
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from creatorpay.models.subscription import (
    Subscription,
    STATUS_ACTIVE,
    STATUS_CANCELED,
    STATUS_PAST_DUE,
    STATUS_PAUSED,
)
from creatorpay.models.user import User

logger = logging.getLogger(__name__)

DISPUTE_BLOCK_THRESHOLD = 2

_PROVIDER_STATUS_MAP = {
    "active": STATUS_ACTIVE,
    "canceled": STATUS_CANCELED,
    "past_due": STATUS_PAST_DUE,
}


def map_provider_status(provider_status: Optional[str]) -> str:
    """Map a provider subscription status onto ours; anything unrecognized pauses"""
    return _PROVIDER_STATUS_MAP.get(provider_status or "", STATUS_PAUSED)


def to_datetime(timestamp: Optional[int]) -> Optional[datetime]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def add_one_month(moment: datetime) -> datetime:
    """Same day next month, clamped to the month's last day (Jan 31 -> Feb 28/29)"""
    year = moment.year + (1 if moment.month == 12 else 0)
    month = 1 if moment.month == 12 else moment.month + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


# ============================================================================
# LOOKUPS
# ============================================================================

def normalize_email(email: str) -> str:
    return email.strip().lower()


def get_or_create_user_by_email(db: Session, email: str, name: Optional[str] = None) -> User:
    """Find the subscriber account for a payer email, creating it on first payment.

    Flushed but not committed; the caller's transaction owns the insert.
    """
    email = normalize_email(email)
    user = db.query(User).filter(User.email == email).first()
    if user:
        return user
    user = User(email=email, name=name)
    db.add(user)
    db.flush()
    logger.info(f"Created subscriber account {user.id}")
    return user


def find_subscription(db: Session, subscriber_id: str, creator_id: str, interval: str) -> Optional[Subscription]:
    return db.query(Subscription).filter(
        Subscription.subscriber_id == subscriber_id,
        Subscription.creator_id == creator_id,
        Subscription.interval == interval,
    ).first()


def find_by_stripe_subscription_id(db: Session, stripe_subscription_id: Optional[str]) -> Optional[Subscription]:
    if not stripe_subscription_id:
        return None
    return db.query(Subscription).filter(
        Subscription.stripe_subscription_id == stripe_subscription_id
    ).first()


def find_latest_by_stripe_customer(db: Session, stripe_customer_id: Optional[str]) -> Optional[Subscription]:
    if not stripe_customer_id:
        return None
    return db.query(Subscription).filter(
        Subscription.stripe_customer_id == stripe_customer_id
    ).order_by(Subscription.created_at.desc()).first()


# ============================================================================
# STATE TRANSITIONS
# ============================================================================

def is_stale(subscription: Subscription, event_ts: Optional[int]) -> bool:
    """True when a newer status change has already been applied"""
    if event_ts is None or subscription.status_event_at is None:
        return False
    return event_ts < subscription.status_event_at


def apply_status(subscription: Subscription, status: str, event_ts: Optional[int]) -> bool:
    """Move to status unless the event is older than the last applied change.

    Returns:
        True if the change was applied
    """
    if is_stale(subscription, event_ts):
        logger.info(
            f"Ignoring stale {status} transition for subscription {subscription.id} "
            f"(event {event_ts} < {subscription.status_event_at})"
        )
        return False
    subscription.status = status
    if event_ts is not None:
        subscription.status_event_at = max(subscription.status_event_at or 0, event_ts)
    return True


def activate_from_charge(subscription: Subscription, event_ts: Optional[int]) -> bool:
    """A successful charge activates the subscription, including after cancellation"""
    if not apply_status(subscription, STATUS_ACTIVE, event_ts):
        return False
    subscription.canceled_at = None
    subscription.cancel_at_period_end = False
    return True


def mark_past_due(subscription: Subscription, event_ts: Optional[int]) -> bool:
    if subscription.status != STATUS_ACTIVE:
        return False
    return apply_status(subscription, STATUS_PAST_DUE, event_ts)


def recover_from_past_due(subscription: Subscription, event_ts: Optional[int]) -> bool:
    if subscription.status != STATUS_PAST_DUE:
        return False
    return apply_status(subscription, STATUS_ACTIVE, event_ts)


def cancel(subscription: Subscription, event_ts: Optional[int], canceled_at: Optional[datetime] = None) -> bool:
    if subscription.status == STATUS_CANCELED:
        return False
    if not apply_status(subscription, STATUS_CANCELED, event_ts):
        return False
    subscription.canceled_at = canceled_at or datetime.now(timezone.utc)
    subscription.cancel_at_period_end = False
    return True


def apply_provider_status(subscription: Subscription, provider_status: Optional[str], event_ts: Optional[int]) -> bool:
    """Apply a provider status-update event.

    Canceled is terminal here: an update never revives a canceled subscription.
    """
    status = map_provider_status(provider_status)
    if subscription.status == STATUS_CANCELED and status != STATUS_CANCELED:
        logger.info(f"Subscription {subscription.id} is canceled, ignoring provider status {provider_status}")
        return False
    if subscription.status == status:
        if event_ts is not None and not is_stale(subscription, event_ts):
            subscription.status_event_at = max(subscription.status_event_at or 0, event_ts)
        return False
    return apply_status(subscription, status, event_ts)


# ============================================================================
# LIFETIME VALUE
# ============================================================================

def increment_ltv(subscription: Subscription, net_cents: int) -> None:
    subscription.ltv_cents = (subscription.ltv_cents or 0) + max(net_cents, 0)


def decrement_ltv(subscription: Subscription, amount_cents: int) -> int:
    """Remove up to amount_cents of lifetime value, never going below zero.

    Returns:
        The amount actually removed, stored on the reversal row so it can be restored
    """
    current = subscription.ltv_cents or 0
    removed = min(max(amount_cents, 0), current)
    subscription.ltv_cents = current - removed
    return removed


def restore_ltv(subscription: Subscription, amount_cents: Optional[int]) -> None:
    if amount_cents:
        subscription.ltv_cents = (subscription.ltv_cents or 0) + amount_cents


# ============================================================================
# UPSERT
# ============================================================================

def upsert_subscription(
    db: Session,
    subscriber_id: str,
    creator_id: str,
    interval: str,
    event_ts: Optional[int],
    create_values: Dict[str, Any],
    update_values: Optional[Dict[str, Any]] = None,
    pricing_values: Optional[Dict[str, Any]] = None,
) -> Tuple[Subscription, bool]:
    """Create or reactivate the (subscriber, creator, interval) subscription.

    Must run under the subscription lock for the same triple.

    Args:
        create_values: Columns for a new row (pricing included)
        update_values: Columns refreshed on every successful charge
        pricing_values: Price, tier and fee columns. Applied to an existing row only
            when it was canceled; a live subscription keeps the pricing it was created with.

    Returns:
        (subscription, created)
    """
    subscription = find_subscription(db, subscriber_id, creator_id, interval)
    if subscription is None:
        subscription = Subscription(
            subscriber_id=subscriber_id,
            creator_id=creator_id,
            interval=interval,
            status=STATUS_ACTIVE,
            status_event_at=event_ts,
            ltv_cents=0,
            **create_values,
        )
        db.add(subscription)
        db.flush()
        logger.info(f"Created {interval} subscription {subscription.id} for creator {creator_id}")
        return subscription, True

    if subscription.status == STATUS_CANCELED and pricing_values:
        for key, value in pricing_values.items():
            setattr(subscription, key, value)
    for key, value in (update_values or {}).items():
        if value is not None:
            setattr(subscription, key, value)
    activate_from_charge(subscription, event_ts)
    return subscription, False


def record_subscriber_dispute(subscriber: Optional[User]) -> None:
    """Count a chargeback against the payer; repeat offenders are blocked"""
    if subscriber is None:
        return
    subscriber.dispute_count = (subscriber.dispute_count or 0) + 1
    if subscriber.dispute_count >= DISPUTE_BLOCK_THRESHOLD and not subscriber.blocked_reason:
        subscriber.blocked_reason = "repeated_disputes"
        logger.warning(f"Subscriber {subscriber.id} blocked after {subscriber.dispute_count} disputes")
