"""Paystack webhook handlers

Paystack has no subscription objects on our side: each renewal is a charge against the
stored authorization code, and every successful charge is followed by a transfer of the
creator's net amount.
"""
import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from creatorpay.core.exceptions import MetadataValidationError, RecordNotFoundError
from creatorpay.db.session import transaction
from creatorpay.models.payment import (
    Payment,
    TYPE_ONE_TIME,
    TYPE_RECURRING,
    TYPE_REFUND,
    TYPE_DISPUTE,
    STATUS_SUCCEEDED,
    STATUS_REFUNDED,
    STATUS_DISPUTED,
    STATUS_DISPUTE_WON,
    STATUS_DISPUTE_LOST,
)
from creatorpay.models.profile import Profile
from creatorpay.models.subscription import Subscription, INTERVAL_MONTH
from creatorpay.models.user import User
from creatorpay.schemas.metadata import parse_paystack_metadata, sanitize_for_log
from creatorpay.schemas.paystack_events import PaystackEvent
from creatorpay.services import activity_service, payment_service, payout_service, subscription_service
from creatorpay.services.event_router import EventRouter, HandlerResult
from creatorpay.services.lock_service import LOCK_NOT_ACQUIRED, subscription_lock_key
from creatorpay.services.webhook_services import WebhookServices
from creatorpay.utils.encryption import encrypt

logger = logging.getLogger(__name__)

PROVIDER = "paystack"
REFUND_REFERENCE_PREFIX = "REF-"


def _payment_by_event(db: Session, ledger_id: str) -> Optional[Payment]:
    return db.query(Payment).filter(Payment.paystack_event_id == ledger_id).first()


# ============================================================================
# CHARGES
# ============================================================================

def handle_charge_success(event: PaystackEvent, db: Session, services: WebhookServices) -> HandlerResult:
    """Record a successful charge, then pay the creator out

    Raises:
        ProviderAPIError: transient transfer failure after the charge was recorded;
            the redelivery finds the charge and resumes the payout
    """
    charge = event.data
    existing = _payment_by_event(db, event.ledger_id) or payment_service.find_paystack_charge_payment(db, charge.reference)
    if existing is not None:
        # An earlier attempt may have stopped between the charge commit and the transfer
        if payout_service.payout_outstanding(db, existing):
            if payout_service.create_paystack_payout(db, services, existing) is not None:
                return HandlerResult.processed("payout_resumed")
        return HandlerResult.skipped("duplicate_payment")

    meta = parse_paystack_metadata(charge.metadata)
    creator = db.get(User, meta.creator_id)
    if creator is None:
        raise MetadataValidationError(f"Unknown creator {meta.creator_id}", ["creatorId"])
    profile = db.query(Profile).filter(Profile.user_id == creator.id).first()

    email = charge.customer.email if charge.customer else None
    if not email:
        raise MetadataValidationError(f"Charge {sanitize_for_log(charge.reference)} has no customer email", ["customer.email"])

    currency = charge.currency.upper()
    purpose = profile.purpose if profile else None
    breakdown = payment_service.breakdown_from_metadata(
        charge.amount,
        purpose,
        fee_model=meta.fee_model,
        fee_mode=meta.fee_mode,
        net_cents=meta.creator_amount,
        service_fee_cents=meta.service_fee,
        base_cents=meta.base_amount,
        subscriber_fee_cents=meta.subscriber_fee,
        creator_fee_cents=meta.creator_fee,
        effective_rate=meta.fee_effective_rate,
        fee_was_capped=meta.fee_was_capped,
    )

    name = None
    if charge.customer and (charge.customer.first_name or charge.customer.last_name):
        name = " ".join(filter(None, [charge.customer.first_name, charge.customer.last_name]))
    subscriber = subscription_service.get_or_create_user_by_email(db, email, name)
    occurred_at = subscription_service.to_datetime(event.occurred_at)
    authorization_code = charge.authorization.authorization_code if charge.authorization else None

    def record():
        pricing = {
            "tier_id": meta.tier_id,
            "tier_name": meta.tier_name,
            "amount": breakdown.base_cents,
            "currency": currency,
            "purpose": purpose,
            "fee_model": breakdown.fee_model,
            "fee_mode": breakdown.fee_mode,
        }
        ids = {
            "paystack_authorization_code": encrypt(authorization_code),
            "paystack_customer_code": charge.customer.customer_code if charge.customer else None,
        }
        with transaction(db):
            subscription, created = subscription_service.upsert_subscription(
                db, subscriber.id, creator.id, meta.interval, event.occurred_at,
                create_values={**pricing, **ids},
                update_values=ids,
                pricing_values=pricing,
            )
            subscription_service.increment_ltv(subscription, breakdown.net_cents)
            subscription.last_payment_at = occurred_at
            if meta.interval == INTERVAL_MONTH:
                subscription.current_period_end = subscription_service.add_one_month(occurred_at)

            payment = Payment(
                subscription_id=subscription.id,
                creator_id=creator.id,
                subscriber_id=subscriber.id,
                type=TYPE_RECURRING if meta.interval == INTERVAL_MONTH else TYPE_ONE_TIME,
                status=STATUS_SUCCEEDED,
                amount_cents=breakdown.gross_cents,
                gross_cents=breakdown.gross_cents,
                fee_cents=breakdown.fee_cents,
                net_cents=breakdown.net_cents,
                subscriber_fee_cents=breakdown.subscriber_fee_cents,
                creator_fee_cents=breakdown.creator_fee_cents,
                currency=currency,
                fee_model=breakdown.fee_model,
                fee_effective_rate=breakdown.effective_rate,
                fee_was_capped=breakdown.fee_was_capped,
                paystack_event_id=event.ledger_id,
                paystack_transaction_ref=charge.reference,
                occurred_at=occurred_at,
            )
            db.add(payment)

            if created:
                activity_service.record_attribution(db, creator.id, subscription.id, meta.view_id, meta.request_id)
            activity_service.record_activity(
                db, creator.id,
                activity_service.SUBSCRIPTION_CREATED if created else activity_service.PAYMENT_RECEIVED,
                {
                    "subscription_id": subscription.id,
                    "subscriber_id": subscriber.id,
                    "amount_cents": breakdown.gross_cents,
                    "net_cents": breakdown.net_cents,
                    "currency": currency,
                },
            )
        logger.info(
            f"Recorded Paystack charge {sanitize_for_log(charge.reference)} for creator {creator.id}: "
            f"{breakdown.gross_cents} {currency} (model={breakdown.fee_model})"
        )
        return payment

    lock_key = subscription_lock_key(subscriber.id, creator.id, meta.interval)
    try:
        payment = services.lock.with_lock(lock_key, services.lock_timeout_ms, record)
    except IntegrityError as e:
        if payment_service.is_duplicate_insert(db, e, paystack_event_id=event.ledger_id):
            return HandlerResult.skipped("duplicate_payment")
        raise
    if payment is LOCK_NOT_ACQUIRED:
        return HandlerResult.skipped("lock_not_acquired")

    payout_service.create_paystack_payout(db, services, payment)
    return HandlerResult.processed()


def handle_charge_failed(event: PaystackEvent, db: Session, services: WebhookServices) -> HandlerResult:
    charge = event.data
    try:
        meta = parse_paystack_metadata(charge.metadata)
    except MetadataValidationError:
        return HandlerResult.skipped("no_checkout_metadata")

    subscription = None
    if meta.subscription_id:
        subscription = db.get(Subscription, meta.subscription_id)
    if subscription is None and charge.customer and charge.customer.customer_code:
        subscription = db.query(Subscription).filter(
            Subscription.creator_id == meta.creator_id,
            Subscription.paystack_customer_code == charge.customer.customer_code,
            Subscription.interval == meta.interval,
        ).first()
    if subscription is None:
        return HandlerResult.skipped("unknown_subscription")

    with transaction(db):
        if not subscription_service.mark_past_due(subscription, event.occurred_at):
            return HandlerResult.skipped("not_active")
        activity_service.record_activity(db, subscription.creator_id, activity_service.SUBSCRIPTION_PAST_DUE, {
            "subscription_id": subscription.id,
            "reference": charge.reference,
            "gateway_response": sanitize_for_log(charge.gateway_response),
        })
    return HandlerResult.processed()


# ============================================================================
# REFUNDS
# ============================================================================

def _original_charge(db: Session, reference: Optional[str]) -> Payment:
    original = payment_service.find_paystack_charge_payment(db, reference)
    if original is None:
        # charge.success not processed yet; Paystack redelivers
        raise RecordNotFoundError(f"No charge recorded for reference {sanitize_for_log(reference)}")
    return original


def handle_refund_processed(event: PaystackEvent, db: Session, services: WebhookServices) -> HandlerResult:
    refund = event.data
    if _payment_by_event(db, event.ledger_id):
        return HandlerResult.skipped("duplicate_payment")

    original = _original_charge(db, refund.transaction_reference)
    subscription = original.subscription
    amount = refund.amount or original.amount_cents
    reversal = payment_service.reversal_for(amount, original, original.currency)

    try:
        with transaction(db):
            removed = subscription_service.decrement_ltv(subscription, reversal.net_cents) if subscription else 0
            db.add(Payment(
                subscription_id=original.subscription_id,
                creator_id=original.creator_id,
                subscriber_id=original.subscriber_id,
                type=TYPE_REFUND,
                status=STATUS_REFUNDED,
                amount_cents=-amount,
                gross_cents=-amount,
                fee_cents=-reversal.fee_cents,
                net_cents=-reversal.net_cents,
                subscriber_fee_cents=-reversal.subscriber_fee_cents if reversal.subscriber_fee_cents is not None else None,
                creator_fee_cents=-reversal.creator_fee_cents if reversal.creator_fee_cents is not None else None,
                ltv_adjustment_cents=removed,
                currency=(refund.currency or original.currency).upper(),
                fee_model=original.fee_model,
                failure_reason=refund.reason,
                paystack_event_id=event.ledger_id,
                paystack_transaction_ref=f"{REFUND_REFERENCE_PREFIX}{event.reference}",
                occurred_at=subscription_service.to_datetime(event.occurred_at),
            ))
            activity_service.record_activity(db, original.creator_id, activity_service.PAYMENT_REFUNDED, {
                "subscription_id": original.subscription_id,
                "reference": original.paystack_transaction_ref,
                "amount_cents": amount,
                "net_cents": reversal.net_cents,
            })
    except IntegrityError as e:
        if payment_service.is_duplicate_insert(db, e, paystack_event_id=event.ledger_id):
            return HandlerResult.skipped("duplicate_payment")
        raise
    return HandlerResult.processed()


def handle_refund_pending(event: PaystackEvent, db: Session, services: WebhookServices) -> HandlerResult:
    refund = event.data
    logger.info(f"Paystack refund pending for {sanitize_for_log(refund.transaction_reference)}")
    return HandlerResult.processed("logged")


def handle_refund_failed(event: PaystackEvent, db: Session, services: WebhookServices) -> HandlerResult:
    refund = event.data
    original = payment_service.find_paystack_charge_payment(db, refund.transaction_reference)
    if original is None:
        return HandlerResult.skipped("original_payment_not_found")

    with transaction(db):
        activity_service.record_activity(db, original.creator_id, activity_service.REFUND_FAILED, {
            "reference": original.paystack_transaction_ref,
            "amount_cents": refund.amount,
            "reason": sanitize_for_log(refund.reason),
        })
    activity_service.alert_operator("Paystack refund failed", reference=original.paystack_transaction_ref)
    return HandlerResult.processed()


# ============================================================================
# DISPUTES
# ============================================================================

def handle_dispute_created(event: PaystackEvent, db: Session, services: WebhookServices) -> HandlerResult:
    dispute = event.data
    dispute_id = str(dispute.id)
    if db.query(Payment).filter(Payment.paystack_dispute_id == dispute_id).first():
        return HandlerResult.skipped("duplicate_dispute")

    original = _original_charge(db, dispute.reference)
    subscription = original.subscription
    reversal = payment_service.reversal_for(dispute.amount, original, original.currency)

    try:
        with transaction(db):
            removed = subscription_service.decrement_ltv(subscription, reversal.net_cents) if subscription else 0
            db.add(Payment(
                subscription_id=original.subscription_id,
                creator_id=original.creator_id,
                subscriber_id=original.subscriber_id,
                type=TYPE_DISPUTE,
                status=STATUS_DISPUTED,
                amount_cents=-dispute.amount,
                gross_cents=-dispute.amount,
                fee_cents=-reversal.fee_cents,
                net_cents=-reversal.net_cents,
                ltv_adjustment_cents=removed,
                currency=(dispute.currency or original.currency).upper(),
                fee_model=original.fee_model,
                failure_reason=dispute.reason or dispute.category,
                paystack_event_id=event.ledger_id,
                paystack_dispute_id=dispute_id,
                paystack_transaction_ref=original.paystack_transaction_ref,
                occurred_at=subscription_service.to_datetime(event.occurred_at),
            ))
            if original.subscriber_id:
                subscription_service.record_subscriber_dispute(db.get(User, original.subscriber_id))
            activity_service.record_activity(db, original.creator_id, activity_service.DISPUTE_CREATED, {
                "dispute_id": dispute_id,
                "reference": original.paystack_transaction_ref,
                "amount_cents": dispute.amount,
            })
    except IntegrityError as e:
        if payment_service.is_duplicate_insert(db, e, paystack_dispute_id=dispute_id):
            return HandlerResult.skipped("duplicate_dispute")
        raise

    activity_service.alert_operator("Paystack dispute opened", dispute=dispute_id, amount=dispute.amount)
    return HandlerResult.processed()


def handle_dispute_resolved(event: PaystackEvent, db: Session, services: WebhookServices) -> HandlerResult:
    dispute = event.data
    payment = db.query(Payment).filter(Payment.paystack_dispute_id == str(dispute.id)).first()
    if payment is None:
        return HandlerResult.skipped("no_open_dispute")
    if payment.status != STATUS_DISPUTED:
        return HandlerResult.skipped("dispute_already_resolved")

    won = dispute.merchant_won
    subscription = payment.subscription
    with transaction(db):
        payment.status = STATUS_DISPUTE_WON if won else STATUS_DISPUTE_LOST
        if subscription is not None:
            if won:
                subscription_service.restore_ltv(subscription, payment.ltv_adjustment_cents)
            elif subscription_service.cancel(subscription, event.occurred_at):
                activity_service.record_activity(db, payment.creator_id, activity_service.SUBSCRIPTION_CANCELED, {
                    "subscription_id": subscription.id,
                    "reason": "dispute_lost",
                })
        activity_service.record_activity(
            db, payment.creator_id,
            activity_service.DISPUTE_WON if won else activity_service.DISPUTE_LOST,
            {"dispute_id": str(dispute.id), "amount_cents": dispute.amount},
        )
    logger.info(f"Paystack dispute {dispute.id} resolved: {'won' if won else 'lost'}")
    return HandlerResult.processed()


def handle_dispute_reminder(event: PaystackEvent, db: Session, services: WebhookServices) -> HandlerResult:
    activity_service.alert_operator("Paystack dispute awaiting response", dispute=event.data.id)
    return HandlerResult.processed("logged")


# ============================================================================
# ROUTING
# ============================================================================

PAYSTACK_HANDLERS = {
    "charge.success": handle_charge_success,
    "charge.failed": handle_charge_failed,
    "transfer.success": payout_service.handle_transfer_success,
    "transfer.failed": payout_service.handle_transfer_failed,
    "transfer.reversed": payout_service.handle_transfer_failed,
    "transfer.requires_otp": payout_service.handle_transfer_requires_otp,
    "refund.processed": handle_refund_processed,
    "refund.pending": handle_refund_pending,
    "refund.failed": handle_refund_failed,
    "charge.dispute.create": handle_dispute_created,
    "charge.dispute.remind": handle_dispute_reminder,
    "charge.dispute.resolve": handle_dispute_resolved,
}

PAYSTACK_CRITICAL_EVENTS = frozenset({
    "charge.success",
    "transfer.success",
    "transfer.failed",
    "transfer.reversed",
    "transfer.requires_otp",
    "refund.processed",
    "charge.dispute.create",
    "charge.dispute.resolve",
})

PAYSTACK_NON_CRITICAL_EVENTS = frozenset({
    "charge.failed",
    "refund.pending",
    "refund.failed",
    "charge.dispute.remind",
})


def build_paystack_router(retry_unlisted_failures: bool = True) -> EventRouter:
    return EventRouter(
        PROVIDER,
        PAYSTACK_HANDLERS,
        PAYSTACK_CRITICAL_EVENTS,
        PAYSTACK_NON_CRITICAL_EVENTS,
        retry_unlisted_failures=retry_unlisted_failures,
    )
