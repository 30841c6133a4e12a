"""Stripe webhook handlers

Every handler takes (event, db, services) and returns a HandlerResult. Writes for one
event commit together; an exception rolls them back and the router decides whether
Stripe should retry.
"""
import logging
from typing import Optional

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from creatorpay.core.exceptions import MetadataValidationError, RecordNotFoundError, ProviderAPIError
from creatorpay.core.metrics import debit_recovery_counter, fee_mismatch_counter
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
from creatorpay.models.profile import (
    Profile,
    PAYOUT_STATUS_ACTIVE,
    PAYOUT_STATUS_PENDING,
    PAYOUT_STATUS_RESTRICTED,
)
from creatorpay.models.subscription import Subscription, INTERVAL_MONTH, INTERVAL_ONE_TIME
from creatorpay.models.user import User
from creatorpay.schemas.metadata import parse_checkout_metadata, sanitize_for_log
from creatorpay.schemas.stripe_events import StripeEvent
from creatorpay.services import activity_service, payment_service, payout_service, subscription_service
from creatorpay.services.event_router import EventRouter, HandlerResult
from creatorpay.services.fee_service import calculate_fee, calculate_legacy_fee
from creatorpay.services.lock_service import LOCK_NOT_ACQUIRED, invoice_lock_key, refund_lock_key, subscription_lock_key
from creatorpay.services.stripe_gateway import RecoveryCharge
from creatorpay.services.webhook_services import WebhookServices

logger = logging.getLogger(__name__)

PROVIDER = "stripe"
PLATFORM_DEBIT_CURRENCY = "USD"
DISPUTE_WON_STATUSES = ("won", "warning_closed")


def _get_profile(db: Session, user_id: str) -> Optional[Profile]:
    return db.query(Profile).filter(Profile.user_id == user_id).first()


def _payment_by_event(db: Session, event_id: str) -> Optional[Payment]:
    return db.query(Payment).filter(Payment.stripe_event_id == event_id).first()


# ============================================================================
# CHECKOUT
# ============================================================================

def handle_checkout_completed(event: StripeEvent, db: Session, services: WebhookServices) -> HandlerResult:
    """checkout.session.completed and checkout.session.async_payment_succeeded

    Creates or reactivates the subscription. One-time checkouts also record their
    payment here; recurring payments are recorded by invoice.paid.
    """
    session = event.data_object
    deferred = session.is_async_pending and event.type == "checkout.session.completed"
    if deferred and session.mode != "subscription":
        # Bank debits settle later via checkout.session.async_payment_succeeded
        return HandlerResult.skipped("awaiting_async_payment")

    meta = parse_checkout_metadata(session.metadata)
    creator = db.get(User, meta.creator_id)
    if creator is None:
        raise MetadataValidationError(f"Unknown creator {meta.creator_id}", ["creatorId"])
    profile = _get_profile(db, creator.id)

    email = session.email
    if not email:
        raise MetadataValidationError(f"Checkout session {session.id} has no customer email", ["customer_email"])

    interval = meta.interval or (INTERVAL_MONTH if session.mode == "subscription" else INTERVAL_ONE_TIME)
    currency = (session.currency or (profile.currency if profile else "usd")).upper()
    purpose = meta.purpose or (profile.purpose if profile else None)
    breakdown = payment_service.breakdown_from_metadata(
        session.amount_total or 0,
        purpose,
        fee_model=meta.fee_model,
        fee_mode=meta.fee_mode,
        net_cents=meta.net_amount,
        service_fee_cents=meta.service_fee,
        base_cents=meta.base_amount,
        subscriber_fee_cents=meta.subscriber_fee,
        creator_fee_cents=meta.creator_fee,
        effective_rate=meta.fee_effective_rate,
        fee_was_capped=meta.fee_was_capped,
    )

    subscriber = subscription_service.get_or_create_user_by_email(
        db, email, session.customer_details.name if session.customer_details else None
    )
    lock_key = subscription_lock_key(subscriber.id, creator.id, interval)

    def record() -> HandlerResult:
        existing = subscription_service.find_subscription(db, subscriber.id, creator.id, interval)
        if existing is not None and existing.stripe_checkout_session_id == session.id:
            return HandlerResult.skipped("checkout_already_recorded")
        if interval == INTERVAL_ONE_TIME and _payment_by_event(db, event.id):
            return HandlerResult.skipped("duplicate_payment")

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
            "stripe_subscription_id": session.subscription,
            "stripe_customer_id": session.customer,
            "stripe_checkout_session_id": session.id,
        }
        with transaction(db):
            subscription, created = subscription_service.upsert_subscription(
                db, subscriber.id, creator.id, interval, event.created,
                create_values={**pricing, **ids},
                update_values=ids,
                pricing_values=pricing,
            )

            if interval == INTERVAL_ONE_TIME:
                db.add(Payment(
                    subscription_id=subscription.id,
                    creator_id=creator.id,
                    subscriber_id=subscriber.id,
                    type=TYPE_ONE_TIME,
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
                    stripe_event_id=event.id,
                    stripe_payment_intent_id=session.payment_intent,
                    occurred_at=subscription_service.to_datetime(event.created),
                ))
                subscription_service.increment_ltv(subscription, breakdown.net_cents)
                subscription.last_payment_at = subscription_service.to_datetime(event.created)

            if deferred:
                subscription.async_view_id = meta.view_id
                subscription.async_request_id = meta.request_id
            else:
                activity_service.record_attribution(db, creator.id, subscription.id, meta.view_id, meta.request_id)

            if meta.platform_debit_recovered and profile is not None:
                payment_service.apply_debit_recovery(
                    db, profile, meta.platform_debit_recovered, PROVIDER, session.id
                )

            activity_service.record_activity(
                db, creator.id,
                activity_service.SUBSCRIPTION_CREATED if created else activity_service.SUBSCRIPTION_RENEWED,
                {
                    "subscription_id": subscription.id,
                    "subscriber_id": subscriber.id,
                    "interval": interval,
                    "amount_cents": breakdown.gross_cents,
                    "currency": currency,
                },
            )

        logger.info(
            f"Recorded checkout {session.id} for creator {creator.id}: "
            f"{interval} {breakdown.gross_cents} {currency} (model={breakdown.fee_model})"
        )
        return HandlerResult.processed()

    try:
        result = services.lock.with_lock(lock_key, services.lock_timeout_ms, record)
    except IntegrityError as e:
        if payment_service.is_duplicate_insert(db, e, stripe_event_id=event.id):
            return HandlerResult.skipped("duplicate_payment")
        raise
    if result is LOCK_NOT_ACQUIRED:
        return HandlerResult.skipped("lock_not_acquired")
    return result


def handle_checkout_not_paid(event: StripeEvent, db: Session, services: WebhookServices) -> HandlerResult:
    """checkout.session.async_payment_failed and checkout.session.expired"""
    session = event.data_object
    creator_id = (session.metadata or {}).get("creatorId")
    if not creator_id or db.get(User, creator_id) is None:
        return HandlerResult.skipped("no_creator")

    with transaction(db):
        activity_service.record_activity(
            db, creator_id,
            activity_service.PAYMENT_FAILED if event.type.endswith("async_payment_failed")
            else activity_service.CHECKOUT_ABANDONED,
            {"checkout_session_id": session.id, "amount_cents": session.amount_total, "currency": session.currency},
        )
    return HandlerResult.processed()


# ============================================================================
# INVOICES
# ============================================================================

def handle_invoice_created(event: StripeEvent, db: Session, services: WebhookServices) -> HandlerResult:
    # Draft invoices only need a 2xx so Stripe finalizes them on schedule
    return HandlerResult.processed("acknowledged")


def _expected_renewal_fee(subscription: Subscription, purpose: Optional[str]):
    return calculate_fee(
        subscription.amount,
        subscription.currency,
        purpose,
        subscription.fee_mode,
        subscription.fee_model,
    )


def handle_invoice_paid(event: StripeEvent, db: Session, services: WebhookServices) -> HandlerResult:
    """invoice.paid / invoice.payment_succeeded - record a recurring payment

    Both event types arrive for the same invoice; the invoice id dedupes them.
    """
    invoice = event.data_object
    if not invoice.subscription:
        return HandlerResult.skipped("not_a_subscription_invoice")
    if invoice.amount_paid <= 0:
        return HandlerResult.skipped("zero_amount_invoice")

    def record():
        if _payment_by_event(db, event.id):
            return HandlerResult.skipped("duplicate_payment")
        if db.query(Payment).filter(Payment.stripe_invoice_id == invoice.id).first():
            return HandlerResult.skipped("invoice_already_recorded")

        subscription = subscription_service.find_by_stripe_subscription_id(db, invoice.subscription)
        if subscription is None:
            # checkout.session.completed has not landed yet; Stripe will redeliver
            raise RecordNotFoundError(f"No subscription for {invoice.subscription} (invoice {invoice.id})")

        profile = _get_profile(db, subscription.creator_id)
        purpose = subscription.purpose or (profile.purpose if profile else None)
        gross = invoice.amount_paid

        expected = None
        if subscription.fee_model is not None:
            expected = _expected_renewal_fee(subscription, purpose)
            actual_fee = invoice.application_fee_amount
            if actual_fee is not None and actual_fee > 0:
                fee = actual_fee
                if actual_fee != expected.fee_cents:
                    fee_mismatch_counter.inc()
                    activity_service.alert_operator(
                        "Renewal fee mismatch",
                        invoice=invoice.id, subscription=subscription.id,
                        expected=expected.fee_cents, actual=actual_fee,
                    )
                    activity_service.record_activity(db, subscription.creator_id, activity_service.FEE_MISMATCH, {
                        "invoice_id": invoice.id,
                        "expected_fee_cents": expected.fee_cents,
                        "actual_fee_cents": actual_fee,
                    })
            else:
                fee = expected.fee_cents
                activity_service.alert_operator(
                    "Renewal invoice missing application fee",
                    invoice=invoice.id, subscription=subscription.id, expected=expected.fee_cents,
                )
                activity_service.record_activity(db, subscription.creator_id, activity_service.FEE_MISSING, {
                    "invoice_id": invoice.id,
                    "expected_fee_cents": expected.fee_cents,
                })
            fee = min(fee, gross)
            net = gross - fee
        else:
            legacy = calculate_legacy_fee(gross, purpose)
            fee, net = legacy.fee_cents, legacy.net_cents

        paid_at = subscription_service.to_datetime(invoice.paid_at or event.created)
        with transaction(db):
            subscription_service.activate_from_charge(subscription, event.created)
            period_end = subscription_service.to_datetime(invoice.period_end)
            if period_end is not None:
                subscription.current_period_end = period_end
            subscription_service.increment_ltv(subscription, net)
            subscription.last_payment_at = paid_at

            db.add(Payment(
                subscription_id=subscription.id,
                creator_id=subscription.creator_id,
                subscriber_id=subscription.subscriber_id,
                type=TYPE_RECURRING,
                status=STATUS_SUCCEEDED,
                amount_cents=gross,
                gross_cents=gross,
                fee_cents=fee,
                net_cents=net,
                subscriber_fee_cents=expected.subscriber_fee_cents if expected else 0,
                creator_fee_cents=expected.creator_fee_cents if expected else fee,
                currency=invoice.currency.upper(),
                fee_model=subscription.fee_model,
                fee_effective_rate=expected.effective_rate if expected else None,
                fee_was_capped=expected.fee_was_capped if expected else None,
                stripe_event_id=event.id,
                stripe_invoice_id=invoice.id,
                stripe_charge_id=invoice.charge,
                stripe_payment_intent_id=invoice.payment_intent,
                occurred_at=paid_at,
            ))

            if subscription.async_view_id or subscription.async_request_id:
                activity_service.record_attribution(
                    db, subscription.creator_id, subscription.id,
                    subscription.async_view_id, subscription.async_request_id,
                )
                subscription.async_view_id = None
                subscription.async_request_id = None

            activity_service.record_activity(db, subscription.creator_id, activity_service.PAYMENT_RECEIVED, {
                "subscription_id": subscription.id,
                "invoice_id": invoice.id,
                "amount_cents": gross,
                "net_cents": net,
                "currency": invoice.currency.upper(),
            })

        logger.info(f"Recorded renewal {invoice.id} for subscription {subscription.id}: gross={gross} fee={fee}")
        return subscription

    try:
        result = services.lock.with_lock(invoice_lock_key(invoice.id), services.lock_timeout_ms, record)
    except IntegrityError as e:
        if payment_service.is_duplicate_insert(db, e, stripe_invoice_id=invoice.id):
            return HandlerResult.skipped("invoice_already_recorded")
        raise
    if result is LOCK_NOT_ACQUIRED:
        return HandlerResult.skipped("lock_not_acquired")
    if isinstance(result, HandlerResult):
        return result

    recover_platform_debit(db, services, result.creator_id, event.id)
    return HandlerResult.processed()


def recover_platform_debit(db: Session, services: WebhookServices, creator_id: str, event_id: str) -> Optional[RecoveryCharge]:
    """Charge a service creator's saved card for platform debit after a renewal.

    Best effort: the renewal is already committed and nothing here may fail it.
    """
    profile = _get_profile(db, creator_id)
    if not payment_service.owes_platform_debit(profile) or not profile.platform_customer_id:
        return None

    amount = min(profile.platform_debit_cents, services.settings.PLATFORM_DEBIT_RECOVERY_CAP_CENTS)
    try:
        charge = services.stripe.charge_platform_debit(
            profile.platform_customer_id,
            amount,
            PLATFORM_DEBIT_CURRENCY,
            idempotency_key=f"debit_recovery_{event_id}",
            metadata={"purpose": "platform_debit_recovery", "creatorId": creator_id, "eventId": event_id},
        )
    except ProviderAPIError as e:
        charge = RecoveryCharge(succeeded=False, error=str(e))

    try:
        with transaction(db):
            if charge.succeeded:
                payment_service.apply_debit_recovery(db, profile, amount, PROVIDER, charge.payment_intent_id or event_id)
            else:
                debit_recovery_counter.labels(provider=PROVIDER, outcome="failed").inc()
                activity_service.record_activity(db, creator_id, activity_service.PLATFORM_DEBIT_RECOVERY_FAILED, {
                    "amount_cents": amount,
                    "outstanding_cents": profile.platform_debit_cents,
                    "error": charge.error,
                })
                logger.warning(f"Platform debit recovery failed for creator {creator_id}: {charge.error}")
    except Exception as e:
        logger.error(f"Failed to record platform debit recovery for creator {creator_id}: {e}", exc_info=True)
    return charge


def handle_invoice_payment_failed(event: StripeEvent, db: Session, services: WebhookServices) -> HandlerResult:
    invoice = event.data_object
    subscription = subscription_service.find_by_stripe_subscription_id(db, invoice.subscription)
    if subscription is None:
        return HandlerResult.skipped("unknown_subscription")

    with transaction(db):
        if not subscription_service.mark_past_due(subscription, event.created):
            return HandlerResult.skipped("not_active")
        activity_service.record_activity(db, subscription.creator_id, activity_service.SUBSCRIPTION_PAST_DUE, {
            "subscription_id": subscription.id,
            "invoice_id": invoice.id,
            "amount_cents": invoice.amount_due,
        })
    logger.info(f"Subscription {subscription.id} is past due after invoice {invoice.id} failed")
    return HandlerResult.processed()


# ============================================================================
# SUBSCRIPTION LIFECYCLE
# ============================================================================

def handle_subscription_updated(event: StripeEvent, db: Session, services: WebhookServices) -> HandlerResult:
    stripe_subscription = event.data_object
    subscription = subscription_service.find_by_stripe_subscription_id(db, stripe_subscription.id)
    if subscription is None:
        return HandlerResult.skipped("unknown_subscription")
    if subscription_service.is_stale(subscription, event.created):
        return HandlerResult.skipped("stale_event")

    with transaction(db):
        subscription_service.apply_provider_status(subscription, stripe_subscription.status, event.created)
        subscription.cancel_at_period_end = stripe_subscription.cancel_at_period_end
        period_end = subscription_service.to_datetime(stripe_subscription.period_end)
        if period_end is not None:
            subscription.current_period_end = period_end
    return HandlerResult.processed()


def handle_subscription_deleted(event: StripeEvent, db: Session, services: WebhookServices) -> HandlerResult:
    stripe_subscription = event.data_object
    subscription = subscription_service.find_by_stripe_subscription_id(db, stripe_subscription.id)
    if subscription is None:
        return HandlerResult.skipped("unknown_subscription")

    canceled_at = subscription_service.to_datetime(stripe_subscription.canceled_at or event.created)
    with transaction(db):
        if not subscription_service.cancel(subscription, event.created, canceled_at):
            return HandlerResult.skipped("already_canceled_or_stale")
        activity_service.record_activity(db, subscription.creator_id, activity_service.SUBSCRIPTION_CANCELED, {
            "subscription_id": subscription.id,
            "subscriber_id": subscription.subscriber_id,
        })
    logger.info(f"Subscription {subscription.id} canceled")
    return HandlerResult.processed()


# ============================================================================
# CONNECT ACCOUNTS
# ============================================================================

def handle_account_updated(event: StripeEvent, db: Session, services: WebhookServices) -> HandlerResult:
    account = event.data_object
    profile = db.query(Profile).filter(Profile.stripe_account_id == account.id).first()
    if profile is None:
        return HandlerResult.skipped("unknown_account")

    if account.requirements and account.requirements.disabled_reason:
        status = PAYOUT_STATUS_RESTRICTED
    elif account.charges_enabled and account.payouts_enabled:
        status = PAYOUT_STATUS_ACTIVE
    else:
        status = PAYOUT_STATUS_PENDING

    if profile.payout_status == status:
        return HandlerResult.skipped("unchanged")

    with transaction(db):
        previous = profile.payout_status
        profile.payout_status = status
        activity_service.record_activity(db, profile.user_id, activity_service.PAYOUT_STATUS_CHANGED, {
            "from": previous,
            "to": status,
            "disabled_reason": account.requirements.disabled_reason if account.requirements else None,
        })
    logger.info(f"Connect account {account.id} payout status {previous} -> {status}")
    return HandlerResult.processed()


# ============================================================================
# REFUNDS AND DISPUTES
# ============================================================================

def _subscription_for_charge(
    db: Session,
    services: WebhookServices,
    original: Optional[Payment],
    invoice_id: Optional[str] = None,
    customer_id: Optional[str] = None,
    charge_id: Optional[str] = None,
) -> Optional[Subscription]:
    if original is not None and original.subscription is not None:
        return original.subscription
    if invoice_id:
        subscription = subscription_service.find_by_stripe_subscription_id(
            db, services.stripe.get_invoice_subscription_id(invoice_id)
        )
        if subscription is not None:
            return subscription
    if not customer_id and charge_id:
        customer_id = services.stripe.get_charge_customer_id(charge_id)
    return subscription_service.find_latest_by_stripe_customer(db, customer_id)


def handle_charge_refunded(event: StripeEvent, db: Session, services: WebhookServices) -> HandlerResult:
    """Record the newly refunded part of a charge as a negative payment"""
    charge = event.data_object
    if _payment_by_event(db, event.id):
        return HandlerResult.skipped("duplicate_payment")

    original = payment_service.find_stripe_charge_payment(db, charge.id, charge.payment_intent)
    subscription = _subscription_for_charge(db, services, original, charge.invoice, charge.customer)
    if subscription is None:
        return HandlerResult.skipped("unknown_subscription")

    def record() -> HandlerResult:
        # amount_refunded is cumulative; read and insert under one refund lock per charge
        refund_amount = charge.amount_refunded - payment_service.refunded_so_far(db, charge.id)
        if refund_amount <= 0:
            return HandlerResult.skipped("no_new_refund_amount")

        reversal = payment_service.reversal_for(
            refund_amount, original, charge.currency, subscription.purpose, subscription.fee_model
        )
        with transaction(db):
            removed = subscription_service.decrement_ltv(subscription, reversal.net_cents)
            db.add(Payment(
                subscription_id=subscription.id,
                creator_id=subscription.creator_id,
                subscriber_id=subscription.subscriber_id,
                type=TYPE_REFUND,
                status=STATUS_REFUNDED,
                amount_cents=-refund_amount,
                gross_cents=-refund_amount,
                fee_cents=-reversal.fee_cents,
                net_cents=-reversal.net_cents,
                subscriber_fee_cents=-reversal.subscriber_fee_cents if reversal.subscriber_fee_cents is not None else None,
                creator_fee_cents=-reversal.creator_fee_cents if reversal.creator_fee_cents is not None else None,
                ltv_adjustment_cents=removed,
                currency=charge.currency.upper(),
                fee_model=original.fee_model if original else subscription.fee_model,
                failure_reason=charge.refund_reason,
                stripe_event_id=event.id,
                stripe_charge_id=charge.id,
                stripe_payment_intent_id=charge.payment_intent,
                occurred_at=subscription_service.to_datetime(event.created),
            ))
            activity_service.record_activity(db, subscription.creator_id, activity_service.PAYMENT_REFUNDED, {
                "subscription_id": subscription.id,
                "charge_id": charge.id,
                "amount_cents": refund_amount,
                "net_cents": reversal.net_cents,
                "reason": charge.refund_reason,
            })
        logger.info(f"Recorded refund of {refund_amount} on charge {charge.id}")
        return HandlerResult.processed()

    try:
        result = services.lock.with_lock(refund_lock_key(charge.id), services.lock_timeout_ms, record)
    except IntegrityError as e:
        if payment_service.is_duplicate_insert(db, e, stripe_event_id=event.id):
            return HandlerResult.skipped("duplicate_payment")
        raise
    if result is LOCK_NOT_ACQUIRED:
        return HandlerResult.skipped("lock_not_acquired")
    return result


def handle_dispute_created(event: StripeEvent, db: Session, services: WebhookServices) -> HandlerResult:
    dispute = event.data_object
    if db.query(Payment).filter(Payment.stripe_dispute_id == dispute.id).first():
        return HandlerResult.skipped("duplicate_dispute")

    original = payment_service.find_stripe_charge_payment(db, dispute.charge, dispute.payment_intent)
    subscription = _subscription_for_charge(db, services, original, charge_id=dispute.charge)
    if subscription is None:
        return HandlerResult.skipped("unknown_subscription")

    reversal = payment_service.reversal_for(
        dispute.amount, original, dispute.currency, subscription.purpose, subscription.fee_model
    )
    try:
        with transaction(db):
            removed = subscription_service.decrement_ltv(subscription, reversal.net_cents)
            db.add(Payment(
                subscription_id=subscription.id,
                creator_id=subscription.creator_id,
                subscriber_id=subscription.subscriber_id,
                type=TYPE_DISPUTE,
                status=STATUS_DISPUTED,
                amount_cents=-dispute.amount,
                gross_cents=-dispute.amount,
                fee_cents=-reversal.fee_cents,
                net_cents=-reversal.net_cents,
                ltv_adjustment_cents=removed,
                currency=dispute.currency.upper(),
                fee_model=original.fee_model if original else subscription.fee_model,
                failure_reason=dispute.reason,
                stripe_event_id=event.id,
                stripe_dispute_id=dispute.id,
                stripe_charge_id=dispute.charge,
                stripe_payment_intent_id=dispute.payment_intent,
                occurred_at=subscription_service.to_datetime(event.created),
            ))
            subscription_service.record_subscriber_dispute(subscription.subscriber)
            activity_service.record_activity(db, subscription.creator_id, activity_service.DISPUTE_CREATED, {
                "subscription_id": subscription.id,
                "dispute_id": dispute.id,
                "amount_cents": dispute.amount,
                "reason": dispute.reason,
            })
    except IntegrityError as e:
        if payment_service.is_duplicate_insert(db, e, stripe_dispute_id=dispute.id):
            return HandlerResult.skipped("duplicate_dispute")
        raise

    activity_service.alert_operator(
        "Dispute opened", dispute=dispute.id, amount=dispute.amount,
        reason=sanitize_for_log(dispute.reason),
    )
    return HandlerResult.processed()


def _legacy_open_dispute(db: Session, dispute) -> Optional[Payment]:
    """Open dispute row written before dispute ids were stored, scoped to the disputed charge"""
    scopes = []
    if dispute.charge:
        scopes.append(Payment.stripe_charge_id == dispute.charge)
    original = payment_service.find_stripe_charge_payment(db, dispute.charge, dispute.payment_intent)
    if original is not None:
        scopes.append(and_(Payment.stripe_charge_id.is_(None), Payment.subscription_id == original.subscription_id))
    if not scopes:
        return None
    return db.query(Payment).filter(
        Payment.type == TYPE_DISPUTE,
        Payment.status == STATUS_DISPUTED,
        Payment.stripe_dispute_id.is_(None),
        Payment.amount_cents == -dispute.amount,
        or_(*scopes),
    ).order_by(Payment.created_at.desc()).first()


def handle_dispute_closed(event: StripeEvent, db: Session, services: WebhookServices) -> HandlerResult:
    dispute = event.data_object
    payment = db.query(Payment).filter(Payment.stripe_dispute_id == dispute.id).first()
    if payment is None:
        payment = _legacy_open_dispute(db, dispute)
    if payment is None:
        return HandlerResult.skipped("no_open_dispute")
    if payment.status != STATUS_DISPUTED:
        return HandlerResult.skipped("dispute_already_resolved")

    won = dispute.status in DISPUTE_WON_STATUSES
    with transaction(db):
        payment.status = STATUS_DISPUTE_WON if won else STATUS_DISPUTE_LOST
        if payment.stripe_dispute_id is None:
            payment.stripe_dispute_id = dispute.id
        if won and payment.subscription is not None:
            subscription_service.restore_ltv(payment.subscription, payment.ltv_adjustment_cents)
        activity_service.record_activity(
            db, payment.creator_id,
            activity_service.DISPUTE_WON if won else activity_service.DISPUTE_LOST,
            {"dispute_id": dispute.id, "amount_cents": dispute.amount, "status": dispute.status},
        )
    logger.info(f"Dispute {dispute.id} closed as {dispute.status}")
    return HandlerResult.processed()


def handle_payment_intent_failed(event: StripeEvent, db: Session, services: WebhookServices) -> HandlerResult:
    intent = event.data_object
    metadata = intent.metadata or {}
    if metadata.get("purpose") == "platform_debit_recovery":
        # Already recorded by recover_platform_debit
        return HandlerResult.skipped("platform_debit_recovery")
    creator_id = metadata.get("creatorId")
    if not creator_id or db.get(User, creator_id) is None:
        return HandlerResult.skipped("no_creator")

    error = intent.last_payment_error
    with transaction(db):
        activity_service.record_activity(db, creator_id, activity_service.PAYMENT_FAILED, {
            "payment_intent_id": intent.id,
            "amount_cents": intent.amount,
            "currency": intent.currency.upper(),
            "code": error.code if error else None,
            "message": sanitize_for_log(error.message if error else None, 200),
        })
    return HandlerResult.processed()


# ============================================================================
# ROUTING
# ============================================================================

STRIPE_HANDLERS = {
    "checkout.session.completed": handle_checkout_completed,
    "checkout.session.async_payment_succeeded": handle_checkout_completed,
    "checkout.session.async_payment_failed": handle_checkout_not_paid,
    "checkout.session.expired": handle_checkout_not_paid,
    "invoice.created": handle_invoice_created,
    "invoice.paid": handle_invoice_paid,
    "invoice.payment_succeeded": handle_invoice_paid,
    "invoice.payment_failed": handle_invoice_payment_failed,
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
    "account.updated": handle_account_updated,
    "charge.refunded": handle_charge_refunded,
    "charge.dispute.created": handle_dispute_created,
    "charge.dispute.closed": handle_dispute_closed,
    "payment_intent.payment_failed": handle_payment_intent_failed,
    "payout.created": payout_service.handle_stripe_payout_created,
    "payout.paid": payout_service.handle_stripe_payout_paid,
    "payout.failed": payout_service.handle_stripe_payout_failed,
}

# Money moved or subscription state defined: a failure must be retried
STRIPE_CRITICAL_EVENTS = frozenset({
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
    "invoice.created",
    "invoice.paid",
    "invoice.payment_succeeded",
    "invoice.payment_failed",
    "customer.subscription.deleted",
    "charge.refunded",
    "charge.dispute.created",
    "charge.dispute.closed",
    "payout.paid",
})

STRIPE_NON_CRITICAL_EVENTS = frozenset({
    "checkout.session.async_payment_failed",
    "checkout.session.expired",
    "customer.subscription.updated",
    "account.updated",
    "payment_intent.payment_failed",
    "payout.created",
    "payout.failed",
})


def build_stripe_router(retry_unlisted_failures: bool = True) -> EventRouter:
    return EventRouter(
        PROVIDER,
        STRIPE_HANDLERS,
        STRIPE_CRITICAL_EVENTS,
        STRIPE_NON_CRITICAL_EVENTS,
        retry_unlisted_failures=retry_unlisted_failures,
    )
