"""Payout reconciliation

Every provider-side payout is paired with a Payment row (type 'payout') when it is
created, so completion webhooks only ever look rows up by reference:

    pending -> succeeded | failed | disputed
    pending -> otp_pending -> succeeded | failed

A completion whose amount or currency disagrees with the stored row moves it to
disputed and raises PayoutMismatchError so the provider retries and an operator looks.
"""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from creatorpay.core.exceptions import DecryptionError, PayoutMismatchError, ProviderAPIError, RecordNotFoundError
from creatorpay.core.logging import payout_logger
from creatorpay.core.metrics import payout_mismatch_counter
from creatorpay.db.session import transaction
from creatorpay.models.payment import (
    Payment,
    TYPE_PAYOUT,
    STATUS_PENDING,
    STATUS_OTP_PENDING,
    STATUS_SUCCEEDED,
    STATUS_FAILED,
    STATUS_DISPUTED,
    FINAL_PAYOUT_STATUSES,
)
from creatorpay.models.profile import Profile, PAYOUT_STATUS_RESTRICTED
from creatorpay.services import activity_service, payment_service
from creatorpay.services.event_router import HandlerResult
from creatorpay.services.lock_service import LOCK_NOT_ACQUIRED, payout_lock_key
from creatorpay.utils.encryption import decrypt

logger = logging.getLogger(__name__)

PAYOUT_REFERENCE_PREFIX = "PAYOUT-"
RETRY_MARKER = "-R"


class PayoutRetryError(ValueError):
    """Payment cannot be retried as a payout"""


def payout_reference(charge_reference: str) -> str:
    return f"{PAYOUT_REFERENCE_PREFIX}{charge_reference}"


def _get_profile(db: Session, user_id: str) -> Optional[Profile]:
    return db.query(Profile).filter(Profile.user_id == user_id).first()


def find_paystack_payout(db: Session, reference: str) -> Optional[Payment]:
    return db.query(Payment).filter(
        Payment.type == TYPE_PAYOUT,
        Payment.paystack_transaction_ref == reference,
    ).first()


def find_stripe_payout(db: Session, payout_id: str) -> Optional[Payment]:
    return db.query(Payment).filter(Payment.stripe_payout_id == payout_id).first()


# ============================================================================
# STATE TRANSITIONS
# ============================================================================

def _mark_failed(db: Session, payout: Payment, reason: Optional[str]) -> None:
    """Fail a payout and restrict the creator's payouts until someone looks (caller commits)"""
    payout.status = STATUS_FAILED
    payout.failure_reason = (reason or "unknown")[:500]
    profile = _get_profile(db, payout.creator_id)
    if profile is not None:
        profile.payout_status = PAYOUT_STATUS_RESTRICTED
    activity_service.record_activity(db, payout.creator_id, activity_service.PAYOUT_FAILED, {
        "payout_id": payout.id,
        "amount_cents": payout.amount_cents,
        "currency": payout.currency,
        "reason": payout.failure_reason,
    })
    payout_logger.warning(f"Payout {payout.id} failed: {payout.failure_reason}")


def confirm_payout(
    db: Session,
    payout: Payment,
    reference: str,
    amount_cents: int,
    currency: str,
    provider: str,
) -> HandlerResult:
    """Apply a provider 'payout completed' report to its paired row.

    Raises:
        PayoutMismatchError: reported amount or currency differs; the row is left disputed
    """
    if payout.status == STATUS_SUCCEEDED:
        return HandlerResult.skipped("payout_already_succeeded")
    if payout.status == STATUS_FAILED:
        return HandlerResult.skipped("payout_already_failed")
    if payout.status == STATUS_DISPUTED:
        # Keep signalling until an operator resolves it
        raise PayoutMismatchError(reference, payout.amount_cents, amount_cents, payout.currency, currency)

    if payout.amount_cents != amount_cents or (payout.currency or "").upper() != (currency or "").upper():
        error = PayoutMismatchError(reference, payout.amount_cents, amount_cents, payout.currency, currency)
        payout.status = STATUS_DISPUTED
        payout.failure_reason = str(error)[:500]
        activity_service.record_activity(db, payout.creator_id, activity_service.PAYOUT_MISMATCH, {
            "reference": reference,
            "expected_amount_cents": payout.amount_cents,
            "received_amount_cents": amount_cents,
            "expected_currency": payout.currency,
            "received_currency": currency,
        })
        db.commit()
        payout_mismatch_counter.labels(provider=provider).inc()
        activity_service.alert_operator(
            "Payout amount mismatch", level=logging.CRITICAL,
            provider=provider, reference=reference,
            expected=f"{payout.amount_cents} {payout.currency}", received=f"{amount_cents} {currency}",
        )
        raise error

    with transaction(db):
        payout.status = STATUS_SUCCEEDED
        activity_service.record_activity(db, payout.creator_id, activity_service.PAYOUT_COMPLETED, {
            "payout_id": payout.id,
            "amount_cents": amount_cents,
            "currency": payout.currency,
        })
    payout_logger.info(f"Payout {reference} confirmed: {amount_cents} {payout.currency}")
    return HandlerResult.processed()


# ============================================================================
# PAYSTACK TRANSFERS
# ============================================================================

def _transfer_not_started(payout: Payment) -> bool:
    return payout.status == STATUS_PENDING and not payout.paystack_transfer_code


def _initiate_transfer(db: Session, services, profile: Profile, payout: Payment, account_number: str) -> None:
    """Call Paystack for an already-committed pending payout row (caller commits the outcome)

    Raises:
        ProviderAPIError: transient failure; the row stays pending and is resumed on redelivery
    """
    try:
        recipient_code = services.paystack.create_transfer_recipient(
            profile.paystack_account_name or profile.display_name or "Creator",
            account_number,
            profile.paystack_bank_code,
            payout.currency,
        )
        transfer = services.paystack.initiate_transfer(
            payout.amount_cents,
            recipient_code,
            reason="Creator payout",
            reference=payout.paystack_transaction_ref,
        )
    except ProviderAPIError as e:
        if e.is_transient:
            payout_logger.warning(f"Transfer {payout.paystack_transaction_ref} not started: {e}")
            raise
        _mark_failed(db, payout, str(e))
        return

    payout.paystack_transfer_code = transfer.transfer_code or None
    if transfer.requires_otp:
        payout.status = STATUS_OTP_PENDING
    elif transfer.status == "failed":
        _mark_failed(db, payout, "transfer_rejected")
    else:
        activity_service.record_activity(db, payout.creator_id, activity_service.PAYOUT_INITIATED, {
            "payout_id": payout.id,
            "amount_cents": payout.amount_cents,
            "currency": payout.currency,
            "reference": payout.paystack_transaction_ref,
        })
    payout_logger.info(f"Transfer {payout.paystack_transaction_ref} initiated with status {transfer.status}")


def _create_paystack_payout_locked(
    db: Session,
    services,
    profile: Profile,
    charge: Payment,
    reference: str,
) -> Optional[Payment]:
    payout = find_paystack_payout(db, reference)
    if payout is not None and not _transfer_not_started(payout):
        return payout

    if payout is None:
        net = charge.net_cents
        recovered = 0
        if payment_service.owes_platform_debit(profile):
            recovered = min(profile.platform_debit_cents, services.settings.PLATFORM_DEBIT_RECOVERY_CAP_CENTS, net)
        transfer_amount = net - recovered

        payout = Payment(
            subscription_id=charge.subscription_id,
            creator_id=charge.creator_id,
            type=TYPE_PAYOUT,
            status=STATUS_PENDING,
            amount_cents=transfer_amount,
            gross_cents=net,
            fee_cents=0,
            net_cents=transfer_amount,
            currency=charge.currency,
            paystack_transaction_ref=reference,
        )

        if transfer_amount <= 0:
            # Zero payout row settles the charge so a redelivery cannot recover the debit twice
            payout.status = STATUS_SUCCEEDED
            payout.amount_cents = 0
            payout.net_cents = 0
            with transaction(db):
                db.add(payout)
                payment_service.apply_debit_recovery(db, profile, recovered, "paystack", reference)
            payout_logger.info(f"Charge {charge.id} fully absorbed by platform debit, no transfer")
            return payout

        # Paired row exists before Paystack is called so the completion webhook can always find it
        with transaction(db):
            db.add(payout)
    else:
        payout_logger.info(f"Resuming payout {reference}, transfer was never started")

    try:
        account_number = decrypt(profile.paystack_account_number)
    except DecryptionError as e:
        with transaction(db):
            _mark_failed(db, payout, f"bank_credentials_unreadable: {e}")
        activity_service.alert_operator(
            "Creator bank credentials cannot be decrypted", level=logging.ERROR, creator=profile.user_id,
        )
        return payout

    recovered = (payout.gross_cents or 0) - payout.amount_cents
    with transaction(db):
        _initiate_transfer(db, services, profile, payout, account_number)
        if recovered and payout.status != STATUS_FAILED:
            payment_service.apply_debit_recovery(db, profile, recovered, "paystack", reference)
    return payout


def payout_outstanding(db: Session, charge: Payment) -> bool:
    """True when a recorded Paystack charge has no payout yet or its transfer never started"""
    payout = find_paystack_payout(db, payout_reference(charge.paystack_transaction_ref))
    return payout is None or _transfer_not_started(payout)


def create_paystack_payout(db: Session, services, charge: Payment) -> Optional[Payment]:
    """Transfer a charge's net amount to the creator's bank account.

    Idempotent per charge: an existing payout is returned, and one whose transfer never
    started is resumed. Service creators who owe platform debit have part of it
    withheld from the transfer. A rejected transfer is recorded as a failed payout.

    Raises:
        ProviderAPIError: transient transfer failure, so the charge event is retried
    """
    profile = _get_profile(db, charge.creator_id)
    if profile is None or not profile.paystack_account_number or not profile.paystack_bank_code:
        logger.info(f"Creator {charge.creator_id} has no transfer credentials, payout deferred")
        return None

    reference = payout_reference(charge.paystack_transaction_ref)
    result = services.lock.with_lock(
        payout_lock_key(reference),
        services.lock_timeout_ms,
        lambda: _create_paystack_payout_locked(db, services, profile, charge, reference),
    )
    if result is LOCK_NOT_ACQUIRED:
        return None
    return result


def retry_failed_payout(db: Session, services, payment_id: str) -> Payment:
    """Create a fresh transfer for a failed Paystack payout.

    Paystack references are single-use, so the retry gets a new reference and row.

    Raises:
        PayoutRetryError: payment is not a failed Paystack payout
        RecordNotFoundError: payment does not exist
        ProviderAPIError: transient transfer failure; the new row stays pending
    """
    failed = db.get(Payment, payment_id)
    if failed is None:
        raise RecordNotFoundError(f"Payment {payment_id} not found")
    if failed.type != TYPE_PAYOUT or not failed.paystack_transaction_ref:
        raise PayoutRetryError(f"Payment {payment_id} is not a Paystack payout")
    if failed.status != STATUS_FAILED:
        raise PayoutRetryError(f"Payout {payment_id} is {failed.status}, only failed payouts can be retried")

    profile = _get_profile(db, failed.creator_id)
    if profile is None or not profile.paystack_account_number or not profile.paystack_bank_code:
        raise PayoutRetryError(f"Creator {failed.creator_id} has no transfer credentials")

    base_reference = failed.paystack_transaction_ref.split(RETRY_MARKER)[0]
    attempts = db.query(Payment).filter(
        Payment.type == TYPE_PAYOUT,
        Payment.paystack_transaction_ref.startswith(f"{base_reference}{RETRY_MARKER}", autoescape=True),
    ).count()
    reference = f"{base_reference}{RETRY_MARKER}{attempts + 1}"

    def retry() -> Payment:
        account_number = decrypt(profile.paystack_account_number)
        payout = Payment(
            subscription_id=failed.subscription_id,
            creator_id=failed.creator_id,
            type=TYPE_PAYOUT,
            status=STATUS_PENDING,
            amount_cents=failed.amount_cents,
            gross_cents=failed.gross_cents,
            fee_cents=0,
            net_cents=failed.amount_cents,
            currency=failed.currency,
            paystack_transaction_ref=reference,
        )
        with transaction(db):
            db.add(payout)
        with transaction(db):
            _initiate_transfer(db, services, profile, payout, account_number)
        return payout

    result = services.lock.with_lock(payout_lock_key(base_reference), services.lock_timeout_ms, retry)
    if result is LOCK_NOT_ACQUIRED:
        raise PayoutRetryError(f"Payout {base_reference} is being processed by another worker")
    payout_logger.info(f"Retried payout {failed.id} as {reference}: {result.status}")
    return result


def _payout_for_transfer(db: Session, reference: str) -> Optional[Payment]:
    payout = find_paystack_payout(db, reference)
    if payout is None:
        activity_service.alert_operator("Transfer webhook for unknown payout", reference=reference)
    return payout


def handle_transfer_success(event, db: Session, services) -> HandlerResult:
    transfer = event.data
    payout = _payout_for_transfer(db, transfer.reference)
    if payout is None:
        return HandlerResult.skipped("unknown_payout")
    if transfer.transfer_code and not payout.paystack_transfer_code:
        payout.paystack_transfer_code = transfer.transfer_code
    return confirm_payout(db, payout, transfer.reference, transfer.amount, transfer.currency, "paystack")


def handle_transfer_failed(event, db: Session, services) -> HandlerResult:
    """transfer.failed and transfer.reversed"""
    transfer = event.data
    payout = _payout_for_transfer(db, transfer.reference)
    if payout is None:
        return HandlerResult.skipped("unknown_payout")

    reversed_after_success = event.type == "transfer.reversed" and payout.status == STATUS_SUCCEEDED
    if payout.status in FINAL_PAYOUT_STATUSES and not reversed_after_success:
        return HandlerResult.skipped(f"payout_already_{payout.status}")

    with transaction(db):
        _mark_failed(db, payout, transfer.reason or event.type)
    return HandlerResult.processed()


def handle_transfer_requires_otp(event, db: Session, services) -> HandlerResult:
    transfer = event.data
    payout = _payout_for_transfer(db, transfer.reference)
    if payout is None:
        return HandlerResult.skipped("unknown_payout")
    if payout.status != STATUS_PENDING:
        return HandlerResult.skipped(f"payout_already_{payout.status}")

    with transaction(db):
        payout.status = STATUS_OTP_PENDING
        if transfer.transfer_code:
            payout.paystack_transfer_code = transfer.transfer_code
    activity_service.alert_operator("Transfer awaiting OTP", reference=transfer.reference)
    return HandlerResult.processed()


# ============================================================================
# STRIPE CONNECT PAYOUTS
# ============================================================================

def handle_stripe_payout_created(event, db: Session, services) -> HandlerResult:
    payout_obj = event.data_object
    if not event.account:
        return HandlerResult.skipped("platform_payout")
    profile = db.query(Profile).filter(Profile.stripe_account_id == event.account).first()
    if profile is None:
        return HandlerResult.skipped("unknown_account")
    if find_stripe_payout(db, payout_obj.id):
        return HandlerResult.skipped("payout_already_recorded")

    with transaction(db):
        db.add(Payment(
            creator_id=profile.user_id,
            type=TYPE_PAYOUT,
            status=STATUS_PENDING,
            amount_cents=payout_obj.amount,
            gross_cents=payout_obj.amount,
            fee_cents=0,
            net_cents=payout_obj.amount,
            currency=payout_obj.currency.upper(),
            stripe_payout_id=payout_obj.id,
            stripe_event_id=event.id,
        ))
    return HandlerResult.processed()


def handle_stripe_payout_paid(event, db: Session, services) -> HandlerResult:
    payout_obj = event.data_object
    payout = find_stripe_payout(db, payout_obj.id)
    if payout is None:
        if not event.account:
            return HandlerResult.skipped("platform_payout")
        # payout.created not processed yet; Stripe redelivers
        raise RecordNotFoundError(f"No payout row for {payout_obj.id}")
    return confirm_payout(db, payout, payout_obj.id, payout_obj.amount, payout_obj.currency, "stripe")


def handle_stripe_payout_failed(event, db: Session, services) -> HandlerResult:
    payout_obj = event.data_object
    payout = find_stripe_payout(db, payout_obj.id)
    reason = payout_obj.failure_message or payout_obj.failure_code or "payout_failed"

    if payout is not None:
        if payout.status in FINAL_PAYOUT_STATUSES:
            return HandlerResult.skipped(f"payout_already_{payout.status}")
        with transaction(db):
            _mark_failed(db, payout, reason)
        return HandlerResult.processed()

    profile = db.query(Profile).filter(Profile.stripe_account_id == event.account).first() if event.account else None
    if profile is None:
        return HandlerResult.skipped("unknown_account")
    with transaction(db):
        profile.payout_status = PAYOUT_STATUS_RESTRICTED
        activity_service.record_activity(db, profile.user_id, activity_service.PAYOUT_FAILED, {
            "stripe_payout_id": payout_obj.id,
            "amount_cents": payout_obj.amount,
            "reason": reason,
        })
    return HandlerResult.processed()
