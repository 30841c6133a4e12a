"""Payment ledger helpers shared by both providers"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from creatorpay.core.exceptions import MetadataValidationError
from creatorpay.core.metrics import debit_recovery_counter
from creatorpay.models.payment import (
    Payment,
    TYPE_ONE_TIME,
    TYPE_RECURRING,
    TYPE_REFUND,
)
from creatorpay.models.profile import Profile
from creatorpay.services import activity_service
from creatorpay.services.fee_service import (
    FEE_MODE_ABSORB,
    FEE_MODE_PASS_TO_SUBSCRIBER,
    FEE_MODE_SPLIT,
    FEE_MODEL_SPLIT_V1,
    PURPOSE_SERVICE,
    Reversal,
    calculate_fee,
    calculate_legacy_fee,
    calculate_reversal,
    normalize_fee_model,
    normalize_purpose,
)

logger = logging.getLogger(__name__)

CHARGE_TYPES = (TYPE_ONE_TIME, TYPE_RECURRING)


def find_stripe_charge_payment(
    db: Session,
    charge_id: Optional[str],
    payment_intent_id: Optional[str] = None,
) -> Optional[Payment]:
    """Original successful charge row for a Stripe charge or payment intent"""
    if charge_id:
        payment = db.query(Payment).filter(
            Payment.stripe_charge_id == charge_id,
            Payment.type.in_(CHARGE_TYPES),
        ).first()
        if payment:
            return payment
    if payment_intent_id:
        return db.query(Payment).filter(
            Payment.stripe_payment_intent_id == payment_intent_id,
            Payment.type.in_(CHARGE_TYPES),
        ).first()
    return None


def find_paystack_charge_payment(db: Session, reference: Optional[str]) -> Optional[Payment]:
    if not reference:
        return None
    return db.query(Payment).filter(
        Payment.paystack_transaction_ref == reference,
        Payment.type.in_(CHARGE_TYPES),
    ).first()


def refunded_so_far(db: Session, charge_id: str) -> int:
    """Total already refunded against a Stripe charge, as a positive amount"""
    total = db.query(func.coalesce(func.sum(Payment.amount_cents), 0)).filter(
        Payment.stripe_charge_id == charge_id,
        Payment.type == TYPE_REFUND,
    ).scalar()
    return -int(total or 0)


def reversal_for(
    amount_cents: int,
    original: Optional[Payment],
    currency: str,
    purpose: Optional[str] = None,
    fee_model: Optional[str] = None,
) -> Reversal:
    """Fee/net split for a refund or dispute.

    Uses the original payment's stored ratios when there is one. Without it the
    amount is split at the fee model's current rate as if the creator absorbed the fee.
    """
    if original is not None:
        reversal = calculate_reversal(
            amount_cents,
            original.gross_cents or original.amount_cents,
            original.fee_cents,
            original.net_cents,
            original.subscriber_fee_cents,
            original.creator_fee_cents,
        )
        if reversal is not None:
            return reversal

    logger.warning(f"No original payment ratios for {amount_cents} {currency} reversal, using current rates")
    estimate = calculate_fee(amount_cents, currency, purpose, FEE_MODE_ABSORB, fee_model)
    fee_cents = min(estimate.fee_cents, amount_cents)
    return Reversal(amount_cents=amount_cents, fee_cents=fee_cents, net_cents=amount_cents - fee_cents)


def is_duplicate_insert(db: Session, error: IntegrityError, **unique_filters) -> bool:
    """After a failed insert, check whether the row it collided with is the one we were writing"""
    db.rollback()
    query = db.query(Payment)
    for column, value in unique_filters.items():
        query = query.filter(getattr(Payment, column) == value)
    if query.first() is not None:
        logger.info(f"Concurrent delivery already recorded payment {unique_filters}")
        return True
    logger.error(f"Integrity error not explained by a duplicate payment {unique_filters}: {error}")
    return False


def owes_platform_debit(profile: Optional[Profile]) -> bool:
    return bool(
        profile
        and normalize_purpose(profile.purpose) == PURPOSE_SERVICE
        and (profile.platform_debit_cents or 0) > 0
    )


def apply_debit_recovery(db: Session, profile: Profile, amount_cents: int, provider: str, reference: str) -> int:
    """Reduce the owed platform debit by a recovered amount (caller commits).

    Returns:
        The amount actually applied
    """
    owed = profile.platform_debit_cents or 0
    applied = min(max(amount_cents, 0), owed)
    if applied <= 0:
        return 0
    profile.platform_debit_cents = owed - applied
    activity_service.record_activity(db, profile.user_id, activity_service.PLATFORM_DEBIT_RECOVERED, {
        "amount_cents": applied,
        "remaining_cents": profile.platform_debit_cents,
        "provider": provider,
        "reference": reference,
    })
    debit_recovery_counter.labels(provider=provider, outcome="recovered").inc()
    logger.info(f"Recovered {applied} platform debit from creator {profile.user_id} via {provider}")
    return applied


# ============================================================================
# CHARGE BREAKDOWN FROM CHECKOUT METADATA
# ============================================================================

@dataclass
class ChargeBreakdown:
    gross_cents: int
    fee_cents: int
    net_cents: int
    base_cents: int
    fee_model: Optional[str]
    fee_mode: str
    subscriber_fee_cents: Optional[int] = None
    creator_fee_cents: Optional[int] = None
    effective_rate: Optional[float] = None
    fee_was_capped: Optional[bool] = None


def breakdown_from_metadata(
    gross_cents: int,
    purpose: Optional[str],
    fee_model: Optional[str] = None,
    fee_mode: Optional[str] = None,
    net_cents: Optional[int] = None,
    service_fee_cents: Optional[int] = None,
    base_cents: Optional[int] = None,
    subscriber_fee_cents: Optional[int] = None,
    creator_fee_cents: Optional[int] = None,
    effective_rate: Optional[float] = None,
    fee_was_capped: Optional[bool] = None,
) -> ChargeBreakdown:
    """Split a charged amount into fee and net.

    A tagged fee model with a net amount means checkout already computed the split,
    so it is taken as recorded. Anything else is a legacy checkout and gets the
    legacy fee on the charged amount.

    Raises:
        MetadataValidationError: recorded amounts cannot belong to this charge
    """
    model = normalize_fee_model(fee_model)
    if model is not None and net_cents:
        if net_cents > gross_cents:
            raise MetadataValidationError(
                f"Net amount {net_cents} exceeds charged amount {gross_cents}", ["netAmount"]
            )
        fee = service_fee_cents if service_fee_cents is not None else gross_cents - net_cents
        if model == FEE_MODEL_SPLIT_V1:
            if base_cents is None:
                base_cents = gross_cents - subscriber_fee_cents if subscriber_fee_cents is not None else net_cents
            return ChargeBreakdown(
                gross_cents=gross_cents,
                fee_cents=fee,
                net_cents=net_cents,
                base_cents=base_cents,
                fee_model=model,
                fee_mode=FEE_MODE_SPLIT,
                subscriber_fee_cents=subscriber_fee_cents,
                creator_fee_cents=creator_fee_cents,
                effective_rate=effective_rate,
                fee_was_capped=fee_was_capped,
            )

        mode = fee_mode or FEE_MODE_PASS_TO_SUBSCRIBER
        absorbed = mode == FEE_MODE_ABSORB
        return ChargeBreakdown(
            gross_cents=gross_cents,
            fee_cents=fee,
            net_cents=net_cents,
            base_cents=gross_cents if absorbed else net_cents,
            fee_model=model,
            fee_mode=mode,
            subscriber_fee_cents=0 if absorbed else fee,
            creator_fee_cents=fee if absorbed else 0,
            effective_rate=effective_rate,
            fee_was_capped=fee_was_capped,
        )

    legacy = calculate_legacy_fee(gross_cents, purpose)
    return ChargeBreakdown(
        gross_cents=gross_cents,
        fee_cents=legacy.fee_cents,
        net_cents=legacy.net_cents,
        base_cents=gross_cents,
        fee_model=None,
        fee_mode=FEE_MODE_ABSORB,
        subscriber_fee_cents=0,
        creator_fee_cents=legacy.fee_cents,
    )
