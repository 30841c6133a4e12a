"""Payment model"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, Float, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from creatorpay.models.base import Base, generate_uuid

# Payment types
TYPE_ONE_TIME = "one_time"
TYPE_RECURRING = "recurring"
TYPE_REFUND = "refund"
TYPE_PAYOUT = "payout"
TYPE_DISPUTE = "dispute"

# Payment statuses
STATUS_SUCCEEDED = "succeeded"
STATUS_FAILED = "failed"
STATUS_PENDING = "pending"
STATUS_REFUNDED = "refunded"
STATUS_DISPUTED = "disputed"
STATUS_DISPUTE_WON = "dispute_won"
STATUS_DISPUTE_LOST = "dispute_lost"
STATUS_OTP_PENDING = "otp_pending"

FINAL_PAYOUT_STATUSES = (STATUS_SUCCEEDED, STATUS_FAILED, STATUS_DISPUTED)


class Payment(Base):
    """Immutable ledger entry, one row per money movement"""
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    subscription_id = Column(String(36), ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True, index=True)
    creator_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    subscriber_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    type = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False)
    amount_cents = Column(Integer, nullable=False)  # Signed - negative for refunds/disputes
    gross_cents = Column(Integer, nullable=True)
    fee_cents = Column(Integer, nullable=False, default=0)
    net_cents = Column(Integer, nullable=False, default=0)
    subscriber_fee_cents = Column(Integer, nullable=True)
    creator_fee_cents = Column(Integer, nullable=True)
    ltv_adjustment_cents = Column(Integer, nullable=True)  # LTV actually removed by this refund/dispute
    currency = Column(String(3), nullable=False)
    fee_model = Column(String(50), nullable=True)
    fee_effective_rate = Column(Float, nullable=True)
    fee_was_capped = Column(Boolean, nullable=True)
    failure_reason = Column(String(500), nullable=True)

    # Provider correlation ids
    stripe_event_id = Column(String(255), unique=True, nullable=True, index=True)
    stripe_charge_id = Column(String(255), nullable=True, index=True)
    stripe_payment_intent_id = Column(String(255), nullable=True, index=True)
    stripe_dispute_id = Column(String(255), unique=True, nullable=True)
    stripe_payout_id = Column(String(255), unique=True, nullable=True)
    stripe_invoice_id = Column(String(255), unique=True, nullable=True)
    paystack_event_id = Column(String(255), unique=True, nullable=True, index=True)
    paystack_transaction_ref = Column(String(255), nullable=True, index=True)
    paystack_transfer_code = Column(String(255), nullable=True)
    paystack_dispute_id = Column(String(255), unique=True, nullable=True)

    occurred_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    subscription = relationship("Subscription", back_populates="payments")
