"""Subscription model"""
from sqlalchemy import Column, Integer, BigInteger, String, DateTime, Boolean, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from creatorpay.models.base import Base, generate_uuid

STATUS_ACTIVE = "active"
STATUS_PAST_DUE = "past_due"
STATUS_CANCELED = "canceled"
STATUS_PAUSED = "paused"

INTERVAL_MONTH = "month"
INTERVAL_ONE_TIME = "one_time"


class Subscription(Base):
    """Recurring or one-time payment relationship between a creator and a subscriber"""
    __tablename__ = "subscriptions"
    __table_args__ = (
        UniqueConstraint("subscriber_id", "creator_id", "interval", name="uq_subscriptions_subscriber_creator_interval"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    creator_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    subscriber_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    tier_id = Column(String(255), nullable=True)
    tier_name = Column(String(255), nullable=True)
    amount = Column(Integer, nullable=False)  # Creator's set price in minor units - the fee base
    currency = Column(String(3), nullable=False)
    interval = Column(String(20), nullable=False)  # 'month' or 'one_time'
    status = Column(String(20), nullable=False, default=STATUS_ACTIVE)
    purpose = Column(String(50), nullable=True)
    fee_model = Column(String(50), nullable=True)  # None = legacy
    fee_mode = Column(String(30), nullable=True)  # Locked at creation
    ltv_cents = Column(Integer, nullable=False, default=0)
    stripe_subscription_id = Column(String(255), nullable=True, unique=True, index=True)
    stripe_customer_id = Column(String(255), nullable=True, index=True)
    stripe_checkout_session_id = Column(String(255), nullable=True)  # Last checkout that created or renewed this row
    paystack_authorization_code = Column(String(512), nullable=True)  # Encrypted
    paystack_customer_code = Column(String(255), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    status_event_at = Column(BigInteger, nullable=True)  # Provider timestamp (unix seconds) of last applied status change
    async_view_id = Column(String(255), nullable=True)
    async_request_id = Column(String(255), nullable=True)
    last_payment_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    creator = relationship("User", foreign_keys=[creator_id])
    subscriber = relationship("User", foreign_keys=[subscriber_id])
    payments = relationship("Payment", back_populates="subscription")
