"""Profile model"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from creatorpay.models.base import Base, generate_uuid

PAYOUT_STATUS_PENDING = "pending"
PAYOUT_STATUS_ACTIVE = "active"
PAYOUT_STATUS_RESTRICTED = "restricted"


class Profile(Base):
    """Creator profile: payout state, owed platform debit, and transfer credentials"""
    __tablename__ = "profiles"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True, index=True)
    display_name = Column(String(255), nullable=True)
    purpose = Column(String(50), nullable=True)  # 'service' or 'personal' - selects the fee rate
    currency = Column(String(3), nullable=False, default="USD")
    country_code = Column(String(2), nullable=True)
    payout_status = Column(String(20), nullable=False, default=PAYOUT_STATUS_PENDING)
    platform_debit_cents = Column(Integer, nullable=False, default=0)
    stripe_account_id = Column(String(255), nullable=True, unique=True, index=True)  # Connect account
    platform_customer_id = Column(String(255), nullable=True)  # Stripe customer used for debit recovery
    paystack_bank_code = Column(String(50), nullable=True)
    paystack_account_number = Column(String(512), nullable=True)  # Encrypted
    paystack_account_name = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    user = relationship("User", back_populates="profile")
