"""WebhookEvent model"""
from sqlalchemy import Column, Integer, String, Text, JSON, DateTime
from datetime import datetime, timezone
from creatorpay.models.base import Base, generate_uuid

STATUS_RECEIVED = "received"
STATUS_PROCESSING = "processing"
STATUS_PROCESSED = "processed"
STATUS_SKIPPED = "skipped"
STATUS_FAILED = "failed"


class WebhookEvent(Base):
    """Provider webhook event log for idempotency and audit"""
    __tablename__ = "webhook_events"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    event_id = Column(String(255), unique=True, nullable=False, index=True)  # Provider-prefixed
    provider = Column(String(20), nullable=False)
    event_type = Column(String(100), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=STATUS_RECEIVED)
    retry_count = Column(Integer, nullable=False, default=0)
    error = Column(Text, nullable=True)
    processing_time_ms = Column(Integer, nullable=True)
    payload = Column(JSON, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)
