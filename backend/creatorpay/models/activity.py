"""Activity model"""
from sqlalchemy import Column, String, JSON, DateTime, ForeignKey
from datetime import datetime, timezone
from creatorpay.models.base import Base, generate_uuid


class Activity(Base):
    """Audit trail entry consumed by the creator activity feed and notification dispatch"""
    __tablename__ = "activities"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(String(100), nullable=False, index=True)
    payload = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
