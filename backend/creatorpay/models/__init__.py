"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from creatorpay.models.base import Base
from creatorpay.models.user import User
from creatorpay.models.profile import Profile
from creatorpay.models.subscription import Subscription
from creatorpay.models.payment import Payment
from creatorpay.models.webhook_event import WebhookEvent
from creatorpay.models.activity import Activity

# Export all for convenience
__all__ = [
    "Base", "User", "Profile", "Subscription", "Payment", "WebhookEvent", "Activity"
]
