"""Process-wide collaborators handed to every webhook handler"""
import logging
from dataclasses import dataclass

from creatorpay.core.config import Settings, settings
from creatorpay.db.redis import get_redis_client
from creatorpay.services.lock_service import DistributedLock
from creatorpay.services.paystack_client import PaystackClient
from creatorpay.services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)


@dataclass
class WebhookServices:
    lock: DistributedLock
    stripe: StripeGateway
    paystack: PaystackClient
    settings: Settings

    @property
    def lock_timeout_ms(self) -> int:
        return self.settings.WEBHOOK_LOCK_TIMEOUT_MS


# Lazy initialization - built on first request, not at import time
_services = None


def build_webhook_services(app_settings: Settings = settings) -> WebhookServices:
    return WebhookServices(
        lock=DistributedLock(get_redis_client()),
        stripe=StripeGateway(app_settings.STRIPE_SECRET_KEY, app_settings.STRIPE_WEBHOOK_SECRET),
        paystack=PaystackClient(
            app_settings.PAYSTACK_SECRET_KEY,
            app_settings.PAYSTACK_WEBHOOK_SECRET,
            base_url=app_settings.PAYSTACK_API_BASE,
            timeout=app_settings.PAYSTACK_TIMEOUT_SECONDS,
        ),
        settings=app_settings,
    )


def get_webhook_services() -> WebhookServices:
    """FastAPI dependency returning the shared WebhookServices"""
    global _services
    if _services is None:
        _services = build_webhook_services()
        logger.info("Webhook services initialized")
    return _services


def close_webhook_services() -> None:
    global _services
    if _services is not None:
        _services.paystack.close()
        _services = None
