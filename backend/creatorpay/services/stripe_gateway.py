"""Stripe gateway - the Stripe API calls the webhook core depends on"""
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import stripe

from creatorpay.core.exceptions import ProviderAPIError

logger = logging.getLogger(__name__)


@dataclass
class RecoveryCharge:
    """Outcome of an off-session platform debit charge"""
    succeeded: bool
    payment_intent_id: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None


def _get_stripe_value(obj: Any, key: str, default=None):
    """Safely extract value from Stripe object (supports both dict and attribute access)."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    value = getattr(obj, key, None)
    return default if value is None else value


class StripeGateway:
    """Thin wrapper over the stripe SDK, created once per process"""

    def __init__(self, api_key: str, webhook_secret: str):
        self.api_key = api_key
        self.webhook_secret = webhook_secret

    def construct_event(self, payload: bytes, sig_header: str) -> Dict[str, Any]:
        """Verify the webhook signature and return the decoded payload

        Raises:
            ValueError: webhook secret missing or payload is not valid JSON
            stripe.error.SignatureVerificationError: signature does not match
        """
        if not self.webhook_secret:
            logger.error("Webhook secret not configured")
            raise ValueError("Webhook secret not configured")

        stripe.Webhook.construct_event(payload, sig_header, self.webhook_secret)
        try:
            return json.loads(payload)
        except ValueError as e:
            raise ValueError(f"Invalid payload: {e}")

    def get_invoice_subscription_id(self, invoice_id: str) -> Optional[str]:
        """Resolve the subscription an invoice belongs to"""
        try:
            invoice = stripe.Invoice.retrieve(invoice_id, api_key=self.api_key)
        except stripe.error.StripeError as e:
            logger.error(f"Failed to retrieve invoice {invoice_id}: {e}")
            return None
        subscription = _get_stripe_value(invoice, "subscription")
        if subscription is None:
            parent = _get_stripe_value(invoice, "parent")
            details = _get_stripe_value(parent, "subscription_details")
            subscription = _get_stripe_value(details, "subscription")
        if subscription is not None and not isinstance(subscription, str):
            subscription = _get_stripe_value(subscription, "id")
        return subscription

    def get_charge_customer_id(self, charge_id: str) -> Optional[str]:
        """Resolve the customer a charge was made against"""
        try:
            charge = stripe.Charge.retrieve(charge_id, api_key=self.api_key)
        except stripe.error.StripeError as e:
            logger.error(f"Failed to retrieve charge {charge_id}: {e}")
            return None
        customer = _get_stripe_value(charge, "customer")
        if customer is not None and not isinstance(customer, str):
            customer = _get_stripe_value(customer, "id")
        return customer

    def charge_platform_debit(
        self,
        customer_id: str,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        metadata: Dict[str, str],
    ) -> RecoveryCharge:
        """Charge a creator's saved payment method for debt owed to the platform.

        Card declines are returned as a failed RecoveryCharge; the caller records them.
        """
        try:
            customer = stripe.Customer.retrieve(customer_id, api_key=self.api_key)
            invoice_settings = _get_stripe_value(customer, "invoice_settings")
            payment_method = _get_stripe_value(invoice_settings, "default_payment_method")
            if payment_method is not None and not isinstance(payment_method, str):
                payment_method = _get_stripe_value(payment_method, "id")
            if not payment_method:
                return RecoveryCharge(succeeded=False, error="No default payment method")

            intent = stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=currency.lower(),
                customer=customer_id,
                payment_method=payment_method,
                off_session=True,
                confirm=True,
                description="Platform balance recovery",
                metadata=metadata,
                idempotency_key=idempotency_key,
                api_key=self.api_key,
            )
        except stripe.error.CardError as e:
            return RecoveryCharge(succeeded=False, error=str(e.user_message or e))
        except stripe.error.StripeError as e:
            raise ProviderAPIError("stripe", str(e), getattr(e, "http_status", None))

        status = _get_stripe_value(intent, "status")
        return RecoveryCharge(
            succeeded=status == "succeeded",
            payment_intent_id=_get_stripe_value(intent, "id"),
            status=status,
            error=None if status == "succeeded" else f"PaymentIntent status {status}",
        )
