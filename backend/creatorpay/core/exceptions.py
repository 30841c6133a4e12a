"""Domain exceptions raised by webhook handlers and provider gateways"""
from typing import Optional


class CreatorPayError(Exception):
    """Base class for all creatorpay errors"""


class MetadataValidationError(CreatorPayError, ValueError):
    """Embedded provider metadata failed structural validation"""

    def __init__(self, message: str, fields: Optional[list] = None):
        super().__init__(message)
        self.fields = fields or []


class PayoutMismatchError(CreatorPayError):
    """Provider-reported payout amount/currency disagrees with the stored record"""

    def __init__(
        self,
        reference: str,
        expected_amount: int,
        received_amount: int,
        expected_currency: str,
        received_currency: str,
    ):
        self.reference = reference
        self.expected_amount = expected_amount
        self.received_amount = received_amount
        self.expected_currency = expected_currency
        self.received_currency = received_currency
        super().__init__(
            f"Payout mismatch for {reference}: expected {expected_amount} {expected_currency}, "
            f"received {received_amount} {received_currency}"
        )


class ProviderAPIError(CreatorPayError):
    """A call to Stripe or Paystack failed"""

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None):
        self.provider = provider
        self.status_code = status_code
        super().__init__(f"{provider} API error ({status_code}): {message}")

    @property
    def is_transient(self) -> bool:
        """Network failures and 5xx responses; the same request may succeed later"""
        return self.status_code is None or self.status_code >= 500


class DecryptionError(CreatorPayError, ValueError):
    """Stored credential could not be decrypted"""


class EventParseError(CreatorPayError, ValueError):
    """A verified webhook body does not have the shape its event type requires"""


class RecordNotFoundError(CreatorPayError, LookupError):
    """An event references a record that does not exist yet (usually out-of-order delivery)"""
