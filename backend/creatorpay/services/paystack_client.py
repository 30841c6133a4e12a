"""Paystack API client for transfers and webhook verification"""
import hashlib
import hmac
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from creatorpay.core.exceptions import ProviderAPIError

logger = logging.getLogger(__name__)

_KENYAN_MOBILE = re.compile(r"^0?7\d{8}$")


@dataclass
class TransferResult:
    transfer_code: str
    reference: str
    status: str  # 'pending' | 'success' | 'otp' | 'failed'

    @property
    def requires_otp(self) -> bool:
        return self.status == "otp"


def get_recipient_type(currency: str, bank_code: Optional[str] = None, account_number: Optional[str] = None) -> str:
    """Paystack recipient type for a payout corridor"""
    currency = currency.upper()
    if currency == "KES":
        code = (bank_code or "").lower()
        if "mpesa" in code or "safaricom" in code or (account_number and _KENYAN_MOBILE.match(account_number)):
            return "mobile_money"
        return "authorization"
    if currency == "ZAR":
        return "basa"
    return "nuban"


class PaystackClient:
    """Synchronous Paystack client, created once per process"""

    def __init__(
        self,
        secret_key: str,
        webhook_secret: Optional[str] = None,
        base_url: str = "https://api.paystack.co",
        timeout: float = 15.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret or secret_key
        self._client = httpx.Client(
            base_url=base_url,
            timeout=timeout,
            headers={
                "Authorization": f"Bearer {secret_key}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        """Check x-paystack-signature (HMAC-SHA512 of the raw body)"""
        if not signature or not self.webhook_secret:
            return False
        expected = hmac.new(self.webhook_secret.encode(), payload, hashlib.sha512).hexdigest()
        return hmac.compare_digest(expected, signature)

    def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = self._client.post(path, json=body)
        except httpx.HTTPError as e:
            raise ProviderAPIError("paystack", f"{path} request failed: {e}")

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.status_code >= 400 or not payload.get("status"):
            message = payload.get("message") or response.text[:200]
            raise ProviderAPIError("paystack", f"{path}: {message}", response.status_code)
        return payload.get("data") or {}

    def create_transfer_recipient(self, name: str, account_number: str, bank_code: str, currency: str) -> str:
        """Register a bank account as a transfer recipient

        Returns:
            The recipient code
        """
        data = self._post("/transferrecipient", {
            "type": get_recipient_type(currency, bank_code, account_number),
            "name": name,
            "account_number": account_number,
            "bank_code": bank_code,
            "currency": currency.upper(),
        })
        return data["recipient_code"]

    def initiate_transfer(self, amount_cents: int, recipient_code: str, reason: str, reference: str) -> TransferResult:
        data = self._post("/transfer", {
            "source": "balance",
            "amount": amount_cents,
            "recipient": recipient_code,
            "reason": reason,
            "reference": reference,
        })
        return TransferResult(
            transfer_code=data.get("transfer_code", ""),
            reference=data.get("reference", reference),
            status=data.get("status", "pending"),
        )
