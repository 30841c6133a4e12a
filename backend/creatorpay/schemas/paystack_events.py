"""Pydantic schemas for Paystack webhook events"""
import json
import time
from datetime import datetime
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator

from creatorpay.core.exceptions import EventParseError


def parse_iso_timestamp(value: Optional[str]) -> Optional[int]:
    """Convert Paystack's ISO-8601 timestamps to unix seconds"""
    if not value:
        return None
    try:
        return int(datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp())
    except (TypeError, ValueError):
        return None


class PaystackModel(BaseModel):
    model_config = ConfigDict(extra="allow")


class PaystackCustomer(PaystackModel):
    id: Optional[int] = None
    email: Optional[str] = None
    customer_code: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class PaystackAuthorization(PaystackModel):
    authorization_code: Optional[str] = None
    card_type: Optional[str] = None
    last4: Optional[str] = None
    reusable: Optional[bool] = None


class PaystackCharge(PaystackModel):
    id: Optional[Union[int, str]] = None
    reference: str
    amount: int
    currency: str = "NGN"
    status: Optional[str] = None
    gateway_response: Optional[str] = None
    paid_at: Optional[str] = None
    created_at: Optional[str] = None
    customer: Optional[PaystackCustomer] = None
    authorization: Optional[PaystackAuthorization] = None
    metadata: Dict[str, Any] = {}

    @field_validator("metadata", mode="before")
    @classmethod
    def decode_metadata(cls, v):
        # Paystack echoes metadata as a JSON string when it was sent as one
        if v is None or v == "":
            return {}
        if isinstance(v, str):
            try:
                decoded = json.loads(v)
            except ValueError:
                return {}
            return decoded if isinstance(decoded, dict) else {}
        return v


class PaystackTransfer(PaystackModel):
    id: Optional[Union[int, str]] = None
    reference: str
    amount: int
    currency: str = "NGN"
    status: Optional[str] = None
    transfer_code: Optional[str] = None
    reason: Optional[str] = None
    failures: Optional[Any] = None
    updated_at: Optional[str] = None


class PaystackRefund(PaystackModel):
    id: Optional[Union[int, str]] = None
    transaction_reference: Optional[str] = None
    refund_reference: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    status: Optional[str] = None
    reason: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def reference_from_transaction(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("transaction_reference"):
            transaction = data.get("transaction")
            if isinstance(transaction, dict) and transaction.get("reference"):
                data = {**data, "transaction_reference": transaction["reference"]}
        return data


class PaystackDispute(PaystackModel):
    id: Union[int, str]
    reference: Optional[str] = None
    amount: int
    currency: Optional[str] = None
    status: Optional[str] = None
    resolution: Optional[str] = None  # 'merchant-accepted' / 'declined' / 'won' / 'lost'
    reason: Optional[str] = None
    category: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def reference_from_transaction(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("reference"):
            transaction = data.get("transaction")
            if isinstance(transaction, dict) and transaction.get("reference"):
                data = {**data, "reference": transaction["reference"]}
        return data

    @property
    def merchant_won(self) -> bool:
        # 'declined' means the chargeback was declined in the merchant's favor
        return (self.resolution or self.status) in ("won", "declined", "merchant-won")


PAYSTACK_DATA_SCHEMAS = {
    "charge.success": PaystackCharge,
    "charge.failed": PaystackCharge,
    "transfer.success": PaystackTransfer,
    "transfer.failed": PaystackTransfer,
    "transfer.reversed": PaystackTransfer,
    "transfer.requires_otp": PaystackTransfer,
    "refund.processed": PaystackRefund,
    "refund.pending": PaystackRefund,
    "refund.failed": PaystackRefund,
    "charge.dispute.create": PaystackDispute,
    "charge.dispute.remind": PaystackDispute,
    "charge.dispute.resolve": PaystackDispute,
}


class PaystackEvent(BaseModel):
    """Verified Paystack event with its data validated for the event type"""
    event: str
    reference: str
    data: Any = None
    occurred_at: int

    @property
    def type(self) -> str:
        return self.event

    @property
    def ledger_id(self) -> str:
        # Reference is stable across retries; the event name keeps
        # transfer.requires_otp and transfer.success for one reference apart
        return f"paystack_{self.event}_{self.reference}"


REFERENCE_KEYS = ("reference", "transaction_reference", "id")
# One transaction can be refunded several times; each refund has its own id
REFUND_REFERENCE_KEYS = ("id", "refund_reference", "reference", "transaction_reference")


def _event_reference(event_name: str, data: Dict[str, Any]) -> Optional[str]:
    keys = REFUND_REFERENCE_KEYS if event_name.startswith("refund.") else REFERENCE_KEYS
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return str(value)
    transaction = data.get("transaction")
    if isinstance(transaction, dict) and transaction.get("reference"):
        return str(transaction["reference"])
    return None


def parse_paystack_event(payload: Dict[str, Any]) -> PaystackEvent:
    """Validate a Paystack event payload.

    Raises:
        EventParseError: missing event name/reference or data that does not match the event type
    """
    event_name = payload.get("event") if isinstance(payload, dict) else None
    raw_data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(event_name, str) or not isinstance(raw_data, dict):
        raise EventParseError("Paystack event is missing event or data")

    reference = _event_reference(event_name, raw_data)
    if not reference:
        raise EventParseError(f"Paystack {event_name} event has no reference or id")

    schema = PAYSTACK_DATA_SCHEMAS.get(event_name)
    data = raw_data
    if schema is not None:
        try:
            data = schema.model_validate(raw_data)
        except ValidationError as e:
            raise EventParseError(f"Invalid {event_name} payload for {reference}: {e.error_count()} errors")

    occurred_at = (
        parse_iso_timestamp(raw_data.get("paid_at"))
        or parse_iso_timestamp(raw_data.get("updated_at") or raw_data.get("updatedAt"))
        or parse_iso_timestamp(raw_data.get("created_at") or raw_data.get("createdAt"))
        or int(time.time())
    )
    return PaystackEvent(event=event_name, reference=reference, data=data, occurred_at=occurred_at)
