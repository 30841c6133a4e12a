"""Pydantic schemas for metadata embedded in provider events

The event envelope is authenticated by the provider signature, but metadata values
were written by our own checkout flow and travel through the payer's browser, so
every field is validated before the ledger trusts it.
"""
import re
import uuid
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from creatorpay.core.exceptions import MetadataValidationError

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_NUMERIC_STRING = re.compile(r"^\d+$")

FeeModelTag = Literal["flat", "progressive", "percentage", "split_v1", "direct_v1", "tiered_v2"]
FeeModeTag = Literal["absorb", "pass_to_subscriber", "split"]
IntervalTag = Literal["month", "one_time"]


def sanitize_for_log(value: Any, max_length: int = 100) -> str:
    """Make an untrusted value safe to interpolate into a log line"""
    if value is None:
        return "<none>"
    text = _CONTROL_CHARS.sub("", str(value))
    if len(text) > max_length:
        return text[:max_length] + "..."
    return text


def parse_metadata_amount(value: Any) -> Optional[int]:
    """Parse a non-negative integer amount from provider metadata.

    Stripe stores metadata as strings, Paystack as whatever JSON the checkout sent.

    Raises:
        ValueError: value is present but is not a non-negative whole number
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError("amount must be a whole number")
    if isinstance(value, int):
        if value < 0:
            raise ValueError("amount must be non-negative")
        return value
    if isinstance(value, float):
        if value < 0 or not value.is_integer():
            raise ValueError("amount must be a non-negative whole number")
        return int(value)
    if isinstance(value, str) and _NUMERIC_STRING.match(value.strip()):
        return int(value.strip())
    raise ValueError("amount must be a numeric string")


def _validate_uuid(value: str) -> str:
    try:
        uuid.UUID(str(value))
    except (ValueError, AttributeError, TypeError):
        raise ValueError("must be a valid UUID")
    return str(value)


class _MetadataBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("*", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        if isinstance(v, str) and v.strip() == "":
            return None
        return v


class StripeCheckoutMetadata(_MetadataBase):
    """Metadata written onto Stripe Checkout sessions by the checkout flow"""
    creator_id: str = Field(alias="creatorId")
    tier_id: Optional[str] = Field(None, alias="tierId")
    tier_name: Optional[str] = Field(None, alias="tierName")
    request_id: Optional[str] = Field(None, alias="requestId")
    view_id: Optional[str] = Field(None, alias="viewId")
    interval: Optional[IntervalTag] = None
    purpose: Optional[str] = None
    gross_amount: Optional[int] = Field(None, alias="grossAmount")
    net_amount: Optional[int] = Field(None, alias="netAmount")
    service_fee: Optional[int] = Field(None, alias="serviceFee")
    base_amount: Optional[int] = Field(None, alias="baseAmountCents")
    subscriber_fee: Optional[int] = Field(None, alias="subscriberFeeCents")
    creator_fee: Optional[int] = Field(None, alias="creatorFeeCents")
    fee_model: Optional[FeeModelTag] = Field(None, alias="feeModel")
    fee_mode: Optional[FeeModeTag] = Field(None, alias="feeMode")
    fee_effective_rate: Optional[float] = Field(None, alias="feeEffectiveRate")
    fee_was_capped: Optional[bool] = Field(None, alias="feeWasCapped")
    platform_debit_recovered: Optional[int] = Field(None, alias="platformDebitRecovered")

    @field_validator("creator_id")
    @classmethod
    def creator_id_is_uuid(cls, v: str) -> str:
        return _validate_uuid(v)

    @field_validator(
        "gross_amount", "net_amount", "service_fee", "base_amount",
        "subscriber_fee", "creator_fee", "platform_debit_recovered",
        mode="before",
    )
    @classmethod
    def numeric_string(cls, v):
        if v is None:
            return None
        if not isinstance(v, str):
            raise ValueError("must be a numeric string")
        return parse_metadata_amount(v)

    @field_validator("fee_was_capped", mode="before")
    @classmethod
    def true_false_string(cls, v):
        if v is None or v == "":
            return None
        if isinstance(v, bool):
            return v
        if v in ("true", "false"):
            return v == "true"
        raise ValueError("must be 'true' or 'false'")

    @field_validator("fee_effective_rate", mode="before")
    @classmethod
    def rate_string(cls, v):
        if v is None or v == "":
            return None
        try:
            rate = float(v)
        except (TypeError, ValueError):
            raise ValueError("must be a number")
        if rate < 0 or rate > 100:
            raise ValueError("must be between 0 and 100")
        return rate


class PaystackChargeMetadata(_MetadataBase):
    """Metadata attached to Paystack transactions by the checkout flow"""
    creator_id: str = Field(alias="creatorId")
    interval: IntervalTag
    tier_id: Optional[str] = Field(None, alias="tierId")
    tier_name: Optional[str] = Field(None, alias="tierName")
    request_id: Optional[str] = Field(None, alias="requestId")
    view_id: Optional[str] = Field(None, alias="viewId")
    subscription_id: Optional[str] = Field(None, alias="subscriptionId")
    creator_amount: Optional[int] = Field(None, alias="creatorAmount")
    service_fee: Optional[int] = Field(None, alias="serviceFee")
    base_amount: Optional[int] = Field(None, alias="baseAmount")
    subscriber_fee: Optional[int] = Field(None, alias="subscriberFee")
    creator_fee: Optional[int] = Field(None, alias="creatorFee")
    fee_model: Optional[FeeModelTag] = Field(None, alias="feeModel")
    fee_mode: Optional[FeeModeTag] = Field(None, alias="feeMode")
    fee_effective_rate: Optional[float] = Field(None, alias="feeEffectiveRate", ge=0, le=100)
    fee_was_capped: Optional[bool] = Field(None, alias="feeWasCapped")

    @field_validator("creator_id")
    @classmethod
    def creator_id_is_uuid(cls, v: str) -> str:
        return _validate_uuid(v)

    @field_validator(
        "creator_amount", "service_fee", "base_amount", "subscriber_fee", "creator_fee",
        mode="before",
    )
    @classmethod
    def coerce_amount(cls, v):
        return parse_metadata_amount(v)

    @field_validator("fee_was_capped", mode="before")
    @classmethod
    def coerce_bool(cls, v):
        if isinstance(v, str):
            return v.lower() == "true"
        return v


def _raise_validation_error(kind: str, exc: ValidationError) -> None:
    fields = [".".join(str(p) for p in err["loc"]) for err in exc.errors()]
    details = "; ".join(
        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
    )
    raise MetadataValidationError(f"Invalid {kind} metadata: {sanitize_for_log(details, 300)}", fields)


def parse_checkout_metadata(metadata: Optional[Dict[str, Any]]) -> StripeCheckoutMetadata:
    """Validate Stripe checkout metadata

    Raises:
        MetadataValidationError: metadata is missing or malformed
    """
    if not metadata:
        raise MetadataValidationError("Missing checkout metadata", ["creatorId"])
    try:
        return StripeCheckoutMetadata.model_validate(metadata)
    except ValidationError as e:
        _raise_validation_error("checkout", e)


def parse_paystack_metadata(metadata: Optional[Dict[str, Any]]) -> PaystackChargeMetadata:
    """Validate Paystack transaction metadata

    Raises:
        MetadataValidationError: metadata is missing or malformed
    """
    if not metadata or not isinstance(metadata, dict):
        raise MetadataValidationError("Missing Paystack metadata", ["creatorId", "interval"])
    try:
        return PaystackChargeMetadata.model_validate(metadata)
    except ValidationError as e:
        _raise_validation_error("Paystack", e)
