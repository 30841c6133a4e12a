"""Pydantic schemas for Stripe webhook events

Each event type maps to the shape of its data.object; the mapping below is the
tagged union used to validate a payload before any handler reads it.
"""
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator

from creatorpay.core.exceptions import EventParseError


def _expandable_id(value: Any) -> Any:
    """Stripe sends either an id string or the expanded object for references"""
    if isinstance(value, dict):
        return value.get("id")
    return value


class StripeModel(BaseModel):
    model_config = ConfigDict(extra="allow")


class CustomerDetails(StripeModel):
    email: Optional[str] = None
    name: Optional[str] = None


class CheckoutSession(StripeModel):
    id: str
    mode: Optional[str] = None  # 'payment' | 'subscription'
    payment_status: Optional[str] = None  # 'paid' | 'unpaid' | 'no_payment_required'
    customer: Optional[str] = None
    customer_email: Optional[str] = None
    customer_details: Optional[CustomerDetails] = None
    subscription: Optional[str] = None
    payment_intent: Optional[str] = None
    amount_total: Optional[int] = None
    currency: Optional[str] = None
    metadata: Dict[str, Any] = {}

    @field_validator("customer", "subscription", "payment_intent", mode="before")
    @classmethod
    def expand_ids(cls, v):
        return _expandable_id(v)

    @property
    def email(self) -> Optional[str]:
        if self.customer_details and self.customer_details.email:
            return self.customer_details.email
        return self.customer_email

    @property
    def is_async_pending(self) -> bool:
        """Bank debits and vouchers complete later via async_payment_succeeded"""
        return self.payment_status == "unpaid"


class Period(StripeModel):
    start: Optional[int] = None
    end: Optional[int] = None


class InvoiceLine(StripeModel):
    period: Optional[Period] = None


class InvoiceLines(StripeModel):
    data: List[InvoiceLine] = []


class StatusTransitions(StripeModel):
    paid_at: Optional[int] = None


class Invoice(StripeModel):
    id: str
    customer: Optional[str] = None
    subscription: Optional[str] = None
    amount_paid: int = 0
    amount_due: Optional[int] = None
    currency: str = "usd"
    application_fee_amount: Optional[int] = None
    charge: Optional[str] = None
    payment_intent: Optional[str] = None
    billing_reason: Optional[str] = None
    status_transitions: Optional[StatusTransitions] = None
    lines: Optional[InvoiceLines] = None
    metadata: Dict[str, Any] = {}

    @model_validator(mode="before")
    @classmethod
    def subscription_from_parent(cls, data: Any) -> Any:
        # Newer API versions move the subscription id under parent.subscription_details
        if isinstance(data, dict) and not data.get("subscription"):
            details = (data.get("parent") or {}).get("subscription_details") or {}
            if details.get("subscription"):
                data = {**data, "subscription": details["subscription"]}
        return data

    @field_validator("customer", "subscription", "charge", "payment_intent", mode="before")
    @classmethod
    def expand_ids(cls, v):
        return _expandable_id(v)

    @property
    def period_end(self) -> Optional[int]:
        if self.lines and self.lines.data and self.lines.data[0].period:
            return self.lines.data[0].period.end
        return None

    @property
    def paid_at(self) -> Optional[int]:
        return self.status_transitions.paid_at if self.status_transitions else None


class SubscriptionItem(StripeModel):
    current_period_end: Optional[int] = None


class SubscriptionItems(StripeModel):
    data: List[SubscriptionItem] = []


class StripeSubscription(StripeModel):
    id: str
    customer: Optional[str] = None
    status: str
    cancel_at_period_end: bool = False
    current_period_end: Optional[int] = None
    canceled_at: Optional[int] = None
    items: Optional[SubscriptionItems] = None
    metadata: Dict[str, Any] = {}

    @field_validator("customer", mode="before")
    @classmethod
    def expand_ids(cls, v):
        return _expandable_id(v)

    @property
    def period_end(self) -> Optional[int]:
        if self.current_period_end:
            return self.current_period_end
        if self.items and self.items.data:
            return self.items.data[0].current_period_end
        return None


class Refund(StripeModel):
    id: str
    amount: int = 0
    reason: Optional[str] = None


class RefundList(StripeModel):
    data: List[Refund] = []


class Charge(StripeModel):
    id: str
    amount: int = 0
    amount_refunded: int = 0
    currency: str = "usd"
    customer: Optional[str] = None
    invoice: Optional[str] = None
    payment_intent: Optional[str] = None
    refunds: Optional[RefundList] = None
    metadata: Dict[str, Any] = {}

    @field_validator("customer", "invoice", "payment_intent", mode="before")
    @classmethod
    def expand_ids(cls, v):
        return _expandable_id(v)

    @property
    def refund_reason(self) -> Optional[str]:
        if self.refunds and self.refunds.data:
            return self.refunds.data[0].reason
        return None


class Dispute(StripeModel):
    id: str
    amount: int
    currency: str
    charge: Optional[str] = None
    payment_intent: Optional[str] = None
    status: str
    reason: Optional[str] = None

    @field_validator("charge", "payment_intent", mode="before")
    @classmethod
    def expand_ids(cls, v):
        return _expandable_id(v)


class Requirements(StripeModel):
    disabled_reason: Optional[str] = None
    currently_due: List[str] = []


class Account(StripeModel):
    id: str
    charges_enabled: bool = False
    payouts_enabled: bool = False
    details_submitted: bool = False
    requirements: Optional[Requirements] = None


class Payout(StripeModel):
    id: str
    amount: int
    currency: str
    status: Optional[str] = None
    arrival_date: Optional[int] = None
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None


class PaymentError(StripeModel):
    code: Optional[str] = None
    message: Optional[str] = None


class PaymentIntent(StripeModel):
    id: str
    amount: int = 0
    currency: str = "usd"
    customer: Optional[str] = None
    last_payment_error: Optional[PaymentError] = None
    metadata: Dict[str, Any] = {}

    @field_validator("customer", mode="before")
    @classmethod
    def expand_ids(cls, v):
        return _expandable_id(v)


STRIPE_OBJECT_SCHEMAS = {
    "checkout.session.completed": CheckoutSession,
    "checkout.session.async_payment_succeeded": CheckoutSession,
    "checkout.session.async_payment_failed": CheckoutSession,
    "checkout.session.expired": CheckoutSession,
    "invoice.created": Invoice,
    "invoice.paid": Invoice,
    "invoice.payment_succeeded": Invoice,
    "invoice.payment_failed": Invoice,
    "customer.subscription.updated": StripeSubscription,
    "customer.subscription.deleted": StripeSubscription,
    "charge.refunded": Charge,
    "charge.dispute.created": Dispute,
    "charge.dispute.closed": Dispute,
    "account.updated": Account,
    "payout.created": Payout,
    "payout.paid": Payout,
    "payout.failed": Payout,
    "payment_intent.payment_failed": PaymentIntent,
}

StripeObject = Union[
    CheckoutSession, Invoice, StripeSubscription, Charge, Dispute, Account, Payout, PaymentIntent, Dict[str, Any]
]


class StripeEvent(BaseModel):
    """Verified Stripe event with its data.object validated for the event type"""
    id: str
    type: str
    created: int
    account: Optional[str] = None  # Connected account for Connect events
    livemode: bool = False
    data_object: Any = None

    @property
    def ledger_id(self) -> str:
        return f"stripe_{self.id}"


class _Envelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    type: str
    created: int
    account: Optional[str] = None
    livemode: bool = False
    data: Dict[str, Any]


def parse_stripe_event(payload: Dict[str, Any]) -> StripeEvent:
    """Validate a Stripe event payload.

    Unknown event types keep their raw data.object dict.

    Raises:
        EventParseError: envelope or data.object does not match the event type
    """
    try:
        envelope = _Envelope.model_validate(payload)
    except ValidationError as e:
        raise EventParseError(f"Invalid Stripe event envelope: {e.error_count()} errors")

    raw_object = envelope.data.get("object")
    if not isinstance(raw_object, dict):
        raise EventParseError(f"Stripe event {envelope.id} has no data.object")

    schema = STRIPE_OBJECT_SCHEMAS.get(envelope.type)
    data_object = raw_object
    if schema is not None:
        try:
            data_object = schema.model_validate(raw_object)
        except ValidationError as e:
            raise EventParseError(
                f"Invalid {envelope.type} payload for event {envelope.id}: {e.error_count()} errors"
            )

    return StripeEvent(
        id=envelope.id,
        type=envelope.type,
        created=envelope.created,
        account=envelope.account,
        livemode=envelope.livemode,
        data_object=data_object,
    )
