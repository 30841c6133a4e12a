"""Event and metadata schema tests"""
import uuid
import pytest

from creatorpay.core.exceptions import EventParseError, MetadataValidationError
from creatorpay.schemas.metadata import (
    parse_checkout_metadata,
    parse_metadata_amount,
    parse_paystack_metadata,
    sanitize_for_log,
)
from creatorpay.schemas.paystack_events import PaystackCharge, parse_iso_timestamp, parse_paystack_event
from creatorpay.schemas.stripe_events import CheckoutSession, Invoice, parse_stripe_event


@pytest.mark.critical
class TestCheckoutMetadata:
    """Stripe metadata values are strings and must be validated before use"""

    def test_valid_metadata(self):
        creator_id = str(uuid.uuid4())
        meta = parse_checkout_metadata({
            "creatorId": creator_id,
            "interval": "month",
            "netAmount": "1000",
            "serviceFee": "100",
            "feeModel": "split_v1",
            "feeMode": "split",
            "feeWasCapped": "false",
            "feeEffectiveRate": "4.5",
            "viewId": "",
        })
        assert meta.creator_id == creator_id
        assert meta.net_amount == 1000
        assert meta.service_fee == 100
        assert meta.fee_was_capped is False
        assert meta.fee_effective_rate == 4.5
        assert meta.view_id is None

    @pytest.mark.parametrize("field,value", [
        ("creatorId", "not-a-uuid"),
        ("netAmount", "10.5"),
        ("netAmount", "-1"),
        ("feeModel", "mystery"),
        ("interval", "year"),
        ("feeWasCapped", "yes"),
        ("feeEffectiveRate", "250"),
    ])
    def test_invalid_values(self, field, value):
        metadata = {"creatorId": str(uuid.uuid4()), field: value}
        with pytest.raises(MetadataValidationError) as exc_info:
            parse_checkout_metadata(metadata)
        assert exc_info.value.fields

    def test_missing_metadata(self):
        with pytest.raises(MetadataValidationError):
            parse_checkout_metadata({})

    def test_amounts_must_be_strings(self):
        with pytest.raises(MetadataValidationError):
            parse_checkout_metadata({"creatorId": str(uuid.uuid4()), "netAmount": 1000})


@pytest.mark.high
class TestPaystackMetadata:
    """Paystack metadata may carry numbers or numeric strings"""

    def test_numbers_and_strings(self):
        meta = parse_paystack_metadata({
            "creatorId": str(uuid.uuid4()),
            "interval": "one_time",
            "creatorAmount": 5000,
            "serviceFee": "500",
            "feeWasCapped": "TRUE",
        })
        assert meta.creator_amount == 5000
        assert meta.service_fee == 500
        assert meta.fee_was_capped is True

    def test_interval_required(self):
        with pytest.raises(MetadataValidationError):
            parse_paystack_metadata({"creatorId": str(uuid.uuid4())})

    def test_unknown_fee_model_rejected(self):
        with pytest.raises(MetadataValidationError):
            parse_paystack_metadata({
                "creatorId": str(uuid.uuid4()),
                "interval": "month",
                "feeModel": "totally_bogus",
            })

    def test_fee_model_optional(self):
        meta = parse_paystack_metadata({"creatorId": str(uuid.uuid4()), "interval": "month", "feeModel": "split_v1"})
        assert meta.fee_model == "split_v1"
        assert parse_paystack_metadata({"creatorId": str(uuid.uuid4()), "interval": "month"}).fee_model is None

    def test_parse_metadata_amount(self):
        assert parse_metadata_amount(" 42 ") == 42
        assert parse_metadata_amount(7.0) == 7
        assert parse_metadata_amount("") is None
        for bad in (True, -3, 1.5, "abc"):
            with pytest.raises(ValueError):
                parse_metadata_amount(bad)

    def test_sanitize_for_log(self):
        assert sanitize_for_log(None) == "<none>"
        assert sanitize_for_log("evil\nline\x00") == "evilline"
        assert sanitize_for_log("x" * 20, max_length=5) == "xxxxx..."


@pytest.mark.critical
class TestStripeEventParsing:
    """Envelope and per-type data.object validation"""

    def _payload(self, event_type, obj, **fields):
        return {"id": "evt_1", "type": event_type, "created": 1700000000, "data": {"object": obj}, **fields}

    def test_checkout_session(self):
        event = parse_stripe_event(self._payload("checkout.session.completed", {
            "id": "cs_1",
            "customer": {"id": "cus_1", "object": "customer"},
            "customer_email": "legacy@example.com",
            "payment_status": "unpaid",
        }, account="acct_9"))

        assert event.ledger_id == "stripe_evt_1"
        assert event.account == "acct_9"
        assert isinstance(event.data_object, CheckoutSession)
        assert event.data_object.customer == "cus_1"
        assert event.data_object.email == "legacy@example.com"
        assert event.data_object.is_async_pending is True

    def test_invoice_subscription_from_parent(self):
        event = parse_stripe_event(self._payload("invoice.paid", {
            "id": "in_1",
            "parent": {"subscription_details": {"subscription": "sub_9"}},
            "status_transitions": {"paid_at": 1700000100},
            "lines": {"data": [{"period": {"start": 1, "end": 2}}]},
        }))
        invoice = event.data_object
        assert isinstance(invoice, Invoice)
        assert invoice.subscription == "sub_9"
        assert invoice.paid_at == 1700000100
        assert invoice.period_end == 2

    def test_unknown_type_keeps_raw_object(self):
        event = parse_stripe_event(self._payload("customer.created", {"id": "cus_1", "anything": True}))
        assert event.data_object == {"id": "cus_1", "anything": True}

    def test_bad_envelope(self):
        with pytest.raises(EventParseError):
            parse_stripe_event({"type": "invoice.paid"})

    def test_missing_data_object(self):
        with pytest.raises(EventParseError):
            parse_stripe_event({"id": "evt_1", "type": "invoice.paid", "created": 1, "data": {}})

    def test_object_shape_mismatch(self):
        with pytest.raises(EventParseError):
            parse_stripe_event(self._payload("charge.dispute.created", {"id": "dp_1"}))


@pytest.mark.critical
class TestPaystackEventParsing:
    """Ledger ids derive from the event name and a stable reference"""

    def test_charge_reference(self):
        event = parse_paystack_event({"event": "charge.success", "data": {
            "reference": "ref_1", "amount": 100, "paid_at": "2026-01-01T00:00:00.000Z",
        }})
        assert event.type == "charge.success"
        assert event.ledger_id == "paystack_charge.success_ref_1"
        assert isinstance(event.data, PaystackCharge)
        assert event.occurred_at == parse_iso_timestamp("2026-01-01T00:00:00Z")

    def test_same_reference_different_events(self):
        data = {"reference": "PAYOUT-ref_1", "amount": 100}
        otp = parse_paystack_event({"event": "transfer.requires_otp", "data": data})
        success = parse_paystack_event({"event": "transfer.success", "data": data})
        assert otp.ledger_id != success.ledger_id

    def test_refund_reference_from_transaction(self):
        event = parse_paystack_event({"event": "refund.processed", "data": {
            "transaction": {"reference": "ref_7"}, "amount": 100,
        }})
        assert event.reference == "ref_7"
        assert event.data.transaction_reference == "ref_7"

    def test_refunds_of_one_transaction_get_distinct_ids(self):
        first = parse_paystack_event({"event": "refund.processed", "data": {
            "id": 77, "transaction_reference": "ref_1", "amount": 100,
        }})
        second = parse_paystack_event({"event": "refund.processed", "data": {
            "id": 78, "transaction_reference": "ref_1", "amount": 100,
        }})
        assert first.ledger_id == "paystack_refund.processed_77"
        assert second.ledger_id == "paystack_refund.processed_78"
        assert first.data.transaction_reference == second.data.transaction_reference == "ref_1"

    def test_dispute_falls_back_to_id(self):
        event = parse_paystack_event({"event": "charge.dispute.create", "data": {
            "id": 555, "transaction": {"reference": "ref_8"}, "amount": 100,
        }})
        assert event.reference == "555"
        assert event.data.reference == "ref_8"

    def test_missing_reference(self):
        with pytest.raises(EventParseError):
            parse_paystack_event({"event": "charge.success", "data": {"amount": 100}})

    def test_missing_data(self):
        with pytest.raises(EventParseError):
            parse_paystack_event({"event": "charge.success"})

    def test_iso_timestamps(self):
        assert parse_iso_timestamp("1970-01-01T00:01:00Z") == 60
        assert parse_iso_timestamp("garbage") is None
        assert parse_iso_timestamp(None) is None
