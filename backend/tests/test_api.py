"""API route tests"""
import asyncio
import json
import pytest
from fastapi import status

from creatorpay.api import webhooks
from creatorpay.models.payment import Payment
from creatorpay.models.webhook_event import WebhookEvent, STATUS_FAILED, STATUS_PROCESSED, STATUS_SKIPPED

STRIPE_URL = "/api/webhooks/stripe"
PAYSTACK_URL = "/api/webhooks/paystack"


def _body(payload) -> bytes:
    return json.dumps(payload).encode()


def _ledger_row(db_session, ledger_id):
    db_session.expire_all()
    return db_session.query(WebhookEvent).filter(WebhookEvent.event_id == ledger_id).first()


@pytest.mark.medium
class TestOperationalEndpoints:
    """Health and metrics"""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"status": "healthy"}

    def test_metrics(self, client):
        response = client.get("/metrics")
        assert response.status_code == status.HTTP_200_OK
        assert "webhook_events_total" in response.text


@pytest.mark.critical
class TestStripeWebhookEndpoint:
    """Signature verification and routing through the ledger"""

    def test_missing_signature_rejected(self, client, stripe_payload):
        response = client.post(STRIPE_URL, content=_body(stripe_payload("account.updated", {"id": "acct_1"})))
        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_invalid_signature_rejected(self, client, stripe_payload, stripe_signature):
        body = _body(stripe_payload("account.updated", {"id": "acct_1"}))
        response = client.post(
            STRIPE_URL, content=body,
            headers={"stripe-signature": stripe_signature(body, secret="whsec_wrong")},
        )
        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_tampered_body_rejected(self, client, stripe_payload, stripe_signature):
        body = _body(stripe_payload("account.updated", {"id": "acct_1"}))
        signature = stripe_signature(body)
        tampered = body.replace(b"acct_1", b"acct_2")
        response = client.post(STRIPE_URL, content=tampered, headers={"stripe-signature": signature})
        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_valid_event_processed_once(self, client, db_session, creator, stripe_payload, stripe_signature):
        payload = stripe_payload("account.updated", {
            "id": "acct_creator123",
            "charges_enabled": False,
            "payouts_enabled": False,
            "requirements": {"disabled_reason": "rejected.fraud"},
        }, event_id="evt_account1")
        body = _body(payload)

        first = client.post(STRIPE_URL, content=body, headers={"stripe-signature": stripe_signature(body)})
        assert first.status_code == status.HTTP_200_OK
        assert first.json() == {"received": True, "status": "processed"}

        row = _ledger_row(db_session, "stripe_evt_account1")
        assert row.status == STATUS_PROCESSED
        assert row.provider == "stripe"
        assert row.payload["object"] == {"id": "acct_creator123"}

        second = client.post(STRIPE_URL, content=body, headers={"stripe-signature": stripe_signature(body)})
        assert second.status_code == status.HTTP_200_OK
        assert second.json()["status"] == "already_processed"
        assert _ledger_row(db_session, "stripe_evt_account1").retry_count == 1

    def test_one_time_checkout(self, client, db_session, creator, stripe_payload, stripe_signature):
        session = {
            "id": "cs_api_1",
            "mode": "payment",
            "payment_status": "paid",
            "customer_details": {"email": "buyer@example.com"},
            "payment_intent": {"id": "pi_api_1", "object": "payment_intent"},
            "amount_total": 1100,
            "currency": "usd",
            "metadata": {
                "creatorId": creator.id,
                "interval": "one_time",
                "feeModel": "flat",
                "feeMode": "pass_to_subscriber",
                "netAmount": "1000",
                "serviceFee": "100",
            },
        }
        body = _body(stripe_payload("checkout.session.completed", session))
        response = client.post(STRIPE_URL, content=body, headers={"stripe-signature": stripe_signature(body)})

        assert response.status_code == status.HTTP_200_OK
        payment = db_session.query(Payment).one()
        assert payment.net_cents == 1000
        assert payment.stripe_payment_intent_id == "pi_api_1"

    def test_unhandled_event_ignored(self, client, db_session, stripe_payload, stripe_signature):
        body = _body(stripe_payload("customer.created", {"id": "cus_1"}, event_id="evt_cust"))
        response = client.post(STRIPE_URL, content=body, headers={"stripe-signature": stripe_signature(body)})

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == "ignored"
        assert _ledger_row(db_session, "stripe_evt_cust").status == STATUS_SKIPPED

    def test_dispatch_runs_off_the_event_loop(self, client, monkeypatch, stripe_payload, stripe_signature):
        seen = []
        original = webhooks.stripe_router.dispatch

        def dispatch(*args):
            try:
                asyncio.get_running_loop()
                seen.append("event_loop")
            except RuntimeError:
                seen.append("worker_thread")
            return original(*args)

        monkeypatch.setattr(webhooks.stripe_router, "dispatch", dispatch)
        body = _body(stripe_payload("customer.created", {"id": "cus_2"}, event_id="evt_thread"))
        response = client.post(STRIPE_URL, content=body, headers={"stripe-signature": stripe_signature(body)})

        assert response.status_code == status.HTTP_200_OK
        assert seen == ["worker_thread"]

    def test_malformed_data_rejected(self, client, stripe_payload, stripe_signature):
        body = _body(stripe_payload("invoice.paid", {"amount_paid": "lots"}))
        response = client.post(STRIPE_URL, content=body, headers={"stripe-signature": stripe_signature(body)})
        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_critical_failure_requests_retry(self, client, db_session, stripe_payload, stripe_signature):
        invoice = {"id": "in_orphan", "subscription": "sub_missing", "amount_paid": 1100, "currency": "usd"}
        body = _body(stripe_payload("invoice.paid", invoice, event_id="evt_orphan"))

        response = client.post(STRIPE_URL, content=body, headers={"stripe-signature": stripe_signature(body)})

        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        assert response.json() == {"error": "Webhook processing failed", "retry": True}
        row = _ledger_row(db_session, "stripe_evt_orphan")
        assert row.status == STATUS_FAILED
        assert row.error.startswith("RecordNotFoundError")

    def test_skipped_event_acknowledged(self, client, db_session, stripe_payload, stripe_signature):
        body = _body(stripe_payload("checkout.session.async_payment_failed", {
            "id": "cs_x", "metadata": {"creatorId": "not-a-user"},
        }, event_id="evt_skip"))
        response = client.post(STRIPE_URL, content=body, headers={"stripe-signature": stripe_signature(body)})

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == "skipped"
        assert _ledger_row(db_session, "stripe_evt_skip").error == "no_creator"


@pytest.mark.critical
class TestPaystackWebhookEndpoint:
    """HMAC-SHA512 verification and routing"""

    def _charge_payload(self, creator, reference="ref_api_1"):
        return {
            "event": "charge.success",
            "data": {
                "reference": reference,
                "amount": 550000,
                "currency": "NGN",
                "paid_at": "2026-03-01T10:00:00Z",
                "customer": {"email": "fan@example.com", "customer_code": "CUS_api"},
                "authorization": {"authorization_code": "AUTH_api"},
                "metadata": {
                    "creatorId": creator.id,
                    "interval": "one_time",
                    "feeModel": "flat",
                    "creatorAmount": 500000,
                    "serviceFee": 50000,
                },
            },
        }

    def test_missing_signature_rejected(self, client):
        response = client.post(PAYSTACK_URL, content=b'{"event": "charge.success", "data": {}}')
        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_invalid_signature_rejected(self, client, paystack_signature):
        body = b'{"event": "charge.success", "data": {"reference": "r"}}'
        response = client.post(
            PAYSTACK_URL, content=body,
            headers={"x-paystack-signature": paystack_signature(body, secret="sk_wrong")},
        )
        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_signed_invalid_json_rejected(self, client, paystack_signature):
        body = b"not json"
        response = client.post(PAYSTACK_URL, content=body, headers={"x-paystack-signature": paystack_signature(body)})
        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_charge_success_recorded_once(self, client, db_session, make_creator, paystack_signature):
        # No bank details, so no transfer is attempted
        creator = make_creator(email="ng@example.com", currency="NGN")
        body = _body(self._charge_payload(creator))
        headers = {"x-paystack-signature": paystack_signature(body)}

        first = client.post(PAYSTACK_URL, content=body, headers=headers)
        second = client.post(PAYSTACK_URL, content=body, headers=headers)

        assert first.status_code == status.HTTP_200_OK
        assert first.json()["status"] == "processed"
        assert second.json()["status"] == "already_processed"
        assert db_session.query(Payment).count() == 1
        assert _ledger_row(db_session, "paystack_charge.success_ref_api_1").status == STATUS_PROCESSED

    def test_unhandled_event_ignored(self, client, paystack_signature):
        body = _body({"event": "subscription.create", "data": {"id": 42, "subscription_code": "SUB_x"}})
        response = client.post(PAYSTACK_URL, content=body, headers={"x-paystack-signature": paystack_signature(body)})
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == "ignored"

    def test_event_without_reference_rejected(self, client, paystack_signature):
        body = _body({"event": "charge.success", "data": {"amount": 100}})
        response = client.post(PAYSTACK_URL, content=body, headers={"x-paystack-signature": paystack_signature(body)})
        assert response.status_code == status.HTTP_400_BAD_REQUEST
