"""Paystack API client tests"""
import hashlib
import hmac
import json
import pytest
import httpx

from creatorpay.core.exceptions import ProviderAPIError
from creatorpay.services.paystack_client import PaystackClient, get_recipient_type


def _client(handler):
    return PaystackClient("sk_test_client", transport=httpx.MockTransport(handler))


@pytest.mark.high
class TestRecipientType:
    """Recipient type depends on the payout corridor"""

    def test_corridors(self):
        assert get_recipient_type("NGN") == "nuban"
        assert get_recipient_type("ghs") == "nuban"
        assert get_recipient_type("ZAR") == "basa"
        assert get_recipient_type("KES", "MPESA") == "mobile_money"
        assert get_recipient_type("KES", "01", "0712345678") == "mobile_money"
        assert get_recipient_type("KES", "01", "1234567890") == "authorization"


@pytest.mark.critical
class TestSignature:
    """x-paystack-signature is HMAC-SHA512 of the raw body"""

    def test_verify(self):
        client = PaystackClient("sk_live_secret")
        body = b'{"event":"charge.success"}'
        good = hmac.new(b"sk_live_secret", body, hashlib.sha512).hexdigest()

        assert client.verify_signature(body, good) is True
        assert client.verify_signature(body + b" ", good) is False
        assert client.verify_signature(body, None) is False
        client.close()

    def test_separate_webhook_secret(self):
        client = PaystackClient("sk_api", webhook_secret="whsec_paystack")
        body = b"{}"
        assert client.verify_signature(body, hmac.new(b"whsec_paystack", body, hashlib.sha512).hexdigest())
        client.close()


@pytest.mark.high
class TestTransfers:
    """Recipient creation and transfer initiation"""

    def test_create_recipient_and_transfer(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if request.url.path == "/transferrecipient":
                return httpx.Response(200, json={"status": True, "data": {"recipient_code": "RCP_1"}})
            return httpx.Response(200, json={
                "status": True,
                "data": {"transfer_code": "TRF_1", "reference": "PAYOUT-ref_1", "status": "otp"},
            })

        client = _client(handler)
        recipient = client.create_transfer_recipient("Ada Obi", "0123456789", "058", "ngn")
        transfer = client.initiate_transfer(500000, recipient, reason="Creator payout", reference="PAYOUT-ref_1")

        assert recipient == "RCP_1"
        assert transfer.transfer_code == "TRF_1"
        assert transfer.requires_otp is True

        recipient_body = json.loads(requests[0].content)
        assert recipient_body["type"] == "nuban"
        assert recipient_body["currency"] == "NGN"
        assert requests[0].headers["Authorization"] == "Bearer sk_test_client"

        transfer_body = json.loads(requests[1].content)
        assert transfer_body == {
            "source": "balance",
            "amount": 500000,
            "recipient": "RCP_1",
            "reason": "Creator payout",
            "reference": "PAYOUT-ref_1",
        }

    def test_api_error_raises(self):
        client = _client(lambda request: httpx.Response(400, json={"status": False, "message": "Insufficient balance"}))
        with pytest.raises(ProviderAPIError) as exc_info:
            client.initiate_transfer(100, "RCP_1", reason="x", reference="r")
        assert exc_info.value.status_code == 400
        assert "Insufficient balance" in str(exc_info.value)

    def test_network_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        client = _client(handler)
        with pytest.raises(ProviderAPIError):
            client.create_transfer_recipient("Ada", "0123456789", "058", "NGN")
