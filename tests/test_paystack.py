import hashlib
import hmac
import json

import httpx
import pytest

from datarelay.core.config import get_settings
from datarelay.models.outcomes import PaymentState
from datarelay.services.circuit_breaker import CircuitBreaker
from datarelay.services.paystack import PaystackClient, classify_payment_status, verify_paystack_signature
from datarelay.services.remote import ClientRejected, RemoteCaller


def _client(handler):
    caller = RemoteCaller(transport=httpx.MockTransport(handler), sleep=lambda _: None)
    return PaystackClient(caller)


def test_paystack_signature():
    settings = get_settings()
    body = json.dumps({"event": "charge.success", "data": {"reference": "ABC"}}).encode()
    signature = hmac.new(settings.paystack_webhook_secret.encode(), body, hashlib.sha512).hexdigest()
    assert verify_paystack_signature(body, signature)
    assert not verify_paystack_signature(body, "0" * 128)


def test_classify_payment_status():
    assert classify_payment_status("success") == PaymentState.SUCCESS
    assert classify_payment_status("failed") == PaymentState.FAILED
    assert classify_payment_status("reversed") == PaymentState.FAILED
    assert classify_payment_status("abandoned") == PaymentState.PENDING
    assert classify_payment_status(None) == PaymentState.PENDING


def test_initialize_sends_minor_units_and_metadata(intent):
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "status": True,
                "data": {
                    "authorization_url": "https://checkout.paystack.com/abc",
                    "access_code": "abc",
                    "reference": "MTN_DATA_x1_ab12cd34",
                },
            },
        )

    out = _client(handler).initialize(intent, "MTN_DATA_x1_ab12cd34", "https://relay.test/api/verify-payment")
    assert out.authorization_url == "https://checkout.paystack.com/abc"
    assert out.access_code == "abc"
    assert seen["url"] == "https://api.paystack.test/transaction/initialize"
    assert seen["auth"] == "Bearer sk_test_xxx"
    assert seen["body"]["amount"] == 550
    assert seen["body"]["currency"] == "GHS"
    assert seen["body"]["metadata"] == {
        "network": "mtn",
        "phone": "0551234567",
        "volume": 1000,
        "product_code": "mtn-1gb",
    }


def test_initialize_without_authorization_url_is_rejected(intent):
    def handler(request):
        return httpx.Response(200, json={"status": False, "message": "Invalid key"})

    with pytest.raises(ClientRejected) as exc_info:
        _client(handler).initialize(intent, "MTN_DATA_x1_ab12cd34", "https://relay.test/cb")
    assert exc_info.value.message == "Invalid key"


def test_verify_parses_success():
    def handler(request):
        assert request.url.path == "/transaction/verify/MTN_DATA_x1_ab12cd34"
        return httpx.Response(
            200,
            json={
                "status": True,
                "data": {
                    "id": 4099260516,
                    "status": "success",
                    "amount": 550,
                    "currency": "ghs",
                    "gateway_response": "Approved",
                    "metadata": {"phone": "0551234567"},
                },
            },
        )

    out = _client(handler).verify("MTN_DATA_x1_ab12cd34")
    assert out.state == PaymentState.SUCCESS
    assert out.amount_minor == 550
    assert out.currency == "GHS"
    assert out.provider_payment_id == "4099260516"
    assert out.metadata == {"phone": "0551234567"}


def test_verify_transport_failure_is_pending():
    def handler(request):
        return httpx.Response(503, json={"message": "maintenance"})

    out = _client(handler).verify("MTN_DATA_x1_ab12cd34")
    assert out.state == PaymentState.PENDING
    assert "maintenance" in out.message or "unavailable" in out.message


def test_verify_with_open_breaker_reports_circuit_open():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503, json={"message": "maintenance"})

    caller = RemoteCaller(transport=httpx.MockTransport(handler), sleep=lambda _: None)
    client = PaystackClient(caller, CircuitBreaker("paystack", failure_threshold=1))

    first = client.verify("MTN_DATA_x1_ab12cd34")
    second = client.verify("MTN_DATA_x1_ab12cd34")

    assert len(calls) == 1
    assert first.state == PaymentState.PENDING
    assert first.error_code == "gateway_unavailable"
    assert second.state == PaymentState.PENDING
    assert second.error_code == "circuit_open"
    assert second.retry_after > 0


def test_verify_unknown_reference_is_pending():
    def handler(request):
        return httpx.Response(404, json={"status": False, "message": "Transaction reference not found"})

    out = _client(handler).verify("MTN_DATA_x1_ab12cd34")
    assert out.state == PaymentState.PENDING
    assert "not found" in out.message
