"""
Tests for the Paystack gateway adapter.

Tests cover:
- Stored-authorization charges and status verification by reference
- Which transport failures are re-sent
- Charge and refund webhook parsing
"""

import hashlib
import hmac
import pytest
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
from tenacity import wait_none

from membership_billing.core.exceptions import GatewayConnectError, GatewayTransientError, ValidationError
from membership_billing.services.gateways.base import GatewayStatus
from membership_billing.services.gateways.paystack import PaystackGateway


def paystack_response(data, status_code=200):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = {"status": True, "message": "ok", "data": data}
    return response


@pytest.fixture
def paystack():
    return PaystackGateway(secret_key="sk_test_123", webhook_secret="whsec_test")


@pytest.fixture(autouse=True)
def no_retry_wait(monkeypatch):
    for method in (PaystackGateway.initiate, PaystackGateway.query_status, PaystackGateway.refund):
        monkeypatch.setattr(method.retry, "wait", wait_none())


@pytest.fixture
def http_client():
    with patch("membership_billing.services.gateways.paystack.httpx.AsyncClient") as mock_client:
        client = AsyncMock()
        mock_client.return_value.__aenter__.return_value = client
        yield client


CHARGE_DATA = {
    "id": 4099260516,
    "reference": "RNW-0001",
    "status": "success",
    "amount": 150000,
    "currency": "KES",
    "gateway_response": "Approved",
}


class TestStoredAuthorizationCharge:
    """Test auto-renewal charges against a saved card"""

    @pytest.mark.asyncio
    async def test_charge_uses_reference_as_transaction_id(self, paystack, http_client):
        http_client.request.return_value = paystack_response(CHARGE_DATA)

        result = await paystack.initiate(Decimal("1500.00"), "KES", "AUTH_abc", "RNW-0001",
                                         {"email": "member@example.com"})

        assert result.transaction_id == "RNW-0001"
        assert result.status == GatewayStatus.COMPLETED
        args, kwargs = http_client.request.call_args
        assert args == ("POST", "https://api.paystack.co/transaction/charge_authorization")
        assert kwargs["json"]["amount"] == 150000
        assert kwargs["json"]["authorization_code"] == "AUTH_abc"

    @pytest.mark.asyncio
    async def test_status_query_verifies_by_reference(self, paystack, http_client):
        http_client.request.return_value = paystack_response(CHARGE_DATA)

        result = await paystack.query_status("RNW-0001")

        args, _ = http_client.request.call_args
        assert args == ("GET", "https://api.paystack.co/transaction/verify/RNW-0001")
        assert result.transaction_id == "RNW-0001"
        assert result.status == GatewayStatus.COMPLETED
        assert result.amount == Decimal("1500")
        assert result.currency == "KES"


class TestTransportFailures:
    """Test that only requests that never left are sent again"""

    @pytest.mark.asyncio
    async def test_charge_read_timeout_is_not_resent(self, paystack, http_client):
        http_client.request.side_effect = httpx.ReadTimeout("timed out")

        with pytest.raises(GatewayTransientError) as exc_info:
            await paystack.initiate(Decimal("1500.00"), "KES", "AUTH_abc", "RNW-0001")

        assert not isinstance(exc_info.value, GatewayConnectError)
        assert http_client.request.call_count == 1

    @pytest.mark.asyncio
    async def test_charge_connect_error_is_resent(self, paystack, http_client):
        http_client.request.side_effect = [httpx.ConnectError("connection refused"), paystack_response(CHARGE_DATA)]

        result = await paystack.initiate(Decimal("1500.00"), "KES", "AUTH_abc", "RNW-0001")

        assert result.status == GatewayStatus.COMPLETED
        assert http_client.request.call_count == 2

    @pytest.mark.asyncio
    async def test_refund_read_timeout_is_not_resent(self, paystack, http_client):
        http_client.request.side_effect = httpx.ReadTimeout("timed out")

        with pytest.raises(GatewayTransientError):
            await paystack.refund("RNW-0001", Decimal("500.00"))

        assert http_client.request.call_count == 1

    @pytest.mark.asyncio
    async def test_status_query_retries_timeouts(self, paystack, http_client):
        http_client.request.side_effect = [httpx.ReadTimeout("timed out"), paystack_response(CHARGE_DATA)]

        result = await paystack.query_status("RNW-0001")

        assert result.status == GatewayStatus.COMPLETED
        assert http_client.request.call_count == 2


class TestWebhookParsing:
    """Test normalisation of Paystack callbacks"""

    def test_signature_is_hmac_sha512_of_body(self, paystack):
        body = b'{"event": "charge.success"}'
        signature = hmac.new(b"whsec_test", body, hashlib.sha512).hexdigest()

        assert paystack.verify_webhook_signature(body, signature) is True
        assert paystack.verify_webhook_signature(body, "0" * 128) is False

    def test_charge_success(self, paystack):
        notification = paystack.parse_webhook({"event": "charge.success", "data": CHARGE_DATA})

        assert notification.is_refund is False
        assert notification.status == GatewayStatus.COMPLETED
        assert notification.external_id == "4099260516"
        assert notification.order_reference == "RNW-0001"
        assert notification.transaction_id == "RNW-0001"
        assert notification.amount == Decimal("1500")

    @pytest.mark.parametrize("event,status", [
        ("refund.processed", GatewayStatus.COMPLETED),
        ("refund.failed", GatewayStatus.FAILED),
        ("refund.pending", GatewayStatus.PENDING),
    ])
    def test_refund_events(self, paystack, event, status):
        notification = paystack.parse_webhook({"event": event, "data": {
            "id": 77,
            "transaction_reference": "RNW-0001",
            "amount": 50000,
            "currency": "KES",
        }})

        assert notification.is_refund is True
        assert notification.status == status
        assert notification.refund_id == "77"
        assert notification.transaction_id == "RNW-0001"
        assert notification.external_id == f"{event}:77"
        assert notification.amount == Decimal("500")

    def test_non_numeric_amount_rejected(self, paystack):
        with pytest.raises(ValidationError):
            paystack.parse_webhook({"event": "charge.success", "data": {**CHARGE_DATA, "amount": "lots"}})
