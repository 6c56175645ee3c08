"""
Paystack payment gateway adapter.

Covers:
- Charging a stored authorization (auto-renewal) or initializing a checkout
- Transaction verification (status queries)
- Refunds
- Webhook signature validation (HMAC SHA512)

Documentation: https://paystack.com/docs/api/
"""
import hmac
import hashlib
import logging
import os
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ...core.exceptions import GatewayConnectError, GatewayRejection, GatewayTransientError
from .base import (
    GatewayStatus,
    InitiationResult,
    PaymentGateway,
    PaymentStatusResult,
    RefundResult,
    WebhookNotification,
    parse_webhook_amount,
    validate_charge,
)

logger = logging.getLogger(__name__)

_STATUS_MAP = {
    "success": GatewayStatus.COMPLETED,
    "processed": GatewayStatus.COMPLETED,
    "failed": GatewayStatus.FAILED,
    "reversed": GatewayStatus.FAILED,
    "abandoned": GatewayStatus.FAILED,
}

_EVENT_STATUS = {
    "charge.success": GatewayStatus.COMPLETED,
    "charge.failed": GatewayStatus.FAILED,
    "refund.processed": GatewayStatus.COMPLETED,
    "refund.failed": GatewayStatus.FAILED,
    "refund.pending": GatewayStatus.PENDING,
    "refund.processing": GatewayStatus.PENDING,
}

_transient_retry = retry(
    retry=retry_if_exception_type(GatewayTransientError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    reraise=True
)

# Charges and refunds are only re-sent when the request never left this host
_connect_retry = retry(
    retry=retry_if_exception_type(GatewayConnectError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    reraise=True
)


def _to_subunit(amount: Decimal) -> int:
    """Paystack amounts are in the smallest currency unit (kobo/cents)"""
    return int(amount * 100)


def _from_subunit(amount: Optional[int]) -> Optional[Decimal]:
    return None if amount is None else Decimal(str(amount)) / 100


class PaystackGateway(PaymentGateway):
    """
    Client for the Paystack API normalised to the gateway contract.
    """

    name = "paystack"

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None,
                 base_url: str = "https://api.paystack.co", timeout: float = 30.0):
        self.secret_key = secret_key or os.environ.get("PAYSTACK_SECRET_KEY")
        self.webhook_secret = webhook_secret or os.environ.get("PAYSTACK_WEBHOOK_SECRET") or self.secret_key
        self.callback_url = os.environ.get("PAYMENT_CALLBACK_URL", "http://localhost:8000/api/v1/payments/callback")
        self.base_url = base_url
        self.timeout = timeout

        if not self.secret_key:
            logger.warning("PAYSTACK_SECRET_KEY not set - payment processing will fail")

    def _get_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Send one request. Connection failures, timeouts and 5xx are transient,
        other failures are rejections.
        """
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(method, f"{self.base_url}{path}", json=json, headers=self._get_headers())
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            logger.error(f"Could not connect to Paystack for {path}: {e}")
            raise GatewayConnectError(f"Failed to connect to Paystack: {e}")
        except httpx.HTTPError as e:
            logger.error(f"HTTP error calling Paystack {path}: {e}")
            raise GatewayTransientError(f"Failed to connect to Paystack: {e}")

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code >= 500 or response.status_code == 429:
            raise GatewayTransientError(
                data.get("message", f"HTTP {response.status_code}"),
                status_code=response.status_code,
                response_data=data,
            )
        if response.status_code not in (200, 201) or not data.get("status"):
            logger.error(f"Paystack {path} failed: {data.get('message')}", extra={"response": data})
            raise GatewayRejection(
                data.get("message", "Request rejected by Paystack"),
                status_code=response.status_code,
                response_data=data,
            )
        return data["data"]

    @_connect_retry
    async def initiate(self, amount, currency, method, reference, metadata=None) -> InitiationResult:
        """
        Charge a stored authorization when ``method`` is given, otherwise
        initialize a hosted checkout the customer is redirected to.
        """
        amount = validate_charge(amount, currency)
        metadata = metadata or {}
        payload = {
            "email": metadata.get("email"),
            "amount": _to_subunit(amount),
            "reference": reference,
            "currency": currency,
            "metadata": metadata,
        }

        logger.info("Initiating Paystack payment", extra={"reference": reference, "amount": str(amount)})

        if method:
            payload["authorization_code"] = method
            data = await self._request("POST", "/transaction/charge_authorization", json=payload)
            status = _STATUS_MAP.get(data.get("status"), GatewayStatus.PENDING)
            if status == GatewayStatus.FAILED:
                raise GatewayRejection(data.get("gateway_response", "Charge declined"), response_data=data)
            return InitiationResult(
                transaction_id=data.get("reference") or reference,
                status=status,
                order_tracking_id=data.get("reference"),
                message=data.get("gateway_response"),
                raw=data,
            )

        payload["callback_url"] = self.callback_url
        data = await self._request("POST", "/transaction/initialize", json=payload)
        return InitiationResult(
            transaction_id=data.get("reference", reference),
            status=GatewayStatus.PENDING,
            redirect_url=data.get("authorization_url"),
            order_tracking_id=data.get("access_code"),
            raw=data,
        )

    @_transient_retry
    async def query_status(self, transaction_id: str) -> PaymentStatusResult:
        """Verify by transaction reference, the id this adapter hands out"""
        data = await self._request("GET", f"/transaction/verify/{transaction_id}")
        return PaymentStatusResult(
            transaction_id=data.get("reference") or transaction_id,
            order_reference=data.get("reference"),
            status=_STATUS_MAP.get(data.get("status"), GatewayStatus.PENDING),
            amount=_from_subunit(data.get("amount")),
            currency=data.get("currency"),
            message=data.get("gateway_response"),
            raw=data,
        )

    @_connect_retry
    async def refund(self, transaction_id: str, amount: Decimal, reason: str = "") -> RefundResult:
        payload: Dict[str, Any] = {"transaction": transaction_id, "amount": _to_subunit(Decimal(str(amount)))}
        if reason:
            payload["merchant_note"] = reason

        logger.info("Initiating Paystack refund", extra={"transaction": transaction_id, "amount": str(amount)})
        data = await self._request("POST", "/refund", json=payload)
        transaction = data.get("transaction") or {}
        return RefundResult(
            transaction_id=str(data.get("id")),
            merchant_reference=transaction.get("reference") if isinstance(transaction, dict) else None,
            status=_STATUS_MAP.get(data.get("status"), GatewayStatus.PENDING),
            message=data.get("merchant_note"),
            raw=data,
        )

    def verify_webhook_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        """
        Paystack signs webhook payloads with HMAC SHA512 of the raw body.
        """
        if not self.webhook_secret:
            logger.error("Webhook secret not configured - cannot verify signature")
            return False
        if not signature:
            logger.warning("No signature provided in webhook request")
            return False

        computed_signature = hmac.new(
            key=self.webhook_secret.encode('utf-8'),
            msg=payload,
            digestmod=hashlib.sha512
        ).hexdigest()
        return hmac.compare_digest(computed_signature, signature)

    def parse_webhook(self, payload: Dict[str, Any]) -> WebhookNotification:
        event = payload.get("event", "unknown")
        data = payload.get("data") or {}
        status = _EVENT_STATUS.get(event) or _STATUS_MAP.get(data.get("status"), GatewayStatus.PENDING)
        paystack_id = str(data["id"]) if data.get("id") is not None else None

        if event.startswith("refund."):
            # refund.pending and refund.processed share ids; keep them apart for deduplication
            key = paystack_id or data.get("refund_reference") or data.get("transaction_reference")
            return WebhookNotification(
                event_type=event,
                external_id=f"{event}:{key}" if key else None,
                order_reference=data.get("transaction_reference"),
                transaction_id=data.get("transaction_reference"),
                status=status,
                amount=parse_webhook_amount(data.get("amount"), subunit=True),
                currency=data.get("currency"),
                message=data.get("merchant_note") or data.get("customer_note"),
                refund_id=paystack_id,
            )

        return WebhookNotification(
            event_type=event,
            external_id=paystack_id,
            order_reference=data.get("reference"),
            transaction_id=data.get("reference"),
            status=status,
            amount=parse_webhook_amount(data.get("amount"), subunit=True),
            currency=data.get("currency"),
            message=data.get("gateway_response"),
        )
