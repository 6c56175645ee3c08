"""
In-process gateway for local development and tests.

Outcomes can be scripted per call with ``queue_outcome``; otherwise every
charge completes immediately. Transactions are remembered so
``query_status`` and ``refund`` behave like a real provider's. Set
``refund_status`` to PENDING to have refunds settle later through a
``refund.*`` webhook.
"""
import hashlib
import hmac
import os
import uuid
from collections import deque
from decimal import Decimal
from typing import Any, Deque, Dict, Optional, Union

from ...core.exceptions import GatewayRejection, GatewayTransientError, ValidationError
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

Outcome = Union[GatewayStatus, Exception]


class MockGateway(PaymentGateway):
    name = "mock"

    def __init__(self, webhook_secret: Optional[str] = None, default_outcome: GatewayStatus = GatewayStatus.COMPLETED):
        self.webhook_secret = webhook_secret or os.environ.get("MOCK_GATEWAY_WEBHOOK_SECRET", "mock-webhook-secret")
        self.default_outcome = default_outcome
        self.refund_status = GatewayStatus.COMPLETED
        self._outcomes: Deque[Outcome] = deque()
        self.transactions: Dict[str, Dict[str, Any]] = {}
        self.calls: list = []

    def queue_outcome(self, outcome: Outcome) -> None:
        """Script the result of the next ``initiate`` call"""
        self._outcomes.append(outcome)

    async def initiate(self, amount, currency, method, reference, metadata=None) -> InitiationResult:
        self.calls.append(("initiate", reference))
        amount = validate_charge(amount, currency)

        outcome = self._outcomes.popleft() if self._outcomes else self.default_outcome
        if isinstance(outcome, Exception):
            raise outcome
        if outcome == GatewayStatus.FAILED:
            raise GatewayRejection("Payment declined by issuer", response_data={"reference": reference})

        transaction_id = self.record_transaction(reference, amount, currency, outcome)
        return InitiationResult(
            transaction_id=transaction_id,
            status=outcome,
            redirect_url=f"https://mock-gateway.local/pay/{transaction_id}" if outcome == GatewayStatus.PENDING else None,
            order_tracking_id=transaction_id,
            raw={"mock": True, "reference": reference, "status": outcome.value},
        )

    def record_transaction(self, reference: str, amount: Decimal, currency: str = "KES",
                           status: GatewayStatus = GatewayStatus.COMPLETED) -> str:
        """Register a transaction as if it had been charged; returns its id"""
        transaction_id = f"MOCK-{uuid.uuid4().hex[:12].upper()}"
        self.transactions[transaction_id] = {
            "reference": reference,
            "amount": Decimal(str(amount)),
            "currency": currency,
            "status": status,
            "refunded": Decimal("0"),
        }
        return transaction_id

    def settle(self, transaction_id: str, status: GatewayStatus) -> None:
        """Move a pending mock transaction to its final status"""
        self.transactions[transaction_id]["status"] = status

    async def query_status(self, transaction_id: str) -> PaymentStatusResult:
        self.calls.append(("query_status", transaction_id))
        txn = self.transactions.get(transaction_id)
        if txn is None:
            raise GatewayTransientError(f"Unknown transaction {transaction_id}", status_code=404)
        return PaymentStatusResult(
            transaction_id=transaction_id,
            order_reference=txn["reference"],
            status=txn["status"],
            amount=txn["amount"],
            currency=txn["currency"],
        )

    async def refund(self, transaction_id: str, amount: Decimal, reason: str = "") -> RefundResult:
        self.calls.append(("refund", transaction_id))
        txn = self.transactions.get(transaction_id)
        if txn is None:
            raise GatewayRejection(f"Unknown transaction {transaction_id}")
        amount = Decimal(str(amount))
        if amount <= 0 or txn["refunded"] + amount > txn["amount"]:
            raise ValidationError("Refund exceeds the settled amount")
        txn["refunded"] += amount
        return RefundResult(
            transaction_id=f"MOCK-RF-{uuid.uuid4().hex[:10].upper()}",
            merchant_reference=txn["reference"],
            status=self.refund_status,
            message=reason or "Refund processed",
            raw={"mock": True},
        )

    def sign(self, payload: bytes) -> str:
        return hmac.new(self.webhook_secret.encode("utf-8"), payload, hashlib.sha512).hexdigest()

    def verify_webhook_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        if not signature:
            return False
        return hmac.compare_digest(self.sign(payload), signature)

    def parse_webhook(self, payload: Dict[str, Any]) -> WebhookNotification:
        status = str(payload.get("status", "")).upper()
        return WebhookNotification(
            event_type=payload.get("event", "payment.status"),
            external_id=payload.get("id") or payload.get("transaction_id"),
            order_reference=payload.get("reference"),
            transaction_id=payload.get("transaction_id"),
            status=GatewayStatus(status) if status in GatewayStatus.__members__ else GatewayStatus.PENDING,
            amount=parse_webhook_amount(payload.get("amount")),
            currency=payload.get("currency"),
            message=payload.get("message"),
            refund_id=payload.get("refund_id"),
        )
