"""Custom exceptions for the membership billing service"""
from typing import Any, Dict, Optional


class BillingServiceError(Exception):
    """Base exception for billing service"""
    pass


class SubscriptionNotFoundError(BillingServiceError):
    """Subscription not found"""
    pass


class PendingPaymentNotFoundError(BillingServiceError):
    """Pending payment not found"""
    pass


class ValidationError(BillingServiceError):
    """Malformed input (invalid amount, currency, ...). Never retried."""
    pass


class InvalidStateTransition(BillingServiceError):
    """A state machine was asked to make a move its current state does not allow"""

    def __init__(self, entity: str, current: Any, target: Any):
        super().__init__(f"{entity} cannot move from '{_value(current)}' to '{_value(target)}'")
        self.entity = entity
        self.current = current
        self.target = target


class ConcurrencyConflict(BillingServiceError):
    """Concurrent mutation of the same record; the caller should retry"""
    pass


class GatewayError(BillingServiceError):
    """Base exception for payment gateway failures"""

    def __init__(self, message: str, status_code: Optional[int] = None, response_data: Optional[Dict] = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_data = response_data or {}


class GatewayTransientError(GatewayError):
    """Network/timeout failure talking to the gateway - retryable"""
    pass


class GatewayConnectError(GatewayTransientError):
    """The request never reached the gateway, so sending it again is safe"""
    pass


class GatewayRejection(GatewayError):
    """Payment declined by the gateway - retryable up to max attempts"""
    pass


class WebhookSignatureError(BillingServiceError):
    """Inbound webhook failed signature verification"""
    pass


class ReconciliationDataError(BillingServiceError):
    """Malformed ledger input; aborts the reconciliation run"""
    pass


class RefundError(BillingServiceError):
    """Refund request or processing error"""
    pass


def _value(state: Any) -> Any:
    return getattr(state, "value", state)
