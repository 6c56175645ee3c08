"""Payment gateway adapters and the registry that picks one by name"""
from typing import Callable, Dict, Optional

from ...core.config import settings
from ...core.exceptions import ValidationError
from .base import (
    GatewayStatus,
    InitiationResult,
    PaymentGateway,
    PaymentStatusResult,
    RefundResult,
    WebhookNotification,
)
from .mock import MockGateway
from .paystack import PaystackGateway

_GATEWAY_FACTORIES: Dict[str, Callable[[], PaymentGateway]] = {
    "mock": MockGateway,
    "paystack": PaystackGateway,
}

_instances: Dict[str, PaymentGateway] = {}


def register_gateway(name: str, factory: Callable[[], PaymentGateway]) -> None:
    _GATEWAY_FACTORIES[name] = factory
    _instances.pop(name, None)


def get_gateway(name: Optional[str] = None) -> PaymentGateway:
    """Return the (cached) gateway adapter for ``name`` or the configured default"""
    name = (name or settings.PAYMENT_GATEWAY).lower()
    if name not in _GATEWAY_FACTORIES:
        raise ValidationError(f"Unknown payment gateway '{name}'")
    if name not in _instances:
        _instances[name] = _GATEWAY_FACTORIES[name]()
    return _instances[name]


__all__ = [
    "GatewayStatus",
    "InitiationResult",
    "PaymentGateway",
    "PaymentStatusResult",
    "RefundResult",
    "WebhookNotification",
    "MockGateway",
    "PaystackGateway",
    "get_gateway",
    "register_gateway",
]
