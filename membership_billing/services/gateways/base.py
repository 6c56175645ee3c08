"""
Payment gateway contract.

Every provider adapter normalises its responses into the small result types
below so the renewal, confirmation and refund flows never see provider wire
formats. Adapters raise ``GatewayTransientError`` for network/timeout problems,
``GatewayRejection`` for declines and ``ValidationError`` for bad input.
"""
import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

from ...core.config import settings
from ...core.exceptions import ValidationError


class GatewayStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass
class InitiationResult:
    transaction_id: str
    status: GatewayStatus = GatewayStatus.PENDING
    redirect_url: Optional[str] = None
    order_tracking_id: Optional[str] = None
    message: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PaymentStatusResult:
    transaction_id: str
    order_reference: Optional[str]
    status: GatewayStatus
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    message: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RefundResult:
    transaction_id: str
    merchant_reference: Optional[str]
    status: GatewayStatus
    message: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class WebhookNotification:
    """Provider callback reduced to what the confirmation bridge needs"""
    event_type: str
    external_id: Optional[str]
    order_reference: Optional[str]
    transaction_id: Optional[str]
    status: GatewayStatus
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    message: Optional[str] = None
    refund_id: Optional[str] = None

    @property
    def is_refund(self) -> bool:
        return str(self.event_type).startswith("refund.")


def parse_webhook_amount(value: Any, subunit: bool = False) -> Optional[Decimal]:
    """Amount from a callback body; raises ValidationError when it is not a number"""
    if value is None:
        return None
    try:
        amount = Decimal(str(value))
    except ArithmeticError:
        raise ValidationError(f"Invalid amount in webhook payload: {value!r}")
    if not amount.is_finite():
        raise ValidationError(f"Invalid amount in webhook payload: {value!r}")
    return amount / 100 if subunit else amount


def validate_charge(amount: Decimal, currency: str) -> Decimal:
    """Reject malformed charges before they reach a provider"""
    try:
        amount = Decimal(str(amount))
    except (ArithmeticError, ValueError, TypeError):
        raise ValidationError(f"Invalid amount: {amount!r}")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"Amount must be positive, got {amount}")
    if amount != amount.quantize(Decimal("0.01")):
        raise ValidationError(f"Amount has more than two decimal places: {amount}")
    if not currency or currency.upper() not in settings.SUPPORTED_CURRENCIES:
        raise ValidationError(f"Unsupported currency: {currency!r}")
    return amount


class PaymentGateway(ABC):
    """Abstract payment provider"""

    name: str = "abstract"

    @abstractmethod
    async def initiate(
        self,
        amount: Decimal,
        currency: str,
        method: Optional[str],
        reference: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> InitiationResult:
        """Start (or directly charge) a payment for ``reference``"""

    @abstractmethod
    async def query_status(self, transaction_id: str) -> PaymentStatusResult:
        """Fetch the current status of a transaction"""

    @abstractmethod
    async def refund(self, transaction_id: str, amount: Decimal, reason: str = "") -> RefundResult:
        """Refund a settled transaction, fully or partially"""

    @abstractmethod
    def verify_webhook_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        """Check that a callback body was signed by the provider"""

    @abstractmethod
    def parse_webhook(self, payload: Dict[str, Any]) -> WebhookNotification:
        """Normalise a provider callback body; raises ValidationError for malformed fields"""
