import enum
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import Column, String, Numeric, Text, JSON, ForeignKey, Index
from sqlalchemy.sql import func

from ..core.database import Base, UTCDateTime, enum_column_type
from ..core.exceptions import InvalidStateTransition


class RefundStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"


class RefundReason(str, enum.Enum):
    CANCELLATION = "cancellation"
    DUPLICATE = "duplicate"
    CUSTOMER_REQUEST = "customer_request"
    FRAUD = "fraud"
    OTHER = "other"


class RefundableKind(str, enum.Enum):
    DONATION = "donation"
    EVENT_ORDER = "event_order"
    SUBSCRIPTION = "subscription"


OPEN_REFUND_STATUSES = (RefundStatus.PENDING, RefundStatus.APPROVED, RefundStatus.PROCESSING)

REASON_DISPLAY = {
    RefundReason.CANCELLATION: "Cancellation",
    RefundReason.DUPLICATE: "Duplicate Payment",
    RefundReason.CUSTOMER_REQUEST: "Customer Request",
    RefundReason.FRAUD: "Fraudulent Transaction",
    RefundReason.OTHER: "Other",
}


@dataclass(frozen=True)
class RefundTarget:
    """What is being refunded: one of the known refundable kinds plus its id"""
    kind: RefundableKind
    id: str


class Refund(Base):
    """Refund request tied to an original payment"""
    __tablename__ = "refunds"

    id = Column(String(36), primary_key=True, index=True, default=lambda: str(uuid.uuid4()))
    refundable_kind = Column(enum_column_type(RefundableKind), nullable=False)
    refundable_id = Column(String(36), nullable=False)
    payment_id = Column(String(36), ForeignKey("payments.id"), nullable=False, index=True)
    processed_by = Column(String(36), nullable=True)

    amount = Column(Numeric(12, 2), nullable=False)
    original_amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="KES")
    status = Column(enum_column_type(RefundStatus), nullable=False, default=RefundStatus.PENDING, index=True)
    reason = Column(enum_column_type(RefundReason), nullable=False, default=RefundReason.OTHER)
    customer_notes = Column(Text, nullable=True)
    admin_notes = Column(Text, nullable=True)

    gateway = Column(String(50), nullable=True)
    gateway_refund_id = Column(String(100), nullable=True)
    gateway_response = Column(JSON, nullable=True)

    requested_at = Column(UTCDateTime, nullable=False)
    approved_at = Column(UTCDateTime, nullable=True)
    rejected_at = Column(UTCDateTime, nullable=True)
    processed_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)
    failed_at = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, server_default=func.now())
    updated_at = Column(UTCDateTime, onupdate=func.now())

    __table_args__ = (
        Index("ix_refunds_refundable", "refundable_kind", "refundable_id"),
    )

    def __init__(self, **kwargs):
        kwargs.setdefault("status", RefundStatus.PENDING)
        kwargs.setdefault("requested_at", datetime.now(timezone.utc))
        super().__init__(**kwargs)

    @property
    def target(self) -> RefundTarget:
        return RefundTarget(kind=self.refundable_kind, id=self.refundable_id)

    @property
    def refund_percentage(self) -> Decimal:
        original = Decimal(self.original_amount or 0)
        if original <= 0:
            return Decimal("0")
        return (Decimal(self.amount) / original * 100).quantize(Decimal("0.01"))

    @property
    def reason_display(self) -> str:
        return REASON_DISPLAY.get(self.reason, str(self.reason).replace("_", " ").title())

    @property
    def is_full_refund(self) -> bool:
        return Decimal(self.amount) >= Decimal(self.original_amount)

    def can_be_processed(self) -> bool:
        return self.status in (RefundStatus.PENDING, RefundStatus.APPROVED)

    def _advance(self, target: RefundStatus, *allowed: RefundStatus) -> datetime:
        if self.status not in allowed:
            raise InvalidStateTransition("refund", self.status, target)
        self.status = target
        return datetime.now(timezone.utc)

    def approve(self, approver_id: str) -> None:
        self.approved_at = self._advance(RefundStatus.APPROVED, RefundStatus.PENDING)
        self.processed_by = approver_id

    def reject(self, rejector_id: str, reason: Optional[str] = None) -> None:
        self.rejected_at = self._advance(RefundStatus.REJECTED, RefundStatus.PENDING, RefundStatus.APPROVED)
        self.processed_by = rejector_id
        self.admin_notes = reason or self.admin_notes

    def mark_processing(self) -> None:
        self.processed_at = self._advance(RefundStatus.PROCESSING, RefundStatus.APPROVED)

    def mark_completed(self, gateway_refund_id: Optional[str] = None, gateway_response: Optional[Dict] = None) -> None:
        self.completed_at = self._advance(RefundStatus.COMPLETED, RefundStatus.PROCESSING)
        self.gateway_refund_id = gateway_refund_id or self.gateway_refund_id
        self.gateway_response = gateway_response if gateway_response is not None else self.gateway_response

    def mark_failed(self, gateway_response: Optional[Dict] = None) -> None:
        self.failed_at = self._advance(RefundStatus.FAILED, RefundStatus.PROCESSING)
        self.gateway_response = gateway_response if gateway_response is not None else self.gateway_response

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses"""
        return {
            "id": self.id,
            "refundable_kind": self.refundable_kind.value,
            "refundable_id": self.refundable_id,
            "payment_id": self.payment_id,
            "amount": str(self.amount),
            "original_amount": str(self.original_amount),
            "refund_percentage": str(self.refund_percentage),
            "currency": self.currency,
            "status": self.status.value,
            "reason": self.reason.value,
            "reason_display": self.reason_display,
            "gateway_refund_id": self.gateway_refund_id,
            "requested_at": self.requested_at.isoformat() if self.requested_at else None,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
