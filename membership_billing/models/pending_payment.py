import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import Column, String, Numeric, JSON, ForeignKey, Index, text
from sqlalchemy.sql import func

from ..core.database import Base, UTCDateTime, enum_column_type
from ..core.exceptions import InvalidStateTransition


class PendingPaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


TERMINAL_PAYMENT_STATUSES = frozenset({
    PendingPaymentStatus.COMPLETED,
    PendingPaymentStatus.FAILED,
    PendingPaymentStatus.EXPIRED,
    PendingPaymentStatus.CANCELLED,
})


class PendingPayment(Base):
    """
    A payment attempt between initiation and its terminal gateway outcome.

    ``payment_id`` is our correlation key (also sent to the gateway as the
    merchant reference); ``transaction_id`` is the gateway's own id and stays
    NULL until the gateway acknowledges the attempt.
    """
    __tablename__ = "pending_payments"

    id = Column(String(36), primary_key=True, index=True, default=lambda: str(uuid.uuid4()))
    payment_id = Column(String(64), nullable=False, unique=True, index=True)
    transaction_id = Column(String(100), nullable=True, index=True)

    user_id = Column(String(36), nullable=False, index=True)
    subscription_id = Column(String(36), ForeignKey("subscriptions.id"), nullable=True, index=True)
    plan_id = Column(String(36), nullable=True)
    renewal_job_id = Column(String(36), ForeignKey("auto_renewal_jobs.id"), nullable=True)

    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="KES")
    status = Column(enum_column_type(PendingPaymentStatus), nullable=False, default=PendingPaymentStatus.PENDING)
    gateway = Column(String(50), nullable=False, default="mock")

    expires_at = Column(UTCDateTime, nullable=True, index=True)
    completed_at = Column(UTCDateTime, nullable=True)
    payment_metadata = Column("metadata", JSON, default=dict)

    created_at = Column(UTCDateTime, server_default=func.now())
    updated_at = Column(UTCDateTime, onupdate=func.now())

    __table_args__ = (
        # At most one open attempt per (user, subscription)
        Index(
            "uq_pending_payments_open_attempt",
            "user_id",
            "subscription_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )

    def __init__(self, **kwargs):
        kwargs.setdefault("status", PendingPaymentStatus.PENDING)
        kwargs.setdefault("payment_metadata", {})
        super().__init__(**kwargs)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PAYMENT_STATUSES

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.status == PendingPaymentStatus.EXPIRED:
            return True
        now = now or datetime.now(timezone.utc)
        return self.expires_at is not None and self.expires_at <= now

    def can_be_completed(self, now: Optional[datetime] = None) -> bool:
        return self.status == PendingPaymentStatus.PENDING and not self.is_expired(now)

    def _finish(self, target: PendingPaymentStatus) -> None:
        # Terminal records never move again
        if self.status != PendingPaymentStatus.PENDING:
            raise InvalidStateTransition("pending payment", self.status, target)
        self.status = target

    def mark_completed(self, now: Optional[datetime] = None) -> None:
        self._finish(PendingPaymentStatus.COMPLETED)
        self.completed_at = now or datetime.now(timezone.utc)

    def mark_failed(self, reason: Optional[str] = None) -> None:
        self._finish(PendingPaymentStatus.FAILED)
        self.payment_metadata = {**(self.payment_metadata or {}), "failure_reason": reason}

    def mark_expired(self) -> None:
        self._finish(PendingPaymentStatus.EXPIRED)

    def mark_cancelled(self, reason: Optional[str] = None) -> None:
        self._finish(PendingPaymentStatus.CANCELLED)
        if reason:
            self.payment_metadata = {**(self.payment_metadata or {}), "cancel_reason": reason}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses"""
        return {
            "id": self.id,
            "payment_id": self.payment_id,
            "transaction_id": self.transaction_id,
            "user_id": self.user_id,
            "subscription_id": self.subscription_id,
            "plan_id": self.plan_id,
            "amount": str(self.amount),
            "currency": self.currency,
            "status": self.status.value,
            "gateway": self.gateway,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "metadata": self.payment_metadata or {},
        }
