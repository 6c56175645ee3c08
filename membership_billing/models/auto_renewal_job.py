import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import Column, String, Integer, Text, JSON, Numeric, ForeignKey, Index
from sqlalchemy.sql import func

from ..core.database import Base, UTCDateTime, enum_column_type
from ..core.exceptions import InvalidStateTransition


class RenewalJobStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RenewalAttemptType(str, enum.Enum):
    INITIAL = "initial"
    RETRY = "retry"


IN_FLIGHT_JOB_STATUSES = (RenewalJobStatus.SCHEDULED, RenewalJobStatus.PROCESSING)


class AutoRenewalJob(Base):
    """One row per renewal attempt (not per subscription)"""
    __tablename__ = "auto_renewal_jobs"

    id = Column(String(36), primary_key=True, index=True, default=lambda: str(uuid.uuid4()))
    subscription_id = Column(String(36), ForeignKey("subscriptions.id"), nullable=False, index=True)
    user_id = Column(String(36), nullable=False, index=True)

    status = Column(enum_column_type(RenewalJobStatus), nullable=False, default=RenewalJobStatus.SCHEDULED)
    attempt_type = Column(enum_column_type(RenewalAttemptType), nullable=False, default=RenewalAttemptType.INITIAL)
    attempt_number = Column(Integer, nullable=False, default=1)
    max_attempts = Column(Integer, nullable=False, default=3)

    scheduled_at = Column(UTCDateTime, nullable=False, index=True)
    executed_at = Column(UTCDateTime, nullable=True)

    amount = Column(Numeric(12, 2), nullable=True)
    currency = Column(String(3), nullable=False, default="KES")
    payment_method = Column(String(255), nullable=True)
    reference = Column(String(100), nullable=True, unique=True)  # Merchant reference sent to the gateway
    transaction_id = Column(String(100), nullable=True, index=True)
    gateway_response = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    next_retry_at = Column(UTCDateTime, nullable=True, index=True)

    created_at = Column(UTCDateTime, server_default=func.now())
    updated_at = Column(UTCDateTime, onupdate=func.now())

    __table_args__ = (
        Index("ix_auto_renewal_jobs_status_scheduled", "status", "scheduled_at"),
        Index("ix_auto_renewal_jobs_user_status", "user_id", "status"),
    )

    def __init__(self, **kwargs):
        kwargs.setdefault("status", RenewalJobStatus.SCHEDULED)
        kwargs.setdefault("attempt_type", RenewalAttemptType.INITIAL)
        kwargs.setdefault("attempt_number", 1)
        super().__init__(**kwargs)

    @property
    def is_terminal(self) -> bool:
        if self.status in (RenewalJobStatus.SUCCESS, RenewalJobStatus.CANCELLED):
            return True
        return self.status == RenewalJobStatus.FAILED and self.attempt_number >= self.max_attempts

    def _require(self, *allowed: RenewalJobStatus, target: RenewalJobStatus) -> None:
        if self.status not in allowed:
            raise InvalidStateTransition("auto-renewal job", self.status, target)

    def mark_processing(self, now: Optional[datetime] = None) -> None:
        self._require(RenewalJobStatus.SCHEDULED, target=RenewalJobStatus.PROCESSING)
        self.status = RenewalJobStatus.PROCESSING
        self.executed_at = now or datetime.now(timezone.utc)

    def mark_success(self, transaction_id: Optional[str] = None, gateway_response: Optional[Dict] = None) -> None:
        self._require(RenewalJobStatus.PROCESSING, target=RenewalJobStatus.SUCCESS)
        self.status = RenewalJobStatus.SUCCESS
        self.transaction_id = transaction_id or self.transaction_id
        if gateway_response is not None:
            self.gateway_response = gateway_response
        self.error_message = None
        self.next_retry_at = None

    def mark_failed(self, error_message: str, gateway_response: Optional[Dict] = None) -> None:
        self._require(RenewalJobStatus.SCHEDULED, RenewalJobStatus.PROCESSING, target=RenewalJobStatus.FAILED)
        self.status = RenewalJobStatus.FAILED
        self.error_message = error_message
        if gateway_response is not None:
            self.gateway_response = gateway_response

    def cancel(self) -> None:
        self._require(RenewalJobStatus.SCHEDULED, RenewalJobStatus.PROCESSING, target=RenewalJobStatus.CANCELLED)
        self.status = RenewalJobStatus.CANCELLED

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses"""
        return {
            "id": self.id,
            "subscription_id": self.subscription_id,
            "user_id": self.user_id,
            "status": self.status.value,
            "attempt_type": self.attempt_type.value,
            "attempt_number": self.attempt_number,
            "max_attempts": self.max_attempts,
            "scheduled_at": self.scheduled_at.isoformat() if self.scheduled_at else None,
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
            "amount": str(self.amount) if self.amount is not None else None,
            "currency": self.currency,
            "reference": self.reference,
            "transaction_id": self.transaction_id,
            "error_message": self.error_message,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
        }
