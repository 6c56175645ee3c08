"""
Renewal/grace/failure state machine layered over a base subscription.

Every status change goes through one of the guarded methods below; nothing
else in the code base assigns ``status`` directly. The methods only mutate the
instance - the calling service owns the transaction that persists them
together with the related AutoRenewalJob / PendingPayment rows.
"""
import enum
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy import Column, String, Integer, Text, JSON, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..core.config import settings
from ..core.database import Base, UTCDateTime, enum_column_type
from ..core.exceptions import InvalidStateTransition, ValidationError


class EnhancementStatus(str, enum.Enum):
    ACTIVE = "active"
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_FAILED = "payment_failed"
    GRACE_PERIOD = "grace_period"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"


class PaymentFailureState(str, enum.Enum):
    NONE = "none"
    RETRY_IMMEDIATE = "retry_immediate"
    RETRY_DELAYED = "retry_delayed"
    EXHAUSTED = "exhausted"


RETRYABLE_FAILURE_STATES = frozenset({PaymentFailureState.RETRY_IMMEDIATE, PaymentFailureState.RETRY_DELAYED})

# Short names older API clients still send/expect. Only used when parsing or
# rendering at the API boundary; the database always holds canonical values.
LEGACY_STATUS_ALIASES = {
    "failed": EnhancementStatus.PAYMENT_FAILED,
    "pending": EnhancementStatus.PAYMENT_PENDING,
}
_LEGACY_STATUS_NAMES = {status: alias for alias, status in LEGACY_STATUS_ALIASES.items()}


def parse_status(value: str) -> EnhancementStatus:
    """Accept canonical or legacy status names"""
    if value in LEGACY_STATUS_ALIASES:
        return LEGACY_STATUS_ALIASES[value]
    try:
        return EnhancementStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown subscription status '{value}'")


def render_status(status: EnhancementStatus, legacy: bool = False) -> str:
    if legacy:
        return _LEGACY_STATUS_NAMES.get(status, status.value)
    return status.value


class SubscriptionEnhancement(Base):
    """Renewal bookkeeping for one subscription (1:1)"""
    __tablename__ = "subscription_enhancements"

    id = Column(String(36), primary_key=True, index=True, default=lambda: str(uuid.uuid4()))
    subscription_id = Column(String(36), ForeignKey("subscriptions.id"), nullable=False, unique=True, index=True)

    status = Column(enum_column_type(EnhancementStatus), nullable=False, default=EnhancementStatus.ACTIVE, index=True)
    payment_failure_state = Column(
        enum_column_type(PaymentFailureState), nullable=False, default=PaymentFailureState.NONE
    )

    # Renewal attempts
    renewal_attempt_count = Column(Integer, nullable=False, default=0)
    max_renewal_attempts = Column(Integer, nullable=False, default=3)
    last_renewal_attempt_at = Column(UTCDateTime, nullable=True)
    next_retry_at = Column(UTCDateTime, nullable=True, index=True)

    # Grace window
    grace_period_starts_at = Column(UTCDateTime, nullable=True)
    grace_period_ends_at = Column(UTCDateTime, nullable=True, index=True)

    failure_reason = Column(Text, nullable=True)
    payment_method = Column(String(255), nullable=True)  # Stored authorization / phone used for charges
    enhancement_metadata = Column("metadata", JSON, default=dict)

    # Optimistic concurrency
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(UTCDateTime, server_default=func.now())
    updated_at = Column(UTCDateTime, onupdate=func.now())

    subscription = relationship("Subscription", back_populates="enhancement")

    __mapper_args__ = {"version_id_col": version}

    def __init__(self, **kwargs):
        kwargs.setdefault("status", EnhancementStatus.ACTIVE)
        kwargs.setdefault("payment_failure_state", PaymentFailureState.NONE)
        kwargs.setdefault("renewal_attempt_count", 0)
        kwargs.setdefault("max_renewal_attempts", settings.MAX_RENEWAL_ATTEMPTS)
        kwargs.setdefault("enhancement_metadata", {})
        super().__init__(**kwargs)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_active(self) -> bool:
        return self.status == EnhancementStatus.ACTIVE

    def is_cancelled(self) -> bool:
        return self.status == EnhancementStatus.CANCELLED

    def attempts_exhausted(self) -> bool:
        return self.renewal_attempt_count >= self.max_renewal_attempts

    def is_retryable(self) -> bool:
        """Another renewal attempt may be made"""
        if self.attempts_exhausted():
            return False
        return self.payment_failure_state in RETRYABLE_FAILURE_STATES

    def is_in_grace_period(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return (
            self.status == EnhancementStatus.GRACE_PERIOD
            and self.grace_period_ends_at is not None
            and self.grace_period_ends_at > now
        )

    def has_grace_period_ended(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return (
            self.status == EnhancementStatus.GRACE_PERIOD
            and self.grace_period_ends_at is not None
            and self.grace_period_ends_at <= now
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _move_to(self, target: EnhancementStatus, allowed_from) -> None:
        if self.status not in allowed_from:
            raise InvalidStateTransition("subscription enhancement", self.status, target)
        if self.status == EnhancementStatus.GRACE_PERIOD and target != EnhancementStatus.GRACE_PERIOD:
            # grace_period_ends_at is only meaningful while in the grace window
            self.grace_period_ends_at = None
        self.status = target

    def mark_payment_pending(self) -> None:
        self._move_to(
            EnhancementStatus.PAYMENT_PENDING,
            allowed_from=set(EnhancementStatus) - {EnhancementStatus.CANCELLED},
        )
        self.payment_failure_state = PaymentFailureState.NONE

    def mark_active(self) -> None:
        """Confirmed charge: back to active with a clean failure record"""
        self._move_to(EnhancementStatus.ACTIVE, allowed_from={EnhancementStatus.PAYMENT_PENDING})
        self.renewal_attempt_count = 0
        self.payment_failure_state = PaymentFailureState.NONE
        self.next_retry_at = None
        self.failure_reason = None

    def mark_payment_failed(self, failure_state: PaymentFailureState, reason: str) -> None:
        failure_state = PaymentFailureState(failure_state)
        if failure_state == PaymentFailureState.NONE:
            raise ValidationError("A payment failure needs a failure state other than 'none'")

        self._move_to(
            EnhancementStatus.PAYMENT_FAILED,
            allowed_from={
                EnhancementStatus.ACTIVE,
                EnhancementStatus.PAYMENT_PENDING,
                EnhancementStatus.PAYMENT_FAILED,
            },
        )
        if self.attempts_exhausted():
            failure_state = PaymentFailureState.EXHAUSTED
        self.payment_failure_state = failure_state
        self.failure_reason = reason
        if failure_state == PaymentFailureState.EXHAUSTED:
            self.next_retry_at = None

    def increment_retry_attempts(self, now: Optional[datetime] = None) -> None:
        if self.status not in (
            EnhancementStatus.ACTIVE,
            EnhancementStatus.PAYMENT_PENDING,
            EnhancementStatus.PAYMENT_FAILED,
        ):
            raise InvalidStateTransition("subscription enhancement", self.status, "renewal attempt")
        if self.attempts_exhausted():
            raise InvalidStateTransition(
                "subscription enhancement",
                f"{self.renewal_attempt_count}/{self.max_renewal_attempts} attempts",
                "another renewal attempt",
            )

        self.renewal_attempt_count += 1
        self.last_renewal_attempt_at = now or datetime.now(timezone.utc)
        if self.attempts_exhausted():
            self.payment_failure_state = PaymentFailureState.EXHAUSTED
            self.next_retry_at = None

    def schedule_retry(self, retry_at: datetime, reason: str) -> None:
        if self.status in (EnhancementStatus.CANCELLED, EnhancementStatus.SUSPENDED):
            raise InvalidStateTransition("subscription enhancement", self.status, "retry scheduled")
        self.next_retry_at = retry_at
        self.failure_reason = reason

    def enter_grace_period(self, days: Optional[int] = None, now: Optional[datetime] = None) -> None:
        days = settings.SUBSCRIPTION_GRACE_PERIOD_DAYS if days is None else days
        now = now or datetime.now(timezone.utc)

        self._move_to(EnhancementStatus.GRACE_PERIOD, allowed_from={EnhancementStatus.PAYMENT_FAILED})
        self.grace_period_starts_at = now
        self.grace_period_ends_at = now + timedelta(days=days)
        self.next_retry_at = None

    def suspend(self, now: Optional[datetime] = None) -> None:
        if not self.has_grace_period_ended(now):
            raise InvalidStateTransition("subscription enhancement", self.status, EnhancementStatus.SUSPENDED)
        self._move_to(EnhancementStatus.SUSPENDED, allowed_from={EnhancementStatus.GRACE_PERIOD})

    def cancel(self) -> bool:
        """Returns False when the record was already cancelled"""
        if self.status == EnhancementStatus.CANCELLED:
            return False
        self._move_to(EnhancementStatus.CANCELLED, allowed_from=set(EnhancementStatus))
        self.next_retry_at = None
        return True

    def snapshot(self) -> Dict[str, Any]:
        """State captured for audit before/after comparisons"""
        return {
            "status": self.status.value,
            "payment_failure_state": self.payment_failure_state.value,
            "renewal_attempt_count": self.renewal_attempt_count,
            "max_renewal_attempts": self.max_renewal_attempts,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
            "grace_period_ends_at": self.grace_period_ends_at.isoformat() if self.grace_period_ends_at else None,
            "failure_reason": self.failure_reason,
        }

    def to_dict(self, legacy_status: bool = False) -> Dict[str, Any]:
        """Convert to dictionary for API responses"""
        data = self.snapshot()
        data.update({
            "id": self.id,
            "subscription_id": self.subscription_id,
            "status": render_status(self.status, legacy=legacy_status),
            "last_renewal_attempt_at": self.last_renewal_attempt_at.isoformat() if self.last_renewal_attempt_at else None,
            "grace_period_starts_at": self.grace_period_starts_at.isoformat() if self.grace_period_starts_at else None,
            "metadata": self.enhancement_metadata or {},
        })
        return data
