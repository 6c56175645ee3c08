"""
Pending payment tracker.

Keeps one durable record per in-flight payment attempt, from initiation until
the gateway reports a terminal outcome (or the record expires). Methods flush
but never commit: the caller owns the transaction so the pending payment moves
together with the renewal job and enhancement it belongs to. ``expire_stale``
is the exception - it is a batch pass and commits its own work.
"""
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.logging_config import get_logger, log_payment_transition
from ..core.exceptions import GatewayError, PendingPaymentNotFoundError, ValidationError
from ..models.pending_payment import PendingPayment, PendingPaymentStatus
from .audit_service import ActorContext, AuditService, SYSTEM_ACTOR
from .gateways.base import PaymentGateway, PaymentStatusResult, validate_charge

logger = get_logger("pending_payments")


def generate_payment_id() -> str:
    """Caller-visible correlation key, also used as the gateway merchant reference"""
    return f"PAY-{uuid.uuid4().hex[:20].upper()}"


class PendingPaymentTracker:
    """Service for the pending payment lifecycle"""

    def __init__(self, db: Session, gateway: Optional[PaymentGateway] = None):
        self.db = db
        self.gateway = gateway
        self.audit = AuditService(db)

    # ------------------------------------------------------------------
    # Creation and lookup
    # ------------------------------------------------------------------

    def create(
        self,
        payment_data: Dict[str, Any],
        actor: ActorContext = SYSTEM_ACTOR,
        now: Optional[datetime] = None
    ) -> PendingPayment:
        """Open a new pending payment, superseding any open one for the same key

        Args:
            payment_data: user_id (required), subscription_id, plan_id, amount,
                currency, gateway, transaction_id, renewal_job_id, payment_id, metadata
            actor: Who opened the attempt
            now: Clock override
        """
        user_id = payment_data.get("user_id")
        if not user_id:
            raise ValidationError("A pending payment needs a user_id")

        currency = (payment_data.get("currency") or settings.DEFAULT_CURRENCY).upper()
        amount = validate_charge(payment_data.get("amount"), currency)
        subscription_id = payment_data.get("subscription_id")
        now = now or datetime.now(timezone.utc)

        superseded = self.supersede_open(user_id, subscription_id, actor)

        payment = PendingPayment(
            payment_id=payment_data.get("payment_id") or generate_payment_id(),
            transaction_id=payment_data.get("transaction_id"),
            user_id=user_id,
            subscription_id=subscription_id,
            plan_id=payment_data.get("plan_id"),
            renewal_job_id=payment_data.get("renewal_job_id"),
            amount=amount,
            currency=currency,
            gateway=payment_data.get("gateway") or settings.PAYMENT_GATEWAY,
            expires_at=now + timedelta(minutes=settings.PENDING_PAYMENT_TTL_MINUTES),
            payment_metadata=dict(payment_data.get("metadata") or {}),
        )
        self.db.add(payment)
        self.db.flush()

        self.audit.log_action(
            actor=actor,
            action="pending_payment.created",
            target_type="pending_payment",
            target_id=payment.payment_id,
            after_state=payment.to_dict(),
            metadata={"superseded": [p.payment_id for p in superseded]},
        )
        logger.info(
            f"Created pending payment {payment.payment_id}",
            extra={"user_id": user_id, "subscription_id": subscription_id, "amount": str(amount)}
        )
        return payment

    def supersede_open(
        self,
        user_id: str,
        subscription_id: Optional[str],
        actor: ActorContext = SYSTEM_ACTOR
    ) -> List[PendingPayment]:
        """Cancel every open attempt for (user, subscription) so a new one can be opened"""
        superseded = []
        for payment in self.find_open(user_id, subscription_id):
            if self._transition(payment, PendingPaymentStatus.CANCELLED, actor, reason="superseded by a newer attempt"):
                superseded.append(payment)
        if superseded:
            # The partial unique index only admits the new row once these are written
            self.db.flush()
        return superseded

    def find_open(self, user_id: str, subscription_id: Optional[str]) -> List[PendingPayment]:
        query = self.db.query(PendingPayment).filter(
            PendingPayment.user_id == user_id,
            PendingPayment.status == PendingPaymentStatus.PENDING,
        )
        if subscription_id is None:
            query = query.filter(PendingPayment.subscription_id.is_(None))
        else:
            query = query.filter(PendingPayment.subscription_id == subscription_id)
        return query.all()

    def find_by_payment_id(self, payment_id: str) -> Optional[PendingPayment]:
        return self.db.query(PendingPayment).filter(PendingPayment.payment_id == payment_id).first()

    def find_by_transaction_id(self, transaction_id: str) -> Optional[PendingPayment]:
        return self.db.query(PendingPayment).filter(PendingPayment.transaction_id == transaction_id).first()

    def get(self, payment_id: str) -> PendingPayment:
        payment = self.find_by_payment_id(payment_id)
        if not payment:
            raise PendingPaymentNotFoundError(f"Pending payment {payment_id} not found")
        return payment

    def attach_transaction_id(self, payment: PendingPayment, transaction_id: str) -> None:
        """Record the gateway's id once it acknowledges the attempt"""
        if payment.transaction_id and payment.transaction_id != transaction_id:
            raise ValidationError(
                f"Pending payment {payment.payment_id} already bound to transaction {payment.transaction_id}"
            )
        payment.transaction_id = transaction_id

    # ------------------------------------------------------------------
    # Terminal transitions (no-ops on records that are already terminal)
    # ------------------------------------------------------------------

    def mark_completed(self, payment: PendingPayment, actor: ActorContext = SYSTEM_ACTOR,
                       now: Optional[datetime] = None) -> bool:
        """Complete the attempt. An attempt past its expiry is expired instead and False returned."""
        now = now or datetime.now(timezone.utc)
        if payment.status == PendingPaymentStatus.PENDING and payment.is_expired(now):
            self._transition(payment, PendingPaymentStatus.EXPIRED, actor, reason="confirmation arrived after expiry")
            return False
        return self._transition(payment, PendingPaymentStatus.COMPLETED, actor, now=now)

    def mark_failed(self, payment: PendingPayment, reason: Optional[str] = None,
                    actor: ActorContext = SYSTEM_ACTOR) -> bool:
        return self._transition(payment, PendingPaymentStatus.FAILED, actor, reason=reason)

    def mark_expired(self, payment: PendingPayment, actor: ActorContext = SYSTEM_ACTOR) -> bool:
        return self._transition(payment, PendingPaymentStatus.EXPIRED, actor)

    def mark_cancelled(self, payment: PendingPayment, reason: Optional[str] = None,
                       actor: ActorContext = SYSTEM_ACTOR) -> bool:
        return self._transition(payment, PendingPaymentStatus.CANCELLED, actor, reason=reason)

    def _transition(
        self,
        payment: PendingPayment,
        target: PendingPaymentStatus,
        actor: ActorContext,
        reason: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> bool:
        if payment.is_terminal:
            logger.debug(
                f"Pending payment {payment.payment_id} already {payment.status.value}; ignoring {target.value}"
            )
            return False

        before = payment.to_dict()
        if target == PendingPaymentStatus.COMPLETED:
            payment.mark_completed(now)
        elif target == PendingPaymentStatus.FAILED:
            payment.mark_failed(reason)
        elif target == PendingPaymentStatus.EXPIRED:
            payment.mark_expired()
        else:
            payment.mark_cancelled(reason)

        self.audit.log_action(
            actor=actor,
            action=f"pending_payment.{target.value}",
            target_type="pending_payment",
            target_id=payment.payment_id,
            before_state=before,
            after_state=payment.to_dict(),
            reason=reason,
        )
        log_payment_transition(
            payment.payment_id,
            before["status"],
            target.value,
            subscription_id=payment.subscription_id,
            actor_id=actor.actor_id,
        )
        return True

    # ------------------------------------------------------------------
    # Reaper and polling
    # ------------------------------------------------------------------

    def expire_stale(self, now: Optional[datetime] = None, actor: ActorContext = SYSTEM_ACTOR,
                     include_renewals: bool = True) -> int:
        """Expire every pending record past its expiry. Commits.

        Pass ``include_renewals=False`` when renewal attempts are expired
        separately by the renewal service.
        """
        now = now or datetime.now(timezone.utc)
        query = self.db.query(PendingPayment).filter(
            PendingPayment.status == PendingPaymentStatus.PENDING,
            PendingPayment.expires_at.isnot(None),
            PendingPayment.expires_at <= now,
        )
        if not include_renewals:
            query = query.filter(PendingPayment.renewal_job_id.is_(None))
        stale = query.all()

        expired = 0
        for payment in stale:
            self.db.refresh(payment)
            if self.mark_expired(payment, actor):
                expired += 1
        self.db.commit()

        if expired:
            logger.info(f"Expired {expired} stale pending payments")
        return expired

    async def refresh_from_gateway(self, payment_id: str) -> Optional[PaymentStatusResult]:
        """
        Ask the gateway for the current status of a still-pending attempt.

        Returns None when the record is already terminal, has no gateway
        transaction yet, or the gateway could not be reached. Applying the
        result is left to the confirmation bridge.
        """
        if self.gateway is None:
            raise ValidationError("No gateway configured for status refresh")

        payment = self.get(payment_id)
        if payment.is_terminal or not payment.transaction_id:
            return None

        try:
            return await self.gateway.query_status(payment.transaction_id)
        except GatewayError as e:
            logger.warning(f"Status query failed for pending payment {payment_id}: {e}")
            return None
