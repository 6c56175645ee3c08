"""
Refund workflow.

A refund targets one of the known refundable kinds (``RefundTarget``) and is
paid back against the Payment that settled it. Resolvers registered per kind
turn a target into that Payment; subscriptions resolve locally, other kinds
are registered by the host application.
"""
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..core.exceptions import GatewayError, RefundError, ValidationError
from ..core.logging_config import get_logger
from ..models.payment import Payment, PaymentStatus
from ..models.refund import (
    OPEN_REFUND_STATUSES,
    Refund,
    RefundReason,
    RefundStatus,
    RefundTarget,
    RefundableKind,
)
from .audit_service import ActorContext, AuditService
from .gateways import get_gateway
from .gateways.base import GatewayStatus, PaymentGateway

logger = get_logger("refunds")

RefundableResolver = Callable[[Session, str], Optional[Payment]]

_RESOLVERS: Dict[RefundableKind, RefundableResolver] = {}


def register_refundable(kind: RefundableKind, resolver: RefundableResolver) -> None:
    """Register how a refundable kind finds the payment that settled it"""
    _RESOLVERS[RefundableKind(kind)] = resolver


def resolve_payment(db: Session, target: RefundTarget) -> Optional[Payment]:
    resolver = _RESOLVERS.get(target.kind)
    if resolver is None:
        raise RefundError(f"No refund resolver registered for '{target.kind.value}'")
    return resolver(db, target.id)


def _latest_subscription_payment(db: Session, subscription_id: str) -> Optional[Payment]:
    return (
        db.query(Payment)
        .filter(
            Payment.subscription_id == subscription_id,
            Payment.status.in_([PaymentStatus.COMPLETED, PaymentStatus.PARTIALLY_REFUNDED]),
        )
        .order_by(Payment.paid_at.desc())
        .first()
    )


register_refundable(RefundableKind.SUBSCRIPTION, _latest_subscription_payment)


class RefundService:
    """Service for requesting, deciding and executing refunds"""

    def __init__(self, db: Session, gateway: Optional[PaymentGateway] = None):
        self.db = db
        self.gateway = gateway
        self.audit = AuditService(db)

    def get_refund(self, refund_id: str) -> Refund:
        refund = self.db.query(Refund).filter(Refund.id == refund_id).first()
        if not refund:
            raise RefundError(f"Refund {refund_id} not found")
        return refund

    def list_refunds(self, status: Optional[RefundStatus] = None, limit: int = 50) -> List[Refund]:
        query = self.db.query(Refund)
        if status:
            query = query.filter(Refund.status == status)
        return query.order_by(Refund.requested_at.desc()).limit(limit).all()

    def has_open_refund(self, target: RefundTarget) -> bool:
        return self.db.query(Refund).filter(
            Refund.refundable_kind == target.kind,
            Refund.refundable_id == target.id,
            Refund.status.in_(OPEN_REFUND_STATUSES),
        ).first() is not None

    def request_refund(
        self,
        target: RefundTarget,
        actor: ActorContext,
        reason: RefundReason = RefundReason.OTHER,
        amount: Optional[Decimal] = None,
        customer_notes: Optional[str] = None,
        payment_id: Optional[str] = None
    ) -> Refund:
        """
        Open a refund request (status=pending).

        Args:
            target: What is being refunded
            actor: Who asked for it
            reason: Refund reason
            amount: Amount to refund; defaults to the payment's refundable balance
            customer_notes: Free text from the requester
            payment_id: Explicit payment, bypassing the target resolver
        """
        if self.has_open_refund(target):
            raise RefundError(f"A refund is already open for {target.kind.value} {target.id}")

        payment = self.db.get(Payment, payment_id) if payment_id else resolve_payment(self.db, target)
        if payment is None:
            raise RefundError(f"No payment found for {target.kind.value} {target.id}")
        if payment.status == PaymentStatus.REFUNDED:
            raise RefundError(f"Payment {payment.reference} has already been refunded")

        balance = Decimal(payment.amount) - Decimal(payment.refunded_amount or 0)
        try:
            refund_amount = balance if amount is None else Decimal(str(amount))
        except (InvalidOperation, ValueError):
            raise ValidationError(f"Invalid refund amount: {amount!r}")
        if refund_amount <= 0:
            raise ValidationError("Refund amount must be positive")
        if refund_amount > balance:
            raise RefundError("Refund amount cannot exceed the original payment amount")

        refund = Refund(
            refundable_kind=target.kind,
            refundable_id=target.id,
            payment_id=payment.id,
            amount=refund_amount,
            original_amount=payment.amount,
            currency=payment.currency,
            reason=RefundReason(reason),
            customer_notes=customer_notes,
            gateway=payment.gateway,
        )
        self.db.add(refund)
        self.db.flush()
        self._audit(actor, "refund.requested", refund, None, customer_notes)
        self.db.commit()

        logger.info(f"Refund {refund.id} requested for {target.kind.value} {target.id}: {refund_amount} {refund.currency}")
        return refund

    def approve(self, refund_id: str, actor: ActorContext, notes: Optional[str] = None) -> Refund:
        refund = self.get_refund(refund_id)
        before = refund.to_dict()
        refund.approve(actor.actor_id)
        if notes:
            refund.admin_notes = notes
        self._audit(actor, "refund.approved", refund, before, notes)
        self.db.commit()
        return refund

    def reject(self, refund_id: str, actor: ActorContext, reason: Optional[str] = None) -> Refund:
        refund = self.get_refund(refund_id)
        before = refund.to_dict()
        refund.reject(actor.actor_id, reason)
        self._audit(actor, "refund.rejected", refund, before, reason)
        self.db.commit()
        return refund

    async def process_refund(self, refund_id: str, actor: ActorContext) -> Refund:
        """
        Send an approved (or still pending) refund to the gateway.

        A pending refund is approved implicitly by the processing actor.

        Raises:
            RefundError: the refund cannot be processed or the gateway refused it
        """
        refund = self.get_refund(refund_id)
        if not refund.can_be_processed():
            raise RefundError(f"Refund cannot be processed in '{refund.status.value}' status")

        before = refund.to_dict()
        if refund.status == RefundStatus.PENDING:
            refund.approve(actor.actor_id)
        refund.mark_processing()
        self._audit(actor, "refund.processing", refund, before)
        self.db.commit()

        payment = self.db.get(Payment, refund.payment_id)
        gateway = self.gateway or get_gateway(refund.gateway)
        before = refund.to_dict()

        try:
            result = await gateway.refund(
                payment.transaction_id or payment.reference,
                Decimal(refund.amount),
                reason=refund.reason_display,
            )
        except (GatewayError, ValidationError) as e:
            self._fail(refund, actor, before, str(e))
            raise RefundError(f"Refund {refund.id} failed: {e}") from e

        if result.status == GatewayStatus.FAILED:
            self._fail(refund, actor, before, result.message or "Refund declined by gateway", result.raw)
            raise RefundError(f"Refund {refund.id} declined by gateway")

        refund.gateway_refund_id = result.transaction_id
        refund.gateway_response = result.raw
        if result.status == GatewayStatus.COMPLETED:
            self._complete(refund, payment, result.transaction_id, result.raw)
            self._audit(actor, "refund.completed", refund, before)
        self.db.commit()

        logger.info(f"Refund {refund.id} processed: status {refund.status.value}")
        return refund

    def find_gateway_refund(self, gateway_refund_id: Optional[str],
                            transaction_reference: Optional[str] = None) -> Optional[Refund]:
        """
        Refund a gateway callback refers to: by the gateway's refund id, or
        else the oldest refund still processing against the referenced payment.
        """
        if gateway_refund_id:
            refund = self.db.query(Refund).filter(Refund.gateway_refund_id == gateway_refund_id).first()
            if refund is not None:
                return refund
        if not transaction_reference:
            return None
        return (
            self.db.query(Refund)
            .join(Payment, Payment.id == Refund.payment_id)
            .filter(
                Refund.status == RefundStatus.PROCESSING,
                or_(Payment.transaction_id == transaction_reference, Payment.reference == transaction_reference),
            )
            .order_by(Refund.processed_at.asc())
            .first()
        )

    def confirm_gateway_refund(self, gateway_refund_id: Optional[str], succeeded: bool, actor: ActorContext,
                               message: Optional[str] = None,
                               transaction_reference: Optional[str] = None) -> Optional[Refund]:
        """Resolve a refund the gateway finished asynchronously"""
        refund = self.find_gateway_refund(gateway_refund_id, transaction_reference)
        if refund is None:
            logger.warning(f"No refund found for gateway refund {gateway_refund_id or transaction_reference}")
            return None
        if refund.status != RefundStatus.PROCESSING:
            return refund

        before = refund.to_dict()
        if succeeded:
            self._complete(refund, self.db.get(Payment, refund.payment_id), gateway_refund_id, None)
            self._audit(actor, "refund.completed", refund, before, message)
            self.db.commit()
        else:
            self._fail(refund, actor, before, message or "Refund failed at gateway")
        return refund

    def _complete(self, refund: Refund, payment: Payment, gateway_refund_id, gateway_response) -> None:
        refund.mark_completed(gateway_refund_id, gateway_response)
        refunded = Decimal(payment.refunded_amount or 0) + Decimal(refund.amount)
        payment.refunded_amount = refunded
        payment.status = PaymentStatus.REFUNDED if refunded >= Decimal(payment.amount) \
            else PaymentStatus.PARTIALLY_REFUNDED

    def _fail(self, refund: Refund, actor: ActorContext, before, error: str, gateway_response=None) -> None:
        refund.mark_failed({"error": error, **(gateway_response or {})})
        self._audit(actor, "refund.failed", refund, before, error)
        self.db.commit()
        logger.error(f"Refund {refund.id} failed: {error}")

    def _audit(self, actor, action, refund, before, reason=None) -> None:
        self.audit.log_action(
            actor=actor,
            action=action,
            target_type="refund",
            target_id=refund.id,
            before_state=before,
            after_state=refund.to_dict(),
            reason=reason,
            metadata={"refundable": f"{refund.refundable_kind.value}:{refund.refundable_id}"},
        )
