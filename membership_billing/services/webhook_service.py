"""
Inbound gateway webhooks.

Order of work for every callback:
1. persist a WebhookEvent (status=received) exactly as it arrived;
2. verify the signature - nothing is mutated for an unverified event;
3. acknowledge already-processed duplicates without re-applying them;
4. apply the normalised outcome: payment events through the confirmation
   bridge, refund events through the refund workflow.
"""
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.orm import Session

from ..core.exceptions import ConcurrencyConflict, ValidationError, WebhookSignatureError
from ..core.logging_config import get_logger
from ..models.refund import RefundStatus
from ..models.webhook_event import WebhookEvent, WebhookEventStatus
from .audit_service import gateway_actor
from .gateways import get_gateway
from .gateways.base import GatewayStatus, PaymentGateway, WebhookNotification
from .pending_payment_service import PendingPaymentTracker
from .refund_service import RefundService
from .renewal_service import AutoRenewalService

logger = get_logger("webhooks")


@dataclass
class WebhookResult:
    event: WebhookEvent
    duplicate: bool = False
    applied: bool = False


class WebhookService:
    """Service for receiving and applying gateway callbacks"""

    def __init__(self, db: Session, gateway: Optional[PaymentGateway] = None):
        self.db = db
        self._gateway = gateway

    def _gateway_for(self, provider: str) -> PaymentGateway:
        if self._gateway is not None and self._gateway.name == provider:
            return self._gateway
        return get_gateway(provider)

    def handle(
        self,
        provider: str,
        raw_body: bytes,
        signature: Optional[str],
        request_id: Optional[str] = None
    ) -> WebhookResult:
        """
        Record, verify and apply one webhook delivery.

        Raises:
            WebhookSignatureError: signature missing or invalid
            ValidationError: unknown provider
            ConcurrencyConflict: the subscription is busy; the provider should redeliver
        """
        try:
            payload = json.loads(raw_body or b"{}")
        except ValueError:
            payload = {"raw": raw_body.decode("utf-8", errors="replace")}
        if not isinstance(payload, dict):
            payload = {"data": payload}

        event = WebhookEvent(
            provider=provider,
            event_type=str(payload.get("event") or "unknown"),
            payload=payload,
            signature=signature,
            status=WebhookEventStatus.RECEIVED,
        )
        self.db.add(event)
        self.db.commit()

        try:
            gateway = self._gateway_for(provider)
        except ValidationError as e:
            self._finish(event, WebhookEventStatus.REJECTED, str(e))
            raise

        if not gateway.verify_webhook_signature(raw_body, signature):
            self._finish(event, WebhookEventStatus.REJECTED, "Invalid webhook signature")
            logger.warning(f"Rejected {provider} webhook {event.id}: invalid signature")
            raise WebhookSignatureError("Invalid webhook signature")

        try:
            notification = gateway.parse_webhook(payload)
        except ValidationError as e:
            self._finish(event, WebhookEventStatus.FAILED, str(e))
            logger.warning(f"Malformed {provider} webhook {event.id}: {e}")
            return WebhookResult(event=event)

        event.event_type = notification.event_type
        event.external_id = notification.external_id
        event.order_reference = notification.order_reference
        self.db.commit()

        original = self._find_processed(provider, notification.external_id, exclude_id=event.id)
        if original is not None:
            self._finish(event, WebhookEventStatus.PROCESSED)
            logger.info(f"Duplicate {provider} webhook {notification.external_id} (first seen as {original.id})")
            return WebhookResult(event=event, duplicate=True)

        if notification.is_refund:
            return self._apply_refund(event, notification, gateway_actor(provider, request_id))

        tracker = PendingPaymentTracker(self.db, gateway)
        pending = None
        if notification.order_reference:
            pending = tracker.find_by_payment_id(notification.order_reference)
        if pending is None and notification.transaction_id:
            pending = tracker.find_by_transaction_id(notification.transaction_id)
        if pending is None:
            self._finish(event, WebhookEventStatus.FAILED, "No pending payment matches this notification")
            logger.warning(f"Unmatched {provider} webhook {event.id} for reference {notification.order_reference}")
            return WebhookResult(event=event)

        renewals = AutoRenewalService(self.db, gateway=gateway)
        try:
            applied = renewals.apply_payment_outcome(
                pending,
                notification.status,
                transaction_id=notification.transaction_id,
                message=notification.message,
                actor=gateway_actor(provider, request_id),
                gateway_response=payload,
                amount=notification.amount,
                currency=notification.currency,
            )
        except ConcurrencyConflict as e:
            self.db.rollback()
            self._finish(event, WebhookEventStatus.FAILED, str(e))
            raise

        self._finish(event, WebhookEventStatus.PROCESSED)
        logger.info(f"Processed {provider} webhook {event.id} for {pending.payment_id} (applied={applied})")
        return WebhookResult(event=event, applied=applied)

    def _apply_refund(self, event: WebhookEvent, notification: WebhookNotification, actor) -> WebhookResult:
        refunds = RefundService(self.db)
        refund = refunds.find_gateway_refund(notification.refund_id, notification.transaction_id)
        if refund is None:
            self._finish(event, WebhookEventStatus.FAILED, "No refund matches this notification")
            logger.warning(f"Unmatched refund webhook {event.id} for {notification.refund_id or notification.transaction_id}")
            return WebhookResult(event=event)

        applied = False
        if refund.status == RefundStatus.PROCESSING and notification.status != GatewayStatus.PENDING:
            refunds.confirm_gateway_refund(
                refund.gateway_refund_id,
                succeeded=notification.status == GatewayStatus.COMPLETED,
                actor=actor,
                message=notification.message,
                transaction_reference=notification.transaction_id,
            )
            applied = True

        self._finish(event, WebhookEventStatus.PROCESSED)
        logger.info(f"Processed refund webhook {event.id} for refund {refund.id} (applied={applied})")
        return WebhookResult(event=event, applied=applied)

    def _find_processed(self, provider: str, external_id: Optional[str], exclude_id: str) -> Optional[WebhookEvent]:
        if not external_id:
            return None
        return self.db.query(WebhookEvent).filter(
            WebhookEvent.provider == provider,
            WebhookEvent.external_id == external_id,
            WebhookEvent.status == WebhookEventStatus.PROCESSED,
            WebhookEvent.id != exclude_id,
        ).first()

    def _finish(self, event: WebhookEvent, status: WebhookEventStatus, error: Optional[str] = None) -> None:
        event.status = status
        event.error = error
        event.processed_at = datetime.now(timezone.utc)
        self.db.commit()

    def list_events(self, provider: Optional[str] = None, status: Optional[WebhookEventStatus] = None,
                    limit: int = 50) -> List[WebhookEvent]:
        query = self.db.query(WebhookEvent)
        if provider:
            query = query.filter(WebhookEvent.provider == provider)
        if status:
            query = query.filter(WebhookEvent.status == status)
        return query.order_by(WebhookEvent.received_at.desc()).limit(limit).all()
