"""
Auto-renewal scheduler and payment confirmation bridge.

One renewal attempt for a subscription runs entirely under that
subscription's Redis lease:

1. an AutoRenewalJob row is created and moved to processing, the enhancement
   goes to payment_pending and a PendingPayment is opened for the charge;
2. the gateway is called (the only suspension point);
3. the outcome drives the job, the pending payment and the enhancement state
   machine in a single commit.

Gateway results that arrive later (webhook or status poll) are applied through
``apply_payment_outcome`` so synchronous and asynchronous confirmations share
one code path.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..core.config import settings
from ..core.exceptions import (
    ConcurrencyConflict,
    GatewayError,
    SubscriptionNotFoundError,
    ValidationError,
)
from ..core.logging_config import get_logger, log_renewal_attempt
from ..core.redis_lock import subscription_lease
from ..models.auto_renewal_job import (
    AutoRenewalJob,
    IN_FLIGHT_JOB_STATUSES,
    RenewalAttemptType,
    RenewalJobStatus,
)
from ..models.enhancement import (
    EnhancementStatus,
    PaymentFailureState,
    RETRYABLE_FAILURE_STATES,
    SubscriptionEnhancement,
)
from ..models.payment import Payment
from ..models.pending_payment import PendingPayment, PendingPaymentStatus
from ..models.subscription import Subscription
from .audit_service import ActorContext, AuditService, SYSTEM_ACTOR
from .gateways import get_gateway
from .gateways.base import GatewayStatus, PaymentGateway
from .pending_payment_service import PendingPaymentTracker, generate_payment_id
from .retry_policy import RetryPolicy, build_retry_policy

logger = get_logger("auto-renewal")


def _amount_mismatch(pending: PendingPayment, amount: Optional[Decimal], currency: Optional[str]) -> Optional[str]:
    """Describe how a gateway-reported amount differs from what was charged, if it does"""
    if amount is not None and Decimal(str(amount)) != Decimal(pending.amount):
        return f"Amount mismatch: gateway reported {amount}, expected {pending.amount}"
    if currency and pending.currency and currency.upper() != pending.currency.upper():
        return f"Currency mismatch: gateway reported {currency}, expected {pending.currency}"
    return None


class AutoRenewalService:
    """Drives renewal attempts and their outcomes through the enhancement state machine"""

    def __init__(
        self,
        db: Session,
        gateway: Optional[PaymentGateway] = None,
        retry_policy: Optional[RetryPolicy] = None
    ):
        self.db = db
        self.gateway = gateway or get_gateway()
        self.retry_policy = retry_policy or build_retry_policy()
        self.audit = AuditService(db)
        self.tracker = PendingPaymentTracker(db, self.gateway)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_subscription(self, subscription_id: str) -> Subscription:
        subscription = self.db.query(Subscription).filter(Subscription.id == subscription_id).first()
        if not subscription:
            raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")
        return subscription

    def get_or_create_enhancement(self, subscription: Subscription) -> SubscriptionEnhancement:
        enhancement = subscription.enhancement
        if enhancement is None:
            enhancement = SubscriptionEnhancement(subscription_id=subscription.id)
            subscription.enhancement = enhancement
            self.db.add(enhancement)
            self.db.flush()
        return enhancement

    def find_due_subscriptions(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> List[Subscription]:
        """
        Subscriptions that need a renewal attempt now:
        active ones ending within the lead window, and failed ones whose retry is due.
        """
        now = now or datetime.now(timezone.utc)
        lead_cutoff = now + timedelta(hours=settings.RENEWAL_LEAD_HOURS)

        due_renewal = and_(
            Subscription.is_active.is_(True),
            Subscription.ends_at.isnot(None),
            Subscription.ends_at <= lead_cutoff,
            or_(
                SubscriptionEnhancement.id.is_(None),
                SubscriptionEnhancement.status == EnhancementStatus.ACTIVE,
            ),
        )
        due_retry = and_(
            SubscriptionEnhancement.status == EnhancementStatus.PAYMENT_FAILED,
            SubscriptionEnhancement.payment_failure_state.in_(list(RETRYABLE_FAILURE_STATES)),
            SubscriptionEnhancement.renewal_attempt_count < SubscriptionEnhancement.max_renewal_attempts,
            SubscriptionEnhancement.next_retry_at.isnot(None),
            SubscriptionEnhancement.next_retry_at <= now,
        )

        subscriptions = (
            self.db.query(Subscription)
            .outerjoin(SubscriptionEnhancement, SubscriptionEnhancement.subscription_id == Subscription.id)
            .filter(Subscription.cancelled_at.is_(None), or_(due_renewal, due_retry))
            .order_by(Subscription.ends_at.asc(), Subscription.id.asc())
            .limit(limit or settings.RENEWAL_BATCH_SIZE)
            .all()
        )
        return [
            s for s in subscriptions
            if s.enhancement is None or s.enhancement.is_active() or s.enhancement.is_retryable()
        ]

    def has_in_flight_job(self, subscription_id: str) -> bool:
        return self.db.query(AutoRenewalJob).filter(
            AutoRenewalJob.subscription_id == subscription_id,
            AutoRenewalJob.status.in_(IN_FLIGHT_JOB_STATUSES),
        ).first() is not None

    def list_jobs(self, subscription_id: Optional[str] = None, status: Optional[RenewalJobStatus] = None,
                  limit: int = 100) -> List[AutoRenewalJob]:
        query = self.db.query(AutoRenewalJob)
        if subscription_id:
            query = query.filter(AutoRenewalJob.subscription_id == subscription_id)
        if status:
            query = query.filter(AutoRenewalJob.status == status)
        return query.order_by(AutoRenewalJob.scheduled_at.desc()).limit(limit).all()

    # ------------------------------------------------------------------
    # Renewal attempts
    # ------------------------------------------------------------------

    async def run_renewal_pass(self, now: Optional[datetime] = None, actor: ActorContext = SYSTEM_ACTOR) -> Dict[str, int]:
        """Attempt every due subscription once. One failure never stops the pass."""
        now = now or datetime.now(timezone.utc)
        due = self.find_due_subscriptions(now)
        summary = {"due": len(due), "succeeded": 0, "failed": 0, "pending": 0, "skipped": 0, "errors": 0}

        for subscription in due:
            subscription_id = subscription.id
            try:
                job = await self.process_subscription_renewal(subscription, actor=actor, now=now)
            except ConcurrencyConflict as e:
                logger.warning(f"Skipping subscription {subscription_id}: {e}")
                summary["skipped"] += 1
                continue
            except Exception as e:
                self.db.rollback()
                logger.exception(f"Renewal failed for subscription {subscription_id}: {e}")
                summary["errors"] += 1
                continue

            if job is None:
                summary["skipped"] += 1
            elif job.status == RenewalJobStatus.SUCCESS:
                summary["succeeded"] += 1
            elif job.status == RenewalJobStatus.FAILED:
                summary["failed"] += 1
            else:
                summary["pending"] += 1

        logger.info(f"Renewal pass finished: {summary}")
        return summary

    async def process_subscription_renewal(
        self,
        subscription: Subscription,
        actor: ActorContext = SYSTEM_ACTOR,
        now: Optional[datetime] = None
    ) -> Optional[AutoRenewalJob]:
        """
        Make one renewal attempt for ``subscription``.

        Returns the job, or None when the subscription was not eligible.

        Raises:
            ConcurrencyConflict: the lease is held elsewhere or the enhancement
                changed underneath us
        """
        with subscription_lease(subscription.id, timeout=settings.RENEWAL_LEASE_SECONDS):
            try:
                return await self._attempt_renewal(subscription, actor, now or datetime.now(timezone.utc))
            except StaleDataError as e:
                self.db.rollback()
                raise ConcurrencyConflict(f"Subscription {subscription.id} was modified concurrently") from e

    async def _attempt_renewal(
        self,
        subscription: Subscription,
        actor: ActorContext,
        now: datetime
    ) -> Optional[AutoRenewalJob]:
        self.db.refresh(subscription)
        if subscription.enhancement is not None:
            self.db.refresh(subscription.enhancement)
        enhancement = self.get_or_create_enhancement(subscription)

        if not self._is_eligible(subscription, enhancement, now):
            return None
        if self.has_in_flight_job(subscription.id):
            logger.info(f"Subscription {subscription.id} already has a renewal in flight")
            return None

        plan = subscription.plan
        before = enhancement.snapshot()
        job = AutoRenewalJob(
            subscription_id=subscription.id,
            user_id=subscription.subscriber_id,
            attempt_type=RenewalAttemptType.RETRY if enhancement.renewal_attempt_count else RenewalAttemptType.INITIAL,
            attempt_number=enhancement.renewal_attempt_count + 1,
            max_attempts=enhancement.max_renewal_attempts,
            scheduled_at=now,
            amount=plan.price,
            currency=plan.currency,
            payment_method=enhancement.payment_method,
            reference=generate_payment_id(),
        )
        self.db.add(job)
        self.db.flush()
        job.mark_processing(now)
        enhancement.mark_payment_pending()

        try:
            pending = self.tracker.create(
                {
                    "payment_id": job.reference,
                    "user_id": subscription.subscriber_id,
                    "subscription_id": subscription.id,
                    "plan_id": plan.id,
                    "renewal_job_id": job.id,
                    "amount": plan.price,
                    "currency": plan.currency,
                    "gateway": self.gateway.name,
                    "metadata": {"attempt_number": job.attempt_number},
                },
                actor=actor,
                now=now,
            )
        except ValidationError as e:
            self._apply_failure(enhancement, job, None, str(e), actor, now, exhausted=True)
            self._audit_enhancement(actor, "subscription_enhancement.renewal_failed", enhancement, before, str(e))
            self._commit()
            return job

        # Job, pending payment and payment_pending state are visible before the charge goes out
        self._commit()
        before = enhancement.snapshot()

        try:
            result = await self.gateway.initiate(
                amount=Decimal(plan.price),
                currency=plan.currency,
                method=enhancement.payment_method,
                reference=pending.payment_id,
                metadata={
                    "subscription_id": subscription.id,
                    "user_id": subscription.subscriber_id,
                    "email": (enhancement.enhancement_metadata or {}).get("email"),
                },
            )
        except ValidationError as e:
            self._apply_failure(enhancement, job, pending, str(e), actor, now, exhausted=True)
        except GatewayError as e:
            self._apply_failure(enhancement, job, pending, str(e), actor, now, gateway_response=e.response_data)
        else:
            self.tracker.attach_transaction_id(pending, result.transaction_id)
            job.transaction_id = result.transaction_id
            job.gateway_response = result.raw

            if result.status == GatewayStatus.COMPLETED:
                self._settle_success(subscription, enhancement, job, pending, result.transaction_id,
                                     actor, now, result.raw)
            elif result.status == GatewayStatus.FAILED:
                self._apply_failure(enhancement, job, pending, result.message or "Payment declined",
                                    actor, now, gateway_response=result.raw)
            else:
                log_renewal_attempt(subscription.id, job.id, job.attempt_number, "awaiting confirmation",
                                    transaction_id=result.transaction_id)

        self._audit_enhancement(actor, f"subscription_enhancement.renewal_{job.status.value}", enhancement, before,
                                job.error_message)
        self._commit()
        return job

    def _is_eligible(self, subscription: Subscription, enhancement: SubscriptionEnhancement, now: datetime) -> bool:
        if subscription.cancelled_at is not None or enhancement.is_cancelled():
            return False
        if enhancement.is_active():
            return True
        if enhancement.status == EnhancementStatus.PAYMENT_FAILED:
            return (
                enhancement.is_retryable()
                and enhancement.next_retry_at is not None
                and enhancement.next_retry_at <= now
            )
        # payment_pending waits for its confirmation; grace_period/suspended need remediation
        return False

    def _apply_failure(
        self,
        enhancement: SubscriptionEnhancement,
        job: AutoRenewalJob,
        pending: Optional[PendingPayment],
        reason: str,
        actor: ActorContext,
        now: datetime,
        exhausted: bool = False,
        gateway_response: Optional[Dict[str, Any]] = None
    ) -> None:
        """Failed attempt: count it, then either schedule a retry or open the grace period"""
        if job.status in IN_FLIGHT_JOB_STATUSES:
            job.mark_failed(reason, gateway_response)
        if pending is not None:
            self.tracker.mark_failed(pending, reason, actor)

        enhancement.increment_retry_attempts(now)
        enhancement.mark_payment_failed(
            PaymentFailureState.EXHAUSTED if exhausted else PaymentFailureState.RETRY_DELAYED,
            reason,
        )

        if enhancement.is_retryable():
            retry_at = self.retry_policy.next_retry_at(enhancement.renewal_attempt_count, now)
            enhancement.schedule_retry(retry_at, reason)
            job.next_retry_at = retry_at
            outcome = f"failed, retry at {retry_at.isoformat()}"
        else:
            enhancement.enter_grace_period(now=now)
            outcome = "failed, grace period entered"

        log_renewal_attempt(enhancement.subscription_id, job.id, job.attempt_number, outcome, reason=reason)

    def _settle_success(
        self,
        subscription: Subscription,
        enhancement: SubscriptionEnhancement,
        job: Optional[AutoRenewalJob],
        pending: PendingPayment,
        transaction_id: Optional[str],
        actor: ActorContext,
        now: datetime,
        gateway_response: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Confirmed charge: record it, extend the subscription and reactivate the enhancement"""
        if transaction_id and not pending.transaction_id:
            self.tracker.attach_transaction_id(pending, transaction_id)
        if not self.tracker.mark_completed(pending, actor, now):
            logger.warning(
                f"Confirmation for pending payment {pending.payment_id} ignored (status {pending.status.value})"
            )
            if job is not None and job.status in IN_FLIGHT_JOB_STATUSES:
                self._apply_failure(enhancement, job, None, "Payment confirmed after expiry", actor, now)
            return False

        if job is not None and job.status == RenewalJobStatus.PROCESSING:
            job.mark_success(transaction_id, gateway_response)

        self._record_payment(pending, transaction_id or pending.transaction_id, now)

        period_days = subscription.plan.billing_period_days if subscription.plan else settings.DEFAULT_BILLING_PERIOD_DAYS
        base = subscription.ends_at if subscription.ends_at and subscription.ends_at > now else now
        subscription.ends_at = base + timedelta(days=period_days)
        subscription.is_active = True

        if enhancement.is_cancelled():
            logger.warning(f"Payment {pending.payment_id} settled for cancelled subscription {subscription.id}")
        else:
            if enhancement.status != EnhancementStatus.PAYMENT_PENDING:
                enhancement.mark_payment_pending()
            enhancement.mark_active()

        if job is not None:
            log_renewal_attempt(subscription.id, job.id, job.attempt_number, "succeeded",
                                transaction_id=transaction_id, ends_at=subscription.ends_at.isoformat())
        return True

    def _record_payment(self, pending: PendingPayment, transaction_id: Optional[str], now: datetime) -> Payment:
        payment = self.db.query(Payment).filter(Payment.reference == pending.payment_id).first()
        if payment:
            return payment
        payment = Payment(
            user_id=pending.user_id,
            subscription_id=pending.subscription_id,
            reference=pending.payment_id,
            transaction_id=transaction_id,
            amount=pending.amount,
            refunded_amount=Decimal("0"),
            currency=pending.currency,
            gateway=pending.gateway,
            paid_at=now,
            payment_metadata={"renewal_job_id": pending.renewal_job_id},
        )
        self.db.add(payment)
        return payment

    # ------------------------------------------------------------------
    # Asynchronous confirmation
    # ------------------------------------------------------------------

    def apply_payment_outcome(
        self,
        pending: PendingPayment,
        status: GatewayStatus,
        transaction_id: Optional[str] = None,
        message: Optional[str] = None,
        actor: ActorContext = SYSTEM_ACTOR,
        now: Optional[datetime] = None,
        gateway_response: Optional[Dict[str, Any]] = None,
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None
    ) -> bool:
        """
        Resolve a pending payment from a gateway result (webhook or poll).

        Returns True when state changed. Terminal records and PENDING results
        are acknowledged without changes. A COMPLETED result whose reported
        amount or currency differs from the pending payment is applied as a
        failed payment.
        """
        if pending.is_terminal or status == GatewayStatus.PENDING:
            return False

        mismatch = _amount_mismatch(pending, amount, currency)
        if status == GatewayStatus.COMPLETED and mismatch:
            logger.warning(f"Not settling pending payment {pending.payment_id}: {mismatch}")
            status, message = GatewayStatus.FAILED, mismatch

        now = now or datetime.now(timezone.utc)
        if not pending.subscription_id:
            changed = self._resolve_standalone(pending, status, transaction_id, message, actor, now)
            self._commit()
            return changed

        with subscription_lease(pending.subscription_id, timeout=settings.RENEWAL_LEASE_SECONDS):
            self.db.refresh(pending)
            if pending.is_terminal:
                return False

            subscription = self.get_subscription(pending.subscription_id)
            enhancement = self.get_or_create_enhancement(subscription)
            job = self.db.get(AutoRenewalJob, pending.renewal_job_id) if pending.renewal_job_id else None
            before = enhancement.snapshot()

            if status == GatewayStatus.COMPLETED:
                changed = self._settle_success(subscription, enhancement, job, pending, transaction_id,
                                               actor, now, gateway_response)
            elif job is not None and job.status in IN_FLIGHT_JOB_STATUSES:
                self._apply_failure(enhancement, job, pending, message or "Payment failed", actor, now,
                                    gateway_response=gateway_response)
                changed = True
            else:
                changed = self.tracker.mark_failed(pending, message or "Payment failed", actor)

            self._audit_enhancement(actor, f"subscription_enhancement.payment_{status.value.lower()}",
                                    enhancement, before, message)
            self._commit()
            return changed

    def _resolve_standalone(self, pending, status, transaction_id, message, actor, now) -> bool:
        if status == GatewayStatus.COMPLETED:
            if transaction_id and not pending.transaction_id:
                self.tracker.attach_transaction_id(pending, transaction_id)
            if not self.tracker.mark_completed(pending, actor, now):
                return False
            self._record_payment(pending, transaction_id or pending.transaction_id, now)
            return True
        return self.tracker.mark_failed(pending, message or "Payment failed", actor)

    async def confirm_pending_payment(self, payment_id: str, actor: ActorContext = SYSTEM_ACTOR) -> bool:
        """Poll the gateway for a pending payment and apply the result"""
        result = await self.tracker.refresh_from_gateway(payment_id)
        if result is None:
            return False
        pending = self.tracker.get(payment_id)
        return self.apply_payment_outcome(
            pending, result.status, transaction_id=result.transaction_id, message=result.message,
            actor=actor, gateway_response=result.raw, amount=result.amount, currency=result.currency,
        )

    def expire_pending_payments(self, now: Optional[datetime] = None, actor: ActorContext = SYSTEM_ACTOR) -> int:
        """
        Reaper pass. Renewal attempts whose confirmation never arrived count as
        failed attempts; other stale records are just expired.
        """
        now = now or datetime.now(timezone.utc)
        stale = self.db.query(PendingPayment).filter(
            PendingPayment.status == PendingPaymentStatus.PENDING,
            PendingPayment.renewal_job_id.isnot(None),
            PendingPayment.expires_at <= now,
        ).all()

        expired = 0
        for pending in stale:
            try:
                if self._expire_renewal_payment(pending, actor, now):
                    expired += 1
            except ConcurrencyConflict as e:
                logger.warning(f"Could not expire pending payment {pending.payment_id}: {e}")

        return expired + self.tracker.expire_stale(now, actor, include_renewals=False)

    def _expire_renewal_payment(self, pending: PendingPayment, actor: ActorContext, now: datetime) -> bool:
        with subscription_lease(pending.subscription_id, timeout=settings.RENEWAL_LEASE_SECONDS):
            # A confirmation may have landed between the reaper query and the lease
            self.db.refresh(pending)
            if pending.is_terminal:
                return False

            subscription = self.get_subscription(pending.subscription_id)
            self.db.refresh(subscription)
            enhancement = self.get_or_create_enhancement(subscription)
            self.db.refresh(enhancement)
            job = self.db.get(AutoRenewalJob, pending.renewal_job_id)
            if job is not None:
                self.db.refresh(job)
            before = enhancement.snapshot()

            self.tracker.mark_expired(pending, actor)
            if job is not None and job.status in IN_FLIGHT_JOB_STATUSES:
                self._apply_failure(enhancement, job, None, "Payment confirmation timed out", actor, now)
                self._audit_enhancement(actor, "subscription_enhancement.renewal_failed", enhancement, before,
                                        "Payment confirmation timed out")
            self._commit()
            return True

    # ------------------------------------------------------------------
    # Grace period expiry and cancellation
    # ------------------------------------------------------------------

    def sweep_expired_grace_periods(self, now: Optional[datetime] = None, actor: ActorContext = SYSTEM_ACTOR) -> int:
        """Suspend every enhancement whose grace period has ended and deactivate its subscription"""
        now = now or datetime.now(timezone.utc)
        expired = self.db.query(SubscriptionEnhancement).filter(
            SubscriptionEnhancement.status == EnhancementStatus.GRACE_PERIOD,
            SubscriptionEnhancement.grace_period_ends_at <= now,
        ).all()

        suspended = 0
        for enhancement in expired:
            try:
                with subscription_lease(enhancement.subscription_id, timeout=settings.RENEWAL_LEASE_SECONDS):
                    self.db.refresh(enhancement)
                    if not enhancement.has_grace_period_ended(now):
                        continue
                    before = enhancement.snapshot()
                    enhancement.suspend(now)
                    enhancement.subscription.is_active = False
                    self._audit_enhancement(actor, "subscription_enhancement.suspended", enhancement, before,
                                            "Grace period ended")
                    self._commit()
                    suspended += 1
            except ConcurrencyConflict as e:
                logger.warning(f"Could not suspend subscription {enhancement.subscription_id}: {e}")

        if suspended:
            logger.info(f"Suspended {suspended} subscriptions after grace period expiry")
        return suspended

    def cancel_subscription(
        self,
        subscription_id: str,
        actor: ActorContext,
        reason: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> SubscriptionEnhancement:
        """Cancel renewals for a subscription; cancelling twice is a no-op"""
        now = now or datetime.now(timezone.utc)
        with subscription_lease(subscription_id, timeout=settings.RENEWAL_LEASE_SECONDS):
            subscription = self.get_subscription(subscription_id)
            enhancement = self.get_or_create_enhancement(subscription)
            before = enhancement.snapshot()

            if not enhancement.cancel():
                return enhancement

            subscription.cancelled_at = now
            enhancement.failure_reason = reason or enhancement.failure_reason

            for job in self.db.query(AutoRenewalJob).filter(
                AutoRenewalJob.subscription_id == subscription_id,
                AutoRenewalJob.status.in_(IN_FLIGHT_JOB_STATUSES),
            ).all():
                job.cancel()
            for pending in self.tracker.find_open(subscription.subscriber_id, subscription_id):
                self.tracker.mark_cancelled(pending, reason or "Subscription cancelled", actor)

            self._audit_enhancement(actor, "subscription_enhancement.cancelled", enhancement, before, reason)
            self._commit()

        logger.info(f"Subscription {subscription_id} cancelled by {actor.actor_id}")
        return enhancement

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _audit_enhancement(self, actor, action, enhancement, before, reason=None) -> None:
        after = enhancement.snapshot()
        if after == before:
            return
        self.audit.log_action(
            actor=actor,
            action=action,
            target_type="subscription",
            target_id=enhancement.subscription_id,
            before_state=before,
            after_state=after,
            reason=reason,
        )

    def _commit(self) -> None:
        try:
            self.db.commit()
        except StaleDataError as e:
            self.db.rollback()
            raise ConcurrencyConflict("Subscription billing state was modified concurrently") from e
