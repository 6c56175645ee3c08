"""
Tests for the pending payment tracker.

Tests cover:
- Creation, expiry window and validation
- Supersession of open attempts for the same (user, subscription)
- One-way terminal transitions with audit entries
- The stale-payment reaper and gateway status refresh
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from membership_billing.core.exceptions import (
    InvalidStateTransition,
    PendingPaymentNotFoundError,
    ValidationError,
)
from membership_billing.models.pending_payment import PendingPaymentStatus
from membership_billing.services.audit_service import AuditLog, SYSTEM_ACTOR
from membership_billing.services.gateways.base import GatewayStatus
from membership_billing.services.pending_payment_service import PendingPaymentTracker


@pytest.fixture
def tracker(db, gateway):
    return PendingPaymentTracker(db, gateway)


def payment_data(subscription, **overrides):
    data = {
        "user_id": subscription.subscriber_id,
        "subscription_id": subscription.id,
        "plan_id": subscription.plan_id,
        "amount": Decimal("1500.00"),
        "currency": "KES",
        "gateway": "mock",
    }
    data.update(overrides)
    return data


class TestCreate:
    """Test opening a pending payment"""

    def test_create_sets_pending_and_one_hour_expiry(self, db, tracker, subscription, now):
        payment = tracker.create(payment_data(subscription), now=now)
        db.commit()

        assert payment.status == PendingPaymentStatus.PENDING
        assert payment.payment_id.startswith("PAY-")
        assert payment.transaction_id is None
        assert payment.expires_at == now + timedelta(hours=1)
        assert payment.can_be_completed(now) is True

    def test_create_is_audited(self, db, tracker, subscription, now):
        payment = tracker.create(payment_data(subscription), now=now)
        db.commit()

        entry = db.query(AuditLog).filter(AuditLog.action == "pending_payment.created").one()
        assert entry.target_id == payment.payment_id
        assert entry.actor_id == SYSTEM_ACTOR.actor_id

    def test_create_requires_user(self, tracker, subscription, now):
        with pytest.raises(ValidationError):
            tracker.create(payment_data(subscription, user_id=None), now=now)

    @pytest.mark.parametrize("amount,currency", [
        (Decimal("0"), "KES"),
        (Decimal("-5.00"), "KES"),
        ("abc", "KES"),
        (Decimal("10.005"), "KES"),
        (Decimal("10.00"), "XYZ"),
    ])
    def test_create_rejects_malformed_charge(self, tracker, subscription, now, amount, currency):
        with pytest.raises(ValidationError):
            tracker.create(payment_data(subscription, amount=amount, currency=currency), now=now)

    def test_new_attempt_supersedes_open_one(self, db, tracker, subscription, now):
        first = tracker.create(payment_data(subscription), now=now)
        db.commit()

        second = tracker.create(payment_data(subscription), now=now + timedelta(minutes=5))
        db.commit()

        db.refresh(first)
        assert first.status == PendingPaymentStatus.CANCELLED
        assert second.status == PendingPaymentStatus.PENDING
        open_payments = tracker.find_open(subscription.subscriber_id, subscription.id)
        assert [p.payment_id for p in open_payments] == [second.payment_id]

    def test_other_subscription_is_not_superseded(self, db, tracker, subscription, now):
        first = tracker.create(payment_data(subscription), now=now)
        tracker.create(payment_data(subscription, subscription_id=None), now=now)
        db.commit()

        db.refresh(first)
        assert first.status == PendingPaymentStatus.PENDING


class TestLookup:
    """Test lookups"""

    def test_find_by_payment_id_missing_returns_none(self, tracker):
        assert tracker.find_by_payment_id("PAY-NOPE") is None

    def test_get_missing_raises(self, tracker):
        with pytest.raises(PendingPaymentNotFoundError):
            tracker.get("PAY-NOPE")

    def test_attach_transaction_id_once(self, db, tracker, subscription, now):
        payment = tracker.create(payment_data(subscription), now=now)
        tracker.attach_transaction_id(payment, "TXN-1")
        tracker.attach_transaction_id(payment, "TXN-1")
        db.flush()

        assert tracker.find_by_transaction_id("TXN-1").payment_id == payment.payment_id
        with pytest.raises(ValidationError):
            tracker.attach_transaction_id(payment, "TXN-2")


class TestTerminalTransitions:
    """Test one-way terminal transitions"""

    def test_mark_completed(self, db, tracker, subscription, now):
        payment = tracker.create(payment_data(subscription), now=now)

        assert tracker.mark_completed(payment, now=now + timedelta(minutes=10)) is True
        assert payment.status == PendingPaymentStatus.COMPLETED
        assert payment.completed_at == now + timedelta(minutes=10)

    def test_completion_after_expiry_expires_instead(self, db, tracker, subscription, now):
        payment = tracker.create(payment_data(subscription), now=now)

        assert tracker.mark_completed(payment, now=now + timedelta(hours=2)) is False
        assert payment.status == PendingPaymentStatus.EXPIRED
        assert payment.can_be_completed(now + timedelta(hours=2)) is False

    def test_mark_failed_records_reason(self, db, tracker, subscription, now):
        payment = tracker.create(payment_data(subscription), now=now)

        tracker.mark_failed(payment, "Card declined")

        assert payment.status == PendingPaymentStatus.FAILED
        assert payment.payment_metadata["failure_reason"] == "Card declined"

    @pytest.mark.parametrize("finish", ["completed", "failed", "expired", "cancelled"])
    def test_terminal_record_never_moves_again(self, db, tracker, subscription, now, finish):
        payment = tracker.create(payment_data(subscription), now=now)
        {
            "completed": lambda: tracker.mark_completed(payment, now=now),
            "failed": lambda: tracker.mark_failed(payment, "declined"),
            "expired": lambda: tracker.mark_expired(payment),
            "cancelled": lambda: tracker.mark_cancelled(payment, "user cancelled"),
        }[finish]()
        final_status = payment.status

        assert tracker.mark_completed(payment, now=now) is False
        assert tracker.mark_failed(payment, "late") is False
        assert tracker.mark_expired(payment) is False
        assert tracker.mark_cancelled(payment) is False
        assert payment.status == final_status

    def test_entity_refuses_terminal_rewrite(self, db, tracker, subscription, now):
        payment = tracker.create(payment_data(subscription), now=now)
        tracker.mark_failed(payment, "declined")

        with pytest.raises(InvalidStateTransition):
            payment.mark_completed()

    def test_every_transition_is_audited(self, db, tracker, subscription, now):
        payment = tracker.create(payment_data(subscription), now=now)
        tracker.mark_failed(payment, "declined")
        tracker.mark_expired(payment)
        db.commit()

        actions = [a for (a,) in db.query(AuditLog.action).filter(AuditLog.target_id == payment.payment_id)]
        assert sorted(actions) == ["pending_payment.created", "pending_payment.failed"]


class TestReaper:
    """Test expire_stale"""

    def test_expire_stale_only_touches_overdue(self, db, tracker, subscription, plan, now):
        stale = tracker.create(payment_data(subscription), now=now - timedelta(hours=2))
        fresh = tracker.create(payment_data(subscription, subscription_id=None), now=now)
        db.commit()

        assert tracker.expire_stale(now) == 1

        db.refresh(stale)
        db.refresh(fresh)
        assert stale.status == PendingPaymentStatus.EXPIRED
        assert fresh.status == PendingPaymentStatus.PENDING

    def test_expire_stale_is_repeatable(self, db, tracker, subscription, now):
        tracker.create(payment_data(subscription), now=now - timedelta(hours=2))
        db.commit()

        assert tracker.expire_stale(now) == 1
        assert tracker.expire_stale(now) == 0


class TestRefreshFromGateway:
    """Test polling the gateway"""

    @pytest.mark.asyncio
    async def test_refresh_returns_gateway_status(self, db, tracker, gateway, subscription, now):
        gateway.queue_outcome(GatewayStatus.PENDING)
        payment = tracker.create(payment_data(subscription), now=now)
        result = await gateway.initiate(payment.amount, "KES", None, payment.payment_id)
        tracker.attach_transaction_id(payment, result.transaction_id)
        db.commit()
        gateway.settle(result.transaction_id, GatewayStatus.COMPLETED)

        status = await tracker.refresh_from_gateway(payment.payment_id)

        assert status.status == GatewayStatus.COMPLETED
        assert status.order_reference == payment.payment_id

    @pytest.mark.asyncio
    async def test_refresh_skips_records_without_transaction(self, db, tracker, subscription, now):
        payment = tracker.create(payment_data(subscription), now=now)
        db.commit()

        assert await tracker.refresh_from_gateway(payment.payment_id) is None

    @pytest.mark.asyncio
    async def test_refresh_swallows_gateway_errors(self, db, tracker, subscription, now):
        payment = tracker.create(payment_data(subscription), now=now)
        tracker.attach_transaction_id(payment, "MOCK-UNKNOWN")
        db.commit()

        assert await tracker.refresh_from_gateway(payment.payment_id) is None
