"""
Unit tests for the subscription enhancement state machine.

Tests cover:
- Payment pending / failed / active transitions
- Retry counting and exhaustion
- Grace period entry, expiry and suspension
- Cancellation
- Legacy status aliases at the API boundary
"""

import pytest
from datetime import datetime, timedelta, timezone

from membership_billing.core.exceptions import InvalidStateTransition, ValidationError
from membership_billing.models.enhancement import (
    EnhancementStatus,
    PaymentFailureState,
    SubscriptionEnhancement,
    parse_status,
    render_status,
)

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def enhancement():
    """Fresh enhancement, not persisted"""
    return SubscriptionEnhancement(subscription_id="sub-123", max_renewal_attempts=3)


def fail_once(enhancement, reason="Card declined"):
    enhancement.mark_payment_failed(PaymentFailureState.RETRY_DELAYED, reason)
    enhancement.increment_retry_attempts(NOW)


class TestDefaults:
    """Test a new enhancement's initial state"""

    def test_starts_active_with_clean_failure_record(self, enhancement):
        assert enhancement.status == EnhancementStatus.ACTIVE
        assert enhancement.payment_failure_state == PaymentFailureState.NONE
        assert enhancement.renewal_attempt_count == 0
        assert enhancement.max_renewal_attempts == 3
        assert enhancement.grace_period_ends_at is None
        assert enhancement.is_retryable() is False


class TestPaymentTransitions:
    """Test payment_pending / payment_failed / active moves"""

    def test_mark_payment_pending_clears_failure_state(self, enhancement):
        enhancement.mark_payment_failed(PaymentFailureState.RETRY_DELAYED, "Declined")

        enhancement.mark_payment_pending()

        assert enhancement.status == EnhancementStatus.PAYMENT_PENDING
        assert enhancement.payment_failure_state == PaymentFailureState.NONE

    def test_mark_payment_failed_from_active(self, enhancement):
        enhancement.mark_payment_failed(PaymentFailureState.RETRY_DELAYED, "Insufficient funds")

        assert enhancement.status == EnhancementStatus.PAYMENT_FAILED
        assert enhancement.payment_failure_state == PaymentFailureState.RETRY_DELAYED
        assert enhancement.failure_reason == "Insufficient funds"

    def test_mark_payment_failed_rejects_none_state(self, enhancement):
        with pytest.raises(ValidationError):
            enhancement.mark_payment_failed(PaymentFailureState.NONE, "Declined")

    def test_mark_active_resets_attempts(self, enhancement):
        fail_once(enhancement)
        enhancement.schedule_retry(NOW + timedelta(days=1), "Declined")
        enhancement.mark_payment_pending()

        enhancement.mark_active()

        assert enhancement.status == EnhancementStatus.ACTIVE
        assert enhancement.renewal_attempt_count == 0
        assert enhancement.next_retry_at is None
        assert enhancement.failure_reason is None

    def test_mark_active_requires_payment_pending(self, enhancement):
        enhancement.mark_payment_failed(PaymentFailureState.RETRY_DELAYED, "Declined")

        with pytest.raises(InvalidStateTransition):
            enhancement.mark_active()

    def test_schedule_retry_keeps_status(self, enhancement):
        fail_once(enhancement)
        retry_at = NOW + timedelta(hours=24)

        enhancement.schedule_retry(retry_at, "Declined")

        assert enhancement.status == EnhancementStatus.PAYMENT_FAILED
        assert enhancement.next_retry_at == retry_at


class TestRetryExhaustion:
    """Test retry counting against max_renewal_attempts"""

    def test_retryable_after_first_failure(self, enhancement):
        fail_once(enhancement)

        assert enhancement.renewal_attempt_count == 1
        assert enhancement.last_renewal_attempt_at == NOW
        assert enhancement.is_retryable() is True

    def test_three_failures_exhaust_and_allow_grace_period(self, enhancement):
        """Three failures in a row exhaust retries; the grace period still opens"""
        for _ in range(3):
            fail_once(enhancement)

        assert enhancement.renewal_attempt_count == 3
        assert enhancement.payment_failure_state == PaymentFailureState.EXHAUSTED
        assert enhancement.is_retryable() is False

        enhancement.enter_grace_period(now=NOW)
        assert enhancement.status == EnhancementStatus.GRACE_PERIOD

    def test_not_retryable_at_max_even_if_state_says_retry(self, enhancement):
        enhancement.renewal_attempt_count = 3
        enhancement.payment_failure_state = PaymentFailureState.RETRY_DELAYED

        assert enhancement.is_retryable() is False

    def test_failure_after_exhaustion_is_recorded_as_exhausted(self, enhancement):
        for _ in range(3):
            fail_once(enhancement)

        enhancement.mark_payment_failed(PaymentFailureState.RETRY_IMMEDIATE, "Declined again")

        assert enhancement.payment_failure_state == PaymentFailureState.EXHAUSTED

    def test_increment_refused_once_exhausted(self, enhancement):
        for _ in range(3):
            fail_once(enhancement)

        with pytest.raises(InvalidStateTransition):
            enhancement.increment_retry_attempts(NOW)
        assert enhancement.renewal_attempt_count == enhancement.max_renewal_attempts


class TestGracePeriod:
    """Test the grace window and suspension"""

    def test_enter_grace_period_sets_window(self, enhancement):
        enhancement.mark_payment_failed(PaymentFailureState.EXHAUSTED, "Declined")

        enhancement.enter_grace_period(days=14, now=NOW)

        assert enhancement.grace_period_starts_at == NOW
        assert enhancement.grace_period_ends_at == NOW + timedelta(days=14)
        assert enhancement.is_in_grace_period(NOW + timedelta(days=1)) is True
        assert enhancement.has_grace_period_ended(NOW + timedelta(days=1)) is False
        assert enhancement.has_grace_period_ended(NOW + timedelta(days=14)) is True

    def test_enter_grace_period_requires_payment_failed(self, enhancement):
        with pytest.raises(InvalidStateTransition):
            enhancement.enter_grace_period(now=NOW)

    def test_suspend_before_grace_end_is_refused(self, enhancement):
        enhancement.mark_payment_failed(PaymentFailureState.EXHAUSTED, "Declined")
        enhancement.enter_grace_period(days=14, now=NOW)

        with pytest.raises(InvalidStateTransition):
            enhancement.suspend(NOW + timedelta(days=2))

    def test_suspend_after_grace_end_clears_window(self, enhancement):
        enhancement.mark_payment_failed(PaymentFailureState.EXHAUSTED, "Declined")
        enhancement.enter_grace_period(days=14, now=NOW)

        enhancement.suspend(NOW + timedelta(days=15))

        assert enhancement.status == EnhancementStatus.SUSPENDED
        assert enhancement.grace_period_ends_at is None

    def test_leaving_grace_period_clears_end(self, enhancement):
        enhancement.mark_payment_failed(PaymentFailureState.EXHAUSTED, "Declined")
        enhancement.enter_grace_period(now=NOW)

        enhancement.mark_payment_pending()

        assert enhancement.grace_period_ends_at is None

    def test_grace_queries_ignore_stale_end_date(self, enhancement):
        enhancement.grace_period_ends_at = NOW - timedelta(days=1)

        assert enhancement.has_grace_period_ended(NOW) is False
        assert enhancement.is_in_grace_period(NOW) is False


class TestCancellation:
    """Test cancel()"""

    def test_cancel_from_any_state(self, enhancement):
        enhancement.mark_payment_failed(PaymentFailureState.RETRY_DELAYED, "Declined")
        enhancement.schedule_retry(NOW + timedelta(days=1), "Declined")

        assert enhancement.cancel() is True
        assert enhancement.status == EnhancementStatus.CANCELLED
        assert enhancement.next_retry_at is None

    def test_cancel_twice_is_noop(self, enhancement):
        enhancement.cancel()

        assert enhancement.cancel() is False
        assert enhancement.status == EnhancementStatus.CANCELLED

    def test_cancelled_cannot_go_pending(self, enhancement):
        enhancement.cancel()

        with pytest.raises(InvalidStateTransition):
            enhancement.mark_payment_pending()


class TestStatusAliases:
    """Test legacy status names at the serialization boundary"""

    def test_parse_legacy_and_canonical(self):
        assert parse_status("failed") == EnhancementStatus.PAYMENT_FAILED
        assert parse_status("pending") == EnhancementStatus.PAYMENT_PENDING
        assert parse_status("grace_period") == EnhancementStatus.GRACE_PERIOD

    def test_parse_unknown_raises(self):
        with pytest.raises(ValidationError):
            parse_status("paused")

    def test_render_legacy(self, enhancement):
        enhancement.mark_payment_failed(PaymentFailureState.RETRY_DELAYED, "Declined")

        assert render_status(enhancement.status) == "payment_failed"
        assert render_status(enhancement.status, legacy=True) == "failed"
        assert enhancement.to_dict(legacy_status=True)["status"] == "failed"
