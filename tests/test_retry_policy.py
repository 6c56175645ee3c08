"""
Tests for renewal retry backoff policies.
"""

import pytest
from datetime import datetime, timedelta, timezone

from membership_billing.core.config import Settings
from membership_billing.core.exceptions import ValidationError
from membership_billing.services.retry_policy import (
    ExponentialBackoff,
    FixedScheduleBackoff,
    build_retry_policy,
)

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class TestFixedSchedule:

    def test_walks_schedule_then_repeats_last_delay(self):
        policy = FixedScheduleBackoff.from_hours([24, 72, 168])

        assert policy.next_retry_at(1, NOW) == NOW + timedelta(hours=24)
        assert policy.next_retry_at(2, NOW) == NOW + timedelta(hours=72)
        assert policy.next_retry_at(3, NOW) == NOW + timedelta(days=7)
        assert policy.next_retry_at(9, NOW) == NOW + timedelta(days=7)

    def test_attempt_zero_uses_first_delay(self):
        policy = FixedScheduleBackoff.from_hours([6])

        assert policy.delay_for(0) == timedelta(hours=6)

    def test_empty_schedule_rejected(self):
        with pytest.raises(ValidationError):
            FixedScheduleBackoff([])


class TestExponential:

    def test_doubles_until_cap(self):
        policy = ExponentialBackoff(timedelta(hours=24), multiplier=2.0, max_delay=timedelta(hours=72))

        assert policy.delay_for(1) == timedelta(hours=24)
        assert policy.delay_for(2) == timedelta(hours=48)
        assert policy.delay_for(3) == timedelta(hours=72)
        assert policy.delay_for(4) == timedelta(hours=72)

    def test_uncapped(self):
        policy = ExponentialBackoff(timedelta(hours=1), multiplier=3)

        assert policy.next_retry_at(3, NOW) == NOW + timedelta(hours=9)

    @pytest.mark.parametrize("base,multiplier", [(timedelta(0), 2.0), (timedelta(hours=1), 0.5)])
    def test_invalid_parameters_rejected(self, base, multiplier):
        with pytest.raises(ValidationError):
            ExponentialBackoff(base, multiplier)


class TestBuildRetryPolicy:

    def test_fixed_from_settings(self):
        policy = build_retry_policy(Settings(RETRY_BACKOFF_STRATEGY="fixed", RETRY_DELAYS_HOURS=[1, 2]))

        assert isinstance(policy, FixedScheduleBackoff)
        assert policy.delay_for(2) == timedelta(hours=2)

    def test_exponential_from_settings(self):
        policy = build_retry_policy(Settings(
            RETRY_BACKOFF_STRATEGY="exponential",
            RETRY_BASE_DELAY_HOURS=12,
            RETRY_BACKOFF_MULTIPLIER=2.0,
            RETRY_MAX_DELAY_HOURS=36,
        ))

        assert isinstance(policy, ExponentialBackoff)
        assert policy.delay_for(3) == timedelta(hours=36)

    def test_unknown_strategy(self):
        with pytest.raises(ValidationError):
            build_retry_policy(Settings(RETRY_BACKOFF_STRATEGY="fibonacci"))
