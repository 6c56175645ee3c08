"""
Backoff policies for failed renewal attempts.

The renewal service never computes delays itself; it asks the injected policy
when the next attempt may run. ``attempt_number`` is the number of attempts
already made (1 after the first failure).
"""
from datetime import datetime, timedelta
from typing import Optional, Protocol, Sequence

from ..core.config import Settings, settings as default_settings
from ..core.exceptions import ValidationError


class RetryPolicy(Protocol):
    def next_retry_at(self, attempt_number: int, now: datetime) -> datetime:
        ...


class FixedScheduleBackoff:
    """Walk a fixed list of delays; the last delay repeats once the list runs out"""

    def __init__(self, delays: Sequence[timedelta]):
        if not delays:
            raise ValidationError("A fixed retry schedule needs at least one delay")
        self.delays = list(delays)

    @classmethod
    def from_hours(cls, hours: Sequence[int]) -> "FixedScheduleBackoff":
        return cls([timedelta(hours=h) for h in hours])

    def delay_for(self, attempt_number: int) -> timedelta:
        index = min(max(attempt_number, 1), len(self.delays)) - 1
        return self.delays[index]

    def next_retry_at(self, attempt_number: int, now: datetime) -> datetime:
        return now + self.delay_for(attempt_number)


class ExponentialBackoff:
    """base * multiplier ** (attempt - 1), capped at ``max_delay``"""

    def __init__(self, base: timedelta, multiplier: float = 2.0, max_delay: Optional[timedelta] = None):
        if base <= timedelta(0) or multiplier < 1:
            raise ValidationError("Exponential backoff needs a positive base and a multiplier >= 1")
        self.base = base
        self.multiplier = multiplier
        self.max_delay = max_delay

    def delay_for(self, attempt_number: int) -> timedelta:
        delay = self.base * (self.multiplier ** (max(attempt_number, 1) - 1))
        if self.max_delay is not None and delay > self.max_delay:
            return self.max_delay
        return delay

    def next_retry_at(self, attempt_number: int, now: datetime) -> datetime:
        return now + self.delay_for(attempt_number)


def build_retry_policy(config: Optional[Settings] = None) -> RetryPolicy:
    """Create the policy selected by RETRY_BACKOFF_STRATEGY"""
    config = config or default_settings
    strategy = config.RETRY_BACKOFF_STRATEGY.lower()

    if strategy == "fixed":
        return FixedScheduleBackoff.from_hours(config.RETRY_DELAYS_HOURS)
    if strategy == "exponential":
        return ExponentialBackoff(
            base=timedelta(hours=config.RETRY_BASE_DELAY_HOURS),
            multiplier=config.RETRY_BACKOFF_MULTIPLIER,
            max_delay=timedelta(hours=config.RETRY_MAX_DELAY_HOURS),
        )
    raise ValidationError(f"Unknown retry backoff strategy '{config.RETRY_BACKOFF_STRATEGY}'")
