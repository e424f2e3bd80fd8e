"""Retry backoff policy.

Exponential backoff with a cap and proportional jitter:

    delay(n) = min(base * multiplier ** (n - 1), max_delay) * (1 +/- jitter)

where n is the number of failures so far. A fixed schedule of delays can be
given instead (marketplace pushes use 1m/5m/15m/1h/3h). Once the attempt
budget is exhausted next_retry_at() returns None and the caller must stop
rescheduling.
"""

import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Sequence


@dataclass
class RetryPolicy:
    """Backoff parameters for one kind of retryable unit.

    Attributes:
        max_attempts: Failures allowed before giving up
        base_delay_seconds: Delay after the first failure
        max_delay_seconds: Upper bound for any delay
        multiplier: Growth factor between consecutive delays
        jitter_ratio: Max relative deviation applied to each delay (0 disables)
        schedule_seconds: Fixed delays per attempt; overrides the exponential curve
        rng: Random source for jitter (inject a seeded Random in tests)
    """
    max_attempts: int
    base_delay_seconds: int = 60
    max_delay_seconds: int = 10_800
    multiplier: float = 2.0
    jitter_ratio: float = 0.1
    schedule_seconds: Optional[Sequence[int]] = None
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ValueError("delays must be >= 0")
        if not 0 <= self.jitter_ratio < 1:
            raise ValueError("jitter_ratio must be in [0, 1)")

    def can_retry(self, failures: int) -> bool:
        return failures < self.max_attempts

    def base_delay(self, failures: int) -> float:
        """Delay before jitter for the given failure count (>= 1)."""
        failures = max(failures, 1)
        if self.schedule_seconds:
            index = min(failures - 1, len(self.schedule_seconds) - 1)
            return float(min(self.schedule_seconds[index], self.max_delay_seconds))
        delay = self.base_delay_seconds * (self.multiplier ** (failures - 1))
        return float(min(delay, self.max_delay_seconds))

    def delay_for(self, failures: int, min_delay_seconds: Optional[int] = None) -> timedelta:
        delay = self.base_delay(failures)
        if self.jitter_ratio:
            delay *= 1 + self.rng.uniform(-self.jitter_ratio, self.jitter_ratio)
        delay = min(max(delay, 0.0), float(self.max_delay_seconds))
        if min_delay_seconds is not None:
            delay = max(delay, float(min_delay_seconds))
        return timedelta(seconds=delay)

    def next_retry_at(
        self,
        failures: int,
        now: datetime,
        min_delay_seconds: Optional[int] = None,
    ) -> Optional[datetime]:
        """When the next attempt may run, or None if the budget is exhausted.

        Args:
            failures: Failures recorded so far, including the one just seen
            now: Reference time
            min_delay_seconds: Lower bound (e.g. a rate limiter's Retry-After)
        """
        if not self.can_retry(failures):
            return None
        return now + self.delay_for(failures, min_delay_seconds)
