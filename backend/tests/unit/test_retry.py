"""Unit tests for RetryPolicy and RetryScheduler"""

import random
from datetime import datetime, timedelta, timezone

import pytest

from config import Settings
from retry.policy import RetryPolicy
from retry.scheduler import RetryKind, RetryScheduler, build_policies, is_due

NOW = datetime(2026, 3, 3, 12, 0, tzinfo=timezone.utc)


class TestRetryPolicy:
    """Tests for backoff computation"""

    def test_exponential_backoff(self):
        policy = RetryPolicy(max_attempts=5, base_delay_seconds=60, multiplier=2.0, jitter_ratio=0.0)

        assert [policy.base_delay(n) for n in (1, 2, 3, 4)] == [60.0, 120.0, 240.0, 480.0]

    def test_delay_is_capped(self):
        policy = RetryPolicy(max_attempts=20, base_delay_seconds=60, max_delay_seconds=300, jitter_ratio=0.0)

        assert policy.base_delay(10) == 300.0

    def test_fixed_schedule(self):
        """Marketplace pushes use 1m/5m/15m/1h/3h"""
        policy = RetryPolicy(max_attempts=5, schedule_seconds=(60, 300, 900, 3600, 10_800), jitter_ratio=0.0)

        assert [policy.base_delay(n) for n in range(1, 6)] == [60.0, 300.0, 900.0, 3600.0, 10_800.0]
        # Past the end of the schedule the last delay repeats
        assert policy.base_delay(9) == 10_800.0

    def test_budget_exhausted_returns_none(self):
        policy = RetryPolicy(max_attempts=3, jitter_ratio=0.0)

        assert policy.next_retry_at(2, NOW) == NOW + timedelta(seconds=120)
        assert policy.next_retry_at(3, NOW) is None
        assert policy.next_retry_at(4, NOW) is None

    def test_min_delay_from_rate_limiter(self):
        """Retry-After raises the delay but never lowers it"""
        policy = RetryPolicy(max_attempts=3, base_delay_seconds=60, jitter_ratio=0.0)

        assert policy.next_retry_at(1, NOW, min_delay_seconds=600) == NOW + timedelta(seconds=600)
        assert policy.next_retry_at(1, NOW, min_delay_seconds=10) == NOW + timedelta(seconds=60)

    def test_jitter_stays_within_ratio(self):
        policy = RetryPolicy(max_attempts=3, base_delay_seconds=100, jitter_ratio=0.2, rng=random.Random(7))

        for _ in range(200):
            delay = policy.delay_for(1).total_seconds()
            assert 80.0 <= delay <= 120.0

    def test_seeded_jitter_is_reproducible(self):
        first = RetryPolicy(max_attempts=3, jitter_ratio=0.1, rng=random.Random(42))
        second = RetryPolicy(max_attempts=3, jitter_ratio=0.1, rng=random.Random(42))

        assert [first.delay_for(n) for n in (1, 2)] == [second.delay_for(n) for n in (1, 2)]

    @pytest.mark.parametrize("kwargs", [
        {"max_attempts": 0},
        {"max_attempts": 3, "base_delay_seconds": -1},
        {"max_attempts": 3, "jitter_ratio": 1.0},
    ])
    def test_invalid_parameters(self, kwargs):
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)


class TestIsDue:
    def test_due_when_time_has_passed(self):
        assert is_due(NOW - timedelta(seconds=1), True, NOW)
        assert is_due(NOW, True, NOW)

    def test_not_due_in_future(self):
        assert not is_due(NOW + timedelta(seconds=1), True, NOW)

    def test_inactive_never_due(self):
        assert not is_due(NOW - timedelta(days=1), False, NOW)

    def test_unscheduled_never_due(self):
        assert not is_due(None, True, NOW)

    def test_naive_timestamps_are_utc(self):
        assert is_due(datetime(2026, 3, 3, 11, 0), True, NOW)


class TestRetryScheduler:
    """Tests for RetryScheduler dispatch"""

    @pytest.fixture
    def scheduler(self):
        settings = Settings(RETRY_JITTER_RATIO=0.0)
        return RetryScheduler(build_policies(settings), clock=lambda: NOW)

    def test_policies_follow_settings(self, scheduler):
        assert scheduler.max_attempts(RetryKind.SYNC) == 3
        assert scheduler.max_attempts(RetryKind.SHIPMENT) == 5
        assert scheduler.next_retry_at(RetryKind.SHIPMENT, 2) == NOW + timedelta(seconds=300)

    def test_run_due_calls_every_handler(self, scheduler):
        calls = []
        scheduler.register(RetryKind.SYNC, lambda now: calls.append(("sync", now)) or 2)
        scheduler.register(RetryKind.POSTING, lambda now: calls.append(("posting", now)) or 0)

        dispatched = scheduler.run_due()

        assert dispatched == {"SYNC": 2, "POSTING": 0}
        assert calls == [("sync", NOW), ("posting", NOW)]

    def test_run_due_filters_kinds(self, scheduler):
        scheduler.register(RetryKind.SYNC, lambda now: 1)
        scheduler.register(RetryKind.SHIPMENT, lambda now: 3)

        assert scheduler.run_due(kinds=[RetryKind.SHIPMENT]) == {"SHIPMENT": 3}

    def test_failing_handler_does_not_stop_others(self, scheduler):
        def broken(now):
            raise RuntimeError("database unavailable")

        scheduler.register(RetryKind.SYNC, broken)
        scheduler.register(RetryKind.SETTLEMENT, lambda now: 1)

        assert scheduler.run_due() == {"SYNC": 0, "SETTLEMENT": 1}
