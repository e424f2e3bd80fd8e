"""RetryScheduler - backoff scheduling and re-dispatch of due work.

Components ask the scheduler when a failed unit may run again and record
the answer as next_retry_at on the unit. Periodically (Celery beat) the
scheduler runs every registered handler; each handler re-dispatches the
units of its kind whose next_retry_at has passed and that are still active.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Iterable, Mapping, Optional

from config import Settings
from domain.clock import Clock, as_utc, utc_now

from .policy import RetryPolicy

logger = logging.getLogger(__name__)

# 1m, 5m, 15m, 1h, 3h
SHIPMENT_PUSH_SCHEDULE_SECONDS = (60, 300, 900, 3600, 10_800)


class RetryKind(str, Enum):
    SYNC = "SYNC"
    POSTING = "POSTING"
    SHIPMENT = "SHIPMENT"
    SETTLEMENT = "SETTLEMENT"


DueHandler = Callable[[datetime], int]


def build_policies(settings: Settings) -> Dict[RetryKind, RetryPolicy]:
    """Retry policies for every kind from application settings."""
    common = dict(
        base_delay_seconds=settings.RETRY_BASE_DELAY_SECONDS,
        max_delay_seconds=settings.RETRY_MAX_DELAY_SECONDS,
        multiplier=settings.RETRY_MULTIPLIER,
        jitter_ratio=settings.RETRY_JITTER_RATIO,
    )
    return {
        RetryKind.SYNC: RetryPolicy(max_attempts=settings.SYNC_MAX_ATTEMPTS, **common),
        RetryKind.POSTING: RetryPolicy(max_attempts=settings.POSTING_MAX_ATTEMPTS, **common),
        RetryKind.SHIPMENT: RetryPolicy(
            max_attempts=settings.SHIPMENT_MAX_RETRIES,
            schedule_seconds=SHIPMENT_PUSH_SCHEDULE_SECONDS,
            **common,
        ),
        RetryKind.SETTLEMENT: RetryPolicy(max_attempts=settings.SETTLEMENT_MAX_ATTEMPTS, **common),
    }


def is_due(next_retry_at: Optional[datetime], is_active: bool, now: datetime) -> bool:
    """A unit is due when it is still active and its retry time has passed."""
    if not is_active or next_retry_at is None:
        return False
    return as_utc(next_retry_at) <= as_utc(now)


class RetryScheduler:
    def __init__(self, policies: Mapping[RetryKind, RetryPolicy], clock: Clock = utc_now):
        self.policies = dict(policies)
        self.clock = clock
        self._handlers: Dict[RetryKind, DueHandler] = {}

    def policy(self, kind: RetryKind) -> RetryPolicy:
        return self.policies[RetryKind(kind)]

    def max_attempts(self, kind: RetryKind) -> int:
        return self.policy(kind).max_attempts

    def next_retry_at(
        self,
        kind: RetryKind,
        failures: int,
        now: Optional[datetime] = None,
        min_delay_seconds: Optional[int] = None,
    ) -> Optional[datetime]:
        """Next attempt time for a unit that has failed `failures` times.

        Returns None once the kind's budget is exhausted.
        """
        return self.policy(kind).next_retry_at(failures, now or self.clock(), min_delay_seconds)

    def register(self, kind: RetryKind, handler: DueHandler) -> None:
        self._handlers[RetryKind(kind)] = handler

    def run_due(
        self,
        now: Optional[datetime] = None,
        kinds: Optional[Iterable[RetryKind]] = None,
    ) -> Dict[str, int]:
        """Run the registered handlers (all, or only `kinds`); returns units re-dispatched per kind.

        A failing handler is logged and does not stop the others.
        """
        now = now or self.clock()
        dispatched: Dict[str, int] = {}
        selected = None if kinds is None else {RetryKind(k) for k in kinds}
        for kind, handler in self._handlers.items():
            if selected is not None and kind not in selected:
                continue
            try:
                dispatched[kind.value] = handler(now)
            except Exception as e:
                logger.exception(
                    f"Retry handler failed: {kind.value}",
                    extra={"retry_kind": kind.value, "error": str(e)},
                )
                dispatched[kind.value] = 0
        return dispatched
