"""Retry backoff policy and scheduling of due work."""

from .policy import RetryPolicy
from .scheduler import RetryKind, RetryScheduler, build_policies, is_due

__all__ = ["RetryPolicy", "RetryKind", "RetryScheduler", "build_policies", "is_due"]
