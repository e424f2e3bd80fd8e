"""SyncJob status state machine.

State Flow:
    PENDING → RUNNING → COMPLETED|FAILED
    FAILED → PENDING (retry)

Terminal States: COMPLETED
"""

from enum import Enum
from typing import List

from domain.state_machine import (
    can_transition as _can_transition,
    get_allowed_transitions as _get_allowed,
    validate_transition as _validate,
)


class SyncJobStatus(str, Enum):
    """Sync job status enumeration."""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class SyncTriggerType(str, Enum):
    """What requested the sync run."""
    SCHEDULED = "SCHEDULED"
    MANUAL = "MANUAL"
    WEBHOOK = "WEBHOOK"


ALLOWED_TRANSITIONS = {
    SyncJobStatus.PENDING: [SyncJobStatus.RUNNING],
    SyncJobStatus.RUNNING: [SyncJobStatus.COMPLETED, SyncJobStatus.FAILED],
    SyncJobStatus.FAILED: [SyncJobStatus.PENDING],  # retry preparation
    SyncJobStatus.COMPLETED: [],  # Terminal state
}

# Statuses that hold the per-store lock
ACTIVE_STATUSES = (SyncJobStatus.PENDING, SyncJobStatus.RUNNING)


def validate_transition(current_status: SyncJobStatus, new_status: SyncJobStatus) -> None:
    """Validate that a sync job transition is allowed.

    Raises:
        StateTransitionError: If transition is not allowed
    """
    _validate("sync_job", ALLOWED_TRANSITIONS, current_status, new_status)


def can_transition(current_status: SyncJobStatus, new_status: SyncJobStatus) -> bool:
    return _can_transition(ALLOWED_TRANSITIONS, current_status, new_status)


def get_allowed_transitions(status: SyncJobStatus) -> List[SyncJobStatus]:
    return _get_allowed(ALLOWED_TRANSITIONS, status)
