"""SettlementBatch status state machine.

State Flow:
    COLLECTED → VALIDATED → POSTING_READY → POSTED → CLOSED
    COLLECTED|VALIDATED|POSTING_READY → FAILED
    FAILED → COLLECTED (full restart, no partial resume)

Terminal States: CLOSED
"""

from enum import Enum
from typing import List

from domain.state_machine import (
    can_transition as _can_transition,
    get_allowed_transitions as _get_allowed,
    validate_transition as _validate,
)


class SettlementStatus(str, Enum):
    """Settlement batch status enumeration."""
    COLLECTED = "COLLECTED"
    VALIDATED = "VALIDATED"
    POSTING_READY = "POSTING_READY"
    POSTED = "POSTED"
    CLOSED = "CLOSED"
    FAILED = "FAILED"


ALLOWED_TRANSITIONS = {
    SettlementStatus.COLLECTED: [SettlementStatus.VALIDATED, SettlementStatus.FAILED],
    SettlementStatus.VALIDATED: [SettlementStatus.POSTING_READY, SettlementStatus.FAILED],
    SettlementStatus.POSTING_READY: [SettlementStatus.POSTED, SettlementStatus.FAILED],
    SettlementStatus.POSTED: [SettlementStatus.CLOSED],
    SettlementStatus.FAILED: [SettlementStatus.COLLECTED],  # retry from COLLECTED
    SettlementStatus.CLOSED: [],  # Terminal state
}

COMPLETED_STATUSES = (SettlementStatus.POSTED, SettlementStatus.CLOSED)


def validate_transition(current_status: SettlementStatus, new_status: SettlementStatus) -> None:
    """Validate that a settlement transition is allowed.

    Raises:
        StateTransitionError: If transition is not allowed
    """
    _validate("settlement", ALLOWED_TRANSITIONS, current_status, new_status)


def can_transition(current_status: SettlementStatus, new_status: SettlementStatus) -> bool:
    return _can_transition(ALLOWED_TRANSITIONS, current_status, new_status)


def get_allowed_transitions(status: SettlementStatus) -> List[SettlementStatus]:
    return _get_allowed(ALLOWED_TRANSITIONS, status)
