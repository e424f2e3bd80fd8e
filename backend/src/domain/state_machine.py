"""Transition-table helpers shared by the pipeline state machines.

Each pipeline module (sync, postings, shipments, settlements) declares its own
status enum and ALLOWED_TRANSITIONS table. The functions here evaluate a table
without touching persistence, so every machine can be unit-tested on its own.

State Flow is documented next to each table.
"""

from enum import Enum
from typing import List, Mapping, Optional, Sequence, TypeVar

S = TypeVar("S", bound=Enum)

TransitionTable = Mapping[S, Sequence[S]]


class StateTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""

    def __init__(self, machine: str, current: Enum, target: Enum, allowed: Sequence[Enum]):
        self.machine = machine
        self.current = current
        self.target = target
        self.allowed = list(allowed)
        super().__init__(
            f"Invalid {machine} transition: {current.value} -> {target.value}. "
            f"Allowed transitions from {current.value}: {[s.value for s in allowed]}"
        )


def can_transition(table: TransitionTable, current: S, target: S) -> bool:
    """Check if a state transition is allowed without raising exception.

    Args:
        table: Transition table of the state machine
        current: Current status
        target: Target status to transition to

    Returns:
        True if transition is allowed, False otherwise
    """
    return target in table.get(current, ())


def validate_transition(machine: str, table: TransitionTable, current: S, target: S) -> None:
    """Validate that a state transition is allowed.

    Raises:
        StateTransitionError: If transition is not allowed
    """
    if not can_transition(table, current, target):
        raise StateTransitionError(machine, current, target, table.get(current, ()))


def get_allowed_transitions(table: TransitionTable, status: S) -> List[S]:
    """Get list of allowed transitions from a given status."""
    return list(table.get(status, ()))


def terminal_states(table: TransitionTable) -> List[S]:
    """States with no outgoing transition."""
    return [status for status, targets in table.items() if not targets]


def coerce_status(enum_cls, value) -> Optional[Enum]:
    """Convert a stored string column back into its status enum."""
    if value is None or isinstance(value, enum_cls):
        return value
    return enum_cls(value)

