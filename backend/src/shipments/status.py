"""Shipment state machines.

A shipment moves along two independent axes.

ShipmentStatus:
    READY → INVOICE_REQUESTED → INVOICE_ISSUED → MARKET_PUSH_REQUESTED
          → MARKET_PUSHED → SHIPPED → DELIVERED
    INVOICE_REQUESTED|MARKET_PUSH_REQUESTED → FAILED
    FAILED → INVOICE_REQUESTED|MARKET_PUSH_REQUESTED (retry)

MarketPushStatus:
    PENDING → PUSHING → SUCCESS|FAILED
    FAILED → PUSHING (retry)

Terminal States: DELIVERED, SUCCESS
"""

from enum import Enum
from typing import List

from domain.state_machine import (
    can_transition as _can_transition,
    get_allowed_transitions as _get_allowed,
    validate_transition as _validate,
)


class ShipmentStatus(str, Enum):
    """Shipment (invoice/delivery) status enumeration."""
    READY = "READY"
    INVOICE_REQUESTED = "INVOICE_REQUESTED"
    INVOICE_ISSUED = "INVOICE_ISSUED"
    MARKET_PUSH_REQUESTED = "MARKET_PUSH_REQUESTED"
    MARKET_PUSHED = "MARKET_PUSHED"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"


class MarketPushStatus(str, Enum):
    """Status of delivering the tracking number to the marketplace."""
    PENDING = "PENDING"
    PUSHING = "PUSHING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


ALLOWED_TRANSITIONS = {
    ShipmentStatus.READY: [ShipmentStatus.INVOICE_REQUESTED],
    ShipmentStatus.INVOICE_REQUESTED: [ShipmentStatus.INVOICE_ISSUED, ShipmentStatus.FAILED],
    ShipmentStatus.INVOICE_ISSUED: [ShipmentStatus.MARKET_PUSH_REQUESTED],
    ShipmentStatus.MARKET_PUSH_REQUESTED: [ShipmentStatus.MARKET_PUSHED, ShipmentStatus.FAILED],
    ShipmentStatus.MARKET_PUSHED: [ShipmentStatus.SHIPPED],
    ShipmentStatus.SHIPPED: [ShipmentStatus.DELIVERED],
    ShipmentStatus.FAILED: [
        ShipmentStatus.INVOICE_REQUESTED,
        ShipmentStatus.MARKET_PUSH_REQUESTED,
    ],
    ShipmentStatus.DELIVERED: [],  # Terminal state
}

PUSH_ALLOWED_TRANSITIONS = {
    MarketPushStatus.PENDING: [MarketPushStatus.PUSHING],
    MarketPushStatus.PUSHING: [MarketPushStatus.SUCCESS, MarketPushStatus.FAILED],
    MarketPushStatus.FAILED: [MarketPushStatus.PUSHING],  # retry
    MarketPushStatus.SUCCESS: [],  # Terminal state (no re-push)
}


def validate_transition(current_status: ShipmentStatus, new_status: ShipmentStatus) -> None:
    """Validate a ShipmentStatus transition.

    Raises:
        StateTransitionError: If transition is not allowed
    """
    _validate("shipment", ALLOWED_TRANSITIONS, current_status, new_status)


def can_transition(current_status: ShipmentStatus, new_status: ShipmentStatus) -> bool:
    return _can_transition(ALLOWED_TRANSITIONS, current_status, new_status)


def get_allowed_transitions(status: ShipmentStatus) -> List[ShipmentStatus]:
    return _get_allowed(ALLOWED_TRANSITIONS, status)


def validate_push_transition(current_status: MarketPushStatus, new_status: MarketPushStatus) -> None:
    """Validate a MarketPushStatus transition.

    Raises:
        StateTransitionError: If transition is not allowed
    """
    _validate("market_push", PUSH_ALLOWED_TRANSITIONS, current_status, new_status)


def can_push_transition(current_status: MarketPushStatus, new_status: MarketPushStatus) -> bool:
    return _can_transition(PUSH_ALLOWED_TRANSITIONS, current_status, new_status)
