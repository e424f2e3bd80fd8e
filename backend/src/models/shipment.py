"""Shipment model - one per order; invoice and marketplace push tracking."""

import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)

from domain.state_machine import coerce_status
from shipments.status import (
    MarketPushStatus,
    ShipmentStatus,
    validate_push_transition,
    validate_transition,
)

from .base import Base, TenantRecord


class Shipment(TenantRecord, Base):
    """Shipment record.

    shipment_status and market_push_status are independent state machines;
    see shipments.status.

    Attributes:
        order_id: Owning order (unique per tenant)
        carrier_code / carrier_name: Carrier
        tracking_no: Current tracking number
        previous_tracking_no: Number replaced by an override re-issue
        retry_count: Failed pushes so far
        next_retry_at: When the next automatic push may run
        last_attempted_at: Last push attempt
        pushed_at: When the marketplace accepted the tracking number
        is_active: False once the order is cancelled
    """

    __tablename__ = "shipment"

    order_id = Column(Uuid, ForeignKey("marketplace_order.id", ondelete="CASCADE"), nullable=False)
    store_id = Column(Uuid, ForeignKey("store.id", ondelete="CASCADE"), nullable=False)
    marketplace_code = Column(String(40), nullable=False)
    marketplace_order_id = Column(String(100), nullable=False)

    carrier_code = Column(String(40), nullable=True)
    carrier_name = Column(Text, nullable=True)
    tracking_no = Column(String(100), nullable=True)
    previous_tracking_no = Column(String(100), nullable=True)

    shipment_status = Column(String(30), nullable=False, default=ShipmentStatus.READY.value)
    market_push_status = Column(String(20), nullable=False, default=MarketPushStatus.PENDING.value)
    retry_count = Column(Integer, nullable=False, default=0)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)
    last_attempted_at = Column(DateTime(timezone=True), nullable=True)
    pushed_at = Column(DateTime(timezone=True), nullable=True)
    shipped_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    last_error_code = Column(String(60), nullable=True)
    last_error_message = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "order_id", name="uq_shipment_order"),
        Index("idx_shipment_push_retry", "market_push_status", "is_active", "next_retry_at"),
    )

    @classmethod
    def create(
        cls,
        tenant_id: uuid.UUID,
        order_id: uuid.UUID,
        store_id: uuid.UUID,
        marketplace_code: str,
        marketplace_order_id: str,
        now: Optional[datetime] = None,
    ) -> "Shipment":
        shipment = cls(
            tenant_id=tenant_id,
            order_id=order_id,
            store_id=store_id,
            marketplace_code=marketplace_code,
            marketplace_order_id=marketplace_order_id,
            shipment_status=ShipmentStatus.READY.value,
            market_push_status=MarketPushStatus.PENDING.value,
            retry_count=0,
            is_active=True,
        )
        shipment._stamp(now)
        return shipment

    @property
    def status_enum(self) -> ShipmentStatus:
        return coerce_status(ShipmentStatus, self.shipment_status)

    @property
    def push_status_enum(self) -> MarketPushStatus:
        return coerce_status(MarketPushStatus, self.market_push_status)

    @property
    def is_pushed(self) -> bool:
        return self.market_push_status == MarketPushStatus.SUCCESS.value

    def transition_to(self, new_status: ShipmentStatus, now: Optional[datetime] = None) -> None:
        """Move shipment_status to new_status.

        Raises:
            StateTransitionError: If transition is not allowed
        """
        validate_transition(self.status_enum, new_status)
        self.shipment_status = new_status.value
        self.touch(now)

    def push_transition_to(self, new_status: MarketPushStatus, now: Optional[datetime] = None) -> None:
        """Move market_push_status to new_status.

        Raises:
            StateTransitionError: If transition is not allowed
        """
        validate_push_transition(self.push_status_enum, new_status)
        self.market_push_status = new_status.value
        self.touch(now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "order_id": str(self.order_id),
            "carrier_code": self.carrier_code,
            "tracking_no": self.tracking_no,
            "previous_tracking_no": self.previous_tracking_no,
            "shipment_status": self.shipment_status,
            "market_push_status": self.market_push_status,
            "retry_count": self.retry_count,
            "last_error_code": self.last_error_code,
        }

    def __repr__(self):
        return (
            f"<Shipment(id={self.id}, order_id={self.order_id}, "
            f"status={self.shipment_status}, push={self.market_push_status})>"
        )
