"""Order and OrderItem models - marketplace orders ingested by sync jobs.

Orders are upserted by (tenant_id, store_id, marketplace_code,
marketplace_order_id). Money columns hold integer KRW amounts, VAT inclusive.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import relationship, validates

from .base import Base, PortableJSONB, TenantRecord


class OrderStatus(str, Enum):
    """Marketplace-side order status."""
    NEW = "NEW"
    CONFIRMED = "CONFIRMED"
    PAID = "PAID"
    PREPARING = "PREPARING"
    SHIPPING = "SHIPPING"
    DELIVERED = "DELIVERED"
    CANCELED = "CANCELED"
    PARTIAL_CANCELED = "PARTIAL_CANCELED"


class OrderItemStatus(str, Enum):
    NORMAL = "NORMAL"
    CANCELED = "CANCELED"


class OrderPostingStatus(str, Enum):
    """Roll-up of the order's ERP postings."""
    NOT_POSTED = "NOT_POSTED"
    PARTIALLY_POSTED = "PARTIALLY_POSTED"
    POSTED = "POSTED"


class OrderSettlementStatus(str, Enum):
    UNSETTLED = "UNSETTLED"
    MATCHED = "MATCHED"


class Order(TenantRecord, Base):
    """Marketplace order.

    Attributes:
        store_id: Store the order was fetched from
        marketplace_code: Marketplace identifier (denormalized from store)
        marketplace_order_id: Order number assigned by the marketplace
        order_status: OrderStatus value
        ordered_at / paid_at: Marketplace timestamps
        buyer_name: Buyer display name
        total_product_amount: Sum of item line totals
        shipping_fee: Shipping fee charged to the buyer
        total_paid_amount: Amount the buyer paid
        commission_amount / pg_fee / shipping_fee_settled: Filled in by settlement
        posting_status: OrderPostingStatus roll-up
        settlement_status: OrderSettlementStatus
        last_sync_job_id: Sync job that last created or updated the order
        raw_payload: Marketplace payload as received
    """

    __tablename__ = "marketplace_order"

    store_id = Column(Uuid, ForeignKey("store.id", ondelete="RESTRICT"), nullable=False)
    marketplace_code = Column(String(40), nullable=False)
    marketplace_order_id = Column(String(100), nullable=False)
    order_status = Column(String(30), nullable=False, default=OrderStatus.NEW.value)
    ordered_at = Column(DateTime(timezone=True), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    buyer_name = Column(Text, nullable=True)

    total_product_amount = Column(BigInteger, nullable=False, default=0)
    shipping_fee = Column(BigInteger, nullable=False, default=0)
    total_paid_amount = Column(BigInteger, nullable=False, default=0)

    commission_amount = Column(BigInteger, nullable=True)
    pg_fee = Column(BigInteger, nullable=True)
    shipping_fee_settled = Column(BigInteger, nullable=True)

    posting_status = Column(String(30), nullable=False, default=OrderPostingStatus.NOT_POSTED.value)
    settlement_status = Column(String(30), nullable=False, default=OrderSettlementStatus.UNSETTLED.value)
    last_sync_job_id = Column(Uuid, ForeignKey("sync_job.id", ondelete="SET NULL"), nullable=True)
    raw_payload = Column(PortableJSONB, nullable=True)

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.line_no",
    )

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "store_id", "marketplace_code", "marketplace_order_id",
            name="uq_order_marketplace_key",
        ),
    )

    @validates("marketplace_order_id")
    def validate_marketplace_order_id(self, key, value):
        if value is None or not str(value).strip():
            raise ValueError("marketplace_order_id must not be empty")
        return value

    @classmethod
    def create(
        cls,
        tenant_id: uuid.UUID,
        store_id: uuid.UUID,
        marketplace_code: str,
        marketplace_order_id: str,
        now: Optional[datetime] = None,
        **fields: Any,
    ) -> "Order":
        order_status = fields.pop("order_status", OrderStatus.NEW.value)
        order = cls(
            tenant_id=tenant_id,
            store_id=store_id,
            marketplace_code=marketplace_code,
            marketplace_order_id=marketplace_order_id,
            order_status=order_status,
            posting_status=OrderPostingStatus.NOT_POSTED.value,
            settlement_status=OrderSettlementStatus.UNSETTLED.value,
            **fields,
        )
        order._stamp(now)
        return order

    @property
    def active_items(self) -> List["OrderItem"]:
        return [item for item in self.items if item.item_status != OrderItemStatus.CANCELED.value]

    @property
    def canceled_items(self) -> List["OrderItem"]:
        return [item for item in self.items if item.item_status == OrderItemStatus.CANCELED.value]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "tenant_id": str(self.tenant_id),
            "store_id": str(self.store_id),
            "marketplace_code": self.marketplace_code,
            "marketplace_order_id": self.marketplace_order_id,
            "order_status": self.order_status,
            "total_product_amount": self.total_product_amount,
            "shipping_fee": self.shipping_fee,
            "total_paid_amount": self.total_paid_amount,
            "posting_status": self.posting_status,
            "settlement_status": self.settlement_status,
            "items": [item.to_dict() for item in self.items],
        }

    def __repr__(self):
        return f"<Order(id={self.id}, marketplace_order_id={self.marketplace_order_id}, status={self.order_status})>"


class OrderItem(TenantRecord, Base):
    """Order line.

    line_total is VAT inclusive (unit_price * quantity unless the marketplace
    reports a discounted line amount).
    """

    __tablename__ = "marketplace_order_item"

    order_id = Column(Uuid, ForeignKey("marketplace_order.id", ondelete="CASCADE"), nullable=False)
    line_no = Column(Integer, nullable=False)
    marketplace_item_id = Column(String(100), nullable=True)
    marketplace_product_id = Column(String(100), nullable=False)
    marketplace_sku = Column(String(100), nullable=True)
    product_name = Column(Text, nullable=True)
    option_name = Column(Text, nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(BigInteger, nullable=False, default=0)
    line_total = Column(BigInteger, nullable=False, default=0)
    item_status = Column(String(20), nullable=False, default=OrderItemStatus.NORMAL.value)

    order = relationship("Order", back_populates="items")

    @validates("quantity")
    def validate_quantity(self, key, value):
        if value is None or value < 0:
            raise ValueError(f"quantity must be >= 0, got {value}")
        return value

    @classmethod
    def create(
        cls,
        tenant_id: uuid.UUID,
        line_no: int,
        marketplace_product_id: str,
        now: Optional[datetime] = None,
        **fields: Any,
    ) -> "OrderItem":
        item = cls(
            tenant_id=tenant_id,
            line_no=line_no,
            marketplace_product_id=marketplace_product_id,
            **fields,
        )
        item._stamp(now)
        return item

    @property
    def mapping_key(self) -> str:
        return f"{self.marketplace_product_id}:{self.marketplace_sku or ''}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "line_no": self.line_no,
            "marketplace_product_id": self.marketplace_product_id,
            "marketplace_sku": self.marketplace_sku,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "line_total": self.line_total,
            "item_status": self.item_status,
        }
