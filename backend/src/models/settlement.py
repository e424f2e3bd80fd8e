"""SettlementBatch and SettlementLine models.

One batch per (tenant, store, marketplace, cycle, period start, period end). The
declared_* columns hold the feed header totals as received; lines hold the
per-order amounts. Validation compares the two.
"""

import uuid
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import relationship

from domain.state_machine import coerce_status
from settlements.status import SettlementStatus, validate_transition

from .base import Base, PortableJSONB, TenantRecord


class SettlementBatch(TenantRecord, Base):
    """Settlement batch for one marketplace settlement period.

    Attributes:
        store_id / marketplace_code / settlement_cycle / period_start / period_end: Batch key;
            the store's credentials fetch the feed and its orders are matched
        marketplace_settlement_id: Settlement id reported by the marketplace
        status: SettlementStatus value
        declared_*: Header totals from the feed
        net_payout_amount: gross - commission - pg fee + shipping settled
        total_order_count / matched_order_count / unmatched_order_count: Line matching
        attempt_count: Collect attempts (first included)
        discrepancy: Field-by-field mismatch detail when validation failed
        commission_posting_id / receipt_posting_id / shipping_adjustment_posting_id:
            Postings built for the batch
    """

    __tablename__ = "settlement_batch"

    store_id = Column(Uuid, ForeignKey("store.id", ondelete="CASCADE"), nullable=False)
    marketplace_code = Column(String(40), nullable=False)
    settlement_cycle = Column(String(20), nullable=False)
    period_start = Column(Date, nullable=False)
    period_end = Column(Date, nullable=False)
    marketplace_settlement_id = Column(String(100), nullable=True)
    status = Column(String(20), nullable=False, default=SettlementStatus.COLLECTED.value)

    declared_gross_sales_amount = Column(BigInteger, nullable=False, default=0)
    declared_commission_amount = Column(BigInteger, nullable=False, default=0)
    declared_pg_fee_amount = Column(BigInteger, nullable=False, default=0)
    declared_shipping_fee_charged = Column(BigInteger, nullable=False, default=0)
    declared_shipping_fee_settled = Column(BigInteger, nullable=False, default=0)
    expected_payout_amount = Column(BigInteger, nullable=False, default=0)
    actual_payout_amount = Column(BigInteger, nullable=True)
    net_payout_amount = Column(BigInteger, nullable=False, default=0)

    total_order_count = Column(Integer, nullable=False, default=0)
    matched_order_count = Column(Integer, nullable=False, default=0)
    unmatched_order_count = Column(Integer, nullable=False, default=0)

    attempt_count = Column(Integer, nullable=False, default=0)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    last_error_code = Column(String(60), nullable=True)
    last_error_message = Column(Text, nullable=True)
    last_error_kind = Column(String(20), nullable=True)
    discrepancy = Column(PortableJSONB, nullable=True)

    commission_posting_id = Column(Uuid, nullable=True)
    receipt_posting_id = Column(Uuid, nullable=True)
    shipping_adjustment_posting_id = Column(Uuid, nullable=True)

    collected_at = Column(DateTime(timezone=True), nullable=True)
    validated_at = Column(DateTime(timezone=True), nullable=True)
    posted_at = Column(DateTime(timezone=True), nullable=True)
    closed_at = Column(DateTime(timezone=True), nullable=True)

    lines = relationship(
        "SettlementLine",
        back_populates="batch",
        cascade="all, delete-orphan",
        order_by="SettlementLine.line_no",
    )

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "store_id", "marketplace_code", "settlement_cycle", "period_start", "period_end",
            name="uq_settlement_batch_period",
        ),
        Index("idx_settlement_batch_retry", "status", "is_active", "next_retry_at"),
    )

    @classmethod
    def create(
        cls,
        tenant_id: uuid.UUID,
        store_id: uuid.UUID,
        marketplace_code: str,
        settlement_cycle: str,
        period_start: date,
        period_end: date,
        now: Optional[datetime] = None,
    ) -> "SettlementBatch":
        batch = cls(
            tenant_id=tenant_id,
            store_id=store_id,
            marketplace_code=marketplace_code,
            settlement_cycle=settlement_cycle,
            period_start=period_start,
            period_end=period_end,
            status=SettlementStatus.COLLECTED.value,
            attempt_count=0,
            is_active=True,
        )
        batch._stamp(now)
        return batch

    @property
    def status_enum(self) -> SettlementStatus:
        return coerce_status(SettlementStatus, self.status)

    @property
    def batch_key(self) -> str:
        return (
            f"{self.marketplace_code}:{self.settlement_cycle}:"
            f"{self.period_start.isoformat()}:{self.period_end.isoformat()}"
        )

    @property
    def posting_ids(self) -> List[uuid.UUID]:
        return [
            posting_id
            for posting_id in (
                self.commission_posting_id,
                self.receipt_posting_id,
                self.shipping_adjustment_posting_id,
            )
            if posting_id is not None
        ]

    def transition_to(self, new_status: SettlementStatus, now: Optional[datetime] = None) -> None:
        """Move to new_status.

        Raises:
            StateTransitionError: If transition is not allowed
        """
        validate_transition(self.status_enum, new_status)
        self.status = new_status.value
        self.touch(now)

    def record_error(self, code: str, message: str, kind: str) -> None:
        self.last_error_code = code
        self.last_error_message = message
        self.last_error_kind = kind

    def clear_error(self) -> None:
        self.last_error_code = None
        self.last_error_message = None
        self.last_error_kind = None
        self.discrepancy = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "batch_key": self.batch_key,
            "status": self.status,
            "declared_gross_sales_amount": self.declared_gross_sales_amount,
            "declared_commission_amount": self.declared_commission_amount,
            "net_payout_amount": self.net_payout_amount,
            "matched_order_count": self.matched_order_count,
            "unmatched_order_count": self.unmatched_order_count,
            "discrepancy": self.discrepancy,
            "last_error_code": self.last_error_code,
        }

    def __repr__(self):
        return f"<SettlementBatch(id={self.id}, key={self.batch_key}, status={self.status})>"


class SettlementLine(TenantRecord, Base):
    """Per-order line of a settlement feed."""

    __tablename__ = "settlement_line"

    batch_id = Column(Uuid, ForeignKey("settlement_batch.id", ondelete="CASCADE"), nullable=False)
    line_no = Column(Integer, nullable=False)
    marketplace_order_id = Column(String(100), nullable=False)
    order_id = Column(Uuid, ForeignKey("marketplace_order.id", ondelete="SET NULL"), nullable=True)

    gross_sales_amount = Column(BigInteger, nullable=False, default=0)
    commission_amount = Column(BigInteger, nullable=False, default=0)
    pg_fee_amount = Column(BigInteger, nullable=False, default=0)
    shipping_fee_charged = Column(BigInteger, nullable=False, default=0)
    shipping_fee_settled = Column(BigInteger, nullable=False, default=0)
    net_payout_amount = Column(BigInteger, nullable=False, default=0)

    batch = relationship("SettlementBatch", back_populates="lines")

    @classmethod
    def create(
        cls,
        tenant_id: uuid.UUID,
        line_no: int,
        marketplace_order_id: str,
        now: Optional[datetime] = None,
        **amounts: int,
    ) -> "SettlementLine":
        line = cls(
            tenant_id=tenant_id,
            line_no=line_no,
            marketplace_order_id=marketplace_order_id,
            **amounts,
        )
        line._stamp(now)
        return line

    @property
    def is_matched(self) -> bool:
        return self.order_id is not None
