"""Posting model - one ERP document per (tenant, owning order or batch, posting type).

Single record of what was sent to the ERP. document_payload holds the canonical JSON
built by PostingBuilder; rebuilding the same inputs yields the same bytes, so
the idempotency key is stable across retries.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import (
    BigInteger,
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
from postings.status import PostingStatus, PostingType, validate_transition

from .base import Base, TenantRecord


class Posting(TenantRecord, Base):
    """ERP posting.

    Attributes:
        idempotency_key: sha256(tenant:order or batch id:posting_type), unique per tenant
        reference: Business reference the document is keyed on (marketplace
            order id, or settlement batch key)
        posting_type: PostingType value
        status: PostingStatus value
        order_id / settlement_batch_id: Owning entity (exactly one is set)
        erp_code: Target ERP
        supply_amount / vat_amount / total_amount: VAT breakdown of the document
        document_payload: Canonical JSON document
        erp_document_no: ERP reference once POSTED
        retry_count: Failed submissions so far
        next_retry_at: When the RetryScheduler may resubmit
        is_active: False once the owning entity is cancelled
        last_error_code / last_error_message / last_error_kind: Last failure
    """

    __tablename__ = "posting"

    idempotency_key = Column(String(64), nullable=False)
    reference = Column(String(200), nullable=False)
    posting_type = Column(String(40), nullable=False)
    status = Column(String(30), nullable=False, default=PostingStatus.CREATED.value)

    order_id = Column(Uuid, ForeignKey("marketplace_order.id", ondelete="CASCADE"), nullable=True)
    settlement_batch_id = Column(Uuid, ForeignKey("settlement_batch.id", ondelete="CASCADE"), nullable=True)
    erp_code = Column(String(40), nullable=False)

    supply_amount = Column(BigInteger, nullable=False, default=0)
    vat_amount = Column(BigInteger, nullable=False, default=0)
    total_amount = Column(BigInteger, nullable=False, default=0)
    document_payload = Column(Text, nullable=True)

    erp_document_no = Column(String(100), nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    last_error_code = Column(String(60), nullable=True)
    last_error_message = Column(Text, nullable=True)
    last_error_kind = Column(String(20), nullable=True)

    requested_at = Column(DateTime(timezone=True), nullable=True)
    posted_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "idempotency_key", name="uq_posting_idempotency_key"),
        Index("idx_posting_status_retry", "status", "is_active", "next_retry_at"),
        Index("idx_posting_order", "tenant_id", "order_id"),
    )

    @classmethod
    def create(
        cls,
        tenant_id: uuid.UUID,
        idempotency_key: str,
        reference: str,
        posting_type: PostingType,
        erp_code: str,
        order_id: Optional[uuid.UUID] = None,
        settlement_batch_id: Optional[uuid.UUID] = None,
        now: Optional[datetime] = None,
    ) -> "Posting":
        posting = cls(
            tenant_id=tenant_id,
            idempotency_key=idempotency_key,
            reference=reference,
            posting_type=PostingType(posting_type).value,
            status=PostingStatus.CREATED.value,
            erp_code=erp_code,
            order_id=order_id,
            settlement_batch_id=settlement_batch_id,
            supply_amount=0,
            vat_amount=0,
            total_amount=0,
            retry_count=0,
            is_active=True,
        )
        posting._stamp(now)
        return posting

    @property
    def status_enum(self) -> PostingStatus:
        return coerce_status(PostingStatus, self.status)

    @property
    def type_enum(self) -> PostingType:
        return coerce_status(PostingType, self.posting_type)

    def transition_to(self, new_status: PostingStatus, now: Optional[datetime] = None) -> None:
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

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "reference": self.reference,
            "posting_type": self.posting_type,
            "status": self.status,
            "supply_amount": self.supply_amount,
            "vat_amount": self.vat_amount,
            "total_amount": self.total_amount,
            "erp_document_no": self.erp_document_no,
            "retry_count": self.retry_count,
            "last_error_code": self.last_error_code,
        }

    def __repr__(self):
        return f"<Posting(id={self.id}, type={self.posting_type}, status={self.status})>"
