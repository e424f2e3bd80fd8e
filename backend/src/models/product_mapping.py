"""ProductMapping model - marketplace product/SKU to ERP item code.

Key scope: (tenant_id, store_id, marketplace_code, marketplace_product_id,
marketplace_sku). store_id NULL means the mapping applies to every store of
the tenant on that marketplace; a store-scoped mapping takes precedence.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import Boolean, Column, DateTime, Index, Numeric, String, Text, Uuid, text
from sqlalchemy.orm import validates

from .base import Base, TenantRecord


class MappingStatus(str, Enum):
    """Mapping status.

    Values:
        UNMAPPED: Product seen, no ERP item known
        SUGGESTED: Candidate proposed by the similarity scorer (not usable for posting)
        MAPPED: Confirmed; the only status that satisfies posting
    """
    UNMAPPED = "UNMAPPED"
    SUGGESTED = "SUGGESTED"
    MAPPED = "MAPPED"


class MappingType(str, Enum):
    AUTO = "AUTO"
    MANUAL = "MANUAL"


class ProductMapping(TenantRecord, Base):
    """Product mapping record.

    Invariants: a MANUAL mapping is never overwritten by an AUTO one, and at
    most one active mapping exists per key scope.
    """

    __tablename__ = "product_mapping"

    store_id = Column(Uuid, nullable=True)
    marketplace_code = Column(String(40), nullable=False)
    marketplace_product_id = Column(String(100), nullable=False)
    marketplace_sku = Column(String(100), nullable=False, default="")
    product_name = Column(Text, nullable=True)
    option_name = Column(Text, nullable=True)

    erp_code = Column(String(40), nullable=True)
    erp_item_code = Column(String(100), nullable=True)
    erp_item_name = Column(Text, nullable=True)
    warehouse_code = Column(String(40), nullable=True)

    mapping_status = Column(String(20), nullable=False, default=MappingStatus.UNMAPPED.value)
    mapping_type = Column(String(20), nullable=False, default=MappingType.AUTO.value)
    confidence = Column(Numeric(5, 4), nullable=False, default=Decimal("0"))  # 0.0-1.0
    is_active = Column(Boolean, nullable=False, default=True)
    mapped_at = Column(DateTime(timezone=True), nullable=True)
    mapped_by = Column(Text, nullable=True)

    # One active mapping per key scope; the store-independent scope (NULL
    # store_id) has its own index.
    __table_args__ = (
        Index(
            "uq_product_mapping_store_scope_active",
            "tenant_id", "store_id", "marketplace_code", "marketplace_product_id", "marketplace_sku",
            unique=True,
            postgresql_where=text("is_active AND store_id IS NOT NULL"),
            sqlite_where=text("is_active AND store_id IS NOT NULL"),
        ),
        Index(
            "uq_product_mapping_tenant_scope_active",
            "tenant_id", "marketplace_code", "marketplace_product_id", "marketplace_sku",
            unique=True,
            postgresql_where=text("is_active AND store_id IS NULL"),
            sqlite_where=text("is_active AND store_id IS NULL"),
        ),
        Index("idx_product_mapping_status", "tenant_id", "mapping_status", "is_active"),
    )

    @validates("confidence")
    def validate_confidence(self, key, value):
        if value is None:
            return Decimal("0")
        value = Decimal(str(value))
        if value < 0 or value > 1:
            raise ValueError(f"confidence must be in [0, 1], got {value}")
        return value

    @classmethod
    def create(
        cls,
        tenant_id: uuid.UUID,
        store_id: Optional[uuid.UUID],
        marketplace_code: str,
        marketplace_product_id: str,
        marketplace_sku: Optional[str],
        now: Optional[datetime] = None,
        **fields: Any,
    ) -> "ProductMapping":
        mapping = cls(
            tenant_id=tenant_id,
            store_id=store_id,
            marketplace_code=marketplace_code,
            marketplace_product_id=marketplace_product_id,
            marketplace_sku=marketplace_sku or "",
            **fields,
        )
        if mapping.mapping_status is None:
            mapping.mapping_status = MappingStatus.UNMAPPED.value
        if mapping.mapping_type is None:
            mapping.mapping_type = MappingType.AUTO.value
        if mapping.is_active is None:
            mapping.is_active = True
        mapping._stamp(now)
        return mapping

    @property
    def key(self) -> str:
        return f"{self.marketplace_product_id}:{self.marketplace_sku}"

    @property
    def is_mapped(self) -> bool:
        return bool(self.is_active) and self.mapping_status == MappingStatus.MAPPED.value

    @property
    def is_manual(self) -> bool:
        return self.mapping_type == MappingType.MANUAL.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "store_id": str(self.store_id) if self.store_id else None,
            "marketplace_code": self.marketplace_code,
            "marketplace_product_id": self.marketplace_product_id,
            "marketplace_sku": self.marketplace_sku,
            "erp_item_code": self.erp_item_code,
            "mapping_status": self.mapping_status,
            "mapping_type": self.mapping_type,
            "confidence": float(self.confidence),
            "is_active": self.is_active,
        }

    def __repr__(self):
        return (
            f"<ProductMapping(id={self.id}, key={self.key}, "
            f"status={self.mapping_status}, type={self.mapping_type})>"
        )
