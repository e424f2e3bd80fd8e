"""ErpItem model - cached copy of the ERP item master.

Refreshed by ProductMappingResolver.sync_erp_items(); the candidate set for
mapping suggestions.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, Column, DateTime, String, Text, UniqueConstraint

from .base import Base, TenantRecord


class ErpItem(TenantRecord, Base):
    __tablename__ = "erp_item"

    erp_code = Column(String(40), nullable=False)
    item_code = Column(String(100), nullable=False)
    item_name = Column(Text, nullable=False)
    item_spec = Column(Text, nullable=True)
    warehouse_code = Column(String(40), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "erp_code", "item_code", name="uq_erp_item_code"),
    )

    @classmethod
    def create(
        cls,
        tenant_id: uuid.UUID,
        erp_code: str,
        item_code: str,
        item_name: str,
        item_spec: Optional[str] = None,
        warehouse_code: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "ErpItem":
        item = cls(
            tenant_id=tenant_id,
            erp_code=erp_code,
            item_code=item_code,
            item_name=item_name,
            item_spec=item_spec,
            warehouse_code=warehouse_code,
            is_active=True,
            last_synced_at=now,
        )
        item._stamp(now)
        return item

    def __repr__(self):
        return f"<ErpItem(erp={self.erp_code}, code={self.item_code}, name={self.item_name})>"
