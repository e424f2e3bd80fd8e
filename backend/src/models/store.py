"""Store model - a seller's shop on one marketplace."""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, Column, Index, String, Text

from .base import Base, TenantRecord


class Store(TenantRecord, Base):
    """Marketplace store owned by a tenant.

    Attributes:
        marketplace_code: Marketplace identifier (e.g. 'NAVER_SMARTSTORE', 'COUPANG')
        name: Display name of the store
        is_active: Inactive stores are rejected by the sync orchestrator
    """

    __tablename__ = "store"

    marketplace_code = Column(String(40), nullable=False)
    name = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        Index("idx_store_tenant_marketplace", "tenant_id", "marketplace_code"),
    )

    @classmethod
    def create(
        cls,
        tenant_id: uuid.UUID,
        marketplace_code: str,
        name: str,
        is_active: bool = True,
        now: Optional[datetime] = None,
    ) -> "Store":
        store = cls(
            tenant_id=tenant_id,
            marketplace_code=marketplace_code,
            name=name,
            is_active=is_active,
        )
        store._stamp(now)
        return store

    def __repr__(self):
        return f"<Store(id={self.id}, marketplace={self.marketplace_code}, active={self.is_active})>"
