"""Base SQLAlchemy declarative base for all models"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Column, DateTime, JSON, TypeDecorator, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

from domain.clock import utc_now


class PortableJSONB(TypeDecorator):
    """JSON type that works with both PostgreSQL (JSONB) and SQLite (JSON).

    Uses JSONB on PostgreSQL for efficient indexing and querying,
    falls back to JSON on SQLite for testing compatibility.
    """
    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(JSONB())
        else:
            return dialect.type_descriptor(JSON())


Base = declarative_base()


class TenantRecord:
    """Columns shared by every tenant-owned record.

    Ids are generated in Python by the model's create() factory so the
    record can be referenced (logs, idempotency keys) before flush.
    """

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    def _stamp(self, now: Optional[datetime] = None) -> None:
        now = now or utc_now()
        if self.id is None:
            self.id = uuid.uuid4()
        if self.created_at is None:
            self.created_at = now
        self.updated_at = now

    def touch(self, now: Optional[datetime] = None) -> None:
        self.updated_at = now or utc_now()
