"""Pytest fixtures for the reconciliation pipelines.

Provides reusable test fixtures for:
- In-memory SQLite database session (tables created per test)
- A controllable clock
- A tenant with one active store (and, on request, a second one) and marketplace credentials
- Mock marketplace / ERP adapters and the assembled component container

Usage:
    def test_sync(container, tenant_id, store, marketplace, time_range):
        marketplace.add_order(make_raw_order("A-1"))
        result = container.sync.start_sync(tenant_id, store.id, time_range)
        assert result.success
"""

import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator
from uuid import UUID, uuid4

# Set environment variables BEFORE any imports to ensure they take effect
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key")
os.environ.setdefault("LOG_JSON", "false")
os.environ.setdefault("DEFAULT_ERP_CODE", "MOCK")

backend_src = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(backend_src))

import pytest
from sqlalchemy.orm import Session

from config import Settings
from connectors.implementations.mock_erp import MockErpAdapter
from connectors.implementations.mock_marketplace import MockMarketplaceAdapter
from connectors.ports import RawOrder, RawOrderItem, TimeRange
from container import Container, build_container
from credentials.cipher import CredentialCipher
from database import SessionLocal, engine
from models import Base, CredentialType, Store


class MutableClock:
    """Clock fixture: returns a fixed aware UTC time until advanced."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


def make_raw_order(
    marketplace_order_id: str,
    items=None,
    shipping_fee: int = 0,
    ordered_at: datetime = None,
    **fields,
) -> RawOrder:
    """RawOrder with one 11,000 line by default."""
    if items is None:
        items = [RawOrderItem(product_id="P-1", sku="SKU-1", product_name="Green tea 500ml",
                              quantity=1, unit_price=11_000)]
    return RawOrder(
        marketplace_order_id=marketplace_order_id,
        ordered_at=ordered_at or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc),
        shipping_fee=shipping_fee,
        items=items,
        **fields,
    )


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh database session for each test.

    Creates all tables before the test and drops them after.
    """
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock(datetime(2026, 3, 3, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings() -> Settings:
    """Settings without jitter so retry times are exact."""
    return Settings(
        RETRY_JITTER_RATIO=0.0,
        DEFAULT_ERP_CODE="MOCK",
        ENCRYPTION_KEY="test-encryption-key",
    )


@pytest.fixture
def tenant_id() -> UUID:
    return uuid4()


@pytest.fixture
def marketplace() -> MockMarketplaceAdapter:
    return MockMarketplaceAdapter(page_size=2)


@pytest.fixture
def erp() -> MockErpAdapter:
    return MockErpAdapter()


@pytest.fixture
def container(db_session, settings, marketplace, erp, clock) -> Container:
    return build_container(
        db_session,
        settings=settings,
        marketplace_factory=lambda code: marketplace,
        erp_adapter=erp,
        clock=clock,
        cipher=CredentialCipher("test-encryption-key"),
    )


@pytest.fixture
def store(db_session, container, tenant_id, clock) -> Store:
    """Active MOCK store with marketplace credentials."""
    store = Store.create(tenant_id=tenant_id, marketplace_code="MOCK", name="Test Store", now=clock())
    db_session.add(store)
    db_session.flush()
    container.vault.put(tenant_id, store.id, CredentialType.MARKETPLACE, "api_key", "mock-api-key")
    db_session.commit()
    return store


@pytest.fixture
def other_store(db_session, container, tenant_id, clock) -> Store:
    """Second MOCK store of the same tenant, served by the same mock marketplace."""
    store = Store.create(tenant_id=tenant_id, marketplace_code="MOCK", name="Second Store", now=clock())
    db_session.add(store)
    db_session.flush()
    container.vault.put(tenant_id, store.id, CredentialType.MARKETPLACE, "api_key", "mock-api-key-2")
    db_session.commit()
    return store


@pytest.fixture
def time_range(clock) -> TimeRange:
    return TimeRange(start=clock() - timedelta(days=2), end=clock())
