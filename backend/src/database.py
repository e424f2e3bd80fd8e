"""Database session factory and configuration.

Provides database connectivity and session management for the reconciliation
pipelines. Includes a tenant-scoped session factory for background workers.
"""

from uuid import UUID

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from config import settings

DATABASE_URL = settings.DATABASE_URL

# Pool settings only apply to PostgreSQL (not SQLite)
_engine_kwargs = {
    "pool_pre_ping": True,  # Verify connections before using
    "echo": False,  # Set to True for SQL query logging
}

if DATABASE_URL.startswith("sqlite"):
    # In-memory SQLite must share a single connection across sessions
    _engine_kwargs["connect_args"] = {"check_same_thread": False}
    _engine_kwargs["poolclass"] = StaticPool
else:
    _engine_kwargs["pool_size"] = 5
    _engine_kwargs["max_overflow"] = 10

engine = create_engine(DATABASE_URL, **_engine_kwargs)

# Create session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)


def tenant_scoped_session(tenant_id: UUID) -> Session:
    """Create a database session scoped to a specific tenant.

    The tenant_id is stored in session.info["tenant_id"] so that components
    built on top of the session can assert they are operating on the tenant
    the worker was invoked for. Queries still filter on tenant_id explicitly.

    Args:
        tenant_id: Tenant UUID to scope this session to

    Returns:
        Session: SQLAlchemy session with tenant context
    """
    session = SessionLocal()
    session.info["tenant_id"] = tenant_id
    return session
