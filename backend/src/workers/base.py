"""Base utilities for multi-tenant background tasks.

Every tenant-scoped task receives tenant_id as an explicit keyword argument
(UUID string), validates it before touching data and works on a session
scoped to that tenant:

    @celery_app.task(base=BaseTask, name="shipments.push")
    def push_shipment_task(shipment_id: str, tenant_id: str) -> Dict[str, Any]:
        tenant_uuid = UUID(tenant_id)  # validated by BaseTask
        with task_container(tenant_uuid) as container:
            result = container.shipments.push_to_market(tenant_uuid, UUID(shipment_id))
            return result_payload(result)

Periodic (beat) tasks that sweep all tenants use task_container() without a
tenant and do not use BaseTask.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Generator, Optional
from uuid import UUID

from celery import Task
from sqlalchemy import select

import connectors.implementations  # noqa: F401  registers the MOCK adapters
from container import Container, build_container
from database import SessionLocal, tenant_scoped_session
from domain.results import OperationResult
from models.store import Store
from observability.correlation import set_correlation_id

logger = logging.getLogger(__name__)


def validate_tenant_id(tenant_id: str) -> UUID:
    """Validate that tenant_id is a UUID with at least one store.

    Raises:
        ValueError: If tenant_id is not a UUID or the tenant has no stores
    """
    try:
        tenant_uuid = UUID(tenant_id)
    except (ValueError, AttributeError, TypeError) as e:
        raise ValueError(f"Invalid tenant_id format '{tenant_id}': {str(e)}")

    session = SessionLocal()
    try:
        store = session.execute(
            select(Store.id).where(Store.tenant_id == tenant_uuid).limit(1)
        ).first()
        if store is None:
            raise ValueError(f"Tenant {tenant_id} has no stores")
    finally:
        session.close()

    return tenant_uuid


@contextmanager
def task_container(tenant_id: Optional[UUID] = None) -> Generator[Container, None, None]:
    """Session plus assembled components for one task run."""
    session = tenant_scoped_session(tenant_id) if tenant_id is not None else SessionLocal()
    try:
        yield build_container(session)
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def result_payload(result: OperationResult, **extra: Any) -> Dict[str, Any]:
    """JSON-serializable task result."""
    payload: Dict[str, Any] = {"success": result.success}
    value = result.value
    if value is not None and hasattr(value, "to_dict"):
        payload["value"] = value.to_dict()
    if result.error is not None:
        payload["error"] = {
            "kind": result.error.kind.value,
            "code": result.error.code,
            "message": result.error.message,
            "detail": result.error.detail,
        }
    payload.update(extra)
    return payload


class BaseTask(Task):
    """Base Celery task class with tenant validation.

    Tasks using this base class must be called with tenant_id as a keyword
    argument. A fresh correlation id is set for every run.
    """

    def __call__(self, *args, **kwargs):
        """Validate tenant_id before running task.

        Raises:
            ValueError: If tenant_id parameter is missing or invalid
        """
        tenant_id = kwargs.get("tenant_id")
        if not tenant_id:
            raise ValueError(
                "tenant_id parameter is required for all multi-tenant tasks. "
                "Ensure you pass tenant_id=str(tenant_uuid) when enqueuing the task."
            )
        validate_tenant_id(tenant_id)

        correlation_id = set_correlation_id(getattr(self.request, "id", None))
        logger.debug("Task started", extra={"task": self.name, "tenant_id": tenant_id, "task_id": correlation_id})
        return super().__call__(*args, **kwargs)
