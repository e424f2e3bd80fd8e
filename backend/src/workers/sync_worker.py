"""Celery tasks for order sync."""

import logging
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

from connectors.ports import TimeRange
from observability.correlation import set_correlation_id
from observability.metrics import orders_synced_total, retry_dispatched_total, sync_jobs_total
from retry.scheduler import RetryKind
from sync.status import SyncTriggerType

from .base import BaseTask, result_payload, task_container
from .celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(base=BaseTask, name="sync.store", bind=True)
def sync_store_task(
    self,
    store_id: str,
    tenant_id: str,
    start: str,
    end: str,
    trigger_type: str = SyncTriggerType.SCHEDULED.value,
) -> Dict[str, Any]:
    """Run one sync job for a store over [start, end).

    Args:
        store_id: Store UUID string
        tenant_id: Tenant UUID string (REQUIRED)
        start / end: ISO-8601 datetimes
        trigger_type: SCHEDULED, MANUAL or WEBHOOK

    Raises:
        ValueError: On an invalid time range or unknown store
    """
    tenant_uuid = UUID(tenant_id)
    time_range = TimeRange(start=datetime.fromisoformat(start), end=datetime.fromisoformat(end))

    with task_container(tenant_uuid) as container:
        store_uuid = UUID(store_id)
        result = container.sync.start_sync(
            tenant_uuid, store_uuid, time_range, SyncTriggerType(trigger_type)
        )
        job = result.value
        marketplace_code = container.sync.get_store(tenant_uuid, store_uuid).marketplace_code
        if job is not None and result.error_code != "CONCURRENT_OPERATION":
            sync_jobs_total.labels(marketplace_code=marketplace_code, status=job.status).inc()
            orders_synced_total.labels(result="created").inc(job.created_count or 0)
            orders_synced_total.labels(result="updated").inc(job.updated_count or 0)
            orders_synced_total.labels(result="failed").inc(job.failed_count or 0)
        else:
            sync_jobs_total.labels(marketplace_code=marketplace_code, status="REJECTED").inc()
        return result_payload(result)


@celery_app.task(name="sync.retry_job", base=BaseTask)
def retry_sync_job_task(job_id: str, tenant_id: str) -> Dict[str, Any]:
    """Manually retry a FAILED sync job."""
    tenant_uuid = UUID(tenant_id)
    with task_container(tenant_uuid) as container:
        return result_payload(container.sync.retry_job(tenant_uuid, UUID(job_id)))


@celery_app.task(name="sync.retry_due")
def sync_retry_due_task(now: Optional[str] = None) -> Dict[str, Any]:
    """Beat sweep: re-run FAILED sync jobs whose next_retry_at has passed."""
    set_correlation_id()
    with task_container() as container:
        dispatched = container.scheduler.run_due(
            datetime.fromisoformat(now) if now else None, kinds=[RetryKind.SYNC]
        )
    retry_dispatched_total.labels(kind=RetryKind.SYNC.value).inc(dispatched.get(RetryKind.SYNC.value, 0))
    logger.info("Sync retry sweep finished", extra={"dispatched": dispatched})
    return dispatched
