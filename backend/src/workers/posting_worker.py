"""Celery tasks for ERP posting submission."""

import logging
from typing import Any, Dict, Optional
from uuid import UUID

from observability.correlation import set_correlation_id
from observability.metrics import postings_submitted_total, retry_dispatched_total
from retry.scheduler import RetryKind

from .base import BaseTask, result_payload, task_container
from .celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(base=BaseTask, name="postings.submit")
def submit_posting_task(posting_id: str, tenant_id: str) -> Dict[str, Any]:
    """Submit one posting; a POSTED posting returns its stored reference."""
    tenant_uuid = UUID(tenant_id)
    with task_container(tenant_uuid) as container:
        result = container.gateway.submit(tenant_uuid, UUID(posting_id))
        postings_submitted_total.labels(status="submitted" if result.success else "failed").inc()
        return result_payload(result)


@celery_app.task(name="postings.dispatch")
def dispatch_postings_task(tenant_id: Optional[str] = None, limit: int = 100) -> Dict[str, int]:
    """Beat sweep: promote PENDING_MAPPING postings that are now mapped and
    submit every READY_TO_POST posting."""
    set_correlation_id()
    tenant_uuid = UUID(tenant_id) if tenant_id else None
    with task_container(tenant_uuid) as container:
        promoted = container.gateway.refresh_pending_mapping(tenant_uuid)
        counts = container.gateway.submit_ready(tenant_uuid, limit=limit)
    for status, count in counts.items():
        postings_submitted_total.labels(status=status).inc(count)
    logger.info("Posting dispatch finished", extra={"promoted": promoted, **counts})
    return {"promoted": promoted, **counts}


@celery_app.task(name="postings.retry_due")
def posting_retry_due_task() -> Dict[str, int]:
    """Beat sweep: resubmit FAILED postings whose next_retry_at has passed."""
    set_correlation_id()
    with task_container() as container:
        dispatched = container.scheduler.run_due(kinds=[RetryKind.POSTING])
    retry_dispatched_total.labels(kind=RetryKind.POSTING.value).inc(dispatched.get(RetryKind.POSTING.value, 0))
    return dispatched
