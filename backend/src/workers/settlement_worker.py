"""Celery tasks for settlement reconciliation."""

import logging
from datetime import date
from typing import Any, Dict
from uuid import UUID

from connectors.ports import SettlementPeriod
from observability.correlation import set_correlation_id
from observability.metrics import retry_dispatched_total, settlement_batches_total
from retry.scheduler import RetryKind

from .base import BaseTask, result_payload, task_container
from .celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(base=BaseTask, name="settlements.run")
def run_settlement_task(
    store_id: str,
    tenant_id: str,
    cycle: str,
    period_start: str,
    period_end: str,
) -> Dict[str, Any]:
    """collect -> validate -> build postings -> post for one cycle and period.

    Args:
        period_start / period_end: ISO dates, inclusive
    """
    tenant_uuid = UUID(tenant_id)
    period = SettlementPeriod(start=date.fromisoformat(period_start), end=date.fromisoformat(period_end))
    with task_container(tenant_uuid) as container:
        result = container.settlements.run(tenant_uuid, UUID(store_id), cycle, period)
        batch = result.value
        if batch is not None:
            settlement_batches_total.labels(
                marketplace_code=batch.marketplace_code, status=batch.status
            ).inc()
        return result_payload(result)


@celery_app.task(base=BaseTask, name="settlements.close")
def close_settlement_task(batch_id: str, tenant_id: str) -> Dict[str, Any]:
    tenant_uuid = UUID(tenant_id)
    with task_container(tenant_uuid) as container:
        return result_payload(container.settlements.close(tenant_uuid, UUID(batch_id)))


@celery_app.task(name="settlements.retry_due")
def settlement_retry_due_task() -> Dict[str, int]:
    """Beat sweep: restart due FAILED batches and re-post due POSTING_READY ones."""
    set_correlation_id()
    with task_container() as container:
        dispatched = container.scheduler.run_due(kinds=[RetryKind.SETTLEMENT])
    retry_dispatched_total.labels(kind=RetryKind.SETTLEMENT.value).inc(
        dispatched.get(RetryKind.SETTLEMENT.value, 0)
    )
    logger.info("Settlement retry sweep finished", extra={"dispatched": dispatched})
    return dispatched
