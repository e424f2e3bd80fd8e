"""Celery tasks for invoice issue and tracking number push."""

import logging
from typing import Any, Dict, Optional
from uuid import UUID

from observability.correlation import set_correlation_id
from observability.metrics import retry_dispatched_total, shipment_pushes_total, shipments_manual_review
from retry.scheduler import RetryKind

from .base import BaseTask, result_payload, task_container
from .celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(base=BaseTask, name="shipments.issue_invoice")
def issue_invoice_task(
    order_id: str,
    tenant_id: str,
    carrier_code: str,
    tracking_no: str,
    carrier_name: Optional[str] = None,
    override: bool = False,
    push: bool = True,
) -> Dict[str, Any]:
    """Record a tracking number and, by default, push it right away."""
    tenant_uuid = UUID(tenant_id)
    with task_container(tenant_uuid) as container:
        result = container.shipments.issue_invoice(
            tenant_uuid, UUID(order_id), carrier_code, tracking_no,
            carrier_name=carrier_name, override=override,
        )
        if result.success and push:
            result = container.shipments.push_to_market(tenant_uuid, result.value.id)
            shipment_pushes_total.labels(status="success" if result.success else "failed").inc()
        return result_payload(result)


@celery_app.task(base=BaseTask, name="shipments.push")
def push_shipment_task(shipment_id: str, tenant_id: str) -> Dict[str, Any]:
    tenant_uuid = UUID(tenant_id)
    with task_container(tenant_uuid) as container:
        result = container.shipments.push_to_market(tenant_uuid, UUID(shipment_id))
        shipment_pushes_total.labels(status="success" if result.success else "failed").inc()
        return result_payload(result)


@celery_app.task(name="shipments.retry_due")
def shipment_retry_due_task() -> Dict[str, int]:
    """Beat sweep: re-push FAILED shipments that are due and under the retry maximum."""
    set_correlation_id()
    with task_container() as container:
        dispatched = container.scheduler.run_due(kinds=[RetryKind.SHIPMENT])
    retry_dispatched_total.labels(kind=RetryKind.SHIPMENT.value).inc(dispatched.get(RetryKind.SHIPMENT.value, 0))
    return dispatched


@celery_app.task(base=BaseTask, name="shipments.manual_review")
def manual_review_task(tenant_id: str) -> Dict[str, Any]:
    """List shipments that need an operator."""
    tenant_uuid = UUID(tenant_id)
    with task_container(tenant_uuid) as container:
        shipments = container.shipments.list_manual_review(tenant_uuid)
        shipments_manual_review.set(len(shipments))
        if shipments:
            logger.warning(
                "Shipments waiting for manual review",
                extra={"tenant_id": tenant_id, "count": len(shipments)},
            )
        return {"count": len(shipments), "shipments": [s.to_dict() for s in shipments]}
