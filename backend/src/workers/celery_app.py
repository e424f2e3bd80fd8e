"""Celery application and beat schedule.

Beat runs the sweeps; tenant-scoped work (one sync, one push, one settlement
cycle) is enqueued explicitly with tenant_id.
"""

from celery import Celery

from config import settings
from observability.logging_config import configure_logging

configure_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON)

celery_app = Celery(
    "reconciler",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "workers.sync_worker",
        "workers.posting_worker",
        "workers.shipment_worker",
        "workers.settlement_worker",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
)

celery_app.conf.beat_schedule = {
    "sync-retry-due": {
        "task": "sync.retry_due",
        "schedule": float(settings.SYNC_RETRY_INTERVAL_SECONDS),
    },
    "postings-dispatch": {
        "task": "postings.dispatch",
        "schedule": float(settings.POSTING_DISPATCH_INTERVAL_SECONDS),
    },
    "postings-retry-due": {
        "task": "postings.retry_due",
        "schedule": float(settings.POSTING_DISPATCH_INTERVAL_SECONDS),
    },
    "shipments-retry-due": {
        "task": "shipments.retry_due",
        "schedule": float(settings.SHIPMENT_RETRY_INTERVAL_SECONDS),
    },
    "settlements-retry-due": {
        "task": "settlements.retry_due",
        "schedule": float(settings.SETTLEMENT_RETRY_INTERVAL_SECONDS),
        "options": {"expires": settings.SETTLEMENT_RETRY_INTERVAL_SECONDS},
    },
}
