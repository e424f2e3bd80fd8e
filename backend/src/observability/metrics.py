"""Prometheus metrics for the reconciliation pipelines.

Recorded by the worker tasks from the OperationResult of each run.
"""

from prometheus_client import Counter, Gauge

sync_jobs_total = Counter(
    "reconciler_sync_jobs_total",
    "Sync job runs by outcome",
    ["marketplace_code", "status"],  # status: COMPLETED|FAILED|REJECTED
)

orders_synced_total = Counter(
    "reconciler_orders_synced_total",
    "Orders ingested by sync jobs",
    ["result"],  # result: created|updated|failed
)

postings_submitted_total = Counter(
    "reconciler_postings_submitted_total",
    "ERP posting submissions by outcome",
    ["status"],  # status: submitted|failed|skipped
)

shipment_pushes_total = Counter(
    "reconciler_shipment_pushes_total",
    "Tracking number pushes by outcome",
    ["status"],  # status: success|failed
)

settlement_batches_total = Counter(
    "reconciler_settlement_batches_total",
    "Settlement cycles by final batch status",
    ["marketplace_code", "status"],
)

retry_dispatched_total = Counter(
    "reconciler_retry_dispatched_total",
    "Units re-dispatched by the retry scheduler",
    ["kind"],  # kind: SYNC|POSTING|SHIPMENT|SETTLEMENT
)

shipments_manual_review = Gauge(
    "reconciler_shipments_manual_review",
    "Failed shipments excluded from automatic retry",
)
