"""SyncOrchestrator - pulls marketplace orders for a store and time range.

One SyncJob per run. At most one PENDING/RUNNING job exists per store: the
orchestrator checks first, and the unique (tenant_id, store_id, active_lock)
constraint settles races between workers.

Orders are upserted one by one and committed individually, so a bad order
is counted in failed_count and the run continues. A marketplace failure ends
the run as FAILED; orders already committed stay (upserts are idempotent, so
a retry re-fetches them harmlessly).
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from connectors.errors import RateLimitError, to_pipeline_error
from connectors.ports import MarketplaceAdapter, RawOrder, TimeRange
from credentials.vault import CredentialNotFoundError, CredentialVault
from domain.clock import Clock, as_utc, utc_now
from domain.results import (
    AlreadyCompletedError,
    ConcurrentOperationError,
    EntityNotFoundError,
    ErrorKind,
    InvalidRequestError,
    OperationResult,
    PipelineError,
    PipelineException,
    error_from_exception,
)
from domain.state_machine import StateTransitionError
from mapping.resolver import ProductMappingResolver
from models.credential import CredentialType
from models.order import Order, OrderItem, OrderItemStatus
from models.store import Store
from models.sync_job import SyncJob
from retry.scheduler import RetryKind, RetryScheduler, is_due

from .status import ACTIVE_STATUSES, SyncJobStatus, SyncTriggerType

logger = logging.getLogger(__name__)

CREDENTIALS_MISSING = "CREDENTIALS_MISSING"
STALE_RUN = "STALE_RUN"


class InvalidSyncRequest(InvalidRequestError):
    """Empty or inverted time range."""


class StoreNotFoundError(EntityNotFoundError):
    """Store does not exist for the tenant or is inactive."""


class JobCancelledError(PipelineException):
    code = "JOB_CANCELLED"


class SyncOrchestrator:
    def __init__(
        self,
        session: Session,
        adapter_factory: Callable[[str], MarketplaceAdapter],
        vault: CredentialVault,
        resolver: ProductMappingResolver,
        scheduler: RetryScheduler,
        posting_gateway=None,
        clock: Clock = utc_now,
        run_timeout_seconds: int = 3600,
    ):
        self.session = session
        self.adapter_factory = adapter_factory
        self.vault = vault
        self.resolver = resolver
        self.scheduler = scheduler
        self.posting_gateway = posting_gateway
        self.clock = clock
        self.run_timeout_seconds = run_timeout_seconds

    # Lookups

    def get_store(self, tenant_id: uuid.UUID, store_id: uuid.UUID) -> Store:
        store = self.session.execute(
            select(Store).where(Store.tenant_id == tenant_id, Store.id == store_id)
        ).scalar_one_or_none()
        if store is None or not store.is_active:
            raise StoreNotFoundError(f"Store {store_id} not found or inactive")
        return store

    def get_job(self, tenant_id: uuid.UUID, job_id: uuid.UUID) -> SyncJob:
        """
        Raises:
            EntityNotFoundError: If the job does not exist for the tenant
        """
        job = self.session.execute(
            select(SyncJob).where(SyncJob.tenant_id == tenant_id, SyncJob.id == job_id)
        ).scalar_one_or_none()
        if job is None:
            raise EntityNotFoundError(f"Sync job {job_id} not found")
        return job

    def active_job(self, tenant_id: uuid.UUID, store_id: uuid.UUID) -> Optional[SyncJob]:
        return self.session.execute(
            select(SyncJob).where(
                SyncJob.tenant_id == tenant_id,
                SyncJob.store_id == store_id,
                SyncJob.status.in_([s.value for s in ACTIVE_STATUSES]),
            )
        ).scalars().first()

    # Operations

    def start_sync(
        self,
        tenant_id: uuid.UUID,
        store_id: uuid.UUID,
        time_range: TimeRange,
        trigger_type: SyncTriggerType = SyncTriggerType.SCHEDULED,
    ) -> OperationResult[SyncJob]:
        """Create a SyncJob for the store and run it.

        Raises:
            InvalidSyncRequest: If the time range is empty or inverted
            StoreNotFoundError: If the store is unknown or inactive
        """
        if time_range is None or not time_range.is_valid:
            raise InvalidSyncRequest(f"Invalid sync time range: {time_range}")
        store = self.get_store(tenant_id, store_id)

        existing = self.active_job(tenant_id, store_id)
        if existing is not None:
            return self._concurrent(existing, store_id)

        job = SyncJob.create(
            tenant_id=tenant_id,
            store_id=store_id,
            sync_start_time=time_range.start,
            sync_end_time=time_range.end,
            trigger_type=trigger_type,
            now=self.clock(),
        )
        self.session.add(job)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            return self._concurrent(self.active_job(tenant_id, store_id), store_id)

        logger.info(
            "Sync job created",
            extra={
                "tenant_id": str(tenant_id),
                "store_id": str(store_id),
                "sync_job_id": str(job.id),
                "trigger_type": job.trigger_type,
            },
        )
        return self._run(job, store)

    def _concurrent(self, existing: Optional[SyncJob], store_id: uuid.UUID) -> OperationResult[SyncJob]:
        error = ConcurrentOperationError(
            f"A sync job is already pending or running for store {store_id}",
            detail={"sync_job_id": str(existing.id)} if existing is not None else {},
        )
        logger.info("Sync rejected, store already syncing", extra={"store_id": str(store_id)})
        return OperationResult.fail(error.to_error(), value=existing)

    def _run(self, job: SyncJob, store: Store) -> OperationResult[SyncJob]:
        now = self.clock()
        job.transition_to(SyncJobStatus.RUNNING, now)
        job.attempt_count = (job.attempt_count or 0) + 1
        job.started_at = now
        job.finished_at = None
        job.next_retry_at = None
        job.reset_counters()
        self.session.commit()

        log_extra = {"tenant_id": str(job.tenant_id), "store_id": str(store.id), "sync_job_id": str(job.id)}
        counts = {"total_fetched": 0, "created_count": 0, "updated_count": 0, "failed_count": 0}

        try:
            credentials = self.vault.get_all(job.tenant_id, store.id, CredentialType.MARKETPLACE)
            if not credentials:
                raise CredentialNotFoundError(f"No marketplace credentials for store {store.id}")
            adapter = self.adapter_factory(store.marketplace_code)
            time_range = TimeRange(start=job.sync_start_time, end=job.sync_end_time)

            for page in adapter.fetch_orders(credentials, time_range):
                for raw in page:
                    counts["total_fetched"] += 1
                    self._ingest(job, store, raw, counts, log_extra)
        except CredentialNotFoundError as e:
            error = PipelineError(kind=ErrorKind.FATAL, code=CREDENTIALS_MISSING, message=str(e))
            return self._fail(job, error, counts)
        except Exception as e:
            retry_after = e.retry_after_seconds if isinstance(e, RateLimitError) else None
            return self._fail(job, to_pipeline_error(e), counts, retry_after)

        self._apply_counts(job, counts)
        now = self.clock()
        job.transition_to(SyncJobStatus.COMPLETED, now)
        job.finished_at = now
        job.record_error(None, None, None)
        self.session.commit()

        logger.info("Sync job completed", extra={**log_extra, **counts})
        return OperationResult.ok(job)

    def _ingest(self, job: SyncJob, store: Store, raw: RawOrder, counts: Dict[str, int], log_extra) -> None:
        try:
            created = self._upsert_order(job, store, raw)
            counts["created_count" if created else "updated_count"] += 1
            self._apply_counts(job, counts)
            self.session.commit()
        except (ValueError, SQLAlchemyError) as e:
            self.session.rollback()
            counts["failed_count"] += 1
            self._apply_counts(job, counts)
            self.session.commit()
            logger.warning(
                "Order ingest failed",
                extra={**log_extra, "marketplace_order_id": raw.marketplace_order_id, "error": str(e)},
            )

    @staticmethod
    def _apply_counts(job: SyncJob, counts: Dict[str, int]) -> None:
        for name, value in counts.items():
            setattr(job, name, value)

    def _upsert_order(self, job: SyncJob, store: Store, raw: RawOrder) -> bool:
        """Insert or update one order; returns True when created.

        Raises:
            ValueError: If the order cannot be persisted (missing id, bad line)
        """
        if not raw.marketplace_order_id or not str(raw.marketplace_order_id).strip():
            raise ValueError("Order without marketplace_order_id")

        now = self.clock()
        order = self.session.execute(
            select(Order).where(
                Order.tenant_id == job.tenant_id,
                Order.store_id == store.id,
                Order.marketplace_code == store.marketplace_code,
                Order.marketplace_order_id == raw.marketplace_order_id,
            )
        ).scalar_one_or_none()

        created = order is None
        if created:
            order = Order.create(
                tenant_id=job.tenant_id,
                store_id=store.id,
                marketplace_code=store.marketplace_code,
                marketplace_order_id=raw.marketplace_order_id,
                now=now,
            )
            self.session.add(order)

        order.order_status = raw.order_status or order.order_status
        order.ordered_at = raw.ordered_at or order.ordered_at
        order.paid_at = raw.paid_at or order.paid_at
        order.buyer_name = raw.buyer_name or order.buyer_name
        order.shipping_fee = raw.shipping_fee or 0
        order.raw_payload = raw.raw or None
        order.last_sync_job_id = job.id
        order.touch(now)

        existing_items = {item.line_no: item for item in order.items}
        for line_no, raw_item in enumerate(raw.items, start=1):
            item = existing_items.pop(line_no, None)
            if item is None:
                item = OrderItem.create(
                    tenant_id=job.tenant_id,
                    line_no=line_no,
                    marketplace_product_id=raw_item.product_id,
                    now=now,
                )
                order.items.append(item)
            item.marketplace_product_id = raw_item.product_id
            item.marketplace_sku = raw_item.sku
            item.marketplace_item_id = raw_item.marketplace_item_id
            item.product_name = raw_item.product_name
            item.option_name = raw_item.option_name
            item.quantity = raw_item.quantity
            item.unit_price = raw_item.unit_price
            item.line_total = raw_item.effective_line_total
            item.item_status = (
                OrderItemStatus.CANCELED.value if raw_item.canceled else OrderItemStatus.NORMAL.value
            )
        for stale in existing_items.values():
            order.items.remove(stale)

        order.total_product_amount = sum(item.line_total for item in order.items)
        if raw.total_paid_amount is not None:
            order.total_paid_amount = raw.total_paid_amount
        else:
            order.total_paid_amount = order.total_product_amount + order.shipping_fee

        self.session.flush()

        for item in order.items:
            self.resolver.register_product(
                tenant_id=job.tenant_id,
                store_id=store.id,
                marketplace_code=store.marketplace_code,
                product_id=item.marketplace_product_id,
                sku=item.marketplace_sku,
                product_name=item.product_name,
                option_name=item.option_name,
            )

        if self.posting_gateway is not None:
            self.posting_gateway.register_order_postings(order)

        return created

    def _fail(
        self,
        job: SyncJob,
        error: PipelineError,
        counts: Dict[str, int],
        retry_after: Optional[int] = None,
    ) -> OperationResult[SyncJob]:
        self.session.rollback()
        now = self.clock()
        self._apply_counts(job, counts)
        job.transition_to(SyncJobStatus.FAILED, now)
        job.finished_at = now
        job.record_error(error.code, error.message, error.kind.value)
        if error.retryable and job.is_active:
            job.next_retry_at = self.scheduler.next_retry_at(
                RetryKind.SYNC, job.attempt_count, now, retry_after
            )
        else:
            job.next_retry_at = None
        self.session.commit()

        logger.warning(
            "Sync job failed",
            extra={
                "tenant_id": str(job.tenant_id),
                "sync_job_id": str(job.id),
                "error_code": error.code,
                "error_kind": error.kind.value,
                "attempt_count": job.attempt_count,
                "next_retry_at": job.next_retry_at.isoformat() if job.next_retry_at else None,
            },
        )
        return OperationResult.fail(error, value=job)

    def retry_job(self, tenant_id: uuid.UUID, job_id: uuid.UUID) -> OperationResult[SyncJob]:
        """FAILED -> PENDING -> run again.

        Raises:
            EntityNotFoundError: If the job does not exist for the tenant
            StoreNotFoundError: If the store became unknown or inactive
        """
        job = self.get_job(tenant_id, job_id)

        if job.status == SyncJobStatus.COMPLETED.value:
            error = AlreadyCompletedError(f"Sync job {job_id} already completed")
            return OperationResult.fail(error.to_error(), value=job)
        if not job.is_active:
            error = JobCancelledError(f"Sync job {job_id} was cancelled")
            return OperationResult.fail(error.to_error(), value=job)

        try:
            job.transition_to(SyncJobStatus.PENDING, self.clock())
        except StateTransitionError as e:
            return OperationResult.fail(error_from_exception(e), value=job)

        store = self.get_store(tenant_id, job.store_id)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            return self._concurrent(self.active_job(tenant_id, job.store_id), job.store_id)

        logger.info("Retrying sync job", extra={"tenant_id": str(tenant_id), "sync_job_id": str(job_id)})
        return self._run(job, store)

    def retry_due(self, now: Optional[datetime] = None) -> int:
        """Re-dispatch FAILED jobs whose next_retry_at has passed; returns jobs re-run."""
        now = now or self.clock()
        self.recover_stale_runs(now)
        jobs = self.session.execute(
            select(SyncJob.tenant_id, SyncJob.id, SyncJob.next_retry_at, SyncJob.is_active)
            .where(
                SyncJob.status == SyncJobStatus.FAILED.value,
                SyncJob.is_active.is_(True),
                SyncJob.next_retry_at.is_not(None),
            )
            .order_by(SyncJob.next_retry_at)
        ).all()

        dispatched = 0
        for tenant_id, job_id, next_retry_at, is_active in jobs:
            if not is_due(next_retry_at, is_active, now):
                continue
            try:
                self.retry_job(tenant_id, job_id)
            except EntityNotFoundError as e:
                logger.warning(
                    "Sync retry skipped",
                    extra={"tenant_id": str(tenant_id), "sync_job_id": str(job_id), "error": str(e)},
                )
                continue
            dispatched += 1
        return dispatched

    def recover_stale_runs(self, now: datetime) -> int:
        """RUNNING jobs older than the run timeout -> FAILED (retryable)."""
        cutoff = now - timedelta(seconds=self.run_timeout_seconds)
        stale = [
            job for job in self.session.execute(
                select(SyncJob).where(SyncJob.status == SyncJobStatus.RUNNING.value)
            ).scalars().all()
            if job.started_at is not None and as_utc(job.started_at) < cutoff
        ]
        for job in stale:
            error = PipelineError(kind=ErrorKind.RETRYABLE, code=STALE_RUN, message="Sync run did not finish")
            counts = {
                "total_fetched": job.total_fetched,
                "created_count": job.created_count,
                "updated_count": job.updated_count,
                "failed_count": job.failed_count,
            }
            self._fail(job, error, counts)
        return len(stale)

    def cancel(self, tenant_id: uuid.UUID, job_id: uuid.UUID) -> SyncJob:
        """Stop future retries of a job. A running attempt finishes normally.

        Raises:
            EntityNotFoundError: If the job does not exist for the tenant
        """
        job = self.get_job(tenant_id, job_id)
        job.is_active = False
        job.next_retry_at = None
        job.touch(self.clock())
        self.session.commit()
        logger.info("Sync job cancelled", extra={"tenant_id": str(tenant_id), "sync_job_id": str(job_id)})
        return job
