"""SettlementReconciler - collects marketplace payouts and posts them to the ERP.

Batch lifecycle:
    collect        -> COLLECTED (feed stored as lines, orders matched)
    validate       -> VALIDATED, or FAILED with the discrepancy recorded
    build_postings -> POSTING_READY (COMMISSION_EXPENSE, RECEIPT and, when
                      non-zero, SHIPPING_ADJUSTMENT registered with the gateway)
    post           -> POSTED once every batch posting is POSTED
    close          -> CLOSED

A FAILED batch only restarts from COLLECTED: retry_failed re-runs the whole
cycle, never a single step.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from connectors.errors import RateLimitError, to_pipeline_error
from connectors.ports import MarketplaceAdapter, MarketplaceSettlementData, SettlementPeriod
from credentials.vault import CredentialVault
from domain.clock import Clock, utc_now
from domain.results import (
    AlreadyCompletedError,
    ConcurrentOperationError,
    EntityNotFoundError,
    ErrorKind,
    InvalidRequestError,
    OperationResult,
    PipelineError,
    ReconciliationMismatchError,
    error_from_exception,
)
from domain.state_machine import StateTransitionError
from models.credential import CredentialType
from models.order import Order, OrderSettlementStatus
from models.settlement import SettlementBatch, SettlementLine
from models.store import Store
from postings.builder import PostingBuilder, SettlementTotals
from postings.gateway import ErpPostingGateway
from postings.status import PostingType
from retry.scheduler import RetryKind, RetryScheduler, is_due

from .status import COMPLETED_STATUSES, SettlementStatus, validate_transition

logger = logging.getLogger(__name__)

CREDENTIALS_MISSING = "CREDENTIALS_MISSING"

_POSTING_ID_FIELDS = {
    PostingType.COMMISSION_EXPENSE.value: "commission_posting_id",
    PostingType.RECEIPT.value: "receipt_posting_id",
    PostingType.SHIPPING_ADJUSTMENT.value: "shipping_adjustment_posting_id",
}


def find_discrepancies(batch: SettlementBatch, totals: SettlementTotals, tolerance: int) -> Dict[str, Any]:
    """Declared header totals vs line sums; only fields off by more than tolerance."""
    pairs = {
        "gross_sales_amount": (batch.declared_gross_sales_amount, totals.gross_sales),
        "commission_amount": (batch.declared_commission_amount, totals.commission),
        "pg_fee_amount": (batch.declared_pg_fee_amount, totals.pg_fee),
        "shipping_fee_charged": (batch.declared_shipping_fee_charged, totals.shipping_charged),
        "shipping_fee_settled": (batch.declared_shipping_fee_settled, totals.shipping_settled),
        "expected_payout_amount": (batch.expected_payout_amount, totals.net_payout),
    }
    if batch.actual_payout_amount is not None:
        pairs["actual_payout_amount"] = (batch.actual_payout_amount, batch.expected_payout_amount)

    discrepancies = {}
    for name, (declared, calculated) in pairs.items():
        declared = declared or 0
        difference = declared - calculated
        if abs(difference) > tolerance:
            discrepancies[name] = {
                "declared": declared,
                "calculated": calculated,
                "difference": difference,
            }
    return discrepancies


class SettlementReconciler:
    def __init__(
        self,
        session: Session,
        adapter_factory: Callable[[str], MarketplaceAdapter],
        vault: CredentialVault,
        builder: PostingBuilder,
        gateway: ErpPostingGateway,
        scheduler: RetryScheduler,
        clock: Clock = utc_now,
        tolerance: int = 0,
    ):
        if tolerance < 0:
            raise ValueError(f"tolerance must be >= 0, got {tolerance}")
        self.session = session
        self.adapter_factory = adapter_factory
        self.vault = vault
        self.builder = builder
        self.gateway = gateway
        self.scheduler = scheduler
        self.clock = clock
        self.tolerance = tolerance

    # Lookups

    def get_batch(self, tenant_id: uuid.UUID, batch_id: uuid.UUID) -> SettlementBatch:
        """
        Raises:
            EntityNotFoundError: If the batch does not exist for the tenant
        """
        batch = self.session.execute(
            select(SettlementBatch).where(
                SettlementBatch.tenant_id == tenant_id,
                SettlementBatch.id == batch_id,
            )
        ).scalar_one_or_none()
        if batch is None:
            raise EntityNotFoundError(f"Settlement batch {batch_id} not found")
        return batch

    def _find_batch(self, tenant_id, store: Store, cycle, period: SettlementPeriod) -> Optional[SettlementBatch]:
        return self.session.execute(
            select(SettlementBatch).where(
                SettlementBatch.tenant_id == tenant_id,
                SettlementBatch.store_id == store.id,
                SettlementBatch.marketplace_code == store.marketplace_code,
                SettlementBatch.settlement_cycle == cycle,
                SettlementBatch.period_start == period.start,
                SettlementBatch.period_end == period.end,
            )
        ).scalar_one_or_none()

    def _store(self, tenant_id: uuid.UUID, store_id: uuid.UUID) -> Store:
        store = self.session.execute(
            select(Store).where(Store.tenant_id == tenant_id, Store.id == store_id)
        ).scalar_one_or_none()
        if store is None or not store.is_active:
            raise EntityNotFoundError(f"Store {store_id} not found or inactive")
        return store

    # Collect

    def collect(
        self,
        tenant_id: uuid.UUID,
        store_id: uuid.UUID,
        cycle: str,
        period: SettlementPeriod,
    ) -> OperationResult[SettlementBatch]:
        """Fetch the settlement feed and store it as a COLLECTED batch.

        Re-collecting a COLLECTED batch replaces its lines; a FAILED batch
        restarts from COLLECTED. Batches past validation are left alone.

        Raises:
            InvalidRequestError: If the cycle is empty or the period inverted
            EntityNotFoundError: If the store is unknown or inactive
        """
        if not cycle or period is None or period.start > period.end:
            raise InvalidRequestError(f"Invalid settlement cycle/period: {cycle} {period}")
        store = self._store(tenant_id, store_id)
        now = self.clock()

        batch = self._find_batch(tenant_id, store, cycle, period)
        if batch is None:
            batch = SettlementBatch.create(
                tenant_id=tenant_id,
                store_id=store.id,
                marketplace_code=store.marketplace_code,
                settlement_cycle=cycle,
                period_start=period.start,
                period_end=period.end,
                now=now,
            )
            self.session.add(batch)
            try:
                self.session.commit()
            except IntegrityError:
                self.session.rollback()
                error = ConcurrentOperationError(f"Settlement batch for {cycle} {period} is being created")
                return OperationResult.fail(error.to_error())
        elif batch.status in [s.value for s in COMPLETED_STATUSES]:
            error = AlreadyCompletedError(f"Settlement batch {batch.batch_key} is already {batch.status}")
            return OperationResult.fail(error.to_error(), value=batch)
        elif batch.status == SettlementStatus.FAILED.value:
            batch.transition_to(SettlementStatus.COLLECTED, now)
        elif batch.status != SettlementStatus.COLLECTED.value:
            logger.info(
                "Settlement batch already collected",
                extra={"tenant_id": str(tenant_id), "batch_id": str(batch.id), "status": batch.status},
            )
            return OperationResult.ok(batch)

        return self._collect(batch, store, period)

    def _collect(self, batch: SettlementBatch, store: Store, period: SettlementPeriod) -> OperationResult[SettlementBatch]:
        batch.attempt_count = (batch.attempt_count or 0) + 1
        batch.next_retry_at = None
        self.session.commit()

        try:
            credentials = self.vault.get_all(batch.tenant_id, store.id, CredentialType.MARKETPLACE)
            if not credentials:
                return self._fail(batch, PipelineError(
                    kind=ErrorKind.FATAL,
                    code=CREDENTIALS_MISSING,
                    message=f"No marketplace credentials for store {store.id}",
                ))
            adapter = self.adapter_factory(store.marketplace_code)
            data = adapter.fetch_settlement(credentials, batch.settlement_cycle, period)
        except Exception as e:
            retry_after = e.retry_after_seconds if isinstance(e, RateLimitError) else None
            return self._fail(batch, to_pipeline_error(e), retry_after)

        self._store_feed(batch, store, data)
        self.session.commit()

        logger.info(
            "Settlement collected",
            extra={
                "tenant_id": str(batch.tenant_id),
                "batch_id": str(batch.id),
                "batch_key": batch.batch_key,
                "total_order_count": batch.total_order_count,
                "matched_order_count": batch.matched_order_count,
                "unmatched_order_count": batch.unmatched_order_count,
            },
        )
        return OperationResult.ok(batch)

    def _store_feed(self, batch: SettlementBatch, store: Store, data: MarketplaceSettlementData) -> None:
        now = self.clock()
        batch.lines.clear()
        self.session.flush()

        batch.marketplace_settlement_id = data.settlement_id
        batch.declared_gross_sales_amount = data.gross_sales_amount
        batch.declared_commission_amount = data.commission_amount
        batch.declared_pg_fee_amount = data.pg_fee_amount
        batch.declared_shipping_fee_charged = data.shipping_fee_charged
        batch.declared_shipping_fee_settled = data.shipping_fee_settled
        batch.expected_payout_amount = data.expected_payout_amount
        batch.actual_payout_amount = data.actual_payout_amount

        matched = 0
        for line_no, raw in enumerate(data.lines, start=1):
            line = SettlementLine.create(
                tenant_id=batch.tenant_id,
                line_no=line_no,
                marketplace_order_id=raw.marketplace_order_id,
                now=now,
                gross_sales_amount=raw.gross_sales_amount,
                commission_amount=raw.commission_amount,
                pg_fee_amount=raw.pg_fee_amount,
                shipping_fee_charged=raw.shipping_fee_charged,
                shipping_fee_settled=raw.shipping_fee_settled,
                net_payout_amount=raw.net_payout_amount,
            )
            order = self._match_order(batch, store, raw.marketplace_order_id)
            if order is not None:
                line.order_id = order.id
                order.commission_amount = raw.commission_amount
                order.pg_fee = raw.pg_fee_amount
                order.shipping_fee_settled = raw.shipping_fee_settled
                order.settlement_status = OrderSettlementStatus.MATCHED.value
                order.touch(now)
                matched += 1
            batch.lines.append(line)

        totals = SettlementTotals.from_lines(batch.lines)
        batch.net_payout_amount = totals.net_payout
        batch.total_order_count = len(batch.lines)
        batch.matched_order_count = matched
        batch.unmatched_order_count = len(batch.lines) - matched
        batch.collected_at = now
        batch.clear_error()
        batch.touch(now)

    def _match_order(self, batch: SettlementBatch, store: Store, marketplace_order_id: str) -> Optional[Order]:
        return self.session.execute(
            select(Order).where(
                Order.tenant_id == batch.tenant_id,
                Order.store_id == store.id,
                Order.marketplace_code == batch.marketplace_code,
                Order.marketplace_order_id == marketplace_order_id,
            )
        ).scalar_one_or_none()

    # Validate / build / post / close

    def validate(self, tenant_id: uuid.UUID, batch_id: uuid.UUID) -> OperationResult[SettlementBatch]:
        """COLLECTED -> VALIDATED when line sums match the declared totals.

        Raises:
            EntityNotFoundError: If the batch does not exist for the tenant
        """
        batch = self.get_batch(tenant_id, batch_id)
        now = self.clock()
        try:
            validate_transition(batch.status_enum, SettlementStatus.VALIDATED)
            discrepancies = find_discrepancies(batch, SettlementTotals.from_lines(batch.lines), self.tolerance)
            if discrepancies:
                raise ReconciliationMismatchError(
                    f"Settlement batch {batch.batch_key} totals do not match",
                    detail={"discrepancies": discrepancies, "tolerance": self.tolerance},
                )
        except StateTransitionError as e:
            return OperationResult.fail(error_from_exception(e), value=batch)
        except ReconciliationMismatchError as e:
            batch.discrepancy = e.detail
            return self._fail(batch, e.to_error())

        batch.transition_to(SettlementStatus.VALIDATED, now)
        batch.validated_at = now
        self.session.commit()
        logger.info("Settlement validated", extra={"tenant_id": str(tenant_id), "batch_id": str(batch_id)})
        return OperationResult.ok(batch)

    def build_postings(self, tenant_id: uuid.UUID, batch_id: uuid.UUID) -> OperationResult[SettlementBatch]:
        """VALIDATED -> POSTING_READY once the settlement documents are registered."""
        batch = self.get_batch(tenant_id, batch_id)
        now = self.clock()
        try:
            validate_transition(batch.status_enum, SettlementStatus.POSTING_READY)
        except StateTransitionError as e:
            return OperationResult.fail(error_from_exception(e), value=batch)

        documents = self.builder.build_settlement_documents(batch)
        postings = self.gateway.register_documents(documents, settlement_batch_id=batch.id)
        for posting in postings:
            setattr(batch, _POSTING_ID_FIELDS[posting.posting_type], posting.id)

        batch.transition_to(SettlementStatus.POSTING_READY, now)
        self.session.commit()
        logger.info(
            "Settlement postings built",
            extra={"tenant_id": str(tenant_id), "batch_id": str(batch_id), "posting_count": len(postings)},
        )
        return OperationResult.ok(batch)

    def post(self, tenant_id: uuid.UUID, batch_id: uuid.UUID) -> OperationResult[SettlementBatch]:
        """Submit the batch postings; POSTING_READY -> POSTED once all are POSTED.

        Retryable posting failures keep the batch in POSTING_READY with a
        next_retry_at until the retry budget runs out; a fatal failure or an
        exhausted budget fails the batch.
        """
        batch = self.get_batch(tenant_id, batch_id)
        if batch.status in [s.value for s in COMPLETED_STATUSES]:
            error = AlreadyCompletedError(f"Settlement batch {batch.batch_key} is already {batch.status}")
            return OperationResult.fail(error.to_error(), value=batch)
        try:
            validate_transition(batch.status_enum, SettlementStatus.POSTED)
        except StateTransitionError as e:
            return OperationResult.fail(error_from_exception(e), value=batch)

        errors: List[PipelineError] = []
        for posting_id in batch.posting_ids:
            result = self.gateway.submit(tenant_id, posting_id)
            if not result.success:
                errors.append(result.error)

        # gateway.submit commits; reload the batch state
        self.session.refresh(batch)
        now = self.clock()
        if not errors:
            batch.transition_to(SettlementStatus.POSTED, now)
            batch.posted_at = now
            batch.next_retry_at = None
            batch.clear_error()
            self.session.commit()
            logger.info("Settlement posted", extra={"tenant_id": str(tenant_id), "batch_id": str(batch_id)})
            return OperationResult.ok(batch)

        fatal = next((e for e in errors if e.kind == ErrorKind.FATAL), None)
        if fatal is not None:
            return self._fail(batch, fatal)

        error = errors[0]
        batch.attempt_count = (batch.attempt_count or 0) + 1
        batch.record_error(error.code, error.message, error.kind.value)
        next_retry_at = self.scheduler.next_retry_at(RetryKind.SETTLEMENT, batch.attempt_count, now)
        if next_retry_at is None:
            return self._fail(batch, error)
        batch.next_retry_at = next_retry_at
        batch.touch(now)
        self.session.commit()
        logger.warning(
            "Settlement posting incomplete",
            extra={
                "tenant_id": str(tenant_id),
                "batch_id": str(batch_id),
                "error_code": error.code,
                "failed_postings": len(errors),
            },
        )
        return OperationResult.fail(error, value=batch)

    def close(self, tenant_id: uuid.UUID, batch_id: uuid.UUID) -> OperationResult[SettlementBatch]:
        """POSTED -> CLOSED, the only terminal transition."""
        batch = self.get_batch(tenant_id, batch_id)
        if batch.status == SettlementStatus.CLOSED.value:
            error = AlreadyCompletedError(f"Settlement batch {batch.batch_key} is already closed")
            return OperationResult.fail(error.to_error(), value=batch)
        now = self.clock()
        try:
            batch.transition_to(SettlementStatus.CLOSED, now)
        except StateTransitionError as e:
            return OperationResult.fail(error_from_exception(e), value=batch)
        batch.closed_at = now
        batch.next_retry_at = None
        self.session.commit()
        logger.info("Settlement closed", extra={"tenant_id": str(tenant_id), "batch_id": str(batch_id)})
        return OperationResult.ok(batch)

    def _fail(
        self,
        batch: SettlementBatch,
        error: PipelineError,
        retry_after: Optional[int] = None,
    ) -> OperationResult[SettlementBatch]:
        now = self.clock()
        batch.transition_to(SettlementStatus.FAILED, now)
        batch.record_error(error.code, error.message, error.kind.value)
        if error.retryable and batch.is_active:
            batch.next_retry_at = self.scheduler.next_retry_at(
                RetryKind.SETTLEMENT, batch.attempt_count, now, retry_after
            )
        else:
            batch.next_retry_at = None
        self.session.commit()

        logger.warning(
            "Settlement batch failed",
            extra={
                "tenant_id": str(batch.tenant_id),
                "batch_id": str(batch.id),
                "error_code": error.code,
                "error_kind": error.kind.value,
                "attempt_count": batch.attempt_count,
            },
        )
        return OperationResult.fail(error, value=batch)

    # Full cycle and retries

    def run(
        self,
        tenant_id: uuid.UUID,
        store_id: uuid.UUID,
        cycle: str,
        period: SettlementPeriod,
    ) -> OperationResult[SettlementBatch]:
        """collect -> validate -> build_postings -> post, stopping at the first failure."""
        result = self.collect(tenant_id, store_id, cycle, period)
        if not result.success:
            return result
        return self._advance(result.value)

    def _advance(self, batch: SettlementBatch) -> OperationResult[SettlementBatch]:
        steps = {
            SettlementStatus.COLLECTED.value: self.validate,
            SettlementStatus.VALIDATED.value: self.build_postings,
            SettlementStatus.POSTING_READY.value: self.post,
        }
        result = OperationResult.ok(batch)
        while batch.status in steps:
            result = steps[batch.status](batch.tenant_id, batch.id)
            if not result.success:
                return result
            batch = result.value
        return result

    def retry_failed(self, now: Optional[datetime] = None, limit: int = 50) -> int:
        """Restart due FAILED batches from COLLECTED and re-post due POSTING_READY ones."""
        now = now or self.clock()
        rows = self.session.execute(
            select(SettlementBatch.tenant_id, SettlementBatch.id, SettlementBatch.next_retry_at,
                   SettlementBatch.is_active)
            .where(
                SettlementBatch.status.in_([
                    SettlementStatus.FAILED.value,
                    SettlementStatus.POSTING_READY.value,
                ]),
                SettlementBatch.is_active.is_(True),
                SettlementBatch.next_retry_at.is_not(None),
            )
            .order_by(SettlementBatch.next_retry_at)
            .limit(limit)
        ).all()

        retried = 0
        for tenant_id, batch_id, next_retry_at, is_active in rows:
            if not is_due(next_retry_at, is_active, now):
                continue
            batch = self.get_batch(tenant_id, batch_id)
            if batch.status == SettlementStatus.FAILED.value:
                result = self.collect(
                    tenant_id,
                    batch.store_id,
                    batch.settlement_cycle,
                    SettlementPeriod(start=batch.period_start, end=batch.period_end),
                )
                if result.success:
                    self._advance(result.value)
            else:
                self.post(tenant_id, batch_id)
            retried += 1
        return retried

    def cancel(self, tenant_id: uuid.UUID, batch_id: uuid.UUID) -> SettlementBatch:
        """Exclude a batch from automatic retries."""
        batch = self.get_batch(tenant_id, batch_id)
        batch.is_active = False
        batch.next_retry_at = None
        batch.touch(self.clock())
        self.session.commit()
        return batch
