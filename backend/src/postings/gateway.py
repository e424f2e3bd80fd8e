"""ErpPostingGateway - registers postings and submits them to the ERP exactly once.

Submission protocol:
1. POSTED postings return their stored ERP reference without an ERP call.
2. The posting is claimed with a conditional UPDATE
   (READY_TO_POST|FAILED -> POSTING_REQUESTED) and the claim is committed
   before the ERP is called; a second submitter sees rowcount 0 and gets
   CONCURRENT_OPERATION instead of a duplicate document.
3. The stored canonical document is sent with its idempotency key.
4. POSTED on success; FAILED otherwise, rescheduled with backoff when the
   error is retryable and the budget allows.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from connectors.errors import RateLimitError, to_pipeline_error
from connectors.ports import ErpAdapter
from domain.clock import Clock, as_utc, utc_now
from domain.results import (
    ConcurrentOperationError,
    EntityNotFoundError,
    ErrorKind,
    MappingRequiredError,
    OperationResult,
    PipelineError,
    error_from_exception,
)
from domain.state_machine import StateTransitionError
from mapping.resolver import ProductMappingResolver
from models.order import Order, OrderPostingStatus
from models.posting import Posting
from retry.scheduler import RetryKind, RetryScheduler

from .builder import PostingBuilder, build_idempotency_key
from .documents import PostingDocument
from .status import SUBMITTABLE_STATUSES, PostingStatus

logger = logging.getLogger(__name__)

STALE_REQUEST_CODE = "STALE_REQUEST"


class ErpPostingGateway:
    def __init__(
        self,
        session: Session,
        builder: PostingBuilder,
        resolver: ProductMappingResolver,
        erp_adapter: ErpAdapter,
        scheduler: RetryScheduler,
        clock: Clock = utc_now,
        include_order_commission: bool = False,
        request_timeout_seconds: int = 900,
    ):
        self.session = session
        self.builder = builder
        self.resolver = resolver
        self.erp_adapter = erp_adapter
        self.scheduler = scheduler
        self.clock = clock
        self.include_order_commission = include_order_commission
        self.request_timeout_seconds = request_timeout_seconds

    # Lookups

    def get_posting(self, tenant_id: uuid.UUID, posting_id: uuid.UUID) -> Posting:
        """
        Raises:
            EntityNotFoundError: If the posting does not exist for the tenant
        """
        posting = self.session.execute(
            select(Posting).where(Posting.tenant_id == tenant_id, Posting.id == posting_id)
        ).scalar_one_or_none()
        if posting is None:
            raise EntityNotFoundError(f"Posting {posting_id} not found")
        return posting

    def _by_key(self, tenant_id: uuid.UUID, idempotency_key: str) -> Optional[Posting]:
        return self.session.execute(
            select(Posting).where(
                Posting.tenant_id == tenant_id,
                Posting.idempotency_key == idempotency_key,
            )
        ).scalar_one_or_none()

    def postings_for_order(self, tenant_id: uuid.UUID, order_id: uuid.UUID) -> List[Posting]:
        return list(self.session.execute(
            select(Posting)
            .where(Posting.tenant_id == tenant_id, Posting.order_id == order_id)
            .order_by(Posting.created_at)
        ).scalars().all())

    # Registration

    def _apply_document(self, posting: Posting, document: PostingDocument) -> None:
        totals = document.totals
        posting.document_payload = document.to_json()
        posting.supply_amount = totals.supply
        posting.vat_amount = totals.vat
        posting.total_amount = totals.total

    def register_order_postings(self, order: Order) -> List[Posting]:
        """Create-or-get one posting per posting type of the order.

        Product documents whose lines are not all MAPPED wait in
        PENDING_MAPPING; the other types proceed to READY_TO_POST.
        """
        now = self.clock()
        mappings = self.resolver.resolve_items(
            order.tenant_id, order.store_id, order.marketplace_code, order.items
        )
        postings = []
        for posting_type in self.builder.order_posting_types(order, self.include_order_commission):
            key = build_idempotency_key(order.tenant_id, order.id, posting_type)
            posting = self._by_key(order.tenant_id, key)
            if posting is None:
                posting = Posting.create(
                    tenant_id=order.tenant_id,
                    idempotency_key=key,
                    reference=order.marketplace_order_id,
                    posting_type=posting_type,
                    erp_code=self.builder.erp_code,
                    order_id=order.id,
                    now=now,
                )
                self.session.add(posting)
                self._prepare(posting, order, mappings, now)
            elif posting.status == PostingStatus.PENDING_MAPPING.value:
                self._prepare(posting, order, mappings, now)
            postings.append(posting)

        self.session.flush()
        self._roll_up_order(order)
        return postings

    def _prepare(self, posting: Posting, order: Order, mappings, now: datetime) -> None:
        """Build the document; CREATED/PENDING_MAPPING -> READY_TO_POST or PENDING_MAPPING."""
        try:
            document = self.builder.build_order_document(order, posting.type_enum, mappings)
        except MappingRequiredError as e:
            if posting.status_enum == PostingStatus.CREATED:
                posting.transition_to(PostingStatus.PENDING_MAPPING, now)
            posting.record_error(e.code, e.message, e.kind.value)
            logger.info(
                "Posting waits for product mapping",
                extra={
                    "tenant_id": str(posting.tenant_id),
                    "posting_id": str(posting.id),
                    "unmapped_keys": e.unmapped_keys,
                },
            )
            return

        self._apply_document(posting, document)
        posting.record_error(None, None, None)
        posting.transition_to(PostingStatus.READY_TO_POST, now)

    def register_documents(
        self,
        documents: Iterable[PostingDocument],
        settlement_batch_id: Optional[uuid.UUID] = None,
        order_id: Optional[uuid.UUID] = None,
    ) -> List[Posting]:
        """Create-or-get postings for pre-built documents (settlement documents)."""
        now = self.clock()
        postings = []
        for document in documents:
            tenant_id = uuid.UUID(document.tenant_id)
            posting = self._by_key(tenant_id, document.idempotency_key)
            if posting is None:
                posting = Posting.create(
                    tenant_id=tenant_id,
                    idempotency_key=document.idempotency_key,
                    reference=document.reference,
                    posting_type=document.posting_type,
                    erp_code=document.erp_code,
                    order_id=order_id,
                    settlement_batch_id=settlement_batch_id,
                    now=now,
                )
                self.session.add(posting)
                self._apply_document(posting, document)
                posting.transition_to(PostingStatus.READY_TO_POST, now)
            postings.append(posting)
        self.session.flush()
        return postings

    def refresh_pending_mapping(self, tenant_id: Optional[uuid.UUID] = None, limit: int = 500) -> int:
        """Retry document building for PENDING_MAPPING postings.

        Returns:
            Number of postings that became READY_TO_POST
        """
        stmt = select(Posting).where(
            Posting.status == PostingStatus.PENDING_MAPPING.value,
            Posting.is_active.is_(True),
            Posting.order_id.is_not(None),
        )
        if tenant_id is not None:
            stmt = stmt.where(Posting.tenant_id == tenant_id)
        pending = self.session.execute(stmt.order_by(Posting.created_at).limit(limit)).scalars().all()

        now = self.clock()
        ready = 0
        orders: Dict[uuid.UUID, Order] = {}
        for posting in pending:
            order = orders.get(posting.order_id)
            if order is None:
                order = self.session.get(Order, posting.order_id)
                if order is None:
                    continue
                orders[posting.order_id] = order
            mappings = self.resolver.resolve_items(
                order.tenant_id, order.store_id, order.marketplace_code, order.items
            )
            self._prepare(posting, order, mappings, now)
            if posting.status == PostingStatus.READY_TO_POST.value:
                ready += 1
        self.session.commit()

        if ready:
            logger.info("Pending postings became ready", extra={"ready_count": ready})
        return ready

    # Submission

    def submit(self, tenant_id: uuid.UUID, posting_id: uuid.UUID) -> OperationResult[Posting]:
        """Submit one posting to the ERP.

        Raises:
            EntityNotFoundError: If the posting does not exist for the tenant
        """
        posting = self.get_posting(tenant_id, posting_id)
        log_extra = {"tenant_id": str(tenant_id), "posting_id": str(posting_id)}

        if posting.status == PostingStatus.POSTED.value:
            logger.info("Posting already posted, returning stored reference", extra=log_extra)
            return OperationResult.ok(posting)

        if posting.status == PostingStatus.PENDING_MAPPING.value:
            return OperationResult.fail(
                PipelineError(
                    kind=ErrorKind.PRECONDITION,
                    code=MappingRequiredError.code,
                    message=posting.last_error_message or "Product mapping required",
                ),
                value=posting,
            )

        if posting.status == PostingStatus.POSTING_REQUESTED.value:
            error = ConcurrentOperationError(f"Posting {posting_id} is already being submitted")
            return OperationResult.fail(error.to_error(), value=posting)

        if posting.status not in [s.value for s in SUBMITTABLE_STATUSES]:
            error = StateTransitionError(
                "posting", posting.status_enum, PostingStatus.POSTING_REQUESTED, []
            )
            return OperationResult.fail(error_from_exception(error), value=posting)

        now = self.clock()
        claimed = self.session.execute(
            update(Posting)
            .where(
                Posting.id == posting.id,
                Posting.tenant_id == tenant_id,
                Posting.status.in_([s.value for s in SUBMITTABLE_STATUSES]),
            )
            .values(
                status=PostingStatus.POSTING_REQUESTED.value,
                requested_at=now,
                updated_at=now,
                next_retry_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            error = ConcurrentOperationError(f"Posting {posting_id} was claimed by another worker")
            logger.warning("Posting claim lost", extra=log_extra)
            return OperationResult.fail(error.to_error(), value=posting)
        self.session.commit()
        self.session.refresh(posting)

        document = PostingDocument.from_json(posting.document_payload)
        try:
            result = self.erp_adapter.post_sales_document(str(tenant_id), document)
        except Exception as e:
            return self._record_failure(posting, e)

        now = self.clock()
        posting.transition_to(PostingStatus.POSTED, now)
        posting.erp_document_no = result.erp_document_no
        posting.posted_at = now
        posting.next_retry_at = None
        posting.record_error(None, None, None)
        self._roll_up_order_id(posting)
        self.session.commit()

        logger.info(
            "Posting submitted",
            extra={**log_extra, "posting_type": posting.posting_type, "erp_document_no": result.erp_document_no},
        )
        return OperationResult.ok(posting)

    def _record_failure(self, posting: Posting, exc: Exception) -> OperationResult[Posting]:
        error = to_pipeline_error(exc)
        now = self.clock()
        posting.transition_to(PostingStatus.FAILED, now)
        posting.retry_count = (posting.retry_count or 0) + 1
        posting.record_error(error.code, error.message, error.kind.value)

        if error.retryable:
            retry_after = exc.retry_after_seconds if isinstance(exc, RateLimitError) else None
            posting.next_retry_at = self.scheduler.next_retry_at(
                RetryKind.POSTING, posting.retry_count, now, retry_after
            )
        else:
            posting.next_retry_at = None
        self.session.commit()

        logger.warning(
            "Posting submission failed",
            extra={
                "tenant_id": str(posting.tenant_id),
                "posting_id": str(posting.id),
                "error_code": error.code,
                "error_kind": error.kind.value,
                "retry_count": posting.retry_count,
                "next_retry_at": posting.next_retry_at.isoformat() if posting.next_retry_at else None,
            },
        )
        return OperationResult.fail(error, value=posting)

    def submit_ready(self, tenant_id: Optional[uuid.UUID] = None, limit: int = 100) -> Dict[str, int]:
        """Submit READY_TO_POST postings, oldest first."""
        stmt = select(Posting.tenant_id, Posting.id).where(
            Posting.status == PostingStatus.READY_TO_POST.value,
            Posting.is_active.is_(True),
        )
        if tenant_id is not None:
            stmt = stmt.where(Posting.tenant_id == tenant_id)
        rows = self.session.execute(stmt.order_by(Posting.created_at).limit(limit)).all()
        return self._submit_all(rows)

    def retry_due(self, now: Optional[datetime] = None, limit: int = 100) -> int:
        """Resubmit FAILED postings whose next_retry_at has passed.

        Postings stuck in POSTING_REQUESTED beyond the request timeout are
        first returned to FAILED so they can be retried; the idempotency key
        keeps the ERP from booking them twice.
        """
        now = now or self.clock()
        self.recover_stale_requests(now)
        rows = self.session.execute(
            select(Posting.tenant_id, Posting.id, Posting.next_retry_at)
            .where(
                Posting.status == PostingStatus.FAILED.value,
                Posting.is_active.is_(True),
                Posting.next_retry_at.is_not(None),
            )
            .order_by(Posting.next_retry_at)
            .limit(limit)
        ).all()
        due = [(t, p) for t, p, at in rows if as_utc(at) <= as_utc(now)]
        counts = self._submit_all(due)
        return counts["submitted"] + counts["failed"]

    def recover_stale_requests(self, now: datetime) -> int:
        cutoff = now - timedelta(seconds=self.request_timeout_seconds)
        stale = [
            posting for posting in self.session.execute(
                select(Posting).where(Posting.status == PostingStatus.POSTING_REQUESTED.value)
            ).scalars().all()
            if posting.requested_at is not None and as_utc(posting.requested_at) < cutoff
        ]
        for posting in stale:
            posting.transition_to(PostingStatus.FAILED, now)
            posting.retry_count = (posting.retry_count or 0) + 1
            posting.record_error(STALE_REQUEST_CODE, "No ERP response recorded", ErrorKind.RETRYABLE.value)
            posting.next_retry_at = self.scheduler.next_retry_at(RetryKind.POSTING, posting.retry_count, now)
            logger.warning(
                "Recovered stale posting request",
                extra={"tenant_id": str(posting.tenant_id), "posting_id": str(posting.id)},
            )
        if stale:
            self.session.commit()
        return len(stale)

    def _submit_all(self, rows) -> Dict[str, int]:
        counts = {"submitted": 0, "failed": 0, "skipped": 0}
        for tenant_id, posting_id in rows:
            result = self.submit(tenant_id, posting_id)
            if result.success:
                counts["submitted"] += 1
            elif result.error.code == ConcurrentOperationError.code:
                counts["skipped"] += 1
            else:
                counts["failed"] += 1
        return counts

    # Order roll-up

    def _roll_up_order_id(self, posting: Posting) -> None:
        if posting.order_id is None:
            return
        order = self.session.get(Order, posting.order_id)
        if order is not None:
            self._roll_up_order(order)

    def _roll_up_order(self, order: Order) -> None:
        """NOT_POSTED / PARTIALLY_POSTED / POSTED from the order's postings."""
        postings = self.postings_for_order(order.tenant_id, order.id)
        posted = [p for p in postings if p.status == PostingStatus.POSTED.value]
        if postings and len(posted) == len(postings):
            order.posting_status = OrderPostingStatus.POSTED.value
        elif posted:
            order.posting_status = OrderPostingStatus.PARTIALLY_POSTED.value
        else:
            order.posting_status = OrderPostingStatus.NOT_POSTED.value

