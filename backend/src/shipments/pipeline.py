"""ShipmentPipeline - invoice issue and tracking number push to the marketplace.

Push protocol:
1. A shipment whose push already succeeded returns ALREADY_COMPLETED and the
   adapter is not called.
2. The push is claimed with a conditional UPDATE (push PENDING|FAILED ->
   PUSHING) committed before the adapter call, so overlapping retry workers
   cannot push the same shipment twice.
3. PUSHING -> SUCCESS (shipment MARKET_PUSHED, order SHIPPING) or
   PUSHING -> FAILED (retry_count + 1, next_retry_at from the shipment
   schedule). Shipments at the retry maximum wait for manual review.
"""

import logging
import uuid
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from connectors.errors import RateLimitError, to_pipeline_error
from connectors.ports import MarketplaceAdapter, ShipmentPushRequest, ShipmentPushResult
from credentials.vault import CredentialVault
from domain.clock import Clock, utc_now
from domain.results import (
    AlreadyCompletedError,
    ConcurrentOperationError,
    DuplicateTrackingError,
    EntityNotFoundError,
    ErrorKind,
    InvalidRequestError,
    OperationResult,
    PipelineError,
    PipelineException,
    error_from_exception,
)
from domain.state_machine import StateTransitionError
from models.credential import CredentialType
from models.order import Order, OrderItemStatus, OrderStatus
from models.shipment import Shipment
from retry.scheduler import RetryKind, RetryScheduler, is_due

from .status import MarketPushStatus, ShipmentStatus, validate_transition

logger = logging.getLogger(__name__)

PUSH_REJECTED = "PUSH_REJECTED"
CREDENTIALS_MISSING = "CREDENTIALS_MISSING"

_PUSHABLE = (MarketPushStatus.PENDING.value, MarketPushStatus.FAILED.value)


class OrderCanceledError(PipelineException):
    code = "ORDER_CANCELED"


class InvoiceRequiredError(PipelineException):
    code = "INVOICE_REQUIRED"


class ShipmentInactiveError(PipelineException):
    code = "SHIPMENT_INACTIVE"


class ShipmentPipeline:
    def __init__(
        self,
        session: Session,
        adapter_factory: Callable[[str], MarketplaceAdapter],
        vault: CredentialVault,
        scheduler: RetryScheduler,
        clock: Clock = utc_now,
    ):
        self.session = session
        self.adapter_factory = adapter_factory
        self.vault = vault
        self.scheduler = scheduler
        self.clock = clock

    @property
    def max_retries(self) -> int:
        return self.scheduler.max_attempts(RetryKind.SHIPMENT)

    def get_shipment(self, tenant_id: uuid.UUID, shipment_id: uuid.UUID) -> Shipment:
        """
        Raises:
            EntityNotFoundError: If the shipment does not exist for the tenant
        """
        shipment = self.session.execute(
            select(Shipment).where(Shipment.tenant_id == tenant_id, Shipment.id == shipment_id)
        ).scalar_one_or_none()
        if shipment is None:
            raise EntityNotFoundError(f"Shipment {shipment_id} not found")
        return shipment

    def shipment_for_order(self, tenant_id: uuid.UUID, order_id: uuid.UUID) -> Optional[Shipment]:
        return self.session.execute(
            select(Shipment).where(Shipment.tenant_id == tenant_id, Shipment.order_id == order_id)
        ).scalar_one_or_none()

    def _order(self, tenant_id: uuid.UUID, order_id: uuid.UUID) -> Order:
        order = self.session.execute(
            select(Order).where(Order.tenant_id == tenant_id, Order.id == order_id)
        ).scalar_one_or_none()
        if order is None:
            raise EntityNotFoundError(f"Order {order_id} not found")
        return order

    # Invoice

    def issue_invoice(
        self,
        tenant_id: uuid.UUID,
        order_id: uuid.UUID,
        carrier_code: str,
        tracking_no: str,
        carrier_name: Optional[str] = None,
        override: bool = False,
    ) -> OperationResult[Shipment]:
        """Record the carrier tracking number for an order.

        A number that was already pushed successfully is only replaced when
        override=True; the replaced number is kept in previous_tracking_no and
        the push starts over.

        Raises:
            InvalidRequestError: If carrier or tracking number is empty
            EntityNotFoundError: If the order does not exist for the tenant
        """
        if not carrier_code or not tracking_no or not tracking_no.strip():
            raise InvalidRequestError("carrier_code and tracking_no are required")
        tracking_no = tracking_no.strip()
        order = self._order(tenant_id, order_id)
        log_extra = {"tenant_id": str(tenant_id), "order_id": str(order_id)}

        shipment = self.shipment_for_order(tenant_id, order_id)
        try:
            if order.order_status == OrderStatus.CANCELED.value:
                raise OrderCanceledError(f"Order {order.marketplace_order_id} is canceled")

            now = self.clock()
            if shipment is None:
                shipment = Shipment.create(
                    tenant_id=tenant_id,
                    order_id=order.id,
                    store_id=order.store_id,
                    marketplace_code=order.marketplace_code,
                    marketplace_order_id=order.marketplace_order_id,
                    now=now,
                )
                self.session.add(shipment)
            elif shipment.is_pushed:
                self._reissue(shipment, tracking_no, override, now)
            elif shipment.market_push_status == MarketPushStatus.PUSHING.value:
                raise ConcurrentOperationError(f"Shipment {shipment.id} is being pushed")

            if shipment.shipment_status in (ShipmentStatus.READY.value, ShipmentStatus.FAILED.value):
                shipment.transition_to(ShipmentStatus.INVOICE_REQUESTED, now)
                shipment.transition_to(ShipmentStatus.INVOICE_ISSUED, now)
        except (PipelineException, StateTransitionError) as e:
            self.session.rollback()
            logger.info("Invoice rejected", extra={**log_extra, "error": str(e)})
            return OperationResult.fail(error_from_exception(e), value=shipment)

        shipment.carrier_code = carrier_code
        shipment.carrier_name = carrier_name
        shipment.tracking_no = tracking_no
        shipment.is_active = True
        shipment.last_error_code = None
        shipment.last_error_message = None
        self.session.commit()

        logger.info(
            "Invoice issued",
            extra={**log_extra, "shipment_id": str(shipment.id), "carrier_code": carrier_code},
        )
        return OperationResult.ok(shipment)

    def _reissue(self, shipment: Shipment, tracking_no: str, override: bool, now: datetime) -> None:
        if not override:
            raise DuplicateTrackingError(
                f"Tracking number {shipment.tracking_no} was already pushed for order "
                f"{shipment.marketplace_order_id}",
                detail={"tracking_no": shipment.tracking_no, "requested_tracking_no": tracking_no},
            )
        if shipment.shipment_status == ShipmentStatus.DELIVERED.value:
            raise AlreadyCompletedError(f"Shipment {shipment.id} was already delivered")

        logger.warning(
            "Re-issuing pushed tracking number",
            extra={
                "tenant_id": str(shipment.tenant_id),
                "shipment_id": str(shipment.id),
                "previous_tracking_no": shipment.tracking_no,
                "tracking_no": tracking_no,
            },
        )
        # Explicit override path; both machines restart outside their tables.
        shipment.previous_tracking_no = shipment.tracking_no
        shipment.shipment_status = ShipmentStatus.READY.value
        shipment.market_push_status = MarketPushStatus.PENDING.value
        shipment.retry_count = 0
        shipment.next_retry_at = None
        shipment.pushed_at = None
        shipment.touch(now)

    # Market push

    def push_to_market(self, tenant_id: uuid.UUID, shipment_id: uuid.UUID) -> OperationResult[Shipment]:
        """Push the tracking number of a shipment to its marketplace.

        Raises:
            EntityNotFoundError: If the shipment does not exist for the tenant
        """
        shipment = self.get_shipment(tenant_id, shipment_id)
        log_extra = {"tenant_id": str(tenant_id), "shipment_id": str(shipment_id)}

        try:
            self._check_pushable(shipment)
        except (PipelineException, StateTransitionError) as e:
            logger.info("Push rejected", extra={**log_extra, "error": str(e)})
            return OperationResult.fail(error_from_exception(e), value=shipment)

        now = self.clock()
        claimed = self.session.execute(
            update(Shipment)
            .where(
                Shipment.id == shipment.id,
                Shipment.tenant_id == tenant_id,
                Shipment.market_push_status.in_(_PUSHABLE),
            )
            .values(
                market_push_status=MarketPushStatus.PUSHING.value,
                shipment_status=ShipmentStatus.MARKET_PUSH_REQUESTED.value,
                last_attempted_at=now,
                next_retry_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            error = ConcurrentOperationError(f"Shipment {shipment_id} was claimed by another worker")
            logger.warning("Push claim lost", extra=log_extra)
            return OperationResult.fail(error.to_error(), value=shipment)
        self.session.commit()
        self.session.refresh(shipment)

        try:
            credentials = self.vault.get_all(tenant_id, shipment.store_id, CredentialType.MARKETPLACE)
        except Exception as e:
            return self._record_failure(shipment, to_pipeline_error(e))
        if not credentials:
            return self._record_failure(shipment, PipelineError(
                kind=ErrorKind.FATAL,
                code=CREDENTIALS_MISSING,
                message=f"No marketplace credentials for store {shipment.store_id}",
            ))

        request = ShipmentPushRequest(
            marketplace_order_id=shipment.marketplace_order_id,
            carrier_code=shipment.carrier_code,
            tracking_no=shipment.tracking_no,
            carrier_name=shipment.carrier_name,
            marketplace_item_ids=self._item_ids(shipment),
        )
        adapter = self.adapter_factory(shipment.marketplace_code)
        try:
            result = adapter.push_shipment(credentials, request)
        except Exception as e:
            retry_after = e.retry_after_seconds if isinstance(e, RateLimitError) else None
            return self._record_failure(shipment, to_pipeline_error(e), retry_after)

        if not result.success:
            return self._record_failure(shipment, self._rejection(result))

        now = self.clock()
        shipment.push_transition_to(MarketPushStatus.SUCCESS, now)
        shipment.transition_to(ShipmentStatus.MARKET_PUSHED, now)
        shipment.pushed_at = now
        shipment.last_error_code = None
        shipment.last_error_message = None

        order = self._order(tenant_id, shipment.order_id)
        if order.order_status not in (OrderStatus.DELIVERED.value, OrderStatus.CANCELED.value):
            order.order_status = OrderStatus.SHIPPING.value
            order.touch(now)
        self.session.commit()

        logger.info("Tracking number pushed", extra={**log_extra, "tracking_no": shipment.tracking_no})
        return OperationResult.ok(shipment)

    def _check_pushable(self, shipment: Shipment) -> None:
        if shipment.is_pushed:
            raise AlreadyCompletedError(f"Shipment {shipment.id} was already pushed")
        if shipment.market_push_status == MarketPushStatus.PUSHING.value:
            raise ConcurrentOperationError(f"Shipment {shipment.id} is being pushed")
        if not shipment.is_active:
            raise ShipmentInactiveError(f"Shipment {shipment.id} is inactive")
        if not shipment.tracking_no:
            raise InvoiceRequiredError(f"Shipment {shipment.id} has no tracking number")
        validate_transition(shipment.status_enum, ShipmentStatus.MARKET_PUSH_REQUESTED)

    def _item_ids(self, shipment: Shipment) -> List[str]:
        order = self._order(shipment.tenant_id, shipment.order_id)
        return [
            item.marketplace_item_id
            for item in order.items
            if item.marketplace_item_id and item.item_status != OrderItemStatus.CANCELED.value
        ]

    @staticmethod
    def _rejection(result: ShipmentPushResult) -> PipelineError:
        return PipelineError(
            kind=ErrorKind.RETRYABLE if result.retryable else ErrorKind.FATAL,
            code=result.error_code or PUSH_REJECTED,
            message=result.error_message or "Marketplace rejected the tracking number",
        )

    def _record_failure(
        self,
        shipment: Shipment,
        error: PipelineError,
        retry_after: Optional[int] = None,
    ) -> OperationResult[Shipment]:
        now = self.clock()
        shipment.push_transition_to(MarketPushStatus.FAILED, now)
        shipment.transition_to(ShipmentStatus.FAILED, now)
        shipment.retry_count = (shipment.retry_count or 0) + 1
        shipment.last_error_code = error.code
        shipment.last_error_message = error.message
        if error.retryable:
            shipment.next_retry_at = self.scheduler.next_retry_at(
                RetryKind.SHIPMENT, shipment.retry_count, now, retry_after
            )
        else:
            shipment.next_retry_at = None
        self.session.commit()

        logger.warning(
            "Tracking number push failed",
            extra={
                "tenant_id": str(shipment.tenant_id),
                "shipment_id": str(shipment.id),
                "error_code": error.code,
                "error_kind": error.kind.value,
                "retry_count": shipment.retry_count,
                "next_retry_at": shipment.next_retry_at.isoformat() if shipment.next_retry_at else None,
            },
        )
        return OperationResult.fail(error, value=shipment)

    def retry_failed_pushes(self, now: Optional[datetime] = None, limit: int = 100) -> int:
        """Re-push FAILED shipments that are due and under the retry maximum."""
        now = now or self.clock()
        rows = self.session.execute(
            select(Shipment.tenant_id, Shipment.id, Shipment.next_retry_at, Shipment.is_active)
            .where(
                Shipment.market_push_status == MarketPushStatus.FAILED.value,
                Shipment.is_active.is_(True),
                Shipment.retry_count < self.max_retries,
                Shipment.next_retry_at.is_not(None),
            )
            .order_by(Shipment.next_retry_at)
            .limit(limit)
        ).all()

        pushed = 0
        for tenant_id, shipment_id, next_retry_at, is_active in rows:
            if not is_due(next_retry_at, is_active, now):
                continue
            if self.push_to_market(tenant_id, shipment_id).success:
                pushed += 1
        return pushed

    def list_manual_review(self, tenant_id: uuid.UUID, limit: int = 100) -> List[Shipment]:
        """Failed shipments excluded from automatic retry."""
        return self.session.execute(
            select(Shipment)
            .where(
                Shipment.tenant_id == tenant_id,
                Shipment.market_push_status == MarketPushStatus.FAILED.value,
                Shipment.is_active.is_(True),
                (Shipment.retry_count >= self.max_retries) | Shipment.next_retry_at.is_(None),
            )
            .order_by(Shipment.updated_at)
            .limit(limit)
        ).scalars().all()

    # Delivery

    def mark_shipped(self, tenant_id: uuid.UUID, shipment_id: uuid.UUID) -> OperationResult[Shipment]:
        shipment = self.get_shipment(tenant_id, shipment_id)
        now = self.clock()
        try:
            shipment.transition_to(ShipmentStatus.SHIPPED, now)
        except StateTransitionError as e:
            return OperationResult.fail(error_from_exception(e), value=shipment)
        shipment.shipped_at = now
        self.session.commit()
        return OperationResult.ok(shipment)

    def mark_delivered(self, tenant_id: uuid.UUID, shipment_id: uuid.UUID) -> OperationResult[Shipment]:
        shipment = self.get_shipment(tenant_id, shipment_id)
        now = self.clock()
        try:
            shipment.transition_to(ShipmentStatus.DELIVERED, now)
        except StateTransitionError as e:
            return OperationResult.fail(error_from_exception(e), value=shipment)
        shipment.delivered_at = now

        order = self._order(tenant_id, shipment.order_id)
        order.order_status = OrderStatus.DELIVERED.value
        order.touch(now)
        self.session.commit()

        logger.info("Shipment delivered", extra={"tenant_id": str(tenant_id), "shipment_id": str(shipment_id)})
        return OperationResult.ok(shipment)

    def cancel(self, tenant_id: uuid.UUID, shipment_id: uuid.UUID) -> Shipment:
        """Exclude a shipment from further pushes."""
        shipment = self.get_shipment(tenant_id, shipment_id)
        shipment.is_active = False
        shipment.next_retry_at = None
        shipment.touch(self.clock())
        self.session.commit()
        return shipment
