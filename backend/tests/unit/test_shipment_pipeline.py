"""Unit tests for ShipmentPipeline (invoice issue and tracking number push)"""

from datetime import timedelta

import pytest

from conftest import make_raw_order
from connectors.errors import RateLimitError, ServerError
from connectors.ports import RawOrderItem, ShipmentPushResult
from domain.clock import as_utc
from domain.results import InvalidRequestError
from models import CredentialType, Order, OrderStatus
from shipments.status import MarketPushStatus, ShipmentStatus


def _sync_order(container, db_session, marketplace, tenant_id, store, time_range, order_id="A-1", **fields):
    items = [RawOrderItem(product_id="P-1", sku="SKU-1", product_name="Green tea 500ml",
                          quantity=1, unit_price=11_000, marketplace_item_id="I-1")]
    marketplace.add_order(make_raw_order(order_id, items=items, **fields))
    container.sync.start_sync(tenant_id, store.id, time_range)
    return db_session.query(Order).filter(Order.marketplace_order_id == order_id).one()


@pytest.fixture
def order(db_session, container, tenant_id, store, marketplace, time_range):
    return _sync_order(container, db_session, marketplace, tenant_id, store, time_range)


@pytest.fixture
def shipment(container, tenant_id, order):
    """Shipment with an issued invoice, ready to push."""
    result = container.shipments.issue_invoice(tenant_id, order.id, "CJ", "TRK-1001", carrier_name="CJ Logistics")
    assert result.success
    return result.value


class TestIssueInvoice:
    """Tests for invoice issue"""

    def test_issue_invoice(self, container, tenant_id, order, shipment):
        assert shipment.shipment_status == ShipmentStatus.INVOICE_ISSUED.value
        assert shipment.market_push_status == MarketPushStatus.PENDING.value
        assert shipment.tracking_no == "TRK-1001"
        assert shipment.marketplace_order_id == "A-1"
        assert container.shipments.shipment_for_order(tenant_id, order.id).id == shipment.id

    def test_tracking_number_is_trimmed(self, container, tenant_id, order):
        result = container.shipments.issue_invoice(tenant_id, order.id, "CJ", "  TRK-2002 ")

        assert result.value.tracking_no == "TRK-2002"

    @pytest.mark.parametrize("carrier_code,tracking_no", [("CJ", ""), ("CJ", "   "), ("", "TRK-1")])
    def test_missing_input_rejected(self, container, tenant_id, order, carrier_code, tracking_no):
        with pytest.raises(InvalidRequestError):
            container.shipments.issue_invoice(tenant_id, order.id, carrier_code, tracking_no)

    def test_canceled_order_rejected(self, db_session, container, tenant_id, store, marketplace, time_range):
        order = _sync_order(container, db_session, marketplace, tenant_id, store, time_range,
                            order_id="A-9", order_status=OrderStatus.CANCELED.value)

        result = container.shipments.issue_invoice(tenant_id, order.id, "CJ", "TRK-9")

        assert result.error_code == "ORDER_CANCELED"
        assert container.shipments.shipment_for_order(tenant_id, order.id) is None

    def test_replace_before_push(self, container, tenant_id, order, shipment):
        """An unpushed tracking number can simply be replaced"""
        result = container.shipments.issue_invoice(tenant_id, order.id, "CJ", "TRK-1002")

        assert result.success
        assert result.value.id == shipment.id
        assert result.value.tracking_no == "TRK-1002"
        assert result.value.previous_tracking_no is None

    def test_duplicate_tracking_after_push(self, container, tenant_id, order, shipment):
        container.shipments.push_to_market(tenant_id, shipment.id)

        result = container.shipments.issue_invoice(tenant_id, order.id, "CJ", "TRK-1002")

        assert result.error_code == "DUPLICATE_TRACKING"
        shipment = container.shipments.get_shipment(tenant_id, shipment.id)
        assert shipment.tracking_no == "TRK-1001"
        assert shipment.market_push_status == MarketPushStatus.SUCCESS.value

    def test_override_restarts_push(self, container, tenant_id, marketplace, order, shipment):
        container.shipments.push_to_market(tenant_id, shipment.id)

        result = container.shipments.issue_invoice(tenant_id, order.id, "CJ", "TRK-1002", override=True)

        assert result.success
        shipment = result.value
        assert shipment.previous_tracking_no == "TRK-1001"
        assert shipment.tracking_no == "TRK-1002"
        assert shipment.shipment_status == ShipmentStatus.INVOICE_ISSUED.value
        assert shipment.market_push_status == MarketPushStatus.PENDING.value
        assert shipment.retry_count == 0

        assert container.shipments.push_to_market(tenant_id, shipment.id).success
        assert [request.tracking_no for request in marketplace.pushed] == ["TRK-1001", "TRK-1002"]


class TestPushToMarket:
    """Tests for the tracking number push"""

    def test_push_success(self, db_session, container, tenant_id, marketplace, clock, order, shipment):
        result = container.shipments.push_to_market(tenant_id, shipment.id)

        assert result.success
        shipment = result.value
        assert shipment.market_push_status == MarketPushStatus.SUCCESS.value
        assert shipment.shipment_status == ShipmentStatus.MARKET_PUSHED.value
        assert as_utc(shipment.pushed_at) == clock()

        request = marketplace.pushed[0]
        assert (request.marketplace_order_id, request.carrier_code, request.tracking_no) == ("A-1", "CJ", "TRK-1001")
        assert request.marketplace_item_ids == ["I-1"]

        db_session.refresh(order)
        assert order.order_status == OrderStatus.SHIPPING.value

    def test_second_push_does_not_call_marketplace(self, container, tenant_id, marketplace, shipment):
        container.shipments.push_to_market(tenant_id, shipment.id)

        result = container.shipments.push_to_market(tenant_id, shipment.id)

        assert result.error_code == "ALREADY_COMPLETED"
        assert len(marketplace.pushed) == 1

    def test_push_in_progress_rejected(self, db_session, container, tenant_id, marketplace, shipment):
        shipment.market_push_status = MarketPushStatus.PUSHING.value
        db_session.commit()

        result = container.shipments.push_to_market(tenant_id, shipment.id)

        assert result.error_code == "CONCURRENT_OPERATION"
        assert marketplace.pushed == []

    def test_push_without_invoice_rejected(self, db_session, container, tenant_id, marketplace, shipment):
        shipment.tracking_no = None
        db_session.commit()

        assert container.shipments.push_to_market(tenant_id, shipment.id).error_code == "INVOICE_REQUIRED"
        assert marketplace.pushed == []

    def test_cancelled_shipment_not_pushed(self, container, tenant_id, marketplace, shipment):
        container.shipments.cancel(tenant_id, shipment.id)

        result = container.shipments.push_to_market(tenant_id, shipment.id)

        assert result.error_code == "SHIPMENT_INACTIVE"
        assert marketplace.pushed == []

    def test_retryable_failure_scheduled(self, container, tenant_id, marketplace, clock, shipment):
        marketplace.queue_push_outcome(ServerError("502 from upstream", status_code=502))

        result = container.shipments.push_to_market(tenant_id, shipment.id)

        assert not result.success
        shipment = result.value
        assert shipment.market_push_status == MarketPushStatus.FAILED.value
        assert shipment.shipment_status == ShipmentStatus.FAILED.value
        assert shipment.retry_count == 1
        assert as_utc(shipment.last_attempted_at) == clock()
        assert as_utc(shipment.next_retry_at) == clock() + timedelta(seconds=60)

    def test_rate_limit_delays_retry(self, container, tenant_id, marketplace, clock, shipment):
        marketplace.queue_push_outcome(RateLimitError("slow down", retry_after_seconds=600))

        result = container.shipments.push_to_market(tenant_id, shipment.id)

        assert result.error_code == "RATE_LIMITED"
        assert as_utc(result.value.next_retry_at) == clock() + timedelta(seconds=600)

    def test_rejection_goes_to_manual_review(self, container, tenant_id, marketplace, shipment):
        """A non-retryable rejection is never retried automatically"""
        marketplace.queue_push_outcome(ShipmentPushResult.failed("INVALID_TRACKING", "unknown carrier", retryable=False))

        result = container.shipments.push_to_market(tenant_id, shipment.id)

        assert result.error_code == "INVALID_TRACKING"
        assert result.value.next_retry_at is None
        assert [s.id for s in container.shipments.list_manual_review(tenant_id)] == [shipment.id]

    def test_missing_credentials_goes_to_manual_review(self, db_session, container, tenant_id, store, marketplace, shipment):
        container.vault.delete(tenant_id, store.id, CredentialType.MARKETPLACE, "api_key")
        db_session.commit()

        result = container.shipments.push_to_market(tenant_id, shipment.id)

        assert result.error_code == "CREDENTIALS_MISSING"
        shipment = result.value
        assert shipment.market_push_status == MarketPushStatus.FAILED.value
        assert shipment.shipment_status == ShipmentStatus.FAILED.value
        assert shipment.last_error_code == "CREDENTIALS_MISSING"
        assert shipment.next_retry_at is None
        assert marketplace.pushed == []
        assert [s.id for s in container.shipments.list_manual_review(tenant_id)] == [shipment.id]


class TestRetry:
    """Tests for scheduled push retries"""

    def test_retry_failed_pushes(self, container, tenant_id, marketplace, clock, shipment):
        marketplace.queue_push_outcome(ServerError("502 from upstream", status_code=502))
        container.shipments.push_to_market(tenant_id, shipment.id)

        assert container.shipments.retry_failed_pushes() == 0
        clock.advance(61)
        assert container.shipments.retry_failed_pushes() == 1

        shipment = container.shipments.get_shipment(tenant_id, shipment.id)
        assert shipment.market_push_status == MarketPushStatus.SUCCESS.value
        assert shipment.last_error_code is None
        assert len(marketplace.pushed) == 2

    def test_retry_schedule_until_manual_review(self, container, tenant_id, marketplace, clock, shipment):
        """Five failures follow the 1m/5m/15m/1h schedule, then stop"""
        for _ in range(5):
            marketplace.queue_push_outcome(ServerError("502 from upstream", status_code=502))
        container.shipments.push_to_market(tenant_id, shipment.id)

        for delay in (60, 300, 900, 3600):
            shipment = container.shipments.get_shipment(tenant_id, shipment.id)
            assert as_utc(shipment.next_retry_at) == clock() + timedelta(seconds=delay)
            clock.advance(delay + 1)
            assert container.shipments.retry_failed_pushes() == 0

        shipment = container.shipments.get_shipment(tenant_id, shipment.id)
        assert shipment.retry_count == container.shipments.max_retries == 5
        assert shipment.next_retry_at is None
        assert [s.id for s in container.shipments.list_manual_review(tenant_id)] == [shipment.id]

        clock.advance(86_400)
        container.shipments.retry_failed_pushes()
        assert len(marketplace.pushed) == 5

    def test_cancelled_shipment_not_retried(self, container, tenant_id, marketplace, clock, shipment):
        marketplace.queue_push_outcome(ServerError("502 from upstream", status_code=502))
        container.shipments.push_to_market(tenant_id, shipment.id)
        container.shipments.cancel(tenant_id, shipment.id)

        clock.advance(61)

        assert container.shipments.retry_failed_pushes() == 0
        assert len(marketplace.pushed) == 1


class TestDelivery:
    def test_shipped_then_delivered(self, db_session, container, tenant_id, order, shipment):
        container.shipments.push_to_market(tenant_id, shipment.id)

        assert container.shipments.mark_shipped(tenant_id, shipment.id).success
        result = container.shipments.mark_delivered(tenant_id, shipment.id)

        assert result.success
        assert result.value.shipment_status == ShipmentStatus.DELIVERED.value
        assert result.value.delivered_at is not None
        db_session.refresh(order)
        assert order.order_status == OrderStatus.DELIVERED.value

    def test_delivered_before_shipped_rejected(self, container, tenant_id, shipment):
        container.shipments.push_to_market(tenant_id, shipment.id)

        result = container.shipments.mark_delivered(tenant_id, shipment.id)

        assert result.error_code == "INVALID_STATE_TRANSITION"

    def test_shipped_before_push_rejected(self, container, tenant_id, shipment):
        assert container.shipments.mark_shipped(tenant_id, shipment.id).error_code == "INVALID_STATE_TRANSITION"
