"""Unit tests for ErpPostingGateway

Orders are ingested through a sync run so postings are registered the same
way as in production; the MOCK ERP records every post call.
"""

import json
import uuid
from datetime import timedelta

import pytest

from conftest import make_raw_order
from connectors.errors import AuthenticationError, ServerError
from domain.clock import as_utc
from domain.results import EntityNotFoundError
from models import Order, OrderPostingStatus
from postings.status import PostingStatus, PostingType


@pytest.fixture
def order(db_session, container, tenant_id, store, marketplace, time_range):
    """Synced order A-1: one unmapped 11,000 line and a 3,000 shipping fee."""
    marketplace.add_order(make_raw_order("A-1", shipping_fee=3_000))
    container.sync.start_sync(tenant_id, store.id, time_range)
    return db_session.query(Order).filter(Order.marketplace_order_id == "A-1").one()


def _postings(container, tenant_id, order):
    return {p.posting_type: p for p in container.gateway.postings_for_order(tenant_id, order.id)}


def _map_tea(container, db_session, tenant_id, store):
    container.resolver.map_manually(tenant_id, store.id, "MOCK", "P-1", "SKU-1", "TEA-500", erp_item_name="Green tea")
    db_session.commit()


class TestRegistration:
    def test_registration_is_idempotent(self, db_session, container, tenant_id, order):
        """Registering the same order twice keeps one posting per type"""
        first = container.gateway.register_order_postings(order)
        second = container.gateway.register_order_postings(order)
        db_session.commit()

        assert [p.id for p in first] == [p.id for p in second]
        assert len(container.gateway.postings_for_order(tenant_id, order.id)) == 2

    def test_pending_mapping_becomes_ready(self, db_session, container, tenant_id, store, order):
        _map_tea(container, db_session, tenant_id, store)

        assert container.gateway.refresh_pending_mapping(tenant_id) == 1

        posting = _postings(container, tenant_id, order)[PostingType.PRODUCT_SALES.value]
        assert posting.status == PostingStatus.READY_TO_POST.value
        assert posting.last_error_code is None
        assert (posting.supply_amount, posting.vat_amount, posting.total_amount) == (10_000, 1_000, 11_000)
        payload = json.loads(posting.document_payload)
        assert payload["lines"][0]["item_code"] == "TEA-500"

    def test_pending_mapping_records_unmapped_key(self, container, tenant_id, order):
        posting = _postings(container, tenant_id, order)[PostingType.PRODUCT_SALES.value]

        assert posting.last_error_code == "MAPPING_REQUIRED"
        assert "P-1:SKU-1" in posting.last_error_message

    def test_same_order_number_in_two_stores(self, db_session, container, tenant_id, other_store, erp, order, time_range):
        """Each store's order A-1 gets postings of its own"""
        container.sync.start_sync(tenant_id, other_store.id, time_range)
        other_order = db_session.query(Order).filter(
            Order.store_id == other_store.id, Order.marketplace_order_id == "A-1"
        ).one()

        own = _postings(container, tenant_id, order)
        other = _postings(container, tenant_id, other_order)

        assert set(own) == set(other) == {PostingType.PRODUCT_SALES.value, PostingType.SHIPPING_FEE.value}
        assert {p.id for p in own.values()}.isdisjoint(p.id for p in other.values())
        assert {p.idempotency_key for p in own.values()}.isdisjoint(p.idempotency_key for p in other.values())
        assert other[PostingType.SHIPPING_FEE.value].reference == "A-1"

        assert container.gateway.submit_ready(tenant_id) == {"submitted": 2, "failed": 0, "skipped": 0}
        assert len(erp.documents) == 2

    def test_mapping_is_scoped_to_its_store(self, db_session, container, tenant_id, store, other_store, order, time_range):
        container.sync.start_sync(tenant_id, other_store.id, time_range)
        other_order = db_session.query(Order).filter(Order.store_id == other_store.id).one()
        _map_tea(container, db_session, tenant_id, store)

        assert container.gateway.refresh_pending_mapping(tenant_id) == 1
        assert _postings(container, tenant_id, other_order)[PostingType.PRODUCT_SALES.value].status == (
            PostingStatus.PENDING_MAPPING.value
        )


class TestSubmit:
    """Tests for single submission"""

    def test_submit_posts_once(self, container, tenant_id, erp, order):
        """A second submit returns the stored reference without an ERP call"""
        posting = _postings(container, tenant_id, order)[PostingType.SHIPPING_FEE.value]

        first = container.gateway.submit(tenant_id, posting.id)
        second = container.gateway.submit(tenant_id, posting.id)

        assert first.success and second.success
        assert erp.post_calls == 1
        assert first.value.status == PostingStatus.POSTED.value
        assert second.value.erp_document_no == "MOCK-000001"
        assert first.value.posted_at is not None

    def test_idempotency_key_sent_to_erp(self, container, tenant_id, erp, order):
        posting = _postings(container, tenant_id, order)[PostingType.SHIPPING_FEE.value]

        container.gateway.submit(tenant_id, posting.id)

        assert list(erp.documents) == [posting.idempotency_key]

    def test_pending_mapping_not_submitted(self, container, tenant_id, erp, order):
        posting = _postings(container, tenant_id, order)[PostingType.PRODUCT_SALES.value]

        result = container.gateway.submit(tenant_id, posting.id)

        assert result.error_code == "MAPPING_REQUIRED"
        assert erp.post_calls == 0

    def test_in_flight_posting_rejected(self, db_session, container, tenant_id, erp, order, clock):
        """A posting another worker has claimed is not sent again"""
        posting = _postings(container, tenant_id, order)[PostingType.SHIPPING_FEE.value]
        posting.status = PostingStatus.POSTING_REQUESTED.value
        posting.requested_at = clock()
        db_session.commit()

        result = container.gateway.submit(tenant_id, posting.id)

        assert result.error_code == "CONCURRENT_OPERATION"
        assert erp.post_calls == 0

    def test_unknown_posting(self, container, tenant_id, order):
        with pytest.raises(EntityNotFoundError):
            container.gateway.submit(tenant_id, uuid.uuid4())

    def test_order_roll_up(self, db_session, container, tenant_id, store, order):
        shipping = _postings(container, tenant_id, order)[PostingType.SHIPPING_FEE.value]
        container.gateway.submit(tenant_id, shipping.id)
        db_session.refresh(order)
        assert order.posting_status == OrderPostingStatus.PARTIALLY_POSTED.value

        _map_tea(container, db_session, tenant_id, store)
        container.gateway.refresh_pending_mapping(tenant_id)
        product = _postings(container, tenant_id, order)[PostingType.PRODUCT_SALES.value]
        container.gateway.submit(tenant_id, product.id)

        db_session.refresh(order)
        assert order.posting_status == OrderPostingStatus.POSTED.value

    def test_submit_ready(self, db_session, container, tenant_id, store, erp, order):
        _map_tea(container, db_session, tenant_id, store)
        container.gateway.refresh_pending_mapping(tenant_id)

        counts = container.gateway.submit_ready(tenant_id)

        assert counts == {"submitted": 2, "failed": 0, "skipped": 0}
        assert erp.post_calls == 2


class TestFailures:
    """Tests for failure handling and retries"""

    def test_retryable_failure_scheduled(self, container, tenant_id, erp, order, clock):
        erp.fail_next_post(ServerError("503 service unavailable", status_code=503))
        posting = _postings(container, tenant_id, order)[PostingType.SHIPPING_FEE.value]

        result = container.gateway.submit(tenant_id, posting.id)

        assert not result.success
        posting = result.value
        assert posting.status == PostingStatus.FAILED.value
        assert posting.retry_count == 1
        assert posting.last_error_kind == "RETRYABLE"
        assert as_utc(posting.next_retry_at) == clock() + timedelta(seconds=60)

    def test_retry_due_until_budget_exhausted(self, container, tenant_id, erp, order, clock):
        for _ in range(3):
            erp.fail_next_post(ServerError("503 service unavailable", status_code=503))
        posting = _postings(container, tenant_id, order)[PostingType.SHIPPING_FEE.value]
        container.gateway.submit(tenant_id, posting.id)

        assert container.gateway.retry_due() == 0

        clock.advance(61)
        assert container.gateway.retry_due() == 1
        clock.advance(121)
        assert container.gateway.retry_due() == 1

        posting = container.gateway.get_posting(tenant_id, posting.id)
        assert posting.retry_count == 3
        assert posting.next_retry_at is None
        clock.advance(86_400)
        assert container.gateway.retry_due() == 0
        assert erp.post_calls == 3

    def test_retry_succeeds(self, container, tenant_id, erp, order, clock):
        erp.fail_next_post(ServerError("503 service unavailable", status_code=503))
        posting = _postings(container, tenant_id, order)[PostingType.SHIPPING_FEE.value]
        container.gateway.submit(tenant_id, posting.id)

        clock.advance(61)
        container.gateway.retry_due()

        posting = container.gateway.get_posting(tenant_id, posting.id)
        assert posting.status == PostingStatus.POSTED.value
        assert posting.last_error_code is None
        assert erp.post_calls == 2

    def test_fatal_failure_not_scheduled(self, container, tenant_id, erp, order):
        erp.fail_next_post(AuthenticationError("unauthorized", status_code=401))
        posting = _postings(container, tenant_id, order)[PostingType.SHIPPING_FEE.value]

        result = container.gateway.submit(tenant_id, posting.id)

        assert result.error_code == "AUTH_FAILED"
        assert result.value.next_retry_at is None

    def test_stale_request_recovered(self, db_session, container, tenant_id, erp, order, clock):
        """POSTING_REQUESTED with no recorded response returns to FAILED"""
        posting = _postings(container, tenant_id, order)[PostingType.SHIPPING_FEE.value]
        posting.status = PostingStatus.POSTING_REQUESTED.value
        posting.requested_at = clock() - timedelta(hours=1)
        db_session.commit()

        assert container.gateway.retry_due() == 0

        posting = container.gateway.get_posting(tenant_id, posting.id)
        assert posting.status == PostingStatus.FAILED.value
        assert posting.last_error_code == "STALE_REQUEST"
        assert as_utc(posting.next_retry_at) == clock() + timedelta(seconds=60)
        assert erp.post_calls == 0
