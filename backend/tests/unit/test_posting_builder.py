"""Unit tests for PostingBuilder"""

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest

from domain.results import MappingRequiredError
from models import Order, OrderItem, OrderItemStatus, SettlementBatch, SettlementLine
from postings.builder import ItemCodes, PostingBuilder, SettlementTotals, build_idempotency_key
from postings.documents import PostingDocument
from postings.status import PostingType

TENANT_ID = uuid.UUID("11111111-1111-1111-1111-111111111111")
STORE_ID = uuid.UUID("22222222-2222-2222-2222-222222222222")


@pytest.fixture
def builder():
    return PostingBuilder(
        vat_rate=Decimal("0.1"),
        erp_code="MOCK",
        item_codes=ItemCodes(
            shipping_fee="SHIPPING_FEE",
            commission="MARKET_COMMISSION",
            receipt="MARKET_RECEIPT",
            shipping_adjustment="SHIPPING_ADJUSTMENT",
        ),
    )


def _mapping(code):
    return SimpleNamespace(is_mapped=True, erp_item_code=code, erp_item_name=f"Item {code}", warehouse_code="W1")


def _order(items, shipping_fee=0, store_id=STORE_ID, **fields):
    order = Order.create(
        tenant_id=TENANT_ID,
        store_id=store_id,
        marketplace_code="MOCK",
        marketplace_order_id="A-100",
        ordered_at=datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc),
        shipping_fee=shipping_fee,
        **fields,
    )
    for line_no, (product_id, sku, quantity, unit_price, canceled) in enumerate(items, start=1):
        order.items.append(OrderItem.create(
            tenant_id=TENANT_ID,
            line_no=line_no,
            marketplace_product_id=product_id,
            marketplace_sku=sku,
            product_name=f"Product {product_id}",
            quantity=quantity,
            unit_price=unit_price,
            line_total=quantity * unit_price,
            item_status=OrderItemStatus.CANCELED.value if canceled else OrderItemStatus.NORMAL.value,
        ))
    return order


class TestIdempotencyKey:
    def test_deterministic(self):
        first = build_idempotency_key(TENANT_ID, "A-100", PostingType.PRODUCT_SALES)
        second = build_idempotency_key(TENANT_ID, "A-100", PostingType.PRODUCT_SALES)

        assert first == second
        assert len(first) == 64

    def test_differs_per_type_source_and_tenant(self):
        base = build_idempotency_key(TENANT_ID, "A-100", PostingType.PRODUCT_SALES)

        assert base != build_idempotency_key(TENANT_ID, "A-100", PostingType.SHIPPING_FEE)
        assert base != build_idempotency_key(TENANT_ID, "A-101", PostingType.PRODUCT_SALES)
        assert base != build_idempotency_key(uuid.uuid4(), "A-100", PostingType.PRODUCT_SALES)


class TestOrderPostingTypes:
    def test_product_only(self, builder):
        order = _order([("P-1", "S-1", 1, 11_000, False)])

        assert builder.order_posting_types(order) == [PostingType.PRODUCT_SALES]

    def test_shipping_and_cancel(self, builder):
        order = _order(
            [("P-1", "S-1", 1, 11_000, False), ("P-2", "S-2", 1, 5_500, True)],
            shipping_fee=3_000,
        )

        assert builder.order_posting_types(order) == [
            PostingType.PRODUCT_SALES,
            PostingType.SHIPPING_FEE,
            PostingType.PRODUCT_CANCEL,
        ]

    def test_commission_is_opt_in(self, builder):
        order = _order([("P-1", "S-1", 1, 11_000, False)], commission_amount=1_100, pg_fee=330)

        assert PostingType.PRODUCT_SALES_COMMISSION not in builder.order_posting_types(order)
        assert PostingType.PRODUCT_SALES_COMMISSION in builder.order_posting_types(order, include_commission=True)


class TestBuildOrderDocument:
    """Tests for order documents"""

    def test_product_sales_amounts(self, builder):
        """11,000 line becomes a 10,000 + 1,000 document line"""
        order = _order([("P-1", "S-1", 1, 11_000, False)])

        document = builder.build_order_document(order, PostingType.PRODUCT_SALES, {"P-1:S-1": _mapping("ERP-1")})

        assert len(document.lines) == 1
        line = document.lines[0]
        assert line.item_code == "ERP-1"
        assert line.warehouse_code == "W1"
        assert (line.amounts.supply, line.amounts.vat, line.amounts.total) == (10_000, 1_000, 11_000)
        assert document.totals.total == 11_000
        assert document.document_date == "2026-03-02"

    def test_shipping_fee_document(self, builder):
        order = _order([("P-1", "S-1", 1, 11_000, False)], shipping_fee=3_000)

        document = builder.build_order_document(order, PostingType.SHIPPING_FEE, {})

        assert document.lines[0].item_code == "SHIPPING_FEE"
        assert document.totals.supply + document.totals.vat == 3_000

    def test_cancel_negates_canceled_lines(self, builder):
        """Cancel documents mirror the sale of the canceled lines"""
        order = _order([("P-1", "S-1", 1, 11_000, False), ("P-2", "S-2", 2, 5_500, True)])
        mappings = {"P-1:S-1": _mapping("ERP-1"), "P-2:S-2": _mapping("ERP-2")}

        document = builder.build_order_document(order, PostingType.PRODUCT_CANCEL, mappings)

        assert [line.item_code for line in document.lines] == ["ERP-2"]
        line = document.lines[0]
        assert line.quantity == -2
        assert (line.amounts.supply, line.amounts.vat, line.amounts.total) == (-10_000, -1_000, -11_000)

    def test_unmapped_line_lists_its_key(self, builder):
        """Only the unmapped productId:sku is reported"""
        order = _order([("P-1", "S-1", 1, 11_000, False), ("P-2", "S-2", 1, 5_500, False)])

        with pytest.raises(MappingRequiredError) as exc_info:
            builder.build_order_document(order, PostingType.PRODUCT_SALES, {"P-1:S-1": _mapping("ERP-1")})

        assert exc_info.value.unmapped_keys == ["P-2:S-2"]

    def test_suggestion_does_not_count_as_mapped(self, builder):
        order = _order([("P-1", "S-1", 1, 11_000, False)])
        suggestion = SimpleNamespace(is_mapped=False, erp_item_code="ERP-1", erp_item_name=None, warehouse_code=None)

        with pytest.raises(MappingRequiredError):
            builder.build_order_document(order, PostingType.PRODUCT_SALES, {"P-1:S-1": suggestion})

    def test_rebuild_is_byte_identical(self, builder):
        """Same inputs give the same idempotency key and canonical JSON"""
        mappings = {"P-1:S-1": _mapping("ERP-1")}
        order = _order([("P-1", "S-1", 1, 11_000, False)])
        first = builder.build_order_document(order, PostingType.PRODUCT_SALES, mappings)
        second = builder.build_order_document(order, PostingType.PRODUCT_SALES, mappings)

        assert first.idempotency_key == second.idempotency_key
        assert first.to_json() == second.to_json()

    def test_same_order_number_in_two_stores_keyed_apart(self, builder):
        mappings = {"P-1:S-1": _mapping("ERP-1")}
        first = _order([("P-1", "S-1", 1, 11_000, False)])
        second = _order([("P-1", "S-1", 1, 11_000, False)], store_id=uuid.uuid4())

        first_doc = builder.build_order_document(first, PostingType.PRODUCT_SALES, mappings)
        second_doc = builder.build_order_document(second, PostingType.PRODUCT_SALES, mappings)

        assert first_doc.reference == second_doc.reference == "A-100"
        assert first_doc.idempotency_key != second_doc.idempotency_key

    def test_json_round_trip_preserves_document(self, builder):
        document = builder.build_order_document(
            _order([("P-1", "S-1", 1, 11_000, False)]), PostingType.PRODUCT_SALES, {"P-1:S-1": _mapping("ERP-1")}
        )

        assert PostingDocument.from_json(document.to_json()).to_json() == document.to_json()

    def test_settlement_type_rejected(self, builder):
        with pytest.raises(ValueError):
            builder.build_order_document(_order([]), PostingType.RECEIPT, {})


class TestSettlementDocuments:
    """Tests for settlement documents"""

    def _batch(self, shipping_charged=3_000, shipping_settled=3_000):
        batch = SettlementBatch.create(
            tenant_id=TENANT_ID,
            store_id=STORE_ID,
            marketplace_code="MOCK",
            settlement_cycle="WEEKLY",
            period_start=date(2026, 3, 1),
            period_end=date(2026, 3, 7),
        )
        batch.lines.append(SettlementLine.create(
            tenant_id=TENANT_ID,
            line_no=1,
            marketplace_order_id="A-100",
            gross_sales_amount=11_000,
            commission_amount=1_100,
            pg_fee_amount=330,
            shipping_fee_charged=shipping_charged,
            shipping_fee_settled=shipping_settled,
        ))
        return batch

    def test_totals_from_lines(self):
        totals = SettlementTotals.from_lines(self._batch().lines)

        assert totals.commission_expense == 1_430
        assert totals.shipping_adjustment == 0
        assert totals.net_payout == 11_000 - 1_100 - 330 + 3_000

    def test_commission_and_receipt_only_without_adjustment(self, builder):
        documents = builder.build_settlement_documents(self._batch())

        assert [d.posting_type for d in documents] == [PostingType.COMMISSION_EXPENSE, PostingType.RECEIPT]
        commission, receipt = documents
        assert commission.totals.total == 1_430
        assert commission.totals.supply + commission.totals.vat == 1_430
        assert receipt.totals.vat == 0
        assert receipt.totals.total == 12_570
        assert receipt.reference == "MOCK:WEEKLY:2026-03-01:2026-03-07"

    def test_negative_shipping_adjustment(self, builder):
        """Settled less shipping than charged produces a negative adjustment"""
        documents = builder.build_settlement_documents(self._batch(shipping_charged=3_000, shipping_settled=2_500))

        adjustment = documents[-1]
        assert adjustment.posting_type == PostingType.SHIPPING_ADJUSTMENT
        assert adjustment.totals.total == -500
        assert adjustment.lines[0].quantity == -1
