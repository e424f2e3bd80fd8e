"""PostingBuilder - turns orders and settlement batches into ERP documents.

The builder is a pure function of its inputs: it reads the order (or batch),
the resolved product mappings and the VAT rate, and never touches the session
or the clock. Building the same inputs twice yields identical canonical JSON
and the same idempotency key.

One document is built per posting type; types are never merged.
"""

import hashlib
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, List, Mapping, Optional, Sequence

from domain.clock import as_utc
from domain.results import MappingRequiredError

from .documents import PostingDocument, PostingDocumentLine
from .status import PostingType
from .vat import VatBreakdown, no_vat, split_signed, split_vat


def build_idempotency_key(tenant_id: Any, source_id: Any, posting_type: PostingType) -> str:
    """sha256 of tenant:source:type (hex).

    source_id is the owning order or settlement batch id, so two stores that
    reuse a marketplace order number still get separate keys. Deterministic,
    so every rebuild of the same document yields the same key.
    """
    key_input = f"{tenant_id}:{source_id}:{PostingType(posting_type).value}"
    return hashlib.sha256(key_input.encode()).hexdigest()


@dataclass(frozen=True)
class ItemCodes:
    """ERP item codes used for non-product document lines."""
    shipping_fee: str
    commission: str
    receipt: str
    shipping_adjustment: str


@dataclass(frozen=True)
class SettlementTotals:
    """Line sums of a settlement batch."""
    gross_sales: int
    commission: int
    pg_fee: int
    shipping_charged: int
    shipping_settled: int

    @property
    def commission_expense(self) -> int:
        return self.commission + self.pg_fee

    @property
    def shipping_adjustment(self) -> int:
        return self.shipping_settled - self.shipping_charged

    @property
    def net_payout(self) -> int:
        return self.gross_sales - self.commission - self.pg_fee + self.shipping_settled

    @classmethod
    def from_lines(cls, lines: Iterable[Any]) -> "SettlementTotals":
        lines = list(lines)
        return cls(
            gross_sales=sum(line.gross_sales_amount for line in lines),
            commission=sum(line.commission_amount for line in lines),
            pg_fee=sum(line.pg_fee_amount for line in lines),
            shipping_charged=sum(line.shipping_fee_charged for line in lines),
            shipping_settled=sum(line.shipping_fee_settled for line in lines),
        )


class PostingBuilder:
    """Builds PostingDocuments.

    Example:
        builder = PostingBuilder(vat_rate=Decimal("0.1"), erp_code="ECOUNT", item_codes=codes)
        doc = builder.build_order_document(order, PostingType.SHIPPING_FEE, mappings={})
    """

    def __init__(self, vat_rate: Decimal, erp_code: str, item_codes: ItemCodes):
        if Decimal(vat_rate) < 0:
            raise ValueError(f"VAT rate must be >= 0, got {vat_rate}")
        self.vat_rate = Decimal(vat_rate)
        self.erp_code = erp_code
        self.item_codes = item_codes

    # Order documents

    def order_posting_types(self, order: Any, include_commission: bool = False) -> List[PostingType]:
        """Posting types an order produces, in submission order."""
        types: List[PostingType] = []
        if order.items:
            types.append(PostingType.PRODUCT_SALES)
        if (order.shipping_fee or 0) > 0:
            types.append(PostingType.SHIPPING_FEE)
        if order.canceled_items:
            types.append(PostingType.PRODUCT_CANCEL)
        if include_commission and ((order.commission_amount or 0) + (order.pg_fee or 0)) > 0:
            types.append(PostingType.PRODUCT_SALES_COMMISSION)
        return types

    def build_order_document(
        self,
        order: Any,
        posting_type: PostingType,
        mappings: Mapping[str, Any],
    ) -> PostingDocument:
        """Build one order document.

        Args:
            order: Order with items loaded
            posting_type: One of the order posting types
            mappings: productId:sku -> resolved mapping (MAPPED only counts)

        Raises:
            MappingRequiredError: If a product document has an unmapped line
            ValueError: If posting_type is not an order posting type
        """
        posting_type = PostingType(posting_type)
        if posting_type == PostingType.PRODUCT_SALES:
            lines = self._product_lines(order.items, mappings, negate=False)
        elif posting_type == PostingType.PRODUCT_CANCEL:
            lines = self._product_lines(order.canceled_items, mappings, negate=True)
        elif posting_type == PostingType.SHIPPING_FEE:
            lines = [self._single_line(self.item_codes.shipping_fee, "Shipping fee",
                                       split_vat(order.shipping_fee or 0, self.vat_rate))]
        elif posting_type == PostingType.PRODUCT_SALES_COMMISSION:
            amount = (order.commission_amount or 0) + (order.pg_fee or 0)
            lines = [self._single_line(self.item_codes.commission, "Sales commission",
                                       split_vat(amount, self.vat_rate))]
        else:
            raise ValueError(f"{posting_type.value} is not an order posting type")

        return self._document(
            tenant_id=order.tenant_id,
            reference=order.marketplace_order_id,
            source_id=order.id,
            posting_type=posting_type,
            document_date=as_utc(order.ordered_at or order.created_at).date().isoformat(),
            customer_code=order.marketplace_code,
            lines=lines,
        )

    def build_order_documents(
        self,
        order: Any,
        mappings: Mapping[str, Any],
        include_commission: bool = False,
    ) -> List[PostingDocument]:
        """Build every document of an order.

        Raises:
            MappingRequiredError: If any product line is unmapped
        """
        return [
            self.build_order_document(order, posting_type, mappings)
            for posting_type in self.order_posting_types(order, include_commission)
        ]

    def _product_lines(
        self,
        items: Sequence[Any],
        mappings: Mapping[str, Any],
        negate: bool,
    ) -> List[PostingDocumentLine]:
        unmapped = []
        for item in items:
            mapping = mappings.get(item.mapping_key)
            if mapping is None or not getattr(mapping, "is_mapped", False):
                unmapped.append(item.mapping_key)
        if unmapped:
            raise MappingRequiredError(sorted(set(unmapped)))

        lines = []
        for index, item in enumerate(sorted(items, key=lambda i: i.line_no), start=1):
            mapping = mappings[item.mapping_key]
            amounts = split_signed(-item.line_total if negate else item.line_total, self.vat_rate)
            lines.append(PostingDocumentLine(
                line_no=index,
                item_code=mapping.erp_item_code,
                item_name=mapping.erp_item_name or item.product_name or mapping.erp_item_code,
                quantity=-item.quantity if negate else item.quantity,
                unit_price=item.unit_price,
                amounts=amounts,
                warehouse_code=mapping.warehouse_code,
                source_key=item.mapping_key,
            ))
        return lines

    # Settlement documents

    def settlement_posting_types(self, totals: SettlementTotals) -> List[PostingType]:
        types = [PostingType.COMMISSION_EXPENSE, PostingType.RECEIPT]
        if totals.shipping_adjustment != 0:
            types.append(PostingType.SHIPPING_ADJUSTMENT)
        return types

    def build_settlement_documents(self, batch: Any, totals: Optional[SettlementTotals] = None) -> List[PostingDocument]:
        """Build COMMISSION_EXPENSE, RECEIPT and (when non-zero) SHIPPING_ADJUSTMENT.

        Amounts are line sums of the batch.
        """
        totals = totals or SettlementTotals.from_lines(batch.lines)
        documents = []
        for posting_type in self.settlement_posting_types(totals):
            if posting_type == PostingType.COMMISSION_EXPENSE:
                line = self._single_line(self.item_codes.commission, "Marketplace commission",
                                         split_vat(totals.commission_expense, self.vat_rate))
            elif posting_type == PostingType.RECEIPT:
                line = self._single_line(self.item_codes.receipt, "Settlement receipt",
                                         no_vat(totals.net_payout))
            else:
                line = self._single_line(self.item_codes.shipping_adjustment, "Shipping fee adjustment",
                                         split_signed(totals.shipping_adjustment, self.vat_rate))
            documents.append(self._document(
                tenant_id=batch.tenant_id,
                reference=batch.batch_key,
                source_id=batch.id,
                posting_type=posting_type,
                document_date=batch.period_end.isoformat(),
                customer_code=batch.marketplace_code,
                lines=[line],
                remarks=batch.marketplace_settlement_id,
            ))
        return documents

    # Helpers

    def _single_line(self, item_code: str, item_name: str, amounts: VatBreakdown) -> PostingDocumentLine:
        return PostingDocumentLine(
            line_no=1,
            item_code=item_code,
            item_name=item_name,
            quantity=1 if amounts.total >= 0 else -1,
            unit_price=abs(amounts.total),
            amounts=amounts,
        )

    def _document(
        self,
        tenant_id: uuid.UUID,
        reference: str,
        source_id: uuid.UUID,
        posting_type: PostingType,
        document_date: str,
        customer_code: str,
        lines: Sequence[PostingDocumentLine],
        remarks: Optional[str] = None,
    ) -> PostingDocument:
        return PostingDocument(
            tenant_id=str(tenant_id),
            idempotency_key=build_idempotency_key(tenant_id, source_id, posting_type),
            posting_type=posting_type,
            reference=reference,
            erp_code=self.erp_code,
            document_date=document_date,
            customer_code=customer_code,
            lines=tuple(lines),
            remarks=remarks,
        )
