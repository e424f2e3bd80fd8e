"""Posting document value objects.

A PostingDocument is what the ERP adapter receives. Its canonical JSON form
(sorted keys, fixed separators, no timestamps) is stored on the Posting row
so a rebuilt document can be compared byte for byte.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from .status import PostingType
from .vat import VatBreakdown


def canonical_json(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


@dataclass(frozen=True)
class PostingDocumentLine:
    """One ERP document line.

    Attributes:
        line_no: 1-based position in the document
        item_code: ERP item code
        item_name: ERP item name
        quantity: Quantity (negative on cancel documents)
        unit_price: VAT inclusive unit price
        amounts: VAT breakdown of the line
        warehouse_code: ERP warehouse, if any
        source_key: productId:sku of the originating order line, if any
    """
    line_no: int
    item_code: str
    item_name: str
    quantity: int
    unit_price: int
    amounts: VatBreakdown
    warehouse_code: Optional[str] = None
    source_key: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "line_no": self.line_no,
            "item_code": self.item_code,
            "item_name": self.item_name,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "supply_amount": self.amounts.supply,
            "vat_amount": self.amounts.vat,
            "total_amount": self.amounts.total,
            "warehouse_code": self.warehouse_code,
            "source_key": self.source_key,
        }


@dataclass(frozen=True)
class PostingDocument:
    """ERP document of a single posting type."""
    tenant_id: str
    idempotency_key: str
    posting_type: PostingType
    reference: str
    erp_code: str
    document_date: str
    customer_code: str
    lines: Tuple[PostingDocumentLine, ...] = field(default_factory=tuple)
    remarks: Optional[str] = None

    @property
    def totals(self) -> VatBreakdown:
        supply = sum(line.amounts.supply for line in self.lines)
        vat = sum(line.amounts.vat for line in self.lines)
        total = sum(line.amounts.total for line in self.lines)
        return VatBreakdown(supply=supply, vat=vat, total=total)

    def to_payload(self) -> Dict[str, Any]:
        totals = self.totals
        return {
            "tenant_id": self.tenant_id,
            "idempotency_key": self.idempotency_key,
            "posting_type": self.posting_type.value,
            "reference": self.reference,
            "erp_code": self.erp_code,
            "document_date": self.document_date,
            "customer_code": self.customer_code,
            "remarks": self.remarks,
            "lines": [line.to_payload() for line in self.lines],
            "supply_amount": totals.supply,
            "vat_amount": totals.vat,
            "total_amount": totals.total,
        }

    def to_json(self) -> str:
        return canonical_json(self.to_payload())

    @classmethod
    def from_json(cls, data: str) -> "PostingDocument":
        """Rebuild a document from its stored canonical JSON."""
        payload = json.loads(data)
        lines = tuple(
            PostingDocumentLine(
                line_no=line["line_no"],
                item_code=line["item_code"],
                item_name=line["item_name"],
                quantity=line["quantity"],
                unit_price=line["unit_price"],
                amounts=VatBreakdown(
                    supply=line["supply_amount"],
                    vat=line["vat_amount"],
                    total=line["total_amount"],
                ),
                warehouse_code=line.get("warehouse_code"),
                source_key=line.get("source_key"),
            )
            for line in payload["lines"]
        )
        return cls(
            tenant_id=payload["tenant_id"],
            idempotency_key=payload["idempotency_key"],
            posting_type=PostingType(payload["posting_type"]),
            reference=payload["reference"],
            erp_code=payload["erp_code"],
            document_date=payload["document_date"],
            customer_code=payload["customer_code"],
            lines=lines,
            remarks=payload.get("remarks"),
        )
