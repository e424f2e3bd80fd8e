"""
Adapter ports for the external systems the pipeline reconciles.

Following hexagonal architecture, the orchestrators depend only on these
ports, never on concrete marketplace/ERP clients. Vendor wire formats live in
the adapter implementations.

- MarketplaceAdapter: order feed, shipment push, settlement feed
- ErpAdapter: sales document posting, item master, customers
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional

from domain.clock import utc_now
from postings.documents import PostingDocument

Credentials = Dict[str, str]


@dataclass(frozen=True)
class TimeRange:
    """Half-open time range [start, end)."""
    start: datetime
    end: datetime

    @property
    def is_valid(self) -> bool:
        return self.start is not None and self.end is not None and self.start < self.end


@dataclass(frozen=True)
class SettlementPeriod:
    """Inclusive settlement period."""
    start: date
    end: date


@dataclass
class RawOrderItem:
    """Order line as reported by a marketplace."""
    product_id: str
    quantity: int
    unit_price: int
    line_total: Optional[int] = None
    sku: Optional[str] = None
    product_name: Optional[str] = None
    option_name: Optional[str] = None
    marketplace_item_id: Optional[str] = None
    canceled: bool = False

    @property
    def effective_line_total(self) -> int:
        if self.line_total is not None:
            return self.line_total
        return self.unit_price * self.quantity


@dataclass
class RawOrder:
    """Order as reported by a marketplace.

    Attributes:
        marketplace_order_id: Marketplace order number (required to persist)
        order_status: Marketplace status, normalized to OrderStatus names
        shipping_fee: Shipping fee paid by the buyer
        total_paid_amount: Amount paid; defaults to items + shipping fee
        raw: Vendor payload, stored for troubleshooting
    """
    marketplace_order_id: Optional[str]
    order_status: str = "NEW"
    ordered_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    buyer_name: Optional[str] = None
    shipping_fee: int = 0
    total_paid_amount: Optional[int] = None
    items: List[RawOrderItem] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ShipmentPushRequest:
    marketplace_order_id: str
    carrier_code: str
    tracking_no: str
    carrier_name: Optional[str] = None
    marketplace_item_ids: List[str] = field(default_factory=list)


@dataclass
class ShipmentPushResult:
    """Outcome of pushing a tracking number to a marketplace.

    Adapters may either raise a ConnectorError or return success=False with
    an error code; the pipeline handles both.
    """
    success: bool
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    retryable: bool = True
    raw_response: Optional[str] = None

    @classmethod
    def ok(cls, raw_response: Optional[str] = None) -> "ShipmentPushResult":
        return cls(success=True, raw_response=raw_response)

    @classmethod
    def failed(cls, error_code: str, error_message: str, retryable: bool = True) -> "ShipmentPushResult":
        return cls(success=False, error_code=error_code, error_message=error_message, retryable=retryable)


@dataclass
class MarketplaceSettlementLine:
    marketplace_order_id: str
    gross_sales_amount: int = 0
    commission_amount: int = 0
    pg_fee_amount: int = 0
    shipping_fee_charged: int = 0
    shipping_fee_settled: int = 0

    @property
    def net_payout_amount(self) -> int:
        return self.gross_sales_amount - self.commission_amount - self.pg_fee_amount + self.shipping_fee_settled


@dataclass
class MarketplaceSettlementData:
    """Settlement feed for one cycle and period.

    Header totals are as declared by the marketplace; validation compares them
    against the sums of lines.
    """
    settlement_id: Optional[str]
    cycle: str
    period_start: date
    period_end: date
    gross_sales_amount: int = 0
    commission_amount: int = 0
    pg_fee_amount: int = 0
    shipping_fee_charged: int = 0
    shipping_fee_settled: int = 0
    expected_payout_amount: int = 0
    actual_payout_amount: Optional[int] = None
    lines: List[MarketplaceSettlementLine] = field(default_factory=list)


@dataclass
class PostingResult:
    erp_document_no: str
    raw_response: Optional[str] = None


@dataclass
class ErpItemRecord:
    item_code: str
    item_name: str
    item_spec: Optional[str] = None
    warehouse_code: Optional[str] = None


@dataclass
class ErpCustomerRecord:
    customer_code: str
    customer_name: str


@dataclass
class ConnectionCheck:
    """Result of an adapter connection test."""
    success: bool
    error_message: Optional[str] = None
    latency_ms: int = 0
    checked_at: datetime = None

    def __post_init__(self):
        if self.checked_at is None:
            self.checked_at = utc_now()


class MarketplaceAdapter(ABC):
    """Port for a marketplace (order feed, shipment push, settlement feed).

    Implementation Requirements:
    - MUST raise ConnectorError subclasses (connectors.errors) on failure
    - MUST NOT retry internally; retry timing belongs to the RetryScheduler
    """

    marketplace_code: str = ""

    @abstractmethod
    def fetch_orders(self, credentials: Credentials, time_range: TimeRange) -> Iterable[List[RawOrder]]:
        """Yield pages of orders changed within [start, end).

        Raises:
            ConnectorError: On transport or API failure (possibly mid-iteration)
        """

    @abstractmethod
    def push_shipment(self, credentials: Credentials, request: ShipmentPushRequest) -> ShipmentPushResult:
        """Register a tracking number for an order on the marketplace."""

    @abstractmethod
    def fetch_settlement(
        self,
        credentials: Credentials,
        cycle: str,
        period: SettlementPeriod,
    ) -> MarketplaceSettlementData:
        """Fetch the settlement feed for a cycle and period."""

    @abstractmethod
    def test_connection(self, credentials: Credentials) -> bool:
        """Return True if the credentials work."""

    def check_connection(self, credentials: Credentials) -> ConnectionCheck:
        """test_connection() with timing, never raising."""
        started = utc_now()
        try:
            success = self.test_connection(credentials)
            error_message = None if success else "Connection test returned false"
        except Exception as e:  # noqa: BLE001 - report, never raise
            success, error_message = False, str(e)
        latency_ms = int((utc_now() - started).total_seconds() * 1000)
        return ConnectionCheck(success=success, error_message=error_message, latency_ms=latency_ms)


class ErpAdapter(ABC):
    """Port for an ERP.

    Implementation Requirements:
    - post_sales_document SHOULD pass document.idempotency_key to the ERP when
      the ERP supports it
    - MUST raise ConnectorError subclasses (connectors.errors) on failure
    """

    erp_code: str = ""

    @abstractmethod
    def post_sales_document(self, tenant_id: str, document: PostingDocument) -> PostingResult:
        """Post a sales document and return the ERP document reference."""

    @abstractmethod
    def get_items(self, tenant_id: str) -> List[ErpItemRecord]:
        """Return the ERP item master."""

    @abstractmethod
    def get_customers(self, tenant_id: str) -> List[ErpCustomerRecord]:
        """Return ERP customers (trading partners)."""

    @abstractmethod
    def test_connection(self, tenant_id: str) -> bool:
        """Return True if the ERP is reachable with the tenant's configuration."""
