"""
Mock Marketplace Adapter - In-memory marketplace for testing and development

Simulates the order feed, shipment push and settlement feed without any
external system. Failures are scripted by queuing exceptions (or failed push
results) that are consumed by the next matching call.
"""

import logging
from collections import deque
from datetime import date
from typing import Deque, Dict, Iterable, List, Optional, Tuple, Union

from domain.clock import as_utc

from ..errors import AuthenticationError
from ..ports import (
    Credentials,
    MarketplaceAdapter,
    MarketplaceSettlementData,
    RawOrder,
    SettlementPeriod,
    ShipmentPushRequest,
    ShipmentPushResult,
    TimeRange,
)

logger = logging.getLogger(__name__)

PushOutcome = Union[ShipmentPushResult, Exception]


class MockMarketplaceAdapter(MarketplaceAdapter):
    """
    Mock marketplace adapter.

    Usage:
        adapter = MockMarketplaceAdapter(page_size=2)
        adapter.add_order(RawOrder(marketplace_order_id="A-1", items=[...]))
        adapter.fail_next_fetch(NetworkError("connection reset"))

        # Fail after the first page has been yielded
        adapter.fail_after_pages(1, ServerError("502 from upstream"))
    """

    def __init__(self, marketplace_code: str = "MOCK", page_size: int = 50):
        if page_size < 1:
            raise ValueError("page_size must be >= 1")
        self.marketplace_code = marketplace_code
        self.page_size = page_size
        self.orders: List[RawOrder] = []
        self.settlements: Dict[Tuple[str, date, date], MarketplaceSettlementData] = {}
        self.valid_credentials = True

        self._fetch_failures: Deque[Exception] = deque()
        self._page_failure: Optional[Tuple[int, Exception]] = None
        self._push_outcomes: Deque[PushOutcome] = deque()
        self._settlement_failures: Deque[Exception] = deque()

        self.fetch_calls = 0
        self.pushed: List[ShipmentPushRequest] = []
        self.settlement_calls = 0

    # Scripting

    def add_order(self, order: RawOrder) -> None:
        self.orders.append(order)

    def add_settlement(self, data: MarketplaceSettlementData) -> None:
        self.settlements[(data.cycle, data.period_start, data.period_end)] = data

    def fail_next_fetch(self, error: Exception) -> None:
        self._fetch_failures.append(error)

    def fail_after_pages(self, pages: int, error: Exception) -> None:
        self._page_failure = (pages, error)

    def queue_push_outcome(self, outcome: PushOutcome) -> None:
        self._push_outcomes.append(outcome)

    def fail_next_settlement(self, error: Exception) -> None:
        self._settlement_failures.append(error)

    # MarketplaceAdapter

    def fetch_orders(self, credentials: Credentials, time_range: TimeRange) -> Iterable[List[RawOrder]]:
        self.fetch_calls += 1
        if self._fetch_failures:
            error = self._fetch_failures.popleft()
            logger.info("MockMarketplaceAdapter: Simulating fetch failure", extra={"error": str(error)})
            raise error

        start, end = as_utc(time_range.start), as_utc(time_range.end)
        matching = [
            order for order in self.orders
            if order.ordered_at is None or start <= as_utc(order.ordered_at) < end
        ]
        pages = [matching[i:i + self.page_size] for i in range(0, len(matching), self.page_size)]
        return self._paginate(pages)

    def _paginate(self, pages: List[List[RawOrder]]) -> Iterable[List[RawOrder]]:
        page_failure, self._page_failure = self._page_failure, None
        for index, page in enumerate(pages):
            if page_failure is not None and index == page_failure[0]:
                raise page_failure[1]
            yield page
        if page_failure is not None and page_failure[0] >= len(pages):
            raise page_failure[1]

    def push_shipment(self, credentials: Credentials, request: ShipmentPushRequest) -> ShipmentPushResult:
        self.pushed.append(request)
        if self._push_outcomes:
            outcome = self._push_outcomes.popleft()
            if isinstance(outcome, Exception):
                logger.info("MockMarketplaceAdapter: Simulating push failure", extra={"error": str(outcome)})
                raise outcome
            return outcome
        return ShipmentPushResult.ok(raw_response=f"mock:{request.marketplace_order_id}:{request.tracking_no}")

    def fetch_settlement(
        self,
        credentials: Credentials,
        cycle: str,
        period: SettlementPeriod,
    ) -> MarketplaceSettlementData:
        self.settlement_calls += 1
        if self._settlement_failures:
            raise self._settlement_failures.popleft()
        key = (cycle, period.start, period.end)
        if key in self.settlements:
            return self.settlements[key]
        return MarketplaceSettlementData(
            settlement_id=None,
            cycle=cycle,
            period_start=period.start,
            period_end=period.end,
        )

    def test_connection(self, credentials: Credentials) -> bool:
        if not self.valid_credentials:
            raise AuthenticationError("Mock marketplace rejected credentials", status_code=401)
        return True


# Auto-register the mock adapter
from ..registry import AdapterRegistry
try:
    AdapterRegistry.register_marketplace("MOCK", MockMarketplaceAdapter)
    logger.debug("MockMarketplaceAdapter registered successfully")
except RuntimeError:
    # Already registered (e.g., in tests)
    pass
