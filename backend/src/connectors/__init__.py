"""
Connectors module - marketplace and ERP adapter framework

The pipeline talks to external systems only through the ports defined here:
- MarketplaceAdapter: order feed, shipment push, settlement feed
- ErpAdapter: sales document posting, item master, customers
- AdapterRegistry: resolution of adapters by marketplace / ERP code
- Typed ConnectorError hierarchy with retry classification
"""

from .errors import (
    AuthenticationError,
    ConnectorError,
    ConnectorTimeoutError,
    ForbiddenError,
    MalformedPayloadError,
    NetworkError,
    RateLimitError,
    ServerError,
    classify_error,
)
from .ports import (
    ErpAdapter,
    MarketplaceAdapter,
    MarketplaceSettlementData,
    MarketplaceSettlementLine,
    PostingResult,
    RawOrder,
    RawOrderItem,
    SettlementPeriod,
    ShipmentPushRequest,
    ShipmentPushResult,
    TimeRange,
)
from .registry import AdapterRegistry

__all__ = [
    "AdapterRegistry",
    "AuthenticationError",
    "ConnectorError",
    "ConnectorTimeoutError",
    "ErpAdapter",
    "ForbiddenError",
    "MalformedPayloadError",
    "MarketplaceAdapter",
    "MarketplaceSettlementData",
    "MarketplaceSettlementLine",
    "NetworkError",
    "PostingResult",
    "RateLimitError",
    "RawOrder",
    "RawOrderItem",
    "ServerError",
    "SettlementPeriod",
    "ShipmentPushRequest",
    "ShipmentPushResult",
    "TimeRange",
    "classify_error",
]
