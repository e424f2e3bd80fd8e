"""SQLAlchemy models for the order reconciliation pipeline"""

from .base import Base, PortableJSONB
from .store import Store
from .sync_job import SyncJob
from .order import (
    Order,
    OrderItem,
    OrderItemStatus,
    OrderPostingStatus,
    OrderSettlementStatus,
    OrderStatus,
)
from .product_mapping import MappingStatus, MappingType, ProductMapping
from .erp_item import ErpItem
from .settlement import SettlementBatch, SettlementLine
from .posting import Posting
from .shipment import Shipment
from .credential import Credential, CredentialType

__all__ = [
    "Base",
    "PortableJSONB",
    "Store",
    "SyncJob",
    "Order",
    "OrderItem",
    "OrderItemStatus",
    "OrderPostingStatus",
    "OrderSettlementStatus",
    "OrderStatus",
    "ProductMapping",
    "MappingStatus",
    "MappingType",
    "ErpItem",
    "SettlementBatch",
    "SettlementLine",
    "Posting",
    "Shipment",
    "Credential",
    "CredentialType",
]
