"""ProductMappingResolver - marketplace product to ERP item resolution.

Resolution order for (tenant, store, marketplace, product id, sku):
1. Active MAPPED mapping scoped to the store
2. Active MAPPED mapping with no store (applies to every store)
3. Otherwise a suggestion is recorded in the store scope: SUGGESTED with the
   best trigram-scored ERP item, or UNMAPPED when no candidate clears the
   minimum score.

Only MAPPED satisfies posting. MANUAL mappings are never overwritten by
automatic ones, and at most one active mapping exists per key scope.
"""

import logging
import uuid
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from connectors.errors import to_pipeline_error
from connectors.ports import ErpAdapter
from domain.clock import Clock, utc_now
from domain.results import (
    EntityNotFoundError,
    MappingRequiredError,
    OperationResult,
    PipelineException,
)
from models.erp_item import ErpItem
from models.product_mapping import MappingStatus, MappingType, ProductMapping

from .scorer import MappingScorer

logger = logging.getLogger(__name__)


class ManualMappingProtectedError(PipelineException):
    """Raised when an automatic mapping would replace a MANUAL one."""

    code = "MANUAL_MAPPING_PROTECTED"


class NotSuggestedError(PipelineException):
    """Raised when confirming a mapping that is not a suggestion."""

    code = "NOT_SUGGESTED"


def _confidence(value: float) -> Decimal:
    return Decimal(str(round(value, 4)))


class ProductMappingResolver:
    def __init__(self, session: Session, scorer: MappingScorer, clock: Clock = utc_now):
        self.session = session
        self.scorer = scorer
        self.clock = clock

    # Queries

    def _scope_query(
        self,
        tenant_id: uuid.UUID,
        store_id: Optional[uuid.UUID],
        marketplace_code: str,
        product_id: str,
        sku: Optional[str],
    ):
        stmt = select(ProductMapping).where(
            ProductMapping.tenant_id == tenant_id,
            ProductMapping.marketplace_code == marketplace_code,
            ProductMapping.marketplace_product_id == product_id,
            ProductMapping.marketplace_sku == (sku or ""),
            ProductMapping.is_active.is_(True),
        )
        if store_id is None:
            return stmt.where(ProductMapping.store_id.is_(None))
        return stmt.where(ProductMapping.store_id == store_id)

    def _active_in_scope(self, tenant_id, store_id, marketplace_code, product_id, sku) -> List[ProductMapping]:
        stmt = self._scope_query(tenant_id, store_id, marketplace_code, product_id, sku)
        return list(self.session.execute(stmt.order_by(ProductMapping.created_at)).scalars().all())

    def find_mapped(
        self,
        tenant_id: uuid.UUID,
        store_id: Optional[uuid.UUID],
        marketplace_code: str,
        product_id: str,
        sku: Optional[str],
    ) -> Optional[ProductMapping]:
        """Active MAPPED mapping, store scope first, then store-independent."""
        scopes = [store_id, None] if store_id is not None else [None]
        for scope in scopes:
            stmt = self._scope_query(tenant_id, scope, marketplace_code, product_id, sku).where(
                ProductMapping.mapping_status == MappingStatus.MAPPED.value
            )
            mapping = self.session.execute(stmt).scalars().first()
            if mapping is not None:
                return mapping
        return None

    def _get(self, tenant_id: uuid.UUID, mapping_id: uuid.UUID) -> ProductMapping:
        mapping = self.session.execute(
            select(ProductMapping).where(
                ProductMapping.tenant_id == tenant_id,
                ProductMapping.id == mapping_id,
            )
        ).scalar_one_or_none()
        if mapping is None:
            raise EntityNotFoundError(f"Product mapping {mapping_id} not found")
        return mapping

    # Resolution

    def resolve(
        self,
        tenant_id: uuid.UUID,
        store_id: Optional[uuid.UUID],
        marketplace_code: str,
        product_id: str,
        sku: Optional[str],
        product_name: Optional[str] = None,
        option_name: Optional[str] = None,
    ) -> ProductMapping:
        """Resolve a product; returns the MAPPED mapping or the recorded suggestion.

        Callers check `mapping.is_mapped`; a SUGGESTED or UNMAPPED result never
        satisfies posting.
        """
        mapped = self.find_mapped(tenant_id, store_id, marketplace_code, product_id, sku)
        if mapped is not None:
            return mapped
        return self._suggest(tenant_id, store_id, marketplace_code, product_id, sku, product_name, option_name)

    def _suggest(self, tenant_id, store_id, marketplace_code, product_id, sku, product_name, option_name) -> ProductMapping:
        now = self.clock()
        existing = self._active_in_scope(tenant_id, store_id, marketplace_code, product_id, sku)
        mapping = existing[0] if existing else None

        if mapping is not None and mapping.is_manual:
            return mapping

        candidates = self.session.execute(
            select(ErpItem).where(ErpItem.tenant_id == tenant_id, ErpItem.is_active.is_(True))
        ).scalars().all()
        name = product_name or (mapping.product_name if mapping else None)
        option = option_name or (mapping.option_name if mapping else None)
        best = self.scorer.best_candidate(name, option, sku, candidates)

        if mapping is None:
            mapping = ProductMapping.create(
                tenant_id=tenant_id,
                store_id=store_id,
                marketplace_code=marketplace_code,
                marketplace_product_id=product_id,
                marketplace_sku=sku,
                product_name=product_name,
                option_name=option_name,
                now=now,
            )
            self.session.add(mapping)
            logger.info(
                "Registered unmapped product",
                extra={
                    "tenant_id": str(tenant_id),
                    "store_id": str(store_id) if store_id else None,
                    "mapping_key": mapping.key,
                },
            )
        else:
            mapping.product_name = product_name or mapping.product_name
            mapping.option_name = option_name or mapping.option_name
            mapping.touch(now)

        if best is None:
            mapping.mapping_status = MappingStatus.UNMAPPED.value
            mapping.erp_code = None
            mapping.erp_item_code = None
            mapping.erp_item_name = None
            mapping.warehouse_code = None
            mapping.confidence = Decimal("0")
        else:
            item, score = best
            mapping.mapping_status = MappingStatus.SUGGESTED.value
            mapping.mapping_type = MappingType.AUTO.value
            mapping.erp_code = item.erp_code
            mapping.erp_item_code = item.item_code
            mapping.erp_item_name = item.item_name
            mapping.warehouse_code = item.warehouse_code
            mapping.confidence = _confidence(score)

        for duplicate in existing[1:]:
            duplicate.is_active = False
            duplicate.touch(now)

        self.session.flush()
        return mapping

    def register_product(
        self,
        tenant_id: uuid.UUID,
        store_id: Optional[uuid.UUID],
        marketplace_code: str,
        product_id: str,
        sku: Optional[str],
        product_name: Optional[str] = None,
        option_name: Optional[str] = None,
    ) -> ProductMapping:
        """First-seen registration used by order sync.

        Only scores when the product has no active mapping in the store scope
        and no MAPPED mapping in either scope, so repeat syncs stay cheap.
        """
        mapped = self.find_mapped(tenant_id, store_id, marketplace_code, product_id, sku)
        if mapped is not None:
            return mapped
        existing = self._active_in_scope(tenant_id, store_id, marketplace_code, product_id, sku)
        if existing:
            return existing[0]
        return self._suggest(tenant_id, store_id, marketplace_code, product_id, sku, product_name, option_name)

    def resolve_items(
        self,
        tenant_id: uuid.UUID,
        store_id: Optional[uuid.UUID],
        marketplace_code: str,
        items: Iterable[Any],
    ) -> Dict[str, ProductMapping]:
        """productId:sku -> MAPPED mapping, for every order item that has one."""
        resolved: Dict[str, ProductMapping] = {}
        for item in items:
            key = item.mapping_key
            if key in resolved:
                continue
            mapping = self.find_mapped(
                tenant_id, store_id, marketplace_code, item.marketplace_product_id, item.marketplace_sku
            )
            if mapping is not None:
                resolved[key] = mapping
        return resolved

    def require_mapped(
        self,
        tenant_id: uuid.UUID,
        store_id: Optional[uuid.UUID],
        marketplace_code: str,
        items: Iterable[Any],
    ) -> Dict[str, ProductMapping]:
        """Like resolve_items(), but every item must be MAPPED.

        Raises:
            MappingRequiredError: Carrying the productId:sku keys that are not MAPPED
        """
        items = list(items)
        resolved = self.resolve_items(tenant_id, store_id, marketplace_code, items)
        unmapped = sorted({item.mapping_key for item in items if item.mapping_key not in resolved})
        if unmapped:
            raise MappingRequiredError(unmapped)
        return resolved

    # Operator actions

    def map_manually(
        self,
        tenant_id: uuid.UUID,
        store_id: Optional[uuid.UUID],
        marketplace_code: str,
        product_id: str,
        sku: Optional[str],
        erp_item_code: str,
        erp_item_name: Optional[str] = None,
        warehouse_code: Optional[str] = None,
        erp_code: Optional[str] = None,
        mapped_by: Optional[str] = None,
    ) -> ProductMapping:
        """Create or replace the scope's mapping with a MANUAL one.

        Any other active mapping in the same scope is deactivated.
        """
        now = self.clock()
        existing = self._active_in_scope(tenant_id, store_id, marketplace_code, product_id, sku)
        mapping = existing[0] if existing else None
        if mapping is None:
            mapping = ProductMapping.create(
                tenant_id=tenant_id,
                store_id=store_id,
                marketplace_code=marketplace_code,
                marketplace_product_id=product_id,
                marketplace_sku=sku,
                now=now,
            )
            self.session.add(mapping)

        item = self._erp_item(tenant_id, erp_item_code)
        mapping.erp_code = erp_code or (item.erp_code if item else None)
        mapping.erp_item_code = erp_item_code
        mapping.erp_item_name = erp_item_name or (item.item_name if item else None)
        mapping.warehouse_code = warehouse_code or (item.warehouse_code if item else None)
        mapping.mapping_status = MappingStatus.MAPPED.value
        mapping.mapping_type = MappingType.MANUAL.value
        mapping.confidence = Decimal("1")
        mapping.mapped_at = now
        mapping.mapped_by = mapped_by
        mapping.is_active = True
        mapping.touch(now)

        for other in existing[1:]:
            other.is_active = False
            other.touch(now)

        self.session.flush()
        logger.info(
            "Product mapped manually",
            extra={
                "tenant_id": str(tenant_id),
                "mapping_id": str(mapping.id),
                "mapping_key": mapping.key,
                "erp_item_code": erp_item_code,
            },
        )
        return mapping

    def map_automatically(
        self,
        tenant_id: uuid.UUID,
        store_id: Optional[uuid.UUID],
        marketplace_code: str,
        product_id: str,
        sku: Optional[str],
        erp_item_code: str,
        confidence: float,
        erp_item_name: Optional[str] = None,
        warehouse_code: Optional[str] = None,
    ) -> OperationResult[ProductMapping]:
        """Record an AUTO MAPPED mapping unless a MANUAL one owns the scope."""
        now = self.clock()
        existing = self._active_in_scope(tenant_id, store_id, marketplace_code, product_id, sku)
        manual = next((m for m in existing if m.is_manual), None)
        if manual is not None:
            logger.info(
                "Automatic mapping skipped, manual mapping exists",
                extra={"tenant_id": str(tenant_id), "mapping_id": str(manual.id)},
            )
            error = ManualMappingProtectedError(
                f"Manual mapping {manual.id} owns {manual.key}",
                detail={"mapping_id": str(manual.id)},
            )
            return OperationResult.fail(error.to_error(), value=manual)

        mapping = existing[0] if existing else None
        if mapping is None:
            mapping = ProductMapping.create(
                tenant_id=tenant_id,
                store_id=store_id,
                marketplace_code=marketplace_code,
                marketplace_product_id=product_id,
                marketplace_sku=sku,
                now=now,
            )
            self.session.add(mapping)

        item = self._erp_item(tenant_id, erp_item_code)
        mapping.erp_code = item.erp_code if item else mapping.erp_code
        mapping.erp_item_code = erp_item_code
        mapping.erp_item_name = erp_item_name or (item.item_name if item else None)
        mapping.warehouse_code = warehouse_code or (item.warehouse_code if item else None)
        mapping.mapping_status = MappingStatus.MAPPED.value
        mapping.mapping_type = MappingType.AUTO.value
        mapping.confidence = _confidence(confidence)
        mapping.mapped_at = now
        mapping.touch(now)

        for other in existing[1:]:
            other.is_active = False
            other.touch(now)

        self.session.flush()
        return OperationResult.ok(mapping)

    def confirm_suggestion(
        self,
        tenant_id: uuid.UUID,
        mapping_id: uuid.UUID,
        mapped_by: Optional[str] = None,
    ) -> OperationResult[ProductMapping]:
        """Promote a SUGGESTED mapping to MAPPED (operator confirmed, so MANUAL).

        Raises:
            EntityNotFoundError: If the mapping does not exist for the tenant
        """
        mapping = self._get(tenant_id, mapping_id)
        if not mapping.is_active or mapping.mapping_status != MappingStatus.SUGGESTED.value:
            error = NotSuggestedError(
                f"Mapping {mapping_id} is {mapping.mapping_status}, not an active suggestion"
            )
            return OperationResult.fail(error.to_error(), value=mapping)

        now = self.clock()
        mapping.mapping_status = MappingStatus.MAPPED.value
        mapping.mapping_type = MappingType.MANUAL.value
        mapping.mapped_at = now
        mapping.mapped_by = mapped_by
        mapping.touch(now)
        self.session.flush()
        return OperationResult.ok(mapping)

    def deactivate(self, tenant_id: uuid.UUID, mapping_id: uuid.UUID) -> ProductMapping:
        """Deactivate a mapping.

        Raises:
            EntityNotFoundError: If the mapping does not exist for the tenant
        """
        mapping = self._get(tenant_id, mapping_id)
        mapping.is_active = False
        mapping.touch(self.clock())
        self.session.flush()
        return mapping

    def list_unmapped(
        self,
        tenant_id: uuid.UUID,
        store_id: Optional[uuid.UUID] = None,
        limit: int = 100,
    ) -> List[ProductMapping]:
        """Active UNMAPPED and SUGGESTED mappings, oldest first."""
        stmt = select(ProductMapping).where(
            ProductMapping.tenant_id == tenant_id,
            ProductMapping.is_active.is_(True),
            ProductMapping.mapping_status.in_(
                [MappingStatus.UNMAPPED.value, MappingStatus.SUGGESTED.value]
            ),
        )
        if store_id is not None:
            stmt = stmt.where(or_(ProductMapping.store_id == store_id, ProductMapping.store_id.is_(None)))
        stmt = stmt.order_by(ProductMapping.created_at).limit(limit)
        return list(self.session.execute(stmt).scalars().all())

    # ERP item cache

    def _erp_item(self, tenant_id: uuid.UUID, item_code: str) -> Optional[ErpItem]:
        return self.session.execute(
            select(ErpItem).where(ErpItem.tenant_id == tenant_id, ErpItem.item_code == item_code)
        ).scalars().first()

    def sync_erp_items(self, tenant_id: uuid.UUID, erp_adapter: ErpAdapter, erp_code: str) -> OperationResult[int]:
        """Refresh the ErpItem cache from the ERP item master.

        Items missing from the ERP response are deactivated.
        """
        try:
            records = erp_adapter.get_items(str(tenant_id))
        except Exception as e:
            error = to_pipeline_error(e)
            logger.warning(
                "ERP item sync failed",
                extra={"tenant_id": str(tenant_id), "erp_code": erp_code, "error_code": error.code},
            )
            return OperationResult.fail(error)

        now = self.clock()
        cached = {
            item.item_code: item
            for item in self.session.execute(
                select(ErpItem).where(ErpItem.tenant_id == tenant_id, ErpItem.erp_code == erp_code)
            ).scalars().all()
        }
        seen = set()
        for record in records:
            seen.add(record.item_code)
            item = cached.get(record.item_code)
            if item is None:
                self.session.add(ErpItem.create(
                    tenant_id=tenant_id,
                    erp_code=erp_code,
                    item_code=record.item_code,
                    item_name=record.item_name,
                    item_spec=record.item_spec,
                    warehouse_code=record.warehouse_code,
                    now=now,
                ))
            else:
                item.item_name = record.item_name
                item.item_spec = record.item_spec
                item.warehouse_code = record.warehouse_code
                item.is_active = True
                item.last_synced_at = now
                item.touch(now)

        for code, item in cached.items():
            if code not in seen and item.is_active:
                item.is_active = False
                item.touch(now)

        self.session.flush()
        logger.info(
            "ERP items synced",
            extra={"tenant_id": str(tenant_id), "erp_code": erp_code, "item_count": len(seen)},
        )
        return OperationResult.ok(len(seen))
