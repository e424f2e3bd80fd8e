"""Component wiring.

Every pipeline component receives its collaborators through its constructor.
build_container assembles them once per session (one per worker task) from
Settings and the adapter registry; tests pass mock adapters explicitly.
"""

from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.orm import Session

from config import Settings, get_settings
from connectors.ports import ErpAdapter, MarketplaceAdapter
from connectors.registry import AdapterRegistry
from credentials.cipher import CredentialCipher
from credentials.vault import CredentialVault
from domain.clock import Clock, utc_now
from mapping.resolver import ProductMappingResolver
from mapping.scorer import MappingScorer
from postings.builder import ItemCodes, PostingBuilder
from postings.gateway import ErpPostingGateway
from retry.scheduler import DueHandler, RetryKind, RetryScheduler, build_policies
from settlements.reconciler import SettlementReconciler
from shipments.pipeline import ShipmentPipeline
from sync.orchestrator import SyncOrchestrator

MarketplaceAdapterFactory = Callable[[str], MarketplaceAdapter]


@dataclass
class Container:
    session: Session
    settings: Settings
    scheduler: RetryScheduler
    vault: CredentialVault
    resolver: ProductMappingResolver
    builder: PostingBuilder
    gateway: ErpPostingGateway
    sync: SyncOrchestrator
    shipments: ShipmentPipeline
    settlements: SettlementReconciler


def build_posting_builder(settings: Settings) -> PostingBuilder:
    return PostingBuilder(
        vat_rate=settings.VAT_RATE,
        erp_code=settings.DEFAULT_ERP_CODE,
        item_codes=ItemCodes(
            shipping_fee=settings.SHIPPING_FEE_ITEM_CODE,
            commission=settings.COMMISSION_ITEM_CODE,
            receipt=settings.RECEIPT_ITEM_CODE,
            shipping_adjustment=settings.SHIPPING_ADJUSTMENT_ITEM_CODE,
        ),
    )


def _guarded(session: Session, handler: DueHandler) -> DueHandler:
    """Roll the shared session back when a retry handler fails."""
    def run(now):
        try:
            return handler(now)
        except Exception:
            session.rollback()
            raise
    return run


def build_container(
    session: Session,
    settings: Optional[Settings] = None,
    marketplace_factory: Optional[MarketplaceAdapterFactory] = None,
    erp_adapter: Optional[ErpAdapter] = None,
    clock: Clock = utc_now,
    cipher: Optional[CredentialCipher] = None,
) -> Container:
    """Assemble the pipeline components around one session.

    Args:
        session: Database session shared by all components
        settings: Settings (defaults to get_settings())
        marketplace_factory: marketplace_code -> adapter (defaults to AdapterRegistry)
        erp_adapter: ERP adapter (defaults to the registered DEFAULT_ERP_CODE)
        clock: Time source
        cipher: Credential cipher (defaults to ENCRYPTION_KEY)

    Raises:
        ValueError: If the default ERP adapter is not registered
    """
    settings = settings or get_settings()
    marketplace_factory = marketplace_factory or AdapterRegistry.get_marketplace
    erp_adapter = erp_adapter or AdapterRegistry.get_erp(settings.DEFAULT_ERP_CODE)

    scheduler = RetryScheduler(build_policies(settings), clock=clock)
    vault = CredentialVault(session, cipher or CredentialCipher(settings.ENCRYPTION_KEY), clock=clock)
    resolver = ProductMappingResolver(
        session,
        MappingScorer(min_score=settings.MAPPING_SUGGESTION_MIN_SCORE),
        clock=clock,
    )
    builder = build_posting_builder(settings)
    gateway = ErpPostingGateway(
        session,
        builder,
        resolver,
        erp_adapter,
        scheduler,
        clock=clock,
        include_order_commission=settings.POST_ORDER_COMMISSION,
        request_timeout_seconds=settings.POSTING_REQUEST_TIMEOUT_SECONDS,
    )
    sync = SyncOrchestrator(
        session,
        marketplace_factory,
        vault,
        resolver,
        scheduler,
        posting_gateway=gateway,
        clock=clock,
        run_timeout_seconds=settings.SYNC_RUN_TIMEOUT_SECONDS,
    )
    shipments = ShipmentPipeline(session, marketplace_factory, vault, scheduler, clock=clock)
    settlements = SettlementReconciler(
        session,
        marketplace_factory,
        vault,
        builder,
        gateway,
        scheduler,
        clock=clock,
        tolerance=settings.SETTLEMENT_TOLERANCE,
    )

    scheduler.register(RetryKind.SYNC, _guarded(session, sync.retry_due))
    scheduler.register(RetryKind.POSTING, _guarded(session, gateway.retry_due))
    scheduler.register(RetryKind.SHIPMENT, _guarded(session, shipments.retry_failed_pushes))
    scheduler.register(RetryKind.SETTLEMENT, _guarded(session, settlements.retry_failed))

    return Container(
        session=session,
        settings=settings,
        scheduler=scheduler,
        vault=vault,
        resolver=resolver,
        builder=builder,
        gateway=gateway,
        sync=sync,
        shipments=shipments,
        settlements=settlements,
    )
