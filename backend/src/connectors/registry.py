"""
Adapter Registry - registration and resolution of marketplace and ERP adapters

Maps marketplace codes and ERP codes to adapter factories so the container
can resolve the adapter for a store or tenant without tight coupling.
"""

from typing import Callable, Dict, List, Union

from .ports import ErpAdapter, MarketplaceAdapter

MarketplaceFactory = Callable[[], MarketplaceAdapter]
ErpFactory = Callable[[], ErpAdapter]


def _check_code(code: str) -> None:
    if not code or not code.strip():
        raise ValueError("adapter code cannot be empty")


def _check_factory(factory, port) -> None:
    if isinstance(factory, type) and not issubclass(factory, port):
        raise ValueError(
            f"Implementation must inherit from {port.__name__}, got {factory.__name__}"
        )
    if not callable(factory):
        raise ValueError(f"Adapter factory for {port.__name__} must be callable")


class AdapterRegistry:
    """
    Registry for adapter implementations.

    Usage:
        # Register (typically at application startup)
        AdapterRegistry.register_marketplace("COUPANG", CoupangAdapter)
        AdapterRegistry.register_erp("ECOUNT", EcountAdapter)

        # Resolve at runtime
        adapter = AdapterRegistry.get_marketplace(store.marketplace_code)

    Thread-safety: Read operations are thread-safe after initial registration.
    Registration should happen only at startup in the main thread.
    """

    _marketplaces: Dict[str, MarketplaceFactory] = {}
    _erps: Dict[str, ErpFactory] = {}

    @classmethod
    def register_marketplace(cls, code: str, factory: Union[type, MarketplaceFactory]) -> None:
        """
        Register a marketplace adapter.

        Raises:
            ValueError: If code is empty or factory is not a MarketplaceAdapter
            RuntimeError: If code is already registered (prevents accidental override)
        """
        _check_code(code)
        _check_factory(factory, MarketplaceAdapter)
        if code in cls._marketplaces:
            raise RuntimeError(
                f"Marketplace adapter '{code}' is already registered. "
                f"Use unregister() first if you need to replace it."
            )
        cls._marketplaces[code] = factory

    @classmethod
    def register_erp(cls, code: str, factory: Union[type, ErpFactory]) -> None:
        """
        Register an ERP adapter.

        Raises:
            ValueError: If code is empty or factory is not an ErpAdapter
            RuntimeError: If code is already registered
        """
        _check_code(code)
        _check_factory(factory, ErpAdapter)
        if code in cls._erps:
            raise RuntimeError(
                f"ERP adapter '{code}' is already registered. "
                f"Use unregister() first if you need to replace it."
            )
        cls._erps[code] = factory

    @classmethod
    def get_marketplace(cls, code: str) -> MarketplaceAdapter:
        """
        Get a marketplace adapter instance.

        Raises:
            ValueError: If code is not registered
        """
        if code not in cls._marketplaces:
            available = ', '.join(sorted(cls._marketplaces)) or 'none'
            raise ValueError(
                f"Unknown marketplace adapter: '{code}'. Available adapters: {available}"
            )
        return cls._marketplaces[code]()

    @classmethod
    def get_erp(cls, code: str) -> ErpAdapter:
        """
        Get an ERP adapter instance.

        Raises:
            ValueError: If code is not registered
        """
        if code not in cls._erps:
            available = ', '.join(sorted(cls._erps)) or 'none'
            raise ValueError(
                f"Unknown ERP adapter: '{code}'. Available adapters: {available}"
            )
        return cls._erps[code]()

    @classmethod
    def list_available(cls) -> Dict[str, List[str]]:
        return {
            "marketplaces": sorted(cls._marketplaces.keys()),
            "erps": sorted(cls._erps.keys()),
        }

    @classmethod
    def is_registered(cls, code: str) -> bool:
        return code in cls._marketplaces or code in cls._erps

    @classmethod
    def unregister(cls, code: str) -> None:
        """
        Remove an adapter from the registry.

        Primarily used for testing.

        Raises:
            ValueError: If code is not registered
        """
        if code in cls._marketplaces:
            del cls._marketplaces[code]
        elif code in cls._erps:
            del cls._erps[code]
        else:
            raise ValueError(f"Adapter '{code}' is not registered")

    @classmethod
    def clear(cls) -> None:
        """
        Clear all registered adapters.

        WARNING: This should only be used in tests.
        """
        cls._marketplaces.clear()
        cls._erps.clear()
