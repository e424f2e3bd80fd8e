"""
Adapter implementations

In-memory adapters used by tests and local development. Importing this
package registers them under the "MOCK" code.
"""

from .mock_erp import MockErpAdapter
from .mock_marketplace import MockMarketplaceAdapter

__all__ = ["MockErpAdapter", "MockMarketplaceAdapter"]
