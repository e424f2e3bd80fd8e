"""
Mock ERP Adapter - In-memory ERP for testing and development

Documents are stored by idempotency key; posting the same key twice returns
the first document number, like an ERP that honours idempotency keys.
"""

import logging
from collections import deque
from typing import Deque, Dict, List

from postings.documents import PostingDocument

from ..ports import ErpAdapter, ErpCustomerRecord, ErpItemRecord, PostingResult

logger = logging.getLogger(__name__)


class MockErpAdapter(ErpAdapter):
    """
    Mock ERP adapter.

    Attributes:
        documents: idempotency_key -> posted document
        post_calls: Number of post_sales_document invocations (including failures)
    """

    def __init__(self, erp_code: str = "MOCK"):
        self.erp_code = erp_code
        self.items: List[ErpItemRecord] = []
        self.customers: List[ErpCustomerRecord] = []
        self.documents: Dict[str, PostingDocument] = {}
        self.document_numbers: Dict[str, str] = {}
        self.post_calls = 0
        self.reachable = True
        self._post_failures: Deque[Exception] = deque()
        self._sequence = 0

    def add_item(self, item_code: str, item_name: str, warehouse_code: str = None, item_spec: str = None) -> None:
        self.items.append(ErpItemRecord(
            item_code=item_code,
            item_name=item_name,
            item_spec=item_spec,
            warehouse_code=warehouse_code,
        ))

    def fail_next_post(self, error: Exception) -> None:
        self._post_failures.append(error)

    def post_sales_document(self, tenant_id: str, document: PostingDocument) -> PostingResult:
        self.post_calls += 1
        if self._post_failures:
            error = self._post_failures.popleft()
            logger.info("MockErpAdapter: Simulating post failure", extra={"error": str(error)})
            raise error

        key = document.idempotency_key
        if key not in self.document_numbers:
            self._sequence += 1
            self.document_numbers[key] = f"{self.erp_code}-{self._sequence:06d}"
            self.documents[key] = document

        logger.info(
            "MockErpAdapter: Posted document",
            extra={
                "tenant_id": tenant_id,
                "posting_type": document.posting_type.value,
                "erp_document_no": self.document_numbers[key],
            },
        )
        return PostingResult(erp_document_no=self.document_numbers[key], raw_response=document.to_json())

    def get_items(self, tenant_id: str) -> List[ErpItemRecord]:
        return list(self.items)

    def get_customers(self, tenant_id: str) -> List[ErpCustomerRecord]:
        return list(self.customers)

    def test_connection(self, tenant_id: str) -> bool:
        return self.reachable


# Auto-register the mock adapter
from ..registry import AdapterRegistry
try:
    AdapterRegistry.register_erp("MOCK", MockErpAdapter)
    logger.debug("MockErpAdapter registered successfully")
except RuntimeError:
    # Already registered (e.g., in tests)
    pass
