"""Background workers (Celery tasks) for the reconciliation pipelines.

Tenant-scoped tasks:
1. Accept tenant_id as an explicit keyword argument (UUID string)
2. Validate it through BaseTask before processing
3. Build their components with task_container()
"""

from .base import BaseTask, result_payload, task_container, validate_tenant_id

__all__ = [
    "BaseTask",
    "result_payload",
    "task_container",
    "validate_tenant_id",
]
