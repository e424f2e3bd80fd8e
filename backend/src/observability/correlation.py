"""Correlation ID management for worker task logs.

Each Celery task sets a correlation id so that every log line of one pipeline
run (sync job, posting submission, shipment push, settlement cycle) can be
grouped.
"""

import uuid
from contextvars import ContextVar
from typing import Optional

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def generate_correlation_id() -> str:
    return str(uuid.uuid4())


def get_correlation_id() -> str:
    """Current correlation id, or "no-correlation-id" outside a task."""
    return correlation_id_var.get() or "no-correlation-id"


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set (or generate) the correlation id for the current context.

    Returns:
        str: The correlation id now in effect
    """
    correlation_id = correlation_id or generate_correlation_id()
    correlation_id_var.set(correlation_id)
    return correlation_id
