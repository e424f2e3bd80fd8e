"""Observability module: structured logging, correlation ids and metrics."""

from .correlation import (
    correlation_id_var,
    generate_correlation_id,
    get_correlation_id,
    set_correlation_id,
)
from .logging_config import CorrelationIDFilter, JSONFormatter, configure_logging

__all__ = [
    # Logging
    "configure_logging",
    "CorrelationIDFilter",
    "JSONFormatter",
    # Correlation ID
    "correlation_id_var",
    "generate_correlation_id",
    "get_correlation_id",
    "set_correlation_id",
]
