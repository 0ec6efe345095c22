"""
Observability: Prometheus metrics and structured logging.
"""

from filepoll.observability.metrics import MetricsRegistry, get_metrics_registry
from filepoll.observability.structured_logging import (
    CorrelationIdFilter,
    StructuredFormatter,
    add_correlation_id,
    get_correlation_id,
)

__all__ = [
    "MetricsRegistry",
    "get_metrics_registry",
    "CorrelationIdFilter",
    "StructuredFormatter",
    "add_correlation_id",
    "get_correlation_id",
]
