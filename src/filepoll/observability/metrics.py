"""
Prometheus metrics for filepoll.

Counters and histograms for discovery cycles, recorded by the orchestrator
and the scheduler. Aggregate reporting over history (success rate, files per
day) is computed on read by ``filepoll.state.history``; these metrics are
the live scrape view.

Usage:
    from filepoll.observability.metrics import get_metrics_registry

    registry = get_metrics_registry()
    registry.enable()
    registry.start_http_server(port=9108)
"""

import threading
from typing import Any

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    start_http_server,
)

from filepoll.utils.logging import get_logger

logger = get_logger("filepoll.observability.metrics")


class MetricsRegistry:
    """
    Central registry for all filepoll metrics.

    Each registry owns its own ``CollectorRegistry`` so tests and embedded
    services never collide on metric names. A small internal tally mirrors
    the counters for ``get_metrics()``.
    """

    def __init__(self) -> None:
        self._enabled = False
        self._lock = threading.Lock()
        self._internal: dict[str, dict[str, float]] = {
            "executions_total": {},
            "files_discovered_total": {},
            "files_processed_total": {},
            "failures_total": {},
            "notifications_total": {},
        }
        self._registry = CollectorRegistry()
        self._setup_prometheus_metrics()

    def _setup_prometheus_metrics(self) -> None:
        self._executions_counter = Counter(
            "filepoll_executions_total",
            "Discovery cycles finished",
            ["protocol", "status"],
            registry=self._registry,
        )
        self._files_discovered_counter = Counter(
            "filepoll_files_discovered_total",
            "Files returned by protocol listings",
            ["protocol"],
            registry=self._registry,
        )
        self._files_processed_counter = Counter(
            "filepoll_files_processed_total",
            "Newly discovered files marked in the ledger",
            ["protocol"],
            registry=self._registry,
        )
        self._failures_counter = Counter(
            "filepoll_execution_failures_total",
            "Failed discovery cycles by error category",
            ["protocol", "category"],
            registry=self._registry,
        )
        self._notifications_counter = Counter(
            "filepoll_notifications_total",
            "Notification deliveries",
            ["mode", "outcome"],
            registry=self._registry,
        )
        self._duration_histogram = Histogram(
            "filepoll_execution_duration_seconds",
            "Discovery cycle duration in seconds",
            ["protocol"],
            registry=self._registry,
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
        )
        self._in_flight_gauge = Gauge(
            "filepoll_in_flight_executions",
            "Executions queued or running",
            registry=self._registry,
        )

    def enable(self) -> None:
        """Enable metrics collection."""
        self._enabled = True
        logger.info("Metrics collection enabled")

    def disable(self) -> None:
        """Disable metrics collection."""
        self._enabled = False

    @property
    def enabled(self) -> bool:
        return self._enabled

    def _bump(self, section: str, key: str, amount: float = 1) -> None:
        with self._lock:
            bucket = self._internal[section]
            bucket[key] = bucket.get(key, 0) + amount

    def record_execution(
        self,
        *,
        protocol: str,
        status: str,
        duration_s: float,
        files_found: int,
        files_processed: int,
        error_category: str | None = None,
    ) -> None:
        """Record the outcome of one finished execution."""
        if not self._enabled:
            return

        self._executions_counter.labels(protocol=protocol, status=status).inc()
        self._duration_histogram.labels(protocol=protocol).observe(duration_s)
        self._files_discovered_counter.labels(protocol=protocol).inc(files_found)
        self._files_processed_counter.labels(protocol=protocol).inc(files_processed)
        self._bump("executions_total", f"{protocol}_{status}")
        self._bump("files_discovered_total", protocol, files_found)
        self._bump("files_processed_total", protocol, files_processed)

        if error_category:
            self._failures_counter.labels(protocol=protocol, category=error_category).inc()
            self._bump("failures_total", f"{protocol}_{error_category}")

    def record_notification(self, *, mode: str, outcome: str) -> None:
        """Record one notification delivery (outcome: delivered, failed)."""
        if not self._enabled:
            return
        self._notifications_counter.labels(mode=mode, outcome=outcome).inc()
        self._bump("notifications_total", f"{mode}_{outcome}")

    def set_in_flight(self, count: int) -> None:
        if not self._enabled:
            return
        self._in_flight_gauge.set(count)

    def get_metrics(self) -> dict[str, Any]:
        """
        Get all internal metrics.

        Returns:
            Dictionary with all tracked metrics
        """
        with self._lock:
            return {name: dict(values) for name, values in self._internal.items()}

    def start_http_server(self, port: int = 9108, addr: str = "") -> None:
        """
        Start HTTP server for Prometheus scraping.

        Args:
            port: Port to listen on
            addr: Address to bind to (empty string for all interfaces)
        """
        start_http_server(port=port, addr=addr, registry=self._registry)
        logger.info(f"Prometheus metrics server started on port {port}")

    def generate_prometheus_metrics(self) -> bytes:
        """Generate Prometheus metrics in text format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get Prometheus content type for HTTP response."""
        return CONTENT_TYPE_LATEST


_metrics_registry: MetricsRegistry | None = None
_registry_lock = threading.Lock()


def get_metrics_registry() -> MetricsRegistry:
    """Get the process-wide metrics registry."""
    global _metrics_registry
    if _metrics_registry is None:
        with _registry_lock:
            if _metrics_registry is None:
                _metrics_registry = MetricsRegistry()
    return _metrics_registry
