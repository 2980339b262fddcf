#!/usr/bin/env python3
"""
Metrics Collector with Prometheus Integration

This module provides metrics collection for the data-access layer with:
- Operation counters and latency histograms (reads and queued writes)
- Cache hit/miss rates by resource kind
- Throttling and retry counters
- Queue depth and connection pool size gauges

Architectural Decision: prometheus-client for industry-standard metrics
- Compatible with Grafana dashboards
- Histogram buckets for latency percentiles
- One CollectorRegistry per collector, so several services (or tests) can
  live in the same process without duplicate-timeseries errors

In-process totals are kept next to the Prometheus series so the service
facade can report ``avg_latency_ms`` without scraping itself.

Author: System Architect
Date: 2026-10-19
"""

from collections import Counter as _Tally
from typing import Any

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

from tenant_sheets.core.logging import get_logger

logger = get_logger(__name__)

LATENCY_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)


class MetricsCollector:
    """
    Centralized metrics collector.

    STAGE-M: Metrics collection

    Usage:
        metrics = MetricsCollector()

        # Record an operation
        metrics.record_operation("get_rows", "success", 0.012)

        # Record a cache lookup
        metrics.record_cache_hit("rows")

        # Get Prometheus output
        output = metrics.render()
    """

    def __init__(
        self,
        app_name: str = "tenant-sheets",
        app_version: str = "1.0.0",
        environment: str = "development",
        registry: CollectorRegistry | None = None,
    ):
        """Initialize metrics collector."""
        self.registry = registry or CollectorRegistry()

        self._operations = Counter(
            "tenant_sheets_operations_total",
            "Total data-access operations",
            ["operation", "status"],
            registry=self.registry,
        )
        self._latency = Histogram(
            "tenant_sheets_operation_duration_seconds",
            "Operation latency in seconds",
            ["operation"],
            buckets=LATENCY_BUCKETS,
            registry=self.registry,
        )
        self._cache_hits = Counter(
            "tenant_sheets_cache_hits_total",
            "Total cache hits",
            ["kind"],
            registry=self.registry,
        )
        self._cache_misses = Counter(
            "tenant_sheets_cache_misses_total",
            "Total cache misses",
            ["kind"],
            registry=self.registry,
        )
        self._throttles = Counter(
            "tenant_sheets_throttled_total",
            "Total calls delayed or rejected by the rate limiter",
            ["source"],  # read, queue
            registry=self.registry,
        )
        self._retries = Counter(
            "tenant_sheets_retries_total",
            "Total batch retries",
            ["operation", "reason"],
            registry=self.registry,
        )
        self._errors = Counter(
            "tenant_sheets_errors_total",
            "Total errors by kind",
            ["kind", "stage"],
            registry=self.registry,
        )
        self._queue_depth = Gauge(
            "tenant_sheets_queue_depth",
            "Operations waiting in write queues",
            registry=self.registry,
        )
        self._pool_size = Gauge(
            "tenant_sheets_pool_handles",
            "Document handles held by the connection pool",
            registry=self.registry,
        )
        Info("tenant_sheets_app", "Application information", registry=self.registry).info(
            {"app_name": app_name, "version": app_version, "environment": environment}
        )

        self._operation_counts: _Tally = _Tally()
        self._latency_sum = 0.0
        self._latency_count = 0
        self._cache_hit_count = 0
        self._cache_miss_count = 0

        logger.info("Metrics collector initialized", stage="M.0")

    # =========================================================================
    # Operation Metrics
    # =========================================================================

    def record_operation(self, operation: str, status: str, duration_seconds: float | None = None) -> None:
        """Record one completed operation and, optionally, its latency."""
        self._operations.labels(operation=operation, status=status).inc()
        self._operation_counts[(operation, status)] += 1
        if duration_seconds is not None:
            self._latency.labels(operation=operation).observe(duration_seconds)
            self._latency_sum += duration_seconds
            self._latency_count += 1

    def record_retry(self, operation: str, reason: str) -> None:
        self._retries.labels(operation=operation, reason=reason).inc()

    def record_error(self, kind: str, stage: str) -> None:
        self._errors.labels(kind=kind, stage=stage).inc()

    # =========================================================================
    # Cache Metrics
    # =========================================================================

    def record_cache_hit(self, kind: str) -> None:
        self._cache_hits.labels(kind=kind).inc()
        self._cache_hit_count += 1

    def record_cache_miss(self, kind: str) -> None:
        self._cache_misses.labels(kind=kind).inc()
        self._cache_miss_count += 1

    # =========================================================================
    # Rate Limiting / Resource Gauges
    # =========================================================================

    def record_throttle(self, source: str) -> None:
        self._throttles.labels(source=source).inc()

    def set_queue_depth(self, depth: int) -> None:
        self._queue_depth.set(depth)

    def set_pool_size(self, size: int) -> None:
        self._pool_size.set(size)

    # =========================================================================
    # In-process totals
    # =========================================================================

    @property
    def operations_total(self) -> int:
        return sum(self._operation_counts.values())

    @property
    def avg_latency_ms(self) -> float:
        if not self._latency_count:
            return 0.0
        return self._latency_sum / self._latency_count * 1000

    def totals(self) -> dict[str, Any]:
        """Snapshot of the in-process counters."""
        by_status: dict[str, int] = {}
        for (_, status), count in self._operation_counts.items():
            by_status[status] = by_status.get(status, 0) + count
        return {
            "operations_total": self.operations_total,
            "operations_by_status": by_status,
            "cache_hits": self._cache_hit_count,
            "cache_misses": self._cache_miss_count,
            "avg_latency_ms": round(self.avg_latency_ms, 3),
        }

    # =========================================================================
    # Export
    # =========================================================================

    def render(self) -> bytes:
        """
        Get Prometheus metrics output.

        Returns:
            bytes: Prometheus text format metrics
        """
        return generate_latest(self.registry)

    def get_content_type(self) -> str:
        """Get Prometheus content type."""
        return CONTENT_TYPE_LATEST
