# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Prometheus metrics for the airc server.

Provides /metrics endpoint with Prometheus text format.
Implements simple text format without prometheus_client dependency.

Metrics exported:
- airc_http_request_duration_seconds: Request latency histogram
- airc_http_requests_total: Request count by endpoint/status
- airc_active_connections: Currently active connections
- airc_auth_decisions_total: Authentication outcomes by operation and result
- airc_nonces_pruned_total: Nonce records removed by background sweeps
"""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response

from ..identity.models import HANDLE_PATTERN

logger = logging.getLogger(__name__)

# Histogram bucket boundaries (in seconds)
LATENCY_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)

# Path segments that follow these are identity handles
_HANDLE_PARENTS = {"identity"}


@dataclass
class HistogramData:
    """Histogram metric data."""

    buckets: dict[float, int] = field(default_factory=lambda: defaultdict(int))
    sum: float = 0.0
    count: int = 0

    def observe(self, value: float) -> None:
        """Record an observation in the smallest bucket that holds it.

        Buckets store per-bucket counts; ``format_prometheus`` accumulates them.
        """
        self.sum += value
        self.count += 1
        for bucket in LATENCY_BUCKETS:
            if value <= bucket:
                self.buckets[bucket] += 1
                break


class MetricsCollector:
    """Thread-safe metrics collector.

    Collects request and authentication metrics and provides Prometheus
    text format output.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()

        # Request metrics: {(method, path, status): count}
        self._request_counts: dict[tuple[str, str, int], int] = defaultdict(int)

        # Latency histogram: {(method, path): HistogramData}
        self._latency_histograms: dict[tuple[str, str], HistogramData] = defaultdict(HistogramData)

        # Active connections gauge
        self._active_connections: int = 0

        # Auth decisions: {(operation, outcome): count}
        self._auth_decisions: dict[tuple[str, str], int] = defaultdict(int)

        self._nonces_pruned: int = 0

    def record_request(self, method: str, path: str, status_code: int, duration_seconds: float) -> None:
        """Record a completed request.

        Args:
            method: HTTP method (GET, POST, etc.)
            path: Request path (normalized)
            status_code: HTTP response status code
            duration_seconds: Request duration in seconds
        """
        normalized_path = self._normalize_path(path)

        with self._lock:
            self._request_counts[(method, normalized_path, status_code)] += 1
            self._latency_histograms[(method, normalized_path)].observe(duration_seconds)

    def record_auth_decision(self, operation: str, outcome: str) -> None:
        """Count an authentication outcome (``accepted`` or a rejection code)."""
        with self._lock:
            self._auth_decisions[(operation, outcome)] += 1

    def record_pruned(self, count: int) -> None:
        with self._lock:
            self._nonces_pruned += count

    def _normalize_path(self, path: str) -> str:
        """Normalize path to prevent label cardinality explosion.

        Replaces handles in /identity/{handle}/... paths with a placeholder.
        """
        parts = path.split("/")
        normalized = []
        previous = ""
        for part in parts:
            if previous in _HANDLE_PARENTS and HANDLE_PATTERN.match(part.lstrip("@").lower()):
                normalized.append("{handle}")
            else:
                normalized.append(part)
            previous = part
        return "/".join(normalized)

    def increment_connections(self) -> None:
        """Increment active connection count."""
        with self._lock:
            self._active_connections += 1

    def decrement_connections(self) -> None:
        """Decrement active connection count."""
        with self._lock:
            self._active_connections = max(0, self._active_connections - 1)

    def get_active_connections(self) -> int:
        """Get current active connection count."""
        with self._lock:
            return self._active_connections

    def get_auth_decisions(self) -> dict[tuple[str, str], int]:
        with self._lock:
            return dict(self._auth_decisions)

    def format_prometheus(self) -> str:
        """Format all metrics in Prometheus text format.

        Returns:
            Prometheus text format string
        """
        lines: list[str] = []

        with self._lock:
            # Request count metric
            lines.append("# HELP airc_http_requests_total Total HTTP requests")
            lines.append("# TYPE airc_http_requests_total counter")
            for (method, path, status), count in sorted(self._request_counts.items()):
                labels = f'method="{method}",path="{path}",status="{status}"'
                lines.append(f"airc_http_requests_total{{{labels}}} {count}")

            # Latency histogram
            lines.append("")
            lines.append("# HELP airc_http_request_duration_seconds HTTP request latency")
            lines.append("# TYPE airc_http_request_duration_seconds histogram")
            for (method, path), histogram in sorted(self._latency_histograms.items()):
                base_labels = f'method="{method}",path="{path}"'
                bucket_metric = "airc_http_request_duration_seconds_bucket"
                cumulative = 0
                for bucket in LATENCY_BUCKETS:
                    cumulative += histogram.buckets.get(bucket, 0)
                    lines.append(f'{bucket_metric}{{{base_labels},le="{bucket}"}} {cumulative}')
                lines.append(f'{bucket_metric}{{{base_labels},le="+Inf"}} {histogram.count}')
                lines.append(f"airc_http_request_duration_seconds_sum{{{base_labels}}} {histogram.sum:.6f}")
                lines.append(f"airc_http_request_duration_seconds_count{{{base_labels}}} {histogram.count}")

            # Active connections gauge
            lines.append("")
            lines.append("# HELP airc_active_connections Currently active HTTP connections")
            lines.append("# TYPE airc_active_connections gauge")
            lines.append(f"airc_active_connections {self._active_connections}")

            # Authentication outcomes
            lines.append("")
            lines.append("# HELP airc_auth_decisions_total Authentication decisions by operation and outcome")
            lines.append("# TYPE airc_auth_decisions_total counter")
            for (operation, outcome), count in sorted(self._auth_decisions.items()):
                lines.append(f'airc_auth_decisions_total{{operation="{operation}",outcome="{outcome}"}} {count}')

            lines.append("")
            lines.append("# HELP airc_nonces_pruned_total Nonce records removed by background sweeps")
            lines.append("# TYPE airc_nonces_pruned_total counter")
            lines.append(f"airc_nonces_pruned_total {self._nonces_pruned}")

        lines.append("")
        return "\n".join(lines)


# Global metrics collector instance
_metrics_collector: MetricsCollector | None = None


def get_metrics_collector() -> MetricsCollector:
    """Get or create the global metrics collector."""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector()
    return _metrics_collector


def reset_metrics_collector() -> None:
    """Reset the global collector (for testing)."""
    global _metrics_collector
    _metrics_collector = None


class MetricsMiddleware(BaseHTTPMiddleware):
    """Starlette middleware for collecting request metrics.

    Tracks request count, latency, and active connections.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Process request and record metrics."""
        collector = get_metrics_collector()

        # Skip metrics endpoint to avoid recursion
        if request.url.path in ("/metrics", "/api/v1/metrics"):
            return await call_next(request)

        collector.increment_connections()
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
            collector.record_request(
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_seconds=time.perf_counter() - start_time,
            )
            return response
        except Exception:
            collector.record_request(
                method=request.method,
                path=request.url.path,
                status_code=500,
                duration_seconds=time.perf_counter() - start_time,
            )
            raise
        finally:
            collector.decrement_connections()


async def metrics_endpoint(request: Request) -> PlainTextResponse:
    """Prometheus metrics endpoint.

    Returns metrics in Prometheus text exposition format.
    """
    collector = get_metrics_collector()

    return PlainTextResponse(
        content=collector.format_prometheus(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
