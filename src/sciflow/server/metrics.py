"""Prometheus metrics for the SciFlow server.

Provides /metrics endpoint with Prometheus text format.
Implements simple text format without prometheus_client dependency.

Metrics exported:
- sciflow_http_request_duration_seconds: Request latency histogram
- sciflow_http_requests_total: Request count by endpoint/status
- sciflow_active_connections: Currently active connections
- sciflow_bounties: Bounties by lifecycle state
- sciflow_escrow_outstanding: Funds held in escrow, by currency
- sciflow_inbound_events_pending: Rail callbacks waiting to be applied
"""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from decimal import Decimal

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response

from ..core.exceptions import SciflowError
from ..core.models import Bounty, Escrow, EscrowStatus, InboundEvent, InboundEventStatus
from ..core.states import BountyState
from ..core.store import LedgerStore

logger = logging.getLogger(__name__)

# Histogram bucket boundaries (in seconds)
LATENCY_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)

_HELD = (EscrowStatus.LOCKED, EscrowStatus.PARTIALLY_RELEASED)


@dataclass
class HistogramData:
    """Histogram metric data."""

    buckets: dict[float, int] = field(default_factory=lambda: defaultdict(int))
    sum: float = 0.0
    count: int = 0

    def observe(self, value: float) -> None:
        self.sum += value
        self.count += 1
        for bucket in LATENCY_BUCKETS:
            if value <= bucket:
                self.buckets[bucket] += 1


class MetricsCollector:
    """Thread-safe metrics collector.

    Request metrics are recorded by the middleware; ledger gauges are read
    from the bound store when metrics are scraped.
    """

    def __init__(self, store: LedgerStore | None = None) -> None:
        self._lock = threading.Lock()
        self.store = store

        # Request metrics: {(method, path, status): count}
        self._request_counts: dict[tuple[str, str, int], int] = defaultdict(int)

        # Latency histogram: {(method, path): HistogramData}
        self._latency_histograms: dict[tuple[str, str], HistogramData] = defaultdict(HistogramData)

        self._active_connections: int = 0

    def record_request(self, method: str, path: str, status_code: int, duration_seconds: float) -> None:
        normalized_path = self._normalize_path(path)
        with self._lock:
            self._request_counts[(method, normalized_path, status_code)] += 1
            self._latency_histograms[(method, normalized_path)].observe(duration_seconds)

    def _normalize_path(self, path: str) -> str:
        """Replace UUID-like and numeric segments with ``{id}``."""
        normalized = []
        for part in path.split("/"):
            if len(part) == 36 and part.count("-") == 4:
                normalized.append("{id}")
            elif part.isdigit():
                normalized.append("{id}")
            else:
                normalized.append(part)
        return "/".join(normalized)

    def increment_connections(self) -> None:
        with self._lock:
            self._active_connections += 1

    def decrement_connections(self) -> None:
        with self._lock:
            self._active_connections = max(0, self._active_connections - 1)

    def get_active_connections(self) -> int:
        with self._lock:
            return self._active_connections

    def format_prometheus(self) -> str:
        """Format all metrics in Prometheus text format."""
        lines: list[str] = []

        with self._lock:
            lines.append("# HELP sciflow_http_requests_total Total HTTP requests")
            lines.append("# TYPE sciflow_http_requests_total counter")
            for (method, path, status), count in sorted(self._request_counts.items()):
                labels = f'method="{method}",path="{path}",status="{status}"'
                lines.append(f"sciflow_http_requests_total{{{labels}}} {count}")

            lines.append("")
            lines.append("# HELP sciflow_http_request_duration_seconds HTTP request latency")
            lines.append("# TYPE sciflow_http_request_duration_seconds histogram")
            for (method, path), histogram in sorted(self._latency_histograms.items()):
                base_labels = f'method="{method}",path="{path}"'
                cumulative = 0
                for bucket in LATENCY_BUCKETS:
                    cumulative += histogram.buckets.get(bucket, 0)
                    lines.append(f'sciflow_http_request_duration_seconds_bucket{{{base_labels},le="{bucket}"}} {cumulative}')
                lines.append(f'sciflow_http_request_duration_seconds_bucket{{{base_labels},le="+Inf"}} {histogram.count}')
                lines.append(f"sciflow_http_request_duration_seconds_sum{{{base_labels}}} {histogram.sum:.6f}")
                lines.append(f"sciflow_http_request_duration_seconds_count{{{base_labels}}} {histogram.count}")

            lines.append("")
            lines.append("# HELP sciflow_active_connections Currently active HTTP connections")
            lines.append("# TYPE sciflow_active_connections gauge")
            lines.append(f"sciflow_active_connections {self._active_connections}")

        lines.extend(self._collect_ledger_metrics())
        lines.append("")
        return "\n".join(lines)

    def _collect_ledger_metrics(self) -> list[str]:
        if self.store is None:
            return []
        lines: list[str] = []
        try:
            by_state = {state: 0 for state in BountyState}
            for bounty in self.store.find_all(Bounty):
                by_state[bounty.state] += 1

            held: dict[str, Decimal] = defaultdict(Decimal)
            for escrow in self.store.find_all(Escrow):
                if escrow.status in _HELD:
                    held[escrow.currency.value] += escrow.outstanding

            pending = len(self.store.find_all(InboundEvent, status=InboundEventStatus.PENDING.value))
        except SciflowError as e:
            logger.debug(f"Could not collect ledger metrics: {e}")
            lines.append("")
            lines.append("# sciflow ledger metrics unavailable (storage error)")
            return lines

        lines.append("")
        lines.append("# HELP sciflow_bounties Bounties by lifecycle state")
        lines.append("# TYPE sciflow_bounties gauge")
        for state, count in by_state.items():
            lines.append(f'sciflow_bounties{{state="{state.value}"}} {count}')

        lines.append("")
        lines.append("# HELP sciflow_escrow_outstanding Funds held in funded escrows")
        lines.append("# TYPE sciflow_escrow_outstanding gauge")
        for currency, amount in sorted(held.items()):
            lines.append(f'sciflow_escrow_outstanding{{currency="{currency}"}} {amount}')

        lines.append("")
        lines.append("# HELP sciflow_inbound_events_pending Rail callbacks waiting to be applied")
        lines.append("# TYPE sciflow_inbound_events_pending gauge")
        lines.append(f"sciflow_inbound_events_pending {pending}")
        return lines


class MetricsMiddleware(BaseHTTPMiddleware):
    """Starlette middleware for collecting request metrics."""

    def __init__(self, app, collector: MetricsCollector) -> None:
        super().__init__(app)
        self.collector = collector

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        self.collector.increment_connections()
        start_time = time.perf_counter()
        try:
            response = await call_next(request)
            self.collector.record_request(request.method, request.url.path, response.status_code, time.perf_counter() - start_time)
            return response
        except Exception:
            self.collector.record_request(request.method, request.url.path, 500, time.perf_counter() - start_time)
            raise
        finally:
            self.collector.decrement_connections()


async def metrics_endpoint(request: Request) -> PlainTextResponse:
    """Prometheus metrics endpoint."""
    collector: MetricsCollector = request.app.state.metrics
    return PlainTextResponse(
        content=collector.format_prometheus(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
