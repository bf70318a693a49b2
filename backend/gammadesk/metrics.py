"""
GammaDesk: Prometheus-Compatible Metrics

In-memory metrics collection and exposition:
- http_requests_total{method, path, status}: request counter
- http_request_duration_seconds{method, path}: response time summary
- gammadesk_events_total{event, ticker}: analytics counters
  (chains ingested, contracts/trades accepted and rejected, bursts emitted)
- GET /metrics: text/plain Prometheus exposition format
"""

from __future__ import annotations

import threading
import time
from collections import defaultdict

from fastapi import APIRouter
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response

# ────────────────────────────────────────────────
# In-Memory Metric Store
# ────────────────────────────────────────────────

_request_counts: dict[tuple[str, str, int], int] = defaultdict(int)
_request_durations: dict[tuple[str, str], list[float]] = defaultdict(list)
_event_counts: dict[tuple[str, str], int] = defaultdict(int)
_events_lock = threading.Lock()

# Max stored durations per path to prevent memory leak
_MAX_DURATION_SAMPLES = 1000

# Route segments followed by a ticker
_TICKER_SEGMENTS = frozenset({
    "chains", "trades", "price", "unusual", "exposure",
    "expected-move", "heatmap", "flow", "bias",
})


def _bucket_path(path: str) -> str:
    """Normalize paths for metric grouping.

    Replaces ticker segments with {ticker} to avoid cardinality explosion.

    >>> _bucket_path("/v1/api/bias/SPY")
    '/v1/api/bias/{ticker}'
    """
    parts = path.strip("/").split("/")
    normalized: list[str] = []
    for part in parts:
        if normalized and normalized[-1] in _TICKER_SEGMENTS:
            normalized.append("{ticker}")
            continue
        normalized.append(part)
    return "/" + "/".join(normalized) if normalized else path


def record_request(method: str, path: str, status_code: int, duration: float) -> None:
    """Record a single request's metrics."""
    bucket = _bucket_path(path)
    _request_counts[(method, bucket, status_code)] += 1

    durations = _request_durations[(method, bucket)]
    durations.append(duration)
    if len(durations) > _MAX_DURATION_SAMPLES:
        _request_durations[(method, bucket)] = durations[-_MAX_DURATION_SAMPLES:]


def record_event(event: str, ticker: str = "", count: int = 1) -> None:
    """Increment an analytics counter. Called from worker threads as well as the loop."""
    if count <= 0:
        return
    with _events_lock:
        _event_counts[(event, ticker)] += count


def event_count(event: str, ticker: str = "") -> int:
    return _event_counts.get((event, ticker), 0)


def reset_metrics() -> None:
    """Clear every metric. Used by tests."""
    _request_counts.clear()
    _request_durations.clear()
    with _events_lock:
        _event_counts.clear()


# ────────────────────────────────────────────────
# Metrics Collection Middleware
# ────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """Collects per-request metrics for Prometheus exposition."""

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start

        record_request(
            method=request.method,
            path=str(request.url.path),
            status_code=response.status_code,
            duration=duration,
        )

        return response


# ────────────────────────────────────────────────
# Prometheus Exposition Endpoint
# ────────────────────────────────────────────────

metrics_router = APIRouter()


def _format_prometheus() -> str:
    """Format metrics in Prometheus text exposition format."""
    lines: list[str] = []

    # ── Request Count ──
    lines.append("# HELP http_requests_total Total HTTP requests processed.")
    lines.append("# TYPE http_requests_total counter")
    for (method, path, status), count in sorted(_request_counts.items()):
        lines.append(
            f'http_requests_total{{method="{method}",path="{path}",status="{status}"}} {count}'
        )

    # ── Request Duration ──
    lines.append("")
    lines.append("# HELP http_request_duration_seconds HTTP request duration in seconds.")
    lines.append("# TYPE http_request_duration_seconds summary")
    for (method, path), durations in sorted(_request_durations.items()):
        if not durations:
            continue
        total = sum(durations)
        count = len(durations)
        sorted_d = sorted(durations)
        p50 = sorted_d[int(count * 0.5)]
        p95 = sorted_d[min(int(count * 0.95), count - 1)]
        p99 = sorted_d[min(int(count * 0.99), count - 1)]

        label = f'method="{method}",path="{path}"'
        lines.append(f'http_request_duration_seconds{{{label},quantile="0.5"}} {p50:.6f}')
        lines.append(f'http_request_duration_seconds{{{label},quantile="0.95"}} {p95:.6f}')
        lines.append(f'http_request_duration_seconds{{{label},quantile="0.99"}} {p99:.6f}')
        lines.append(f"http_request_duration_seconds_sum{{{label}}} {total:.6f}")
        lines.append(f"http_request_duration_seconds_count{{{label}}} {count}")

    # ── Analytics Events ──
    lines.append("")
    lines.append("# HELP gammadesk_events_total Analytics pipeline events.")
    lines.append("# TYPE gammadesk_events_total counter")
    with _events_lock:
        events = sorted(_event_counts.items())
    for (event, ticker), count in events:
        lines.append(f'gammadesk_events_total{{event="{event}",ticker="{ticker}"}} {count}')

    lines.append("")
    return "\n".join(lines)


@metrics_router.get("/metrics", include_in_schema=False)
async def get_metrics():
    """Prometheus-compatible metrics endpoint."""
    return PlainTextResponse(
        content=_format_prometheus(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
