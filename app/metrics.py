"""
Prometheus metrics for the communication audit API.

- http_requests_total / request_latency_seconds: per method and route
- webhook_events_total: provider delivery-status events by outcome
- export_requests_total: exports by format and execution mode
- export_jobs_total / export_jobs_stored: background job outcomes and registry size
- export_render_seconds: time spent producing an artifact

Metrics live in the default prometheus-client registry of this process.
"""

import re
import time
from contextlib import contextmanager

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST


http_requests_total = Counter(
    "http_requests_total",
    "HTTP requests by method, route and status",
    labelnames=["method", "path", "status"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=["method", "path"]
)

# result: applied, unknown, invalid_signature, validation_error
webhook_events_total = Counter(
    "webhook_events_total",
    "Provider delivery-status events by outcome",
    labelnames=["provider", "result"]
)

# mode: sync, async
export_requests_total = Counter(
    "export_requests_total",
    "Export requests by format and execution mode",
    labelnames=["format", "mode"]
)

# status: Completed, Failed
export_jobs_total = Counter(
    "export_jobs_total",
    "Finished background export jobs",
    labelnames=["status"]
)

export_jobs_stored = Gauge(
    "export_jobs_stored",
    "Export jobs currently held in the job registry"
)

export_render_seconds = Histogram(
    "export_render_seconds",
    "Time to render an export artifact",
    labelnames=["format"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, 120)
)


_ID_SEGMENT = re.compile(r"/[0-9a-fA-F]{8}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{12}")


def normalize_path(path: str) -> str:
    """
    Collapse identifiers in a path to keep label cardinality bounded.

    /api/communication-audit/orders/<uuid> -> /api/communication-audit/orders/{id}
    """
    return _ID_SEGMENT.sub("/{id}", path.split("?")[0])


def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    route = normalize_path(path)
    http_requests_total.labels(method=method, path=route, status=str(status)).inc()
    request_latency_seconds.labels(method=method, path=route).observe(latency_seconds)


def record_webhook_outcome(provider: str, result: str, count: int = 1) -> None:
    webhook_events_total.labels(provider=provider, result=result).inc(count)


def record_export_request(format: str, mode: str) -> None:
    export_requests_total.labels(format=format, mode=mode).inc()


def record_export_job(status: str) -> None:
    export_jobs_total.labels(status=status).inc()


def set_stored_export_jobs(count: int) -> None:
    export_jobs_stored.set(count)


@contextmanager
def time_export_render(format: str):
    """Observe render duration, including renders that raise."""
    started = time.perf_counter()
    try:
        yield
    finally:
        export_render_seconds.labels(format=format).observe(time.perf_counter() - started)


def get_metrics() -> bytes:
    """Current registry in Prometheus text exposition format."""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
