"""
Prometheus metrics for request handling and the identity gate
"""
import time
from typing import Callable

from fastapi import Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware

http_requests_total = Counter(
    "amilou_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"]
)

http_request_duration_seconds = Histogram(
    "amilou_http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)
)

auth_login_attempts_total = Counter(
    "amilou_auth_login_attempts_total",
    "Total login attempts",
    ["status"]  # success, failed, rate_limited
)

impersonation_events_total = Counter(
    "amilou_impersonation_events_total",
    "Impersonation starts, stops and refused starts",
    ["event"]  # start, stop, denied
)

visibility_denials_total = Counter(
    "amilou_visibility_denials_total",
    "Reads refused because the target user was outside the visibility set",
    ["category"]
)

pdf_store_operations_total = Counter(
    "amilou_pdf_store_operations_total",
    "Ephemeral PDF store operations",
    ["operation"]  # store, hit, miss
)

pdf_store_entries = Gauge(
    "amilou_pdf_store_entries",
    "PDFs currently held in memory"
)

audit_entries_total = Counter(
    "amilou_audit_entries_total",
    "Total audit log entries",
    ["action"]
)

errors_total = Counter(
    "amilou_errors_total",
    "Unhandled application errors",
    ["error_type", "endpoint"]
)


class PrometheusMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        endpoint = normalize_endpoint(request.url.path)
        start_time = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as exc:
            errors_total.labels(error_type=type(exc).__name__, endpoint=endpoint).inc()
            raise
        http_requests_total.labels(method=method, endpoint=endpoint, status=response.status_code).inc()
        http_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(
            time.perf_counter() - start_time
        )
        return response


def normalize_endpoint(path: str) -> str:
    """Collapse ids in paths so label cardinality stays bounded."""
    if not path.startswith("/api/"):
        return path
    parts = path.split("/")
    if parts[2:3] == ["pdf"] and len(parts) > 3:
        return "/api/pdf/{id}"
    if parts[2:4] == ["admin", "users"] and len(parts) > 4:
        return "/api/admin/users/{id}"
    if parts[2:4] == ["admin", "groups"] and len(parts) > 4:
        return "/api/admin/groups/{id}/members"
    return path


def metrics_response() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


def record_login_attempt(success: bool, rate_limited: bool = False):
    if rate_limited:
        auth_login_attempts_total.labels(status="rate_limited").inc()
    elif success:
        auth_login_attempts_total.labels(status="success").inc()
    else:
        auth_login_attempts_total.labels(status="failed").inc()


def record_impersonation(event: str):
    impersonation_events_total.labels(event=event).inc()


def record_visibility_denial(category: str):
    visibility_denials_total.labels(category=category).inc()


def record_pdf_operation(operation: str, entries: int):
    pdf_store_operations_total.labels(operation=operation).inc()
    pdf_store_entries.set(entries)


def record_audit_entry(action: str):
    audit_entries_total.labels(action=action).inc()
