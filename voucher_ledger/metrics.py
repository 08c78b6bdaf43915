from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

voucher_transitions_total = Counter(
    "voucher_transitions_total",
    "Voucher lifecycle transitions by action",
    ["action"],
)

ledger_rows_written_total = Counter(
    "ledger_rows_written_total",
    "General ledger rows written by posting",
)

ledger_rows_removed_total = Counter(
    "ledger_rows_removed_total",
    "General ledger rows removed by voiding",
)

voucher_post_failures_total = Counter(
    "voucher_post_failures_total",
    "Voucher post/void failures by reason",
    ["reason"],
)

ledger_post_duration_seconds = Histogram(
    "ledger_post_duration_seconds",
    "Duration of the posting transaction in seconds",
)

audit_write_failures_total = Counter(
    "audit_write_failures_total",
    "Audit entries that could not be written",
    ["entity_type"],
)

budget_rejections_total = Counter(
    "budget_rejections_total",
    "Budget gate rejections",
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _normalize_route_template(path_format)
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _normalize_route_template(route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_voucher_transition(action: str) -> None:
    voucher_transitions_total.labels(action=action).inc()


def observe_ledger_rows_written(count: int) -> None:
    if count > 0:
        ledger_rows_written_total.inc(count)


def observe_ledger_rows_removed(count: int) -> None:
    if count > 0:
        ledger_rows_removed_total.inc(count)


def observe_post_failure(reason: str) -> None:
    voucher_post_failures_total.labels(reason=reason).inc()


def observe_post_duration(duration: float) -> None:
    ledger_post_duration_seconds.observe(duration)


def observe_audit_write_failure(entity_type: str) -> None:
    audit_write_failures_total.labels(entity_type=entity_type).inc()


def observe_budget_rejection() -> None:
    budget_rejections_total.inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
