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

authz_decisions_total = Counter(
    "authz_decisions_total",
    "Authorization guard decisions by guard and outcome",
    ["guard", "outcome"],
)

security_events_total = Counter(
    "security_events_total",
    "Recorded security events by severity",
    ["severity"],
)

security_event_write_failures_total = Counter(
    "security_event_write_failures_total",
    "Security events that could not be persisted",
    ["event_type"],
)

workflow_transitions_total = Counter(
    "workflow_transitions_total",
    "Workflow state transitions by workflow and action",
    ["workflow", "action"],
)

notification_failures_total = Counter(
    "notification_failures_total",
    "Notifications that could not be delivered",
    ["entity_type"],
)

capability_override_cache_hit_total = Counter(
    "capability_override_cache_hit_total",
    "Capability override lookups served from the request memo",
)

capability_override_cache_miss_total = Counter(
    "capability_override_cache_miss_total",
    "Capability override lookups that queried the database",
)

rate_limited_requests_total = Counter(
    "rate_limited_requests_total",
    "Requests rejected by the per-user rate limiter",
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        route_path = getattr(route, "path_format", None) or getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return route_path
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_authz_decision(guard: str, outcome: str) -> None:
    authz_decisions_total.labels(guard=guard, outcome=outcome).inc()


def observe_security_event(severity: str) -> None:
    security_events_total.labels(severity=severity).inc()


def observe_security_event_write_failure(event_type: str) -> None:
    security_event_write_failures_total.labels(event_type=event_type).inc()


def observe_workflow_transition(workflow: str, action: str, count: int = 1) -> None:
    if count > 0:
        workflow_transitions_total.labels(workflow=workflow, action=action).inc(count)


def observe_notification_failure(entity_type: str | None) -> None:
    notification_failures_total.labels(entity_type=entity_type or "unknown").inc()


def observe_capability_cache_hit() -> None:
    capability_override_cache_hit_total.inc()


def observe_capability_cache_miss() -> None:
    capability_override_cache_miss_total.inc()


def observe_rate_limited_request() -> None:
    rate_limited_requests_total.inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
