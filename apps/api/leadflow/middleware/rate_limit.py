from __future__ import annotations

from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from leadflow.api.errors import error_response
from leadflow.core.auth import bearer_token, decode_principal
from leadflow.core.config import get_settings
from leadflow.core.context import get_capability_cache, get_request_context
from leadflow.metrics import observe_rate_limited_request
from leadflow.security.activity import (
    SuspiciousActivityTracker,
    UserRequestLimiter,
    get_activity_cache,
    reset_activity_tracking,
    suspicious_patterns,
)
from leadflow.security.capabilities import permissions_for
from leadflow.security.context import AccessContext
from leadflow.security.events import SecurityEventType, Severity, record_security_event


RATE_LIMIT_WINDOW_SECONDS = 60

_limiter = UserRequestLimiter(get_activity_cache())
_tracker = SuspiciousActivityTracker(get_activity_cache())


class UserRateLimitMiddleware(BaseHTTPMiddleware):
    """Per-user fixed-window limiter plus suspicious-activity scoring for API calls.

    Anonymous requests pass through; authentication guards reject them later.
    Capability lookups and event writes touch the database and run in the threadpool.
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        if not request.url.path.startswith("/api/"):
            return await call_next(request)

        principal = decode_principal(bearer_token(request))
        if principal is None:
            return await call_next(request)

        settings = get_settings()
        request_context = get_request_context(request)
        request_context.user_id = principal.id

        if not settings.rate_limit_disabled:
            decision = _limiter.hit(
                principal.id,
                max_requests=settings.rate_limit_requests_per_minute,
                window_seconds=RATE_LIMIT_WINDOW_SECONDS,
            )
            if not decision.allowed:
                observe_rate_limited_request()
                await run_in_threadpool(
                    record_security_event,
                    SecurityEventType.RATE_LIMIT_EXCEEDED,
                    principal.id,
                    request_context,
                    Severity.MEDIUM,
                    {"requests": decision.count, "limit": settings.rate_limit_requests_per_minute, "path": request.url.path},
                )
                return error_response(
                    request,
                    status_code=429,
                    message="Rate limit exceeded. Please try again later.",
                    details={"retry_after": decision.retry_after},
                    headers={"Retry-After": str(decision.retry_after)},
                )

        ctx = AccessContext(
            principal=principal,
            method=request.method,
            path=request.url.path,
            cache=get_capability_cache(request),
        )
        permissions = await run_in_threadpool(permissions_for, ctx)
        patterns = suspicious_patterns(principal.role, request.method, request.url.path, permissions)
        if patterns:
            score = _tracker.observe(
                principal.id,
                patterns,
                window_seconds=settings.suspicious_activity_window_seconds,
            )
            details = {"patterns": patterns, "score": score, "path": request.url.path}
            if score >= settings.suspicious_activity_alert_threshold:
                await run_in_threadpool(
                    record_security_event,
                    SecurityEventType.SUSPICIOUS_ACTIVITY_DETECTED,
                    principal.id,
                    request_context,
                    Severity.HIGH,
                    details,
                )
            if score >= settings.suspicious_activity_threat_threshold:
                await run_in_threadpool(
                    record_security_event,
                    SecurityEventType.POTENTIAL_SECURITY_THREAT,
                    principal.id,
                    request_context,
                    Severity.CRITICAL,
                    details,
                )

        return await call_next(request)


def reset_rate_limiter() -> None:
    reset_activity_tracking()
