from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request


@dataclass
class RequestContext:
    request_id: str
    correlation_id: str
    user_id: str | None
    method: str
    url: str
    ip_address: str | None
    user_agent: str | None


def build_request_context(request: Request) -> RequestContext:
    correlation_id = getattr(request.state, "correlation_id", None) or ""
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        ip_address: str | None = forwarded_for.split(",")[0].strip()
    else:
        ip_address = request.client.host if request.client else None
    return RequestContext(
        request_id=correlation_id,
        correlation_id=correlation_id,
        user_id=None,
        method=request.method,
        url=str(request.url),
        ip_address=ip_address,
        user_agent=request.headers.get("user-agent"),
    )


def get_request_context(request: Request) -> RequestContext:
    context = getattr(request.state, "context", None)
    if context is None:
        context = build_request_context(request)
        request.state.context = context
    return context


def get_capability_cache(request: Request) -> dict:
    """Per-request capability memo shared by the rate-limit middleware and the route guards."""

    cache = getattr(request.state, "capability_cache", None)
    if cache is None:
        cache = {}
        request.state.capability_cache = cache
    return cache


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        request.state.context = build_request_context(request)
        response = await call_next(request)
        response.headers["x-request-id"] = request.state.context.request_id
        return response
