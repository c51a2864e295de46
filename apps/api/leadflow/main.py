from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from leadflow.api.errors import register_exception_handlers
from leadflow.api.routes import router as api_router
from leadflow.core.config import get_settings
from leadflow.core.context import RequestContextMiddleware
from leadflow.core.events import InternalEvent, event_bus
from leadflow.crm.notifications import NOTIFICATION_CREATED_EVENT
from leadflow.logging import configure_logging
from leadflow.middleware.correlation_id import CorrelationIdMiddleware
from leadflow.middleware.rate_limit import UserRateLimitMiddleware
from leadflow.middleware.request_logging import RequestLoggingMiddleware
from leadflow.otel import server_request_hook, setup_tracing
from leadflow.security.capabilities import DbCapabilityBackend, StaticCapabilityBackend, set_capability_backend


configure_logging()
logger = logging.getLogger("leadflow.lifecycle")


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_type": event.name})


def _on_notification_created(event: InternalEvent) -> None:
    # Push delivery attaches here; the row is already persisted.
    logger.debug(
        "notification_created",
        extra={
            "user_id": event.payload.get("user_id"),
            "entity_type": event.payload.get("entity_type"),
            "entity_id": event.payload.get("entity_id"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    event_bus.subscribe("system.started", _on_system_started)
    event_bus.subscribe(NOTIFICATION_CREATED_EVENT, _on_notification_created)
    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title="Leadflow API", version="0.1.0", lifespan=lifespan)
app.add_middleware(UserRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
register_exception_handlers(app)
app.include_router(api_router)

settings = get_settings()
backend_choice = settings.capability_backend.lower()
if backend_choice == "auto":
    backend_choice = "db" if settings.app_env.lower() in {"prod", "production"} else "static"

if backend_choice == "db":
    set_capability_backend(DbCapabilityBackend())
else:
    set_capability_backend(StaticCapabilityBackend())

if settings.otel_enabled:
    setup_tracing("leadflow-api")

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=server_request_hook)
