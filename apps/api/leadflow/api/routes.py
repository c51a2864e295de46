from typing import Any

from fastapi import APIRouter, Depends
from fastapi.responses import Response

from leadflow.core.config import get_settings
from leadflow.core.rbac import get_authenticated_context, require_capability
from leadflow.crm.api import (
    admin_router,
    companies_router,
    deletion_requests_router,
    follow_ups_router,
    tasks_router,
    tickets_router,
)
from leadflow.metrics import generate_metrics_payload, metrics_content_type
from leadflow.security.capabilities import get_capability_backend
from leadflow.security.context import AccessContext
from leadflow.security.errors import NotFoundError
from leadflow.security.roles import Capability

router = APIRouter()
router.include_router(companies_router)
router.include_router(follow_ups_router)
router.include_router(deletion_requests_router)
router.include_router(tasks_router)
router.include_router(tickets_router)
router.include_router(admin_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
def me(ctx: AccessContext = Depends(get_authenticated_context)) -> dict[str, Any]:
    return {
        "id": ctx.user_id,
        "email": ctx.principal.email if ctx.principal is not None else None,
        "role": ctx.role,
        "permissions": get_capability_backend().permissions_for(ctx.role, ctx).as_dict(),
    }


@router.get("/metrics", tags=["system"])
def metrics(ctx: AccessContext = Depends(require_capability(Capability.CAN_MANAGE_USERS))) -> Response:
    if not get_settings().metrics_enabled:
        raise NotFoundError("not found")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
