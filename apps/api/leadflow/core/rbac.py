"""FastAPI dependency factories that run the security guards for a route."""

from collections.abc import Callable

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from leadflow.context import get_correlation_id
from leadflow.core.auth import Principal, get_current_principal
from leadflow.core.context import get_capability_cache, get_request_context
from leadflow.core.database import get_db
from leadflow.security.context import AccessContext
from leadflow.security.guards import (
    enforce_read_only,
    enforce_resource_ownership,
    enforce_task_update_permission,
    prevent_finalized_edit,
    require_authenticated,
    require_permission,
    require_role,
    validate_user_context,
)
from leadflow.security.roles import Capability, Role


def get_access_context(
    request: Request,
    principal: Principal | None = Depends(get_current_principal),
) -> AccessContext:
    request_context = get_request_context(request)
    return AccessContext(
        principal=principal,
        method=request.method,
        path=request.url.path,
        path_params={key: str(value) for key, value in request.path_params.items()},
        url=request_context.url,
        ip_address=request_context.ip_address,
        user_agent=request_context.user_agent,
        correlation_id=get_correlation_id() or request_context.correlation_id or None,
        cache=get_capability_cache(request),
    )


def get_authenticated_context(
    ctx: AccessContext = Depends(get_access_context),
    db: Session = Depends(get_db),
) -> AccessContext:
    require_authenticated(ctx)
    validate_user_context(db, ctx)
    return ctx


def require_capability(
    capability: Capability,
    *,
    allow_self_access: bool = False,
    log_access: bool = False,
    entity_type: str | None = None,
) -> Callable[..., AccessContext]:
    def checker(ctx: AccessContext = Depends(get_authenticated_context)) -> AccessContext:
        require_permission(
            ctx,
            capability,
            allow_self_access=allow_self_access,
            log_access=log_access,
            entity_type=entity_type,
        )
        return ctx

    return checker


def require_roles(*roles: Role) -> Callable[..., AccessContext]:
    def checker(ctx: AccessContext = Depends(get_authenticated_context)) -> AccessContext:
        require_role(ctx, roles)
        return ctx

    return checker


def read_only_enforced(ctx: AccessContext = Depends(get_authenticated_context)) -> AccessContext:
    enforce_read_only(ctx)
    return ctx


def finalized_edit_prevented(
    ctx: AccessContext = Depends(read_only_enforced),
    db: Session = Depends(get_db),
) -> AccessContext:
    prevent_finalized_edit(db, ctx)
    return ctx


def task_update_enforced(ctx: AccessContext = Depends(read_only_enforced)) -> AccessContext:
    return enforce_task_update_permission(ctx)


def require_ownership(
    resource_type: str,
    *,
    allow_managers: bool = False,
    assigned_to_field: str | None = None,
) -> Callable[..., AccessContext]:
    def checker(
        ctx: AccessContext = Depends(get_authenticated_context),
        db: Session = Depends(get_db),
    ) -> AccessContext:
        enforce_resource_ownership(
            db,
            ctx,
            resource_type,
            allow_managers=allow_managers,
            assigned_to_field=assigned_to_field,
        )
        return ctx

    return checker
