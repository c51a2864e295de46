"""Authorization guards consulted before any CRM mutation.

Each guard records exactly one security event per decision and raises a
typed :mod:`leadflow.security.errors` exception on denial.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from leadflow.core.auth import Principal
from leadflow.crm.models import Company, FinalizationStatus, User
from leadflow.metrics import observe_authz_decision
from leadflow.security.activity import detect_malicious_content
from leadflow.security.capabilities import permissions_for
from leadflow.security.context import AccessContext
from leadflow.security.errors import (
    AuthenticationError,
    AuthorizationError,
    InfrastructureError,
    NotFoundError,
    ValidationError,
)
from leadflow.security.events import (
    SEVERITY_BY_OUTCOME,
    Outcome,
    SecurityEventType,
    Severity,
    record_security_event,
)
from leadflow.security.ownership import load_ownership
from leadflow.security.roles import MANAGERS, TASK_WORKERS, Capability, Role, is_in_role_group, resolve_role


logger = logging.getLogger("leadflow.security")

MODIFYING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
FINALIZED_GUARDED_METHODS = frozenset({"PUT", "PATCH", "DELETE"})
DEFAULT_BULK_MAX_ITEMS = 100

_METHOD_CAPABILITY: dict[str, Capability] = {
    "POST": Capability.CAN_CREATE,
    "PUT": Capability.CAN_EDIT,
    "PATCH": Capability.CAN_EDIT,
    "DELETE": Capability.CAN_DELETE,
}


def _emit(
    guard: str,
    event_type: SecurityEventType,
    ctx: AccessContext,
    outcome: Outcome,
    details: dict[str, Any] | None = None,
) -> None:
    observe_authz_decision(guard=guard, outcome=outcome.value)
    record_security_event(event_type, ctx.user_id, ctx, SEVERITY_BY_OUTCOME[outcome], details)


def _require_principal(guard: str, event_type: SecurityEventType, ctx: AccessContext, **details: Any) -> Principal:
    if ctx.principal is None:
        _emit(
            guard,
            event_type,
            ctx,
            Outcome.DENIED,
            {"path": ctx.path, "method": ctx.method, "reason": "No user context", **details},
        )
        raise AuthenticationError("Unauthorized: No user context")
    return ctx.principal


def _path_has_segment(path: str, segment: str, *, followed: bool = False) -> bool:
    segments = [part for part in path.split("/") if part]
    for index, part in enumerate(segments):
        if part == segment and (not followed or index + 1 < len(segments)):
            return True
    return False


def _as_aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def require_authenticated(ctx: AccessContext) -> Principal:
    principal = _require_principal("require_authenticated", SecurityEventType.UNAUTHORIZED_ACCESS, ctx)
    _emit("require_authenticated", SecurityEventType.AUTHENTICATION_VERIFIED, ctx, Outcome.GRANTED, {"path": ctx.path})
    return principal


def validate_user_context(session: Session, ctx: AccessContext, *, now: datetime | None = None) -> Principal:
    """Reload the caller from ``users`` and replace the token principal with the stored one."""
    guard = "validate_user_context"
    principal = _require_principal(guard, SecurityEventType.UNAUTHORIZED_ACCESS, ctx)

    try:
        user = session.scalar(select(User).where(User.id == principal.id))
    except SQLAlchemyError as exc:
        logger.exception("user_context_lookup_failed", extra={"user_id": principal.id, "error": str(exc)})
        _emit(guard, SecurityEventType.USER_VALIDATION_ERROR, ctx, Outcome.ERROR, {"error": str(exc)[:500]})
        raise InfrastructureError("Internal server error during authentication") from exc

    if user is None:
        _emit(guard, SecurityEventType.INVALID_USER_TOKEN, ctx, Outcome.INCONSISTENT, {"reason": "User not found in database"})
        raise AuthenticationError("Unauthorized: Invalid user token")

    if not user.is_active:
        _emit(guard, SecurityEventType.INACTIVE_USER_ACCESS, ctx, Outcome.DENIED, {"email": user.email})
        raise AuthenticationError("Unauthorized: Account is inactive")

    current_time = now or datetime.now(timezone.utc)
    if user.locked_until is not None and _as_aware(user.locked_until) > current_time:
        _emit(
            guard,
            SecurityEventType.LOCKED_USER_ACCESS,
            ctx,
            Outcome.DENIED,
            {"email": user.email, "locked_until": _as_aware(user.locked_until).isoformat()},
        )
        raise AuthenticationError("Unauthorized: Account is locked")

    if user.role != principal.role:
        _emit(
            guard,
            SecurityEventType.ROLE_MISMATCH,
            ctx,
            Outcome.INCONSISTENT,
            {"token_role": principal.role, "db_role": user.role},
        )
        raise AuthenticationError("Unauthorized: Role mismatch detected")

    ctx.principal = Principal(id=user.id, role=user.role, email=user.email)
    _emit(guard, SecurityEventType.USER_CONTEXT_VALIDATED, ctx, Outcome.GRANTED, {"user_role": user.role})
    return ctx.principal


def require_permission(
    ctx: AccessContext,
    capability: Capability,
    *,
    allow_self_access: bool = False,
    log_access: bool = False,
    entity_type: str | None = None,
) -> None:
    guard = "require_permission"
    principal = _require_principal(guard, SecurityEventType.PERMISSION_CHECK_NO_USER, ctx, permission=capability.value)
    details: dict[str, Any] = {
        "permission": capability.value,
        "user_role": principal.role,
        "path": ctx.path,
        "method": ctx.method,
        "entity_type": entity_type,
    }

    if permissions_for(ctx)[capability]:
        _emit(guard, SecurityEventType.PERMISSION_GRANTED, ctx, Outcome.GRANTED, details)
        if log_access:
            logger.info(
                "access_granted",
                extra={"user_id": principal.id, "role": principal.role, "capability": capability.value, "entity_type": entity_type},
            )
        return

    if allow_self_access:
        target_user_id = ctx.path_param("userId", "user_id", "id")
        if target_user_id is not None and target_user_id == principal.id:
            _emit(guard, SecurityEventType.SELF_ACCESS_GRANTED, ctx, Outcome.GRANTED, details)
            return

    _emit(guard, SecurityEventType.PERMISSION_DENIED, ctx, Outcome.DENIED, details)
    raise AuthorizationError(
        f"Forbidden: Insufficient permissions ({capability.value})",
        details={"required_permission": capability.value, "user_role": principal.role},
    )


def require_role(ctx: AccessContext, roles: Iterable[Role]) -> None:
    guard = "require_role"
    required = sorted(role.value for role in roles)
    principal = _require_principal(guard, SecurityEventType.ROLE_CHECK_NO_USER, ctx, required_roles=required)

    if principal.role in required:
        _emit(guard, SecurityEventType.ROLE_ACCESS_GRANTED, ctx, Outcome.GRANTED, {"required": required, "current": principal.role})
        return

    _emit(
        guard,
        SecurityEventType.ROLE_ACCESS_DENIED,
        ctx,
        Outcome.DENIED,
        {"required": required, "current": principal.role, "path": ctx.path, "method": ctx.method},
    )
    raise AuthorizationError(
        "Forbidden: Insufficient role privileges",
        details={"required": required, "current": [principal.role]},
    )


def enforce_read_only(ctx: AccessContext) -> None:
    """Map the HTTP method to a create/edit/delete capability.

    Data collectors always pass on company paths. Task workers pass on task
    item paths and are checked against the task row downstream.
    """
    guard = "enforce_read_only"
    principal = _require_principal(guard, SecurityEventType.READ_ONLY_CHECK_NO_USER, ctx)
    method = ctx.method.upper()

    if method not in MODIFYING_METHODS:
        _emit(guard, SecurityEventType.READ_ONLY_CHECK_PASSED, ctx, Outcome.GRANTED, {"method": method})
        return

    required = _METHOD_CAPABILITY[method]
    carve_out: str | None = None
    allowed = permissions_for(ctx)[required]
    if not allowed:
        role = resolve_role(principal.role)
        if role is Role.DATA_COLLECTOR and _path_has_segment(ctx.path, "companies"):
            allowed, carve_out = True, "data_collector_companies"
        elif is_in_role_group(role, TASK_WORKERS) and _path_has_segment(ctx.path, "tasks", followed=True):
            allowed, carve_out = True, "task_worker_tasks"

    if allowed:
        _emit(
            guard,
            SecurityEventType.READ_ONLY_CHECK_PASSED,
            ctx,
            Outcome.GRANTED,
            {"method": method, "permission": required.value, "carve_out": carve_out},
        )
        return

    _emit(
        guard,
        SecurityEventType.READ_ONLY_VIOLATION,
        ctx,
        Outcome.DENIED,
        {"role": principal.role, "method": method, "path": ctx.path, "permission": required.value},
    )
    raise AuthorizationError(
        "Read-only access: Your role cannot modify data",
        details={"required_permission": required.value, "user_role": principal.role},
    )


def enforce_task_update_permission(ctx: AccessContext) -> AccessContext:
    guard = "enforce_task_update_permission"
    principal = _require_principal(guard, SecurityEventType.TASK_UPDATE_NO_USER, ctx)
    permissions = permissions_for(ctx)

    if permissions.can_update_all_tasks:
        ctx.must_be_assigned_user = False
        _emit(guard, SecurityEventType.TASK_UPDATE_ADMIN_ACCESS, ctx, Outcome.GRANTED, {"user_role": principal.role})
        return ctx

    if permissions.can_update_own_tasks:
        ctx.must_be_assigned_user = True
        _emit(guard, SecurityEventType.TASK_UPDATE_OWN_ACCESS, ctx, Outcome.GRANTED, {"user_role": principal.role})
        return ctx

    _emit(guard, SecurityEventType.TASK_UPDATE_DENIED, ctx, Outcome.DENIED, {"user_role": principal.role})
    raise AuthorizationError(
        "Forbidden: You cannot update tasks",
        details={"required_permission": Capability.CAN_UPDATE_OWN_TASKS.value, "user_role": principal.role},
    )


def prevent_finalized_edit(session: Session, ctx: AccessContext, *, company_id: str | None = None) -> None:
    guard = "prevent_finalized_edit"
    principal = _require_principal(guard, SecurityEventType.FINALIZED_EDIT_NO_USER, ctx)

    if permissions_for(ctx).can_edit_finalized:
        _emit(guard, SecurityEventType.FINALIZED_EDIT_ADMIN_ACCESS, ctx, Outcome.GRANTED, {"user_role": principal.role})
        return

    target_id = company_id or ctx.path_param("id", "company_id")
    if target_id is None or ctx.method.upper() not in FINALIZED_GUARDED_METHODS:
        _emit(guard, SecurityEventType.FINALIZED_EDIT_CHECK_PASSED, ctx, Outcome.GRANTED, {"company_id": target_id})
        return

    try:
        row = session.execute(
            select(Company.finalization_status, Company.finalized_at).where(Company.id == target_id)
        ).first()
    except SQLAlchemyError as exc:
        logger.exception("finalized_check_failed", extra={"company_id": target_id, "error": str(exc)})
        _emit(guard, SecurityEventType.FINALIZED_CHECK_ERROR, ctx, Outcome.ERROR, {"company_id": target_id, "error": str(exc)[:500]})
        raise InfrastructureError("Internal server error") from exc

    if row is not None and row.finalization_status == FinalizationStatus.FINALIZED:
        finalized_at = _as_aware(row.finalized_at).isoformat() if row.finalized_at is not None else None
        _emit(
            guard,
            SecurityEventType.FINALIZED_EDIT_ATTEMPT,
            ctx,
            Outcome.DENIED,
            {"company_id": target_id, "user_role": principal.role, "finalized_at": finalized_at},
        )
        raise AuthorizationError(
            "Cannot modify finalized company data",
            details={"company_id": target_id, "finalized_at": finalized_at},
        )

    _emit(guard, SecurityEventType.FINALIZED_EDIT_CHECK_PASSED, ctx, Outcome.GRANTED, {"company_id": target_id})


def enforce_resource_ownership(
    session: Session,
    ctx: AccessContext,
    resource_type: str,
    *,
    allow_managers: bool = False,
    assigned_to_field: str | None = None,
    resource_id: str | None = None,
) -> None:
    """Allow the assignee or raiser of a row; managers too when ``allow_managers``.

    A missing row is a 404 and a row owned by someone else is a 403.
    """
    guard = "enforce_resource_ownership"
    principal = _require_principal(guard, SecurityEventType.RESOURCE_OWNERSHIP_NO_USER, ctx, resource_type=resource_type)
    target_id = resource_id or ctx.path_param("id", f"{resource_type}_id")
    details: dict[str, Any] = {"resource_type": resource_type, "resource_id": target_id}

    if target_id is None:
        _emit(guard, SecurityEventType.RESOURCE_NOT_FOUND, ctx, Outcome.DENIED, details)
        raise NotFoundError(f"{resource_type.capitalize()} not found")

    try:
        record = load_ownership(session, resource_type, target_id, assigned_to_field=assigned_to_field)
    except SQLAlchemyError as exc:
        logger.exception("ownership_lookup_failed", extra={"entity_type": resource_type, "entity_id": target_id, "error": str(exc)})
        _emit(guard, SecurityEventType.RESOURCE_OWNERSHIP_ERROR, ctx, Outcome.ERROR, {**details, "error": str(exc)[:500]})
        raise InfrastructureError("Internal server error") from exc

    if record is None:
        _emit(guard, SecurityEventType.RESOURCE_NOT_FOUND, ctx, Outcome.DENIED, details)
        raise NotFoundError(f"{resource_type.capitalize()} not found")

    if record.belongs_to(principal.id):
        _emit(guard, SecurityEventType.RESOURCE_OWNERSHIP_VERIFIED, ctx, Outcome.GRANTED, details)
        return

    if allow_managers and (is_in_role_group(principal.role, MANAGERS) or permissions_for(ctx).can_update_all_tasks):
        _emit(guard, SecurityEventType.RESOURCE_OWNERSHIP_MANAGER_ACCESS, ctx, Outcome.GRANTED, {**details, "user_role": principal.role})
        return

    _emit(
        guard,
        SecurityEventType.RESOURCE_OWNERSHIP_VIOLATION,
        ctx,
        Outcome.DENIED,
        {**details, "owner_id": record.owner_id, "user_role": principal.role},
    )
    raise AuthorizationError(
        f"Forbidden: You can only access your own {resource_type}s",
        details={"resource_type": resource_type},
    )


def enforce_bulk_operation_limits(
    ctx: AccessContext,
    ids: Sequence[Any] | None,
    *,
    max_items: int = DEFAULT_BULK_MAX_ITEMS,
) -> None:
    guard = "enforce_bulk_operation_limits"
    principal = _require_principal(guard, SecurityEventType.BULK_OPERATION_NO_USER, ctx)
    requested = len(ids) if ids is not None else 0

    if ctx.method.upper() == "DELETE" and not permissions_for(ctx).can_bulk_delete:
        _emit(guard, SecurityEventType.BULK_OPERATION_DENIED, ctx, Outcome.DENIED, {"user_role": principal.role, "requested": requested})
        raise AuthorizationError(
            "Forbidden: Bulk delete not allowed for your role",
            details={"required_permission": Capability.CAN_BULK_DELETE.value, "user_role": principal.role},
        )

    if requested > max_items:
        _emit(
            guard,
            SecurityEventType.BULK_OPERATION_LIMIT_EXCEEDED,
            ctx,
            Outcome.DENIED,
            {"requested": requested, "maximum": max_items},
        )
        raise ValidationError(
            f"Bulk operation limit exceeded. Maximum {max_items} items allowed",
            details={"requested": requested, "maximum": max_items},
        )

    _emit(guard, SecurityEventType.BULK_OPERATION_ALLOWED, ctx, Outcome.GRANTED, {"requested": requested, "maximum": max_items})


def log_sensitive_operation(ctx: AccessContext, operation: str, *, body_keys: Iterable[str] = ()) -> None:
    if ctx.principal is None:
        return
    record_security_event(
        SecurityEventType.SENSITIVE_OPERATION,
        ctx.user_id,
        ctx,
        Severity.LOW,
        {
            "operation_type": operation,
            "user_role": ctx.role,
            "resource_id": next(iter(ctx.path_params.values()), None),
            "body_keys": sorted(body_keys),
        },
    )


def enforce_request_integrity(ctx: AccessContext, *payloads: Any) -> None:
    """Reject request payloads carrying script or SQL injection markers."""
    matched = detect_malicious_content(*payloads)
    if not matched:
        return

    observe_authz_decision(guard="enforce_request_integrity", outcome=Outcome.ATTACK.value)
    record_security_event(
        SecurityEventType.MALICIOUS_REQUEST_DETECTED,
        ctx.user_id,
        ctx,
        Severity.CRITICAL,
        {"patterns": matched, "path": ctx.path, "method": ctx.method},
    )
    raise ValidationError("Request contains potentially malicious content", details={"patterns": matched})
