from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from leadflow.core.config import get_settings
from leadflow.core.database import get_db
from leadflow.core.rbac import (
    finalized_edit_prevented,
    get_authenticated_context,
    read_only_enforced,
    require_capability,
    require_ownership,
    require_roles,
    task_update_enforced,
)
from leadflow.crm.schemas import (
    BulkActionResult,
    BulkApprovalRequest,
    BulkDeleteRequest,
    CompanyPage,
    CompanyRead,
    CompanyUpdate,
    DeletionRequestCreate,
    DeletionRequestListItem,
    DeletionRequestRead,
    DeletionRequestReview,
    FollowUpCreate,
    FollowUpRead,
    FollowUpUpdate,
    PageParams,
    TaskRead,
    TaskUpdate,
    TicketRead,
)
from leadflow.crm.service import company_service, follow_up_service, task_service, ticket_service
from leadflow.security.capabilities import get_capability_backend
from leadflow.security.context import AccessContext
from leadflow.security.guards import enforce_bulk_operation_limits, enforce_request_integrity, log_sensitive_operation
from leadflow.security.roles import DELETION_REVIEWERS, FINALIZERS, Capability, Role
from leadflow.workflows.deletion_requests import deletion_request_workflow
from leadflow.workflows.finalization import finalization_workflow


companies_router = APIRouter(prefix="/api/v1/companies", tags=["companies"])
follow_ups_router = APIRouter(prefix="/api/v1/follow-ups", tags=["follow_ups"])
deletion_requests_router = APIRouter(prefix="/api/v1/followup-deletion-requests", tags=["followup_deletion_requests"])
tasks_router = APIRouter(prefix="/api/v1/tasks", tags=["tasks"])
tickets_router = APIRouter(prefix="/api/v1/tickets", tags=["tickets"])
admin_router = APIRouter(prefix="/api/v1/admin", tags=["admin"])


@companies_router.get("/approvals", response_model=CompanyPage)
def get_approval_queue(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=100),
    db: Session = Depends(get_db),
    ctx: AccessContext = Depends(get_authenticated_context),
) -> CompanyPage:
    return finalization_workflow.get_approval_queue(db, ctx.role, ctx.user_id or "", PageParams(page=page, limit=limit))


@companies_router.get("/finalized", response_model=CompanyPage)
def list_finalized_companies(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=100),
    db: Session = Depends(get_db),
    ctx: AccessContext = Depends(require_capability(Capability.CAN_READ_FINALIZED, entity_type="company")),
) -> CompanyPage:
    return company_service.list_finalized(db, PageParams(page=page, limit=limit))


@companies_router.put("/approvals/bulk", response_model=BulkActionResult)
def bulk_review_approvals(
    dto: BulkApprovalRequest,
    db: Session = Depends(get_db),
    ctx: AccessContext = Depends(require_roles(*FINALIZERS)),
) -> BulkActionResult:
    enforce_bulk_operation_limits(ctx, dto.ids, max_items=get_settings().bulk_operation_max_items)
    log_sensitive_operation(ctx, f"BULK_{dto.action.upper()}", body_keys=dto.model_fields_set)
    if dto.action == "approve":
        updated = finalization_workflow.bulk_approve(db, dto.ids, ctx.user_id or "", request=ctx)
        return BulkActionResult(message=f"{updated} companies approved and finalized", updated=updated)
    updated = finalization_workflow.bulk_reject(db, dto.ids, ctx.user_id, request=ctx)
    return BulkActionResult(message=f"{updated} companies returned to pending", updated=updated)


@companies_router.put("/{company_id}/finalize", response_model=CompanyRead)
def finalize_company(
    company_id: str,
    db: Session = Depends(get_db),
    ctx: AccessContext = Depends(require_roles(*FINALIZERS)),
) -> CompanyRead:
    log_sensitive_operation(ctx, "FINALIZE_COMPANY")
    return finalization_workflow.finalize(db, company_id, ctx.user_id or "", request=ctx)


@companies_router.put("/{company_id}/unfinalize", response_model=CompanyRead)
def unfinalize_company(
    company_id: str,
    db: Session = Depends(get_db),
    ctx: AccessContext = Depends(require_roles(*FINALIZERS)),
) -> CompanyRead:
    log_sensitive_operation(ctx, "UNFINALIZE_COMPANY")
    return finalization_workflow.unfinalize(db, company_id, ctx.user_id or "", request=ctx)


@companies_router.put("/{company_id}", response_model=CompanyRead)
def update_company(
    company_id: str,
    dto: CompanyUpdate,
    db: Session = Depends(get_db),
    ctx: AccessContext = Depends(finalized_edit_prevented),
) -> CompanyRead:
    enforce_request_integrity(ctx, dto.model_dump(exclude_unset=True))
    return company_service.update_company(db, ctx.user_id or "", company_id, dto)


@companies_router.delete("/bulk", response_model=BulkActionResult)
def bulk_delete_companies(
    dto: BulkDeleteRequest,
    db: Session = Depends(get_db),
    ctx: AccessContext = Depends(read_only_enforced),
) -> BulkActionResult:
    enforce_bulk_operation_limits(ctx, dto.ids, max_items=get_settings().bulk_operation_max_items)
    log_sensitive_operation(ctx, "BULK_DELETE_COMPANIES", body_keys=dto.model_fields_set)
    deleted = company_service.bulk_delete(db, ctx.user_id or "", dto.ids)
    return BulkActionResult(message=f"{deleted} companies deleted", updated=deleted)


@companies_router.delete("/{company_id}", status_code=status.HTTP_200_OK)
def delete_company(
    company_id: str,
    db: Session = Depends(get_db),
    ctx: AccessContext = Depends(finalized_edit_prevented),
) -> dict[str, str]:
    company_service.delete_company(db, ctx.user_id or "", company_id)
    return {"status": "deleted"}


@follow_ups_router.get("", response_model=list[FollowUpRead])
def list_follow_ups(
    company_id: str = Query(min_length=1),
    db: Session = Depends(get_db),
    ctx: AccessContext = Depends(get_authenticated_context),
) -> list[FollowUpRead]:
    return follow_up_service.list_for_company(db, company_id)


@follow_ups_router.post("", response_model=FollowUpRead, status_code=status.HTTP_201_CREATED)
def create_follow_up(
    dto: FollowUpCreate,
    db: Session = Depends(get_db),
    ctx: AccessContext = Depends(read_only_enforced),
) -> FollowUpRead:
    enforce_request_integrity(ctx, dto.model_dump(mode="json"))
    return follow_up_service.create_follow_up(db, ctx.user_id or "", dto)


@follow_ups_router.put("/{followup_id}", response_model=FollowUpRead)
def update_follow_up(
    followup_id: str,
    dto: FollowUpUpdate,
    db: Session = Depends(get_db),
    ctx: AccessContext = Depends(read_only_enforced),
) -> FollowUpRead:
    enforce_request_integrity(ctx, dto.model_dump(mode="json", exclude_unset=True))
    return follow_up_service.update_follow_up(db, ctx.user_id or "", followup_id, dto)


@follow_ups_router.delete("/{followup_id}", status_code=status.HTTP_200_OK)
def delete_follow_up(
    followup_id: str,
    db: Session = Depends(get_db),
    ctx: AccessContext = Depends(require_roles(Role.ADMIN)),
) -> dict[str, str]:
    log_sensitive_operation(ctx, "DELETE_FOLLOW_UP")
    deletion_request_workflow.delete_directly(db, followup_id, ctx.user_id or "", request=ctx)
    return {"status": "deleted"}


@deletion_requests_router.get("", response_model=list[DeletionRequestListItem])
def list_deletion_requests(
    db: Session = Depends(get_db),
    ctx: AccessContext = Depends(require_roles(*DELETION_REVIEWERS)),
) -> list[DeletionRequestListItem]:
    return deletion_request_workflow.list_requests(db)


@deletion_requests_router.get("/my", response_model=list[DeletionRequestListItem])
def list_my_deletion_requests(
    db: Session = Depends(get_db),
    ctx: AccessContext = Depends(get_authenticated_context),
) -> list[DeletionRequestListItem]:
    return deletion_request_workflow.list_requests(db, requested_by_id=ctx.user_id)


@deletion_requests_router.post("", response_model=DeletionRequestRead, status_code=status.HTTP_201_CREATED)
def propose_deletion(
    dto: DeletionRequestCreate,
    db: Session = Depends(get_db),
    ctx: AccessContext = Depends(read_only_enforced),
) -> DeletionRequestRead:
    enforce_request_integrity(ctx, dto.model_dump())
    return deletion_request_workflow.propose(
        db,
        dto.followup_id,
        ctx.user_id or "",
        dto.reason,
        requester_name=ctx.principal.email if ctx.principal is not None else None,
        request=ctx,
    )


@deletion_requests_router.put("/{request_id}/review", response_model=DeletionRequestRead)
def review_deletion(
    request_id: str,
    dto: DeletionRequestReview,
    db: Session = Depends(get_db),
    ctx: AccessContext = Depends(require_roles(*DELETION_REVIEWERS)),
) -> DeletionRequestRead:
    enforce_request_integrity(ctx, dto.model_dump())
    return deletion_request_workflow.review(
        db,
        request_id,
        ctx.user_id or "",
        dto.action,
        dto.rejection_reason,
        request=ctx,
    )


@deletion_requests_router.delete("/{request_id}", status_code=status.HTTP_200_OK)
def cancel_deletion(
    request_id: str,
    db: Session = Depends(get_db),
    ctx: AccessContext = Depends(get_authenticated_context),
) -> dict[str, str]:
    deletion_request_workflow.cancel(db, request_id, ctx.user_id or "", request=ctx)
    return {"status": "cancelled"}


@tasks_router.patch("/{task_id}", response_model=TaskRead)
def update_task(
    task_id: str,
    dto: TaskUpdate,
    db: Session = Depends(get_db),
    ctx: AccessContext = Depends(task_update_enforced),
) -> TaskRead:
    enforce_request_integrity(ctx, dto.model_dump(exclude_unset=True))
    return task_service.update_task(db, ctx, task_id, dto)


@tickets_router.get("/{ticket_id}", response_model=TicketRead)
def get_ticket(
    ticket_id: str,
    db: Session = Depends(get_db),
    ctx: AccessContext = Depends(require_ownership("ticket", allow_managers=True)),
) -> TicketRead:
    return ticket_service.get_ticket(db, ticket_id)


@admin_router.get("/role-permissions")
def get_role_permissions(
    ctx: AccessContext = Depends(require_capability(Capability.CAN_MANAGE_USERS, entity_type="role_permissions")),
) -> dict[str, Any]:
    backend = get_capability_backend()
    return {role.value: backend.permissions_for(role, ctx).as_dict() for role in Role}
