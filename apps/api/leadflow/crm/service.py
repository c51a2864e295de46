from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime, timezone

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from leadflow.crm.models import Company, FinalizationStatus, FollowUp, Task, Ticket
from leadflow.crm.schemas import (
    FOLLOW_UP_DATE_ORDER_MESSAGE,
    CompanyPage,
    CompanyRead,
    CompanyUpdate,
    FollowUpCreate,
    FollowUpRead,
    FollowUpUpdate,
    PageParams,
    TaskRead,
    TaskUpdate,
    TicketRead,
    follow_up_dates_in_order,
)
from leadflow.security.context import AccessContext
from leadflow.security.errors import AuthorizationError, NotFoundError, ValidationError


logger = logging.getLogger("leadflow.crm")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FollowUpService:
    entity_type = "follow_up"

    def list_for_company(self, session: Session, company_id: str) -> list[FollowUpRead]:
        rows = session.scalars(
            select(FollowUp).where(FollowUp.company_id == company_id).order_by(FollowUp.follow_up_date.desc())
        ).all()
        return [FollowUpRead.model_validate(row) for row in rows]

    def create_follow_up(self, session: Session, actor_user_id: str, dto: FollowUpCreate) -> FollowUpRead:
        if session.get(Company, dto.company_id) is None:
            raise NotFoundError("Company not found")

        follow_up = FollowUp(
            company_id=dto.company_id,
            contacted_date=dto.contacted_date,
            follow_up_date=dto.follow_up_date,
            follow_up_notes=dto.follow_up_notes,
            contacted_by_id=actor_user_id,
        )
        session.add(follow_up)
        session.commit()
        session.refresh(follow_up)
        logger.info("follow_up_created", extra={"entity_id": follow_up.id, "company_id": dto.company_id, "user_id": actor_user_id})
        return FollowUpRead.model_validate(follow_up)

    def update_follow_up(self, session: Session, actor_user_id: str, followup_id: str, dto: FollowUpUpdate) -> FollowUpRead:
        """Apply a partial update; the date ordering is checked on the merged row."""
        follow_up = session.get(FollowUp, followup_id)
        if follow_up is None:
            raise NotFoundError("Follow-up not found")

        changes = dto.model_dump(exclude_unset=True, exclude_none=True)
        contacted_date = changes.get("contacted_date", follow_up.contacted_date)
        follow_up_date = changes.get("follow_up_date", follow_up.follow_up_date)
        if not follow_up_dates_in_order(contacted_date, follow_up_date):
            raise ValidationError(
                FOLLOW_UP_DATE_ORDER_MESSAGE,
                details={"field": "follow_up_date", "contacted_date": contacted_date, "follow_up_date": follow_up_date},
            )

        for field, value in changes.items():
            setattr(follow_up, field, value)
        session.commit()
        session.refresh(follow_up)
        logger.info("follow_up_updated", extra={"entity_id": followup_id, "user_id": actor_user_id})
        return FollowUpRead.model_validate(follow_up)


class CompanyService:
    entity_type = "company"

    def update_company(self, session: Session, actor_user_id: str, company_id: str, dto: CompanyUpdate) -> CompanyRead:
        company = session.get(Company, company_id)
        if company is None:
            raise NotFoundError("Company not found")

        for field, value in dto.model_dump(exclude_unset=True).items():
            setattr(company, field, value)
        session.commit()
        session.refresh(company)
        logger.info("company_updated", extra={"company_id": company_id, "user_id": actor_user_id})
        return CompanyRead.model_validate(company)

    def delete_company(self, session: Session, actor_user_id: str, company_id: str) -> None:
        company = session.get(Company, company_id)
        if company is None:
            raise NotFoundError("Company not found")
        session.delete(company)
        session.commit()
        logger.info("company_deleted", extra={"company_id": company_id, "user_id": actor_user_id})

    def bulk_delete(self, session: Session, actor_user_id: str, ids: Sequence[str]) -> int:
        """Delete the listed companies; finalized ones are left in place."""
        result = session.execute(
            delete(Company)
            .where(
                Company.id.in_(list(ids)),
                (Company.finalization_status.is_(None)) | (Company.finalization_status != FinalizationStatus.FINALIZED.value),
            )
            .execution_options(synchronize_session=False)
        )
        session.commit()
        logger.info("companies_bulk_deleted", extra={"user_id": actor_user_id, "updated": result.rowcount})
        return result.rowcount

    def list_finalized(self, session: Session, params: PageParams) -> CompanyPage:
        condition = Company.finalization_status == FinalizationStatus.FINALIZED.value
        total = session.scalar(select(func.count()).select_from(Company).where(condition)) or 0
        rows = session.scalars(
            select(Company)
            .where(condition)
            .order_by(Company.finalized_at.desc(), Company.id)
            .offset(params.offset)
            .limit(params.limit)
        ).all()
        return CompanyPage(data=[CompanyRead.model_validate(row) for row in rows], pagination=params.meta(total))


class TaskService:
    entity_type = "task"

    def update_task(self, session: Session, ctx: AccessContext, task_id: str, dto: TaskUpdate) -> TaskRead:
        task = session.get(Task, task_id)
        if task is None:
            raise NotFoundError("Task not found")
        if ctx.must_be_assigned_user and task.assigned_to_id != ctx.user_id:
            raise AuthorizationError(
                "Forbidden: You can only update tasks assigned to you",
                details={"resource_type": self.entity_type},
            )

        for field, value in dto.model_dump(exclude_unset=True, exclude_none=True).items():
            setattr(task, field, value)
        task.updated_at = utcnow()
        session.commit()
        session.refresh(task)
        logger.info("task_updated", extra={"entity_id": task_id, "user_id": ctx.user_id, "status": task.status})
        return TaskRead.model_validate(task)


class TicketService:
    entity_type = "ticket"

    def get_ticket(self, session: Session, ticket_id: str) -> TicketRead:
        ticket = session.get(Ticket, ticket_id)
        if ticket is None:
            raise NotFoundError("Ticket not found")
        return TicketRead.model_validate(ticket)


follow_up_service = FollowUpService()
company_service = CompanyService()
task_service = TaskService()
ticket_service = TicketService()
