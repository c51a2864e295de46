"""Company finalization state machine: Open (null/Pending) -> Finalized -> Open."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime, timezone

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from leadflow.context import get_correlation_id
from leadflow.crm.models import Company, ConversionStatus, FinalizationStatus, NotificationType
from leadflow.crm.notifications import get_notification_sink
from leadflow.crm.schemas import CompanyPage, CompanyRead, PageParams
from leadflow.metrics import observe_workflow_transition
from leadflow.otel import get_tracer
from leadflow.security.errors import ConflictReason, NotFoundError, StateConflictError
from leadflow.security.events import RequestDetails, SecurityEventType, Severity, record_security_event
from leadflow.security.roles import Role, resolve_role


logger = logging.getLogger("leadflow.workflows")
tracer = get_tracer("leadflow.workflows")

FULL_QUEUE_ROLES = frozenset({Role.ADMIN, Role.MANAGER, Role.HEAD, Role.SUB_HEAD})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _check_finalizable(company: Company | None) -> Company:
    if company is None:
        raise NotFoundError("Company not found")
    if company.finalization_status == FinalizationStatus.FINALIZED:
        raise StateConflictError(ConflictReason.ALREADY_FINALIZED, "Company is already finalized")
    if company.conversion_status != ConversionStatus.CONFIRMED:
        raise StateConflictError(
            ConflictReason.CONVERSION_NOT_CONFIRMED,
            "Can only finalize companies with Confirmed conversion status",
            details={"conversion_status": company.conversion_status},
        )
    return company


def _check_unfinalizable(company: Company | None) -> Company:
    if company is None:
        raise NotFoundError("Company not found")
    if company.finalization_status != FinalizationStatus.FINALIZED:
        raise StateConflictError(ConflictReason.NOT_FINALIZED, "Company is not finalized")
    return company


class FinalizationWorkflow:
    workflow = "finalization"
    entity_type = "company"

    def finalize(
        self,
        session: Session,
        company_id: str,
        acting_user_id: str,
        *,
        request: RequestDetails | None = None,
    ) -> CompanyRead:
        with tracer.start_as_current_span("workflow.finalize") as span:
            span.set_attribute("company_id", company_id)
            span.set_attribute("user_id", acting_user_id)
            correlation_id = get_correlation_id()
            if correlation_id:
                span.set_attribute("correlation_id", correlation_id)
            return self._finalize(session, company_id, acting_user_id, request=request)

    def _finalize(
        self,
        session: Session,
        company_id: str,
        acting_user_id: str,
        *,
        request: RequestDetails | None = None,
    ) -> CompanyRead:
        _check_finalizable(session.get(Company, company_id))

        now = utcnow()
        result = session.execute(
            update(Company)
            .where(
                Company.id == company_id,
                Company.conversion_status == ConversionStatus.CONFIRMED.value,
                or_(
                    Company.finalization_status.is_(None),
                    Company.finalization_status != FinalizationStatus.FINALIZED.value,
                ),
            )
            .values(
                finalization_status=FinalizationStatus.FINALIZED.value,
                finalized_by_id=acting_user_id,
                finalized_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # Lost a race: report whichever precondition the winner changed.
            session.rollback()
            session.expire_all()
            _check_finalizable(session.get(Company, company_id))
            raise StateConflictError(ConflictReason.ALREADY_FINALIZED, "Company is already finalized")
        session.commit()

        company = session.get(Company, company_id, populate_existing=True)
        observe_workflow_transition(self.workflow, "finalize")
        logger.info("company_finalized", extra={"company_id": company_id, "user_id": acting_user_id})
        record_security_event(
            SecurityEventType.COMPANY_FINALIZED,
            acting_user_id,
            request,
            Severity.LOW,
            {"company_id": company_id},
        )
        return CompanyRead.model_validate(company)

    def unfinalize(
        self,
        session: Session,
        company_id: str,
        acting_user_id: str,
        *,
        request: RequestDetails | None = None,
    ) -> CompanyRead:
        previous = _check_unfinalizable(session.get(Company, company_id))
        previous_finalized_by = previous.finalized_by_id

        result = session.execute(
            update(Company)
            .where(Company.id == company_id, Company.finalization_status == FinalizationStatus.FINALIZED.value)
            .values(finalization_status=None, finalized_by_id=None, finalized_at=None, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            session.rollback()
            session.expire_all()
            _check_unfinalizable(session.get(Company, company_id))
            raise StateConflictError(ConflictReason.NOT_FINALIZED, "Company is not finalized")
        session.commit()

        company = session.get(Company, company_id, populate_existing=True)
        observe_workflow_transition(self.workflow, "unfinalize")
        logger.info("company_unfinalized", extra={"company_id": company_id, "user_id": acting_user_id})
        record_security_event(
            SecurityEventType.COMPANY_UNFINALIZED,
            acting_user_id,
            request,
            Severity.LOW,
            {"company_id": company_id, "previous_finalized_by_id": previous_finalized_by},
        )
        return CompanyRead.model_validate(company)

    def bulk_approve(
        self,
        session: Session,
        ids: Sequence[str],
        acting_user_id: str,
        *,
        request: RequestDetails | None = None,
    ) -> int:
        """Finalize every listed company still Pending; returns how many moved."""
        if not ids:
            return 0

        now = utcnow()
        rows = session.execute(
            update(Company)
            .where(Company.id.in_(list(ids)), Company.finalization_status == FinalizationStatus.PENDING.value)
            .values(
                finalization_status=FinalizationStatus.FINALIZED.value,
                finalized_by_id=acting_user_id,
                finalized_at=now,
                updated_at=now,
            )
            .returning(Company.id, Company.name, Company.assigned_data_collector_id, Company.assigned_converter_id)
            .execution_options(synchronize_session=False)
        ).all()
        session.commit()

        for row in rows:
            self._notify_assignees(
                row,
                f'Company "{row.name}" has been approved and finalized',
                NotificationType.SUCCESS,
            )

        observe_workflow_transition(self.workflow, "bulk_approve", len(rows))
        logger.info("companies_bulk_approved", extra={"user_id": acting_user_id, "updated": len(rows)})
        record_security_event(
            SecurityEventType.COMPANIES_BULK_APPROVED,
            acting_user_id,
            request,
            Severity.LOW,
            {"requested": len(ids), "updated": len(rows), "company_ids": [row.id for row in rows]},
        )
        return len(rows)

    def bulk_reject(
        self,
        session: Session,
        ids: Sequence[str],
        acting_user_id: str | None = None,
        *,
        request: RequestDetails | None = None,
    ) -> int:
        """Reset every listed company to Pending regardless of its current state."""
        if not ids:
            return 0

        rows = session.execute(
            update(Company)
            .where(Company.id.in_(list(ids)))
            .values(
                finalization_status=FinalizationStatus.PENDING.value,
                finalized_by_id=None,
                finalized_at=None,
                updated_at=utcnow(),
            )
            .returning(Company.id, Company.name, Company.assigned_data_collector_id, Company.assigned_converter_id)
            .execution_options(synchronize_session=False)
        ).all()
        session.commit()

        for row in rows:
            self._notify_assignees(row, f'Company "{row.name}" approval was rejected', NotificationType.WARNING)

        observe_workflow_transition(self.workflow, "bulk_reject", len(rows))
        logger.info("companies_bulk_rejected", extra={"user_id": acting_user_id, "updated": len(rows)})
        record_security_event(
            SecurityEventType.COMPANIES_BULK_REJECTED,
            acting_user_id,
            request,
            Severity.LOW,
            {"requested": len(ids), "updated": len(rows), "company_ids": [row.id for row in rows]},
        )
        return len(rows)

    def get_approval_queue(
        self,
        session: Session,
        role: Role | str | None,
        user_id: str,
        params: PageParams,
    ) -> CompanyPage:
        resolved = resolve_role(role)
        if resolved is None or (resolved not in FULL_QUEUE_ROLES and resolved is not Role.CONVERTER):
            return CompanyPage(data=[], pagination=params.meta(0))

        conditions = [Company.finalization_status == FinalizationStatus.PENDING.value]
        if resolved is Role.CONVERTER:
            conditions.append(or_(Company.assigned_converter_id == user_id, Company.is_public.is_(True)))

        total = session.scalar(select(func.count()).select_from(Company).where(*conditions)) or 0
        companies = session.scalars(
            select(Company)
            .where(*conditions)
            .order_by(Company.created_at.desc(), Company.id)
            .offset(params.offset)
            .limit(params.limit)
        ).all()
        return CompanyPage(
            data=[CompanyRead.model_validate(company) for company in companies],
            pagination=params.meta(total),
        )

    def _notify_assignees(self, row, message: str, notification_type: NotificationType) -> None:  # type: ignore[no-untyped-def]
        sink = get_notification_sink()
        for user_id in {row.assigned_data_collector_id, row.assigned_converter_id} - {None}:
            try:
                sink.notify(user_id, message, notification_type, entity_type=self.entity_type, entity_id=row.id)
            except Exception as exc:
                logger.error(
                    "bulk_notification_failed",
                    extra={"company_id": row.id, "user_id": user_id, "error": str(exc)},
                )


finalization_workflow = FinalizationWorkflow()
