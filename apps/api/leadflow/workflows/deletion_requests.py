"""Propose/review/cancel flow for follow-up deletions by roles without direct delete rights."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Literal

from sqlalchemy import case, delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from leadflow.crm.models import (
    Company,
    DeletionRequestStatus,
    FollowUp,
    FollowUpDeletionRequest,
    NotificationType,
    User,
)
from leadflow.crm.notifications import get_notification_sink
from leadflow.crm.schemas import DeletionRequestListItem, DeletionRequestRead
from leadflow.metrics import observe_workflow_transition
from leadflow.security.errors import ConflictReason, NotFoundError, StateConflictError
from leadflow.security.events import RequestDetails, SecurityEventType, Severity, record_security_event
from leadflow.security.roles import DELETION_REVIEWERS


logger = logging.getLogger("leadflow.workflows")

ReviewAction = Literal["approve", "reject"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeletionRequestWorkflow:
    workflow = "followup_deletion"
    entity_type = "followup_deletion_request"

    def propose(
        self,
        session: Session,
        followup_id: str,
        requester_id: str,
        reason: str | None = None,
        *,
        requester_name: str | None = None,
        request: RequestDetails | None = None,
    ) -> DeletionRequestRead:
        follow_up = session.get(FollowUp, followup_id)
        if follow_up is None:
            raise NotFoundError("Follow-up not found")

        pending = session.scalar(
            select(FollowUpDeletionRequest.id).where(
                FollowUpDeletionRequest.followup_id == followup_id,
                FollowUpDeletionRequest.status == DeletionRequestStatus.PENDING.value,
            )
        )
        if pending is not None:
            raise StateConflictError(
                ConflictReason.DUPLICATE_PENDING,
                "A deletion request for this follow-up is already pending",
                details={"request_id": pending},
            )

        deletion_request = FollowUpDeletionRequest(
            followup_id=followup_id,
            company_id=follow_up.company_id,
            requested_by_id=requester_id,
            reason=reason,
            status=DeletionRequestStatus.PENDING.value,
        )
        session.add(deletion_request)
        try:
            session.commit()
        except IntegrityError as exc:
            # The partial unique index caught a concurrent proposal.
            session.rollback()
            raise StateConflictError(
                ConflictReason.DUPLICATE_PENDING,
                "A deletion request for this follow-up is already pending",
            ) from exc
        session.refresh(deletion_request)

        try:
            get_notification_sink().notify_roles(
                DELETION_REVIEWERS,
                f"New follow-up deletion request from {requester_name or requester_id}",
                NotificationType.INFO,
                entity_type=self.entity_type,
                entity_id=deletion_request.id,
            )
        except Exception as exc:
            logger.error(
                "deletion_request_notification_failed",
                extra={"request_id": deletion_request.id, "user_id": requester_id, "error": str(exc)},
            )
        observe_workflow_transition(self.workflow, "propose")
        logger.info(
            "followup_deletion_requested",
            extra={"request_id": deletion_request.id, "user_id": requester_id, "entity_id": followup_id},
        )
        record_security_event(
            SecurityEventType.FOLLOWUP_DELETION_REQUESTED,
            requester_id,
            request,
            Severity.LOW,
            {"request_id": deletion_request.id, "followup_id": followup_id, "company_id": follow_up.company_id},
        )
        return DeletionRequestRead.model_validate(deletion_request)

    def review(
        self,
        session: Session,
        request_id: str,
        reviewer_id: str,
        action: ReviewAction,
        rejection_reason: str | None = None,
        *,
        request: RequestDetails | None = None,
    ) -> DeletionRequestRead:
        deletion_request = session.get(FollowUpDeletionRequest, request_id)
        if deletion_request is None:
            raise NotFoundError("Deletion request not found")
        if deletion_request.status != DeletionRequestStatus.PENDING:
            raise StateConflictError(
                ConflictReason.ALREADY_REVIEWED,
                "This deletion request has already been reviewed",
                details={"status": deletion_request.status},
            )

        new_status = DeletionRequestStatus.APPROVED if action == "approve" else DeletionRequestStatus.REJECTED
        followup_id = deletion_request.followup_id
        requester_id = deletion_request.requested_by_id
        now = utcnow()

        result = session.execute(
            update(FollowUpDeletionRequest)
            .where(
                FollowUpDeletionRequest.id == request_id,
                FollowUpDeletionRequest.status == DeletionRequestStatus.PENDING.value,
            )
            .values(
                status=new_status.value,
                reviewed_by_id=reviewer_id,
                reviewed_at=now,
                rejection_reason=rejection_reason,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            session.rollback()
            raise StateConflictError(ConflictReason.ALREADY_REVIEWED, "This deletion request has already been reviewed")

        follow_up_deleted = False
        if new_status is DeletionRequestStatus.APPROVED:
            # Already gone is fine: the approval outcome is the same.
            deleted = session.execute(
                delete(FollowUp).where(FollowUp.id == followup_id).execution_options(synchronize_session=False)
            )
            follow_up_deleted = deleted.rowcount > 0
        session.commit()

        if new_status is DeletionRequestStatus.APPROVED:
            message = "Your follow-up deletion request has been approved"
            notification_type = NotificationType.SUCCESS
        else:
            message = f"Your follow-up deletion request has been rejected: {rejection_reason or 'No reason provided'}"
            notification_type = NotificationType.WARNING
        try:
            get_notification_sink().notify(
                requester_id,
                message,
                notification_type,
                entity_type=self.entity_type,
                entity_id=request_id,
            )
        except Exception as exc:
            logger.error(
                "deletion_request_notification_failed",
                extra={"request_id": request_id, "user_id": requester_id, "error": str(exc)},
            )

        observe_workflow_transition(self.workflow, action)
        logger.info(
            "followup_deletion_reviewed",
            extra={"request_id": request_id, "user_id": reviewer_id, "status": new_status.value},
        )
        record_security_event(
            SecurityEventType.FOLLOWUP_DELETION_REVIEWED,
            reviewer_id,
            request,
            Severity.LOW,
            {
                "request_id": request_id,
                "followup_id": followup_id,
                "action": action,
                "follow_up_deleted": follow_up_deleted,
            },
        )
        return DeletionRequestRead.model_validate(session.get(FollowUpDeletionRequest, request_id, populate_existing=True))

    def cancel(
        self,
        session: Session,
        request_id: str,
        requester_id: str,
        *,
        request: RequestDetails | None = None,
    ) -> None:
        """Remove the caller's own pending request; every other case reads as not found."""
        result = session.execute(
            delete(FollowUpDeletionRequest)
            .where(
                FollowUpDeletionRequest.id == request_id,
                FollowUpDeletionRequest.requested_by_id == requester_id,
                FollowUpDeletionRequest.status == DeletionRequestStatus.PENDING.value,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            session.rollback()
            raise NotFoundError("Deletion request not found or unauthorized")
        session.commit()

        observe_workflow_transition(self.workflow, "cancel")
        record_security_event(
            SecurityEventType.FOLLOWUP_DELETION_CANCELLED,
            requester_id,
            request,
            Severity.LOW,
            {"request_id": request_id},
        )

    def delete_directly(
        self,
        session: Session,
        followup_id: str,
        actor_user_id: str,
        *,
        request: RequestDetails | None = None,
    ) -> None:
        """Admin bypass: remove the follow-up without touching deletion requests."""
        follow_up = session.get(FollowUp, followup_id)
        if follow_up is None:
            raise NotFoundError("Follow-up not found")
        company_id = follow_up.company_id

        session.delete(follow_up)
        session.commit()

        observe_workflow_transition(self.workflow, "direct_delete")
        record_security_event(
            SecurityEventType.FOLLOWUP_DIRECT_DELETE,
            actor_user_id,
            request,
            Severity.LOW,
            {"followup_id": followup_id, "company_id": company_id},
        )

    def list_requests(self, session: Session, *, requested_by_id: str | None = None) -> list[DeletionRequestListItem]:
        """Pending first, newest first within each status."""
        statement = (
            select(
                FollowUpDeletionRequest,
                Company.name.label("company_name"),
                User.email.label("requested_by_email"),
                FollowUp.follow_up_date.label("follow_up_date"),
            )
            .outerjoin(Company, Company.id == FollowUpDeletionRequest.company_id)
            .outerjoin(User, User.id == FollowUpDeletionRequest.requested_by_id)
            .outerjoin(FollowUp, FollowUp.id == FollowUpDeletionRequest.followup_id)
            .order_by(
                case((FollowUpDeletionRequest.status == DeletionRequestStatus.PENDING.value, 0), else_=1),
                FollowUpDeletionRequest.created_at.desc(),
            )
        )
        if requested_by_id is not None:
            statement = statement.where(FollowUpDeletionRequest.requested_by_id == requested_by_id)

        items: list[DeletionRequestListItem] = []
        for row in session.execute(statement).all():
            item = DeletionRequestListItem.model_validate(row.FollowUpDeletionRequest)
            item.company_name = row.company_name
            item.requested_by_email = row.requested_by_email
            item.follow_up_date = row.follow_up_date
            items.append(item)
        return items


deletion_request_workflow = DeletionRequestWorkflow()
