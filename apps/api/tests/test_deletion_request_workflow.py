from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadflow.core.database import Base
from leadflow.core.events import InternalEvent, event_bus
from leadflow.crm.models import Company, FollowUp, FollowUpDeletionRequest, Notification, User
from leadflow.crm.notifications import (
    NOTIFICATION_CREATED_EVENT,
    DbNotificationSink,
    get_notification_sink,
    set_notification_sink,
)
from leadflow.models.security_event import SecurityEvent
from leadflow.security.errors import ConflictReason, NotFoundError, StateConflictError
from leadflow.security.events import SecurityEventLog, get_security_event_log, set_security_event_log
from leadflow.workflows.deletion_requests import deletion_request_workflow


@pytest.fixture()
def session_factory() -> Generator[sessionmaker[Session], None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    previous_log = get_security_event_log()
    previous_sink = get_notification_sink()
    set_security_event_log(SecurityEventLog(session_factory=SessionLocal))
    set_notification_sink(DbNotificationSink(session_factory=SessionLocal))
    try:
        yield SessionLocal
    finally:
        set_security_event_log(previous_log)
        set_notification_sink(previous_sink)
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def seeded(db_session: Session) -> Session:
    contacted = datetime(2026, 5, 1, 9, 0, tzinfo=timezone.utc)
    db_session.add_all(
        [
            User(id="requester", email="collector@example.com", role="DataCollector"),
            User(id="manager", email="manager@example.com", role="Manager"),
            User(id="head", email="head@example.com", role="Head"),
            User(id="retired-head", email="old-head@example.com", role="Head", is_active=False),
            Company(id="company-1", name="Acme"),
        ]
    )
    db_session.flush()
    db_session.add_all(
        [
            FollowUp(id="fu-x", company_id="company-1", contacted_date=contacted, follow_up_date=contacted + timedelta(days=3)),
            FollowUp(id="fu-y", company_id="company-1", contacted_date=contacted, follow_up_date=contacted + timedelta(days=7)),
        ]
    )
    db_session.commit()
    return db_session


def _notifications_for(session_factory: sessionmaker[Session], user_id: str) -> list[Notification]:
    with session_factory() as session:
        return list(session.scalars(select(Notification).where(Notification.user_id == user_id).order_by(Notification.created_at)))


def test_propose_and_approve_deletes_follow_up(seeded: Session, session_factory: sessionmaker[Session]) -> None:
    proposed = deletion_request_workflow.propose(
        seeded,
        "fu-x",
        "requester",
        "duplicate entry, wrong date",
        requester_name="collector@example.com",
    )
    assert proposed.status == "pending"
    assert proposed.company_id == "company-1"

    reviewed = deletion_request_workflow.review(seeded, proposed.id, "manager", "approve")

    assert reviewed.status == "approved"
    assert reviewed.reviewed_by_id == "manager"
    assert reviewed.reviewed_at is not None
    assert reviewed.rejection_reason is None
    seeded.expire_all()
    assert seeded.get(FollowUp, "fu-x") is None
    assert seeded.get(FollowUp, "fu-y") is not None

    requester_notifications = _notifications_for(session_factory, "requester")
    assert [(row.type, row.message) for row in requester_notifications] == [
        ("success", "Your follow-up deletion request has been approved"),
    ]


def test_propose_notifies_active_reviewers(seeded: Session, session_factory: sessionmaker[Session]) -> None:
    deletion_request_workflow.propose(seeded, "fu-x", "requester", requester_name="collector@example.com")

    with session_factory() as session:
        recipients = set(session.scalars(select(Notification.user_id)))
        message = session.scalars(select(Notification.message)).first()
    assert recipients == {"manager", "head"}
    assert message == "New follow-up deletion request from collector@example.com"


def test_only_one_pending_request_per_follow_up(seeded: Session) -> None:
    deletion_request_workflow.propose(seeded, "fu-x", "requester")

    with pytest.raises(StateConflictError) as exc_info:
        deletion_request_workflow.propose(seeded, "fu-x", "manager")

    assert exc_info.value.reason is ConflictReason.DUPLICATE_PENDING
    pending = seeded.scalar(
        select(func.count()).select_from(FollowUpDeletionRequest).where(
            FollowUpDeletionRequest.followup_id == "fu-x",
            FollowUpDeletionRequest.status == "pending",
        )
    )
    assert pending == 1


def test_new_request_allowed_after_rejection(seeded: Session) -> None:
    first = deletion_request_workflow.propose(seeded, "fu-y", "requester")
    deletion_request_workflow.review(seeded, first.id, "head", "reject", "Still needed")

    second = deletion_request_workflow.propose(seeded, "fu-y", "requester")

    assert second.id != first.id
    assert second.status == "pending"


def test_pending_index_rejects_duplicate_insert(seeded: Session) -> None:
    deletion_request_workflow.propose(seeded, "fu-x", "requester")

    seeded.add(FollowUpDeletionRequest(followup_id="fu-x", company_id="company-1", requested_by_id="manager"))
    with pytest.raises(IntegrityError):
        seeded.commit()
    seeded.rollback()


def test_propose_missing_follow_up(seeded: Session) -> None:
    with pytest.raises(NotFoundError, match="Follow-up not found"):
        deletion_request_workflow.propose(seeded, "fu-missing", "requester")


@pytest.mark.parametrize("first_action", ["approve", "reject"])
@pytest.mark.parametrize("second_action", ["approve", "reject"])
def test_reviewing_twice_always_conflicts(seeded: Session, first_action: str, second_action: str) -> None:
    proposed = deletion_request_workflow.propose(seeded, "fu-y", "requester")
    deletion_request_workflow.review(seeded, proposed.id, "manager", first_action)  # type: ignore[arg-type]

    with pytest.raises(StateConflictError) as exc_info:
        deletion_request_workflow.review(seeded, proposed.id, "head", second_action)  # type: ignore[arg-type]

    assert exc_info.value.reason is ConflictReason.ALREADY_REVIEWED
    assert exc_info.value.message == "This deletion request has already been reviewed"


def test_reject_notifies_requester_with_reason(seeded: Session, session_factory: sessionmaker[Session]) -> None:
    with_reason = deletion_request_workflow.propose(seeded, "fu-x", "requester")
    deletion_request_workflow.review(seeded, with_reason.id, "manager", "reject", "Needed for the audit trail")
    without_reason = deletion_request_workflow.propose(seeded, "fu-y", "requester")
    deletion_request_workflow.review(seeded, without_reason.id, "manager", "reject")

    messages = {(row.type, row.message) for row in _notifications_for(session_factory, "requester")}
    assert messages == {
        ("warning", "Your follow-up deletion request has been rejected: Needed for the audit trail"),
        ("warning", "Your follow-up deletion request has been rejected: No reason provided"),
    }
    seeded.expire_all()
    assert seeded.get(FollowUp, "fu-x") is not None


def test_approve_when_follow_up_already_gone(seeded: Session) -> None:
    proposed = deletion_request_workflow.propose(seeded, "fu-x", "requester")
    deletion_request_workflow.delete_directly(seeded, "fu-x", "admin")

    reviewed = deletion_request_workflow.review(seeded, proposed.id, "manager", "approve")

    assert reviewed.status == "approved"


def test_review_missing_request(seeded: Session) -> None:
    with pytest.raises(NotFoundError, match="Deletion request not found"):
        deletion_request_workflow.review(seeded, "nope", "manager", "approve")


def test_cancel_uses_uniform_not_found(seeded: Session) -> None:
    mine = deletion_request_workflow.propose(seeded, "fu-x", "requester")
    reviewed = deletion_request_workflow.propose(seeded, "fu-y", "requester")
    deletion_request_workflow.review(seeded, reviewed.id, "manager", "reject")

    for request_id, caller in ((mine.id, "manager"), (reviewed.id, "requester"), ("missing", "requester")):
        with pytest.raises(NotFoundError) as exc_info:
            deletion_request_workflow.cancel(seeded, request_id, caller)
        assert exc_info.value.message == "Deletion request not found or unauthorized"

    deletion_request_workflow.cancel(seeded, mine.id, "requester")

    seeded.expire_all()
    assert seeded.get(FollowUpDeletionRequest, mine.id) is None
    assert seeded.get(FollowUp, "fu-x") is not None


def test_direct_delete_bypasses_requests(seeded: Session, session_factory: sessionmaker[Session]) -> None:
    pending = deletion_request_workflow.propose(seeded, "fu-x", "requester")

    deletion_request_workflow.delete_directly(seeded, "fu-x", "admin")

    seeded.expire_all()
    assert seeded.get(FollowUp, "fu-x") is None
    assert seeded.get(FollowUpDeletionRequest, pending.id).status == "pending"
    with session_factory() as session:
        event_types = list(session.scalars(select(SecurityEvent.event_type).order_by(SecurityEvent.id)))
    assert event_types == ["FOLLOWUP_DELETION_REQUESTED", "FOLLOWUP_DIRECT_DELETE"]
    with pytest.raises(NotFoundError):
        deletion_request_workflow.delete_directly(seeded, "fu-x", "admin")


def test_list_requests_orders_pending_first(seeded: Session) -> None:
    reviewed = deletion_request_workflow.propose(seeded, "fu-y", "requester")
    deletion_request_workflow.review(seeded, reviewed.id, "manager", "reject")
    pending = deletion_request_workflow.propose(seeded, "fu-x", "manager")

    everything = deletion_request_workflow.list_requests(seeded)
    mine = deletion_request_workflow.list_requests(seeded, requested_by_id="requester")

    assert [item.id for item in everything] == [pending.id, reviewed.id]
    assert everything[0].company_name == "Acme"
    assert everything[0].requested_by_email == "manager@example.com"
    assert everything[0].follow_up_date is not None
    assert [item.id for item in mine] == [reviewed.id]


def test_notifications_are_published_on_event_bus(seeded: Session) -> None:
    received: list[InternalEvent] = []

    def handler(event: InternalEvent) -> None:
        received.append(event)

    event_bus.subscribe(NOTIFICATION_CREATED_EVENT, handler)
    try:
        proposed = deletion_request_workflow.propose(seeded, "fu-x", "requester")
        deletion_request_workflow.review(seeded, proposed.id, "manager", "approve")
    finally:
        event_bus.unsubscribe(NOTIFICATION_CREATED_EVENT, handler)

    requester_events = [event for event in received if event.payload["user_id"] == "requester"]
    assert len(requester_events) == 1
    assert requester_events[0].payload["type"] == "success"
    assert requester_events[0].payload["entity_id"] == proposed.id


@pytest.fixture()
def file_session_factory(tmp_path: Path) -> Generator[sessionmaker[Session], None, None]:
    engine = create_engine(f"sqlite+pysqlite:///{tmp_path / 'deletion.db'}")
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    previous_log = get_security_event_log()
    previous_sink = get_notification_sink()
    set_security_event_log(SecurityEventLog(session_factory=SessionLocal))
    set_notification_sink(DbNotificationSink(session_factory=SessionLocal))
    contacted = datetime(2026, 5, 1, 9, 0, tzinfo=timezone.utc)
    with SessionLocal() as session:
        session.add_all(
            [
                User(id="requester", email="collector@example.com", role="DataCollector"),
                User(id="manager", email="manager@example.com", role="Manager"),
                User(id="head", email="head@example.com", role="Head"),
                Company(id="company-1", name="Acme"),
            ]
        )
        session.flush()
        session.add(
            FollowUp(id="fu-x", company_id="company-1", contacted_date=contacted, follow_up_date=contacted + timedelta(days=3))
        )
        session.commit()
    try:
        yield SessionLocal
    finally:
        set_security_event_log(previous_log)
        set_notification_sink(previous_sink)
        engine.dispose()


def test_concurrent_review_loser_sees_already_reviewed(file_session_factory: sessionmaker[Session]) -> None:
    with file_session_factory() as setup:
        request_id = deletion_request_workflow.propose(setup, "fu-x", "requester", "duplicate entry").id

    with file_session_factory() as winner, file_session_factory() as loser:
        assert loser.get(FollowUpDeletionRequest, request_id).status == "pending"

        deletion_request_workflow.review(winner, request_id, "manager", "approve")
        with pytest.raises(StateConflictError) as exc_info:
            deletion_request_workflow.review(loser, request_id, "head", "reject", "keep it")

    assert exc_info.value.reason is ConflictReason.ALREADY_REVIEWED
    with file_session_factory() as check:
        stored = check.get(FollowUpDeletionRequest, request_id)
        assert stored.status == "approved"
        assert stored.reviewed_by_id == "manager"
        assert stored.rejection_reason is None
        assert check.get(FollowUp, "fu-x") is None
    assert [row.type for row in _notifications_for(file_session_factory, "requester")] == ["success"]


def test_overlapping_proposals_hit_the_pending_index(
    file_session_factory: sessionmaker[Session],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    with file_session_factory() as first, file_session_factory() as second:
        deletion_request_workflow.propose(first, "fu-x", "requester", "duplicate entry")
        # The second caller's duplicate check ran before the first proposal committed.
        monkeypatch.setattr(second, "scalar", lambda *args, **kwargs: None)

        with pytest.raises(StateConflictError) as exc_info:
            deletion_request_workflow.propose(second, "fu-x", "manager", "also a duplicate")

    assert exc_info.value.reason is ConflictReason.DUPLICATE_PENDING
    with file_session_factory() as check:
        pending = check.scalar(
            select(func.count()).select_from(FollowUpDeletionRequest).where(FollowUpDeletionRequest.status == "pending")
        )
    assert pending == 1


class ExplodingSink:
    def notify(self, *args, **kwargs) -> None:  # type: ignore[no-untyped-def]
        raise RuntimeError("push gateway down")

    def notify_roles(self, *args, **kwargs) -> None:  # type: ignore[no-untyped-def]
        raise RuntimeError("push gateway down")


def test_sink_failures_do_not_undo_committed_transitions(
    seeded: Session,
    session_factory: sessionmaker[Session],
    caplog: pytest.LogCaptureFixture,
) -> None:
    set_notification_sink(ExplodingSink())  # type: ignore[arg-type]

    proposed = deletion_request_workflow.propose(seeded, "fu-x", "requester", "duplicate entry")
    reviewed = deletion_request_workflow.review(seeded, proposed.id, "manager", "approve")

    assert proposed.status == "pending"
    assert reviewed.status == "approved"
    seeded.expire_all()
    assert seeded.get(FollowUp, "fu-x") is None
    failures = [record for record in caplog.records if record.getMessage() == "deletion_request_notification_failed"]
    assert len(failures) == 2
    with session_factory() as session:
        event_types = list(session.scalars(select(SecurityEvent.event_type).order_by(SecurityEvent.id)))
    assert event_types == ["FOLLOWUP_DELETION_REQUESTED", "FOLLOWUP_DELETION_REVIEWED"]
