from __future__ import annotations

import logging
from collections.abc import Iterable
from threading import Lock
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from leadflow.core.database import SessionLocal
from leadflow.core.events import event_bus
from leadflow.crm.models import Notification, NotificationType, User
from leadflow.metrics import observe_notification_failure
from leadflow.security.roles import Role


logger = logging.getLogger("leadflow.notifications")

NOTIFICATION_CREATED_EVENT = "notification.created"


class NotificationSink(Protocol):
    """Fire-and-forget delivery; implementations must not raise to the caller."""

    def notify(
        self,
        user_id: str,
        message: str,
        notification_type: NotificationType,
        *,
        entity_type: str | None = None,
        entity_id: str | None = None,
    ) -> bool:
        ...

    def notify_roles(
        self,
        roles: Iterable[Role],
        message: str,
        notification_type: NotificationType,
        *,
        entity_type: str | None = None,
        entity_id: str | None = None,
    ) -> int:
        ...


class DbNotificationSink:
    """Persists notifications in its own session and announces them on the event bus."""

    def __init__(self, session_factory: sessionmaker[Session] | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    def notify(
        self,
        user_id: str,
        message: str,
        notification_type: NotificationType,
        *,
        entity_type: str | None = None,
        entity_id: str | None = None,
    ) -> bool:
        try:
            with self._session_factory() as session:
                row = Notification(
                    user_id=user_id,
                    message=message,
                    type=notification_type.value,
                    entity_type=entity_type,
                    entity_id=entity_id,
                )
                session.add(row)
                session.commit()
                notification_id = row.id
        except Exception as exc:
            observe_notification_failure(entity_type)
            logger.error(
                "notification_failed",
                extra={"user_id": user_id, "entity_type": entity_type, "entity_id": entity_id, "error": str(exc)},
            )
            return False

        event_bus.publish(
            NOTIFICATION_CREATED_EVENT,
            {
                "id": notification_id,
                "user_id": user_id,
                "message": message,
                "type": notification_type.value,
                "entity_type": entity_type,
                "entity_id": entity_id,
            },
        )
        return True

    def notify_roles(
        self,
        roles: Iterable[Role],
        message: str,
        notification_type: NotificationType,
        *,
        entity_type: str | None = None,
        entity_id: str | None = None,
    ) -> int:
        role_values = sorted(role.value for role in roles)
        try:
            with self._session_factory() as session:
                user_ids = list(
                    session.scalars(
                        select(User.id).where(User.role.in_(role_values), User.is_active.is_(True))
                    )
                )
        except Exception as exc:
            observe_notification_failure(entity_type)
            logger.error(
                "notification_recipients_lookup_failed",
                extra={"entity_type": entity_type, "entity_id": entity_id, "error": str(exc)},
            )
            return 0

        delivered = 0
        for user_id in user_ids:
            if self.notify(user_id, message, notification_type, entity_type=entity_type, entity_id=entity_id):
                delivered += 1
        return delivered


_SINK_LOCK = Lock()
_NOTIFICATION_SINK: NotificationSink = DbNotificationSink()


def get_notification_sink() -> NotificationSink:
    return _NOTIFICATION_SINK


def set_notification_sink(sink: NotificationSink) -> None:
    global _NOTIFICATION_SINK
    with _SINK_LOCK:
        _NOTIFICATION_SINK = sink
