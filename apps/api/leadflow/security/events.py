from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from enum import StrEnum
from threading import Lock
from typing import Any, Protocol

from sqlalchemy.orm import Session, sessionmaker

from leadflow.core.database import SessionLocal
from leadflow.metrics import observe_security_event, observe_security_event_write_failure
from leadflow.models.security_event import SecurityEvent


logger = logging.getLogger("leadflow.security")


class Severity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Outcome(StrEnum):
    GRANTED = "granted"
    DENIED = "denied"
    INCONSISTENT = "inconsistent"
    ATTACK = "attack"
    ERROR = "error"


SEVERITY_BY_OUTCOME: dict[Outcome, Severity] = {
    Outcome.GRANTED: Severity.LOW,
    Outcome.DENIED: Severity.MEDIUM,
    Outcome.INCONSISTENT: Severity.HIGH,
    Outcome.ATTACK: Severity.CRITICAL,
    Outcome.ERROR: Severity.HIGH,
}


class SecurityEventType(StrEnum):
    AUTHENTICATION_VERIFIED = "AUTHENTICATION_VERIFIED"
    UNAUTHORIZED_ACCESS = "UNAUTHORIZED_ACCESS"
    INVALID_USER_TOKEN = "INVALID_USER_TOKEN"
    INACTIVE_USER_ACCESS = "INACTIVE_USER_ACCESS"
    LOCKED_USER_ACCESS = "LOCKED_USER_ACCESS"
    ROLE_MISMATCH = "ROLE_MISMATCH"
    USER_CONTEXT_VALIDATED = "USER_CONTEXT_VALIDATED"
    USER_VALIDATION_ERROR = "USER_VALIDATION_ERROR"
    PERMISSION_CHECK_NO_USER = "PERMISSION_CHECK_NO_USER"
    PERMISSION_GRANTED = "PERMISSION_GRANTED"
    SELF_ACCESS_GRANTED = "SELF_ACCESS_GRANTED"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    ROLE_CHECK_NO_USER = "ROLE_CHECK_NO_USER"
    ROLE_ACCESS_GRANTED = "ROLE_ACCESS_GRANTED"
    ROLE_ACCESS_DENIED = "ROLE_ACCESS_DENIED"
    READ_ONLY_CHECK_NO_USER = "READ_ONLY_CHECK_NO_USER"
    READ_ONLY_CHECK_PASSED = "READ_ONLY_CHECK_PASSED"
    READ_ONLY_VIOLATION = "READ_ONLY_VIOLATION"
    TASK_UPDATE_NO_USER = "TASK_UPDATE_NO_USER"
    TASK_UPDATE_ADMIN_ACCESS = "TASK_UPDATE_ADMIN_ACCESS"
    TASK_UPDATE_OWN_ACCESS = "TASK_UPDATE_OWN_ACCESS"
    TASK_UPDATE_DENIED = "TASK_UPDATE_DENIED"
    FINALIZED_EDIT_NO_USER = "FINALIZED_EDIT_NO_USER"
    FINALIZED_EDIT_ADMIN_ACCESS = "FINALIZED_EDIT_ADMIN_ACCESS"
    FINALIZED_EDIT_CHECK_PASSED = "FINALIZED_EDIT_CHECK_PASSED"
    FINALIZED_EDIT_ATTEMPT = "FINALIZED_EDIT_ATTEMPT"
    FINALIZED_CHECK_ERROR = "FINALIZED_CHECK_ERROR"
    RESOURCE_OWNERSHIP_NO_USER = "RESOURCE_OWNERSHIP_NO_USER"
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    RESOURCE_OWNERSHIP_VERIFIED = "RESOURCE_OWNERSHIP_VERIFIED"
    RESOURCE_OWNERSHIP_MANAGER_ACCESS = "RESOURCE_OWNERSHIP_MANAGER_ACCESS"
    RESOURCE_OWNERSHIP_VIOLATION = "RESOURCE_OWNERSHIP_VIOLATION"
    RESOURCE_OWNERSHIP_ERROR = "RESOURCE_OWNERSHIP_ERROR"
    BULK_OPERATION_NO_USER = "BULK_OPERATION_NO_USER"
    BULK_OPERATION_ALLOWED = "BULK_OPERATION_ALLOWED"
    BULK_OPERATION_DENIED = "BULK_OPERATION_DENIED"
    BULK_OPERATION_LIMIT_EXCEEDED = "BULK_OPERATION_LIMIT_EXCEEDED"
    SENSITIVE_OPERATION = "SENSITIVE_OPERATION"
    MALICIOUS_REQUEST_DETECTED = "MALICIOUS_REQUEST_DETECTED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    SUSPICIOUS_ACTIVITY_DETECTED = "SUSPICIOUS_ACTIVITY_DETECTED"
    POTENTIAL_SECURITY_THREAT = "POTENTIAL_SECURITY_THREAT"
    COMPANY_FINALIZED = "COMPANY_FINALIZED"
    COMPANY_UNFINALIZED = "COMPANY_UNFINALIZED"
    COMPANIES_BULK_APPROVED = "COMPANIES_BULK_APPROVED"
    COMPANIES_BULK_REJECTED = "COMPANIES_BULK_REJECTED"
    FOLLOWUP_DELETION_REQUESTED = "FOLLOWUP_DELETION_REQUESTED"
    FOLLOWUP_DELETION_REVIEWED = "FOLLOWUP_DELETION_REVIEWED"
    FOLLOWUP_DELETION_CANCELLED = "FOLLOWUP_DELETION_CANCELLED"
    FOLLOWUP_DIRECT_DELETE = "FOLLOWUP_DIRECT_DELETE"


class RequestDetails(Protocol):
    """Anything carrying the request attributes merged into event details."""

    ip_address: str | None
    user_agent: str | None
    url: str | None
    method: str


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SecurityEventLog:
    """Append-only recorder writing in its own session so it never joins a caller's transaction."""

    def __init__(self, session_factory: sessionmaker[Session] | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    def record(
        self,
        event_type: str,
        user_id: str | None,
        request: RequestDetails | None,
        severity: Severity,
        details: dict[str, Any] | None = None,
    ) -> None:
        payload: dict[str, Any] = dict(details or {})
        payload["timestamp"] = utcnow().isoformat()
        payload["url"] = getattr(request, "url", None)
        payload["method"] = getattr(request, "method", None)

        try:
            row = SecurityEvent(
                event_type=str(event_type),
                user_id=user_id,
                ip_address=getattr(request, "ip_address", None),
                user_agent=getattr(request, "user_agent", None),
                details=json.loads(json.dumps(payload, default=str)),
                severity=severity.value,
            )
            with self._session_factory() as session:
                session.add(row)
                session.commit()
        except Exception as exc:
            observe_security_event_write_failure(str(event_type))
            logger.error(
                "security_event_write_failed",
                extra={"event_type": str(event_type), "user_id": user_id, "error": str(exc)},
            )
            return

        observe_security_event(severity.value)
        log_level = logging.WARNING if severity in {Severity.HIGH, Severity.CRITICAL} else logging.INFO
        logger.log(
            log_level,
            "security_event",
            extra={"event_type": str(event_type), "severity": severity.value, "user_id": user_id},
        )


_LOG_LOCK = Lock()
_SECURITY_EVENT_LOG: SecurityEventLog = SecurityEventLog()


def set_security_event_log(log: SecurityEventLog) -> None:
    global _SECURITY_EVENT_LOG
    with _LOG_LOCK:
        _SECURITY_EVENT_LOG = log


def get_security_event_log() -> SecurityEventLog:
    return _SECURITY_EVENT_LOG


def record_security_event(
    event_type: str,
    user_id: str | None,
    request: RequestDetails | None,
    severity: Severity,
    details: dict[str, Any] | None = None,
) -> None:
    get_security_event_log().record(event_type, user_id, request, severity, details)
