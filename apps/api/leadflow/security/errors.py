from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorKind(StrEnum):
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    VALIDATION = "validation"
    STATE_CONFLICT = "state_conflict"
    NOT_FOUND = "not_found"
    INFRASTRUCTURE = "infrastructure"


class ConflictReason(StrEnum):
    ALREADY_FINALIZED = "already_finalized"
    NOT_FINALIZED = "not_finalized"
    CONVERSION_NOT_CONFIRMED = "conversion_not_confirmed"
    ALREADY_REVIEWED = "already_reviewed"
    DUPLICATE_PENDING = "duplicate_pending"


class LeadflowError(Exception):
    """Base for errors surfaced to API callers; ``kind`` drives the status code."""

    kind: ErrorKind = ErrorKind.INFRASTRUCTURE
    status_code: int = 500

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class AuthenticationError(LeadflowError):
    kind = ErrorKind.AUTHENTICATION
    status_code = 401


class AuthorizationError(LeadflowError):
    kind = ErrorKind.AUTHORIZATION
    status_code = 403


class ValidationError(LeadflowError):
    kind = ErrorKind.VALIDATION
    status_code = 400


class NotFoundError(LeadflowError):
    kind = ErrorKind.NOT_FOUND
    status_code = 404


class StateConflictError(LeadflowError):
    kind = ErrorKind.STATE_CONFLICT
    status_code = 409

    def __init__(self, reason: ConflictReason, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, details=details)
        self.reason = reason


class InfrastructureError(LeadflowError):
    kind = ErrorKind.INFRASTRUCTURE
    status_code = 500
