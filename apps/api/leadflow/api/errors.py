from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from leadflow.context import get_correlation_id
from leadflow.security.errors import InfrastructureError, LeadflowError, StateConflictError


logger = logging.getLogger("leadflow.request")


@dataclass
class ErrorEnvelope:
    success: bool
    error: str
    status: int
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    message: str,
    details: Any = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        success=False,
        error=message,
        status=status_code,
        details=jsonable_encoder(details),
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=asdict(payload), headers=headers)


async def _leadflow_error_handler(request: Request, exc: LeadflowError) -> JSONResponse:
    details = exc.details
    if isinstance(exc, StateConflictError):
        details = {**(exc.details or {}), "reason": exc.reason.value}
    return error_response(request, status_code=exc.status_code, message=exc.message, details=details)


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]
    return error_response(request, status_code=400, message="Validation failed", details=details)


async def _database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error(
        "database_error",
        exc_info=exc,
        extra={"method": request.method, "path": request.url.path, "severity": "high", "error": str(exc)},
    )
    fallback = InfrastructureError("Internal server error")
    return error_response(request, status_code=fallback.status_code, message=fallback.message)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(LeadflowError, _leadflow_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _request_validation_handler)  # type: ignore[arg-type]
    app.add_exception_handler(SQLAlchemyError, _database_error_handler)  # type: ignore[arg-type]
