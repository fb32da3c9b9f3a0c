from __future__ import annotations

from typing import Any, Mapping

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from chatgateway.api.schemas import Envelope, ErrorBody
from chatgateway.logging import get_correlation_id, get_logger
from chatgateway.service.errors import ServiceError
from chatgateway.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "INVALID_REQUEST",
    401: "AUTHENTICATION_FAILED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "INVALID_REQUEST",
    409: "CONFLICT",
    422: "INVALID_REQUEST",
    429: "RATE_LIMITED",
    502: "PROVIDER_ERROR",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "INTERNAL_ERROR")


def error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: Mapping[str, str] | None = None,
) -> JSONResponse:
    """Render the ``{"status": "error", ...}`` envelope for ``status_code``."""
    envelope = Envelope(
        status="error",
        error=ErrorBody(
            code=code or _error_code_for_status(status_code),
            message=message,
            details=details,
        ),
    )
    request_id = get_correlation_id()
    if request_id:
        envelope.request_id = request_id
    return JSONResponse(
        status_code=status_code,
        content=envelope.model_dump(),
        headers=dict(headers) if headers else None,
    )


def _where(request: Request) -> dict[str, Any]:
    return {"path": request.url.path, "method": request.method}


async def _on_constraint_violation(request: Request, exc: ConstraintViolation):
    logger.warning("storage_conflict", message=exc.message, detail=exc.detail, **_where(request))
    return error_response(409, exc.message, exc.detail, code="CONFLICT")


async def _on_service_error(request: Request, exc: ServiceError):
    emit = logger.error if exc.status_code >= 500 else logger.warning
    emit(
        "service_error",
        status_code=exc.status_code,
        error_code=exc.error_code,
        message=exc.message,
        **_where(request),
    )
    return error_response(exc.status_code, exc.message, exc.detail or None, code=exc.error_code)


async def _on_request_validation(request: Request, exc: RequestValidationError):
    issues = []
    for err in exc.errors():
        location = [str(part) for part in err.get("loc", ()) if part != "body"]
        issues.append({"field": ".".join(location), "message": err.get("msg", "invalid value")})
    logger.warning("request_body_rejected", issues=len(issues), **_where(request))
    return error_response(400, "Request body is invalid", {"issues": issues}, code="INVALID_REQUEST")


async def _on_http_exception(request: Request, exc: HTTPException):
    headers = getattr(exc, "headers", None)
    detail = exc.detail
    # routes raise HTTPException(detail={"error": {...}}) for envelope errors
    if isinstance(detail, dict) and isinstance(detail.get("error"), dict):
        body = detail["error"]
        return error_response(
            exc.status_code,
            body.get("message", "http error"),
            body.get("details"),
            code=body.get("code"),
            headers=headers,
        )
    message = detail if isinstance(detail, str) else "http error"
    if exc.status_code >= 500:
        logger.error("http_exception", status_code=exc.status_code, message=message, **_where(request))
    return error_response(exc.status_code, message, headers=headers)


async def _on_unhandled(request: Request, exc: Exception):
    logger.exception(
        "unhandled_exception", exc_info=exc, error_type=type(exc).__name__, **_where(request)
    )
    return error_response(500, "internal server error", code="INTERNAL_ERROR")


def register_exception_handlers(app: FastAPI) -> None:
    """Every error leaving the app is rendered as the error envelope."""
    app.add_exception_handler(ConstraintViolation, _on_constraint_violation)
    app.add_exception_handler(ServiceError, _on_service_error)
    app.add_exception_handler(RequestValidationError, _on_request_validation)
    app.add_exception_handler(HTTPException, _on_http_exception)
    app.add_exception_handler(Exception, _on_unhandled)
