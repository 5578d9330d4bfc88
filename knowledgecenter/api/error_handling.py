from __future__ import annotations

from typing import Any, Optional, Tuple

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from knowledgecenter.api.schemas import Envelope, ErrorBody
from knowledgecenter.logging import get_logger
from knowledgecenter.service.errors import AuthError, ServiceError
from knowledgecenter.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# Stable error codes mapped to HTTP status codes
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    """Create an error response envelope."""
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def _request_context(request: Request) -> dict:
    return {
        "path": request.url.path,
        "method": request.method,
        "remote_addr": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


def _unpack_http_detail(
    exc: StarletteHTTPException,
) -> Tuple[str, Optional[str], Optional[Any]]:
    """Return ``(message, code, details)`` from an HTTPException.

    Dependencies raise with an envelope-shaped detail (see ``deps._http_error``);
    routing errors such as 404/405 carry a plain string.
    """
    detail = exc.detail
    if isinstance(detail, dict) and isinstance(detail.get("error"), dict):
        error_obj = detail["error"]
        return (
            str(error_obj.get("message", "http error")),
            error_obj.get("code"),
            error_obj.get("details"),
        )
    if isinstance(detail, str):
        return detail, None, None
    return "http error", None, None


def service_error_response(exc: ServiceError) -> JSONResponse:
    """Render a service error; auth failures show their client-facing message."""
    message = exc.public_message if isinstance(exc, AuthError) else exc.message
    if exc.status_code >= 500 and not isinstance(exc, AuthError):
        # Internal detail stays in the logs
        message = "Internal server error"
        details = None
    else:
        details = exc.detail or None
    return _error_response(
        exc.status_code, message, details, code=getattr(exc, "error_code", None)
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent exception handlers for domain and storage errors."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            message=exc.message,
            detail=exc.detail,
            **_request_context(request),
        )
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        error_code = getattr(exc, "error_code", None)
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            status_code=exc.status_code,
            error_code=error_code,
            error_type=type(exc).__name__,
            message=exc.message,
            detail=exc.detail,
            **_request_context(request),
        )
        return service_error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        logger.warning(
            "request_body_invalid",
            errors=len(exc.errors()),
            **_request_context(request),
        )
        return _error_response(400, "Invalid request body", code="validation_error")

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        message, code, details = _unpack_http_detail(exc)
        if exc.status_code >= 500:
            log_fn = logger.error
        elif exc.status_code in (401, 403):
            log_fn = logger.warning
        else:
            log_fn = logger.info
        log_fn(
            "http_error",
            status_code=exc.status_code,
            error_code=code,
            message=message,
            **_request_context(request),
        )
        response = _error_response(exc.status_code, message, details, code=code)
        if exc.headers:
            response.headers.update(exc.headers)
        return response

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            error_type=type(exc).__name__,
            error=str(exc),
            **_request_context(request),
        )
        return _error_response(500, "Internal server error", code="server_error")
