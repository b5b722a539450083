from __future__ import annotations

from typing import Any, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from taskdeck.api.schemas import envelope
from taskdeck.config import get_settings
from taskdeck.logging import get_logger
from taskdeck.service.errors import ServiceError, wrap_unexpected
from taskdeck.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "VALIDATION_ERROR",
    401: "TOKEN_INVALID",
    403: "PERMISSION_DENIED",
    404: "RESOURCE_NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "RESOURCE_CONFLICT",
    423: "ACCOUNT_LOCKED",
    429: "RATE_LIMIT_EXCEEDED",
    500: "INTERNAL_ERROR",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "INTERNAL_ERROR")


def _error_response(
    status_code: int,
    message: str,
    errors: Optional[List[str]] = None,
    code: Optional[str] = None,
    headers: Optional[dict] = None,
) -> JSONResponse:
    body = envelope(
        False,
        message=message,
        errors=list(errors or []),
        code=code or _error_code_for_status(status_code),
    )
    return JSONResponse(status_code=status_code, content=body, headers=headers)


def _field_messages(exc: RequestValidationError) -> List[str]:
    messages = []
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part != "body"]
        text = str(error.get("msg", "invalid value"))
        # pydantic prefixes messages raised from validators
        text = text.removeprefix("Value error, ")
        messages.append(f"{'.'.join(location)}: {text}" if location else text)
    return messages


def _service_error_response(exc: ServiceError) -> JSONResponse:
    headers = None
    retry_after: Any = exc.detail.get("retry_after") if exc.detail else None
    if exc.status_code == 429 and retry_after:
        headers = {"Retry-After": str(retry_after)}
    return _error_response(
        exc.status_code, exc.message, exc.errors, code=exc.error_code, headers=headers
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure as the error envelope with a stable ``code``."""

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        messages = _field_messages(exc)
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            errors=messages,
        )
        return _error_response(400, "validation failed", messages, code="VALIDATION_ERROR")

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _service_error_response(wrap_unexpected(exc))

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        return _service_error_response(exc)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message, headers=exc.headers)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        wrapped = wrap_unexpected(exc, production=get_settings().is_production)
        return _service_error_response(wrapped)
