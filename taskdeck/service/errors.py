from __future__ import annotations

import functools
from typing import Iterable, Optional

from taskdeck.logging import get_logger, sanitize_error_message
from taskdeck.storage.errors import ConstraintViolation

logger = get_logger(__name__)


class ServiceError(Exception):
    """Base class for auth-core failures mapped to HTTP responses.

    Every subclass carries a stable machine ``error_code`` and the HTTP
    ``status_code`` it surfaces as. ``errors`` holds field-level messages for
    validation failures and is rendered as the envelope's ``errors`` list.
    """

    status_code: int = 400
    error_code: str = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        errors: Optional[Iterable[str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.errors = list(errors or [])


class ValidationError(ServiceError):
    """Malformed input or an unusable reference (400)."""
    status_code = 400
    error_code = "VALIDATION_ERROR"


class InvalidCredentialsError(ServiceError):
    """Unknown email or wrong password (401)."""
    status_code = 401
    error_code = "INVALID_CREDENTIALS"


class AccountLockedError(ServiceError):
    """Lockout window active (423) or account disabled (401)."""
    status_code = 423
    error_code = "ACCOUNT_LOCKED"


class TokenInvalidError(ServiceError):
    """Missing, malformed, forged or revoked credential (401)."""
    status_code = 401
    error_code = "TOKEN_INVALID"


class TokenExpiredError(ServiceError):
    """Signed token past its expiry; a refresh may recover (401)."""
    status_code = 401
    error_code = "TOKEN_EXPIRED"


class RefreshTokenInvalidError(ServiceError):
    """Refresh secret unknown, revoked or expired (401)."""
    status_code = 401
    error_code = "REFRESH_TOKEN_INVALID"


class PermissionDeniedError(ServiceError):
    """Authenticated but not allowed (403)."""
    status_code = 403
    error_code = "PERMISSION_DENIED"


class ResourceNotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "RESOURCE_NOT_FOUND"


class DuplicateEntryError(ServiceError):
    """Unique value already taken (409)."""
    status_code = 409
    error_code = "DUPLICATE_ENTRY"


class ResourceConflictError(ServiceError):
    """Operation conflicts with current state (409)."""
    status_code = 409
    error_code = "RESOURCE_CONFLICT"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "RATE_LIMIT_EXCEEDED"


class InternalError(ServiceError):
    """Unexpected storage or logic failure (500)."""
    status_code = 500
    error_code = "INTERNAL_ERROR"


def wrap_unexpected(exc: BaseException, *, production: bool = False) -> ServiceError:
    """Map any failure into the closed taxonomy.

    Service errors pass through unchanged, storage constraint violations become
    ``DuplicateEntryError`` and everything else becomes ``InternalError``. In
    production the internal message is replaced by a generic one.
    """
    if isinstance(exc, ServiceError):
        return exc
    if isinstance(exc, ConstraintViolation):
        return DuplicateEntryError(exc.message, detail=exc.detail)
    logger.error(
        "unexpected_failure_wrapped",
        error_type=type(exc).__name__,
        error=sanitize_error_message(str(exc)),
    )
    if production:
        return InternalError("internal server error")
    return InternalError(sanitize_error_message(str(exc)) or "internal server error")


def service_boundary(fn):
    """Let only taxonomy errors escape an async service method.

    The owning service exposes ``production`` to decide whether internal
    messages are hidden.
    """

    @functools.wraps(fn)
    async def wrapper(self, *args, **kwargs):
        try:
            return await fn(self, *args, **kwargs)
        except ServiceError:
            raise
        except Exception as exc:
            raise wrap_unexpected(
                exc, production=getattr(self, "production", False)
            ) from exc

    return wrapper


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidCredentialsError",
    "AccountLockedError",
    "TokenInvalidError",
    "TokenExpiredError",
    "RefreshTokenInvalidError",
    "PermissionDeniedError",
    "ResourceNotFoundError",
    "DuplicateEntryError",
    "ResourceConflictError",
    "RateLimitedError",
    "InternalError",
    "wrap_unexpected",
    "service_boundary",
]
