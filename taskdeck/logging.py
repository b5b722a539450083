from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Event keys whose values are credentials; never logged, even partially
_SECRET_KEYS = ("password", "secret", "token", "authorization", "password_hash")
# Event keys carrying contact details; logged with the local part masked
_CONTACT_KEYS = ("email",)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind a request id (the caller's or a fresh uuid4) to every event in this context."""
    cid = (correlation_id or "").strip()[:128] or str(uuid.uuid4())
    correlation_id_var.set(cid)
    structlog.contextvars.bind_contextvars(correlation_id=cid)
    return cid


def _mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"


def _scrub_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        lowered = key.lower()
        if any(marker in lowered for marker in _SECRET_KEYS):
            event_dict[key] = "[redacted]"
        elif any(marker in lowered for marker in _CONTACT_KEYS) and isinstance(value, str):
            event_dict[key] = _mask_email(value)
    return event_dict


def configure_logging(level: str = "INFO", fmt: str = "json") -> None:
    """Install the structlog pipeline.

    ``fmt`` is ``json`` for one JSON object per line or ``console`` for the
    colored development renderer.
    """
    level_no = logging.getLevelName(level.upper())
    if not isinstance(level_no, int):
        level_no = logging.INFO
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _scrub_credentials,
        structlog.processors.StackInfoRenderer(),
    ]
    if fmt == "console":
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors += [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level_no),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    level=os.getenv("LOG_LEVEL", "INFO"),
    fmt=os.getenv("LOG_FORMAT", "json").lower(),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Fragments that must never reach a client through an error message
_LEAKY_FRAGMENTS = [
    re.compile(r"(?i)\b[a-z][a-z0-9+]*://[^\s]+"),
    re.compile(r"\$argon2(?:id|i|d)\$[^\s]+"),
    re.compile(r"\beyJ[\w-]+\.[\w-]+\.[\w-]+"),
    re.compile(r"(?i)\b(?:password|secret|token|credential)s?\s*[:=]\s*[^\s,;]+"),
    re.compile(r"(?i)\b(?:select|insert|update|delete)\b.{0,80}"),
    re.compile(r"(?i)\bconnection\b.*\b(?:failed|refused|timed? ?out)\b"),
    re.compile(r"(?:/[\w.-]+){2,}"),
]

_MAX_CLIENT_MESSAGE = 300


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip DSNs, password digests, tokens, SQL, connection details and paths.

    Used before an internal error message is echoed to a client.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"
    result = error
    for pattern in _LEAKY_FRAGMENTS:
        result = pattern.sub(replacement, result)
    if len(result) > _MAX_CLIENT_MESSAGE:
        result = result[: _MAX_CLIENT_MESSAGE - 3] + "..."
    return result
