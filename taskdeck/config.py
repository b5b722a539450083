from __future__ import annotations

import os
import re
import secrets
from collections import ChainMap
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.fields import FieldInfo

from taskdeck.logging import get_logger

logger = get_logger(__name__)

_TTL_PATTERN = re.compile(r"^\d+[smhd]?$")
_SECRET_FILENAME = ".jwt_secret"
_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    """Declare a settings field read from the ``env`` variable."""
    schema_extra = dict(kwargs.pop("json_schema_extra", None) or {})
    schema_extra["env"] = env
    return Field(default, json_schema_extra=schema_extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth core, the stores and the HTTP layer."""

    app_env: str = env_field("development", "APP_ENV")
    database_url: str = env_field(
        "postgresql://localhost:5432/taskdeck", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/taskdeck", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; permits runtime resets.",
    )

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_expires_in: str = env_field(
        "15m", "JWT_EXPIRES_IN", description="Access token TTL, e.g. 900s, 15m, 1h"
    )
    jwt_refresh_expires_in: str = env_field(
        "7d", "JWT_REFRESH_EXPIRES_IN", description="Refresh token TTL"
    )
    jwt_issuer: str = env_field("task-management-api", "JWT_ISSUER")
    jwt_audience: str = env_field("task-management-app", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(
        0, "JWT_LEEWAY_SECONDS", description="Allowed clock skew when checking exp", ge=0
    )

    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS", ge=1)
    lockout_minutes: int = env_field(15, "LOCKOUT_MINUTES", ge=1)
    session_ttl_days: int = env_field(7, "SESSION_TTL_DAYS", ge=1)
    default_role: str = env_field("user", "DEFAULT_ROLE")
    allow_registration: bool = env_field(True, "ALLOW_REGISTRATION")

    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST", ge=1)
    password_hash_memory_cost: int = env_field(
        65536, "PASSWORD_HASH_MEMORY_COST", description="KiB", ge=8
    )
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM", ge=1)

    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    register_rate_limit_per_minute: int = env_field(
        5, "REGISTER_RATE_LIMIT_PER_MINUTE"
    )
    api_rate_limit_per_window: int = env_field(100, "API_RATE_LIMIT_PER_WINDOW")
    api_rate_limit_window_seconds: int = env_field(
        900, "API_RATE_LIMIT_WINDOW_SECONDS"
    )

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from process env, falling back to ``.env`` entries."""
        dotenv_file = {
            key: value for key, value in dotenv_values(".env").items() if value is not None
        }
        sources = ChainMap(os.environ, dotenv_file)
        values = {
            name: sources[_env_name(name, field)]
            for name, field in cls.model_fields.items()
            if _env_name(name, field) in sources
        }
        return cls(**values)

    @field_validator("jwt_expires_in", "jwt_refresh_expires_in")
    @classmethod
    def _validate_ttl(cls, value: str) -> str:
        value = (value or "").strip()
        if not _TTL_PATTERN.match(value):
            raise ValueError("token TTL must be an integer with an optional s/m/h/d suffix")
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _default_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _load_or_create_secret(Path(os.getenv("SHARED_FS_ROOT", "/srv/taskdeck")))


def _env_name(name: str, field: FieldInfo) -> str:
    extra = field.json_schema_extra
    if isinstance(extra, dict) and extra.get("env"):
        return str(extra["env"])
    return name.upper()


def _load_or_create_secret(root: Path) -> str:
    """Return the signing secret kept under ``root``, creating it on first use.

    The file is written once with mode 0600 and reused afterwards so issued
    tokens stay valid across restarts. A symlink in its place is ignored.
    """
    target = root / _SECRET_FILENAME
    try:
        root.mkdir(mode=0o700, parents=True, exist_ok=True)
    except OSError as exc:
        logger.warning("jwt_secret_root_unavailable", root=str(root), error=str(exc))

    if target.is_file() and not target.is_symlink():
        try:
            stored = target.read_text(encoding="utf-8").strip()
        except OSError as exc:
            logger.error("jwt_secret_unreadable", file=str(target), error=str(exc))
        else:
            if len(stored) >= _MIN_SECRET_LENGTH:
                return stored
            logger.warning("jwt_secret_too_short", file=str(target))

    fresh = secrets.token_urlsafe(64)
    staging = target.with_name(f"{_SECRET_FILENAME}.{secrets.token_hex(4)}.tmp")
    try:
        handle = os.open(staging, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(handle, "w", encoding="utf-8") as out:
            out.write(fresh)
        os.replace(staging, target)
    except OSError as exc:
        staging.unlink(missing_ok=True)
        logger.error("jwt_secret_write_failed", file=str(target), error=str(exc))
        raise RuntimeError(
            "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
        ) from exc
    logger.info("jwt_secret_generated", file=str(target))
    return fresh


_cached: Settings | None = None


def get_settings() -> Settings:
    """Process-wide settings, read from the environment on first call."""
    global _cached
    if _cached is None:
        _cached = Settings.from_env()
    return _cached


def reset_settings_cache() -> None:
    global _cached
    _cached = None
