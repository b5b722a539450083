from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlsplit, urlunsplit

from taskdeck.config import Settings, get_settings, reset_settings_cache
from taskdeck.logging import get_logger
from taskdeck.service.auth import AuthService
from taskdeck.service.permissions import PermissionEvaluator
from taskdeck.service.rate_limit import RequestRateLimiter
from taskdeck.service.roles import RoleService
from taskdeck.storage.counters import MemoryCounterStore
from taskdeck.storage.memory import MemoryStore
from taskdeck.storage.postgres import PostgresStore
from taskdeck.storage.redis_cache import RedisCounterStore, SyncRedisCounterStore

logger = get_logger(__name__)

CounterBackend = Union[RedisCounterStore, SyncRedisCounterStore]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***``.

    ``redis://:secret@localhost:6379`` becomes ``redis://:***@localhost:6379``.
    """
    if not url:
        return url
    try:
        parts = urlsplit(url)
        if not parts.password:
            return url
        host = parts.hostname or ""
        if parts.port:
            host = f"{host}:{parts.port}"
        masked = f"{parts.username or ''}:***@{host}"
        return urlunsplit(parts._replace(netloc=masked))
    except ValueError:
        return "***url_parse_error***"


def _open_store(settings: Settings) -> Union[MemoryStore, PostgresStore]:
    if settings.use_memory_store:
        # test runs start from a clean seeded store every time
        return MemoryStore(fs_root=None if settings.test_mode else settings.shared_fs_root)
    return PostgresStore(settings.database_url)


def _connect_counters(settings: Settings) -> Optional[CounterBackend]:
    """Connect the shared Redis counters, or fall back when the mode permits it."""
    failure: Optional[Exception] = None
    if settings.redis_url:
        # sync client in test mode so no event loop is captured
        backend_cls = SyncRedisCounterStore if settings.test_mode else RedisCounterStore
        try:
            backend = backend_cls(settings.redis_url)
            backend.verify_connection()
            return backend
        except Exception as exc:
            failure = exc

    if not (settings.test_mode or settings.allow_redis_fallback_dev):
        raise RuntimeError(
            "Redis is required for shared rate limits; start Redis or set "
            "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
        ) from failure

    logger.warning(
        "redis_unavailable_using_process_counters",
        redis_url=_mask_url_password(settings.redis_url),
        reason=str(failure) if failure else "redis_url_missing",
        mode="TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
    )
    return None


class Runtime:
    """Process-wide wiring of the store, the counters and the services."""

    def __init__(self):
        self.settings = get_settings()
        store_kind = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_starting", store_type=store_kind, test_mode=self.settings.test_mode
        )
        try:
            self.store = _open_store(self.settings)
        except Exception as exc:
            logger.error(
                "runtime_store_unavailable",
                store_type=store_kind,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = _connect_counters(self.settings)
        self.counters = self.cache or MemoryCounterStore()

        self.auth = AuthService(self.store, self.settings)
        self.roles = RoleService(self.store, production=self.settings.is_production)
        self.permissions = PermissionEvaluator()
        self.api_limiter = RequestRateLimiter(
            self.counters,
            self.settings.api_rate_limit_per_window,
            self.settings.api_rate_limit_window_seconds,
        )
        self.login_limiter = RequestRateLimiter(
            self.counters, self.settings.login_rate_limit_per_minute, 60, prefix="rate:login"
        )
        self.register_limiter = RequestRateLimiter(
            self.counters,
            self.settings.register_rate_limit_per_minute,
            60,
            prefix="rate:register",
        )
        logger.info(
            "runtime_ready",
            store_type=store_kind,
            counters="redis" if self.cache else "memory",
        )

    async def close(self) -> None:
        """Release pooled connections held by the cache and the store."""
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()

    def _discard_cache(self) -> None:
        if self.cache is None:
            return
        if isinstance(self.cache, SyncRedisCounterStore):
            self.cache.client.close()
            return
        try:
            asyncio.get_running_loop().create_task(self.cache.close())
        except RuntimeError:
            asyncio.run(self.cache.close())


runtime: Runtime | None = None
_runtime_guard = threading.Lock()


def get_runtime() -> Runtime:
    global runtime
    current = runtime
    if current is None:
        with _runtime_guard:
            if runtime is None:
                runtime = Runtime()
            current = runtime
    return current


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a freshly read environment. TEST_MODE only."""
    global runtime
    with _runtime_guard:
        if runtime is not None:
            try:
                runtime._discard_cache()
            except Exception as exc:
                logger.debug("runtime_cache_discard_failed", error=str(exc))
        reset_settings_cache()
        if not get_settings().test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
