from __future__ import annotations

import hashlib
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisCounterStore:
    """Redis-backed fixed-window counters shared by every app instance."""

    # Atomic increment that opens the window on the first hit
    _FIXED_WINDOW_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
elseif redis.call('TTL', KEYS[1]) < 0 then
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
end
return count
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    @staticmethod
    def _normalize_key(key: str, namespace: Optional[str] = None) -> str:
        """Hash counter keys so caller-supplied parts cannot collide on delimiters."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        prefix = f"{namespace}:" if namespace else ""
        return f"counter:{prefix}{digest}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def increment(self, key: str, window_seconds: int) -> int:
        count = await self._fixed_window(
            keys=[self._normalize_key(key)], args=[max(1, int(window_seconds))]
        )
        return int(count)

    async def get(self, key: str) -> int:
        raw = await self.client.get(self._normalize_key(key))
        return int(raw) if raw else 0

    async def ttl(self, key: str) -> int:
        remaining = await self.client.ttl(self._normalize_key(key))
        return max(0, int(remaining))

    async def reset(self, key: str) -> None:
        await self.client.delete(self._normalize_key(key))

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCounterStore:
    """Synchronous Redis counters exposing the same awaitable API.

    Used in test mode so the client is never bound to a particular event loop;
    the async methods run the blocking calls directly.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(
            RedisCounterStore._FIXED_WINDOW_SCRIPT
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def increment(self, key: str, window_seconds: int) -> int:
        count = self._fixed_window(
            keys=[RedisCounterStore._normalize_key(key)], args=[max(1, int(window_seconds))]
        )
        return int(count)

    async def get(self, key: str) -> int:
        raw = self.client.get(RedisCounterStore._normalize_key(key))
        return int(raw) if raw else 0

    async def ttl(self, key: str) -> int:
        return max(0, int(self.client.ttl(RedisCounterStore._normalize_key(key))))

    async def reset(self, key: str) -> None:
        self.client.delete(RedisCounterStore._normalize_key(key))

    async def close(self) -> None:
        self.client.close()
