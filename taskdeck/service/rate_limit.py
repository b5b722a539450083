from __future__ import annotations

from taskdeck.logging import get_logger
from taskdeck.service.errors import RateLimitedError
from taskdeck.storage.counters import CounterStore

logger = get_logger(__name__)


class RequestRateLimiter:
    """Fixed-window request limiter over an injected counter store.

    ``hit(subject)`` counts against ``{prefix}:{subject}``; the window opens on
    the first hit and the request that exceeds ``limit`` raises
    ``RateLimitedError`` carrying the seconds left in the window.
    """

    def __init__(
        self,
        counters: CounterStore,
        limit: int,
        window_seconds: int,
        *,
        prefix: str = "rate:user",
    ) -> None:
        self.counters = counters
        self.limit = limit
        self.window_seconds = window_seconds
        self.prefix = prefix

    def key_for(self, subject) -> str:
        return f"{self.prefix}:{subject}"

    async def hit(self, subject) -> int:
        """Count one request and return how many remain in the window."""
        if self.limit <= 0:
            return 0
        key = self.key_for(subject)
        count = await self.counters.increment(key, self.window_seconds)
        if count > self.limit:
            retry_after = await self.counters.ttl(key) or self.window_seconds
            logger.warning(
                "rate_limit_exceeded",
                key=self.prefix,
                subject=str(subject),
                count=count,
                limit=self.limit,
            )
            raise RateLimitedError(
                "too many requests, please try again later",
                detail={"retry_after": retry_after, "limit": self.limit},
            )
        return self.limit - count

    async def reset(self, subject) -> None:
        await self.counters.reset(self.key_for(subject))
