import pytest

from taskdeck.service.errors import RateLimitedError
from taskdeck.service.rate_limit import RequestRateLimiter
from taskdeck.storage.counters import MemoryCounterStore


class ManualClockCounters(MemoryCounterStore):
    def __init__(self):
        super().__init__()
        self.now = 1000.0

    def _clock(self) -> float:
        return self.now


async def test_requests_within_limit_report_remaining():
    limiter = RequestRateLimiter(MemoryCounterStore(), 3, 60)

    assert await limiter.hit(42) == 2
    assert await limiter.hit(42) == 1
    assert await limiter.hit(42) == 0


async def test_request_past_limit_is_rejected_with_retry_after():
    counters = ManualClockCounters()
    limiter = RequestRateLimiter(counters, 2, 60, prefix="rate:login")
    await limiter.hit("10.0.0.1")
    await limiter.hit("10.0.0.1")
    counters.now += 20

    with pytest.raises(RateLimitedError) as excinfo:
        await limiter.hit("10.0.0.1")

    assert excinfo.value.status_code == 429
    assert excinfo.value.detail == {"retry_after": 40, "limit": 2}


async def test_window_expiry_restores_capacity():
    counters = ManualClockCounters()
    limiter = RequestRateLimiter(counters, 1, 60)
    await limiter.hit("subject")
    with pytest.raises(RateLimitedError):
        await limiter.hit("subject")

    counters.now += 61

    assert await limiter.hit("subject") == 0


async def test_subjects_and_prefixes_are_independent():
    counters = MemoryCounterStore()
    api = RequestRateLimiter(counters, 1, 60)
    login = RequestRateLimiter(counters, 1, 60, prefix="rate:login")

    await api.hit(1)
    await api.hit(2)
    await login.hit(1)

    assert await counters.get("rate:user:1") == 1
    assert await counters.get("rate:login:1") == 1


async def test_reset_clears_the_window():
    limiter = RequestRateLimiter(MemoryCounterStore(), 1, 60)
    await limiter.hit("subject")

    await limiter.reset("subject")

    assert await limiter.hit("subject") == 0


async def test_non_positive_limit_disables_limiting():
    limiter = RequestRateLimiter(MemoryCounterStore(), 0, 60)

    for _ in range(20):
        await limiter.hit("subject")


async def test_counter_ttl_is_zero_for_unknown_keys():
    counters = MemoryCounterStore()

    assert await counters.ttl("missing") == 0
    assert await counters.get("missing") == 0


async def test_expired_windows_for_other_clients_are_swept():
    counters = ManualClockCounters()
    counters.prune_interval = 4
    limiter = RequestRateLimiter(counters, 5, 60, prefix="rate:login")
    for octet in range(1, 4):
        await limiter.hit(f"10.0.0.{octet}")
    assert len(counters._counters) == 3

    counters.now += 61
    await limiter.hit("10.0.0.99")

    assert len(counters._counters) == 1
    assert await counters.get("rate:login:10.0.0.1") == 0
