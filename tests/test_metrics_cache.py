"""Tests for the cache-aside dashboard metrics cache."""

import asyncio
from datetime import datetime
from unittest.mock import patch

import pytest

from clientportal.service.errors import ServiceUnavailableError
from clientportal.service.metrics_cache import MetricsCache
from clientportal.storage.counter_store import MemoryCounterStore


class _Counter:
    def __init__(self, value=None):
        self.calls = 0
        self.value = value or {"cases": {"total": 3}}

    def __call__(self):
        self.calls += 1
        return self.value


@pytest.fixture
def cache(clock):
    return MetricsCache(MemoryCounterStore(clock=clock), ttl_seconds=300, clock=clock)


class TestMetricsCache:
    async def test_second_call_within_ttl_is_served_from_cache(self, cache):
        compute = _Counter()
        first = await cache.get_or_compute("T1", compute)
        second = await cache.get_or_compute("T1", compute)
        assert first == second == {"cases": {"total": 3}}
        assert compute.calls == 1

    async def test_invalidate_forces_recompute(self, cache):
        compute = _Counter()
        await cache.get_or_compute("T1", compute)
        assert await cache.invalidate("T1") is True
        await cache.get_or_compute("T1", compute)
        assert compute.calls == 2

    async def test_entries_expire_after_ttl(self, cache, clock):
        compute = _Counter()
        await cache.get_or_compute("T1", compute)
        clock.advance(seconds=299)
        await cache.get_or_compute("T1", compute)
        assert compute.calls == 1
        clock.advance(seconds=1)
        await cache.get_or_compute("T1", compute)
        assert compute.calls == 2

    async def test_tenants_are_cached_separately(self, cache):
        compute = _Counter()
        await cache.get_or_compute("T1", compute)
        await cache.get_or_compute("T2", compute)
        assert compute.calls == 2

    async def test_coroutine_compute_functions(self, cache):
        async def compute():
            return {"ok": True}

        assert await cache.get_or_compute("T1", compute) == {"ok": True}

    async def test_corrupt_entry_is_a_miss(self, cache):
        await cache.store.set(MetricsCache.key_for("T1"), "{broken", 300)
        compute = _Counter()
        assert await cache.get_or_compute("T1", compute) == compute.value
        assert compute.calls == 1

    async def test_unreachable_store_computes_every_time(self, unavailable_store, clock):
        cache = MetricsCache(unavailable_store, clock=clock)
        compute = _Counter()
        with patch("clientportal.service.metrics_cache.logger") as mock_logger:
            await cache.get_or_compute("T1", compute)
            await cache.get_or_compute("T1", compute)
            assert await cache.invalidate("T1") is False
        assert compute.calls == 2
        warnings = [call[0][0] for call in mock_logger.warning.call_args_list]
        assert warnings.count("metrics_cache_degraded") == 4
        assert warnings[-1] == "metrics_cache_invalidate_failed"

    async def test_unserializable_value_is_returned_uncached(self, cache):
        compute = _Counter({"generated_at": datetime(2026, 1, 1)})
        with patch("clientportal.service.metrics_cache.logger") as mock_logger:
            first = await cache.get_or_compute("T1", compute)
            second = await cache.get_or_compute("T1", compute)
        assert first == second == {"generated_at": datetime(2026, 1, 1)}
        assert compute.calls == 2
        assert await cache.store.get(MetricsCache.key_for("T1")) is None
        mock_logger.warning.assert_any_call(
            "metrics_cache_degraded",
            operation="serialize",
            key=MetricsCache.key_for("T1"),
            error="Object of type datetime is not JSON serializable",
        )

    async def test_slow_compute_raises_service_unavailable(self, clock):
        cache = MetricsCache(
            MemoryCounterStore(clock=clock), compute_timeout_seconds=0.05, clock=clock
        )

        async def compute():
            await asyncio.sleep(1)
            return {}

        with pytest.raises(ServiceUnavailableError):
            await cache.get_or_compute("T1", compute)
