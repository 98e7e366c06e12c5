"""
Tests for the tiered cache: tier table, staleness, retention, coalescing,
invalidation and the Redis mirror.
"""

import asyncio
import json

import pytest

from comp_valuation.core.cache import STALE, TIERS, Tier, TieredCache


class FakeRedis:
    """Just enough of the redis client for the JSON mirror."""

    def __init__(self):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    def get(self, key):
        return self.store.get(key)

    def setex(self, key, ttl, value):
        self.store[key] = value
        self.ttls[key] = ttl

    def delete(self, key):
        self.store.pop(key, None)


def counting_loader(values):
    calls = []

    async def loader():
        calls.append(1)
        return values[min(len(calls), len(values)) - 1]

    return loader, calls


class TestTierTable:
    @pytest.mark.parametrize("tier, stale_after, retention", [
        (Tier.STATIC, 1800, 7200),
        (Tier.SEMI_STATIC, 600, 1800),
        (Tier.DYNAMIC, 60, 600),
        (Tier.REALTIME, 0, 300),
        (Tier.PRICING, 900, 3600),
    ])
    def test_policies(self, tier, stale_after, retention):
        assert TIERS[tier].stale_after == stale_after
        assert TIERS[tier].retention == retention

    def test_only_realtime_auto_refreshes(self):
        cache = TieredCache()
        assert cache.refresh_interval(Tier.REALTIME) == 30
        assert [t for t in Tier if cache.refresh_interval(t)] == [Tier.REALTIME]


class TestRead:
    def test_fresh_entry_served_from_cache(self, clock):
        cache = TieredCache(clock=clock)
        loader, calls = counting_loader(["a", "b"])

        async def scenario():
            first = await cache.read(Tier.DYNAMIC, "k", loader)
            clock.advance(30)
            second = await cache.read(Tier.DYNAMIC, "k", loader)
            return first, second

        assert asyncio.run(scenario()) == ("a", "a")
        assert len(calls) == 1

    def test_stale_entry_reloaded(self, clock):
        cache = TieredCache(clock=clock)
        loader, calls = counting_loader(["a", "b"])

        async def scenario():
            await cache.read(Tier.DYNAMIC, "k", loader)
            clock.advance(61)
            return await cache.read(Tier.DYNAMIC, "k", loader)

        assert asyncio.run(scenario()) == "b"
        assert len(calls) == 2

    def test_realtime_is_always_stale(self, clock):
        cache = TieredCache(clock=clock)
        loader, calls = counting_loader(["a", "b"])

        async def scenario():
            await cache.read(Tier.REALTIME, "k", loader)
            return await cache.read(Tier.REALTIME, "k", loader)

        assert asyncio.run(scenario()) == "b"

    def test_retention_drops_entry(self, clock):
        cache = TieredCache(clock=clock)
        cache.set(Tier.DYNAMIC, "k", "v")
        clock.advance(599)
        assert cache.get(Tier.DYNAMIC, "k") == "v"
        clock.advance(2)
        assert cache.get(Tier.DYNAMIC, "k") is None

    def test_tiers_are_separate(self, clock):
        cache = TieredCache(clock=clock)
        cache.set(Tier.STATIC, "k", 1)
        cache.set(Tier.PRICING, "k", 2)
        assert (cache.get(Tier.STATIC, "k"), cache.get(Tier.PRICING, "k")) == (1, 2)

    def test_concurrent_reads_share_one_load(self, clock):
        cache = TieredCache(clock=clock)
        calls = []

        async def slow_loader():
            calls.append(1)
            await asyncio.sleep(0.01)
            return "v"

        async def scenario():
            return await asyncio.gather(*(cache.read(Tier.PRICING, "k", slow_loader) for _ in range(5)))

        assert asyncio.run(scenario()) == ["v"] * 5
        assert len(calls) == 1

    def test_loader_error_propagates_and_is_not_cached(self, clock):
        cache = TieredCache(clock=clock)

        async def broken():
            raise RuntimeError("upstream down")

        async def scenario():
            with pytest.raises(RuntimeError):
                await cache.read(Tier.DYNAMIC, "k", broken)
            return await cache.read(Tier.DYNAMIC, "k", counting_loader(["ok"])[0])

        assert asyncio.run(scenario()) == "ok"


class TestInvalidation:
    def test_invalidate_keeps_data_but_forces_reload(self, clock):
        cache = TieredCache(clock=clock)
        loader, calls = counting_loader(["a", "b"])

        async def scenario():
            await cache.read(Tier.STATIC, "k", loader)
            cache.invalidate(Tier.STATIC, "k")
            peeked = cache.peek(Tier.STATIC, "k")
            reloaded = await cache.read(Tier.STATIC, "k", loader)
            return peeked, reloaded

        peeked, reloaded = asyncio.run(scenario())
        assert peeked.data == "a"
        assert peeked.fetched_at == STALE
        assert cache.is_stale(peeked)
        assert reloaded == "b"
        assert len(calls) == 2

    def test_evict_removes_entry(self, clock):
        cache = TieredCache(clock=clock)
        cache.set(Tier.PRICING, "k", "v")
        cache.evict(Tier.PRICING, "k")
        assert cache.peek(Tier.PRICING, "k") is None

    def test_restore_none_drops_key(self, clock):
        cache = TieredCache(clock=clock)
        cache.set(Tier.DYNAMIC, "k", "v")
        cache.restore(Tier.DYNAMIC, "k", None)
        assert cache.get(Tier.DYNAMIC, "k") is None

    def test_cancel_inflight_serves_current_entry(self, clock):
        cache = TieredCache(clock=clock)

        async def scenario():
            started = asyncio.Event()

            async def slow():
                started.set()
                await asyncio.sleep(3600)
                return "from loader"

            reader = asyncio.ensure_future(cache.read(Tier.DYNAMIC, "k", slow))
            await started.wait()
            cache.set(Tier.DYNAMIC, "k", "from writer")
            assert cache.cancel_inflight(Tier.DYNAMIC, "k") is True
            return await reader

        assert asyncio.run(scenario()) == "from writer"

    def test_held_key_skips_loader(self, clock):
        cache = TieredCache(clock=clock)
        cache.set(Tier.DYNAMIC, "k", "optimistic")
        cache.hold(Tier.DYNAMIC, "k")
        clock.advance(120)
        loader, calls = counting_loader(["server"])

        assert asyncio.run(cache.read(Tier.DYNAMIC, "k", loader)) == "optimistic"
        assert calls == []

        cache.release(Tier.DYNAMIC, "k")
        assert asyncio.run(cache.read(Tier.DYNAMIC, "k", loader)) == "server"


class TestAutoRefresh:
    def test_rereads_on_interval(self, clock):
        cache = TieredCache(clock=clock)
        loader, calls = counting_loader(["a", "b", "c"])
        delays = []

        async def stop_after_three(delay):
            delays.append(delay)
            if len(delays) == 3:
                raise asyncio.CancelledError()

        async def scenario():
            with pytest.raises(asyncio.CancelledError):
                await cache.auto_refresh(Tier.REALTIME, "k", loader, sleep=stop_after_three)

        asyncio.run(scenario())
        assert delays == [30, 30, 30]
        assert len(calls) == 3
        assert cache.get(Tier.REALTIME, "k") == "c"

    def test_rejects_tier_without_interval(self, clock):
        cache = TieredCache(clock=clock)
        with pytest.raises(ValueError):
            asyncio.run(cache.auto_refresh(Tier.PRICING, "k", counting_loader(["a"])[0]))


class TestRedisMirror:
    def test_writes_json_with_retention_ttl(self, clock):
        redis = FakeRedis()
        cache = TieredCache(clock=clock, backend=redis)
        cache.set(Tier.PRICING, "abc", {"value": 10.5})

        stored = json.loads(redis.store["cache:pricing:abc"])
        assert stored == {"data": {"value": 10.5}, "fetched_at": clock()}
        assert redis.ttls["cache:pricing:abc"] == 3600

    def test_warm_read_from_shared_backend(self, clock):
        redis = FakeRedis()
        TieredCache(clock=clock, backend=redis).set(Tier.PRICING, "abc", {"value": 1})
        other_worker = TieredCache(clock=clock, backend=redis)

        entry = other_worker.peek(Tier.PRICING, "abc")
        assert entry.data == {"value": 1}
        assert not other_worker.is_stale(entry)

    def test_unreadable_backend_entry_ignored(self, clock):
        redis = FakeRedis()
        redis.store["cache:pricing:abc"] = "{not json"
        assert TieredCache(clock=clock, backend=redis).peek(Tier.PRICING, "abc") is None

    def test_evict_deletes_backend_key(self, clock):
        redis = FakeRedis()
        cache = TieredCache(clock=clock, backend=redis)
        cache.set(Tier.PRICING, "abc", 1)
        cache.evict(Tier.PRICING, "abc")
        assert "cache:pricing:abc" not in redis.store
