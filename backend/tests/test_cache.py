"""
TTL Cache Tests
"""

import asyncio
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from cache import TTLCache, make_key


class FakeClock:
    def __init__(self):
        self.now = 50.0

    def __call__(self):
        return self.now


def _counter(value):
    calls = []

    async def compute():
        calls.append(1)
        return value

    return compute, calls


class TestKeys:

    def test_argument_order_does_not_matter(self):
        assert make_key("deals", {"a": 1, "b": [1, 2]}) == make_key("deals", {"b": [1, 2], "a": 1})

    def test_different_arguments_differ(self):
        assert make_key("deals", {"pipeline_id": "a"}) != make_key("deals", {"pipeline_id": "b"})
        assert make_key("deals", None) == make_key("deals", {})


class TestTTLCache:

    @pytest.mark.asyncio
    async def test_hit_within_ttl_and_miss_after(self):
        clock = FakeClock()
        cache = TTLCache(clock=clock)
        compute, calls = _counter(["x"])

        assert await cache.get_or_set("stages", None, compute, ttl=10) == ["x"]
        clock.now += 9
        assert await cache.get_or_set("stages", None, compute, ttl=10) == ["x"]
        assert len(calls) == 1

        clock.now += 1
        await cache.get_or_set("stages", None, compute, ttl=10)
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_get_reads_fresh_entries_only(self):
        clock = FakeClock()
        cache = TTLCache(clock=clock)
        compute, _ = _counter("v")

        assert cache.get("owners") is None
        await cache.get_or_set("owners", None, compute, ttl=5)
        assert cache.get("owners") == "v"
        clock.now += 5
        assert cache.get("owners") is None

    @pytest.mark.asyncio
    async def test_revalidate_tag_drops_tagged_entries(self):
        cache = TTLCache(clock=FakeClock())
        deals, deal_calls = _counter(["deal"])
        owners, owner_calls = _counter(["owner"])

        await cache.get_or_set("deals", {"pipeline_id": "a"}, deals, ttl=300, tags=["hubspot-deals"])
        await cache.get_or_set("deals", {"pipeline_id": "b"}, deals, ttl=300, tags=["hubspot-deals"])
        await cache.get_or_set("owners", None, owners, ttl=300, tags=["hubspot-owners"])

        assert cache.revalidate_tag("hubspot-deals") == 2
        assert cache.revalidate_tag("unknown") == 0

        await cache.get_or_set("deals", {"pipeline_id": "a"}, deals, ttl=300, tags=["hubspot-deals"])
        await cache.get_or_set("owners", None, owners, ttl=300, tags=["hubspot-owners"])
        assert len(deal_calls) == 3
        assert len(owner_calls) == 1

    @pytest.mark.asyncio
    async def test_returns_fresh_list_copies(self):
        cache = TTLCache(clock=FakeClock())
        compute, _ = _counter([1, 2, 3])

        first = await cache.get_or_set("k", None, compute, ttl=60)
        first.append(4)

        assert await cache.get_or_set("k", None, compute, ttl=60) == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_concurrent_misses_share_computation(self):
        cache = TTLCache(clock=FakeClock())
        release = asyncio.Event()
        calls = []

        async def compute():
            calls.append(1)
            await release.wait()
            return ["shared"]

        tasks = [asyncio.ensure_future(cache.get_or_set("k", None, compute, ttl=60)) for _ in range(3)]
        await asyncio.sleep(0)
        release.set()

        assert await asyncio.gather(*tasks) == [["shared"]] * 3
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_failures_are_not_cached(self):
        cache = TTLCache(clock=FakeClock())
        attempts = []

        async def compute():
            attempts.append(1)
            if len(attempts) == 1:
                raise RuntimeError("HubSpot down")
            return "ok"

        with pytest.raises(RuntimeError):
            await cache.get_or_set("k", None, compute, ttl=60)

        assert await cache.get_or_set("k", None, compute, ttl=60) == "ok"
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_clear(self):
        cache = TTLCache(clock=FakeClock())
        compute, calls = _counter("v")

        await cache.get_or_set("k", None, compute, ttl=60)
        cache.clear()
        await cache.get_or_set("k", None, compute, ttl=60)

        assert len(calls) == 2


class TestEviction:

    @pytest.mark.asyncio
    async def test_expired_entries_evicted_on_miss(self):
        clock = FakeClock()
        cache = TTLCache(clock=clock)
        compute, _ = _counter([])

        for i in range(500):
            await cache.get_or_set("deals-search", {"pipeline_id": f"p{i}"}, compute, ttl=300)
        assert len(cache._entries) == 500

        clock.now += 10_000
        await cache.get_or_set("deals-search", {"pipeline_id": "fresh"}, compute, ttl=300)

        assert len(cache._entries) == 1

    @pytest.mark.asyncio
    async def test_live_entries_survive_eviction(self):
        clock = FakeClock()
        cache = TTLCache(clock=clock)
        compute, calls = _counter("v")

        await cache.get_or_set("short", None, compute, ttl=10)
        await cache.get_or_set("long", None, compute, ttl=1000)
        clock.now += 20
        await cache.get_or_set("other", None, compute, ttl=10)

        assert make_key("short") not in cache._entries
        assert cache.get("short") is None
        assert cache.get("long") == "v"
        await cache.get_or_set("long", None, compute, ttl=1000)
        assert len(calls) == 3
