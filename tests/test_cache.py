"""Tests for the freshness cache and request deduplicator."""

import asyncio
import dataclasses

import pytest

from memctl.cache import FreshnessCache, cache_key
from memctl.dedup import RequestDeduplicator

from tests.conftest import FakeClock


@pytest.fixture
def cache(clock):
    return FreshnessCache(fresh_window=30.0, clock=clock)


class TestFreshnessCache:
    """Tests for FreshnessCache."""

    def test_cache_key(self):
        assert cache_key("get", "/memories/k") == "GET:/memories/k"

    def test_missing(self, cache):
        assert cache.get("GET:/x") is None
        assert cache.get_etag("GET:/x") is None

    def test_fresh_then_stale(self, cache, clock):
        cache.set("GET:/x", {"a": 1}, '"e1"')

        fresh = cache.get("GET:/x")
        assert fresh.data == {"a": 1}
        assert fresh.etag == '"e1"'
        assert fresh.stale is False

        clock.advance(29)
        assert cache.get("GET:/x").stale is False

        clock.advance(1)
        stale = cache.get("GET:/x")
        assert stale.stale is True
        assert stale.data == {"a": 1}

        clock.advance(3600)
        assert cache.get("GET:/x").stale is True
        assert cache.get_etag("GET:/x") == '"e1"'

    def test_stale_window_bounds_stale_reads(self, clock):
        cache = FreshnessCache(fresh_window=10, stale_window=20, clock=clock)
        cache.set("GET:/x", "data", "etag")

        clock.advance(25)
        assert cache.get("GET:/x").stale is True

        clock.advance(10)
        assert cache.get("GET:/x") is None
        assert cache.get_etag("GET:/x") == "etag"

    def test_set_replaces_entry(self, cache):
        cache.set("GET:/x", "old", "e1")
        cache.set("GET:/x", "new")

        assert len(cache) == 1
        assert cache.get("GET:/x").data == "new"
        assert cache.get_etag("GET:/x") is None

    def test_entries_are_immutable(self, cache):
        cache.set("GET:/x", "data")

        with pytest.raises(dataclasses.FrozenInstanceError):
            cache.peek("GET:/x").data = "changed"

    def test_touch_refreshes_timestamp_only(self, cache, clock):
        data = {"memory": {"key": "k"}}
        cache.set("GET:/x", data, "e1")
        clock.advance(45)

        assert cache.touch("GET:/x") is True

        entry = cache.peek("GET:/x")
        assert entry.data is data
        assert entry.etag == "e1"
        assert entry.stored_at == clock.now
        assert cache.get("GET:/x").stale is False

    def test_touch_missing(self, cache):
        assert cache.touch("GET:/missing") is False
        assert "GET:/missing" not in cache

    def test_invalidate_prefix(self, cache):
        cache.set("GET:/memories", 1)
        cache.set("GET:/memories/a", 2)
        cache.set("GET:/memories?q=x", 3)
        cache.set("GET:/projects", 4)
        generation = cache.generation

        assert cache.invalidate_prefix("GET:/memories") == 3

        assert len(cache) == 1
        assert cache.get("GET:/projects").data == 4
        assert cache.generation > generation

    def test_clear(self, cache):
        cache.set("GET:/a", 1)
        cache.clear()
        assert len(cache) == 0


class TestRequestDeduplicator:
    """Tests for RequestDeduplicator."""

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_result(self):
        dedup = RequestDeduplicator()
        calls = 0

        async def fetch():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return {"value": calls}

        results = await asyncio.gather(*(dedup.run("GET:/x", fetch) for _ in range(4)))

        assert calls == 1
        assert all(r is results[0] for r in results)
        assert not dedup.in_flight("GET:/x")

    @pytest.mark.asyncio
    async def test_distinct_keys_run_separately(self):
        dedup = RequestDeduplicator()

        async def fetch(value):
            await asyncio.sleep(0)
            return value

        a, b = await asyncio.gather(
            dedup.run("GET:/a", lambda: fetch("a")),
            dedup.run("GET:/b", lambda: fetch("b")),
        )

        assert (a, b) == ("a", "b")

    @pytest.mark.asyncio
    async def test_failure_reaches_all_callers_and_clears_key(self):
        dedup = RequestDeduplicator()

        async def fail():
            await asyncio.sleep(0.01)
            raise RuntimeError("boom")

        results = await asyncio.gather(
            dedup.run("GET:/x", fail), dedup.run("GET:/x", fail), return_exceptions=True
        )

        assert all(isinstance(r, RuntimeError) for r in results)
        assert results[0] is results[1]
        assert len(dedup) == 0

    @pytest.mark.asyncio
    async def test_sequential_calls_start_fresh(self):
        dedup = RequestDeduplicator()
        calls = 0

        async def fetch():
            nonlocal calls
            calls += 1
            return calls

        assert await dedup.run("GET:/x", fetch) == 1
        assert await dedup.run("GET:/x", fetch) == 2

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_shared_request(self):
        dedup = RequestDeduplicator()
        release = asyncio.Event()

        async def fetch():
            await release.wait()
            return "done"

        first = asyncio.create_task(dedup.run("GET:/x", fetch))
        second = asyncio.create_task(dedup.run("GET:/x", fetch))
        await asyncio.sleep(0)

        first.cancel()
        await asyncio.sleep(0)
        release.set()

        assert await second == "done"
        assert first.cancelled()


def test_fake_clock():
    clock = FakeClock(start=5)
    clock.advance(2.5)
    assert clock() == 7.5
