from __future__ import annotations

import asyncio

import pytest

from ops_dashboard.cache import CacheLayer, FetchTimeoutError, ResourceOptions
from ops_dashboard.store import StoreError


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class GatedFetcher:
    """Each call blocks until its gate is opened, then returns v1, v2, ..."""

    def __init__(self):
        self.gates: list[asyncio.Event] = []

    @property
    def calls(self) -> int:
        return len(self.gates)

    async def __call__(self) -> str:
        gate = asyncio.Event()
        self.gates.append(gate)
        value = f"v{len(self.gates)}"
        await gate.wait()
        return value


class CountingFetcher:
    def __init__(self, fail: Exception | None = None):
        self.calls = 0
        self.fail = fail

    async def __call__(self) -> list[int]:
        self.calls += 1
        await asyncio.sleep(0)
        if self.fail is not None:
            raise self.fail
        return [self.calls]


OPTIONS = ResourceOptions(stale_after=30, dedupe_interval=2, timeout=None)


def test_first_get_returns_empty_snapshot_then_read_waits_for_data():
    async def scenario():
        cache = CacheLayer(clock=FakeClock())
        fetch = CountingFetcher()
        snap = cache.get("tasks", fetch, OPTIONS)
        assert snap.has_data is False
        assert snap.is_validating is True
        assert await cache.read("tasks", fetch, OPTIONS) == [1]
        return fetch.calls

    assert asyncio.run(scenario()) == 1


def test_gets_within_dedupe_interval_share_one_fetch():
    always_stale = ResourceOptions(stale_after=0, dedupe_interval=2, timeout=None)

    async def scenario():
        clock = FakeClock()
        cache = CacheLayer(clock=clock)
        fetch = CountingFetcher()
        await cache.read("k", fetch, always_stale)
        clock.now += 1
        cache.get("k", fetch, always_stale)
        cache.get("k", fetch, always_stale)
        await cache.settle("k")
        assert fetch.calls == 1
        clock.now += 2
        cache.get("k", fetch, always_stale)
        await cache.settle("k")
        return fetch.calls

    assert asyncio.run(scenario()) == 2


def test_stale_entry_served_immediately_while_revalidating():
    async def scenario():
        clock = FakeClock()
        cache = CacheLayer(clock=clock)
        fetch = CountingFetcher()
        await cache.read("k", fetch, OPTIONS)
        clock.now += 31
        snap = cache.get("k", fetch, OPTIONS)
        assert snap.data == [1]
        assert snap.is_stale is True
        assert snap.is_validating is True
        await cache.settle("k")
        fresh = cache.peek("k")
        assert fresh.data == [2]
        assert fresh.is_stale is False

    asyncio.run(scenario())


def test_fresh_entry_is_not_refetched():
    async def scenario():
        clock = FakeClock()
        cache = CacheLayer(clock=clock)
        fetch = CountingFetcher()
        await cache.read("k", fetch, OPTIONS)
        clock.now += 10
        cache.get("k", fetch, OPTIONS)
        await cache.settle()
        return fetch.calls

    assert asyncio.run(scenario()) == 1


def test_invalidations_before_request_is_issued_coalesce():
    async def scenario():
        cache = CacheLayer(clock=FakeClock())
        fetch = CountingFetcher()
        cache.get("k", fetch, OPTIONS)
        assert cache.invalidate("k") is True
        assert cache.invalidate("k") is True
        await cache.settle("k")
        assert fetch.calls == 1

        cache.invalidate("k")
        cache.invalidate("k")
        await cache.settle("k")
        return fetch.calls

    assert asyncio.run(scenario()) == 2


def test_invalidate_unknown_key_is_a_noop():
    async def scenario():
        return CacheLayer().invalidate("missing")

    assert asyncio.run(scenario()) is False


def test_out_of_order_responses_keep_newest_generation():
    async def scenario():
        cache = CacheLayer(clock=FakeClock())
        fetch = GatedFetcher()
        cache.get("k", fetch, OPTIONS)
        await asyncio.sleep(0)
        assert fetch.calls == 1

        # The first request is on the wire; a change supersedes it.
        cache.invalidate("k")
        await asyncio.sleep(0)
        assert fetch.calls == 2

        fetch.gates[1].set()
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert cache.peek("k").data == "v2"

        fetch.gates[0].set()
        await cache.settle("k")
        snap = cache.peek("k")
        health = cache.get_health()["k"]
        return snap.data, health["discardedCount"]

    assert asyncio.run(scenario()) == ("v2", 1)


def test_older_response_is_discarded_after_newer_fetch_failed():
    async def scenario():
        cache = CacheLayer(clock=FakeClock())
        fetch = GatedFetcher()
        cache.get("k", fetch, OPTIONS)
        await asyncio.sleep(0)
        assert fetch.calls == 1

        async def failing() -> str:
            raise StoreError("unavailable", "backend down")

        # The first request is on the wire; a change supersedes it and the
        # refetch fails.
        cache.get("k", failing, OPTIONS)
        cache.invalidate("k")
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert isinstance(cache.peek("k").error, StoreError)

        fetch.gates[0].set()
        await cache.settle("k")
        return cache.peek("k"), cache.get_health()["k"]

    snap, health = asyncio.run(scenario())
    assert snap.has_data is False
    assert snap.data is None
    assert isinstance(snap.error, StoreError)
    assert snap.is_stale is True
    assert health["discardedCount"] == 1
    assert health["completedGeneration"] == 2


def test_rollback_refetches_when_a_response_was_dropped_meanwhile():
    async def scenario():
        cache = CacheLayer(clock=FakeClock())
        fetch = GatedFetcher()
        cache.get("k", fetch, OPTIONS)
        await asyncio.sleep(0)
        fetch.gates[0].set()
        await cache.settle("k")

        cache.invalidate("k")
        await asyncio.sleep(0)
        rollback = cache.apply_optimistic("k", lambda data: "optimistic")
        fetch.gates[1].set()
        await cache.settle("k")
        assert cache.peek("k").data == "optimistic"

        rollback()
        await asyncio.sleep(0)
        assert fetch.calls == 3
        fetch.gates[2].set()
        await cache.settle("k")
        return cache.peek("k")

    snap = asyncio.run(scenario())
    assert snap.data == "v3"
    assert snap.is_stale is False


def test_rollback_lets_a_pending_response_land():
    async def scenario():
        cache = CacheLayer(clock=FakeClock())
        fetch = GatedFetcher()
        cache.get("k", fetch, OPTIONS)
        await asyncio.sleep(0)
        fetch.gates[0].set()
        await cache.settle("k")

        cache.invalidate("k")
        await asyncio.sleep(0)
        rollback = cache.apply_optimistic("k", lambda data: "optimistic")
        rollback()
        assert cache.peek("k").data == "v1"
        fetch.gates[1].set()
        await cache.settle("k")
        return cache.peek("k").data, fetch.calls

    assert asyncio.run(scenario()) == ("v2", 2)


def test_failed_refetch_keeps_last_known_good_data():
    async def scenario():
        clock = FakeClock()
        cache = CacheLayer(clock=clock)
        await cache.read("k", CountingFetcher(), OPTIONS)

        failing = CountingFetcher(fail=StoreError("unavailable", "backend down"))
        cache.invalidate("k")
        cache.get("k", failing, OPTIONS)
        await cache.settle("k")
        snap = cache.peek("k")
        assert snap.data == [1]
        assert isinstance(snap.error, StoreError)
        assert snap.is_stale is True
        # read falls back to the stale data instead of raising
        assert await cache.read("k", failing, OPTIONS) == [1]

    asyncio.run(scenario())


def test_read_raises_when_nothing_was_ever_loaded():
    async def scenario():
        cache = CacheLayer(clock=FakeClock())
        await cache.read("k", CountingFetcher(fail=StoreError("timeout", "slow")), OPTIONS)

    with pytest.raises(StoreError) as excinfo:
        asyncio.run(scenario())
    assert excinfo.value.code == "timeout"


def test_fetch_timeout_is_recorded_as_error():
    async def slow() -> str:
        await asyncio.sleep(1)
        return "late"

    async def scenario():
        cache = CacheLayer(clock=FakeClock())
        await cache.read("k", slow, ResourceOptions(stale_after=5, dedupe_interval=0, timeout=0.01))

    with pytest.raises(FetchTimeoutError) as excinfo:
        asyncio.run(scenario())
    assert excinfo.value.code == "timeout"
    assert excinfo.value.key == "k"


def test_timed_out_refetch_keeps_cached_data():
    options = ResourceOptions(stale_after=5, dedupe_interval=0, timeout=0.01)

    async def slow() -> str:
        await asyncio.sleep(1)
        return "late"

    async def scenario():
        cache = CacheLayer(clock=FakeClock())
        await cache.read("k", CountingFetcher(), options)
        cache.get("k", slow, options)
        cache.invalidate("k")
        await cache.settle("k")
        snap = cache.peek("k")
        return snap, await cache.read("k", slow, options)

    snap, fallback = asyncio.run(scenario())
    assert snap.data == [1]
    assert isinstance(snap.error, FetchTimeoutError)
    assert snap.is_stale is True
    assert snap.is_validating is False
    assert fallback == [1]


def test_distinct_keys_do_not_share_entries():
    async def scenario():
        cache = CacheLayer(clock=FakeClock())
        a = await cache.read("tasks:project_id=a", CountingFetcher(), OPTIONS)
        b_fetch = CountingFetcher()
        b_fetch.calls = 10
        b = await cache.read("tasks:project_id=b", b_fetch, OPTIONS)
        return a, b, sorted(cache.keys())

    a, b, keys = asyncio.run(scenario())
    assert a == [1]
    assert b == [11]
    assert keys == ["tasks:project_id=a", "tasks:project_id=b"]


def test_invalidate_tables_hits_only_dependent_keys():
    async def scenario():
        cache = CacheLayer(clock=FakeClock())
        await cache.read("tasks", CountingFetcher(), OPTIONS, tables={"tasks", "users"})
        await cache.read("projects", CountingFetcher(), OPTIONS, tables={"projects"})
        keys = cache.invalidate_tables({"users"})
        await cache.settle()
        return keys

    assert asyncio.run(scenario()) == ["tasks"]


def test_listeners_see_every_applied_update():
    async def scenario():
        cache = CacheLayer(clock=FakeClock())
        seen = []
        unsubscribe = cache.subscribe("k", lambda snap: seen.append(snap.data))
        fetch = CountingFetcher()
        await cache.read("k", fetch, OPTIONS)
        cache.invalidate("k")
        await cache.settle("k")
        unsubscribe()
        cache.invalidate("k")
        await cache.settle("k")
        return seen

    assert asyncio.run(scenario()) == [[1], [2]]


def test_optimistic_update_and_rollback():
    async def scenario():
        cache = CacheLayer(clock=FakeClock())
        await cache.read("k", CountingFetcher(), OPTIONS)
        rollback = cache.apply_optimistic("k", lambda data: data + [99])
        assert cache.peek("k").data == [1, 99]
        rollback()
        assert cache.peek("k").data == [1]
        assert cache.apply_optimistic("missing", lambda data: data) is None

    asyncio.run(scenario())


def test_optimistic_update_discards_older_inflight_response():
    async def scenario():
        cache = CacheLayer(clock=FakeClock())
        fetch = GatedFetcher()
        cache.get("k", fetch, OPTIONS)
        await asyncio.sleep(0)
        fetch.gates[0].set()
        await cache.settle("k")

        cache.invalidate("k")
        await asyncio.sleep(0)
        cache.apply_optimistic("k", lambda data: "optimistic")
        fetch.gates[1].set()
        await cache.settle("k")
        return cache.peek("k").data

    assert asyncio.run(scenario()) == "optimistic"


def test_results_still_land_after_last_consumer_releases():
    async def scenario():
        cache = CacheLayer(clock=FakeClock())
        fetch = GatedFetcher()
        assert cache.retain("k") == 1
        cache.get("k", fetch, OPTIONS)
        await asyncio.sleep(0)
        assert cache.release("k") == 0
        fetch.gates[0].set()
        await cache.settle("k")
        return cache.peek("k").data, cache.consumers("k")

    assert asyncio.run(scenario()) == ("v1", 0)
