from __future__ import annotations

import asyncio

from ops_dashboard.cache import CacheLayer, ResourceOptions
from ops_dashboard.store import MemoryStore
from ops_dashboard.subscriptions import ChangeSubscriber

OPTIONS = ResourceOptions(stale_after=300, dedupe_interval=300, timeout=None)


def _store() -> MemoryStore:
    return MemoryStore(tables={"projects": [{"id": "p1", "name": "Alpha"}], "users": []})


def _project_fetcher(store: MemoryStore, calls: list[int]):
    async def fetch():
        calls.append(1)
        return [row["name"] for row in await store.query("projects", order=["name"])]

    return fetch


def test_acquire_is_reference_counted():
    store = _store()
    subscriber = ChangeSubscriber(store, CacheLayer())

    assert subscriber.acquire("tasks", {"tasks", "users"}) == 1
    assert subscriber.acquire("tasks", {"tasks", "users"}) == 2
    assert store.subscription_count() == 2

    assert subscriber.release("tasks") == 1
    assert store.subscription_count() == 2
    assert subscriber.release("tasks") == 0
    assert store.subscription_count() == 0
    assert subscriber.watched_keys() == []
    # releasing an unknown key is harmless
    assert subscriber.release("tasks") == 0


def test_change_event_invalidates_watching_key():
    async def scenario():
        store = _store()
        cache = CacheLayer()
        subscriber = ChangeSubscriber(store, cache)
        calls: list[int] = []
        fetch = _project_fetcher(store, calls)

        assert await cache.read("projects", fetch, OPTIONS, tables={"projects"}) == ["Alpha"]
        subscriber.acquire("projects", {"projects"})

        # A write from another client arrives through the change feed.
        await store.insert("projects", {"name": "Beta"})
        await asyncio.sleep(0)
        await cache.settle()
        return cache.peek("projects").data, len(calls)

    data, fetches = asyncio.run(scenario())
    assert data == ["Alpha", "Beta"]
    assert fetches == 2


def test_unrelated_table_does_not_invalidate():
    async def scenario():
        store = _store()
        cache = CacheLayer()
        subscriber = ChangeSubscriber(store, cache)
        calls: list[int] = []
        await cache.read("projects", _project_fetcher(store, calls), OPTIONS, tables={"projects"})
        subscriber.acquire("projects", {"projects"})
        await store.insert("users", {"id": "u1"})
        await asyncio.sleep(0)
        await cache.settle()
        return len(calls)

    assert asyncio.run(scenario()) == 1


def test_reconnect_invalidates_every_watched_key():
    async def scenario():
        store = _store()
        cache = CacheLayer()
        subscriber = ChangeSubscriber(store, cache)
        subscriber.start()
        calls: list[int] = []
        await cache.read("projects", _project_fetcher(store, calls), OPTIONS, tables={"projects"})
        subscriber.acquire("projects", {"projects"})

        store.disconnect()
        await store.insert("projects", {"name": "Gamma"})
        await asyncio.sleep(0)
        await cache.settle()
        # The event was lost while disconnected.
        assert cache.peek("projects").data == ["Alpha"]

        store.reconnect()
        await cache.settle()
        return cache.peek("projects").data, subscriber.get_health()["reconnectCount"]

    data, reconnects = asyncio.run(scenario())
    assert data == ["Alpha", "Gamma"]
    assert reconnects == 1


def test_close_drops_handles_and_reconnect_listener():
    async def scenario():
        store = _store()
        cache = CacheLayer()
        subscriber = ChangeSubscriber(store, cache)
        subscriber.start()
        subscriber.acquire("projects", {"projects"})
        subscriber.close()
        store.reconnect()
        return store.subscription_count(), subscriber.get_health()["reconnectCount"]

    assert asyncio.run(scenario()) == (0, 0)
