from __future__ import annotations

import asyncio
from typing import Any

import pytest

from ops_dashboard.background import DetachedTasks
from ops_dashboard.cache import CacheLayer, ResourceOptions
from ops_dashboard.mutations import MutationExecutor, MutationStep
from ops_dashboard.store import MemoryStore, StoreError

OPTIONS = ResourceOptions(stale_after=300, dedupe_interval=300, timeout=None)


def _setup():
    store = MemoryStore(tables={"projects": [{"id": "p1", "name": "Alpha"}]})
    cache = CacheLayer()
    return store, cache, MutationExecutor(store, cache, DetachedTasks())


def _names(store: MemoryStore, calls: list[int]):
    async def fetch():
        calls.append(1)
        return sorted(row["name"] for row in await store.query("projects"))

    return fetch


def test_successful_write_invalidates_dependent_keys():
    async def scenario():
        store, cache, executor = _setup()
        calls: list[int] = []
        await cache.read("projects", _names(store, calls), OPTIONS, tables={"projects"})
        await executor.insert("projects", {"name": "Beta"})
        await cache.settle()
        return cache.peek("projects").data, len(calls)

    assert asyncio.run(scenario()) == (["Alpha", "Beta"], 2)


def test_rejected_write_leaves_cache_untouched():
    async def scenario():
        store, cache, executor = _setup()
        calls: list[int] = []
        await cache.read("projects", _names(store, calls), OPTIONS, tables={"projects"})
        with pytest.raises(StoreError) as excinfo:
            await executor.insert("projects", {"name": None})
        await cache.settle()
        snap = cache.peek("projects")
        return excinfo.value.code, snap.data, snap.is_stale, len(calls)

    code, data, stale, fetches = asyncio.run(scenario())
    assert code == "write_rejected"
    assert data == ["Alpha"]
    assert stale is False
    assert fetches == 1


def test_failed_write_rolls_back_optimistic_state():
    async def scenario():
        store, cache, executor = _setup()
        await cache.read("projects", _names(store, []), OPTIONS, tables={"projects"})
        store.fail_next("update", "projects", StoreError("permission_denied", "rls"))
        seen: list[Any] = []
        cache.subscribe("projects", lambda snap: seen.append(snap.data))
        with pytest.raises(StoreError):
            await executor.update(
                "projects",
                "p1",
                {"name": "Renamed"},
                optimistic={"projects": lambda names: ["Renamed"]},
            )
        return seen, cache.peek("projects").data

    seen, data = asyncio.run(scenario())
    assert seen == [["Renamed"], ["Alpha"]]
    assert data == ["Alpha"]


def test_failed_optimistic_write_keeps_refetch_from_another_writer():
    async def scenario():
        store, cache, executor = _setup()
        await cache.read("projects", _names(store, []), OPTIONS, tables={"projects"})
        # Another writer's change arrives just before our own write.
        await store.insert("projects", {"name": "Beta"})
        cache.invalidate("projects")
        store.fail_next("update", "projects", StoreError("permission_denied", "rls"))
        with pytest.raises(StoreError):
            await executor.update(
                "projects",
                "p1",
                {"name": "Renamed"},
                optimistic={"projects": lambda names: ["Renamed"]},
            )
        await cache.settle()
        snap = cache.peek("projects")
        return snap.data, snap.is_stale, snap.is_validating

    assert asyncio.run(scenario()) == (["Alpha", "Beta"], False, False)


def test_run_compensates_completed_steps_in_reverse():
    async def scenario():
        store, cache, executor = _setup()
        undone: list[str] = []

        async def ok(name: str) -> str:
            return name

        def undo(label: str):
            async def _undo(result: Any) -> None:
                undone.append(f"{label}:{result}")

            return _undo

        async def boom() -> None:
            raise StoreError("write_rejected", "constraint")

        steps = [
            MutationStep("first", lambda: ok("a"), undo("first")),
            MutationStep("second", lambda: ok("b"), undo("second")),
            MutationStep("third", boom),
        ]
        with pytest.raises(StoreError) as excinfo:
            await executor.run(steps, {"projects"})
        return undone, excinfo.value.message, executor.get_health()

    undone, message, health = asyncio.run(scenario())
    assert undone == ["second:b", "first:a"]
    assert message == "constraint"
    assert health["compensationCount"] == 2
    assert health["failureCount"] == 1


def test_run_reraises_original_error_when_compensation_fails():
    async def scenario():
        store, cache, executor = _setup()
        calls: list[int] = []
        await cache.read("projects", _names(store, calls), OPTIONS, tables={"projects"})

        async def bad_undo(_: Any) -> None:
            raise RuntimeError("undo failed")

        async def fail() -> None:
            raise StoreError("unavailable", "down")

        steps = [
            MutationStep("insert", lambda: store.insert("projects", {"name": "Orphan"}), bad_undo),
            MutationStep("next", fail),
        ]
        with pytest.raises(StoreError) as excinfo:
            await executor.run(steps, {"projects"})
        await cache.settle()
        return excinfo.value.code, cache.peek("projects").data

    code, data = asyncio.run(scenario())
    assert code == "unavailable"
    # the store diverged, so the cache was refreshed to show it
    assert data == ["Alpha", "Orphan"]


def test_detached_side_effect_failure_never_reaches_caller(caplog: pytest.LogCaptureFixture):
    async def scenario():
        store, cache, executor = _setup()

        async def flaky_notification() -> None:
            await asyncio.sleep(0)
            raise ConnectionError("webhook unreachable")

        created = await executor.insert("projects", {"name": "Beta"})
        executor.after(flaky_notification(), name="notify")
        await executor.background.drain(1)
        return created, executor.background.get_health()

    created, health = asyncio.run(scenario())
    assert created["name"] == "Beta"
    assert health["failureCount"] == 1
    assert health["pending"] == 0
    assert "webhook unreachable" in caplog.text


def test_delete_many_reports_failures_without_raising():
    async def scenario():
        store = MemoryStore(
            tables={"finance_records": [{"id": "r1"}, {"id": "r2"}, {"id": "r3"}]}
        )
        executor = MutationExecutor(store, CacheLayer())
        store.fail_next("delete", "finance_records", StoreError("unavailable", "down"))
        failed = await executor.delete_many("finance_records", ["r1", "r2", "r3"])
        return failed, sorted(r["id"] for r in store.rows("finance_records"))

    failed, remaining = asyncio.run(scenario())
    assert failed == ["r1"]
    assert remaining == ["r1"]
