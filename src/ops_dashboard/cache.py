"""
Read-through cache with stale-while-revalidate semantics.

Each resource key owns one CacheEntry. Reads return whatever is cached right
away and schedule a background refetch when the entry is missing, older than
its staleness window, or invalidated. Fetches are tagged with a per-key
generation so a slow response can never overwrite a newer one.

Everything runs on a single asyncio loop. There are no locks; every method
that awaits re-reads entry state after resuming.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_STALE_SECONDS = float(os.getenv("OPS_DASHBOARD_STALE_SECONDS", "30"))
DEFAULT_DEDUPE_SECONDS = float(os.getenv("OPS_DASHBOARD_DEDUPE_SECONDS", "2"))
_timeout_env = os.getenv("OPS_DASHBOARD_FETCH_TIMEOUT_SECONDS")
DEFAULT_FETCH_TIMEOUT_SECONDS = float(_timeout_env) if _timeout_env else None

FetchFn = Callable[[], Awaitable[Any]]
Listener = Callable[["CacheSnapshot"], None]


class FetchError(RuntimeError):
    """Raised by ``read`` when a key has no data and its fetch failed."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class FetchTimeoutError(FetchError):
    def __init__(self, key: str, timeout: float):
        super().__init__("timeout", f"fetch for '{key}' timed out after {timeout:g}s")
        self.key = key
        self.timeout = timeout


@dataclass(frozen=True)
class ResourceOptions:
    """Per-resource freshness policy."""

    stale_after: float = DEFAULT_STALE_SECONDS
    dedupe_interval: float = DEFAULT_DEDUPE_SECONDS
    timeout: float | None = DEFAULT_FETCH_TIMEOUT_SECONDS


@dataclass(frozen=True)
class CacheSnapshot:
    key: str
    data: Any
    has_data: bool
    error: BaseException | None
    fetched_at: float
    is_stale: bool
    is_validating: bool


@dataclass
class CacheEntry:
    """Cached state for one resource key. Owned and mutated by CacheLayer only."""

    key: str
    fetch_fn: FetchFn
    options: ResourceOptions
    tables: frozenset[str] = frozenset()

    data: Any = None
    has_data: bool = False
    error: BaseException | None = None
    fetched_at: float = 0.0
    last_started_at: float = 0.0
    invalidated: bool = False

    # Generation of the newest scheduled fetch, of the newest fetch whose
    # request has actually been issued, of the data currently held, and of
    # the newest fetch that finished either way.
    generation: int = 0
    issued_generation: int = 0
    applied_generation: int = 0
    completed_generation: int = 0
    inflight: dict[int, asyncio.Task[None]] = field(default_factory=dict)
    fetch_count: int = 0
    discarded_count: int = 0

    def is_expired(self, now: float) -> bool:
        return now - self.fetched_at > self.options.stale_after


class CacheLayer:
    """Keyed cache entries with dedup, invalidation and ordered application."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._listeners: dict[str, list[Listener]] = {}
        self._consumers: dict[str, int] = {}

    # -- entry bookkeeping -------------------------------------------------

    def _entry(
        self,
        key: str,
        fetch_fn: FetchFn,
        options: ResourceOptions | None,
        tables: Iterable[str],
    ) -> CacheEntry:
        entry = self._entries.get(key)
        if entry is None:
            entry = CacheEntry(
                key=key,
                fetch_fn=fetch_fn,
                options=options or ResourceOptions(),
                tables=frozenset(tables),
            )
            self._entries[key] = entry
            logger.debug("cache_entry_created key=%s", key)
            return entry
        # The latest caller's fetcher and policy win for future fetches.
        entry.fetch_fn = fetch_fn
        if options is not None:
            entry.options = options
        if tables:
            entry.tables = entry.tables | frozenset(tables)
        return entry

    def _snapshot(self, entry: CacheEntry) -> CacheSnapshot:
        now = self._clock()
        return CacheSnapshot(
            key=entry.key,
            data=entry.data,
            has_data=entry.has_data,
            error=entry.error,
            fetched_at=entry.fetched_at,
            is_stale=(
                not entry.has_data
                or entry.invalidated
                or entry.error is not None
                or entry.is_expired(now)
            ),
            is_validating=bool(entry.inflight),
        )

    def _should_revalidate(self, entry: CacheEntry) -> bool:
        if entry.inflight:
            return False
        if entry.invalidated or entry.generation == 0:
            return True
        now = self._clock()
        if now - entry.last_started_at < entry.options.dedupe_interval:
            return False
        return entry.error is not None or not entry.has_data or entry.is_expired(now)

    def _schedule(self, entry: CacheEntry) -> None:
        entry.generation += 1
        generation = entry.generation
        entry.invalidated = False
        entry.last_started_at = self._clock()
        task = asyncio.get_running_loop().create_task(
            self._run_fetch(entry, generation),
            name=f"cache-fetch:{entry.key}:{generation}",
        )
        entry.inflight[generation] = task

    async def _run_fetch(self, entry: CacheEntry, generation: int) -> None:
        entry.issued_generation = max(entry.issued_generation, generation)
        if generation == entry.generation:
            # Invalidations absorbed while this fetch was pending are covered now.
            entry.invalidated = False
        entry.fetch_count += 1
        timeout = entry.options.timeout
        try:
            if timeout is not None:
                try:
                    data = await asyncio.wait_for(entry.fetch_fn(), timeout)
                except asyncio.TimeoutError as exc:
                    raise FetchTimeoutError(entry.key, timeout) from exc
            else:
                data = await entry.fetch_fn()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._apply_error(entry, generation, exc)
        else:
            self._apply(entry, generation, data)
        finally:
            entry.inflight.pop(generation, None)

    def _apply(self, entry: CacheEntry, generation: int, data: Any) -> None:
        # A newer fetch that failed still supersedes this response.
        if generation <= max(entry.applied_generation, entry.completed_generation):
            entry.discarded_count += 1
            logger.debug(
                "cache_discard key=%s generation=%s applied=%s completed=%s",
                entry.key,
                generation,
                entry.applied_generation,
                entry.completed_generation,
            )
            return
        entry.data = data
        entry.has_data = True
        entry.error = None
        entry.fetched_at = self._clock()
        entry.applied_generation = generation
        entry.completed_generation = generation
        self._notify(entry)

    def _apply_error(self, entry: CacheEntry, generation: int, exc: Exception) -> None:
        entry.completed_generation = max(entry.completed_generation, generation)
        if generation <= entry.applied_generation or generation < entry.generation:
            # A newer fetch has landed or is still on its way.
            entry.discarded_count += 1
            return
        entry.error = exc
        logger.warning(
            "Fetch failed for %s (%s): %s; keeping last-known-good data",
            entry.key,
            exc.__class__.__name__,
            exc,
        )
        self._notify(entry)

    def _notify(self, entry: CacheEntry) -> None:
        listeners = self._listeners.get(entry.key)
        if not listeners:
            return
        snapshot = self._snapshot(entry)
        for listener in list(listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Cache listener for %s failed", entry.key)

    # -- public API --------------------------------------------------------

    def get(
        self,
        key: str,
        fetch_fn: FetchFn,
        options: ResourceOptions | None = None,
        tables: Iterable[str] = (),
    ) -> CacheSnapshot:
        """Return cached state now; refetch in the background when due.

        Must be called from within the running event loop.
        """
        entry = self._entry(key, fetch_fn, options, tables)
        if self._should_revalidate(entry):
            logger.debug("cache_revalidate key=%s", key)
            self._schedule(entry)
        elif entry.has_data:
            logger.debug("cache_hit key=%s", key)
        return self._snapshot(entry)

    async def read(
        self,
        key: str,
        fetch_fn: FetchFn,
        options: ResourceOptions | None = None,
        tables: Iterable[str] = (),
        fresh: bool = False,
    ) -> Any:
        """Return data for ``key``, waiting for a fetch when nothing is cached.

        With ``fresh`` the call also waits for any revalidation in flight.
        Raises only when there is no last-known-good data to fall back on.
        """
        self.get(key, fetch_fn, options, tables)
        entry = self._entries[key]
        if entry.has_data and not fresh:
            return entry.data
        await self.settle(key)
        if entry.has_data:
            return entry.data
        if entry.error is not None:
            raise entry.error
        raise FetchError("unavailable", f"no data for '{key}'")

    def peek(self, key: str) -> CacheSnapshot | None:
        entry = self._entries.get(key)
        return self._snapshot(entry) if entry is not None else None

    def invalidate(self, key: str) -> bool:
        """Mark ``key`` stale and refetch now. Returns False for unknown keys."""
        entry = self._entries.get(key)
        if entry is None:
            return False
        entry.invalidated = True
        if entry.generation > entry.issued_generation:
            # A scheduled fetch has not sent its request yet and will see
            # the change anyway.
            logger.debug("cache_invalidate_coalesced key=%s", key)
            return True
        logger.debug("cache_invalidate key=%s", key)
        self._schedule(entry)
        return True

    def invalidate_tables(self, tables: Iterable[str]) -> list[str]:
        wanted = frozenset(tables)
        keys = [key for key, entry in self._entries.items() if entry.tables & wanted]
        for key in keys:
            self.invalidate(key)
        return keys

    def invalidate_all(self) -> list[str]:
        keys = list(self._entries)
        for key in keys:
            self.invalidate(key)
        return keys

    def apply_optimistic(
        self, key: str, transform: Callable[[Any], Any]
    ) -> Callable[[], None] | None:
        """Replace cached data locally ahead of a write.

        Responses to fetches issued before this point are discarded. Returns a
        rollback callable, or None when the key holds no data yet. Rolling back
        lets fetches still in flight land again and refetches when one was
        discarded in the meantime.
        """
        entry = self._entries.get(key)
        if entry is None or not entry.has_data:
            return None
        previous = entry.data
        previous_generation = entry.applied_generation
        discarded = entry.discarded_count
        optimistic = transform(previous)
        entry.data = optimistic
        entry.applied_generation = max(entry.applied_generation, entry.generation)
        self._notify(entry)

        def rollback() -> None:
            if entry.data is not optimistic:
                return
            entry.data = previous
            entry.applied_generation = previous_generation
            if entry.discarded_count > discarded:
                logger.debug("cache_rollback_refetch key=%s", key)
                self.invalidate(key)
            self._notify(entry)

        return rollback

    async def settle(self, key: str | None = None) -> None:
        """Wait until ``key`` (or every key) has no fetch in flight."""
        while True:
            if key is None:
                pending = [t for e in self._entries.values() for t in e.inflight.values()]
            else:
                entry = self._entries.get(key)
                pending = list(entry.inflight.values()) if entry else []
            if not pending:
                return
            await asyncio.wait(pending)

    def subscribe(self, key: str, listener: Listener) -> Callable[[], None]:
        """Call ``listener`` with a fresh snapshot after every applied update."""
        self._listeners.setdefault(key, []).append(listener)

        def _unsubscribe() -> None:
            listeners = self._listeners.get(key, [])
            if listener in listeners:
                listeners.remove(listener)

        return _unsubscribe

    def retain(self, key: str) -> int:
        self._consumers[key] = self._consumers.get(key, 0) + 1
        return self._consumers[key]

    def release(self, key: str) -> int:
        count = max(self._consumers.get(key, 0) - 1, 0)
        if count:
            self._consumers[key] = count
        else:
            # The entry stays cached; results still in flight keep landing.
            self._consumers.pop(key, None)
        return count

    def consumers(self, key: str) -> int:
        return self._consumers.get(key, 0)

    def keys(self) -> list[str]:
        return list(self._entries)

    def get_health(self) -> dict[str, Any]:
        now = self._clock()
        return {
            key: {
                "hasData": entry.has_data,
                "fetchedAt": entry.fetched_at,
                "ageSeconds": (now - entry.fetched_at) if entry.has_data else None,
                "staleAfterSeconds": entry.options.stale_after,
                "dedupeIntervalSeconds": entry.options.dedupe_interval,
                "stale": self._snapshot(entry).is_stale,
                "validating": bool(entry.inflight),
                "lastError": (
                    f"{entry.error.__class__.__name__}: {entry.error}"
                    if entry.error is not None
                    else None
                ),
                "generation": entry.generation,
                "appliedGeneration": entry.applied_generation,
                "completedGeneration": entry.completed_generation,
                "fetchCount": entry.fetch_count,
                "discardedCount": entry.discarded_count,
                "consumers": self._consumers.get(key, 0),
                "tables": sorted(entry.tables),
            }
            for key, entry in self._entries.items()
        }
