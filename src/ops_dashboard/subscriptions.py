"""
Change-feed subscriptions that keep cache entries eventually consistent.

Each watched resource key holds one store subscription per table it depends
on. Any change event on those tables invalidates the whole key; records are
never patched in place because joined fields would drift. Handles are
reference counted: the first ``acquire`` opens them, the last ``release``
closes them.

Change feeds do not replay events missed during a disconnect, so a reconnect
invalidates every watched key.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from .cache import CacheLayer
from .store import ChangeEvent, DataStore, SubscriptionHandle

logger = logging.getLogger(__name__)


@dataclass
class _Watch:
    tables: frozenset[str]
    refcount: int = 0
    handles: list[SubscriptionHandle] = field(default_factory=list)
    events_seen: int = 0


class ChangeSubscriber:
    def __init__(self, store: DataStore, cache: CacheLayer):
        self._store = store
        self._cache = cache
        self._watches: dict[str, _Watch] = {}
        self._reconnect_count = 0
        self._remove_reconnect_listener: Callable[[], None] | None = None

    def start(self) -> None:
        if self._remove_reconnect_listener is None:
            self._remove_reconnect_listener = self._store.on_reconnect(self.handle_reconnect)

    def _on_change(self, key: str) -> Callable[[ChangeEvent], None]:
        def _callback(event: ChangeEvent) -> None:
            watch = self._watches.get(key)
            if watch is None:
                # Closed between event dispatch and delivery.
                return
            watch.events_seen += 1
            logger.debug("change_event key=%s table=%s kind=%s", key, event.table, event.kind)
            self._cache.invalidate(key)

        return _callback

    def acquire(self, key: str, tables: Iterable[str]) -> int:
        """Register a consumer of ``key``; opens the subscriptions on first use."""
        watch = self._watches.get(key)
        if watch is None:
            watch = _Watch(tables=frozenset(tables))
            self._watches[key] = watch
        if watch.refcount == 0:
            callback = self._on_change(key)
            watch.handles = [self._store.subscribe(table, callback) for table in sorted(watch.tables)]
            logger.debug("subscription_opened key=%s tables=%s", key, sorted(watch.tables))
        watch.refcount += 1
        return watch.refcount

    def release(self, key: str) -> int:
        """Drop one consumer of ``key``; closes the subscriptions at zero."""
        watch = self._watches.get(key)
        if watch is None:
            return 0
        watch.refcount -= 1
        if watch.refcount > 0:
            return watch.refcount
        for handle in watch.handles:
            self._store.unsubscribe(handle)
        del self._watches[key]
        logger.debug("subscription_closed key=%s", key)
        return 0

    def handle_reconnect(self) -> None:
        """Assume everything changed while the feed was down."""
        self._reconnect_count += 1
        keys = list(self._watches)
        logger.info("Change feed reconnected, invalidating %d watched key(s)", len(keys))
        for key in keys:
            self._cache.invalidate(key)

    def refcount(self, key: str) -> int:
        watch = self._watches.get(key)
        return watch.refcount if watch else 0

    def watched_keys(self) -> list[str]:
        return list(self._watches)

    def close(self) -> None:
        for key in list(self._watches):
            watch = self._watches.pop(key)
            for handle in watch.handles:
                self._store.unsubscribe(handle)
        if self._remove_reconnect_listener is not None:
            self._remove_reconnect_listener()
            self._remove_reconnect_listener = None

    def get_health(self) -> dict[str, Any]:
        return {
            "watchedKeys": {
                key: {
                    "refcount": watch.refcount,
                    "tables": sorted(watch.tables),
                    "eventsSeen": watch.events_seen,
                }
                for key, watch in self._watches.items()
            },
            "reconnectCount": self._reconnect_count,
        }
