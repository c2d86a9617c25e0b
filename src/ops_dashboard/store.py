"""
Remote data store boundary.

The backend owns durability, auth and change fan-out. This module only defines
the narrow surface the cache needs (row reads, single writes, per-table change
feeds, auth state) plus an in-process MemoryStore that behaves like the real
thing closely enough for tests and local runs.
"""

from __future__ import annotations

import asyncio
import copy
import itertools
import logging
import uuid
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

from .roles import Principal

logger = logging.getLogger(__name__)

Row = dict[str, Any]
Filters = dict[str, Any]
Ordering = Sequence[str]

# Columns that must be present and non-null for an insert to be accepted.
REQUIRED_COLUMNS: dict[str, frozenset[str]] = {
    "tasks": frozenset({"title", "project_id"}),
    "projects": frozenset({"name"}),
    "task_assignees": frozenset({"task_id", "user_id"}),
    "task_comments": frozenset({"task_id", "user_id", "body"}),
    "finance_uploads": frozenset({"project_id", "file_name"}),
    "finance_records": frozenset({"project_id", "upload_id", "month", "category", "amount"}),
}
UNIQUE_COLUMNS: dict[str, tuple[str, ...]] = {
    "task_assignees": ("task_id", "user_id"),
}


class StoreError(RuntimeError):
    """Raised when a store read or write fails.

    Codes: ``unavailable``, ``timeout``, ``write_rejected``,
    ``permission_denied``, ``not_found``, ``invalid_request``.
    """

    TRANSIENT_CODES = frozenset({"unavailable", "timeout"})

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message

    @property
    def transient(self) -> bool:
        return self.code in self.TRANSIENT_CODES


@dataclass(frozen=True)
class ChangeEvent:
    kind: str  # insert | update | delete
    table: str
    record: Row
    old_record: Row | None = None


ChangeCallback = Callable[[ChangeEvent], None]


@dataclass(frozen=True)
class SubscriptionHandle:
    id: int
    table: str


class DataStore(Protocol):
    async def query(
        self,
        table: str,
        filters: Filters | None = None,
        order: Ordering | None = None,
        limit: int | None = None,
    ) -> list[Row]: ...

    async def insert(self, table: str, rows: Row | list[Row]) -> Row | list[Row]: ...

    async def update(self, table: str, record_id: str, patch: Row) -> Row: ...

    async def delete(self, table: str, record_id: str) -> None: ...

    async def delete_where(self, table: str, filters: Filters) -> int: ...

    def subscribe(self, table: str, callback: ChangeCallback) -> SubscriptionHandle: ...

    def unsubscribe(self, handle: SubscriptionHandle) -> None: ...

    async def get_current_principal(self) -> Principal | None: ...

    def on_auth_state_change(
        self, callback: Callable[[Principal | None], None]
    ) -> Callable[[], None]: ...

    def on_reconnect(self, callback: Callable[[], None]) -> Callable[[], None]: ...

    def get_health(self) -> dict[str, Any]: ...

    async def close(self) -> None: ...


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def matches(row: Row, filters: Filters | None) -> bool:
    """Equality filters; None means IS NULL, a list/tuple/set means IN."""
    for column, expected in (filters or {}).items():
        actual = row.get(column)
        if expected is None:
            if actual is not None:
                return False
        elif isinstance(expected, (list, tuple, set, frozenset)):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


def sort_rows(rows: list[Row], order: Ordering | None) -> list[Row]:
    """Stable multi-column sort. ``-col`` sorts descending. Nulls sort last."""
    result = list(rows)
    for spec in reversed(list(order or ())):
        descending = spec.startswith("-")
        column = spec.lstrip("-")
        present = [r for r in result if r.get(column) is not None]
        missing = [r for r in result if r.get(column) is None]
        present.sort(key=lambda r: r[column], reverse=descending)
        result = present + missing
    return result


class Listeners:
    """Small callback registry shared by the store implementations."""

    def __init__(self) -> None:
        self._callbacks: list[Callable[..., None]] = []

    def add(self, callback: Callable[..., None]) -> Callable[[], None]:
        self._callbacks.append(callback)

        def _remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _remove

    def fire(self, *args: Any) -> None:
        for callback in list(self._callbacks):
            try:
                callback(*args)
            except Exception:
                logger.exception("Store listener %r failed", callback)


class ChangeFanout:
    """Per-table change callbacks keyed by subscription handle."""

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self._subs: dict[int, tuple[str, ChangeCallback]] = {}

    def subscribe(self, table: str, callback: ChangeCallback) -> SubscriptionHandle:
        handle = SubscriptionHandle(id=next(self._ids), table=table)
        self._subs[handle.id] = (table, callback)
        return handle

    def unsubscribe(self, handle: SubscriptionHandle) -> None:
        self._subs.pop(handle.id, None)

    def active_count(self, table: str | None = None) -> int:
        if table is None:
            return len(self._subs)
        return sum(1 for t, _ in self._subs.values() if t == table)

    def publish(self, event: ChangeEvent) -> None:
        for table, callback in list(self._subs.values()):
            if table != event.table:
                continue
            try:
                callback(event)
            except Exception:
                logger.exception("Change callback for %s failed", table)


@dataclass
class _Failure:
    error: StoreError
    remaining: int = 1


@dataclass(eq=False)
class MemoryStore:
    """In-process store with row CRUD, change feeds and simulated outages."""

    tables: dict[str, list[Row]] = field(default_factory=dict)
    principal: Principal | None = None

    def __post_init__(self) -> None:
        self._rows: dict[str, dict[str, Row]] = {}
        for table, rows in self.tables.items():
            self._rows[table] = {}
            for row in rows:
                stored = dict(row)
                stored.setdefault("id", uuid.uuid4().hex)
                self._rows[table][str(stored["id"])] = stored
        self._fanout = ChangeFanout()
        self._auth_listeners = Listeners()
        self._reconnect_listeners = Listeners()
        self._failures: dict[tuple[str, str], _Failure] = {}
        self._connected = True
        self.calls: list[tuple[str, str]] = []

    # -- test hooks -------------------------------------------------------

    def fail_next(self, op: str, table: str, error: StoreError, times: int = 1) -> None:
        """Make the next ``times`` calls of ``op`` on ``table`` raise ``error``."""
        self._failures[(op, table)] = _Failure(error=error, remaining=times)

    def rows(self, table: str) -> list[Row]:
        return [copy.deepcopy(r) for r in self._rows.get(table, {}).values()]

    def set_principal(self, principal: Principal | None) -> None:
        self.principal = principal
        self._auth_listeners.fire(principal)

    def disconnect(self) -> None:
        """Drop the change feed; events raised while disconnected are lost."""
        self._connected = False

    def reconnect(self) -> None:
        self._connected = True
        self._reconnect_listeners.fire()

    @property
    def connected(self) -> bool:
        return self._connected

    def subscription_count(self, table: str | None = None) -> int:
        return self._fanout.active_count(table)

    # -- internals --------------------------------------------------------

    def _check_failure(self, op: str, table: str) -> None:
        self.calls.append((op, table))
        failure = self._failures.get((op, table))
        if failure is None:
            return
        failure.remaining -= 1
        if failure.remaining <= 0:
            del self._failures[(op, table)]
        raise failure.error

    def _emit(self, event: ChangeEvent) -> None:
        if not self._connected:
            logger.debug("Dropping %s event on %s while disconnected", event.kind, event.table)
            return
        loop = asyncio.get_running_loop()
        loop.call_soon(self._fanout.publish, event)

    def _validate(self, table: str, rows: Iterable[Row]) -> None:
        required = REQUIRED_COLUMNS.get(table, frozenset())
        unique = UNIQUE_COLUMNS.get(table)
        existing = self._rows.get(table, {})
        seen = {
            tuple(r.get(c) for c in unique) for r in existing.values()
        } if unique else set()
        for row in rows:
            if not isinstance(row, dict):
                raise StoreError("invalid_request", f"{table}: row must be a mapping")
            missing = sorted(c for c in required if row.get(c) is None)
            if missing:
                raise StoreError(
                    "write_rejected", f"{table}: null value in column(s) {', '.join(missing)}"
                )
            if row.get("id") is not None and str(row["id"]) in existing:
                raise StoreError("write_rejected", f"{table}: duplicate id {row['id']}")
            if unique:
                key = tuple(row.get(c) for c in unique)
                if key in seen:
                    raise StoreError(
                        "write_rejected", f"{table}: duplicate key {', '.join(unique)}"
                    )
                seen.add(key)

    # -- DataStore --------------------------------------------------------

    async def query(
        self,
        table: str,
        filters: Filters | None = None,
        order: Ordering | None = None,
        limit: int | None = None,
    ) -> list[Row]:
        self._check_failure("query", table)
        await asyncio.sleep(0)
        rows = [
            copy.deepcopy(r) for r in self._rows.get(table, {}).values() if matches(r, filters)
        ]
        rows = sort_rows(rows, order)
        if limit is not None and limit > 0:
            rows = rows[:limit]
        return rows

    async def insert(self, table: str, rows: Row | list[Row]) -> Row | list[Row]:
        self._check_failure("insert", table)
        batch = rows if isinstance(rows, list) else [rows]
        await asyncio.sleep(0)
        # Validate the whole batch before touching anything.
        self._validate(table, batch)
        stored_rows = []
        now = _now_iso()
        target = self._rows.setdefault(table, {})
        for row in batch:
            stored = dict(row)
            stored.setdefault("id", uuid.uuid4().hex)
            stored.setdefault("created_at", now)
            stored.setdefault("updated_at", now)
            target[str(stored["id"])] = stored
            stored_rows.append(copy.deepcopy(stored))
        for stored in stored_rows:
            self._emit(ChangeEvent("insert", table, stored))
        return stored_rows if isinstance(rows, list) else stored_rows[0]

    async def update(self, table: str, record_id: str, patch: Row) -> Row:
        self._check_failure("update", table)
        await asyncio.sleep(0)
        current = self._rows.get(table, {}).get(str(record_id))
        if current is None:
            raise StoreError("not_found", f"{table}: no row with id {record_id}")
        required = REQUIRED_COLUMNS.get(table, frozenset())
        nulled = sorted(c for c in required if c in patch and patch[c] is None)
        if nulled:
            raise StoreError(
                "write_rejected", f"{table}: null value in column(s) {', '.join(nulled)}"
            )
        old = copy.deepcopy(current)
        current.update({k: v for k, v in patch.items() if k != "id"})
        current["updated_at"] = _now_iso()
        new = copy.deepcopy(current)
        self._emit(ChangeEvent("update", table, new, old))
        return new

    async def delete(self, table: str, record_id: str) -> None:
        self._check_failure("delete", table)
        await asyncio.sleep(0)
        removed = self._rows.get(table, {}).pop(str(record_id), None)
        if removed is not None:
            self._emit(ChangeEvent("delete", table, copy.deepcopy(removed)))

    async def delete_where(self, table: str, filters: Filters) -> int:
        self._check_failure("delete", table)
        if not filters:
            raise StoreError("invalid_request", f"{table}: refusing unfiltered delete")
        await asyncio.sleep(0)
        target = self._rows.get(table, {})
        doomed = [key for key, row in target.items() if matches(row, filters)]
        for key in doomed:
            self._emit(ChangeEvent("delete", table, copy.deepcopy(target.pop(key))))
        return len(doomed)

    def subscribe(self, table: str, callback: ChangeCallback) -> SubscriptionHandle:
        return self._fanout.subscribe(table, callback)

    def unsubscribe(self, handle: SubscriptionHandle) -> None:
        self._fanout.unsubscribe(handle)

    async def get_current_principal(self) -> Principal | None:
        return self.principal

    def on_auth_state_change(
        self, callback: Callable[[Principal | None], None]
    ) -> Callable[[], None]:
        return self._auth_listeners.add(callback)

    def on_reconnect(self, callback: Callable[[], None]) -> Callable[[], None]:
        return self._reconnect_listeners.add(callback)

    def get_health(self) -> dict[str, Any]:
        return {
            "backend": "memory",
            "connected": self._connected,
            "subscriptions": self._fanout.active_count(),
            "rowCounts": {table: len(rows) for table, rows in self._rows.items()},
        }

    async def close(self) -> None:
        self._connected = False
