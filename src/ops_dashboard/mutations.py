"""
Write path: apply a change to the store, then invalidate dependent cache keys.

A failed write invalidates nothing and re-raises to the caller. Multi-step
writes run as an ordered list of steps, each with an optional compensating
action that undoes it if a later step fails. Side effects such as
notifications are detached and can never fail the write that triggered them.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable, Coroutine, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from .background import DetachedTasks
from .cache import CacheLayer
from .store import DataStore, Row

logger = logging.getLogger(__name__)

Transform = Callable[[Any], Any]


class MutationError(ValueError):
    """A mutation request that was refused before reaching the store."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


@dataclass(frozen=True)
class MutationStep:
    """One write in a composite mutation.

    ``compensate`` receives the step's result and must undo it.
    """

    name: str
    action: Callable[[], Awaitable[Any]]
    compensate: Callable[[Any], Awaitable[None]] | None = None


class MutationExecutor:
    def __init__(
        self,
        store: DataStore,
        cache: CacheLayer,
        background: DetachedTasks | None = None,
    ):
        self._store = store
        self._cache = cache
        self._background = background or DetachedTasks()
        self._write_count = 0
        self._failure_count = 0
        self._compensation_count = 0
        self._last_error: str | None = None
        self._last_write_at: float | None = None

    @property
    def background(self) -> DetachedTasks:
        return self._background

    def _record_failure(self, exc: Exception) -> None:
        self._failure_count += 1
        self._last_error = f"{exc.__class__.__name__}: {exc}"

    def _invalidate(self, tables: Iterable[str]) -> list[str]:
        self._last_write_at = time.time()
        keys = self._cache.invalidate_tables(tables)
        logger.debug("write_invalidated tables=%s keys=%s", sorted(set(tables)), keys)
        return keys

    async def _write(
        self,
        tables: Iterable[str],
        op: Callable[[], Awaitable[Any]],
        optimistic: Mapping[str, Transform] | None = None,
    ) -> Any:
        rollbacks = []
        for key, transform in (optimistic or {}).items():
            rollback = self._cache.apply_optimistic(key, transform)
            if rollback is not None:
                rollbacks.append(rollback)
        try:
            result = await op()
        except Exception as exc:
            self._record_failure(exc)
            for rollback in reversed(rollbacks):
                rollback()
            raise
        self._write_count += 1
        self._invalidate(tables)
        return result

    async def insert(
        self,
        table: str,
        rows: Row | list[Row],
        *,
        also: Iterable[str] = (),
        optimistic: Mapping[str, Transform] | None = None,
    ) -> Row | list[Row]:
        return await self._write(
            {table, *also}, lambda: self._store.insert(table, rows), optimistic
        )

    async def update(
        self,
        table: str,
        record_id: str,
        patch: Row,
        *,
        also: Iterable[str] = (),
        optimistic: Mapping[str, Transform] | None = None,
    ) -> Row:
        return await self._write(
            {table, *also}, lambda: self._store.update(table, record_id, patch), optimistic
        )

    async def delete(
        self,
        table: str,
        record_id: str,
        *,
        also: Iterable[str] = (),
        optimistic: Mapping[str, Transform] | None = None,
    ) -> None:
        await self._write(
            {table, *also}, lambda: self._store.delete(table, record_id), optimistic
        )

    async def delete_where(
        self, table: str, filters: Row, *, also: Iterable[str] = ()
    ) -> int:
        return await self._write({table, *also}, lambda: self._store.delete_where(table, filters))

    async def delete_many(self, table: str, record_ids: Iterable[str]) -> list[str]:
        """Best-effort cleanup: delete each row, returning the ids that failed.

        Failures are logged, not raised. Dependent keys are invalidated once
        if anything was removed.
        """
        failed: list[str] = []
        removed = 0
        for record_id in record_ids:
            try:
                await self._store.delete(table, record_id)
            except Exception as exc:
                self._record_failure(exc)
                failed.append(record_id)
                logger.warning("Cleanup delete %s/%s failed: %s", table, record_id, exc)
            else:
                removed += 1
        if removed:
            self._write_count += 1
            self._invalidate({table})
        return failed

    async def run(self, steps: Iterable[MutationStep], tables: Iterable[str]) -> list[Any]:
        """Run steps in order; on failure undo completed ones in reverse.

        The original error is re-raised after compensation. A compensation
        that itself fails is logged and leaves the store diverged, so the
        affected keys are invalidated in that case only.
        """
        touched = set(tables)
        completed: list[tuple[MutationStep, Any]] = []
        for step in steps:
            try:
                result = await step.action()
            except Exception as exc:
                self._record_failure(exc)
                logger.warning(
                    "Mutation step %s failed (%s): %s; compensating %d step(s)",
                    step.name,
                    exc.__class__.__name__,
                    exc,
                    len(completed),
                )
                if not await self._compensate(completed):
                    self._invalidate(touched)
                raise
            completed.append((step, result))
        self._write_count += 1
        self._invalidate(touched)
        return [result for _, result in completed]

    async def _compensate(self, completed: list[tuple[MutationStep, Any]]) -> bool:
        clean = True
        for step, result in reversed(completed):
            if step.compensate is None:
                continue
            self._compensation_count += 1
            try:
                await step.compensate(result)
            except Exception:
                clean = False
                logger.exception("Compensation for step %s failed", step.name)
        return clean

    def after(self, coro: Coroutine[Any, Any, Any], name: str = "side-effect") -> None:
        """Run a side effect detached from the current mutation."""
        self._background.spawn(coro, name=name)

    def get_health(self) -> dict[str, Any]:
        return {
            "writeCount": self._write_count,
            "failureCount": self._failure_count,
            "compensationCount": self._compensation_count,
            "lastError": self._last_error,
            "lastWriteAt": self._last_write_at,
            "background": self._background.get_health(),
        }
