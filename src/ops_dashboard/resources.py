"""
Resource keys, freshness policies and fetchers for each dashboard view.

A resource is one parametrized query. Its key is derived from the resource
name plus every parameter, so two different filters can never share a cache
entry. Fetchers read the base table and stitch the related rows in client
side; the set of tables they touch is the resource's invalidation set.
"""

from __future__ import annotations

import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import quote

from .cache import ResourceOptions
from .records import (
    ActivityEntry,
    BusinessUnit,
    FinanceRecord,
    FinanceUpload,
    Project,
    Task,
    User,
    UserSession,
    is_assigned_to,
)
from .store import DataStore, Row

PRESENCE_WINDOW_SECONDS = int(os.getenv("OPS_DASHBOARD_PRESENCE_WINDOW_SECONDS", "90"))


def resource_key(resource: str, **params: Any) -> str:
    """Stable key for a resource and its filter parameters.

    Parameters are sorted by name, values are percent-encoded and ``None`` is
    rendered as a bare ``*`` (which an encoded value can never produce).
    """
    parts = []
    for name, value in sorted(params.items()):
        rendered = "*" if value is None else quote(str(value), safe="")
        parts.append(f"{name}={rendered}")
    if not parts:
        return resource
    return f"{resource}:{','.join(parts)}"


def _options(name: str, stale: float, dedupe: float) -> ResourceOptions:
    prefix = f"OPS_DASHBOARD_{name.upper()}"
    timeout = os.getenv(f"{prefix}_TIMEOUT_SECONDS") or os.getenv(
        "OPS_DASHBOARD_FETCH_TIMEOUT_SECONDS"
    )
    return ResourceOptions(
        stale_after=float(os.getenv(f"{prefix}_STALE_SECONDS", str(stale))),
        dedupe_interval=float(os.getenv(f"{prefix}_DEDUPE_SECONDS", str(dedupe))),
        timeout=float(timeout) if timeout else None,
    )


async def _rows_by_id(store: DataStore, table: str, ids: set[str]) -> dict[str, Row]:
    if not ids:
        return {}
    rows = await store.query(table, {"id": sorted(ids)})
    return {str(r.get("id")): r for r in rows}


async def fetch_tasks(
    store: DataStore, project_id: str | None = None, assignee_id: str | None = None
) -> list[Task]:
    filters = {"project_id": project_id} if project_id else None
    rows = await store.query("tasks", filters, order=["due_date", "priority"])
    task_ids = sorted(str(r.get("id")) for r in rows)

    junction: list[Row] = []
    if task_ids:
        junction = await store.query("task_assignees", {"task_id": task_ids})

    projects = await _rows_by_id(
        store, "projects", {str(r["project_id"]) for r in rows if r.get("project_id")}
    )
    user_ids = {str(r["assignee_id"]) for r in rows if r.get("assignee_id")}
    user_ids |= {str(j["user_id"]) for j in junction if j.get("user_id")}
    users = await _rows_by_id(store, "users", user_ids)

    by_task: dict[str, list[Row]] = {}
    for link in junction:
        by_task.setdefault(str(link.get("task_id")), []).append(
            {**link, "user": users.get(str(link.get("user_id")))}
        )

    tasks = []
    for row in rows:
        joined = {
            **row,
            "project": projects.get(str(row.get("project_id"))),
            "assignee": users.get(str(row.get("assignee_id"))),
            "task_assignees": by_task.get(str(row.get("id")), []),
        }
        tasks.append(Task.from_row(joined))

    if assignee_id:
        tasks = [t for t in tasks if is_assigned_to(t, assignee_id)]
    return tasks


async def fetch_projects(store: DataStore) -> list[Project]:
    rows = await store.query("projects", order=["name"])
    return [Project.from_row(r) for r in rows]


async def fetch_team(store: DataStore) -> list[User]:
    rows = await store.query("users", order=["full_name"])
    return [User.from_row(r) for r in rows]


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


async def fetch_presence(store: DataStore) -> list[User]:
    """Users seen within the presence window, most recent first."""
    rows = await store.query("users", order=["-last_seen_at"])
    cutoff = datetime.now(timezone.utc) - timedelta(seconds=PRESENCE_WINDOW_SECONDS)
    online = []
    for row in rows:
        seen = _parse_timestamp(row.get("last_seen_at"))
        if seen is not None and seen >= cutoff:
            online.append(User.from_row(row))
    return online


async def fetch_user_sessions(store: DataStore) -> list[UserSession]:
    rows = await store.query("user_sessions", order=["-started_at"])
    return [UserSession.from_row(r) for r in rows]


async def fetch_finance_records(
    store: DataStore, project_id: str | None = None
) -> list[FinanceRecord]:
    filters = {"project_id": project_id} if project_id else None
    rows = await store.query("finance_records", filters, order=["month"])
    return [FinanceRecord.from_row(r) for r in rows]


async def fetch_finance_uploads(
    store: DataStore, project_id: str | None = None
) -> list[FinanceUpload]:
    filters = {"project_id": project_id} if project_id else None
    rows = await store.query("finance_uploads", filters, order=["-created_at"])
    users = await _rows_by_id(
        store, "users", {str(r["uploaded_by"]) for r in rows if r.get("uploaded_by")}
    )
    return [
        FinanceUpload.from_row({**r, "uploader": users.get(str(r.get("uploaded_by")))})
        for r in rows
    ]


async def fetch_businesses(store: DataStore) -> list[BusinessUnit]:
    rows = await store.query("business_units", order=["name"])
    return [BusinessUnit.from_row(r) for r in rows]


async def fetch_activity(store: DataStore, limit: int = 50) -> list[ActivityEntry]:
    rows = await store.query("task_activity", order=["-created_at"], limit=limit)
    users = await _rows_by_id(
        store, "users", {str(r["user_id"]) for r in rows if r.get("user_id")}
    )
    return [
        ActivityEntry.from_row({**r, "user": users.get(str(r.get("user_id")))})
        for r in rows
    ]


@dataclass(frozen=True)
class ResourceSpec:
    name: str
    tables: frozenset[str]
    options: ResourceOptions
    fetch: Callable[..., Awaitable[list[Any]]]
    params: tuple[str, ...] = ()

    def normalize(self, **params: Any) -> dict[str, Any]:
        """Fill omitted parameters with None so equal queries share a key."""
        unknown = sorted(set(params) - set(self.params))
        if unknown:
            raise ValueError(f"{self.name}: unknown parameter(s) {', '.join(unknown)}")
        return {name: params.get(name) for name in self.params}

    def key(self, **params: Any) -> str:
        return resource_key(self.name, **self.normalize(**params))


def build_resources() -> dict[str, ResourceSpec]:
    """Resource registry; policies are read from the environment at call time."""
    specs = [
        ResourceSpec(
            "tasks",
            frozenset({"tasks", "task_assignees", "projects", "users"}),
            _options("tasks", 5, 5),
            fetch_tasks,
            ("project_id", "assignee_id"),
        ),
        ResourceSpec("projects", frozenset({"projects"}), _options("projects", 30, 30), fetch_projects),
        ResourceSpec("team", frozenset({"users"}), _options("team", 60, 60), fetch_team),
        ResourceSpec(
            "presence",
            frozenset({"users", "user_sessions"}),
            _options("presence", 5, 2),
            fetch_presence,
        ),
        ResourceSpec(
            "sessions",
            frozenset({"user_sessions"}),
            _options("sessions", 60, 60),
            fetch_user_sessions,
        ),
        ResourceSpec(
            "finance_records",
            frozenset({"finance_records"}),
            _options("finance_records", 30, 30),
            fetch_finance_records,
            ("project_id",),
        ),
        ResourceSpec(
            "finance_uploads",
            frozenset({"finance_uploads", "users"}),
            _options("finance_uploads", 30, 30),
            fetch_finance_uploads,
            ("project_id",),
        ),
        ResourceSpec(
            "businesses",
            frozenset({"business_units"}),
            _options("businesses", 60, 60),
            fetch_businesses,
        ),
        ResourceSpec(
            "activity",
            frozenset({"task_activity", "users"}),
            _options("activity", 10, 5),
            fetch_activity,
            ("limit",),
        ),
    ]
    return {spec.name: spec for spec in specs}
