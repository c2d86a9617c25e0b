"""
Dashboard wiring: one cache, one change subscriber and one mutation executor
shared by every resource, plus the derived views and domain writes built on
top of them.

A Dashboard is constructed explicitly around a store and passed to whoever
needs it. Nothing here is a module global.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from typing import Any

from . import metrics
from .background import DetachedTasks
from .cache import CacheLayer, CacheSnapshot
from .metrics import (
    DEFAULT_COMPLETION_PERIOD_DAYS,
    FocusBuckets,
    MemberWorkload,
    OperationsKPI,
    ProjectHealth,
    ProjectMetrics,
    VisitStats,
)
from .mutations import MutationError, MutationExecutor, MutationStep
from .notifications import LoggingNotifier, Notifier, fire_notification
from .records import (
    PROJECT_STATUSES,
    TASK_PRIORITIES,
    TASK_STATUSES,
    ActivityEntry,
    BusinessUnit,
    FinanceRecord,
    FinanceUpload,
    Project,
    Task,
    TaskComment,
    User,
    UserSession,
)
from .resources import ResourceSpec, build_resources
from .roles import AuthorizationError, Principal, require
from .store import DataStore, Row, StoreError
from .subscriptions import ChangeSubscriber

logger = logging.getLogger(__name__)

CLOSE_TIMEOUT_SECONDS = float(os.getenv("OPS_DASHBOARD_CLOSE_TIMEOUT_SECONDS", "5"))
ACTIVITY_LIMIT = int(os.getenv("OPS_DASHBOARD_ACTIVITY_LIMIT", "50"))
ACTIVITY_PREVIEW_CHARS = 100

METRIC_RESOURCES = ("tasks", "projects", "team")
TASK_FIELDS = frozenset(
    {"title", "description", "status", "priority", "due_date", "project_id", "assignee_id", "recurring_rule"}
)
ASSIGNMENT_FIELDS = frozenset({"assignee_id"})
# Fields that can be patched into cached Task snapshots ahead of the write.
OPTIMISTIC_TASK_FIELDS = frozenset({"title", "description", "status", "priority", "due_date"})
PROJECT_FIELDS = frozenset({"name", "status", "color", "business_unit_id"})
# Tables whose rows go away with a project (foreign keys cascade).
PROJECT_CASCADE_TABLES = frozenset(
    {"tasks", "task_assignees", "task_comments", "task_activity", "finance_uploads", "finance_records"}
)


@dataclass(frozen=True)
class DashboardMetrics:
    """Derived views recomputed together after any input changes."""

    kpi: OperationsKPI
    project_health: tuple[ProjectHealth, ...]
    team_workload: tuple[MemberWorkload, ...]
    critical_focus: tuple[Task, ...]
    stale: bool


@dataclass(frozen=True)
class FinanceUploadResult:
    upload: FinanceUpload
    record_count: int
    replaced_count: int
    leftover_record_ids: tuple[str, ...] = ()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _check_choice(name: str, value: Any, allowed: tuple[str, ...]) -> None:
    if value not in allowed:
        raise MutationError(
            "invalid_request", f"{name} must be one of {', '.join(allowed)}, got {value!r}"
        )


def _unique(ids: Iterable[str | None]) -> list[str]:
    return list(dict.fromkeys(str(i) for i in ids if i))


class Dashboard:
    def __init__(
        self,
        store: DataStore,
        cache: CacheLayer | None = None,
        notifier: Notifier | None = None,
        resources: dict[str, ResourceSpec] | None = None,
        background: DetachedTasks | None = None,
        today: Callable[[], date] = date.today,
    ):
        self.store = store
        self.cache = cache or CacheLayer()
        self.background = background or DetachedTasks()
        self.subscriber = ChangeSubscriber(store, self.cache)
        self.mutations = MutationExecutor(store, self.cache, self.background)
        self.notifier = notifier or LoggingNotifier()
        self.resources = resources or build_resources()
        self._today = today

        self._principal: Principal | None = None
        self._principal_loaded = False
        self._watched: dict[str, int] = {}
        self._removers: list[Callable[[], None]] = []
        self._metrics_listeners: list[Callable[[DashboardMetrics], None]] = []
        self._metrics_unsubscribers: list[Callable[[], None]] = []
        self._session_id: str | None = None
        self._started = False

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self.subscriber.start()
        self._removers.append(self.store.on_auth_state_change(self._handle_auth_change))
        self._principal = await self.store.get_current_principal()
        self._principal_loaded = True
        logger.info(
            "Dashboard started for %s",
            f"{self._principal.id} ({self._principal.role})" if self._principal else "anonymous",
        )

    async def close(self) -> None:
        self._stop_metrics()
        self._metrics_listeners.clear()
        for key in list(self._watched):
            while self._watched.get(key):
                self._release(key)
        self.subscriber.close()
        for remove in self._removers:
            remove()
        self._removers.clear()

        if self._session_id is not None:
            try:
                await self.store.delete("user_sessions", self._session_id)
            except StoreError as exc:
                logger.warning("Could not end presence session %s: %s", self._session_id, exc)
            self._session_id = None

        await self.background.drain(CLOSE_TIMEOUT_SECONDS)
        try:
            await asyncio.wait_for(self.cache.settle(), CLOSE_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.warning("Fetches still in flight after %.1fs, closing anyway", CLOSE_TIMEOUT_SECONDS)
        close_notifier = getattr(self.notifier, "close", None)
        if close_notifier is not None:
            await close_notifier()
        await self.store.close()
        self._started = False

    async def principal(self) -> Principal | None:
        if not self._principal_loaded:
            self._principal = await self.store.get_current_principal()
            self._principal_loaded = True
        return self._principal

    def _handle_auth_change(self, principal: Principal | None) -> None:
        self._principal = principal
        self._principal_loaded = True
        # Row visibility depends on who is asking.
        keys = self.cache.invalidate_all()
        logger.info(
            "Auth state changed to %s, invalidated %d key(s)",
            principal.id if principal else "anonymous",
            len(keys),
        )

    # -- resources ---------------------------------------------------------

    def _spec(self, resource: str) -> ResourceSpec:
        try:
            return self.resources[resource]
        except KeyError:
            raise ValueError(f"unknown resource '{resource}'") from None

    def _fetch_fn(self, spec: ResourceSpec, params: dict[str, Any]):
        async def _fetch() -> list[Any]:
            return await spec.fetch(self.store, **params)

        return _fetch

    def _keys_for(self, resource: str) -> list[str]:
        return [k for k in self.cache.keys() if k == resource or k.startswith(f"{resource}:")]

    def snapshot(self, resource: str, **params: Any) -> CacheSnapshot:
        """Current cached state of a resource; schedules a refetch when due."""
        spec = self._spec(resource)
        full = spec.normalize(**params)
        return self.cache.get(spec.key(**full), self._fetch_fn(spec, full), spec.options, spec.tables)

    async def read(self, resource: str, fresh: bool = False, **params: Any) -> Any:
        spec = self._spec(resource)
        full = spec.normalize(**params)
        return await self.cache.read(
            spec.key(**full), self._fetch_fn(spec, full), spec.options, spec.tables, fresh=fresh
        )

    def watch(self, resource: str, **params: Any) -> str:
        """Keep a resource live: subscribe to its tables and load it now."""
        spec = self._spec(resource)
        key = spec.key(**params)
        self.cache.retain(key)
        self.subscriber.acquire(key, spec.tables)
        self._watched[key] = self._watched.get(key, 0) + 1
        self.snapshot(resource, **params)
        return key

    def unwatch(self, resource: str, **params: Any) -> None:
        key = self._spec(resource).key(**params)
        if self._watched.get(key):
            self._release(key)

    def _release(self, key: str) -> None:
        remaining = self._watched[key] - 1
        if remaining:
            self._watched[key] = remaining
        else:
            del self._watched[key]
        self.cache.release(key)
        self.subscriber.release(key)

    def refresh(self, resource: str | None = None) -> list[str]:
        """Invalidate one resource (every parameter variant) or everything."""
        if resource is None:
            return self.cache.invalidate_all()
        self._spec(resource)
        keys = self._keys_for(resource)
        for key in keys:
            self.cache.invalidate(key)
        return keys

    async def tasks(
        self, project_id: str | None = None, assignee_id: str | None = None, fresh: bool = False
    ) -> list[Task]:
        return await self.read("tasks", fresh=fresh, project_id=project_id, assignee_id=assignee_id)

    async def projects(self, fresh: bool = False) -> list[Project]:
        return await self.read("projects", fresh=fresh)

    async def team(self, fresh: bool = False) -> list[User]:
        return await self.read("team", fresh=fresh)

    async def presence(self, fresh: bool = False) -> list[User]:
        return await self.read("presence", fresh=fresh)

    async def sessions(self, fresh: bool = False) -> list[UserSession]:
        return await self.read("sessions", fresh=fresh)

    async def finance_records(
        self, project_id: str | None = None, fresh: bool = False
    ) -> list[FinanceRecord]:
        require(await self.principal(), "access_finance")
        return await self.read("finance_records", fresh=fresh, project_id=project_id)

    async def finance_uploads(
        self, project_id: str | None = None, fresh: bool = False
    ) -> list[FinanceUpload]:
        require(await self.principal(), "access_finance")
        return await self.read("finance_uploads", fresh=fresh, project_id=project_id)

    async def businesses(self, fresh: bool = False) -> list[BusinessUnit]:
        return await self.read("businesses", fresh=fresh)

    async def activity(self, limit: int = ACTIVITY_LIMIT, fresh: bool = False) -> list[ActivityEntry]:
        return await self.read("activity", fresh=fresh, limit=limit)

    # -- derived views -----------------------------------------------------

    def _day(self, today: date | None) -> date:
        return today or self._today()

    async def operations_kpi(
        self, period_days: int = DEFAULT_COMPLETION_PERIOD_DAYS, today: date | None = None
    ) -> OperationsKPI:
        tasks = await self.tasks()
        return metrics.operations_kpi(tasks, await self.principal(), period_days, self._day(today))

    async def project_health_board(self, today: date | None = None) -> list[ProjectHealth]:
        projects, tasks = await asyncio.gather(self.projects(), self.tasks())
        return metrics.project_health_board(projects, tasks, self._day(today))

    async def project_metrics(
        self, sort_by: str = "priority", filter_key: str = "all", today: date | None = None
    ) -> list[ProjectMetrics]:
        projects, tasks, team = await asyncio.gather(self.projects(), self.tasks(), self.team())
        day = self._day(today)
        items = [metrics.project_metrics(p, tasks, team, day) for p in projects]
        return metrics.sort_projects(metrics.filter_projects(items, filter_key), sort_by)

    async def team_workload(
        self, project_id: str | None = None, today: date | None = None
    ) -> list[MemberWorkload]:
        team, tasks = await asyncio.gather(self.team(), self.tasks())
        return metrics.team_workload(team, tasks, self._day(today), project_id)

    async def critical_focus(self, limit: int = 5, today: date | None = None) -> list[Task]:
        scoped = metrics.visible_tasks(await self.tasks(), await self.principal())
        return metrics.critical_focus(scoped, self._day(today), limit)

    async def week_focus(self, today: date | None = None) -> FocusBuckets:
        scoped = metrics.visible_tasks(await self.tasks(), await self.principal())
        return metrics.week_focus(scoped, self._day(today))

    async def visit_stats(self, today: date | None = None) -> list[VisitStats]:
        return metrics.visit_stats(await self.sessions(), self._day(today))

    def current_metrics(self, today: date | None = None) -> DashboardMetrics | None:
        """Recompute every derived view from cached data, or None before first load."""
        snapshots = {r: self.cache.peek(self._spec(r).key()) for r in METRIC_RESOURCES}
        if any(s is None or not s.has_data for s in snapshots.values()):
            return None
        tasks = snapshots["tasks"].data
        projects = snapshots["projects"].data
        team = snapshots["team"].data
        day = self._day(today)
        principal = self._principal
        return DashboardMetrics(
            kpi=metrics.operations_kpi(tasks, principal, today=day),
            project_health=tuple(metrics.project_health_board(projects, tasks, day)),
            team_workload=tuple(metrics.team_workload(team, tasks, day)),
            critical_focus=tuple(
                metrics.critical_focus(metrics.visible_tasks(tasks, principal), day)
            ),
            stale=any(s.is_stale for s in snapshots.values()),
        )

    def on_metrics(self, listener: Callable[[DashboardMetrics], None]) -> Callable[[], None]:
        """Deliver a fresh DashboardMetrics after every update to its inputs.

        The first listener starts watching tasks, projects and team; removing
        the last one stops. Returns the remover.
        """
        self._metrics_listeners.append(listener)
        if len(self._metrics_listeners) == 1:
            self._start_metrics()
        else:
            current = self.current_metrics()
            if current is not None:
                listener(current)

        def _remove() -> None:
            if listener in self._metrics_listeners:
                self._metrics_listeners.remove(listener)
                if not self._metrics_listeners:
                    self._stop_metrics()

        return _remove

    def _start_metrics(self) -> None:
        for resource in METRIC_RESOURCES:
            key = self.watch(resource)
            self._metrics_unsubscribers.append(self.cache.subscribe(key, self._on_metric_input))
        self._emit_metrics()

    def _stop_metrics(self) -> None:
        if not self._metrics_unsubscribers:
            return
        for unsubscribe in self._metrics_unsubscribers:
            unsubscribe()
        self._metrics_unsubscribers.clear()
        for resource in METRIC_RESOURCES:
            self.unwatch(resource)

    def _on_metric_input(self, snapshot: CacheSnapshot) -> None:
        self._emit_metrics()

    def _emit_metrics(self) -> None:
        current = self.current_metrics()
        if current is None:
            return
        for listener in list(self._metrics_listeners):
            try:
                listener(current)
            except Exception:
                logger.exception("Metrics listener failed")

    # -- write helpers -----------------------------------------------------

    async def _actor(self, capability: str | None = None) -> Principal:
        principal = await self.principal()
        if capability is not None:
            return require(principal, capability)
        if principal is None:
            raise AuthorizationError("write", None)
        return principal

    async def _load_task(self, task_id: str) -> Row:
        rows = await self.store.query("tasks", {"id": task_id}, limit=1)
        if not rows:
            raise MutationError("not_found", f"no task with id {task_id}")
        return rows[0]

    def _optimistic_tasks(self, transform: Callable[[list[Task]], list[Task]]):
        return {key: transform for key in self._keys_for("tasks")}

    def _log_activity(self, task_id: str, actor: Principal, action: str, meta: dict[str, Any]) -> None:
        self.mutations.after(
            self.mutations.insert(
                "task_activity",
                {"task_id": task_id, "user_id": actor.id, "action": action, "meta": meta},
            ),
            name=f"activity:{action}:{task_id}",
        )

    def _notify(
        self,
        event: str,
        task: Row,
        actor: Principal,
        recipients: list[str] | None = None,
        comment_body: str | None = None,
    ) -> None:
        async def _resolve() -> dict[str, Any]:
            context: dict[str, Any] = {}
            if task.get("project_id"):
                rows = await self.store.query("projects", {"id": task["project_id"]}, limit=1)
                if rows:
                    context["project_name"] = rows[0].get("name")
            rows = await self.store.query("users", {"id": actor.id}, limit=1)
            if rows and rows[0].get("full_name"):
                context["actor_name"] = rows[0]["full_name"]
            return context

        context: dict[str, Any] = {"task_title": task.get("title") or ""}
        if comment_body is not None:
            context["comment_body"] = comment_body
        fire_notification(
            self.background,
            self.notifier,
            event,
            str(task.get("id")),
            actor.id,
            recipients,
            resolve=_resolve,
            **context,
        )

    # -- tasks -------------------------------------------------------------

    async def create_task(
        self,
        title: str,
        project_id: str,
        *,
        description: str | None = None,
        status: str = "todo",
        priority: str = "medium",
        due_date: str | None = None,
        assignee_ids: Iterable[str] = (),
    ) -> Task:
        actor = await self._actor("create_tasks")
        title = (title or "").strip()
        if not title:
            raise MutationError("invalid_request", "task title is required")
        if not project_id:
            raise MutationError("invalid_request", "project_id is required")
        _check_choice("status", status, TASK_STATUSES)
        _check_choice("priority", priority, TASK_PRIORITIES)
        assignees = _unique(assignee_ids)

        created: list[Row] = []

        async def _insert_task() -> Row:
            row = await self.store.insert(
                "tasks",
                {
                    "title": title,
                    "project_id": project_id,
                    "description": description,
                    "status": status,
                    "priority": priority,
                    "due_date": due_date,
                    "assignee_id": assignees[0] if assignees else None,
                    "created_by": actor.id,
                },
            )
            created.append(row)
            return row

        async def _remove_task(row: Row) -> None:
            await self.store.delete("tasks", row["id"])

        steps = [MutationStep("insert-task", _insert_task, _remove_task)]
        if assignees:
            steps.append(
                MutationStep(
                    "link-assignees",
                    lambda: self.store.insert(
                        "task_assignees",
                        [{"task_id": created[0]["id"], "user_id": u} for u in assignees],
                    ),
                )
            )
        await self.mutations.run(steps, {"tasks", "task_assignees"})
        row = created[0]
        logger.info("Task %s created by %s", row["id"], actor.id)

        self._log_activity(row["id"], actor, "created", {"title": title})
        self._notify("task_created", row, actor)
        if assignees:
            self._notify("task_assigned", row, actor, [u for u in assignees if u != actor.id])
        return Task.from_row(row)

    async def update_task(self, task_id: str, **patch: Any) -> Task:
        actor = await self._actor()
        if not patch:
            raise MutationError("invalid_request", "nothing to update")
        unknown = sorted(set(patch) - TASK_FIELDS)
        if unknown:
            raise MutationError("invalid_request", f"unknown task field(s): {', '.join(unknown)}")
        if ASSIGNMENT_FIELDS & set(patch):
            require(actor, "assign_tasks")
        if "status" in patch:
            _check_choice("status", patch["status"], TASK_STATUSES)
        if "priority" in patch:
            _check_choice("priority", patch["priority"], TASK_PRIORITIES)
        if "title" in patch and not (patch["title"] or "").strip():
            raise MutationError("invalid_request", "task title cannot be empty")

        before = await self._load_task(task_id)
        visible = {k: v for k, v in patch.items() if k in OPTIMISTIC_TASK_FIELDS}

        def _apply(tasks: list[Task]) -> list[Task]:
            return [replace(t, **visible) if t.id == task_id else t for t in tasks]

        row = await self.mutations.update(
            "tasks", task_id, patch, optimistic=self._optimistic_tasks(_apply) if visible else None
        )
        for name, value in patch.items():
            self._log_activity(task_id, actor, f"{name}_changed", {"from": before.get(name), "to": value})
        new_assignee = patch.get("assignee_id")
        if new_assignee and new_assignee != before.get("assignee_id") and new_assignee != actor.id:
            self._notify("task_assigned", row, actor, [new_assignee])
        return Task.from_row(row)

    async def delete_task(self, task_id: str) -> None:
        actor = await self._actor("delete_tasks")

        def _drop(tasks: list[Task]) -> list[Task]:
            return [t for t in tasks if t.id != task_id]

        await self.mutations.delete(
            "tasks",
            task_id,
            also={"task_assignees", "task_comments", "task_activity"},
            optimistic=self._optimistic_tasks(_drop),
        )
        logger.info("Task %s deleted by %s", task_id, actor.id)

    async def _unlink(self, task_id: str, user_ids: list[str]) -> int:
        return await self.store.delete_where(
            "task_assignees", {"task_id": task_id, "user_id": list(user_ids)}
        )

    async def set_task_assignees(self, task_id: str, user_ids: Iterable[str]) -> list[str]:
        """Replace a task's assignee set.

        New links are inserted before stale ones are removed; if the removal
        fails the inserted links are deleted again. The legacy single
        ``assignee_id`` column is then mirrored on a best-effort basis.
        """
        actor = await self._actor("assign_tasks")
        task = await self._load_task(task_id)
        wanted = _unique(user_ids)
        links = await self.store.query("task_assignees", {"task_id": task_id})
        current = _unique(link.get("user_id") for link in links)
        added = [u for u in wanted if u not in current]
        removed = [u for u in current if u not in wanted]

        async def _undo_insert(_: Any) -> None:
            await self._unlink(task_id, added)

        steps = []
        if added:
            steps.append(
                MutationStep(
                    "insert-assignees",
                    lambda: self.store.insert(
                        "task_assignees", [{"task_id": task_id, "user_id": u} for u in added]
                    ),
                    _undo_insert,
                )
            )
        if removed:
            steps.append(MutationStep("remove-assignees", lambda: self._unlink(task_id, removed)))
        if steps:
            await self.mutations.run(steps, {"task_assignees"})

        legacy = wanted[0] if wanted else None
        if task.get("assignee_id") != legacy:
            try:
                await self.mutations.update("tasks", task_id, {"assignee_id": legacy})
            except StoreError as exc:
                logger.warning("Legacy assignee mirror for task %s failed: %s", task_id, exc)

        self._notify("task_assigned", task, actor, [u for u in added if u != actor.id])
        return wanted

    async def add_comment(self, task_id: str, body: str) -> TaskComment:
        actor = await self._actor()
        body = (body or "").strip()
        if not body:
            raise MutationError("invalid_request", "comment body is required")
        task = await self._load_task(task_id)
        links = await self.store.query("task_assignees", {"task_id": task_id})

        row = await self.mutations.insert(
            "task_comments", {"task_id": task_id, "user_id": actor.id, "body": body}
        )
        self._log_activity(task_id, actor, "commented", {"body": body[:ACTIVITY_PREVIEW_CHARS]})
        recipients = _unique([*(link.get("user_id") for link in links), task.get("assignee_id")])
        self._notify(
            "comment_added",
            task,
            actor,
            [u for u in recipients if u != actor.id],
            comment_body=body,
        )
        return TaskComment.from_row(row)

    # -- projects ----------------------------------------------------------

    async def create_project(
        self,
        name: str,
        *,
        status: str = "active",
        color: str | None = None,
        business_unit_id: str | None = None,
    ) -> Project:
        actor = await self._actor("manage_projects")
        name = (name or "").strip()
        if not name:
            raise MutationError("invalid_request", "project name is required")
        _check_choice("status", status, PROJECT_STATUSES)
        profile = await self.store.query("users", {"id": actor.id}, limit=1)
        row: Row = {"name": name, "status": status, "business_unit_id": business_unit_id}
        if color:
            row["color"] = color
        if profile and profile[0].get("company_id"):
            row["company_id"] = profile[0]["company_id"]
        created = await self.mutations.insert("projects", row)
        return Project.from_row(created)

    async def update_project(self, project_id: str, **patch: Any) -> Project:
        await self._actor("manage_projects")
        if not patch:
            raise MutationError("invalid_request", "nothing to update")
        unknown = sorted(set(patch) - PROJECT_FIELDS)
        if unknown:
            raise MutationError(
                "invalid_request", f"unknown project field(s): {', '.join(unknown)}"
            )
        if "status" in patch:
            _check_choice("status", patch["status"], PROJECT_STATUSES)

        def _apply(projects: list[Project]) -> list[Project]:
            return [replace(p, **patch) if p.id == project_id else p for p in projects]

        optimistic = {key: _apply for key in self._keys_for("projects")}
        row = await self.mutations.update("projects", project_id, patch, optimistic=optimistic)
        return Project.from_row(row)

    async def delete_project(self, project_id: str) -> None:
        actor = await self._actor("manage_projects")
        await self.mutations.delete("projects", project_id, also=PROJECT_CASCADE_TABLES)
        logger.info("Project %s deleted by %s", project_id, actor.id)

    # -- finance -----------------------------------------------------------

    async def upload_finance(
        self,
        project_id: str,
        file_name: str,
        column_mapping: dict[str, Any],
        records: list[dict[str, Any]],
    ) -> FinanceUploadResult:
        """Replace a project's finance dataset with a new versioned upload.

        The upload row and the new records are written first; the previous
        records are only deleted once the new ones are stored, so the project
        never has zero records in between. If the records insert fails the
        upload row is removed again. Leftover old records after a failed
        cleanup are reported, not raised.
        """
        actor = await self._actor("access_finance")
        if not project_id or not file_name:
            raise MutationError("invalid_request", "project_id and file_name are required")
        if not isinstance(column_mapping, dict) or not isinstance(records, list):
            raise MutationError("invalid_request", "column_mapping and records are required")
        parsed = []
        for index, record in enumerate(records):
            if not isinstance(record, dict) or not record.get("month") or not record.get("category"):
                raise MutationError("invalid_request", f"record {index}: month and category are required")
            try:
                amount = float(record.get("amount") or 0)
            except (TypeError, ValueError):
                raise MutationError("invalid_request", f"record {index}: amount must be numeric") from None
            parsed.append(
                {"month": str(record["month"]), "category": str(record["category"]), "amount": amount}
            )

        latest = await self.store.query(
            "finance_uploads", {"project_id": project_id}, order=["-version"], limit=1
        )
        version = (int(latest[0].get("version") or 0) if latest else 0) + 1
        old_ids = [str(r["id"]) for r in await self.store.query("finance_records", {"project_id": project_id})]

        uploads: list[Row] = []

        async def _insert_upload() -> Row:
            row = await self.store.insert(
                "finance_uploads",
                {
                    "project_id": project_id,
                    "uploaded_by": actor.id,
                    "file_name": file_name,
                    "column_mapping": column_mapping,
                    "row_count": len(parsed),
                    "version": version,
                },
            )
            uploads.append(row)
            return row

        async def _remove_upload(row: Row) -> None:
            await self.store.delete("finance_uploads", row["id"])

        async def _insert_records() -> list[Row]:
            if not parsed:
                return []
            upload_id = uploads[0]["id"]
            return await self.store.insert(
                "finance_records",
                [{**r, "project_id": project_id, "upload_id": upload_id} for r in parsed],
            )

        await self.mutations.run(
            [
                MutationStep("insert-upload", _insert_upload, _remove_upload),
                MutationStep("insert-records", _insert_records),
            ],
            {"finance_uploads", "finance_records"},
        )

        leftover = await self.mutations.delete_many("finance_records", old_ids) if old_ids else []
        if leftover:
            logger.warning(
                "Finance upload %s kept %d stale record(s) for project %s",
                uploads[0]["id"],
                len(leftover),
                project_id,
            )
        logger.info(
            "Finance upload v%d for project %s: %d record(s), replaced %d",
            version,
            project_id,
            len(parsed),
            len(old_ids) - len(leftover),
        )
        return FinanceUploadResult(
            upload=FinanceUpload.from_row(uploads[0]),
            record_count=len(parsed),
            replaced_count=len(old_ids) - len(leftover),
            leftover_record_ids=tuple(leftover),
        )

    # -- presence ----------------------------------------------------------

    async def record_presence(self, page: str | None = None) -> str:
        """Heartbeat: bump ``last_seen_at`` and keep one session row open."""
        actor = await self._actor()
        now = _now_iso()
        await self.mutations.update("users", actor.id, {"last_seen_at": now})
        if self._session_id is not None:
            try:
                await self.mutations.update(
                    "user_sessions", self._session_id, {"last_seen_at": now, "page": page}
                )
                return self._session_id
            except StoreError as exc:
                if exc.code != "not_found":
                    raise
                self._session_id = None
        session = await self.mutations.insert(
            "user_sessions",
            {"user_id": actor.id, "page": page, "started_at": now, "last_seen_at": now},
        )
        self._session_id = str(session["id"])
        return self._session_id

    # -- health ------------------------------------------------------------

    def get_health(self) -> dict[str, Any]:
        principal = self._principal
        return {
            "principal": {"id": principal.id, "role": principal.role} if principal else None,
            "watched": dict(self._watched),
            "metricsListeners": len(self._metrics_listeners),
            "cache": self.cache.get_health(),
            "subscriptions": self.subscriber.get_health(),
            "mutations": self.mutations.get_health(),
            "store": self.store.get_health(),
        }
