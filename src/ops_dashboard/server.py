"""
MCP server exposing the operations dashboard: cached reads, derived metrics
and role-checked writes over one Dashboard per server lifetime.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict
from pathlib import Path
from typing import Any

from mcp.server.fastmcp import FastMCP

from .cache import FetchError
from .dashboard import Dashboard
from .dates import is_overdue
from .metrics import MemberWorkload, ProjectHealth
from .mutations import MutationError
from .notifications import notifier_from_env
from .records import Project, Task, User, task_assignees
from .rest_store import RestStore
from .roles import AuthorizationError, Principal
from .store import DataStore, MemoryStore, StoreError

logger = logging.getLogger(__name__)

STORE_KIND = os.getenv("OPS_DASHBOARD_STORE", "memory").strip().lower()
SEED_PATH = os.getenv("OPS_DASHBOARD_SEED_PATH")


def _load_seed(path: str | None) -> tuple[dict[str, list[dict[str, Any]]], Principal | None]:
    """Read ``{"tables": {...}, "principal": {"id", "role"}}`` for the memory store."""
    if not path:
        return {}, None
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    principal = data.get("principal")
    return (
        dict(data.get("tables") or {}),
        Principal(id=str(principal["id"]), role=str(principal.get("role") or "staff"))
        if isinstance(principal, dict) and principal.get("id")
        else None,
    )


def build_store(kind: str = STORE_KIND) -> DataStore:
    if kind == "rest":
        return RestStore()
    if kind == "memory":
        tables, principal = _load_seed(SEED_PATH)
        return MemoryStore(tables=tables, principal=principal)
    raise ValueError(f"OPS_DASHBOARD_STORE must be 'memory' or 'rest', got {kind!r}")


@asynccontextmanager
async def _lifespan(server: FastMCP) -> AsyncIterator[Dashboard]:
    """Build the dashboard, start listening, tear everything down on exit."""
    dashboard = Dashboard(build_store(), notifier=notifier_from_env())
    try:
        await dashboard.start()
    except StoreError as exc:
        logger.warning("Could not resolve the current user, starting anonymous: %s", exc)
    try:
        yield dashboard
    finally:
        await dashboard.close()


mcp = FastMCP(
    "Ops Dashboard",
    instructions=(
        "Operations dashboard server. "
        "Reads are served from a stale-while-revalidate cache that is kept "
        "fresh by change feeds; pass fresh=true to wait for a revalidation. "
        "Writes are role-checked, go straight to the backing store and "
        "invalidate every cached view that depends on the touched tables."
    ),
    lifespan=_lifespan,
)


def _dashboard() -> Dashboard:
    return mcp.get_context().request_context.lifespan_context


def _error(exc: Exception) -> dict[str, Any]:
    code = getattr(exc, "code", "error")
    message = getattr(exc, "message", str(exc))
    logger.info("Tool call refused (%s): %s", code, message)
    return {"error": {"code": code, "message": message}}


_EXPECTED_ERRORS = (AuthorizationError, MutationError, StoreError, FetchError, ValueError)


def _user_dict(user: User | None) -> dict[str, Any] | None:
    if user is None:
        return None
    return {"id": user.id, "name": user.full_name, "email": user.email, "role": user.role}


def _task_dict(task: Task) -> dict[str, Any]:
    return {
        "id": task.id,
        "title": task.title,
        "status": task.status,
        "priority": task.priority,
        "dueDate": task.due_date,
        "overdue": is_overdue(task.due_date, task.status),
        "project": task.project.name if task.project else None,
        "projectId": task.project_id,
        "assignees": [_user_dict(u) for u in task_assignees(task)],
        "updatedAt": task.updated_at,
    }


def _project_dict(project: Project) -> dict[str, Any]:
    return {"id": project.id, "name": project.name, "status": project.status, "color": project.color}


def _health_dict(health: ProjectHealth) -> dict[str, Any]:
    return {
        "project": _project_dict(health.project),
        "health": health.health,
        "totalTasks": health.total_tasks,
        "completedTasks": health.completed_tasks,
        "overdueTasks": health.overdue_tasks,
        "dueTodayTasks": health.due_today_tasks,
        "blockedTasks": health.blocked_tasks,
        "inProgressTasks": health.in_progress_tasks,
        "progressPercent": health.progress_percent,
    }


def _workload_dict(row: MemberWorkload) -> dict[str, Any]:
    return {
        "member": _user_dict(row.member),
        "load": row.load,
        "total": row.total,
        "wip": row.wip,
        "overdue": row.overdue,
        "dueSoon": row.due_soon,
    }


@mcp.tool()
async def list_tasks(
    project_id: str | None = None,
    assignee_id: str | None = None,
    fresh: bool = False,
) -> dict[str, Any]:
    """List tasks with their project and assignees.

    Args:
        project_id: Only tasks of this project.
        assignee_id: Only tasks assigned to this user (junction set first,
            legacy single assignee second).
        fresh: Wait for an in-flight revalidation instead of returning cached data.

    Returns:
        dict with "tasks" (list of {id, title, status, priority, dueDate,
        overdue, project, projectId, assignees, updatedAt}), "totalCount" and
        "stale".
    """
    dashboard = _dashboard()
    try:
        tasks = await dashboard.tasks(project_id=project_id, assignee_id=assignee_id, fresh=fresh)
    except _EXPECTED_ERRORS as exc:
        return _error(exc)
    snapshot = dashboard.cache.peek(
        dashboard.resources["tasks"].key(project_id=project_id, assignee_id=assignee_id)
    )
    return {
        "tasks": [_task_dict(t) for t in tasks],
        "totalCount": len(tasks),
        "stale": snapshot.is_stale if snapshot else True,
    }


@mcp.tool()
async def list_projects(fresh: bool = False) -> dict[str, Any]:
    """List all projects sorted by name.

    Returns:
        dict with "projects" (list of {id, name, status, color}) and "totalCount".
    """
    try:
        projects = await _dashboard().projects(fresh=fresh)
    except _EXPECTED_ERRORS as exc:
        return _error(exc)
    return {"projects": [_project_dict(p) for p in projects], "totalCount": len(projects)}


@mcp.tool()
async def list_team(fresh: bool = False) -> dict[str, Any]:
    """List team members with who is currently online."""
    dashboard = _dashboard()
    try:
        team = await dashboard.team(fresh=fresh)
        online = {u.id for u in await dashboard.presence(fresh=fresh)}
    except _EXPECTED_ERRORS as exc:
        return _error(exc)
    return {
        "members": [{**_user_dict(u), "online": u.id in online, "lastSeenAt": u.last_seen_at} for u in team],
        "onlineCount": len(online),
    }


@mcp.tool()
async def get_visit_stats() -> dict[str, Any]:
    """Session counts per user for all time, today and this week."""
    try:
        stats = await _dashboard().visit_stats()
    except _EXPECTED_ERRORS as exc:
        return _error(exc)
    return {
        "users": [
            {
                "userId": s.user_id,
                "totalSessions": s.total_sessions,
                "sessionsToday": s.sessions_today,
                "sessionsThisWeek": s.sessions_this_week,
                "lastSeenAt": s.last_seen_at,
            }
            for s in stats
        ],
        "totalCount": len(stats),
    }


@mcp.tool()
async def get_operations_kpi(period_days: int = 7) -> dict[str, Any]:
    """KPI cards for the current user.

    Managers and owners see every task; other roles only their own.

    Args:
        period_days: Trailing window for the completion rate (default 7).

    Returns:
        dict with {dueToday, overdue, inProgress, completionRate, completionPeriodDays}.
    """
    try:
        kpi = await _dashboard().operations_kpi(period_days=period_days)
    except _EXPECTED_ERRORS as exc:
        return _error(exc)
    return {
        "dueToday": kpi.due_today,
        "overdue": kpi.overdue,
        "inProgress": kpi.in_progress,
        "completionRate": kpi.completion_rate,
        "completionPeriodDays": kpi.completion_period_days,
    }


@mcp.tool()
async def get_project_health() -> list[dict[str, Any]] | dict[str, Any]:
    """Health of active projects, red first, then yellow, then green."""
    try:
        board = await _dashboard().project_health_board()
    except _EXPECTED_ERRORS as exc:
        return _error(exc)
    return [_health_dict(h) for h in board]


@mcp.tool()
async def get_team_workload(
    project_id: str | None = None,
) -> list[dict[str, Any]] | dict[str, Any]:
    """Open-task load per staff member and manager, heaviest first.

    Args:
        project_id: Only count tasks of this project.
    """
    try:
        rows = await _dashboard().team_workload(project_id=project_id)
    except _EXPECTED_ERRORS as exc:
        return _error(exc)
    return [_workload_dict(r) for r in rows]


@mcp.tool()
async def get_critical_focus(limit: int = 5) -> dict[str, Any]:
    """Open tasks that are overdue, or high priority and due today."""
    try:
        tasks = await _dashboard().critical_focus(limit=limit)
    except _EXPECTED_ERRORS as exc:
        return _error(exc)
    return {"tasks": [_task_dict(t) for t in tasks], "totalCount": len(tasks)}


@mcp.tool()
async def create_task(
    title: str,
    project_id: str,
    description: str | None = None,
    priority: str = "medium",
    due_date: str | None = None,
    assignee_ids: list[str] | None = None,
) -> dict[str, Any]:
    """Create a task (owners and managers only).

    Args:
        title: Task title.
        project_id: Project the task belongs to.
        description: Optional longer description.
        priority: "high", "medium" (default) or "low".
        due_date: ISO date (YYYY-MM-DD).
        assignee_ids: Users to assign; they are notified.
    """
    try:
        task = await _dashboard().create_task(
            title,
            project_id,
            description=description,
            priority=priority,
            due_date=due_date,
            assignee_ids=assignee_ids or (),
        )
    except _EXPECTED_ERRORS as exc:
        return _error(exc)
    return {"task": asdict(task)}


@mcp.tool()
async def update_task(
    task_id: str,
    status: str | None = None,
    priority: str | None = None,
    title: str | None = None,
    due_date: str | None = None,
    description: str | None = None,
) -> dict[str, Any]:
    """Update fields of a task. Only the arguments given are changed.

    Args:
        task_id: Task to update.
        status: "todo", "in_progress", "done" or "blocked".
        priority: "high", "medium" or "low".
        title: New title.
        due_date: ISO date (YYYY-MM-DD).
        description: New description.
    """
    patch = {
        name: value
        for name, value in (
            ("status", status),
            ("priority", priority),
            ("title", title),
            ("due_date", due_date),
            ("description", description),
        )
        if value is not None
    }
    try:
        task = await _dashboard().update_task(task_id, **patch)
    except _EXPECTED_ERRORS as exc:
        return _error(exc)
    return {"task": asdict(task)}


@mcp.tool()
async def set_task_assignees(task_id: str, user_ids: list[str]) -> dict[str, Any]:
    """Replace the full assignee set of a task (owners and managers only)."""
    try:
        assigned = await _dashboard().set_task_assignees(task_id, user_ids)
    except _EXPECTED_ERRORS as exc:
        return _error(exc)
    return {"taskId": task_id, "assigneeIds": assigned}


@mcp.tool()
async def upload_finance(
    project_id: str,
    file_name: str,
    records: list[dict[str, Any]],
    column_mapping: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Replace a project's finance dataset (owners and investors only).

    Args:
        project_id: Project the dataset belongs to.
        file_name: Name of the uploaded spreadsheet.
        records: Rows of {month, category, amount}.
        column_mapping: Spreadsheet column to field mapping, stored with the upload.

    Returns:
        dict with {uploadId, version, recordCount, replacedCount, leftoverRecordIds}.
    """
    try:
        result = await _dashboard().upload_finance(
            project_id, file_name, column_mapping or {}, records
        )
    except _EXPECTED_ERRORS as exc:
        return _error(exc)
    return {
        "uploadId": result.upload.id,
        "version": result.upload.version,
        "recordCount": result.record_count,
        "replacedCount": result.replaced_count,
        "leftoverRecordIds": list(result.leftover_record_ids),
    }


@mcp.tool()
async def refresh_cache(resource: str | None = None) -> dict[str, Any]:
    """Invalidate one resource (or everything), wait for refetches, return health."""
    dashboard = _dashboard()
    try:
        keys = dashboard.refresh(resource)
    except ValueError as exc:
        return _error(exc)
    await dashboard.cache.settle()
    return {"invalidated": keys, "health": dashboard.get_health()}


@mcp.tool()
async def get_cache_health() -> dict[str, Any]:
    """Return cache, subscription, mutation and store health."""
    return _dashboard().get_health()


def main() -> None:
    mcp.run()
