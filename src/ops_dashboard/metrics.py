"""
Derived metrics over cached record sets.

Everything here is a pure function of its inputs (plus ``today``, which every
function accepts for determinism). Snapshots are frozen and rebuilt from
scratch on every call; nothing is patched incrementally. Malformed optional
fields degrade to zero counts instead of raising.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date, timedelta

from .dates import is_due_this_week, is_due_today, is_overdue, parse_date, week_bounds
from .records import Project, Task, User, UserSession, is_assigned_to, task_assignee_ids
from .roles import Principal, can_view_all_tasks

HEALTH_ORDER = {"red": 0, "yellow": 1, "green": 2}
PRIORITY_ORDER = {"high": 0, "medium": 1, "low": 2}
WORKLOAD_ROLES = frozenset({"staff", "manager"})

HIGH_LOAD_OPEN_TASKS = 8
HIGH_LOAD_OVERDUE_TASKS = 2
LOW_LOAD_OPEN_TASKS = 2
RED_BLOCKED_TASKS = 2
YELLOW_PROGRESS_PERCENT = 30
YELLOW_MIN_TASKS = 5
DEFAULT_COMPLETION_PERIOD_DAYS = 7


def _percent(part: int, total: int) -> int:
    """Rounded percentage, half up, 0 when total is 0."""
    if total <= 0:
        return 0
    return int(part * 100 / total + 0.5)


def _today(today: date | None) -> date:
    return today if today is not None else date.today()


def completion_rate(tasks: Iterable[Task]) -> int:
    task_list = list(tasks)
    done = sum(1 for t in task_list if t.status == "done")
    return _percent(done, len(task_list))


def tasks_in_period(
    tasks: Iterable[Task], period_days: int, today: date | None = None
) -> list[Task]:
    """Tasks whose due date falls after the start of the trailing period."""
    cutoff = _today(today) - timedelta(days=max(period_days, 0))
    result = []
    for task in tasks:
        due = parse_date(task.due_date)
        if due is not None and due > cutoff:
            result.append(task)
    return result


def health_status(
    total: int, done: int, overdue: int, blocked: int, in_progress: int
) -> str:
    """Red conditions are checked before yellow ones."""
    if overdue > 0 or blocked > RED_BLOCKED_TASKS:
        return "red"
    progress = _percent(done, total)
    if progress < YELLOW_PROGRESS_PERCENT and total > YELLOW_MIN_TASKS:
        return "yellow"
    if in_progress == 0 and done < total:
        return "yellow"
    return "green"


def workload_level(open_tasks: int, overdue: int) -> str:
    if open_tasks > HIGH_LOAD_OPEN_TASKS or overdue > HIGH_LOAD_OVERDUE_TASKS:
        return "high"
    if open_tasks <= LOW_LOAD_OPEN_TASKS:
        return "low"
    return "normal"


@dataclass(frozen=True)
class OperationsKPI:
    due_today: int
    overdue: int
    in_progress: int
    completion_rate: int
    completion_period_days: int


@dataclass(frozen=True)
class ProjectHealth:
    project: Project
    total_tasks: int
    completed_tasks: int
    overdue_tasks: int
    due_today_tasks: int
    blocked_tasks: int
    in_progress_tasks: int
    progress_percent: int
    health: str


@dataclass(frozen=True)
class ProjectMetrics:
    project: Project
    total_tasks: int
    done_tasks: int
    overdue_tasks: int
    in_progress_tasks: int
    blocked_tasks: int
    due_today: int
    due_this_week: int
    progress_percent: int
    health: str
    dominant_priority: str
    assignees: tuple[User, ...]
    last_activity_at: str | None
    high_priority_count: int
    weekly_completions: tuple[int, ...]


@dataclass(frozen=True)
class MemberWorkload:
    member: User
    wip: int
    overdue: int
    due_soon: int
    total: int
    load: str
    tasks: tuple[Task, ...] = field(default=())


@dataclass(frozen=True)
class FocusBuckets:
    overdue: tuple[Task, ...]
    due_today: tuple[Task, ...]
    due_this_week: tuple[Task, ...]


@dataclass(frozen=True)
class VisitStats:
    user_id: str
    total_sessions: int
    sessions_today: int
    sessions_this_week: int
    last_seen_at: str | None


def visible_tasks(tasks: Iterable[Task], principal: Principal | None) -> list[Task]:
    """Managers see every task; everyone else only tasks assigned to them."""
    if principal is None:
        return []
    if can_view_all_tasks(principal.role):
        return list(tasks)
    return [t for t in tasks if is_assigned_to(t, principal.id)]


def operations_kpi(
    tasks: Iterable[Task],
    principal: Principal | None,
    period_days: int = DEFAULT_COMPLETION_PERIOD_DAYS,
    today: date | None = None,
) -> OperationsKPI:
    day = _today(today)
    scoped = visible_tasks(tasks, principal)
    return OperationsKPI(
        due_today=sum(
            1 for t in scoped if is_due_today(t.due_date, day) and t.status != "done"
        ),
        overdue=sum(1 for t in scoped if is_overdue(t.due_date, t.status, day)),
        in_progress=sum(1 for t in scoped if t.status == "in_progress"),
        completion_rate=completion_rate(tasks_in_period(scoped, period_days, day)),
        completion_period_days=period_days,
    )


def project_health(
    project: Project, tasks: Iterable[Task], today: date | None = None
) -> ProjectHealth:
    day = _today(today)
    own = [t for t in tasks if t.project_id == project.id]
    total = len(own)
    done = sum(1 for t in own if t.status == "done")
    overdue = sum(1 for t in own if is_overdue(t.due_date, t.status, day))
    blocked = sum(1 for t in own if t.status == "blocked")
    in_progress = sum(1 for t in own if t.status == "in_progress")
    return ProjectHealth(
        project=project,
        total_tasks=total,
        completed_tasks=done,
        overdue_tasks=overdue,
        due_today_tasks=sum(
            1 for t in own if is_due_today(t.due_date, day) and t.status != "done"
        ),
        blocked_tasks=blocked,
        in_progress_tasks=in_progress,
        progress_percent=_percent(done, total),
        health=health_status(total, done, overdue, blocked, in_progress),
    )


def project_health_board(
    projects: Iterable[Project], tasks: Iterable[Task], today: date | None = None
) -> list[ProjectHealth]:
    """Health of active projects, red first then yellow then green."""
    task_list = list(tasks)
    board = [
        project_health(project, task_list, today)
        for project in projects
        if project.status == "active"
    ]
    return sorted(board, key=lambda h: HEALTH_ORDER[h.health])


def _dominant_priority(open_tasks: Sequence[Task]) -> tuple[str, int]:
    high = sum(1 for t in open_tasks if t.priority == "high")
    medium = sum(1 for t in open_tasks if t.priority == "medium")
    if high > 0 and high >= medium:
        return "high", high
    if medium > 0:
        return "medium", high
    return "low", high


def project_metrics(
    project: Project,
    tasks: Iterable[Task],
    users: Iterable[User],
    today: date | None = None,
) -> ProjectMetrics:
    day = _today(today)
    own = [t for t in tasks if t.project_id == project.id]
    health = project_health(project, own, day)
    open_tasks = [t for t in own if t.status != "done"]
    dominant, high_count = _dominant_priority(open_tasks)

    users_by_id = {u.id: u for u in users}
    assignee_ids: list[str] = []
    for task in own:
        for user_id in task_assignee_ids(task):
            if user_id not in assignee_ids:
                assignee_ids.append(user_id)

    stamps = [t.updated_at for t in own if t.updated_at]
    last_activity = max(stamps) if stamps else None

    sparkline = []
    for offset in range(6, -1, -1):
        day_str = (day - timedelta(days=offset)).isoformat()
        sparkline.append(
            sum(
                1
                for t in own
                if t.status == "done" and (t.updated_at or "").startswith(day_str)
            )
        )

    return ProjectMetrics(
        project=project,
        total_tasks=health.total_tasks,
        done_tasks=health.completed_tasks,
        overdue_tasks=health.overdue_tasks,
        in_progress_tasks=health.in_progress_tasks,
        blocked_tasks=health.blocked_tasks,
        due_today=health.due_today_tasks,
        due_this_week=sum(1 for t in open_tasks if is_due_this_week(t.due_date, day)),
        progress_percent=health.progress_percent,
        health=health.health,
        dominant_priority=dominant,
        assignees=tuple(users_by_id[i] for i in assignee_ids if i in users_by_id),
        last_activity_at=last_activity,
        high_priority_count=high_count,
        weekly_completions=tuple(sparkline),
    )


def sort_projects(metrics: Sequence[ProjectMetrics], sort_by: str) -> list[ProjectMetrics]:
    items = list(metrics)
    if sort_by == "priority":
        return sorted(items, key=lambda m: PRIORITY_ORDER[m.dominant_priority])
    if sort_by == "progress":
        return sorted(items, key=lambda m: -m.progress_percent)
    if sort_by == "overdue":
        return sorted(items, key=lambda m: -m.overdue_tasks)
    if sort_by == "name":
        return sorted(items, key=lambda m: m.project.name.lower())
    if sort_by == "updated":
        with_activity = [m for m in items if m.last_activity_at]
        without = [m for m in items if not m.last_activity_at]
        with_activity.sort(key=lambda m: m.last_activity_at or "", reverse=True)
        return with_activity + without
    return items


def filter_projects(metrics: Sequence[ProjectMetrics], filter_key: str) -> list[ProjectMetrics]:
    if filter_key == "at-risk":
        return [m for m in metrics if m.health == "red"]
    if filter_key in ("active", "completed", "paused"):
        return [m for m in metrics if m.project.status == filter_key]
    return list(metrics)


def team_workload(
    team: Iterable[User],
    tasks: Iterable[Task],
    today: date | None = None,
    project_id: str | None = None,
) -> list[MemberWorkload]:
    """Open-task load per staff member and manager, heaviest first."""
    day = _today(today)
    open_tasks = [t for t in tasks if t.status != "done"]
    if project_id:
        open_tasks = [t for t in open_tasks if t.project_id == project_id]

    rows = []
    for member in team:
        if member.role not in WORKLOAD_ROLES:
            continue
        mine = [t for t in open_tasks if is_assigned_to(t, member.id)]
        overdue = sum(1 for t in mine if is_overdue(t.due_date, t.status, day))
        rows.append(
            MemberWorkload(
                member=member,
                wip=sum(1 for t in mine if t.status == "in_progress"),
                overdue=overdue,
                due_soon=sum(
                    1
                    for t in mine
                    if is_due_this_week(t.due_date, day)
                    and not is_overdue(t.due_date, t.status, day)
                ),
                total=len(mine),
                load=workload_level(len(mine), overdue),
                tasks=tuple(mine),
            )
        )
    return sorted(rows, key=lambda w: (-w.overdue, -w.total))


def _focus_sort_key(task: Task) -> tuple[int, str]:
    return PRIORITY_ORDER.get(task.priority, 1), task.due_date or "9999-12-31"


def critical_focus(
    tasks: Iterable[Task], today: date | None = None, limit: int = 5
) -> list[Task]:
    """Open tasks that are overdue, or high priority and due today."""
    day = _today(today)
    critical = [
        t
        for t in tasks
        if t.status != "done"
        and (
            is_overdue(t.due_date, t.status, day)
            or (t.priority == "high" and is_due_today(t.due_date, day))
        )
    ]
    critical.sort(key=_focus_sort_key)
    return critical[:limit] if limit > 0 else critical


def week_focus(tasks: Iterable[Task], today: date | None = None) -> FocusBuckets:
    day = _today(today)
    open_tasks = sorted((t for t in tasks if t.status != "done"), key=_focus_sort_key)
    overdue = tuple(t for t in open_tasks if is_overdue(t.due_date, t.status, day))
    due_today = tuple(t for t in open_tasks if is_due_today(t.due_date, day))
    this_week = tuple(
        t
        for t in open_tasks
        if is_due_this_week(t.due_date, day)
        and not is_due_today(t.due_date, day)
        and not is_overdue(t.due_date, t.status, day)
    )
    return FocusBuckets(overdue=overdue, due_today=due_today, due_this_week=this_week)


def visit_stats(sessions: Iterable[UserSession], today: date | None = None) -> list[VisitStats]:
    """Session counts per user (all time, today, this week), most recently seen first.

    Sessions are bucketed by the calendar date of ``started_at``; rows without
    a parseable start only count toward the total.
    """
    day = _today(today)
    week_start, week_end = week_bounds(day)
    totals: dict[str, list[int]] = {}
    last_seen: dict[str, str | None] = {}
    for session in sessions:
        if not session.user_id:
            continue
        counts = totals.setdefault(session.user_id, [0, 0, 0])
        counts[0] += 1
        started = parse_date(session.started_at)
        if started == day:
            counts[1] += 1
        if started is not None and week_start <= started <= week_end:
            counts[2] += 1
        seen = last_seen.setdefault(session.user_id, None)
        if session.started_at and (seen is None or session.started_at > seen):
            last_seen[session.user_id] = session.started_at

    stats = [
        VisitStats(
            user_id=user_id,
            total_sessions=total,
            sessions_today=today_count,
            sessions_this_week=week_count,
            last_seen_at=last_seen.get(user_id),
        )
        for user_id, (total, today_count, week_count) in totals.items()
    ]
    stats.sort(key=lambda s: s.user_id)
    return sorted(stats, key=lambda s: s.last_seen_at or "", reverse=True)
