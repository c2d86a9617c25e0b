"""
Typed record snapshots parsed from backend rows.

Rows come back from the store as loosely-typed dicts, sometimes with nested
join results (``project``, ``assignee``, ``task_assignees``). This module turns
them into frozen dataclasses with explicit optional fields so the rest of the
code never inspects dict shapes at runtime.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

ROLES = ("owner", "manager", "staff", "investor")
TASK_STATUSES = ("todo", "in_progress", "done", "blocked")
TASK_PRIORITIES = ("high", "medium", "low")
PROJECT_STATUSES = ("active", "paused", "completed", "archived")


def _to_str(val: Any) -> str:
    if val is None:
        return ""
    if isinstance(val, bytes):
        return val.decode("utf-8", errors="replace")
    return str(val)


def _opt_str(val: Any) -> str | None:
    text = _to_str(val).strip()
    return text or None


def _choice(val: Any, allowed: tuple[str, ...], default: str) -> str:
    text = _to_str(val).strip().lower()
    return text if text in allowed else default


def _to_float(val: Any) -> float:
    try:
        return float(val)
    except (TypeError, ValueError):
        return 0.0


def _to_int(val: Any, default: int = 0) -> int:
    try:
        return int(val)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class Company:
    id: str
    name: str = ""
    created_at: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Company:
        return cls(
            id=_to_str(row.get("id")),
            name=_to_str(row.get("name")),
            created_at=_opt_str(row.get("created_at")),
        )


@dataclass(frozen=True)
class User:
    id: str
    email: str = ""
    full_name: str = ""
    role: str = "staff"
    company_id: str | None = None
    avatar_url: str | None = None
    phone_number: str | None = None
    last_seen_at: str | None = None
    created_at: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> User:
        return cls(
            id=_to_str(row.get("id")),
            email=_to_str(row.get("email")),
            full_name=_to_str(row.get("full_name")),
            role=_choice(row.get("role"), ROLES, "staff"),
            company_id=_opt_str(row.get("company_id")),
            avatar_url=_opt_str(row.get("avatar_url")),
            phone_number=_opt_str(row.get("phone_number")),
            last_seen_at=_opt_str(row.get("last_seen_at")),
            created_at=_opt_str(row.get("created_at")),
        )


@dataclass(frozen=True)
class Project:
    id: str
    name: str = ""
    status: str = "active"
    company_id: str | None = None
    business_unit_id: str | None = None
    color: str = ""
    created_at: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Project:
        return cls(
            id=_to_str(row.get("id")),
            name=_to_str(row.get("name")),
            status=_choice(row.get("status"), PROJECT_STATUSES, "active"),
            company_id=_opt_str(row.get("company_id")),
            business_unit_id=_opt_str(row.get("business_unit_id")),
            color=_to_str(row.get("color")),
            created_at=_opt_str(row.get("created_at")),
        )


@dataclass(frozen=True)
class TaskAssignee:
    """One row of the task/user junction set."""

    task_id: str
    user_id: str
    user: User | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> TaskAssignee:
        user = row.get("user")
        return cls(
            task_id=_to_str(row.get("task_id")),
            user_id=_to_str(row.get("user_id")),
            user=User.from_row(user) if isinstance(user, dict) else None,
        )


@dataclass(frozen=True)
class Task:
    id: str
    project_id: str | None = None
    title: str = ""
    description: str | None = None
    status: str = "todo"
    priority: str = "medium"
    due_date: str | None = None
    assignee_id: str | None = None
    created_by: str | None = None
    recurring_rule: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    # Join snapshots, absent when the query did not select them.
    project: Project | None = None
    assignee: User | None = None
    task_assignees: tuple[TaskAssignee, ...] = ()

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Task:
        project = row.get("project")
        assignee = row.get("assignee")
        junction = row.get("task_assignees")
        return cls(
            id=_to_str(row.get("id")),
            project_id=_opt_str(row.get("project_id")),
            title=_to_str(row.get("title")),
            description=_opt_str(row.get("description")),
            status=_choice(row.get("status"), TASK_STATUSES, "todo"),
            priority=_choice(row.get("priority"), TASK_PRIORITIES, "medium"),
            due_date=_opt_str(row.get("due_date")),
            assignee_id=_opt_str(row.get("assignee_id")),
            created_by=_opt_str(row.get("created_by")),
            recurring_rule=_opt_str(row.get("recurring_rule")),
            created_at=_opt_str(row.get("created_at")),
            updated_at=_opt_str(row.get("updated_at")),
            project=Project.from_row(project) if isinstance(project, dict) else None,
            assignee=User.from_row(assignee) if isinstance(assignee, dict) else None,
            task_assignees=tuple(
                TaskAssignee.from_row(item)
                for item in junction or ()
                if isinstance(item, dict)
            )
            if isinstance(junction, list)
            else (),
        )


@dataclass(frozen=True)
class TaskComment:
    id: str
    task_id: str
    user_id: str
    body: str = ""
    created_at: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> TaskComment:
        return cls(
            id=_to_str(row.get("id")),
            task_id=_to_str(row.get("task_id")),
            user_id=_to_str(row.get("user_id")),
            body=_to_str(row.get("body")),
            created_at=_opt_str(row.get("created_at")),
        )


@dataclass(frozen=True)
class ActivityEntry:
    id: str
    task_id: str
    user_id: str
    action: str = ""
    meta: dict[str, Any] = field(default_factory=dict)
    created_at: str | None = None
    user: User | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> ActivityEntry:
        meta = row.get("meta")
        user = row.get("user")
        return cls(
            id=_to_str(row.get("id")),
            task_id=_to_str(row.get("task_id")),
            user_id=_to_str(row.get("user_id")),
            action=_to_str(row.get("action")),
            meta=dict(meta) if isinstance(meta, dict) else {},
            created_at=_opt_str(row.get("created_at")),
            user=User.from_row(user) if isinstance(user, dict) else None,
        )


@dataclass(frozen=True)
class BusinessUnit:
    id: str
    company_id: str | None = None
    name: str = ""

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> BusinessUnit:
        return cls(
            id=_to_str(row.get("id")),
            company_id=_opt_str(row.get("company_id")),
            name=_to_str(row.get("name")),
        )


@dataclass(frozen=True)
class FinanceUpload:
    id: str
    project_id: str
    uploaded_by: str | None = None
    file_name: str = ""
    column_mapping: dict[str, Any] = field(default_factory=dict)
    row_count: int = 0
    version: int = 0
    created_at: str | None = None
    uploader: User | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> FinanceUpload:
        mapping = row.get("column_mapping")
        uploader = row.get("uploader")
        return cls(
            id=_to_str(row.get("id")),
            project_id=_to_str(row.get("project_id")),
            uploaded_by=_opt_str(row.get("uploaded_by")),
            file_name=_to_str(row.get("file_name")),
            column_mapping=dict(mapping) if isinstance(mapping, dict) else {},
            row_count=_to_int(row.get("row_count")),
            version=_to_int(row.get("version")),
            created_at=_opt_str(row.get("created_at")),
            uploader=User.from_row(uploader) if isinstance(uploader, dict) else None,
        )


@dataclass(frozen=True)
class FinanceRecord:
    id: str
    project_id: str
    upload_id: str | None = None
    month: str = ""
    category: str = ""
    amount: float = 0.0

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> FinanceRecord:
        return cls(
            id=_to_str(row.get("id")),
            project_id=_to_str(row.get("project_id")),
            upload_id=_opt_str(row.get("upload_id")),
            month=_to_str(row.get("month")),
            category=_to_str(row.get("category")),
            amount=_to_float(row.get("amount")),
        )


@dataclass(frozen=True)
class UserSession:
    id: str
    user_id: str
    page: str | None = None
    started_at: str | None = None
    last_seen_at: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> UserSession:
        return cls(
            id=_to_str(row.get("id")),
            user_id=_to_str(row.get("user_id")),
            page=_opt_str(row.get("page")),
            started_at=_opt_str(row.get("started_at") or row.get("created_at")),
            last_seen_at=_opt_str(row.get("last_seen_at")),
        )


# Assignee sources in priority order. The first source that yields anything
# wins; later sources are only consulted when earlier ones are empty.
def _junction_ids(task: Task) -> list[str]:
    return [ta.user_id for ta in task.task_assignees if ta.user_id]


def _legacy_ids(task: Task) -> list[str]:
    return [task.assignee_id] if task.assignee_id else []


def _junction_users(task: Task) -> list[User]:
    return [ta.user for ta in task.task_assignees if ta.user is not None]


def _legacy_users(task: Task) -> list[User]:
    return [task.assignee] if task.assignee is not None else []


ASSIGNEE_ID_SOURCES = (_junction_ids, _legacy_ids)
ASSIGNEE_USER_SOURCES = (_junction_users, _legacy_users)


def task_assignee_ids(task: Task) -> list[str]:
    """Assigned user ids, junction set first, legacy single assignee second."""
    for source in ASSIGNEE_ID_SOURCES:
        ids = source(task)
        if ids:
            return ids
    return []


def task_assignees(task: Task) -> list[User]:
    """Assigned users with joined profiles, same priority as the ids.

    A non-empty junction set wins even if none of its rows carry a joined
    user profile.
    """
    for source, id_source in zip(ASSIGNEE_USER_SOURCES, ASSIGNEE_ID_SOURCES):
        if id_source(task):
            return source(task)
    return []


def is_assigned_to(task: Task, user_id: str) -> bool:
    return user_id in task_assignee_ids(task)
