"""
Notification collaborator boundary.

Delivery itself (chat messages, push) lives outside this package. Callers
hand an event to a Notifier through ``fire_notification``, which detaches the
call so a slow or failing notifier never holds up the write that caused it.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, Protocol

import httpx

from .background import DetachedTasks

logger = logging.getLogger(__name__)

NOTIFICATION_EVENTS = ("task_created", "task_assigned", "comment_added")
COMMENT_PREVIEW_CHARS = 200
WEBHOOK_TIMEOUT_SECONDS = float(os.getenv("OPS_DASHBOARD_WEBHOOK_TIMEOUT_SECONDS", "10"))


class Notifier(Protocol):
    async def notify(
        self,
        event: str,
        subject_id: str,
        actor_id: str,
        recipients: Sequence[str] | None = None,
        **context: Any,
    ) -> None: ...


def build_notification_message(
    event: str,
    task_title: str,
    actor_name: str,
    project_name: str | None = None,
    comment_body: str | None = None,
) -> str:
    """Human-readable chat message for a task event."""
    project = f" in *{project_name}*" if project_name else ""
    if event == "task_created":
        return f"📋 *New Task Created*\n\n*{task_title}*{project}\n\nCreated by {actor_name}"
    if event == "task_assigned":
        return f"👤 *Task Assigned to You*\n\n*{task_title}*{project}\n\nAssigned by {actor_name}"
    if event == "comment_added":
        preview = (comment_body or "")[:COMMENT_PREVIEW_CHARS]
        return f'💬 *New Comment*\n\nOn task: *{task_title}*{project}\n\n{actor_name}: "{preview}"'
    return f"Notification: {event} on {task_title}"


class LoggingNotifier:
    """Default notifier: logs each message and keeps it for inspection."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []

    async def notify(
        self,
        event: str,
        subject_id: str,
        actor_id: str,
        recipients: Sequence[str] | None = None,
        **context: Any,
    ) -> None:
        message = build_notification_message(
            event,
            context.get("task_title", ""),
            context.get("actor_name", actor_id),
            context.get("project_name"),
            context.get("comment_body"),
        )
        self.sent.append(
            {
                "event": event,
                "subject_id": subject_id,
                "actor_id": actor_id,
                "recipients": list(recipients or []),
                "message": message,
            }
        )
        logger.info(
            "Notification %s for %s -> %d recipient(s)",
            event,
            subject_id,
            len(recipients or []),
        )


class WebhookNotifier:
    """POSTs events to an HTTP endpoint that performs delivery."""

    def __init__(
        self,
        url: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = WEBHOOK_TIMEOUT_SECONDS,
    ):
        self._url = url or os.getenv("OPS_DASHBOARD_NOTIFY_URL", "")
        if not self._url:
            raise ValueError("OPS_DASHBOARD_NOTIFY_URL must be set for the webhook notifier")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def notify(
        self,
        event: str,
        subject_id: str,
        actor_id: str,
        recipients: Sequence[str] | None = None,
        **context: Any,
    ) -> None:
        body = {
            "event": event,
            "task_id": subject_id,
            "task_title": context.get("task_title", ""),
            "project_name": context.get("project_name"),
            "actor_id": actor_id,
            "actor_name": context.get("actor_name", actor_id),
            "comment_body": context.get("comment_body"),
            "assignee_ids": list(recipients) if recipients is not None else None,
        }
        response = await self._client.post(self._url, json=body)
        response.raise_for_status()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def notifier_from_env() -> Notifier:
    if os.getenv("OPS_DASHBOARD_NOTIFY_URL"):
        return WebhookNotifier()
    return LoggingNotifier()


ContextResolver = Callable[[], Awaitable[dict[str, Any]]]


async def _deliver(
    notifier: Notifier,
    event: str,
    subject_id: str,
    actor_id: str,
    recipients: Sequence[str] | None,
    resolve: ContextResolver | None,
    context: dict[str, Any],
) -> None:
    if resolve is not None:
        context = {**await resolve(), **context}
    await notifier.notify(event, subject_id, actor_id, recipients, **context)


def fire_notification(
    background: DetachedTasks,
    notifier: Notifier,
    event: str,
    subject_id: str,
    actor_id: str,
    recipients: Sequence[str] | None = None,
    resolve: ContextResolver | None = None,
    **context: Any,
) -> asyncio.Task[Any] | None:
    """Schedule a notification without waiting for it.

    ``resolve`` runs inside the detached task, so lookups needed only for the
    message (project or actor names) never delay the caller. Returns None when
    there is nobody to notify.
    """
    if recipients is not None and not recipients:
        logger.debug("notification_skipped event=%s subject=%s", event, subject_id)
        return None
    return background.spawn(
        _deliver(notifier, event, subject_id, actor_id, recipients, resolve, context),
        name=f"notify:{event}:{subject_id}",
    )
