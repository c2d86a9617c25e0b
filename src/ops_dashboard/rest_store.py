"""
PostgREST-dialect store client.

Talks to a hosted Postgres REST gateway (``/rest/v1/<table>``) and its auth
endpoint (``/auth/v1/user``) over a shared httpx.AsyncClient. Transport
failures are retried once; semantic rejections (4xx) are raised immediately.

Realtime transport is not implemented here: change events are relayed to local
subscribers for writes issued through this client, and the cache's staleness
windows cover writes made elsewhere.
"""

from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import Callable
from typing import Any

import httpx

from .roles import Principal
from .store import (
    ChangeCallback,
    ChangeEvent,
    ChangeFanout,
    Filters,
    Listeners,
    Ordering,
    Row,
    StoreError,
    SubscriptionHandle,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = float(os.getenv("OPS_DASHBOARD_STORE_TIMEOUT_SECONDS", "15"))


def _format_filter(value: Any) -> str:
    if value is None:
        return "is.null"
    if isinstance(value, bool):
        return f"eq.{str(value).lower()}"
    if isinstance(value, (list, tuple, set, frozenset)):
        items = ",".join(json.dumps(str(v)) for v in value)
        return f"in.({items})"
    return f"eq.{value}"


def _format_order(order: Ordering) -> str:
    parts = []
    for spec in order:
        if spec.startswith("-"):
            parts.append(f"{spec[1:]}.desc.nullslast")
        else:
            parts.append(f"{spec}.asc.nullslast")
    return ",".join(parts)


class RestStore:
    """DataStore over a PostgREST-compatible HTTP API."""

    def __init__(
        self,
        url: str | None = None,
        api_key: str | None = None,
        access_token: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self._url = (url or os.getenv("OPS_DASHBOARD_STORE_URL", "")).rstrip("/")
        self._api_key = api_key or os.getenv("OPS_DASHBOARD_STORE_KEY", "")
        self._access_token = access_token or os.getenv("OPS_DASHBOARD_ACCESS_TOKEN")
        if not self._url:
            raise ValueError("OPS_DASHBOARD_STORE_URL must be set for the rest store")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=self._url, timeout=timeout_seconds)

        self._fanout = ChangeFanout()
        self._auth_listeners = Listeners()
        self._reconnect_listeners = Listeners()
        self._principal: Principal | None = None

        self._failure_count = 0
        self._last_error: str | None = None
        self._last_failure_at: float | None = None
        self._last_success_at: float | None = None

    def _headers(self, prefer: str | None = None) -> dict[str, str]:
        headers = {"apikey": self._api_key}
        token = self._access_token or self._api_key
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _record_failure(self, exc: Exception) -> None:
        self._failure_count += 1
        self._last_failure_at = time.time()
        self._last_error = f"{exc.__class__.__name__}: {exc}"
        logger.warning("Store request failed (%s): %s", exc.__class__.__name__, exc)

    def _record_success(self) -> None:
        was_failing = self._failure_count > 0
        self._failure_count = 0
        self._last_error = None
        self._last_success_at = time.time()
        if was_failing:
            # Events may have been missed while the backend was unreachable.
            logger.info("Store reachable again, signalling reconnect")
            self._reconnect_listeners.fire()

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.status_code < 400:
            return
        try:
            body = response.json()
            message = body.get("message") or body.get("msg") or response.text
        except (ValueError, AttributeError):
            message = response.text
        if response.status_code in (401, 403):
            raise StoreError("permission_denied", message)
        if response.status_code == 404:
            raise StoreError("not_found", message)
        if response.status_code in (400, 409, 422):
            raise StoreError("write_rejected", message)
        raise StoreError("unavailable", f"HTTP {response.status_code}: {message}")

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        json_body: Any = None,
        prefer: str | None = None,
    ) -> Any:
        # POST is never retried.
        attempts = 1 if method == "POST" else 2
        for attempt in range(attempts):
            try:
                response = await self._client.request(
                    method,
                    path,
                    params=params,
                    json=json_body,
                    headers=self._headers(prefer),
                )
                self._raise_for_status(response)
                self._record_success()
                if not response.content:
                    return None
                return response.json()
            except StoreError as exc:
                if not exc.transient:
                    # Semantic rejections are not transport failures.
                    raise
                self._record_failure(exc)
                if attempt == attempts - 1:
                    raise
            except httpx.TimeoutException as exc:
                self._record_failure(exc)
                if attempt == attempts - 1:
                    raise StoreError("timeout", f"{method} {path} timed out") from exc
            except httpx.HTTPError as exc:
                self._record_failure(exc)
                if attempt == attempts - 1:
                    raise StoreError("unavailable", f"{method} {path} failed: {exc}") from exc
        raise StoreError("unavailable", f"{method} {path} failed")

    async def query(
        self,
        table: str,
        filters: Filters | None = None,
        order: Ordering | None = None,
        limit: int | None = None,
    ) -> list[Row]:
        params = {"select": "*"}
        for column, value in (filters or {}).items():
            params[column] = _format_filter(value)
        if order:
            params["order"] = _format_order(order)
        if limit is not None and limit > 0:
            params["limit"] = str(limit)
        result = await self._request("GET", f"/rest/v1/{table}", params=params)
        return list(result or [])

    async def insert(self, table: str, rows: Row | list[Row]) -> Row | list[Row]:
        # A list body is inserted in a single statement, all or nothing.
        result = await self._request(
            "POST",
            f"/rest/v1/{table}",
            json_body=rows,
            prefer="return=representation",
        )
        created = list(result or [])
        for row in created:
            self._fanout.publish(ChangeEvent("insert", table, row))
        if isinstance(rows, list):
            return created
        if not created:
            raise StoreError("write_rejected", f"{table}: insert returned no row")
        return created[0]

    async def update(self, table: str, record_id: str, patch: Row) -> Row:
        result = await self._request(
            "PATCH",
            f"/rest/v1/{table}",
            params={"id": f"eq.{record_id}"},
            json_body=patch,
            prefer="return=representation",
        )
        updated = list(result or [])
        if not updated:
            raise StoreError("not_found", f"{table}: no row with id {record_id}")
        self._fanout.publish(ChangeEvent("update", table, updated[0]))
        return updated[0]

    async def delete(self, table: str, record_id: str) -> None:
        await self.delete_where(table, {"id": record_id})

    async def delete_where(self, table: str, filters: Filters) -> int:
        if not filters:
            raise StoreError("invalid_request", f"{table}: refusing unfiltered delete")
        result = await self._request(
            "DELETE",
            f"/rest/v1/{table}",
            params={column: _format_filter(value) for column, value in filters.items()},
            prefer="return=representation",
        )
        removed = list(result or [])
        for row in removed:
            self._fanout.publish(ChangeEvent("delete", table, row))
        return len(removed)

    def subscribe(self, table: str, callback: ChangeCallback) -> SubscriptionHandle:
        return self._fanout.subscribe(table, callback)

    def unsubscribe(self, handle: SubscriptionHandle) -> None:
        self._fanout.unsubscribe(handle)

    async def get_current_principal(self) -> Principal | None:
        if not self._access_token:
            return None
        try:
            auth_user = await self._request("GET", "/auth/v1/user")
        except StoreError as exc:
            if exc.code == "permission_denied":
                return None
            raise
        user_id = (auth_user or {}).get("id")
        if not user_id:
            return None
        rows = await self.query("users", {"id": user_id}, limit=1)
        role = rows[0].get("role") if rows else None
        principal = Principal(id=str(user_id), role=str(role or "staff"))
        if principal != self._principal:
            self._principal = principal
            self._auth_listeners.fire(principal)
        return principal

    def set_access_token(self, token: str | None) -> None:
        """Swap the session token; listeners see the principal change."""
        self._access_token = token
        self._principal = None
        self._auth_listeners.fire(None)

    def on_auth_state_change(
        self, callback: Callable[[Principal | None], None]
    ) -> Callable[[], None]:
        return self._auth_listeners.add(callback)

    def on_reconnect(self, callback: Callable[[], None]) -> Callable[[], None]:
        return self._reconnect_listeners.add(callback)

    def get_health(self) -> dict[str, Any]:
        return {
            "backend": "rest",
            "url": self._url,
            "hasAccessToken": self._access_token is not None,
            "failureCount": self._failure_count,
            "lastError": self._last_error,
            "lastFailureAt": self._last_failure_at,
            "lastSuccessAt": self._last_success_at,
            "subscriptions": self._fanout.active_count(),
        }

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
