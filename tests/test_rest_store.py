from __future__ import annotations

import asyncio

import httpx
import pytest
import respx
from httpx import Response

from ops_dashboard.rest_store import RestStore
from ops_dashboard.roles import Principal
from ops_dashboard.store import StoreError

BASE_URL = "http://store.test"


@pytest.fixture
def mock_api():
    with respx.mock(base_url=BASE_URL, assert_all_called=False) as respx_mock:
        yield respx_mock


def _store(**kwargs) -> RestStore:
    kwargs.setdefault("api_key", "anon-key")
    return RestStore(url=BASE_URL, **kwargs)


def test_requires_url(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("OPS_DASHBOARD_STORE_URL", raising=False)
    with pytest.raises(ValueError):
        RestStore()


def test_query_renders_filters_order_and_limit(mock_api: respx.MockRouter):
    route = mock_api.get("/rest/v1/task_assignees").mock(
        return_value=Response(200, json=[{"task_id": "t1", "user_id": "u1"}])
    )

    async def scenario():
        store = _store(access_token="user-jwt")
        rows = await store.query(
            "task_assignees",
            {"task_id": ["t1", "t2"], "user_id": "u1", "removed_at": None, "active": True},
            order=["created_at", "-user_id"],
            limit=5,
        )
        await store.close()
        return rows

    assert asyncio.run(scenario()) == [{"task_id": "t1", "user_id": "u1"}]
    request = route.calls.last.request
    params = request.url.params
    assert params["select"] == "*"
    assert params["task_id"] == 'in.("t1","t2")'
    assert params["user_id"] == "eq.u1"
    assert params["removed_at"] == "is.null"
    assert params["active"] == "eq.true"
    assert params["order"] == "created_at.asc.nullslast,user_id.desc.nullslast"
    assert params["limit"] == "5"
    assert request.headers["apikey"] == "anon-key"
    assert request.headers["authorization"] == "Bearer user-jwt"


def test_rejections_map_to_store_error_codes(mock_api: respx.MockRouter):
    mock_api.post("/rest/v1/task_assignees").mock(
        return_value=Response(409, json={"message": "duplicate key value"})
    )
    mock_api.get("/rest/v1/finance_records").mock(
        return_value=Response(401, json={"msg": "JWT expired"})
    )

    async def scenario():
        store = _store()
        errors = []
        for call in (
            store.insert("task_assignees", {"task_id": "t1", "user_id": "u1"}),
            store.query("finance_records"),
        ):
            try:
                await call
            except StoreError as exc:
                errors.append((exc.code, exc.message))
        health = store.get_health()
        await store.close()
        return errors, health

    errors, health = asyncio.run(scenario())
    assert errors == [
        ("write_rejected", "duplicate key value"),
        ("permission_denied", "JWT expired"),
    ]
    # semantic rejections do not count as transport failures
    assert health["failureCount"] == 0


def test_get_is_retried_once_and_recovery_signals_reconnect(mock_api: respx.MockRouter):
    route = mock_api.get("/rest/v1/projects").mock(
        side_effect=[Response(503, text="upstream down"), Response(200, json=[{"id": "p1"}])]
    )

    async def scenario():
        store = _store()
        reconnects = []
        store.on_reconnect(lambda: reconnects.append(1))
        rows = await store.query("projects")
        health = store.get_health()
        await store.close()
        return rows, reconnects, health

    rows, reconnects, health = asyncio.run(scenario())
    assert rows == [{"id": "p1"}]
    assert route.call_count == 2
    assert reconnects == [1]
    assert health["failureCount"] == 0
    assert health["lastSuccessAt"] is not None


def test_insert_is_not_retried(mock_api: respx.MockRouter):
    route = mock_api.post("/rest/v1/tasks").mock(return_value=Response(503, text="busy"))

    async def scenario():
        store = _store()
        try:
            await store.insert("tasks", {"title": "x", "project_id": "p1"})
        finally:
            health = store.get_health()
            await store.close()
        return health

    with pytest.raises(StoreError) as excinfo:
        asyncio.run(scenario())
    assert excinfo.value.code == "unavailable"
    assert route.call_count == 1


def test_repeated_transport_failure_raises_after_retry(mock_api: respx.MockRouter):
    route = mock_api.get("/rest/v1/tasks").mock(side_effect=httpx.ConnectTimeout)

    async def scenario():
        store = _store()
        with pytest.raises(StoreError) as excinfo:
            await store.query("tasks")
        health = store.get_health()
        await store.close()
        return excinfo.value.code, health

    code, health = asyncio.run(scenario())
    assert code == "timeout"
    assert route.call_count == 2
    assert health["failureCount"] == 2
    assert "ConnectTimeout" in health["lastError"]


def test_update_missing_row_is_not_found(mock_api: respx.MockRouter):
    route = mock_api.patch("/rest/v1/tasks").mock(return_value=Response(200, json=[]))

    async def scenario():
        store = _store()
        try:
            await store.update("tasks", "t9", {"status": "done"})
        finally:
            await store.close()

    with pytest.raises(StoreError) as excinfo:
        asyncio.run(scenario())
    assert excinfo.value.code == "not_found"
    request = route.calls.last.request
    assert request.url.params["id"] == "eq.t9"
    assert request.headers["prefer"] == "return=representation"


def test_delete_where_publishes_removed_rows(mock_api: respx.MockRouter):
    removed = [{"task_id": "t1", "user_id": "u1"}, {"task_id": "t1", "user_id": "u2"}]
    route = mock_api.delete("/rest/v1/task_assignees").mock(
        return_value=Response(200, json=removed)
    )

    async def scenario():
        store = _store()
        events = []
        store.subscribe("task_assignees", events.append)
        count = await store.delete_where("task_assignees", {"task_id": "t1", "user_id": ["u1", "u2"]})
        with pytest.raises(StoreError):
            await store.delete_where("task_assignees", {})
        await store.close()
        return count, events

    count, events = asyncio.run(scenario())
    assert count == 2
    assert [(e.kind, e.record["user_id"]) for e in events] == [("delete", "u1"), ("delete", "u2")]
    params = route.calls.last.request.url.params
    assert params["task_id"] == "eq.t1"
    assert params["user_id"] == 'in.("u1","u2")'
    assert route.call_count == 1


def test_current_principal_reads_role_from_profile(mock_api: respx.MockRouter):
    mock_api.get("/auth/v1/user").mock(return_value=Response(200, json={"id": "u1"}))
    mock_api.get("/rest/v1/users").mock(
        return_value=Response(200, json=[{"id": "u1", "role": "manager"}])
    )

    async def scenario():
        store = _store(access_token="user-jwt")
        seen = []
        store.on_auth_state_change(seen.append)
        first = await store.get_current_principal()
        second = await store.get_current_principal()
        await store.close()
        return first, second, seen

    first, second, seen = asyncio.run(scenario())
    assert first == second == Principal(id="u1", role="manager")
    # listeners only hear about an actual change
    assert seen == [Principal(id="u1", role="manager")]


def test_expired_session_is_anonymous(mock_api: respx.MockRouter, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("OPS_DASHBOARD_ACCESS_TOKEN", raising=False)
    mock_api.get("/auth/v1/user").mock(return_value=Response(403, json={"msg": "bad jwt"}))

    async def scenario():
        anonymous = _store()
        expired = _store(access_token="stale-jwt")
        result = (await anonymous.get_current_principal(), await expired.get_current_principal())
        await anonymous.close()
        await expired.close()
        return result

    assert asyncio.run(scenario()) == (None, None)
