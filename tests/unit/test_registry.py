#!/usr/bin/env python3
"""Connection registry: connect, OAuth completion, recovery and disconnect"""

import asyncio

import pytest

from mcp_bridge.errors import (
    AuthorizationUnavailable,
    ConnectionNotFound,
    PendingConnectionNotFound,
    ProviderProtocolError,
    ProviderUnreachable,
    TransportConstructionFailure,
)
from mcp_bridge.models import CONNECTED, DISCONNECTED, ERROR, PENDING_AUTH, ToolError, ToolOutput
from mcp_bridge.registry import KeyedLocks

from tests.unit.fakes import BEARER_TOKENS, FakeSession, make_registry

URL = "https://mcp.example.com/mcp"
AUTH_URL = "https://auth.example.com/authorize?client_id=abc&state=nonce-1"


def _exclusive(registry):
    live = {c.id for c in registry.get_connections()}
    pending = {p.id for p in registry.get_pending_connections()}
    return not (live & pending)


def test_connect_without_auth(tmp_path):
    registry, store, negotiator = make_registry(tmp_path)

    result = asyncio.run(registry.connect(URL))

    assert result.needs_auth is False
    payload = result.to_dict()
    assert payload["needsAuth"] is False
    assert payload["name"] == "mcp.example.com"
    assert payload["status"] == CONNECTED
    assert payload["tools"][0]["name"] == "echo"
    assert "session" not in payload
    assert store.get_connection(result.connection_id)["status"] == CONNECTED
    assert negotiator.last().is_open


def test_connect_requiring_auth_then_complete(tmp_path):
    registry, store, negotiator = make_registry(tmp_path, {URL: {"auth_url": AUTH_URL}})

    async def scenario():
        pending = await registry.connect(URL, "Example")
        assert pending.to_dict() == {"needsAuth": True, "authorizationUrl": AUTH_URL,
                                     "connectionId": pending.connection_id}
        assert store.get_connection(pending.connection_id)["status"] == PENDING_AUTH
        # URL hand-off is read-once
        assert store.get_credentials(pending.connection_id).get("authorization_url") is None
        assert [p.id for p in registry.get_pending_connections()] == [pending.connection_id]
        assert _exclusive(registry)

        done = await registry.complete_oauth_connection(pending.connection_id, "code-xyz")
        return pending, done

    pending, done = asyncio.run(scenario())

    assert done.needs_auth is False
    assert done.connection["id"] == pending.connection_id
    assert negotiator.last().codes == ["code-xyz"]
    assert registry.get_pending_connections() == []
    assert registry.get_connection(pending.connection_id).status == CONNECTED
    assert store.get_connection(pending.connection_id)["status"] == CONNECTED
    assert _exclusive(registry)


def test_auth_required_without_url_is_fatal(tmp_path):
    registry, store, negotiator = make_registry(tmp_path, {URL: {"auth_url": "none"}})

    with pytest.raises(AuthorizationUnavailable):
        asyncio.run(registry.connect(URL))

    assert negotiator.last().closed
    assert registry.get_pending_connections() == []
    assert store.list_connections() == []


def test_connect_failure_purges_everything(tmp_path):
    registry, store, negotiator = make_registry(
        tmp_path, {URL: {"open_error": ProviderUnreachable("connection refused")}}
    )

    with pytest.raises(ProviderUnreachable):
        asyncio.run(registry.connect(URL))

    assert negotiator.last().closed
    assert registry.get_connections() == []
    assert store.list_connections() == []


def test_connect_when_no_transport_constructible(tmp_path):
    registry, store, _ = make_registry(tmp_path, {URL: TransportConstructionFailure("no transport")})

    with pytest.raises(TransportConstructionFailure):
        asyncio.run(registry.connect(URL))

    assert store.list_connections() == []


def test_complete_unknown_pending_connection(tmp_path):
    registry, _, _ = make_registry(tmp_path)

    with pytest.raises(PendingConnectionNotFound):
        asyncio.run(registry.complete_oauth_connection("missing", "code"))


def test_failed_completion_purges_pending_state(tmp_path):
    registry, store, negotiator = make_registry(
        tmp_path, {URL: {"auth_url": AUTH_URL, "finish_error": ProviderProtocolError("invalid_grant")}}
    )

    async def scenario():
        pending = await registry.connect(URL)
        with pytest.raises(ProviderProtocolError):
            await registry.complete_oauth_connection(pending.connection_id, "bad-code")
        return pending.connection_id

    connection_id = asyncio.run(scenario())

    assert negotiator.last().closed
    assert registry.get_pending_connections() == []
    assert registry.get_connection(connection_id) is None
    assert store.get_connection(connection_id) is None
    assert store.get_credentials(connection_id) is None


def test_recovery_with_missing_tokens(tmp_path):
    registry, store, negotiator = make_registry(tmp_path)
    for connection_id in ("first", "second", "third"):
        store.upsert_connection(connection_id, f"https://{connection_id}.example.com/mcp", connection_id, CONNECTED)
    store.upsert_credentials("first", tokens=BEARER_TOKENS)
    store.upsert_credentials("third", tokens=BEARER_TOKENS)

    statuses = asyncio.run(registry.reconnect_saved_connections())

    assert statuses == {"first": CONNECTED, "second": DISCONNECTED, "third": CONNECTED}
    assert store.get_connection("second")["status"] == DISCONNECTED
    assert sorted(c.id for c in registry.get_connections()) == ["first", "third"]
    assert len(negotiator.sessions) == 2


def test_recovery_failure_is_contained(tmp_path):
    bad_url = "https://down.example.com/mcp"
    registry, store, _ = make_registry(tmp_path, {bad_url: {"open_error": ProviderUnreachable("down")}})
    store.upsert_connection("up", URL, "up", CONNECTED)
    store.upsert_connection("down", bad_url, "down", CONNECTED)
    store.upsert_credentials("up", tokens=BEARER_TOKENS)
    store.upsert_credentials("down", tokens=BEARER_TOKENS)

    statuses = asyncio.run(registry.reconnect_saved_connections())

    assert statuses == {"up": CONNECTED, "down": DISCONNECTED}
    assert store.get_connection("down")["status"] == DISCONNECTED


def test_recovery_never_starts_interactive_flow(tmp_path):
    registry, store, _ = make_registry(tmp_path, {URL: {"auth_url": AUTH_URL}})
    store.upsert_connection("expired", URL, "expired", CONNECTED)
    store.upsert_credentials("expired", tokens=BEARER_TOKENS)

    statuses = asyncio.run(registry.reconnect_saved_connections())

    assert statuses == {"expired": DISCONNECTED}
    assert registry.get_pending_connections() == []
    assert store.get_credentials("expired").get("authorization_url") is None


def test_reconnect_single_connection(tmp_path):
    registry, store, _ = make_registry(tmp_path)
    store.upsert_connection("saved", URL, "saved", DISCONNECTED)
    store.upsert_credentials("saved", tokens=BEARER_TOKENS)

    assert asyncio.run(registry.reconnect("saved")) == CONNECTED
    assert registry.get_connection("saved").status == CONNECTED

    with pytest.raises(ConnectionNotFound):
        asyncio.run(registry.reconnect("unknown"))


def test_disconnect_unknown_id_has_no_side_effects(tmp_path):
    registry, store, _ = make_registry(tmp_path)
    store.upsert_credentials("orphan", client_info={"client_id": "abc"})

    assert asyncio.run(registry.disconnect("orphan")) is False
    assert store.get_credentials("orphan") is not None
    assert len(registry._locks) == 0


def test_disconnect_live_and_pending(tmp_path):
    other = "https://oauth.example.com/mcp"
    registry, store, negotiator = make_registry(
        tmp_path, {other: {"auth_url": AUTH_URL}, URL: {"close_error": ProviderProtocolError("boom")}}
    )

    async def scenario():
        live = await registry.connect(URL)
        pending = await registry.connect(other)
        assert await registry.disconnect(live.connection_id) is True
        assert await registry.disconnect(pending.connection_id) is True
        assert await registry.disconnect(live.connection_id) is False
        return live.connection_id, pending.connection_id

    live_id, pending_id = asyncio.run(scenario())

    assert all(session.closed for session in negotiator.sessions)
    assert registry.get_connections() == []
    assert registry.get_pending_connections() == []
    for connection_id in (live_id, pending_id):
        assert store.get_connection(connection_id) is None
        assert store.get_credentials(connection_id) is None


def test_disconnect_saved_offline_connection(tmp_path):
    registry, store, _ = make_registry(tmp_path)
    store.upsert_connection("offline", URL, "offline", DISCONNECTED)

    assert asyncio.run(registry.disconnect("offline")) is True
    assert store.get_connection("offline") is None


def test_call_tool_outcomes(tmp_path):
    broken = "https://broken.example.com/mcp"
    registry, _, _ = make_registry(tmp_path, {broken: {"call_error": ProviderUnreachable("reset by peer")}})

    async def scenario():
        ok = await registry.connect(URL)
        bad = await registry.connect(broken)
        return (
            await registry.call_tool(ok.connection_id, "echo", {"text": "hi"}),
            await registry.call_tool(bad.connection_id, "echo", {}),
            await registry.call_tool("missing", "echo", {}),
        )

    success, failure, missing = asyncio.run(scenario())

    assert isinstance(success, ToolOutput)
    assert success.content["content"][0]["type"] == "text"
    assert isinstance(failure, ToolError) and "reset by peer" in failure.error
    assert isinstance(missing, ToolError)


def test_session_termination_marks_error(tmp_path):
    registry, store, negotiator = make_registry(tmp_path)

    result = asyncio.run(registry.connect(URL))
    negotiator.last().terminate()

    assert registry.get_connection(result.connection_id).status == ERROR
    assert store.get_connection(result.connection_id)["status"] == ERROR


def test_close_all_keeps_saved_rows(tmp_path):
    registry, store, negotiator = make_registry(tmp_path)

    async def scenario():
        result = await registry.connect(URL)
        await registry.close_all()
        return result.connection_id

    connection_id = asyncio.run(scenario())

    assert negotiator.last().closed
    assert registry.get_connections() == []
    assert store.get_connection(connection_id)["status"] == CONNECTED


def test_connection_views_include_offline_rows(tmp_path):
    registry, store, _ = make_registry(tmp_path)
    store.upsert_connection("offline", URL, "offline", DISCONNECTED)

    result = asyncio.run(registry.connect(URL))
    views = {view["id"]: view for view in registry.connection_views()}

    assert views[result.connection_id]["status"] == CONNECTED
    assert views["offline"] == {"id": "offline", "url": URL, "name": "offline", "status": DISCONNECTED, "tools": []}


def test_keyed_locks_serialize_same_key():
    locks = KeyedLocks()
    order = []

    async def worker(name, delay):
        async with locks.hold("conn"):
            order.append(f"{name}-start")
            await asyncio.sleep(delay)
            order.append(f"{name}-end")

    async def scenario():
        await asyncio.gather(worker("a", 0.02), worker("b", 0))

    asyncio.run(scenario())

    assert order == ["a-start", "a-end", "b-start", "b-end"]
    assert len(locks) == 0
