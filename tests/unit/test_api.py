#!/usr/bin/env python3
"""HTTP API routes"""

import asyncio

from aiohttp.test_utils import TestClient, TestServer

from mcp_bridge.api import create_app
from mcp_bridge.catalog import compose_tool_name
from mcp_bridge.config import Settings
from mcp_bridge.models import CONNECTED, DISCONNECTED
from mcp_bridge.store import SessionStore

from tests.unit.fakes import BEARER_TOKENS, ScriptedCompletion, make_chat_client, make_registry, reply, tool_call

URL = "https://mcp.example.com/mcp"
OAUTH_URL = "https://oauth.example.com/mcp"
AUTH_URL = "https://auth.example.com/authorize?state=s1"


def run_api(tmp_path, scenario, completion=None, api_key="sk-test", behaviours=None, restore=False):
    """Run scenario(client, registry) against a test server"""
    registry, store, negotiator = make_registry(tmp_path, behaviours or {OAUTH_URL: {"auth_url": AUTH_URL}})
    chat_client = make_chat_client(registry, completion or ScriptedCompletion(reply("Hi there")), api_key=api_key)
    app = create_app(Settings(), registry, chat_client, restore_on_startup=restore)

    async def main():
        async with TestClient(TestServer(app)) as client:
            return await scenario(client, registry)

    return asyncio.run(main()), store, negotiator


def test_health(tmp_path):
    async def scenario(client, registry):
        resp = await client.get("/api/health")
        return resp.status, await resp.json()

    (status, body), _, _ = run_api(tmp_path, scenario)
    assert status == 200
    assert body["status"] == "ok"


def test_connect_list_and_disconnect(tmp_path):
    async def scenario(client, registry):
        resp = await client.post("/api/mcp/connect", json={"url": URL, "name": "Example"})
        connected = await resp.json()
        listing = await (await client.get("/api/mcp/connections")).json()
        tools = await (await client.get("/api/mcp/tools")).json()
        deleted = await client.delete(f"/api/mcp/connections/{connected['id']}")
        again = await client.delete(f"/api/mcp/connections/{connected['id']}")
        return resp.status, connected, listing, tools, deleted.status, await deleted.json(), again.status

    (status, connected, listing, tools, deleted_status, deleted, again_status), _, _ = run_api(tmp_path, scenario)

    assert status == 200
    assert connected["needsAuth"] is False
    assert connected["name"] == "Example"
    assert [c["id"] for c in listing] == [connected["id"]]
    assert tools[0]["connectionId"] == connected["id"]
    assert tools[0]["tool"]["name"] == "echo"
    assert deleted_status == 200 and deleted == {"success": True}
    assert again_status == 404


def test_connect_requires_url(tmp_path):
    async def scenario(client, registry):
        resp = await client.post("/api/mcp/connect", json={})
        invalid = await client.post("/api/mcp/connect", data="{oops", headers={"Content-Type": "application/json"})
        return resp.status, await resp.json(), invalid.status

    (status, body, invalid_status), _, _ = run_api(tmp_path, scenario)
    assert status == 400
    assert body == {"error": "URL is required"}
    assert invalid_status == 400


def test_oauth_flow(tmp_path):
    async def scenario(client, registry):
        pending = await (await client.post("/api/mcp/connect", json={"url": OAUTH_URL})).json()
        listing = await (await client.get("/api/mcp/connections")).json()
        missing = await client.post("/api/mcp/oauth/callback", json={"connectionId": pending["connectionId"]})
        unknown = await client.post("/api/mcp/oauth/callback", json={"connectionId": "nope", "code": "c"})
        done = await client.post("/api/mcp/oauth/callback",
                                 json={"connectionId": pending["connectionId"], "code": "code-1"})
        return pending, listing, missing.status, unknown.status, done.status, await done.json()

    (pending, listing, missing, unknown, done_status, done), _, negotiator = run_api(tmp_path, scenario)

    assert pending == {"needsAuth": True, "authorizationUrl": AUTH_URL, "connectionId": pending["connectionId"]}
    assert listing[0]["status"] == "pending_auth"
    assert missing == 400
    assert unknown == 404
    assert done_status == 200
    assert done["needsAuth"] is False and done["status"] == CONNECTED
    assert negotiator.last().codes == ["code-1"]


def test_reconnect_route(tmp_path):
    async def scenario(client, registry):
        registry.store.upsert_connection("saved", URL, "saved", DISCONNECTED)
        registry.store.upsert_credentials("saved", tokens=BEARER_TOKENS)
        ok = await client.post("/api/mcp/connections/saved/reconnect")
        missing = await client.post("/api/mcp/connections/unknown/reconnect")
        return await ok.json(), missing.status

    (body, missing_status), _, _ = run_api(tmp_path, scenario)
    assert body == {"id": "saved", "status": CONNECTED}
    assert missing_status == 404


def test_startup_restores_saved_connections(tmp_path):
    store_path = tmp_path / "store.json"

    async def scenario(client, registry):
        return await (await client.get("/api/mcp/connections")).json()

    # Seed the store the registry will load
    seed = SessionStore(store_path)
    seed.upsert_connection("saved", URL, "saved", CONNECTED)
    seed.upsert_credentials("saved", tokens=BEARER_TOKENS)

    listing, _, _ = run_api(tmp_path, scenario, restore=True)
    assert listing[0]["id"] == "saved"
    assert listing[0]["status"] == CONNECTED


def test_chat_config_and_completion(tmp_path):
    async def scenario(client, registry):
        config = await (await client.get("/api/chat/config")).json()
        resp = await client.post("/api/chat/completions", json={"messages": [{"role": "user", "content": "hi"}]})
        bad = await client.post("/api/chat/completions", json={"messages": "hi"})
        return config, resp.status, await resp.json(), bad.status

    (config, status, body, bad_status), _, _ = run_api(tmp_path, scenario)
    assert config == {"configured": True}
    assert status == 200
    assert body["message"] == {"role": "assistant", "content": "Hi there"}
    assert [m["role"] for m in body["messages"]] == ["system", "user", "assistant"]
    assert bad_status == 400


def test_invalid_max_iterations_is_bad_request(tmp_path):
    async def scenario(client, registry):
        results = []
        for value in (0, -2, "5", 1.5, True):
            resp = await client.post("/api/chat/completions", json={
                "messages": [{"role": "user", "content": "hi"}],
                "maxIterations": value,
            })
            results.append((resp.status, await resp.json()))
        return results

    completion = ScriptedCompletion(reply("never sent"))
    results, _, _ = run_api(tmp_path, scenario, completion=completion)
    assert [status for status, _ in results] == [400] * 5
    assert all("maxIterations" in body["error"] for _, body in results)
    assert completion.requests == []


def test_chat_without_api_key(tmp_path):
    async def scenario(client, registry):
        config = await (await client.get("/api/chat/config")).json()
        chat = await client.post("/api/chat/completions", json={"messages": []})
        models = await client.get("/api/chat/models")
        return config, chat.status, models.status

    (config, chat_status, models_status), _, _ = run_api(tmp_path, scenario, api_key=None)
    assert config == {"configured": False}
    assert chat_status == 401
    assert models_status == 401


def test_iteration_bound_returns_transcript(tmp_path):
    async def scenario(client, registry):
        connected = await registry.connect(URL)
        name = compose_tool_name(connected.connection_id, "echo")
        looping.replies[:] = [reply(None, [tool_call("c", name, '{"text": "x"}')])]
        resp = await client.post("/api/chat/completions", json={
            "messages": [{"role": "user", "content": "loop"}],
            "maxIterations": 2,
        })
        return resp.status, await resp.json()

    looping = ScriptedCompletion(reply("unused"))
    (status, body), _, _ = run_api(tmp_path, scenario, completion=looping)
    assert status == 422
    assert "Max iterations (2)" in body["error"]
    assert [m["role"] for m in body["messages"]] == ["system", "user", "assistant", "tool", "assistant"]
