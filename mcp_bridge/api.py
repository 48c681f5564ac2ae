#!/usr/bin/env python3
"""
HTTP API for the MCP bridge

/api/mcp/*   connection management and OAuth completion
/api/chat/*  tool-calling chat completions and model listing
/api/health  liveness
"""

import json
import logging
import time
from typing import Any, Dict

import aiohttp_cors
from aiohttp import web

from .catalog import ToolCatalog
from .chat import ChatOptions, ToolChatClient
from .config import Settings
from .errors import (
    BridgeError,
    ConfigurationError,
    ConnectionNotFound,
    IterationBoundExceeded,
    PendingConnectionNotFound,
)
from .registry import ConnectionRegistry

logger = logging.getLogger(__name__)

REGISTRY_KEY = web.AppKey("registry", ConnectionRegistry)
CATALOG_KEY = web.AppKey("catalog", ToolCatalog)
CHAT_KEY = web.AppKey("chat_client", ToolChatClient)
SETTINGS_KEY = web.AppKey("settings", Settings)

MAX_BODY_SIZE = 50 * 1024 * 1024


async def _read_json(request: web.Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise web.HTTPBadRequest(text=json.dumps({"error": "Invalid JSON body"}), content_type="application/json")
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(text=json.dumps({"error": "JSON object expected"}), content_type="application/json")
    return body


def _bad_request(message: str) -> web.Response:
    return web.json_response({"error": message}, status=400)


# ===== MCP CONNECTIONS =====

async def connect_handler(request):
    """POST /api/mcp/connect - connect to a provider, may require OAuth"""
    body = await _read_json(request)
    url = body.get("url")
    if not url:
        return _bad_request("URL is required")

    result = await request.app[REGISTRY_KEY].connect(url, body.get("name"))
    return web.json_response(result.to_dict())


async def oauth_callback_handler(request):
    """POST /api/mcp/oauth/callback - finish a pending OAuth connection"""
    body = await _read_json(request)
    connection_id = body.get("connectionId")
    code = body.get("code")
    if not connection_id or not code:
        return _bad_request("connectionId and code are required")

    result = await request.app[REGISTRY_KEY].complete_oauth_connection(connection_id, code)
    return web.json_response(result.to_dict())


async def list_connections_handler(request):
    """GET /api/mcp/connections"""
    return web.json_response(request.app[REGISTRY_KEY].connection_views())


async def disconnect_handler(request):
    """DELETE /api/mcp/connections/{id}"""
    connection_id = request.match_info["id"]
    if not await request.app[REGISTRY_KEY].disconnect(connection_id):
        return web.json_response({"error": "Connection not found"}, status=404)
    return web.json_response({"success": True})


async def reconnect_handler(request):
    """POST /api/mcp/connections/{id}/reconnect - token-only reconnect"""
    connection_id = request.match_info["id"]
    status = await request.app[REGISTRY_KEY].reconnect(connection_id)
    return web.json_response({"id": connection_id, "status": status})


async def list_tools_handler(request):
    """GET /api/mcp/tools - flattened catalog of connected providers"""
    entries = request.app[CATALOG_KEY].get_all_tools()
    return web.json_response([entry.to_dict() for entry in entries])


# ===== CHAT =====

async def chat_config_handler(request):
    """GET /api/chat/config"""
    return web.json_response({"configured": request.app[CHAT_KEY].configured})


async def chat_completions_handler(request):
    """POST /api/chat/completions - run the tool loop over the given messages"""
    body = await _read_json(request)
    messages = body.get("messages")
    if not isinstance(messages, list):
        return _bad_request("Messages array is required")

    max_iterations = body.get("maxIterations")
    if max_iterations is not None and (
            not isinstance(max_iterations, int) or isinstance(max_iterations, bool) or max_iterations < 1):
        return _bad_request("maxIterations must be a positive integer")

    chat_client = request.app[CHAT_KEY]
    if not chat_client.configured:
        return web.json_response({"error": "LLM API key not configured"}, status=401)

    options = ChatOptions(
        model=body.get("model"),
        temperature=body.get("temperature"),
        max_tokens=body.get("maxTokens"),
        max_iterations=max_iterations,
    )
    result = await chat_client.chat_with_tool_loop(messages, options)
    return web.json_response({"message": result.final_message, "messages": result.messages})


async def list_models_handler(request):
    """GET /api/chat/models"""
    chat_client = request.app[CHAT_KEY]
    if not chat_client.configured:
        return web.json_response({"error": "LLM API key not configured"}, status=401)
    return web.json_response(await chat_client.list_models())


async def health_handler(request):
    """GET /api/health"""
    return web.json_response({"status": "ok", "timestamp": time.time()})


# ===== APP =====

def _status_for(error: BridgeError) -> int:
    if isinstance(error, (PendingConnectionNotFound, ConnectionNotFound)):
        return 404
    if isinstance(error, ConfigurationError):
        return 401
    if isinstance(error, IterationBoundExceeded):
        return 422
    return 500


@web.middleware
async def error_middleware(request, handler):
    """Map bridge errors to JSON responses"""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except BridgeError as e:
        status = _status_for(e)
        logger.error(f"{request.method} {request.path} failed ({type(e).__name__}): {e}")
        payload: Dict[str, Any] = {"error": str(e)}
        if isinstance(e, IterationBoundExceeded):
            payload["messages"] = e.messages
        return web.json_response(payload, status=status)
    except Exception as e:
        logger.exception(f"{request.method} {request.path} failed: {e}")
        return web.json_response({"error": str(e)}, status=500)


@web.middleware
async def request_logger(request, handler):
    """Log method, path, status and duration of each request"""
    start = time.perf_counter()
    try:
        resp = await handler(request)
    except web.HTTPException as e:
        logger.info(f"HTTP {request.method} {request.path} status={e.status} ms={(time.perf_counter()-start)*1000:.1f}")
        raise
    logger.info(f"HTTP {request.method} {request.path} status={resp.status} ms={(time.perf_counter()-start)*1000:.1f}")
    return resp


async def _on_startup(app: web.Application) -> None:
    settings = app[SETTINGS_KEY]
    registry = app[REGISTRY_KEY]
    registry.store.cleanup_stale_credentials(settings.stale_credentials_age)
    await registry.reconnect_saved_connections()


async def _on_cleanup(app: web.Application) -> None:
    await app[REGISTRY_KEY].close_all()


def create_app(settings: Settings, registry: ConnectionRegistry, chat_client: ToolChatClient,
               restore_on_startup: bool = True) -> web.Application:
    """Create aiohttp application"""
    app = web.Application(middlewares=[request_logger, error_middleware], client_max_size=MAX_BODY_SIZE)
    app[SETTINGS_KEY] = settings
    app[REGISTRY_KEY] = registry
    app[CATALOG_KEY] = chat_client.catalog
    app[CHAT_KEY] = chat_client

    cors = aiohttp_cors.setup(app, defaults={
        settings.cors_origin: aiohttp_cors.ResourceOptions(
            allow_credentials=True,
            expose_headers="*",
            allow_headers="*",
            allow_methods="*",
        )
    })

    cors.add(app.router.add_post("/api/mcp/connect", connect_handler))
    cors.add(app.router.add_post("/api/mcp/oauth/callback", oauth_callback_handler))
    cors.add(app.router.add_get("/api/mcp/connections", list_connections_handler))
    cors.add(app.router.add_delete("/api/mcp/connections/{id}", disconnect_handler))
    cors.add(app.router.add_post("/api/mcp/connections/{id}/reconnect", reconnect_handler))
    cors.add(app.router.add_get("/api/mcp/tools", list_tools_handler))

    cors.add(app.router.add_get("/api/chat/config", chat_config_handler))
    cors.add(app.router.add_post("/api/chat/completions", chat_completions_handler))
    cors.add(app.router.add_get("/api/chat/models", list_models_handler))

    cors.add(app.router.add_get("/api/health", health_handler))

    if restore_on_startup:
        app.on_startup.append(_on_startup)
    app.on_cleanup.append(_on_cleanup)
    return app
