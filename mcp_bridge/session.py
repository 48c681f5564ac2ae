#!/usr/bin/env python3
"""
Provider session: one live MCP ClientSession kept open for a connection.

The SDK transports are async context managers backed by anyio task groups,
which must be entered and exited by the same task. Each session therefore
owns a runner task that enters the transport and the ClientSession, signals
readiness and then waits until it is asked to close.

OAuth runs inline inside the runner. When the provider demands
authorization, the SDK calls our redirect handler (the URL is captured by the
adapter and ``open()`` reports ``AuthorizationRequired``), then awaits our
callback handler. The runner stays suspended there until ``finish_auth()``
delivers the authorization code, after which the same session finishes
initializing.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
from mcp import ClientSession
from mcp.client.auth import OAuthClientProvider, OAuthFlowError
from mcp.shared.exceptions import McpError

from .errors import (
    AuthorizationRequired,
    BridgeError,
    OperationTimeout,
    ProviderProtocolError,
    ProviderUnreachable,
)
from .models import Tool
from .transport import build_transport

logger = logging.getLogger(__name__)


def _unwrap(exc: BaseException) -> BaseException:
    # anyio task groups wrap failures in exception groups
    while isinstance(exc, BaseExceptionGroup) and exc.exceptions:
        exc = exc.exceptions[0]
    return exc


def classify_error(exc: BaseException, url: str) -> BridgeError:
    """Map SDK / transport exceptions to bridge error kinds"""
    exc = _unwrap(exc)
    if isinstance(exc, BridgeError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return OperationTimeout(f"Request to {url} timed out: {exc}")
    if isinstance(exc, OAuthFlowError):
        return AuthorizationRequired(f"OAuth flow failed for {url}: {exc}")
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status == 401:
            return AuthorizationRequired(f"{url} requires authorization (HTTP 401)")
        return ProviderProtocolError(f"{url} answered HTTP {status}")
    if isinstance(exc, (httpx.TransportError, OSError)):
        return ProviderUnreachable(f"Could not reach {url}: {exc}")
    if isinstance(exc, McpError):
        return ProviderProtocolError(f"Protocol error from {url}: {exc}")
    return ProviderProtocolError(f"Unexpected error talking to {url}: {exc}")


def format_call_result(result: Any) -> Dict[str, Any]:
    """Format a CallToolResult as a JSON-serializable dict"""
    response: Dict[str, Any] = {
        "content": [],
        "isError": bool(getattr(result, "isError", False)),
    }

    for content in result.content:
        if hasattr(content, "text"):
            response["content"].append({"type": "text", "text": content.text})
        elif hasattr(content, "data"):
            response["content"].append({
                "type": getattr(content, "type", "image"),
                "data": content.data,
                "mimeType": getattr(content, "mimeType", "image/png"),
            })
        elif hasattr(content, "resource"):
            response["content"].append({
                "type": "resource",
                "resource": {
                    "uri": str(content.resource.uri),
                    "text": getattr(content.resource, "text", None),
                    "blob": getattr(content.resource, "blob", None),
                },
            })
        elif hasattr(content, "model_dump"):
            response["content"].append(content.model_dump(mode="json", exclude_none=True))

    structured = getattr(result, "structuredContent", None)
    if structured:
        response["structuredContent"] = structured

    return response


class ProviderSession:
    """Long-lived MCP session to one provider"""

    def __init__(self, url: str, kind: str, adapter: Any = None, *,
                 connect_timeout: float = 30.0, call_timeout: float = 60.0,
                 close_timeout: float = 5.0, headers: Optional[Dict[str, str]] = None):
        self.url = url
        self.kind = kind
        self.adapter = adapter
        self.connect_timeout = connect_timeout
        self.call_timeout = call_timeout
        self.close_timeout = close_timeout

        self.auth = self._build_auth() if adapter is not None else None
        self._transport = build_transport(kind, url, auth=self.auth, headers=headers)

        self._session: Optional[ClientSession] = None
        self._runner: Optional[asyncio.Task] = None
        self._ready = asyncio.Event()
        self._closing = asyncio.Event()
        self._redirected = asyncio.Event()
        self._authorization_code: Optional[asyncio.Future] = None
        self._termination_callbacks: List[Callable[["ProviderSession"], None]] = []

    def _build_auth(self) -> OAuthClientProvider:
        return OAuthClientProvider(
            server_url=self.url,
            client_metadata=self.adapter.client_metadata,
            storage=self.adapter,
            redirect_handler=self._on_redirect,
            callback_handler=self._wait_for_authorization_code,
        )

    @property
    def is_open(self) -> bool:
        return self._ready.is_set() and self._runner is not None and not self._runner.done()

    def add_termination_callback(self, callback: Callable[["ProviderSession"], None]) -> None:
        """Call back when the runner ends on its own after the session was ready"""
        self._termination_callbacks.append(callback)

    # --------------- Lifecycle ---------------
    async def open(self) -> None:
        """Start the runner and wait until the session is initialized.

        Raises AuthorizationRequired as soon as the provider redirects to an
        authorization URL; the runner then stays suspended until finish_auth().
        """
        if self._runner is None:
            self._runner = asyncio.create_task(self._run(), name=f"mcp-session:{self.url}")
            self._runner.add_done_callback(self._on_runner_done)
        await self._wait_until_ready()

    async def finish_auth(self, authorization_code: str) -> None:
        """Deliver the authorization code to the suspended flow and wait for readiness"""
        if self._runner is None or self._runner.done():
            raise ProviderProtocolError(f"No authorization flow in progress for {self.url}")
        future = self._authorization_future()
        if future.done():
            raise ProviderProtocolError(f"Authorization code already submitted for {self.url}")

        state = await self.adapter.get_state() if self.adapter is not None else None
        self._redirected.clear()
        future.set_result((authorization_code, state))
        logger.info(f"Authorization code delivered for {self.url} ({authorization_code[:10]}...)")
        await self._wait_until_ready()

    async def close(self) -> None:
        """Stop the runner; raises ProviderProtocolError if teardown failed"""
        runner = self._runner
        if runner is None or runner.done():
            return

        self._closing.set()
        if not self._ready.is_set():
            # Still connecting or waiting for an authorization code
            runner.cancel()

        done, _ = await asyncio.wait({runner}, timeout=self.close_timeout)
        if not done:
            logger.warning(f"Session to {self.url} did not close within {self.close_timeout}s, cancelling")
            runner.cancel()
            await asyncio.wait({runner}, timeout=self.close_timeout)

        if not runner.done() or runner.cancelled():
            return
        exc = runner.exception()
        if exc is not None:
            raise ProviderProtocolError(f"Error closing session to {self.url}: {_unwrap(exc)}") from exc

    async def _run(self) -> None:
        try:
            async with self._transport as streams:
                read_stream, write_stream = streams[0], streams[1]
                async with ClientSession(read_stream, write_stream) as session:
                    await session.initialize()
                    self._session = session
                    self._ready.set()
                    logger.debug(f"Session to {self.url} initialized ({self.kind})")
                    await self._closing.wait()
        finally:
            self._session = None

    async def _wait_until_ready(self) -> None:
        runner = self._runner
        ready = asyncio.ensure_future(self._ready.wait())
        redirected = asyncio.ensure_future(self._redirected.wait())
        try:
            await asyncio.wait(
                {runner, ready, redirected},
                timeout=self.connect_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            ready.cancel()
            redirected.cancel()

        if self._ready.is_set() and not runner.done():
            return
        if runner.done():
            raise self._failure()
        if self._redirected.is_set():
            raise AuthorizationRequired(f"Authorization required by {self.url}")
        raise OperationTimeout(f"Timed out after {self.connect_timeout}s opening session to {self.url}")

    def _failure(self) -> BridgeError:
        if self._runner.cancelled():
            return ProviderProtocolError(f"Session to {self.url} was closed")
        exc = self._runner.exception()
        if exc is None:
            return ProviderProtocolError(f"Session to {self.url} ended unexpectedly")
        return classify_error(exc, self.url)

    def _on_runner_done(self, task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Session runner for {self.url} ended: {_unwrap(task.exception())!r}")
        if self._ready.is_set() and not self._closing.is_set():
            logger.warning(f"Session to {self.url} terminated unexpectedly")
            for callback in self._termination_callbacks:
                callback(self)

    # --------------- OAuth handlers ---------------
    def _authorization_future(self) -> asyncio.Future:
        if self._authorization_code is None:
            self._authorization_code = asyncio.get_running_loop().create_future()
        return self._authorization_code

    async def _on_redirect(self, authorization_url: str) -> None:
        await self.adapter.redirect_to_authorization(authorization_url)
        self._redirected.set()

    async def _wait_for_authorization_code(self) -> Tuple[str, Optional[str]]:
        return await self._authorization_future()

    # --------------- Protocol calls ---------------
    def _require_session(self) -> ClientSession:
        if self._session is None or not self.is_open:
            raise ProviderProtocolError(f"Session to {self.url} is not open")
        return self._session

    async def _call(self, coro, action: str) -> Any:
        try:
            return await asyncio.wait_for(coro, timeout=self.call_timeout)
        except asyncio.TimeoutError as e:
            raise OperationTimeout(f"{action} on {self.url} timed out after {self.call_timeout}s") from e
        except BridgeError:
            raise
        except Exception as e:
            raise classify_error(e, self.url) from e

    async def list_tools(self) -> List[Tool]:
        session = self._require_session()
        result = await self._call(session.list_tools(), "list_tools")
        return [
            Tool(name=tool.name, description=tool.description, input_schema=dict(tool.inputSchema or {}))
            for tool in result.tools
        ]

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        session = self._require_session()
        result = await self._call(session.call_tool(name, arguments), f"call_tool {name}")
        return format_call_result(result)
