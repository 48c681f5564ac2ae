#!/usr/bin/env python3
"""
Connection Registry

Authoritative map of connection id -> live connection, plus the map of
pending connections that wait for an OAuth authorization code. Every
operation that creates, promotes, reconnects or removes an id runs under that
id's lock; different ids never block each other.
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

from .errors import (
    AuthorizationRequired,
    AuthorizationUnavailable,
    BridgeError,
    ConnectionNotFound,
    PendingConnectionNotFound,
    ProviderProtocolError,
)
from .models import (
    CONNECTED,
    DISCONNECTED,
    ERROR,
    PENDING_AUTH,
    ConnectResult,
    Connection,
    PendingConnection,
    Tool,
    ToolCallOutcome,
    ToolError,
    ToolOutput,
)
from .oauth import AuthorizationFlowAdapter, StoredAuthorizationAdapter
from .store import SessionStore
from .transport import TransportNegotiator

logger = logging.getLogger(__name__)


class KeyedLocks:
    """Per-key asyncio locks, dropped once nobody holds or waits on them"""

    def __init__(self):
        self._locks: Dict[str, list] = {}  # key -> [lock, holders]

    @asynccontextmanager
    async def hold(self, key: str):
        entry = self._locks.setdefault(key, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


class ConnectionRegistry:
    """Owns every provider connection of the process"""

    def __init__(self, store: SessionStore, negotiator: Optional[TransportNegotiator] = None,
                 redirect_url: str = "http://localhost:5173/oauth/callback",
                 client_name: str = "MCP Bridge",
                 adapter_factory: Optional[Callable[[str], AuthorizationFlowAdapter]] = None):
        self.store = store
        self.negotiator = negotiator or TransportNegotiator()
        self.redirect_url = redirect_url
        self.client_name = client_name
        self._adapter_factory = adapter_factory
        self._connections: Dict[str, Connection] = {}
        self._pending: Dict[str, PendingConnection] = {}
        self._locks = KeyedLocks()

    @classmethod
    def from_settings(cls, settings, store: Optional[SessionStore] = None) -> "ConnectionRegistry":
        return cls(
            store or SessionStore(settings.store_path),
            negotiator=TransportNegotiator(
                connect_timeout=settings.connect_timeout,
                call_timeout=settings.call_timeout,
                close_timeout=settings.close_timeout,
            ),
            redirect_url=settings.redirect_url,
            client_name=settings.client_name,
        )

    def _adapter_for(self, connection_id: str) -> AuthorizationFlowAdapter:
        if self._adapter_factory is not None:
            return self._adapter_factory(connection_id)
        return StoredAuthorizationAdapter(self.store, connection_id, self.redirect_url, self.client_name)

    # --------------- Connect / OAuth completion ---------------
    async def connect(self, url: str, name: Optional[str] = None) -> ConnectResult:
        """Connect to a provider; reports needs_auth when OAuth must be completed first"""
        connection_id = str(uuid.uuid4())
        name = name or urlparse(url).hostname or url
        adapter = self._adapter_for(connection_id)
        logger.info(f"Connecting to {url} as {name} ({connection_id})")

        async with self._locks.hold(connection_id):
            session = None
            try:
                session = self.negotiator.negotiate(url, adapter)
                await session.open()
                tools = await session.list_tools()
            except AuthorizationRequired as e:
                authorization_url = await adapter.take_authorization_url()
                if authorization_url and session is not None:
                    self._pending[connection_id] = PendingConnection(connection_id, url, name, session, adapter)
                    self.store.upsert_connection(connection_id, url, name, PENDING_AUTH)
                    logger.info(f"OAuth required for {name} ({connection_id})")
                    return ConnectResult.pending(connection_id, authorization_url)
                await self._discard(connection_id, session)
                raise AuthorizationUnavailable(
                    f"{url} requires authorization but no authorization URL was provided"
                ) from e
            except BridgeError as e:
                logger.error(f"Failed to connect to {url}: {e}")
                await self._discard(connection_id, session)
                raise
            except Exception as e:
                logger.exception(f"Unexpected error connecting to {url}: {e}")
                await self._discard(connection_id, session)
                raise ProviderProtocolError(f"Failed to connect to {url}: {e}") from e

            connection = self._register(connection_id, url, name, session, tools)
            logger.info(f"Connected to {name} with {len(tools)} tools")
            return ConnectResult.connected(connection)

    async def complete_oauth_connection(self, connection_id: str, authorization_code: str) -> ConnectResult:
        """Finish a pending OAuth flow with the code from the provider's redirect"""
        async with self._locks.hold(connection_id):
            pending = self._pending.get(connection_id)
            if pending is None:
                raise PendingConnectionNotFound(f"No pending connection found for ID: {connection_id}")

            try:
                await pending.session.finish_auth(authorization_code)
                tools = await pending.session.list_tools()
            except Exception as e:
                logger.error(f"OAuth completion failed for {pending.name} ({connection_id}): {e}")
                self._pending.pop(connection_id, None)
                await self._discard(connection_id, pending.session)
                if isinstance(e, BridgeError):
                    raise
                raise ProviderProtocolError(f"OAuth completion failed for {pending.url}: {e}") from e

            connection = self._register(connection_id, pending.url, pending.name, pending.session, tools)
            logger.info(f"OAuth completed for {pending.name}, {len(tools)} tools available")
            return ConnectResult.connected(connection)

    # --------------- Reconnection ---------------
    async def reconnect_saved_connections(self) -> Dict[str, str]:
        """Token-only reconnect of every saved row; never raises"""
        rows = self.store.list_connections()
        if not rows:
            return {}

        logger.info(f"Restoring {len(rows)} saved connections")
        results = await asyncio.gather(*(self._restore(row) for row in rows), return_exceptions=True)

        statuses: Dict[str, str] = {}
        for row, result in zip(rows, results):
            if isinstance(result, BaseException):
                logger.error(f"Restoring {row['id']} failed: {result}")
                self.store.update_status(row["id"], DISCONNECTED)
                statuses[row["id"]] = DISCONNECTED
            else:
                statuses[row["id"]] = result
        restored = sum(1 for status in statuses.values() if status == CONNECTED)
        logger.info(f"Restored {restored}/{len(rows)} connections")
        return statuses

    async def reconnect(self, connection_id: str) -> str:
        """Token-only reconnect of one saved connection"""
        async with self._locks.hold(connection_id):
            row = self.store.get_connection(connection_id)
            if row is None:
                raise ConnectionNotFound(f"Connection {connection_id} not found")
            return await self._reconnect_row(row)

    async def _restore(self, row: Dict[str, Any]) -> str:
        async with self._locks.hold(row["id"]):
            return await self._reconnect_row(row)

    async def _reconnect_row(self, row: Dict[str, Any]) -> str:
        connection_id, url = row["id"], row["url"]
        name = row.get("name") or urlparse(url).hostname or url

        # Drop whatever is live for this id; reconnect builds a fresh session
        for stale in (self._connections.pop(connection_id, None), self._pending.pop(connection_id, None)):
            if stale is not None:
                await self._close_quietly(stale.session)

        adapter = self._adapter_for(connection_id)
        if await adapter.get_tokens() is None:
            logger.info(f"No saved tokens for {name} ({connection_id}), marking disconnected")
            self.store.update_status(connection_id, DISCONNECTED)
            return DISCONNECTED

        session = None
        try:
            session = self.negotiator.negotiate(url, adapter)
            await session.open()
            tools = await session.list_tools()
        except Exception as e:
            logger.warning(f"Reconnect failed for {name} ({connection_id}): {e}")
            if session is not None:
                await self._close_quietly(session)
            # A fresh authorization flow may have captured a URL; nobody will use it
            await adapter.take_authorization_url()
            self.store.update_status(connection_id, DISCONNECTED)
            return DISCONNECTED

        self._register(connection_id, url, name, session, tools)
        logger.info(f"Reconnected to {name} with {len(tools)} tools")
        return CONNECTED

    # --------------- Disconnect / shutdown ---------------
    async def disconnect(self, connection_id: str) -> bool:
        """Remove a live, pending or saved connection; False if the id is unknown"""
        async with self._locks.hold(connection_id):
            connection = self._connections.pop(connection_id, None)
            pending = self._pending.pop(connection_id, None)
            if connection is None and pending is None and self.store.get_connection(connection_id) is None:
                return False

            for entry in (connection, pending):
                if entry is not None:
                    await self._close_quietly(entry.session)
            self.store.delete_credentials(connection_id)
            self.store.delete_connection(connection_id)
            logger.info(f"Disconnected {connection_id}")
            return True

    async def close_all(self) -> None:
        """Close every session; saved rows stay so they are restored on next start"""
        sessions = [c.session for c in self._connections.values()] + [p.session for p in self._pending.values()]
        self._connections.clear()
        self._pending.clear()
        if sessions:
            logger.info(f"Closing {len(sessions)} provider sessions")
            await asyncio.gather(*(self._close_quietly(session) for session in sessions))

    # --------------- Queries ---------------
    def get_connections(self) -> List[Connection]:
        return list(self._connections.values())

    def get_pending_connections(self) -> List[PendingConnection]:
        return list(self._pending.values())

    def get_connection(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def connection_views(self) -> List[Dict[str, Any]]:
        """Public views of live, pending and saved-but-offline connections"""
        views = [c.public_view() for c in self._connections.values()]
        views.extend(p.public_view() for p in self._pending.values())
        for row in self.store.list_connections():
            if row["id"] not in self._connections and row["id"] not in self._pending:
                views.append({
                    "id": row["id"],
                    "url": row["url"],
                    "name": row.get("name"),
                    "status": row.get("status", DISCONNECTED),
                    "tools": [],
                })
        return views

    # --------------- Tool calls ---------------
    async def call_tool(self, connection_id: str, tool_name: str, arguments: Dict[str, Any]) -> ToolCallOutcome:
        """Call a tool on a live connection; failures come back as ToolError"""
        connection = self._connections.get(connection_id)
        if connection is None or connection.status != CONNECTED:
            return ToolError(f"Connection {connection_id} not found or not connected")

        logger.info(f"Calling {tool_name} on {connection.name}")
        try:
            content = await connection.session.call_tool(tool_name, arguments)
        except BridgeError as e:
            logger.error(f"Error calling tool {tool_name} on {connection.name}: {e}")
            return ToolError(str(e))
        except Exception as e:
            logger.exception(f"Error calling tool {tool_name} on {connection.name}: {e}")
            return ToolError(f"Tool {tool_name} failed: {e}")
        return ToolOutput(content)

    # --------------- Internal helpers ---------------
    def _register(self, connection_id: str, url: str, name: str, session: Any, tools: List[Tool]) -> Connection:
        connection = Connection(connection_id, url, name, CONNECTED, tools, session)
        self._pending.pop(connection_id, None)
        self._connections[connection_id] = connection
        self.store.upsert_connection(connection_id, url, name, CONNECTED)
        session.add_termination_callback(lambda s: self._on_session_terminated(connection_id, s))
        return connection

    def _on_session_terminated(self, connection_id: str, session: Any) -> None:
        connection = self._connections.get(connection_id)
        if connection is None or connection.session is not session or connection.status != CONNECTED:
            return
        logger.warning(f"Connection {connection.name} ({connection_id}) lost its session")
        connection.status = ERROR
        self.store.update_status(connection_id, ERROR)

    async def _close_quietly(self, session: Any) -> None:
        try:
            await session.close()
        except Exception as e:
            logger.warning(f"Error closing session to {getattr(session, 'url', '?')}: {e}")

    async def _discard(self, connection_id: str, session: Any) -> None:
        """Failed attempt: close the session and purge everything persisted for the id"""
        if session is not None:
            await self._close_quietly(session)
        self.store.delete_credentials(connection_id)
        self.store.delete_connection(connection_id)
