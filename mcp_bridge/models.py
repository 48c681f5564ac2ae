#!/usr/bin/env python3
"""
Data model shared by the registry, the catalog and the chat loop.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

# Connection status values
CONNECTED = "connected"
DISCONNECTED = "disconnected"
ERROR = "error"
PENDING_AUTH = "pending_auth"

CONNECTION_STATUSES = (CONNECTED, DISCONNECTED, ERROR, PENDING_AUTH)


@dataclass(frozen=True)
class Tool:
    """Tool descriptor as listed by a provider"""
    name: str
    description: Optional[str] = None
    input_schema: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"name": self.name, "inputSchema": self.input_schema}
        if self.description is not None:
            data["description"] = self.description
        return data


@dataclass
class Connection:
    """Live connection to one provider. The session is never exposed publicly."""
    id: str
    url: str
    name: str
    status: str
    tools: List[Tool]
    session: Any = field(repr=False)

    def public_view(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "name": self.name,
            "status": self.status,
            "tools": [tool.to_dict() for tool in self.tools],
        }


@dataclass
class PendingConnection:
    """Half-open connection blocked on an OAuth authorization code"""
    id: str
    url: str
    name: str
    session: Any = field(repr=False)
    adapter: Any = field(repr=False)

    def public_view(self) -> Dict[str, Any]:
        return {"id": self.id, "url": self.url, "name": self.name, "status": PENDING_AUTH}


@dataclass
class ConnectResult:
    """Outcome of connect() / complete_oauth_connection()"""
    needs_auth: bool
    connection: Optional[Dict[str, Any]] = None
    authorization_url: Optional[str] = None
    connection_id: Optional[str] = None

    @classmethod
    def connected(cls, connection: Connection) -> "ConnectResult":
        return cls(needs_auth=False, connection=connection.public_view(), connection_id=connection.id)

    @classmethod
    def pending(cls, connection_id: str, authorization_url: str) -> "ConnectResult":
        return cls(needs_auth=True, authorization_url=authorization_url, connection_id=connection_id)

    def to_dict(self) -> Dict[str, Any]:
        if self.needs_auth:
            return {
                "needsAuth": True,
                "authorizationUrl": self.authorization_url,
                "connectionId": self.connection_id,
            }
        return {"needsAuth": False, **(self.connection or {})}


@dataclass(frozen=True)
class CatalogEntry:
    """One tool of the flattened catalog, tagged with its owner"""
    connection_id: str
    connection_name: str
    tool: Tool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connectionId": self.connection_id,
            "connectionName": self.connection_name,
            "tool": self.tool.to_dict(),
        }


@dataclass(frozen=True)
class ToolOutput:
    """Successful provider call; content is the formatted CallToolResult"""
    content: Dict[str, Any]


@dataclass(frozen=True)
class ToolError:
    """Failed provider call, reported back to the model as tool output"""
    error: str


ToolCallOutcome = Union[ToolOutput, ToolError]


@dataclass(frozen=True)
class ToolResult:
    """Result of one executed tool call, keyed by the model's call id"""
    tool_call_id: str
    name: str
    output: str


@dataclass
class ChatTurn:
    """One model reply plus the results of any tool calls it requested"""
    message: Dict[str, Any]
    tool_results: Optional[List[ToolResult]] = None


@dataclass
class ChatCompletion:
    """Full transcript and final assistant message of a tool loop"""
    messages: List[Dict[str, Any]]
    final_message: Dict[str, Any]
