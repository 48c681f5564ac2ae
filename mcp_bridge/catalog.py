#!/usr/bin/env python3
"""
Tool Catalog

Flattened view of every tool offered by a connected provider. Tool names are
namespaced with their connection id so that two providers may publish tools
with the same name. Computed on demand from the registry, never cached.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from .errors import ToolExecutionFailure
from .models import CONNECTED, CatalogEntry, Connection
from .registry import ConnectionRegistry
from .schema import sanitize_schema

logger = logging.getLogger(__name__)

TOOL_NAME_SEPARATOR = "__"


def compose_tool_name(connection_id: str, tool_name: str) -> str:
    if TOOL_NAME_SEPARATOR in connection_id:
        raise ValueError(f"Connection id {connection_id!r} contains the separator {TOOL_NAME_SEPARATOR!r}")
    return f"{connection_id}{TOOL_NAME_SEPARATOR}{tool_name}"


def split_tool_name(namespaced_name: str) -> Tuple[str, str]:
    """Split on the first separator; the tool name keeps any later ones"""
    connection_id, separator, tool_name = namespaced_name.partition(TOOL_NAME_SEPARATOR)
    if not separator or not connection_id or not tool_name:
        raise ValueError(f"Not a namespaced tool name: {namespaced_name!r}")
    return connection_id, tool_name


class ToolCatalog:
    def __init__(self, registry: ConnectionRegistry):
        self.registry = registry

    def _connected(self) -> List[Connection]:
        return [c for c in self.registry.get_connections() if c.status == CONNECTED]

    def get_all_tools(self) -> List[CatalogEntry]:
        return [
            CatalogEntry(connection_id=connection.id, connection_name=connection.name, tool=tool)
            for connection in self._connected()
            for tool in connection.tools
        ]

    def find_tool_connection(self, tool_name: str) -> Optional[Connection]:
        """First connected connection that offers a tool with this raw name"""
        for connection in self._connected():
            if any(tool.name == tool_name for tool in connection.tools):
                return connection
        return None

    def resolve(self, namespaced_name: str) -> Tuple[Connection, str]:
        """Map a namespaced name back to its live connection and raw tool name"""
        try:
            connection_id, tool_name = split_tool_name(namespaced_name)
        except ValueError as e:
            raise ToolExecutionFailure(str(e)) from e

        connection = self.registry.get_connection(connection_id)
        if connection is None or connection.status != CONNECTED:
            raise ToolExecutionFailure(f"Connection {connection_id} not found or not connected")
        return connection, tool_name

    def function_specs(self) -> List[Dict[str, Any]]:
        """Catalog rendered as OpenAI-style function tools"""
        specs = []
        for entry in self.get_all_tools():
            specs.append({
                "type": "function",
                "function": {
                    "name": compose_tool_name(entry.connection_id, entry.tool.name),
                    "description": entry.tool.description or f"Tool {entry.tool.name}",
                    "parameters": sanitize_schema(entry.tool.input_schema),
                },
            })
        logger.debug(f"Built {len(specs)} function specs")
        return specs
