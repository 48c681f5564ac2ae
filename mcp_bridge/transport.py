#!/usr/bin/env python3
"""
Transport Negotiator

Builds a provider session for a URL, preferring one MCP transport kind and
falling back to the other when the preferred transport cannot be constructed.
Construction failures only select an implementation; they never start an
authorization flow.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from mcp.client.sse import sse_client
from mcp.client.streamable_http import streamablehttp_client

from .errors import TransportConstructionFailure

logger = logging.getLogger(__name__)

STREAMABLE_HTTP = "streamable-http"
SSE = "sse"

# MCP Protocol Version sent with every request
MCP_PROTOCOL_VERSION = "2025-06-18"


def protocol_headers() -> Dict[str, str]:
    return {"MCP-Protocol-Version": MCP_PROTOCOL_VERSION} if MCP_PROTOCOL_VERSION else {}


def transport_order(url: str) -> Tuple[str, str]:
    """Preferred and fallback transport kinds for a URL"""
    path = urlparse(url).path.rstrip("/").lower()
    if path.endswith("/sse") or "/sse/" in path:
        return (SSE, STREAMABLE_HTTP)
    return (STREAMABLE_HTTP, SSE)


def _validate_url(kind: str, url: str) -> None:
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise TransportConstructionFailure(f"{kind} transport needs an http(s) URL with a host, got {url!r}")


def build_transport(kind: str, url: str, auth: Any = None, headers: Optional[Dict[str, str]] = None):
    """Build the SDK transport context manager for one kind"""
    _validate_url(kind, url)
    headers = {**protocol_headers(), **(headers or {})}

    try:
        if kind == STREAMABLE_HTTP:
            return streamablehttp_client(url, headers=headers, auth=auth)
        if kind == SSE:
            return sse_client(url, headers=headers, auth=auth)
    except (TypeError, ValueError) as e:
        raise TransportConstructionFailure(f"Could not construct {kind} transport for {url}: {e}") from e

    raise TransportConstructionFailure(f"Unsupported transport: {kind}")


class TransportNegotiator:
    """Selects a transport for a provider URL and builds its session"""

    def __init__(self, connect_timeout: float = 30.0, call_timeout: float = 60.0,
                 close_timeout: float = 5.0):
        self.connect_timeout = connect_timeout
        self.call_timeout = call_timeout
        self.close_timeout = close_timeout

    def negotiate(self, url: str, adapter: Any = None):
        """Return an unopened ProviderSession using the first constructible transport"""
        # Imported here: session imports transport for build_transport
        from .session import ProviderSession

        failures: List[str] = []
        for kind in transport_order(url):
            try:
                session = ProviderSession(
                    url,
                    kind,
                    adapter,
                    connect_timeout=self.connect_timeout,
                    call_timeout=self.call_timeout,
                    close_timeout=self.close_timeout,
                )
            except TransportConstructionFailure as e:
                logger.warning(f"{kind} transport unavailable for {url}: {e}")
                failures.append(str(e))
                continue
            logger.info(f"Using {kind} transport for {url}")
            return session

        raise TransportConstructionFailure(f"No transport could be constructed for {url}: {'; '.join(failures)}")
