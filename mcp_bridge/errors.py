#!/usr/bin/env python3
"""
Error kinds raised by the MCP bridge.

Provider-local failures are classified into these kinds at the session
boundary so the registry and the chat loop never have to inspect raw SDK,
httpx or anyio exceptions.
"""

from typing import Any, Dict, List, Optional


class BridgeError(Exception):
    """Base class for every error raised by the bridge."""


class ConfigurationError(BridgeError):
    """Missing or invalid configuration (e.g. no LLM API key)."""


class TransportConstructionFailure(BridgeError):
    """A transport implementation could not be built for a URL."""


class AuthorizationRequired(BridgeError):
    """The provider demanded an OAuth authorization before accepting requests."""


class AuthorizationUnavailable(AuthorizationRequired):
    """Authorization was demanded but no authorization URL could be captured."""


class ProviderUnreachable(BridgeError):
    """The provider could not be reached over the network."""


class ProviderProtocolError(BridgeError):
    """The provider answered, but the protocol exchange failed."""


class OperationTimeout(BridgeError):
    """A provider call or an LLM request exceeded its deadline."""


class ToolExecutionFailure(BridgeError):
    """A tool call failed; contained and reported to the model as tool output."""


class PendingConnectionNotFound(BridgeError):
    """No pending OAuth connection exists for the given identifier."""


class ConnectionNotFound(BridgeError):
    """No saved or live connection exists for the given identifier."""


class CodeVerifierMissing(BridgeError):
    """The PKCE code verifier was requested mid-flow but never stored."""


class LLMBackendError(BridgeError):
    """The LLM backend failed or returned an unusable reply."""


class IterationBoundExceeded(BridgeError):
    """The tool loop hit its iteration bound without a tool-free reply."""

    def __init__(self, max_iterations: int, messages: Optional[List[Dict[str, Any]]] = None):
        super().__init__(f"Max iterations ({max_iterations}) reached without completing")
        self.max_iterations = max_iterations
        self.messages = messages or []
