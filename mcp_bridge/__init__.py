"""
MCP Bridge - connect LLM chat to remote MCP tool providers.

Keeps OAuth-protected provider connections alive across restarts and drives a
bounded tool-calling loop over their namespaced tool catalog.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("mcp-bridge")
except PackageNotFoundError:
    # Running from a source checkout
    __version__ = "unknown"


def main():
    """CLI entry point for the MCP bridge."""
    from .server import main as _main
    return _main()


__all__ = ["main", "__version__"]
