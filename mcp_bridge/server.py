#!/usr/bin/env python3
"""
MCP Bridge - Main Entry Point
HTTP server plus a few offline CLI modes
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional

from aiohttp import web

from .api import create_app
from .catalog import ToolCatalog, compose_tool_name
from .chat import ToolChatClient
from .config import Settings, load_settings
from .errors import ConfigurationError
from .registry import ConnectionRegistry

logger = logging.getLogger(__name__)


def build_components(settings: Settings):
    """Registry, catalog and chat client wired from settings"""
    registry = ConnectionRegistry.from_settings(settings)
    catalog = ToolCatalog(registry)
    chat_client = ToolChatClient.from_settings(settings, catalog)
    return registry, catalog, chat_client


class BridgeServer:
    """MCP Bridge HTTP server"""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.registry, self.catalog, self.chat_client = build_components(settings)
        self.app: Optional[web.Application] = None
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None
        self._shutdown_event = asyncio.Event()

    async def start_server(self):
        """Start the HTTP server"""
        self.app = create_app(self.settings, self.registry, self.chat_client)
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()

        self.site = web.TCPSite(self.runner, self.settings.host, self.settings.port)
        await self.site.start()

        logger.info(f"MCP Bridge started on http://{self.settings.host}:{self.settings.port}")
        logger.info(f"OAuth redirect URL: {self.settings.redirect_url}")
        if not self.chat_client.configured:
            logger.warning("OPENROUTER_API_KEY not set, chat endpoints will answer 401")

    async def stop_server(self):
        """Stop the HTTP server; cleanup closes every provider session"""
        if self.site:
            await self.site.stop()
        if self.runner:
            await self.runner.cleanup()
            logger.info("Server runner cleaned up")

    async def run_forever(self):
        """Run server until shutdown signal"""
        await self.start_server()

        def signal_handler(signum, frame):
            logger.info(f"Received signal {signum}, shutting down...")
            self._shutdown_event.set()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

        try:
            await self._shutdown_event.wait()
        finally:
            logger.info("Shutting down MCP Bridge...")
            await self.stop_server()


async def test_connections(settings: Settings) -> int:
    """Restore saved connections and print their status"""
    registry, _, _ = build_components(settings)
    try:
        statuses = await registry.reconnect_saved_connections()
        print("\n=== Saved MCP Connections ===")
        if not statuses:
            print("No saved connections")
        for row in registry.store.list_connections():
            connection = registry.get_connection(row["id"])
            tools_count = f" ({len(connection.tools)} tools)" if connection else ""
            print(f"[{statuses.get(row['id'], row['status'])}] {row['name']} {row['url']}{tools_count}")
        return 0
    finally:
        await registry.close_all()


async def list_tools(settings: Settings) -> int:
    """Restore saved connections and print the namespaced catalog"""
    registry, catalog, _ = build_components(settings)
    try:
        await registry.reconnect_saved_connections()
        entries = catalog.get_all_tools()
        print("\n=== Available MCP Tools ===")
        for entry in entries:
            name = compose_tool_name(entry.connection_id, entry.tool.name)
            print(f"  {name}: {entry.tool.description or 'No description'}")
        print(f"\nTotal tools available: {len(entries)}")
        return 0
    finally:
        await registry.close_all()


def main(argv=None):
    """Main CLI entry point"""
    parser = argparse.ArgumentParser(
        description="MCP Bridge - MCP tool providers for LLM chat",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  mcp-bridge                       # Start server on the configured port (default 3001)
  mcp-bridge --port 8080           # Start server on custom port
  mcp-bridge --test                # Reconnect saved connections and show their status
  mcp-bridge --list-tools          # List tools of all restorable connections
  mcp-bridge --verbose             # Enable debug logging
        """
    )
    parser.add_argument('--port', '-p', type=int, default=None, help='Port to run the server on')
    parser.add_argument('--host', type=str, default=None, help='Host to bind the server to')
    parser.add_argument('--config', type=str, default=None, help='Path to settings.toml')
    parser.add_argument('--test', '-t', action='store_true', help='Reconnect saved connections and print their status')
    parser.add_argument('--list-tools', '-l', action='store_true', help='List all available tools')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable debug logging')

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    for noisy in ("LiteLLM", "httpx"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.debug("Debug logging enabled")

    try:
        settings = load_settings(args.config)
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(2)
    if args.host:
        settings.host = args.host
    if args.port:
        settings.port = args.port

    if args.test:
        sys.exit(asyncio.run(test_connections(settings)))

    if args.list_tools:
        sys.exit(asyncio.run(list_tools(settings)))

    logger.info(f"Session store: {settings.store_path}")

    async def _serve():
        await BridgeServer(settings).run_forever()

    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down...")
    except Exception as e:
        logger.error(f"Server error: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
