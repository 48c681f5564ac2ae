"""
MCP Bridge Test Suite

Structure:
- unit/: Unit tests for the store, registry, catalog, chat loop and HTTP API
- oauth/: Authorization flow adapter tests
"""
