"""
OAuth Tests

Tests for the authorization flow adapter: credential persistence, scoped
invalidation, read-once authorization URL hand-off and PKCE verifier lookup.
"""
