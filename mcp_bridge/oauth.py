#!/usr/bin/env python3
"""
Authorization Flow Adapter

Binds one connection identifier to the session store and exposes the
capability set an OAuth client needs. The concrete adapter also satisfies the
MCP SDK ``TokenStorage`` protocol (get/set tokens, get/set client info), so it
is handed to ``OAuthClientProvider`` as its storage.
"""

import logging
import secrets
from abc import ABC, abstractmethod
from typing import Optional
from urllib.parse import parse_qs, urlparse

from pydantic import AnyUrl, ValidationError
from mcp.shared.auth import OAuthClientInformationFull, OAuthClientMetadata, OAuthToken

from .errors import CodeVerifierMissing
from .store import SessionStore

logger = logging.getLogger(__name__)

# invalidate() scope -> credential field it clears
INVALIDATION_FIELDS = {
    "tokens": "tokens",
    "client": "client_info",
    "verifier": "code_verifier",
}


class AuthorizationFlowAdapter(ABC):
    """Capabilities an OAuth client needs for one connection"""

    connection_id: str
    redirect_url: str

    @property
    @abstractmethod
    def client_metadata(self) -> OAuthClientMetadata: ...

    @abstractmethod
    async def issue_state(self) -> str: ...

    @abstractmethod
    async def get_state(self) -> Optional[str]: ...

    @abstractmethod
    async def get_client_info(self) -> Optional[OAuthClientInformationFull]: ...

    @abstractmethod
    async def set_client_info(self, client_info: OAuthClientInformationFull) -> None: ...

    @abstractmethod
    async def get_tokens(self) -> Optional[OAuthToken]: ...

    @abstractmethod
    async def set_tokens(self, tokens: OAuthToken) -> None: ...

    @abstractmethod
    async def save_code_verifier(self, code_verifier: str) -> None: ...

    @abstractmethod
    async def code_verifier(self) -> str: ...

    @abstractmethod
    async def redirect_to_authorization(self, authorization_url: str) -> None: ...

    @abstractmethod
    async def take_authorization_url(self) -> Optional[str]: ...

    @abstractmethod
    async def invalidate(self, scope: str) -> None: ...


class StoredAuthorizationAdapter(AuthorizationFlowAdapter):
    """Authorization adapter persisted in the session store"""

    def __init__(self, store: SessionStore, connection_id: str, redirect_url: str,
                 client_name: str = "MCP Bridge"):
        self.store = store
        self.connection_id = connection_id
        self.redirect_url = redirect_url
        self.client_name = client_name
        logger.debug(f"OAuth adapter created for {connection_id} (redirect {redirect_url})")

    @property
    def client_metadata(self) -> OAuthClientMetadata:
        # Public client: no secret, PKCE only
        return OAuthClientMetadata(
            client_name=self.client_name,
            redirect_uris=[AnyUrl(self.redirect_url)],
            grant_types=["authorization_code", "refresh_token"],
            response_types=["code"],
            token_endpoint_auth_method="none",
        )

    def _record(self) -> dict:
        return self.store.get_credentials(self.connection_id) or {}

    async def issue_state(self) -> str:
        state = secrets.token_urlsafe(32)
        self.store.upsert_credentials(self.connection_id, state=state)
        return state

    async def get_state(self) -> Optional[str]:
        return self._record().get("state")

    async def get_client_info(self) -> Optional[OAuthClientInformationFull]:
        data = self._record().get("client_info")
        if not data:
            return None
        try:
            return OAuthClientInformationFull.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Discarding unreadable client_info for {self.connection_id}: {e}")
            return None

    async def set_client_info(self, client_info: OAuthClientInformationFull) -> None:
        logger.info(f"[{self.connection_id}] saving client registration (client_id={client_info.client_id})")
        self.store.upsert_credentials(
            self.connection_id, client_info=client_info.model_dump(mode="json", exclude_none=True)
        )

    async def get_tokens(self) -> Optional[OAuthToken]:
        data = self._record().get("tokens")
        if not data:
            return None
        try:
            return OAuthToken.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Discarding unreadable tokens for {self.connection_id}: {e}")
            return None

    async def set_tokens(self, tokens: OAuthToken) -> None:
        logger.info(
            f"[{self.connection_id}] saving tokens: access_token={tokens.access_token[:8]}... "
            f"expires_in={tokens.expires_in} refresh_token={'present' if tokens.refresh_token else 'none'}"
        )
        self.store.upsert_credentials(self.connection_id, tokens=tokens.model_dump(mode="json", exclude_none=True))

    async def save_code_verifier(self, code_verifier: str) -> None:
        self.store.upsert_credentials(self.connection_id, code_verifier=code_verifier)

    async def code_verifier(self) -> str:
        verifier = self._record().get("code_verifier")
        if not verifier:
            raise CodeVerifierMissing(f"No code verifier found for connection {self.connection_id}")
        return verifier

    async def redirect_to_authorization(self, authorization_url: str) -> None:
        """Capture the authorization URL (and the state nonce it carries) for hand-off"""
        logger.info(f"[{self.connection_id}] authorization required: {authorization_url}")
        state = parse_qs(urlparse(authorization_url).query).get("state", [None])[0]
        self.store.upsert_credentials(self.connection_id, authorization_url=authorization_url, state=state)

    async def take_authorization_url(self) -> Optional[str]:
        """Return the captured URL once; later reads get None"""
        authorization_url = self._record().get("authorization_url")
        if authorization_url:
            self.store.clear_credential_field(self.connection_id, "authorization_url")
        return authorization_url

    async def invalidate(self, scope: str) -> None:
        logger.info(f"[{self.connection_id}] invalidating credentials, scope={scope}")
        if scope == "all":
            self.store.delete_credentials(self.connection_id)
            return
        field_name = INVALIDATION_FIELDS.get(scope)
        if field_name is None:
            raise ValueError(f"Unknown invalidation scope: {scope}")
        self.store.clear_credential_field(self.connection_id, field_name)
