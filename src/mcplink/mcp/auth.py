"""OAuth credentials for remote MCP servers.

Tokens are stored per server URL. ``OAuthClientProvider.authorize`` runs the
authorization-code flow with PKCE; obtaining the code from the user is left
to a ``redirect_handler`` callback. When that callback cannot produce a code
synchronously (a browser redirect is in flight) the result is ``REDIRECT``
and ``finish_authorization`` completes the exchange later.
"""

import base64
import hashlib
import json
import logging
import secrets
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import urlencode, urlparse

import aiohttp
from pydantic import BaseModel

logger = logging.getLogger(__name__)

RedirectHandler = Callable[[str], Awaitable[Optional[str]]]


class AuthResult(str, Enum):
    AUTHORIZED = "AUTHORIZED"
    REDIRECT = "REDIRECT"
    FAILED = "FAILED"


class OAuthTokens(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    scope: Optional[str] = None


class OAuthClientInformation(BaseModel):
    client_id: str
    client_secret: Optional[str] = None


class OAuthTokenStore:
    """Tokens and client registrations keyed by server URL.

    With a ``path`` the store is persisted as JSON after every write.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = path
        self._tokens: Dict[str, OAuthTokens] = {}
        self._clients: Dict[str, OAuthClientInformation] = {}
        if path is not None and path.exists():
            self._load()

    def _load(self) -> None:
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
            self._tokens = {k: OAuthTokens(**v) for k, v in data.get("tokens", {}).items()}
            self._clients = {
                k: OAuthClientInformation(**v) for k, v in data.get("clients", {}).items()
            }
        except Exception as e:
            logger.error(f"Error loading OAuth token store from {self.path}: {str(e)}")

    def _save(self) -> None:
        if self.path is None:
            return
        data = {
            "tokens": {k: v.model_dump(exclude_none=True) for k, v in self._tokens.items()},
            "clients": {k: v.model_dump(exclude_none=True) for k, v in self._clients.items()},
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w") as f:
            json.dump(data, f, indent=2)

    def get_tokens(self, server_url: str) -> Optional[OAuthTokens]:
        return self._tokens.get(server_url)

    def save_tokens(self, server_url: str, tokens: OAuthTokens) -> None:
        self._tokens[server_url] = tokens
        self._save()

    def get_client(self, server_url: str) -> Optional[OAuthClientInformation]:
        return self._clients.get(server_url)

    def save_client(self, server_url: str, client: OAuthClientInformation) -> None:
        self._clients[server_url] = client
        self._save()

    def clear(self, server_url: str) -> None:
        removed = self._tokens.pop(server_url, None)
        self._clients.pop(server_url, None)
        if removed is not None:
            self._save()


def _pkce_pair() -> tuple:
    verifier = secrets.token_urlsafe(64)[:96]
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return verifier, challenge


class OAuthClientProvider:
    """Credential provider consulted by ``MCPProtocolClient`` on 401 failures."""

    def __init__(
        self,
        store: Optional[OAuthTokenStore] = None,
        redirect_uri: str = "http://localhost:6274/oauth/callback",
        client_name: str = "mcplink",
        redirect_handler: Optional[RedirectHandler] = None,
    ):
        self.store = store or OAuthTokenStore()
        self.redirect_uri = redirect_uri
        self.client_name = client_name
        self.redirect_handler = redirect_handler
        self._pending_verifiers: Dict[str, str] = {}

    async def access_token(self, server_url: str) -> Optional[str]:
        tokens = self.store.get_tokens(server_url)
        return tokens.access_token if tokens else None

    def clear(self, server_url: str) -> None:
        self.store.clear(server_url)
        self._pending_verifiers.pop(server_url, None)

    async def authorize(self, server_url: str) -> AuthResult:
        """Obtain tokens for ``server_url``.

        Returns:
            ``AUTHORIZED`` when fresh tokens are stored, ``REDIRECT`` when the
            user must finish authorization externally, ``FAILED`` otherwise.
        """
        try:
            async with aiohttp.ClientSession() as session:
                metadata = await self._discover_metadata(session, server_url)

                tokens = self.store.get_tokens(server_url)
                client = self.store.get_client(server_url)
                if tokens and tokens.refresh_token and client:
                    refreshed = await self._refresh(session, metadata, client, tokens.refresh_token)
                    if refreshed is not None:
                        self.store.save_tokens(server_url, refreshed)
                        return AuthResult.AUTHORIZED

                if client is None:
                    client = await self._register_client(session, metadata)
                    self.store.save_client(server_url, client)

                verifier, challenge = _pkce_pair()
                authorization_url = self._authorization_url(metadata, client, challenge)
                self._pending_verifiers[server_url] = verifier

                if self.redirect_handler is None:
                    logger.info(f"Authorize {server_url} at: {authorization_url}")
                    return AuthResult.REDIRECT

                code = await self.redirect_handler(authorization_url)
                if not code:
                    return AuthResult.REDIRECT

                tokens = await self._exchange_code(session, metadata, client, code, verifier)
                self.store.save_tokens(server_url, tokens)
                self._pending_verifiers.pop(server_url, None)
                return AuthResult.AUTHORIZED

        except Exception as e:
            logger.error(f"OAuth authorization for {server_url} failed: {str(e)}")
            return AuthResult.FAILED

    async def finish_authorization(self, server_url: str, code: str) -> AuthResult:
        """Complete a flow that previously returned ``REDIRECT``."""
        verifier = self._pending_verifiers.pop(server_url, None)
        client = self.store.get_client(server_url)
        if verifier is None or client is None:
            logger.error(f"No pending authorization for {server_url}")
            return AuthResult.FAILED
        try:
            async with aiohttp.ClientSession() as session:
                metadata = await self._discover_metadata(session, server_url)
                tokens = await self._exchange_code(session, metadata, client, code, verifier)
            self.store.save_tokens(server_url, tokens)
            return AuthResult.AUTHORIZED
        except Exception as e:
            logger.error(f"OAuth code exchange for {server_url} failed: {str(e)}")
            return AuthResult.FAILED

    async def _discover_metadata(self, session: aiohttp.ClientSession, server_url: str) -> Dict[str, Any]:
        parsed = urlparse(server_url)
        origin = f"{parsed.scheme}://{parsed.netloc}"
        defaults = {
            "authorization_endpoint": f"{origin}/authorize",
            "token_endpoint": f"{origin}/token",
            "registration_endpoint": f"{origin}/register",
        }
        try:
            async with session.get(f"{origin}/.well-known/oauth-authorization-server") as response:
                if response.status == 200:
                    return {**defaults, **(await response.json())}
        except aiohttp.ClientError as e:
            logger.debug(f"OAuth metadata discovery failed for {origin}: {str(e)}")
        return defaults

    async def _register_client(
        self, session: aiohttp.ClientSession, metadata: Dict[str, Any]
    ) -> OAuthClientInformation:
        payload = {
            "client_name": self.client_name,
            "redirect_uris": [self.redirect_uri],
            "grant_types": ["authorization_code", "refresh_token"],
            "response_types": ["code"],
            "token_endpoint_auth_method": "none",
        }
        async with session.post(metadata["registration_endpoint"], json=payload) as response:
            if response.status >= 300:
                raise RuntimeError(f"Client registration failed: HTTP {response.status}")
            return OAuthClientInformation(**(await response.json()))

    def _authorization_url(
        self, metadata: Dict[str, Any], client: OAuthClientInformation, challenge: str
    ) -> str:
        query = urlencode({
            "response_type": "code",
            "client_id": client.client_id,
            "redirect_uri": self.redirect_uri,
            "code_challenge": challenge,
            "code_challenge_method": "S256",
        })
        return f"{metadata['authorization_endpoint']}?{query}"

    async def _exchange_code(
        self,
        session: aiohttp.ClientSession,
        metadata: Dict[str, Any],
        client: OAuthClientInformation,
        code: str,
        verifier: str,
    ) -> OAuthTokens:
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
            "client_id": client.client_id,
            "code_verifier": verifier,
        }
        if client.client_secret:
            form["client_secret"] = client.client_secret
        async with session.post(metadata["token_endpoint"], data=form) as response:
            if response.status >= 300:
                raise RuntimeError(f"Token exchange failed: HTTP {response.status}")
            return OAuthTokens(**(await response.json()))

    async def _refresh(
        self,
        session: aiohttp.ClientSession,
        metadata: Dict[str, Any],
        client: OAuthClientInformation,
        refresh_token: str,
    ) -> Optional[OAuthTokens]:
        form = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": client.client_id,
        }
        async with session.post(metadata["token_endpoint"], data=form) as response:
            if response.status >= 300:
                logger.warning(f"Token refresh failed: HTTP {response.status}")
                return None
            data = await response.json()
        data.setdefault("refresh_token", refresh_token)
        return OAuthTokens(**data)
