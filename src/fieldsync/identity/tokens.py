"""
Access token acquisition with an offline fallback.

TokenManager.get_token() first asks the identity provider for a token
silently. Every successful acquisition is written to the local token cache
with its expiry, so when the provider is unreachable (or wants user
interaction) a still-valid cached token keeps uploads working until it
expires. When neither source has a token, get_token() returns None and the
caller must treat that as "cannot sync now".
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol

import httpx

logger = logging.getLogger(__name__)


# ── Exceptions ────────────────────────────────────────────────────────────────

class TokenAcquisitionError(RuntimeError):
    """Raised by a provider that cannot issue a token right now."""


class NoAccountError(TokenAcquisitionError):
    """Raised when the provider has no signed-in account or client credentials."""


# ── Provider contract ─────────────────────────────────────────────────────────

@dataclass
class TokenResult:
    access_token: str
    expires_in: Optional[int] = None  # seconds from now
    expires_on: Optional[datetime] = None  # absolute expiry, if the provider gives one


class IdentityProvider(Protocol):
    async def acquire_token_silent(self, scope: str) -> TokenResult:
        ...


class ClientCredentialsProvider:
    """
    OAuth2 client-credentials grant against a token endpoint.

    Args:
        token_url: The provider's token endpoint.
        client_id / client_secret: Registered application credentials.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        token_url: str,
        client_id: str,
        client_secret: str,
        *,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self._transport = transport

    async def acquire_token_silent(self, scope: str) -> TokenResult:
        if not (self.token_url and self.client_id):
            raise NoAccountError("No client credentials configured")

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = await client.post(self.token_url, data={
                    "grant_type": "client_credentials",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "scope": scope,
                })
            except httpx.RequestError as e:
                raise TokenAcquisitionError(f"Identity provider unreachable: {e}") from e

        if not response.is_success:
            raise TokenAcquisitionError(f"Token request rejected: HTTP {response.status_code}")
        try:
            body = response.json()
            return TokenResult(
                access_token=body["access_token"],
                expires_in=int(body["expires_in"]) if body.get("expires_in") is not None else None,
            )
        except (ValueError, KeyError, TypeError) as e:
            raise TokenAcquisitionError(f"Malformed token response: {e}") from e


# ── Manager ───────────────────────────────────────────────────────────────────

class TokenManager:
    """
    Silent acquisition first, cached token second.

    Args:
        store: LocalStore holding the token cache.
        provider: IdentityProvider, or None to run from the cache only.
        scope: Scope requested from the provider and used as the cache key.
        default_ttl_seconds: Cache lifetime when the provider gives no expiry.
    """

    def __init__(self, store, provider: Optional[IdentityProvider], scope: str, *, default_ttl_seconds: int = 3600):
        self.store = store
        self.provider = provider
        self.scope = scope
        self.default_ttl_seconds = default_ttl_seconds

    async def get_token(self) -> Optional[str]:
        if self.provider is not None:
            try:
                result = await self.provider.acquire_token_silent(self.scope)
            except Exception as exc:
                # Any provider failure is treated alike: try the cache
                logger.warning("Token acquisition failed (%s); trying cached token", exc)
            else:
                self.store.save_token(self.scope, result.access_token, self._ttl_seconds(result))
                return result.access_token

        cached = self.store.get_valid_token(self.scope)
        if cached:
            logger.info("Using cached token for offline operation")
            return cached
        return None

    def _ttl_seconds(self, result: TokenResult) -> int:
        if result.expires_on is not None:
            expires_on = result.expires_on
            if expires_on.tzinfo is None:
                expires_on = expires_on.replace(tzinfo=timezone.utc)
            now = datetime.fromtimestamp(self.store.now() / 1000, tz=timezone.utc)
            return max(0, int((expires_on - now).total_seconds()))
        if result.expires_in is not None:
            return max(0, result.expires_in)
        return self.default_ttl_seconds
