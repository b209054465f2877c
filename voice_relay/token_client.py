"""
Upstream credentials for the relay.

Two deployment modes attach a bearer `Authorization` header to the upstream
handshake: the server-held API key itself, or a short-lived client secret
minted per session from the token-issuing endpoint.
"""

from typing import Dict, Optional

import httpx
from loguru import logger

from .errors import ConnectError


class TokenIssuer:
    """
    Client for the ephemeral client-secret endpoint.
    """

    def __init__(self, api_key: Optional[str], url: str, ttl_seconds: int = 300,
                 client: Optional[httpx.AsyncClient] = None, timeout: float = 10.0):
        """
        Initialize token issuer.

        Args:
            api_key (Optional[str]): Long-lived server API key
            url (str): Client-secrets endpoint
            ttl_seconds (int): Requested token lifetime
            client (Optional[httpx.AsyncClient]): Shared HTTP client, one per call if None
            timeout (float): Request timeout in seconds
        """
        self.api_key = api_key
        self.url = url
        self.ttl_seconds = ttl_seconds
        self.client = client
        self.timeout = timeout

    async def fetch_client_secret(self) -> str:
        """
        Request a fresh ephemeral client secret.

        Returns:
            str: The `client_secret.value` from the response

        Raises:
            ConnectError: If no API key is configured or the request fails
        """
        if not self.api_key:
            raise ConnectError("XAI_API_KEY not configured")

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        body = {"expires_after": {"seconds": self.ttl_seconds}}

        try:
            if self.client is not None:
                response = await self.client.post(self.url, json=body, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.url, json=body, headers=headers)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.error(f"Session request error: {e}")
            raise ConnectError(f"Token request failed: {e}") from e

        if response.status_code >= 400:
            logger.error(f"Token endpoint error: {response.status_code} {response.text}")
            raise ConnectError(f"Failed to get ephemeral token (HTTP {response.status_code})")

        try:
            data = response.json()
        except ValueError as e:
            raise ConnectError("Invalid token response: body is not JSON") from e

        secret = data.get("client_secret") if isinstance(data, dict) else None
        value = secret.get("value") if isinstance(secret, dict) else None
        if not value:
            raise ConnectError("Invalid token response: missing client_secret.value")

        return value


class StaticKeyCredentials:
    """Attach the server-held API key to every upstream connection."""

    def __init__(self, api_key: Optional[str]):
        self.api_key = api_key

    async def authorization_headers(self) -> Dict[str, str]:
        if not self.api_key:
            raise ConnectError("XAI_API_KEY not configured")
        return {"Authorization": f"Bearer {self.api_key}"}


class EphemeralTokenCredentials:
    """Mint one ephemeral client secret per upstream connection."""

    def __init__(self, issuer: TokenIssuer):
        self.issuer = issuer

    async def authorization_headers(self) -> Dict[str, str]:
        token = await self.issuer.fetch_client_secret()
        logger.debug("Got ephemeral token")
        return {"Authorization": f"Bearer {token}"}


def credentials_from_config(config):
    """Pick the credential provider for `config.auth_mode`."""
    if config.auth_mode == "ephemeral":
        issuer = TokenIssuer(config.api_key, config.session_request_url, config.token_ttl_seconds)
        return EphemeralTokenCredentials(issuer)
    return StaticKeyCredentials(config.api_key)
