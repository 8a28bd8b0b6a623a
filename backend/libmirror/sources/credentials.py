"""Credential providers for remote backends.

Acquiring credentials interactively is outside this package; providers are
constructed from tokens obtained elsewhere and only know how to hand out
the current access token and refresh it.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod

import httpx
from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials as OAuthCredentials

from libmirror.core.config import settings
from libmirror.core.exceptions import CredentialError
from libmirror.core.logging import get_logger

logger = get_logger(__name__)

GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"
GOOGLE_SCOPES = ["https://www.googleapis.com/auth/drive.readonly"]

MICROSOFT_TOKEN_URL = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"
MICROSOFT_SCOPES = "Files.Read Files.Read.All offline_access"

# Refresh Microsoft tokens this many seconds before they expire
TOKEN_EXPIRY_MARGIN = 60.0


class CredentialProvider(ABC):
    """Supplies bearer tokens for a backend account."""

    @abstractmethod
    async def get_token(self) -> str:
        """Return a currently valid access token."""

    @abstractmethod
    async def refresh(self) -> str:
        """Force a refresh and return the new access token.

        Raises:
            CredentialError: If the token cannot be refreshed.
        """


class StaticTokenProvider(CredentialProvider):
    """Fixed token, for development and tests."""

    def __init__(self, token: str):
        self.token = token
        self.refresh_count = 0

    async def get_token(self) -> str:
        return self.token

    async def refresh(self) -> str:
        self.refresh_count += 1
        return self.token


class GoogleOAuthCredentialProvider(CredentialProvider):
    """Google OAuth2 user credentials backed by google-auth."""

    def __init__(self, credentials: OAuthCredentials):
        self.credentials = credentials
        self._lock = asyncio.Lock()

    @classmethod
    def from_refresh_token(
        cls,
        refresh_token: str,
        access_token: str | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
    ) -> GoogleOAuthCredentialProvider:
        """Build a provider from a stored refresh token."""
        creds = OAuthCredentials(
            token=access_token,
            refresh_token=refresh_token,
            token_uri=GOOGLE_TOKEN_URI,
            client_id=client_id or settings.gdrive_client_id,
            client_secret=client_secret or settings.gdrive_client_secret,
            scopes=GOOGLE_SCOPES,
        )
        return cls(creds)

    async def get_token(self) -> str:
        if not self.credentials.valid:
            return await self.refresh()
        return self.credentials.token

    async def refresh(self) -> str:
        async with self._lock:
            try:
                # google-auth refresh is a blocking HTTP call
                await asyncio.to_thread(self.credentials.refresh, Request())
            except RefreshError as e:
                raise CredentialError(f"Google token refresh failed: {e}") from e
            logger.info("google_credentials_refreshed")
            return self.credentials.token


class MicrosoftOAuthCredentialProvider(CredentialProvider):
    """Microsoft identity platform refresh-token grant over httpx."""

    def __init__(
        self,
        refresh_token: str,
        client_id: str | None = None,
        tenant: str | None = None,
        access_token: str | None = None,
        expires_at: float = 0.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.refresh_token = refresh_token
        self.client_id = client_id or settings.onedrive_client_id
        self.tenant = tenant or settings.onedrive_tenant
        self.access_token = access_token
        self.expires_at = expires_at
        self._client = http_client
        self._lock = asyncio.Lock()

    def _is_expiring(self) -> bool:
        return self.access_token is None or time.time() + TOKEN_EXPIRY_MARGIN >= self.expires_at

    async def get_token(self) -> str:
        if self._is_expiring():
            return await self.refresh()
        return self.access_token

    async def refresh(self) -> str:
        async with self._lock:
            if not self.client_id:
                raise CredentialError("OneDrive client id is not configured")

            client = self._client or httpx.AsyncClient(timeout=settings.http_timeout)
            try:
                response = await client.post(
                    MICROSOFT_TOKEN_URL.format(tenant=self.tenant),
                    data={
                        "client_id": self.client_id,
                        "grant_type": "refresh_token",
                        "refresh_token": self.refresh_token,
                        "scope": MICROSOFT_SCOPES,
                    },
                )
            except httpx.HTTPError as e:
                raise CredentialError(f"OneDrive token refresh failed: {e}") from e
            finally:
                if self._client is None:
                    await client.aclose()

            if response.status_code != 200:
                raise CredentialError(
                    f"OneDrive token refresh rejected with HTTP {response.status_code}"
                )

            data = response.json()
            self.access_token = data["access_token"]
            # Refresh tokens rotate; keep the newest one
            self.refresh_token = data.get("refresh_token", self.refresh_token)
            self.expires_at = time.time() + float(data.get("expires_in", 3600))
            logger.info("onedrive_credentials_refreshed", expires_in=data.get("expires_in"))
            return self.access_token
