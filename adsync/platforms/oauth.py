"""Platform-specific access token refresh flows.

Each refresher turns a stored ``Credential`` into a new one.  The credential
cache decides *when* to refresh; these classes only know *how*.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Protocol

import httpx

from adsync.platforms.base import Credential, Platform
from adsync.platforms.exceptions import (
    CredentialRefreshError,
    CredentialRevokedError,
    classify_exception,
)

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
META_GRAPH_BASE = "https://graph.facebook.com"


class TokenRefresher(Protocol):
    async def refresh(self, credential: Credential) -> Credential: ...


def _expiry(expires_in: int | float | None) -> datetime | None:
    if not expires_in:
        return None
    return datetime.now(timezone.utc) + timedelta(seconds=float(expires_in))


def _revoked(platform: Platform, body: dict) -> bool:
    if platform == Platform.GOOGLE:
        return body.get("error") == "invalid_grant"
    error = body.get("error")
    return isinstance(error, dict) and error.get("code") == 190


async def _send(client: httpx.AsyncClient, request: httpx.Request, platform: Platform) -> dict:
    try:
        response = await client.send(request)
    except httpx.HTTPError as exc:
        raise classify_exception(exc) from exc

    if response.status_code >= 400:
        try:
            body = response.json()
        except ValueError:
            body = {}
        logger.error(
            "Token refresh rejected",
            extra={"platform": platform.value, "status_code": response.status_code},
        )
        details = {"status_code": response.status_code}
        if isinstance(body, dict) and _revoked(platform, body):
            raise CredentialRevokedError(f"{platform.value} grant was revoked", details)
        raise CredentialRefreshError(
            f"{platform.value} token refresh failed with HTTP {response.status_code}",
            details,
        )
    return response.json()


class GoogleTokenRefresher:
    """OAuth2 refresh-token grant against Google's token endpoint."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        client: httpx.AsyncClient | None = None,
        token_url: str = GOOGLE_TOKEN_URL,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_url = token_url
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(30.0))

    async def refresh(self, credential: Credential) -> Credential:
        if not credential.refresh_token:
            raise CredentialRefreshError("Google credential has no refresh token")
        request = self._client.build_request(
            "POST",
            self.token_url,
            data={
                "grant_type": "refresh_token",
                "refresh_token": credential.refresh_token,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
        )
        data = await _send(self._client, request, Platform.GOOGLE)
        return Credential(
            user_id=credential.user_id,
            platform=Platform.GOOGLE,
            access_token=data["access_token"],
            # Google only rotates the refresh token occasionally
            refresh_token=data.get("refresh_token", credential.refresh_token),
            expires_at=_expiry(data.get("expires_in")),
        )


class MetaTokenRefresher:
    """Exchange the current token for a fresh long-lived Meta user token."""

    def __init__(
        self,
        app_id: str,
        app_secret: str,
        api_version: str = "v21.0",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.app_id = app_id
        self.app_secret = app_secret
        self.url = f"{META_GRAPH_BASE}/{api_version}/oauth/access_token"
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(30.0))

    async def refresh(self, credential: Credential) -> Credential:
        exchange_token = credential.refresh_token or credential.access_token
        request = self._client.build_request(
            "GET",
            self.url,
            params={
                "grant_type": "fb_exchange_token",
                "client_id": self.app_id,
                "client_secret": self.app_secret,
                "fb_exchange_token": exchange_token,
            },
        )
        data = await _send(self._client, request, Platform.META)
        token = data["access_token"]
        return Credential(
            user_id=credential.user_id,
            platform=Platform.META,
            access_token=token,
            refresh_token=token,
            expires_at=_expiry(data.get("expires_in")),
        )


class StaticTokenRefresher:
    """Issues synthetic tokens; backs the dry-run platform."""

    def __init__(self, lifetime_seconds: int = 3600) -> None:
        self.lifetime_seconds = lifetime_seconds
        self.refresh_count = 0

    async def refresh(self, credential: Credential) -> Credential:
        self.refresh_count += 1
        return Credential(
            user_id=credential.user_id,
            platform=credential.platform,
            access_token=f"dry-run-token-{self.refresh_count}",
            refresh_token=credential.refresh_token,
            expires_at=_expiry(self.lifetime_seconds),
        )
