"""Access-token cache with coalesced refresh.

Tokens are served from memory while they are valid and not about to expire.
When a refresh is needed exactly one task performs it; every concurrent
caller for the same (user, platform) awaits that task.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from datetime import datetime, timezone

from adsync.platforms.base import Credential, Platform
from adsync.platforms.exceptions import AuthenticationError, CredentialRevokedError
from adsync.platforms.oauth import TokenRefresher
from adsync.services.storage import SyncStore
from adsync.settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)

CredentialKey = tuple[str, Platform]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenCache:
    def __init__(
        self,
        store: SyncStore,
        refreshers: Mapping[Platform, TokenRefresher],
        *,
        margin_seconds: float | None = None,
        clock: Callable[[], datetime] = _utcnow,
        issue_missing: bool = False,
        settings: Settings | None = None,
    ) -> None:
        cfg = settings or default_settings
        self._store = store
        self._refreshers = dict(refreshers)
        self._margin = (
            cfg.TOKEN_REFRESH_MARGIN_SECONDS if margin_seconds is None else margin_seconds
        )
        self._clock = clock
        # Dry runs have no stored credentials; let the refresher mint one.
        self._issue_missing = issue_missing
        self._cached: dict[CredentialKey, Credential] = {}
        self._inflight: dict[CredentialKey, asyncio.Task[Credential]] = {}
        # Tokens a platform rejected; the next request for the key refreshes.
        self._rejected: dict[CredentialKey, str] = {}

    def _usable(self, key: CredentialKey, credential: Credential) -> bool:
        return (
            bool(credential.access_token)
            and credential.is_valid
            and credential.access_token != self._rejected.get(key)
            and not credential.expires_within(self._clock(), self._margin)
        )

    async def get_access_token(self, user_id: str, platform: Platform | str) -> str:
        key = (user_id, Platform(platform))
        cached = self._cached.get(key)
        if cached is not None and self._usable(key, cached):
            return cached.access_token

        # Cancelling a caller leaves the shared refresh running for the rest.
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._load_or_refresh(key))
            self._inflight[key] = task
            task.add_done_callback(lambda t: self._refresh_done(key, t))
        credential = await asyncio.shield(task)
        return credential.access_token

    def _refresh_done(self, key: CredentialKey, task: asyncio.Task[Credential]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # Marks a failure as retrieved when no caller was left waiting on it.
        if not task.cancelled():
            task.exception()

    async def _load_or_refresh(self, key: CredentialKey) -> Credential:
        user_id, platform = key
        stored = await self._store.get_credential(user_id, platform)
        if stored is None:
            if not self._issue_missing:
                raise AuthenticationError(
                    f"No {platform.value} credential for user",
                    {"user_id": user_id, "platform": platform.value},
                )
            stored = Credential(user_id=user_id, platform=platform, access_token="")
        elif not stored.is_valid:
            self._cached.pop(key, None)
            raise CredentialRevokedError(
                f"{platform.value} credential was revoked",
                {"user_id": user_id, "platform": platform.value},
            )

        if self._usable(key, stored):
            self._cached[key] = stored
            return stored

        refresher = self._refreshers.get(platform)
        if refresher is None:
            raise AuthenticationError(
                f"No token refresher configured for {platform.value}",
                {"platform": platform.value},
            )
        logger.info(
            "Refreshing access token", extra={"user_id": user_id, "platform": platform.value}
        )
        try:
            refreshed = await refresher.refresh(stored)
        except CredentialRevokedError:
            await self.revoke(user_id, platform)
            raise
        await self._store.save_credential(refreshed)
        self._cached[key] = refreshed
        self._rejected.pop(key, None)
        return refreshed

    async def connect(self, credential: Credential) -> None:
        """Store a freshly granted credential, replacing any previous one."""
        key = (credential.user_id, credential.platform)
        await self._store.save_credential(credential)
        self._cached[key] = credential
        self._rejected.pop(key, None)

    def invalidate(self, user_id: str, platform: Platform | str, token: str) -> None:
        """Force a refresh after ``token`` was rejected.

        Ignored when the cached token has already moved on, so a stale
        rejection cannot trigger a second refresh.
        """
        key = (user_id, Platform(platform))
        cached = self._cached.get(key)
        if cached is not None and cached.access_token != token:
            return
        self._rejected[key] = token

    async def revoke(self, user_id: str, platform: Platform | str) -> None:
        key = (user_id, Platform(platform))
        self._cached.pop(key, None)
        stored = await self._store.get_credential(user_id, key[1])
        if stored is not None and stored.is_valid:
            await self._store.save_credential(stored.model_copy(update={"is_valid": False}))
        logger.info(
            "Revoked credential", extra={"user_id": user_id, "platform": key[1].value}
        )
