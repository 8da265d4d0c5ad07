"""Tests for the access-token cache."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from adsync.platforms.base import Credential, Platform
from adsync.platforms.exceptions import (
    AuthenticationError,
    CredentialRefreshError,
    CredentialRevokedError,
)
from adsync.services.credentials import TokenCache
from adsync.services.storage import InMemorySyncStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class CountingRefresher:
    def __init__(self, fail: Exception | None = None):
        self.calls = 0
        self.fail = fail

    async def refresh(self, credential: Credential) -> Credential:
        self.calls += 1
        # Give concurrent callers a chance to pile up behind the leader
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        if self.fail is not None:
            raise self.fail
        return credential.model_copy(
            update={
                "access_token": f"fresh-{self.calls}",
                "expires_at": NOW + timedelta(hours=1),
            }
        )


def _credential(token="old", expires_in=3600, **kwargs) -> Credential:
    return Credential(
        user_id="user-1",
        platform=Platform.GOOGLE,
        access_token=token,
        refresh_token="refresh-1",
        expires_at=NOW + timedelta(seconds=expires_in),
        **kwargs,
    )


async def _cache(credential=None, refresher=None, margin=60):
    store = InMemorySyncStore()
    if credential is not None:
        await store.save_credential(credential)
    refresher = refresher or CountingRefresher()
    cache = TokenCache(
        store, {Platform.GOOGLE: refresher}, margin_seconds=margin, clock=lambda: NOW
    )
    return cache, store, refresher


@pytest.mark.asyncio
async def test_valid_token_is_served_without_refresh():
    cache, _, refresher = await _cache(_credential(expires_in=3600))

    assert await cache.get_access_token("user-1", Platform.GOOGLE) == "old"
    assert await cache.get_access_token("user-1", "google") == "old"
    assert refresher.calls == 0


@pytest.mark.asyncio
async def test_token_inside_margin_is_refreshed_and_persisted():
    cache, store, refresher = await _cache(_credential(expires_in=30), margin=60)

    token = await cache.get_access_token("user-1", Platform.GOOGLE)

    assert token == "fresh-1"
    assert refresher.calls == 1
    stored = await store.get_credential("user-1", Platform.GOOGLE)
    assert stored.access_token == "fresh-1"
    assert stored.is_valid


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_refresh():
    cache, _, refresher = await _cache(_credential(expires_in=-10))

    tokens = await asyncio.gather(
        *(cache.get_access_token("user-1", Platform.GOOGLE) for _ in range(20))
    )

    assert refresher.calls == 1
    assert set(tokens) == {"fresh-1"}


@pytest.mark.asyncio
async def test_refresh_failure_reaches_every_waiter():
    refresher = CountingRefresher(fail=CredentialRefreshError("invalid_grant"))
    cache, _, _ = await _cache(_credential(expires_in=-10), refresher=refresher)

    results = await asyncio.gather(
        *(cache.get_access_token("user-1", Platform.GOOGLE) for _ in range(5)),
        return_exceptions=True,
    )

    assert refresher.calls == 1
    assert all(isinstance(r, CredentialRefreshError) for r in results)


class GatedRefresher:
    """Blocks inside ``refresh`` until released."""

    def __init__(self):
        self.calls = 0
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def refresh(self, credential: Credential) -> Credential:
        self.calls += 1
        self.entered.set()
        await self.release.wait()
        return credential.model_copy(
            update={"access_token": "fresh", "expires_at": NOW + timedelta(hours=1)}
        )


@pytest.mark.asyncio
async def test_cancelled_caller_does_not_cancel_other_waiters():
    refresher = GatedRefresher()
    cache, store, _ = await _cache(_credential(expires_in=-10), refresher=refresher)

    first = asyncio.create_task(cache.get_access_token("user-1", Platform.GOOGLE))
    await refresher.entered.wait()
    second = asyncio.create_task(cache.get_access_token("user-1", Platform.GOOGLE))
    await asyncio.sleep(0)

    first.cancel()
    with pytest.raises(asyncio.CancelledError):
        await first
    refresher.release.set()

    assert await second == "fresh"
    assert refresher.calls == 1
    assert (await store.get_credential("user-1", Platform.GOOGLE)).access_token == "fresh"


@pytest.mark.asyncio
async def test_missing_credential_is_an_auth_error():
    cache, _, refresher = await _cache()

    with pytest.raises(AuthenticationError) as exc_info:
        await cache.get_access_token("user-1", Platform.GOOGLE)

    assert not isinstance(exc_info.value, CredentialRevokedError)
    assert refresher.calls == 0


@pytest.mark.asyncio
async def test_missing_refresher_is_an_auth_error():
    cache, _, _ = await _cache(
        Credential(
            user_id="user-1",
            platform=Platform.META,
            access_token="meta-old",
            expires_at=NOW - timedelta(minutes=1),
        )
    )
    with pytest.raises(AuthenticationError):
        await cache.get_access_token("user-1", Platform.META)


@pytest.mark.asyncio
async def test_invalidate_forces_a_refresh():
    cache, _, refresher = await _cache(_credential())
    assert await cache.get_access_token("user-1", Platform.GOOGLE) == "old"

    cache.invalidate("user-1", Platform.GOOGLE, "old")

    assert await cache.get_access_token("user-1", Platform.GOOGLE) == "fresh-1"
    assert refresher.calls == 1


@pytest.mark.asyncio
async def test_stale_invalidate_is_ignored():
    cache, _, refresher = await _cache(_credential())
    await cache.get_access_token("user-1", Platform.GOOGLE)
    cache.invalidate("user-1", Platform.GOOGLE, "old")
    assert await cache.get_access_token("user-1", Platform.GOOGLE) == "fresh-1"

    # A second request that also failed with the old token arrives late
    cache.invalidate("user-1", Platform.GOOGLE, "old")

    assert await cache.get_access_token("user-1", Platform.GOOGLE) == "fresh-1"
    assert refresher.calls == 1


@pytest.mark.asyncio
async def test_revoked_credential_is_never_refreshed():
    cache, store, refresher = await _cache(_credential())
    assert await cache.get_access_token("user-1", Platform.GOOGLE) == "old"

    await cache.revoke("user-1", Platform.GOOGLE)

    with pytest.raises(CredentialRevokedError):
        await cache.get_access_token("user-1", Platform.GOOGLE)
    assert refresher.calls == 0
    stored = await store.get_credential("user-1", Platform.GOOGLE)
    assert stored.is_valid is False


@pytest.mark.asyncio
async def test_connect_replaces_the_cached_token():
    cache, store, _ = await _cache(_credential())
    await cache.get_access_token("user-1", Platform.GOOGLE)

    await cache.connect(_credential(token="reconnected"))

    assert await cache.get_access_token("user-1", Platform.GOOGLE) == "reconnected"
    history = store.credentials[("user-1", Platform.GOOGLE)]
    assert [c.is_valid for c in history] == [False, True]


@pytest.mark.asyncio
async def test_issue_missing_mints_a_token():
    store = InMemorySyncStore()
    refresher = CountingRefresher()
    cache = TokenCache(
        store, {Platform.GOOGLE: refresher}, clock=lambda: NOW, issue_missing=True
    )

    assert await cache.get_access_token("user-9", Platform.GOOGLE) == "fresh-1"


@pytest.mark.asyncio
async def test_revoked_grant_marks_credential_invalid():
    refresher = CountingRefresher(fail=CredentialRevokedError("invalid_grant"))
    cache, store, _ = await _cache(_credential(expires_in=10), refresher)

    with pytest.raises(CredentialRevokedError):
        await cache.get_access_token("user-1", Platform.GOOGLE)

    stored = await store.get_credential("user-1", Platform.GOOGLE)
    assert stored.is_valid is False
    with pytest.raises(CredentialRevokedError):
        await cache.get_access_token("user-1", Platform.GOOGLE)
    assert refresher.calls == 1
