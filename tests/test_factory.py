"""Tests for connector and refresher selection."""

import pytest

from adsync.jobs import AdNotFoundError, build_orchestrator, run_sync_job
from adsync.platforms.base import Platform, SyncOperation
from adsync.platforms.dry_run import DryRunConnector
from adsync.platforms.factory import (
    build_connectors,
    build_token_refreshers,
    get_connector,
    register_connector,
)
from adsync.platforms.google_ads import GoogleAdsConnector
from adsync.platforms.meta_ads import MetaAdsConnector
from adsync.platforms.oauth import GoogleTokenRefresher, MetaTokenRefresher, StaticTokenRefresher
from adsync.services.storage import InMemorySyncStore
from adsync.settings import Settings
from tests.conftest import make_ad

LIVE = Settings(
    USE_DRY_RUN_EXECUTION=False,
    GOOGLE_ADS_DEVELOPER_TOKEN="dev",
    GOOGLE_ADS_CUSTOMER_ID="123-456-7890",
    META_APP_ID="app",
    META_APP_SECRET="secret",
    META_AD_ACCOUNT_ID="act_1",
    META_PAGE_ID="page_1",
)


def test_dry_run_connector_is_tagged_with_platform():
    connector = get_connector("meta", dry_run=True)

    assert isinstance(connector, DryRunConnector)
    assert connector.platform == Platform.META


def test_live_connectors_from_settings():
    google = get_connector(Platform.GOOGLE, settings=LIVE)
    meta = get_connector(Platform.META, settings=LIVE)

    assert isinstance(google, GoogleAdsConnector)
    assert google.customer_id == "1234567890"
    assert isinstance(meta, MetaAdsConnector)
    assert meta.mapper.page_id == "page_1"


def test_build_connectors_skips_dry_run_platform():
    connectors = build_connectors(dry_run=True)

    assert set(connectors) == {Platform.GOOGLE, Platform.META}


def test_register_connector_overrides_variant():
    custom = DryRunConnector(Platform.DRY_RUN, id_prefix="custom")
    register_connector(Platform.DRY_RUN, lambda cfg: custom)
    try:
        assert get_connector(Platform.DRY_RUN, settings=LIVE) is custom
    finally:
        register_connector(Platform.DRY_RUN, lambda cfg: DryRunConnector())


def test_refreshers_per_mode():
    dry = build_token_refreshers(dry_run=True)
    assert all(isinstance(r, StaticTokenRefresher) for r in dry.values())
    assert set(dry) == set(Platform)

    live = build_token_refreshers(settings=LIVE)
    assert isinstance(live[Platform.GOOGLE], GoogleTokenRefresher)
    assert isinstance(live[Platform.META], MetaTokenRefresher)


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_sync_job_in_dry_run_mode():
    store = InMemorySyncStore()
    orchestrator = build_orchestrator(store, dry_run=True)
    ad = await store.save_ad(make_ad())

    result = await run_sync_job(str(ad.id), ["google", "meta"], orchestrator=orchestrator)

    assert result.operation == SyncOperation.CREATE
    assert all(r.success for r in result.results)
    assert len(await store.list_bindings(ad.id)) == 2


@pytest.mark.asyncio
async def test_sync_job_unknown_ad():
    orchestrator = build_orchestrator(InMemorySyncStore(), dry_run=True)

    with pytest.raises(AdNotFoundError):
        await run_sync_job(make_ad().id, orchestrator=orchestrator)
