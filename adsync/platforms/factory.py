from __future__ import annotations

from typing import Callable

from adsync.platforms.base import Platform, PlatformConnector
from adsync.platforms.dry_run import DryRunConnector
from adsync.platforms.oauth import (
    GoogleTokenRefresher,
    MetaTokenRefresher,
    StaticTokenRefresher,
    TokenRefresher,
)
from adsync.settings import Settings, settings as default_settings

ConnectorFactory = Callable[[Settings], PlatformConnector]


def _google(cfg: Settings) -> PlatformConnector:
    from adsync.platforms.google_ads import GoogleAdsConnector

    return GoogleAdsConnector(
        developer_token=cfg.GOOGLE_ADS_DEVELOPER_TOKEN,
        customer_id=cfg.GOOGLE_ADS_CUSTOMER_ID,
        login_customer_id=cfg.GOOGLE_ADS_LOGIN_CUSTOMER_ID or None,
        timeout_seconds=cfg.CALL_TIMEOUT_SECONDS,
    )


def _meta(cfg: Settings) -> PlatformConnector:
    from adsync.platforms.meta_ads import MetaAdsConnector

    return MetaAdsConnector(
        app_id=cfg.META_APP_ID,
        app_secret=cfg.META_APP_SECRET,
        ad_account_id=cfg.META_AD_ACCOUNT_ID,
        page_id=cfg.META_PAGE_ID,
        api_version=cfg.META_API_VERSION,
    )


# Platform tag -> connector variant.  Adding a platform means adding an entry
# here; the orchestrator never changes.
CONNECTOR_REGISTRY: dict[Platform, ConnectorFactory] = {
    Platform.GOOGLE: _google,
    Platform.META: _meta,
    Platform.DRY_RUN: lambda cfg: DryRunConnector(),
}


def register_connector(platform: Platform, factory: ConnectorFactory) -> None:
    CONNECTOR_REGISTRY[platform] = factory


def get_connector(
    platform: Platform | str,
    *,
    dry_run: bool | None = None,
    settings: Settings | None = None,
) -> PlatformConnector:
    """Return the connector variant for ``platform``.

    When dry_run is on, every platform gets a ``DryRunConnector`` tagged with
    the requested platform.
    """
    cfg = settings or default_settings
    platform = Platform(platform)
    if cfg.USE_DRY_RUN_EXECUTION if dry_run is None else dry_run:
        return DryRunConnector(platform)

    factory = CONNECTOR_REGISTRY.get(platform)
    if factory is None:
        raise NotImplementedError(f"No connector registered for {platform.value}")
    return factory(cfg)


def build_connectors(
    platforms: list[Platform] | None = None,
    *,
    dry_run: bool | None = None,
    settings: Settings | None = None,
) -> dict[Platform, PlatformConnector]:
    targets = platforms or [p for p in CONNECTOR_REGISTRY if p != Platform.DRY_RUN]
    return {
        Platform(p): get_connector(p, dry_run=dry_run, settings=settings) for p in targets
    }


def build_token_refreshers(
    *, dry_run: bool | None = None, settings: Settings | None = None
) -> dict[Platform, TokenRefresher]:
    cfg = settings or default_settings
    if cfg.USE_DRY_RUN_EXECUTION if dry_run is None else dry_run:
        static = StaticTokenRefresher()
        return {platform: static for platform in Platform}
    return {
        Platform.GOOGLE: GoogleTokenRefresher(
            client_id=cfg.GOOGLE_OAUTH_CLIENT_ID,
            client_secret=cfg.GOOGLE_OAUTH_CLIENT_SECRET,
        ),
        Platform.META: MetaTokenRefresher(
            app_id=cfg.META_APP_ID,
            app_secret=cfg.META_APP_SECRET,
            api_version=cfg.META_API_VERSION,
        ),
        Platform.DRY_RUN: StaticTokenRefresher(),
    }
