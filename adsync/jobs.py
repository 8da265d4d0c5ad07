"""Queue-callable units of work.

Each job takes plain, serialisable arguments so it can be handed to any task
queue or run inline from the API.  All jobs in a process share one
orchestrator, which owns the rate budgets and circuit state.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date
from functools import lru_cache

from adsync.db import get_session_factory
from adsync.platforms.base import DateRange, NativeStatus, Platform, SyncResult
from adsync.platforms.factory import build_token_refreshers
from adsync.services.credentials import TokenCache
from adsync.services.orchestrator import MetricsRefreshResult, SyncOrchestrator
from adsync.services.storage import SqlSyncStore, SyncStore
from adsync.settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class AdNotFoundError(LookupError):
    pass


def build_orchestrator(
    store: SyncStore, *, dry_run: bool | None = None, settings: Settings | None = None
) -> SyncOrchestrator:
    cfg = settings or default_settings
    dry = cfg.USE_DRY_RUN_EXECUTION if dry_run is None else dry_run
    tokens = TokenCache(
        store,
        build_token_refreshers(dry_run=dry, settings=cfg),
        issue_missing=dry,
        settings=cfg,
    )
    return SyncOrchestrator(store, tokens, dry_run=dry, settings=cfg)


@lru_cache(maxsize=1)
def get_orchestrator() -> SyncOrchestrator:
    return build_orchestrator(SqlSyncStore(get_session_factory()))


async def _load(orchestrator: SyncOrchestrator, ad_id: uuid.UUID):
    ad = await orchestrator.store.load_ad(ad_id)
    if ad is None:
        raise AdNotFoundError(f"Ad {ad_id} not found")
    return ad


async def run_sync_job(
    ad_id: uuid.UUID | str,
    platforms: list[str] | None = None,
    *,
    orchestrator: SyncOrchestrator | None = None,
) -> SyncResult:
    orch = orchestrator or get_orchestrator()
    ad = await _load(orch, uuid.UUID(str(ad_id)))
    result = await orch.sync(ad, [Platform(p) for p in platforms] if platforms else None)
    logger.info(
        "Sync job finished",
        extra={
            "ad_id": str(ad.id),
            "succeeded": [r.platform.value for r in result.results if r.success],
            "failed": [r.platform.value for r in result.failures],
        },
    )
    return result


async def run_status_job(
    ad_id: uuid.UUID | str,
    status: str,
    platforms: list[str] | None = None,
    *,
    orchestrator: SyncOrchestrator | None = None,
) -> SyncResult:
    orch = orchestrator or get_orchestrator()
    ad = await _load(orch, uuid.UUID(str(ad_id)))
    return await orch.set_status(
        ad, NativeStatus(status), [Platform(p) for p in platforms] if platforms else None
    )


async def run_metrics_job(
    ad_id: uuid.UUID | str,
    start: date | str,
    end: date | str,
    *,
    orchestrator: SyncOrchestrator | None = None,
) -> MetricsRefreshResult:
    orch = orchestrator or get_orchestrator()
    ad = await _load(orch, uuid.UUID(str(ad_id)))
    return await orch.refresh_metrics(ad.id, DateRange(start=start, end=end))
