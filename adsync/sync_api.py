import uuid

from fastapi import APIRouter, Depends, HTTPException

from adsync.jobs import (
    AdNotFoundError,
    get_orchestrator,
    run_metrics_job,
    run_status_job,
    run_sync_job,
)
from adsync.platforms.base import DateRange, PlatformBinding, SyncResult, UnifiedAd
from adsync.services.metrics import totals
from adsync.services.orchestrator import SyncOrchestrator
from adsync.sync_schemas import (
    CancelOut,
    CircuitOut,
    MetricsOut,
    MetricsRequest,
    StatusRequest,
    SyncRequest,
)

sync_router = APIRouter(prefix="/api/sync", tags=["sync"])


async def _require_ad(orchestrator: SyncOrchestrator, ad_id: uuid.UUID) -> UnifiedAd:
    ad = await orchestrator.store.load_ad(ad_id)
    if ad is None:
        raise HTTPException(status_code=404, detail="Ad not found")
    return ad


@sync_router.post("/ads", response_model=UnifiedAd)
async def save_ad(
    payload: UnifiedAd,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Create or replace a unified ad. Nothing is pushed to platforms yet."""
    return await orchestrator.store.save_ad(payload)


@sync_router.post("/ads/{ad_id}", response_model=SyncResult)
async def sync_ad(
    ad_id: uuid.UUID,
    payload: SyncRequest | None = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Create or update the ad on each requested platform."""
    platforms = payload.platforms if payload else None
    try:
        return await run_sync_job(
            ad_id, [p.value for p in platforms] if platforms else None, orchestrator=orchestrator
        )
    except AdNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Ad not found") from exc


@sync_router.post("/ads/{ad_id}/status", response_model=SyncResult)
async def set_ad_status(
    ad_id: uuid.UUID,
    payload: StatusRequest,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    try:
        return await run_status_job(
            ad_id,
            payload.status.value,
            [p.value for p in payload.platforms] if payload.platforms else None,
            orchestrator=orchestrator,
        )
    except AdNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Ad not found") from exc


@sync_router.post("/ads/{ad_id}/cancel", response_model=CancelOut)
async def cancel_sync(
    ad_id: uuid.UUID,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    return CancelOut(cancelled=orchestrator.cancel(ad_id))


@sync_router.get("/ads/{ad_id}/bindings", response_model=list[PlatformBinding])
async def list_bindings(
    ad_id: uuid.UUID,
    include_archived: bool = False,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    await _require_ad(orchestrator, ad_id)
    return await orchestrator.store.list_bindings(ad_id, include_archived=include_archived)


@sync_router.post("/ads/{ad_id}/metrics", response_model=MetricsOut)
async def refresh_metrics(
    ad_id: uuid.UUID,
    payload: MetricsRequest,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Fetch daily metrics from every live binding and reconcile them."""
    try:
        refreshed = await run_metrics_job(
            ad_id, payload.start, payload.end, orchestrator=orchestrator
        )
    except AdNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Ad not found") from exc

    snapshots = await orchestrator.store.list_metrics(
        ad_id, DateRange(start=payload.start, end=payload.end)
    )
    return MetricsOut(
        result=refreshed.result,
        summary=refreshed.summary,
        snapshots=snapshots,
        totals=totals(snapshots),
    )


@sync_router.get("/circuits", response_model=list[CircuitOut])
async def list_circuits(
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    return [CircuitOut(**state) for state in orchestrator.circuit_snapshot()]
