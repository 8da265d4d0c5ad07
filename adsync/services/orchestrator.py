"""Fan a unified ad out to every targeted platform and reconcile the outcomes.

Each platform runs in its own task and shares no fate with the others: a
mapping error, an open circuit or an exhausted retry on one platform becomes
a failed ``DeploymentResult`` for that platform only.

Per platform the call path is::

    mapper.to_native -> CircuitBreaker.execute -> RetryHandler.execute
        -> per attempt: token cache -> rate limiter -> native call (deadline)
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
import uuid
from collections.abc import Awaitable, Callable, Iterable, Mapping
from datetime import datetime, timezone
from typing import Any, TypeVar

from pydantic import BaseModel

from adsync.platforms.base import (
    AdStatus,
    DateRange,
    DeploymentResult,
    ErrorDetail,
    MetricsRow,
    NativeCampaignRef,
    NativeStatus,
    Platform,
    PlatformBinding,
    PlatformConnector,
    SyncOperation,
    SyncResult,
    UnifiedAd,
)
from adsync.platforms.exceptions import (
    CredentialRefreshError,
    CredentialRevokedError,
    MappingValidationError,
    NativeObjectMissingError,
    PlatformError,
    SyncCancelledError,
    ValidationError,
    classify_exception,
)
from adsync.platforms.factory import get_connector
from adsync.platforms.mapping import NativeMapping
from adsync.services.credentials import TokenCache
from adsync.services.metrics import ReconcileSummary
from adsync.services.resilience import CircuitBreaker, RateLimiter, RetryHandler, RetryResult
from adsync.services.storage import SyncStore
from adsync.settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_PLATFORMS = (Platform.GOOGLE, Platform.META)

NATIVE_TO_AD_STATUS = {
    NativeStatus.ACTIVE: AdStatus.ACTIVE,
    NativeStatus.PAUSED: AdStatus.PAUSED,
}


class MetricsRefreshResult(BaseModel):
    result: SyncResult
    summary: ReconcileSummary


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _unique(platforms: Iterable[Platform | str]) -> list[Platform]:
    seen: list[Platform] = []
    for p in platforms:
        p = Platform(p)
        if p not in seen:
            seen.append(p)
    return seen


class SyncOrchestrator:
    def __init__(
        self,
        store: SyncStore,
        token_cache: TokenCache,
        *,
        connectors: Mapping[Platform, PlatformConnector] | None = None,
        rate_limiter: RateLimiter | None = None,
        breaker: CircuitBreaker | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
        dry_run: bool | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or default_settings
        self._dry_run = dry_run
        self._store = store
        self._tokens = token_cache
        self._connectors: dict[Platform, PlatformConnector] = dict(connectors or {})
        self._limiter = rate_limiter or RateLimiter(settings=self._settings, sleep=sleep)
        self._breaker = breaker or CircuitBreaker(settings=self._settings)
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._tasks: dict[uuid.UUID, set[asyncio.Task]] = {}

    @property
    def store(self) -> SyncStore:
        return self._store

    @property
    def tokens(self) -> TokenCache:
        return self._tokens

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._limiter

    def connector(self, platform: Platform) -> PlatformConnector:
        connector = self._connectors.get(platform)
        if connector is None:
            connector = get_connector(platform, dry_run=self._dry_run, settings=self._settings)
            self._connectors[platform] = connector
        return connector

    # ------------------------------------------------------------------
    # Resilient call path
    # ------------------------------------------------------------------

    async def _call(
        self,
        platform: Platform,
        operation: SyncOperation,
        user_id: str,
        native_call: Callable[[str, int], Awaitable[T]],
    ) -> RetryResult[T]:
        """Run ``native_call(access_token, attempt)`` behind breaker and retries."""
        endpoint = operation.value
        cfg = self._settings
        retry = RetryHandler(
            cfg.retry_policy_for(platform.value, endpoint), sleep=self._sleep, rng=self._rng
        )
        attempt_no = 0
        last_token: str | None = None

        async def attempt() -> T:
            nonlocal attempt_no, last_token
            attempt_no += 1
            last_token = await self._tokens.get_access_token(user_id, platform)
            await self._limiter.acquire(
                platform.value, endpoint, max_wait=cfg.MAX_RATE_LIMIT_WAIT_SECONDS
            )
            async with asyncio.timeout(cfg.CALL_TIMEOUT_SECONDS):
                return await native_call(last_token, attempt_no)

        async def on_auth_failure(error: PlatformError) -> None:
            if isinstance(error, (CredentialRevokedError, CredentialRefreshError)):
                raise error
            if last_token is not None:
                self._tokens.invalidate(user_id, platform, last_token)

        return await self._breaker.execute(
            platform.value,
            endpoint,
            lambda: retry.execute(
                attempt,
                on_auth_failure=on_auth_failure,
                label=f"{platform.value} {endpoint}",
            ),
        )

    @staticmethod
    def _create_call(
        connector: PlatformConnector, mapping: NativeMapping, idempotency_key: str
    ) -> Callable[[str, int], Awaitable[NativeCampaignRef]]:
        async def native_call(token: str, attempt: int) -> NativeCampaignRef:
            if attempt > 1:
                # An earlier attempt may have created it before failing.
                existing = await connector.find_campaign(mapping, access_token=token)
                if existing is not None:
                    logger.info(
                        "Recovered campaign from earlier attempt",
                        extra={
                            "platform": mapping.platform.value,
                            "native_id": existing.native_id,
                        },
                    )
                    return existing
            return await connector.create_campaign(
                mapping, access_token=token, idempotency_key=idempotency_key
            )

        return native_call

    @staticmethod
    def _update_call(
        connector: PlatformConnector, mapping: NativeMapping, binding: PlatformBinding
    ) -> Callable[[str, int], Awaitable[NativeCampaignRef]]:
        async def native_call(token: str, attempt: int) -> NativeCampaignRef:
            return await connector.update_campaign(binding, mapping, access_token=token)

        return native_call

    def _failure(
        self,
        platform: Platform,
        operation: SyncOperation,
        error: PlatformError,
        started: float,
        dropped_fields: Iterable[str] = (),
    ) -> DeploymentResult:
        return DeploymentResult(
            platform=platform,
            operation=operation,
            success=False,
            error=ErrorDetail.from_exception(error),
            attempts=error.attempts,
            elapsed_ms=int((time.monotonic() - started) * 1000),
            dropped_fields=tuple(dropped_fields),
        )

    async def _record_error(
        self, ad_id: uuid.UUID, platform: Platform, error: PlatformError, *, archive: bool = False
    ) -> None:
        binding = await self._store.get_binding(ad_id, platform) or PlatformBinding(
            ad_id=ad_id, platform=platform
        )
        now = _utcnow()
        await self._store.save_binding(
            binding.model_copy(
                update={
                    "last_synced_at": now,
                    "last_error": error.message,
                    "last_error_kind": error.kind,
                    "archived_at": now if archive else binding.archived_at,
                }
            )
        )

    async def _run_platforms(
        self,
        ad_id: uuid.UUID,
        operation: SyncOperation,
        platforms: list[Platform],
        run: Callable[[Platform], Awaitable[DeploymentResult]],
    ) -> SyncResult:
        tasks = {
            platform: asyncio.create_task(
                run(platform), name=f"{operation.value}:{ad_id}:{platform.value}"
            )
            for platform in platforms
        }
        registry = self._tasks.setdefault(ad_id, set())
        registry.update(tasks.values())
        started = time.monotonic()
        try:
            outcomes = await asyncio.gather(*tasks.values(), return_exceptions=True)
        finally:
            registry.difference_update(tasks.values())
            if not registry:
                self._tasks.pop(ad_id, None)

        results: list[DeploymentResult] = []
        for platform, outcome in zip(tasks, outcomes):
            if isinstance(outcome, DeploymentResult):
                results.append(outcome)
                continue
            if isinstance(outcome, asyncio.CancelledError):
                error: PlatformError = SyncCancelledError(f"{operation.value} cancelled")
                error.attempts = 0
            else:
                logger.error(
                    "Unhandled error in %s for %s",
                    operation.value,
                    platform.value,
                    exc_info=outcome,
                )
                error = classify_exception(outcome)
            await self._record_error(ad_id, platform, error)
            results.append(self._failure(platform, operation, error, started))

        await self.persist_circuits()
        return SyncResult(ad_id=ad_id, operation=operation, results=tuple(results))

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync(
        self, ad: UnifiedAd, platforms: Iterable[Platform | str] | None = None
    ) -> SyncResult:
        """Create or update ``ad`` on every platform in ``platforms``."""
        targets = _unique(platforms or DEFAULT_PLATFORMS)
        logger.info(
            "Syncing ad",
            extra={"ad_id": str(ad.id), "platforms": [p.value for p in targets]},
        )
        result = await self._run_platforms(
            ad.id, SyncOperation.UPDATE, targets, lambda p: self._deploy(ad, p)
        )
        # The aggregate reports the most significant operation performed.
        operation = (
            SyncOperation.CREATE
            if any(r.operation == SyncOperation.CREATE for r in result.results)
            else SyncOperation.UPDATE
        )
        return result.model_copy(update={"operation": operation})

    async def _deploy(self, ad: UnifiedAd, platform: Platform) -> DeploymentResult:
        started = time.monotonic()
        binding = await self._store.get_binding(ad.id, platform)
        operation = (
            SyncOperation.UPDATE if binding is not None and binding.is_live else SyncOperation.CREATE
        )
        dropped: list[str] = []

        try:
            connector = self.connector(platform)
            mapping = connector.mapper.to_native(ad)
        except MappingValidationError as exc:
            exc.attempts = 0
            logger.warning(
                "Ad cannot be mapped to %s: %s",
                platform.value,
                exc.message,
                extra={"ad_id": str(ad.id)},
            )
            await self._record_error(ad.id, platform, exc)
            return self._failure(platform, operation, exc, started)
        dropped = list(mapping.dropped_fields)

        if operation == SyncOperation.CREATE:
            native_call = self._create_call(connector, mapping, f"{ad.id}:{platform.value}")
        else:
            native_call = self._update_call(connector, mapping, binding)

        try:
            outcome = await self._call(platform, operation, ad.user_id, native_call)
        except NativeObjectMissingError as exc:
            logger.warning(
                "Bound campaign is gone, archiving binding",
                extra={"ad_id": str(ad.id), "platform": platform.value},
            )
            await self._record_error(ad.id, platform, exc, archive=True)
            return self._failure(platform, operation, exc, started, dropped)
        except Exception as exc:
            error = classify_exception(exc)
            if not isinstance(exc, PlatformError):
                logger.exception("Unexpected error syncing to %s", platform.value)
            logger.warning(
                "Sync to %s failed: %s",
                platform.value,
                error.message,
                extra={"ad_id": str(ad.id), "error_kind": error.kind.value},
            )
            await self._record_error(ad.id, platform, error)
            return self._failure(platform, operation, error, started, dropped)

        ref = outcome.value
        now = _utcnow()
        base = binding if operation == SyncOperation.UPDATE and binding else PlatformBinding(
            ad_id=ad.id, platform=platform
        )
        await self._store.save_binding(
            base.model_copy(
                update={
                    "native_campaign_id": ref.native_id,
                    "native_status": ref.native_status,
                    "external_ids": {**base.external_ids, **ref.external_ids},
                    "last_synced_at": now,
                    "last_error": None,
                    "last_error_kind": None,
                    "archived_at": None,
                }
            )
        )
        logger.info(
            "Synced ad to %s",
            platform.value,
            extra={"ad_id": str(ad.id), "native_id": ref.native_id, "attempts": outcome.attempts},
        )
        return DeploymentResult(
            platform=platform,
            operation=operation,
            success=True,
            native_id=ref.native_id,
            native_status=ref.native_status,
            attempts=outcome.attempts,
            elapsed_ms=int((time.monotonic() - started) * 1000),
            dropped_fields=tuple(dropped),
        )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def set_status(
        self,
        ad: UnifiedAd,
        status: NativeStatus | str,
        platforms: Iterable[Platform | str] | None = None,
    ) -> SyncResult:
        status = NativeStatus(status)
        if platforms is None:
            targets = [b.platform for b in await self._store.list_bindings(ad.id) if b.is_live]
        else:
            targets = _unique(platforms)
        result = await self._run_platforms(
            ad.id,
            SyncOperation.SET_STATUS,
            targets,
            lambda p: self._set_platform_status(ad, p, status),
        )
        if result.success:
            await self._store.save_ad(ad.model_copy(update={"status": NATIVE_TO_AD_STATUS[status]}))
        return result

    async def pause(
        self, ad: UnifiedAd, platforms: Iterable[Platform | str] | None = None
    ) -> SyncResult:
        return await self.set_status(ad, NativeStatus.PAUSED, platforms)

    async def resume(
        self, ad: UnifiedAd, platforms: Iterable[Platform | str] | None = None
    ) -> SyncResult:
        return await self.set_status(ad, NativeStatus.ACTIVE, platforms)

    async def _set_platform_status(
        self, ad: UnifiedAd, platform: Platform, status: NativeStatus
    ) -> DeploymentResult:
        started = time.monotonic()
        operation = SyncOperation.SET_STATUS
        binding = await self._store.get_binding(ad.id, platform)
        if binding is None or not binding.is_live:
            error = ValidationError(
                f"Ad is not deployed on {platform.value}", {"platform": platform.value}
            )
            error.attempts = 0
            return self._failure(platform, operation, error, started)

        try:
            connector = self.connector(platform)
            outcome = await self._call(
                platform,
                operation,
                ad.user_id,
                lambda token, _attempt: connector.set_status(binding, status, access_token=token),
            )
        except NativeObjectMissingError as exc:
            await self._record_error(ad.id, platform, exc, archive=True)
            return self._failure(platform, operation, exc, started)
        except Exception as exc:
            error = classify_exception(exc)
            if not isinstance(exc, PlatformError):
                logger.exception("Unexpected error setting status on %s", platform.value)
            await self._record_error(ad.id, platform, error)
            return self._failure(platform, operation, error, started)

        ref = outcome.value
        await self._store.save_binding(
            binding.model_copy(
                update={
                    "native_status": ref.native_status or status.value,
                    "last_synced_at": _utcnow(),
                    "last_error": None,
                    "last_error_kind": None,
                }
            )
        )
        return DeploymentResult(
            platform=platform,
            operation=operation,
            success=True,
            native_id=binding.native_campaign_id,
            native_status=ref.native_status or status.value,
            attempts=outcome.attempts,
            elapsed_ms=int((time.monotonic() - started) * 1000),
        )

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    async def fetch_metrics(
        self, binding: PlatformBinding, date_range: DateRange, *, user_id: str | None = None
    ) -> list[MetricsRow]:
        """Fetch unified daily metrics for one binding; raises ``PlatformError``."""
        if not binding.is_live:
            raise ValidationError(
                f"Binding on {binding.platform.value} is not live",
                {"ad_id": str(binding.ad_id)},
            )
        if user_id is None:
            ad = await self._store.load_ad(binding.ad_id)
            if ad is None:
                raise ValidationError("Unknown ad", {"ad_id": str(binding.ad_id)})
            user_id = ad.user_id

        connector = self.connector(binding.platform)
        outcome = await self._call(
            binding.platform,
            SyncOperation.FETCH_METRICS,
            user_id,
            lambda token, _attempt: connector.fetch_metrics(
                binding, date_range, access_token=token
            ),
        )
        return connector.mapper.metrics_from_native(binding.native_campaign_id, outcome.value)

    async def refresh_metrics(
        self, ad_id: uuid.UUID, date_range: DateRange
    ) -> MetricsRefreshResult:
        """Fetch every live binding's metrics and reconcile them into storage."""
        ad = await self._store.load_ad(ad_id)
        if ad is None:
            raise ValidationError("Unknown ad", {"ad_id": str(ad_id)})
        bindings = {b.platform: b for b in await self._store.list_bindings(ad_id) if b.is_live}
        summaries: list[ReconcileSummary] = []

        async def run(platform: Platform) -> DeploymentResult:
            started = time.monotonic()
            binding = bindings[platform]
            try:
                rows = await self.fetch_metrics(binding, date_range, user_id=ad.user_id)
            except NativeObjectMissingError as exc:
                await self._record_error(ad_id, platform, exc, archive=True)
                return self._failure(platform, SyncOperation.FETCH_METRICS, exc, started)
            except Exception as exc:
                error = classify_exception(exc)
                if not isinstance(exc, PlatformError):
                    logger.exception("Unexpected error fetching metrics from %s", platform.value)
                return self._failure(platform, SyncOperation.FETCH_METRICS, error, started)
            summaries.append(await self._store.save_metrics(ad_id, rows))
            return DeploymentResult(
                platform=platform,
                operation=SyncOperation.FETCH_METRICS,
                success=True,
                native_id=binding.native_campaign_id,
                native_status=binding.native_status,
                elapsed_ms=int((time.monotonic() - started) * 1000),
            )

        result = await self._run_platforms(
            ad_id, SyncOperation.FETCH_METRICS, list(bindings), run
        )
        summary = sum(summaries, ReconcileSummary())
        return MetricsRefreshResult(result=result, summary=summary)

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def cancel(self, ad_id: uuid.UUID) -> int:
        """Cancel in-flight platform tasks for ``ad_id``; returns how many."""
        tasks = [t for t in self._tasks.get(ad_id, ()) if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            logger.info("Cancelled in-flight sync", extra={"ad_id": str(ad_id), "tasks": len(tasks)})
        return len(tasks)

    async def persist_circuits(self) -> None:
        await self._store.save_circuit_states(self._breaker.snapshot())

    async def restore_circuits(self) -> None:
        self._breaker.restore(await self._store.load_circuit_states())

    def circuit_snapshot(self) -> list[dict[str, Any]]:
        return self._breaker.snapshot()

    async def close(self) -> None:
        for connector in self._connectors.values():
            await connector.close()
