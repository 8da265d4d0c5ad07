"""Persistence contract for ads, bindings, credentials, metrics and circuits.

The orchestrator and the credential cache only depend on ``SyncStore``.
``InMemorySyncStore`` backs tests and dry runs; ``SqlSyncStore`` maps the
same contract onto the SQLAlchemy models in ``adsync.models``.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adsync import models
from adsync.platforms.base import (
    Credential,
    DateRange,
    MetricsRow,
    Platform,
    PlatformBinding,
    UnifiedAd,
)
from adsync.services.metrics import MetricSnapshot, ReconcileSummary, collapse_rows, reconcile_row

logger = logging.getLogger(__name__)


def _aware(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo; every stored timestamp is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _to_datetime(epoch: float | None) -> datetime | None:
    return datetime.fromtimestamp(epoch, tz=timezone.utc) if epoch is not None else None


def _to_epoch(value: datetime | None) -> float | None:
    value = _aware(value)
    return value.timestamp() if value is not None else None


class SyncStore(ABC):
    @abstractmethod
    async def load_ad(self, ad_id: uuid.UUID) -> UnifiedAd | None: ...

    @abstractmethod
    async def save_ad(self, ad: UnifiedAd) -> UnifiedAd: ...

    @abstractmethod
    async def get_binding(self, ad_id: uuid.UUID, platform: Platform) -> PlatformBinding | None:
        """Return the live (non-archived) binding, if any."""

    @abstractmethod
    async def list_bindings(
        self, ad_id: uuid.UUID, *, include_archived: bool = False
    ) -> list[PlatformBinding]: ...

    @abstractmethod
    async def save_binding(self, binding: PlatformBinding) -> PlatformBinding:
        """Upsert the live binding for (ad, platform).

        Saving a binding with ``archived_at`` set archives the live row; the
        next save for the same pair starts a new one.
        """

    @abstractmethod
    async def get_credential(self, user_id: str, platform: Platform) -> Credential | None:
        """Return the newest credential, valid or not."""

    @abstractmethod
    async def save_credential(self, credential: Credential) -> Credential:
        """Store ``credential`` as the newest and invalidate older ones."""

    @abstractmethod
    async def save_metrics(self, ad_id: uuid.UUID, rows: list[MetricsRow]) -> ReconcileSummary: ...

    @abstractmethod
    async def list_metrics(
        self, ad_id: uuid.UUID, date_range: DateRange | None = None
    ) -> list[MetricSnapshot]: ...

    @abstractmethod
    async def save_circuit_states(self, states: list[dict[str, Any]]) -> None: ...

    @abstractmethod
    async def load_circuit_states(self) -> list[dict[str, Any]]: ...


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class InMemorySyncStore(SyncStore):
    def __init__(self) -> None:
        self.ads: dict[uuid.UUID, UnifiedAd] = {}
        self.bindings: dict[tuple[uuid.UUID, Platform], PlatformBinding] = {}
        self.archived_bindings: list[PlatformBinding] = []
        self.credentials: dict[tuple[str, Platform], list[Credential]] = {}
        self.metrics: dict[tuple[uuid.UUID, Platform, Any], MetricSnapshot] = {}
        self.circuit_states: dict[tuple[str, str], dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def load_ad(self, ad_id: uuid.UUID) -> UnifiedAd | None:
        ad = self.ads.get(ad_id)
        return ad.model_copy(deep=True) if ad else None

    async def save_ad(self, ad: UnifiedAd) -> UnifiedAd:
        self.ads[ad.id] = ad.model_copy(deep=True)
        return ad

    async def get_binding(self, ad_id: uuid.UUID, platform: Platform) -> PlatformBinding | None:
        binding = self.bindings.get((ad_id, Platform(platform)))
        return binding.model_copy(deep=True) if binding else None

    async def list_bindings(
        self, ad_id: uuid.UUID, *, include_archived: bool = False
    ) -> list[PlatformBinding]:
        live = [b for (a, _), b in self.bindings.items() if a == ad_id]
        if include_archived:
            live += [b for b in self.archived_bindings if b.ad_id == ad_id]
        return [b.model_copy(deep=True) for b in live]

    async def save_binding(self, binding: PlatformBinding) -> PlatformBinding:
        key = (binding.ad_id, binding.platform)
        async with self._lock:
            if binding.archived_at is not None:
                self.bindings.pop(key, None)
                self.archived_bindings.append(binding.model_copy(deep=True))
            else:
                self.bindings[key] = binding.model_copy(deep=True)
        return binding

    async def get_credential(self, user_id: str, platform: Platform) -> Credential | None:
        history = self.credentials.get((user_id, Platform(platform)))
        return history[-1].model_copy() if history else None

    async def save_credential(self, credential: Credential) -> Credential:
        async with self._lock:
            history = self.credentials.setdefault((credential.user_id, credential.platform), [])
            for i, old in enumerate(history):
                history[i] = old.model_copy(update={"is_valid": False})
            history.append(credential.model_copy())
        return credential

    async def save_metrics(self, ad_id: uuid.UUID, rows: list[MetricsRow]) -> ReconcileSummary:
        counts = {"inserted": 0, "updated": 0, "unchanged": 0}
        async with self._lock:
            for row in collapse_rows(rows):
                key = (ad_id, row.platform, row.day)
                snapshot, outcome = reconcile_row(ad_id, self.metrics.get(key), row)
                self.metrics[key] = snapshot
                counts[outcome] += 1
        return ReconcileSummary(**counts)

    async def list_metrics(
        self, ad_id: uuid.UUID, date_range: DateRange | None = None
    ) -> list[MetricSnapshot]:
        snapshots = [
            s
            for (a, _, day), s in self.metrics.items()
            if a == ad_id and (date_range is None or date_range.start <= day <= date_range.end)
        ]
        return sorted(snapshots, key=lambda s: (s.platform.value, s.day))

    async def save_circuit_states(self, states: list[dict[str, Any]]) -> None:
        for state in states:
            self.circuit_states[(state["platform"], state["endpoint"])] = dict(state)

    async def load_circuit_states(self) -> list[dict[str, Any]]:
        return [dict(s) for s in self.circuit_states.values()]


# ---------------------------------------------------------------------------
# SQLAlchemy
# ---------------------------------------------------------------------------


def _binding_from_record(record: models.PlatformBindingRecord) -> PlatformBinding:
    return PlatformBinding(
        ad_id=record.ad_id,
        platform=Platform(record.platform),
        native_campaign_id=record.native_campaign_id,
        native_status=record.native_status,
        external_ids=dict(record.external_ids or {}),
        last_synced_at=_aware(record.last_synced_at),
        last_error=record.last_error,
        last_error_kind=record.last_error_kind,
        archived_at=_aware(record.archived_at),
    )


def _snapshot_from_record(record: models.MetricSnapshotRecord) -> MetricSnapshot:
    return MetricSnapshot(
        ad_id=record.ad_id,
        platform=Platform(record.platform),
        native_campaign_id=record.native_campaign_id,
        day=record.day,
        impressions=record.impressions,
        clicks=record.clicks,
        spend=record.spend,
        conversions=record.conversions,
        conversion_value=record.conversion_value,
        version=record.version,
    )


class SqlSyncStore(SyncStore):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def load_ad(self, ad_id: uuid.UUID) -> UnifiedAd | None:
        async with self._session_factory() as session:
            record = await session.get(models.Ad, ad_id)
            return UnifiedAd.model_validate(record.ad_json) if record else None

    async def save_ad(self, ad: UnifiedAd) -> UnifiedAd:
        async with self._session_factory() as session:
            record = await session.get(models.Ad, ad.id)
            if record is None:
                record = models.Ad(id=ad.id, user_id=ad.user_id)
                session.add(record)
            record.name = ad.name
            record.status = ad.status.value
            record.ad_json = ad.model_dump(mode="json")
            await session.commit()
        return ad

    async def _live_binding(
        self, session: AsyncSession, ad_id: uuid.UUID, platform: Platform
    ) -> models.PlatformBindingRecord | None:
        result = await session.execute(
            select(models.PlatformBindingRecord).where(
                models.PlatformBindingRecord.ad_id == ad_id,
                models.PlatformBindingRecord.platform == Platform(platform).value,
                models.PlatformBindingRecord.archived_at.is_(None),
            )
        )
        return result.scalar_one_or_none()

    async def get_binding(self, ad_id: uuid.UUID, platform: Platform) -> PlatformBinding | None:
        async with self._session_factory() as session:
            record = await self._live_binding(session, ad_id, platform)
            return _binding_from_record(record) if record else None

    async def list_bindings(
        self, ad_id: uuid.UUID, *, include_archived: bool = False
    ) -> list[PlatformBinding]:
        stmt = select(models.PlatformBindingRecord).where(
            models.PlatformBindingRecord.ad_id == ad_id
        )
        if not include_archived:
            stmt = stmt.where(models.PlatformBindingRecord.archived_at.is_(None))
        async with self._session_factory() as session:
            result = await session.execute(stmt.order_by(models.PlatformBindingRecord.created_at))
            return [_binding_from_record(r) for r in result.scalars().all()]

    async def save_binding(self, binding: PlatformBinding) -> PlatformBinding:
        async with self._session_factory() as session:
            record = await self._live_binding(session, binding.ad_id, binding.platform)
            if record is None:
                record = models.PlatformBindingRecord(
                    ad_id=binding.ad_id, platform=binding.platform.value
                )
                session.add(record)
            record.native_campaign_id = binding.native_campaign_id
            record.native_status = binding.native_status
            record.external_ids = dict(binding.external_ids)
            record.last_synced_at = binding.last_synced_at
            record.last_error = binding.last_error
            record.last_error_kind = binding.last_error_kind.value if binding.last_error_kind else None
            record.archived_at = binding.archived_at
            await session.commit()
        return binding

    async def get_credential(self, user_id: str, platform: Platform) -> Credential | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(models.PlatformCredentialRecord)
                .where(
                    models.PlatformCredentialRecord.user_id == user_id,
                    models.PlatformCredentialRecord.platform == Platform(platform).value,
                )
                .order_by(
                    models.PlatformCredentialRecord.created_at.desc(),
                    models.PlatformCredentialRecord.is_valid.desc(),
                )
                .limit(1)
            )
            record = result.scalar_one_or_none()
            if record is None:
                return None
            return Credential(
                user_id=record.user_id,
                platform=Platform(record.platform),
                access_token=record.access_token,
                refresh_token=record.refresh_token,
                expires_at=_aware(record.expires_at),
                is_valid=record.is_valid,
            )

    async def save_credential(self, credential: Credential) -> Credential:
        async with self._session_factory() as session:
            await session.execute(
                update(models.PlatformCredentialRecord)
                .where(
                    models.PlatformCredentialRecord.user_id == credential.user_id,
                    models.PlatformCredentialRecord.platform == credential.platform.value,
                )
                .values(is_valid=False)
            )
            session.add(
                models.PlatformCredentialRecord(
                    user_id=credential.user_id,
                    platform=credential.platform.value,
                    access_token=credential.access_token,
                    refresh_token=credential.refresh_token,
                    expires_at=credential.expires_at,
                    is_valid=credential.is_valid,
                    created_at=datetime.now(timezone.utc),
                )
            )
            await session.commit()
        return credential

    async def save_metrics(self, ad_id: uuid.UUID, rows: list[MetricsRow]) -> ReconcileSummary:
        rows = collapse_rows(rows)
        if not rows:
            return ReconcileSummary()
        counts = {"inserted": 0, "updated": 0, "unchanged": 0}
        async with self._session_factory() as session:
            result = await session.execute(
                select(models.MetricSnapshotRecord).where(
                    models.MetricSnapshotRecord.ad_id == ad_id,
                    models.MetricSnapshotRecord.platform.in_(
                        sorted({r.platform.value for r in rows})
                    ),
                    models.MetricSnapshotRecord.day.in_(sorted({r.day for r in rows})),
                )
            )
            existing = {(r.platform, r.day): r for r in result.scalars().all()}

            for row in rows:
                record = existing.get((row.platform.value, row.day))
                current = _snapshot_from_record(record) if record else None
                snapshot, outcome = reconcile_row(ad_id, current, row)
                counts[outcome] += 1
                if outcome == "unchanged":
                    continue
                if record is None:
                    record = models.MetricSnapshotRecord(
                        ad_id=ad_id, platform=row.platform.value, day=row.day
                    )
                    session.add(record)
                record.native_campaign_id = snapshot.native_campaign_id
                record.impressions = snapshot.impressions
                record.clicks = snapshot.clicks
                record.spend = snapshot.spend
                record.conversions = snapshot.conversions
                record.conversion_value = snapshot.conversion_value
                record.version = snapshot.version
            await session.commit()

        logger.info("Reconciled metrics", extra={"ad_id": str(ad_id), **counts})
        return ReconcileSummary(**counts)

    async def list_metrics(
        self, ad_id: uuid.UUID, date_range: DateRange | None = None
    ) -> list[MetricSnapshot]:
        stmt = select(models.MetricSnapshotRecord).where(models.MetricSnapshotRecord.ad_id == ad_id)
        if date_range is not None:
            stmt = stmt.where(
                models.MetricSnapshotRecord.day >= date_range.start,
                models.MetricSnapshotRecord.day <= date_range.end,
            )
        stmt = stmt.order_by(models.MetricSnapshotRecord.platform, models.MetricSnapshotRecord.day)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_snapshot_from_record(r) for r in result.scalars().all()]

    async def save_circuit_states(self, states: list[dict[str, Any]]) -> None:
        async with self._session_factory() as session:
            for state in states:
                result = await session.execute(
                    select(models.CircuitBreakerStateRecord).where(
                        models.CircuitBreakerStateRecord.platform == state["platform"],
                        models.CircuitBreakerStateRecord.endpoint == state["endpoint"],
                    )
                )
                record = result.scalar_one_or_none()
                if record is None:
                    record = models.CircuitBreakerStateRecord(
                        platform=state["platform"], endpoint=state["endpoint"]
                    )
                    session.add(record)
                record.state = state["state"]
                record.consecutive_failures = state.get("consecutive_failures", 0)
                record.last_failure_time = _to_datetime(state.get("last_failure_time"))
                record.opened_at = _to_datetime(state.get("opened_at"))
            await session.commit()

    async def load_circuit_states(self) -> list[dict[str, Any]]:
        async with self._session_factory() as session:
            result = await session.execute(select(models.CircuitBreakerStateRecord))
            return [
                {
                    "platform": r.platform,
                    "endpoint": r.endpoint,
                    "state": r.state,
                    "consecutive_failures": r.consecutive_failures,
                    "last_failure_time": _to_epoch(r.last_failure_time),
                    "opened_at": _to_epoch(r.opened_at),
                }
                for r in result.scalars().all()
            ]
