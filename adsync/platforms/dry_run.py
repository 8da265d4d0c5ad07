from __future__ import annotations

import random
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import Any

from adsync.platforms.base import (
    AdStatus,
    DateRange,
    MetricsRow,
    NativeCampaignRef,
    NativeStatus,
    Platform,
    PlatformBinding,
    PlatformConnector,
    UnifiedAd,
)
from adsync.platforms.exceptions import NativeObjectMissingError, PlatformError
from adsync.platforms.mapping import NativeMapping, PlatformMapper


class DryRunMapper(PlatformMapper):
    """Lossless mapper: the native payload is the unified ad itself."""

    def __init__(self, platform: Platform = Platform.DRY_RUN) -> None:
        self.platform = platform

    def to_native(self, ad: UnifiedAd) -> NativeMapping:
        problems: list[str] = []
        if not ad.name.strip():
            problems.append("name is required")
        self._fail_if(problems)
        payload = ad.model_dump(mode="json", exclude={"id", "user_id", "platform_overrides"})
        payload = self._apply_overrides(payload, ad.overrides_for(self.platform))
        return NativeMapping(platform=self.platform, payload=payload)

    def from_native(self, payload: dict[str, Any]) -> dict[str, Any]:
        return dict(payload)

    def metrics_from_native(
        self, native_campaign_id: str, rows: list[dict[str, Any]]
    ) -> list[MetricsRow]:
        return [
            MetricsRow(platform=self.platform, native_campaign_id=native_campaign_id, **row)
            for row in rows
        ]


class DryRunConnector(PlatformConnector):
    """Simulates platform API calls with realistic fake responses.

    Used for development, testing, and dry-run validation of sync flows
    before connecting real platform APIs.  ``failures`` is a queue of errors
    raised by the next calls, one per call, to rehearse outages.
    """

    def __init__(
        self,
        platform: Platform = Platform.DRY_RUN,
        *,
        failures: list[PlatformError] | None = None,
        id_prefix: str = "dry-run",
    ) -> None:
        self.platform = platform  # type: ignore[misc]
        self.mapper = DryRunMapper(platform)
        self.failures: list[PlatformError] = list(failures or [])
        self.id_prefix = id_prefix
        self.calls: list[str] = []
        self.campaigns: dict[str, dict[str, Any]] = {}
        self._created: dict[str, str] = {}  # idempotency key -> native id

    def _record(self, operation: str) -> None:
        self.calls.append(operation)
        if self.failures:
            raise self.failures.pop(0)

    def _require(self, binding: PlatformBinding) -> dict[str, Any]:
        campaign = self.campaigns.get(binding.native_campaign_id or "")
        if campaign is None:
            raise NativeObjectMissingError(
                f"Campaign {binding.native_campaign_id} not found",
                {"native_campaign_id": binding.native_campaign_id},
            )
        return campaign

    async def create_campaign(
        self, mapping: NativeMapping, *, access_token: str, idempotency_key: str
    ) -> NativeCampaignRef:
        self._record("create_campaign")

        # Idempotency: return the campaign already created for this key
        native_id = self._created.get(idempotency_key)
        if native_id in self.campaigns:
            return NativeCampaignRef(
                native_id=native_id,
                native_status=self.campaigns[native_id]["status"],
                external_ids={"campaign": native_id},
                raw_response={"note": "idempotent_replay"},
            )

        native_id = f"{self.id_prefix}-{uuid.uuid4().hex[:8]}"
        status = (
            NativeStatus.ACTIVE.value
            if mapping.payload.get("status") == AdStatus.ACTIVE.value
            else NativeStatus.PAUSED.value
        )
        self.campaigns[native_id] = {"payload": mapping.payload, "status": status}
        self._created[idempotency_key] = native_id
        return NativeCampaignRef(
            native_id=native_id,
            native_status=status,
            external_ids={"campaign": native_id},
            raw_response={"dry_run": True, "name": mapping.payload.get("name")},
        )

    async def update_campaign(
        self, binding: PlatformBinding, mapping: NativeMapping, *, access_token: str
    ) -> NativeCampaignRef:
        self._record("update_campaign")
        campaign = self._require(binding)
        campaign["payload"] = mapping.payload
        if mapping.payload.get("status") in (AdStatus.ACTIVE.value, AdStatus.PAUSED.value):
            campaign["status"] = mapping.payload["status"]
        return NativeCampaignRef(
            native_id=binding.native_campaign_id,
            native_status=campaign["status"],
            external_ids=dict(binding.external_ids),
            raw_response={"dry_run": True, "status": "updated"},
        )

    async def set_status(
        self, binding: PlatformBinding, status: NativeStatus, *, access_token: str
    ) -> NativeCampaignRef:
        self._record("set_status")
        campaign = self._require(binding)
        campaign["status"] = status.value
        return NativeCampaignRef(
            native_id=binding.native_campaign_id,
            native_status=status.value,
            external_ids=dict(binding.external_ids),
            raw_response={"status": status.value, "dry_run": True},
        )

    async def fetch_metrics(
        self, binding: PlatformBinding, date_range: DateRange, *, access_token: str
    ) -> list[dict[str, Any]]:
        self._record("fetch_metrics")
        self._require(binding)
        rng = random.Random(binding.native_campaign_id)
        rows: list[dict[str, Any]] = []
        day = date_range.start
        while day <= date_range.end:
            impressions = rng.randint(500, 5000)
            clicks = rng.randint(5, max(6, impressions // 50))
            rows.append(
                {
                    "day": day,
                    "impressions": impressions,
                    "clicks": clicks,
                    "spend": (Decimal(clicks) * Decimal("0.45")).quantize(Decimal("0.01")),
                    "conversions": Decimal(rng.randint(0, max(1, clicks // 10))),
                    "conversion_value": Decimal("0"),
                }
            )
            day += timedelta(days=1)
        return rows
