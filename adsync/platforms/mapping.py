"""Shared pieces of the unified <-> native mapping layer.

Monetary amounts cross the mapping boundary exactly once: unified amounts are
``Decimal`` values in the account currency, native amounts are integers in the
platform's minor unit.  ``ROUND_HALF_EVEN`` is applied at that single
conversion and nowhere else.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Any

from pydantic import BaseModel, Field

from adsync.platforms.base import AdStatus, MetricsRow, Platform, UnifiedAd
from adsync.platforms.exceptions import MappingValidationError

MICROS_PER_UNIT = 1_000_000
CENTS_PER_UNIT = 100

# ---------------------------------------------------------------------------
# Objective mapping: internal name -> shared objective family
# ---------------------------------------------------------------------------

OBJECTIVE_ALIASES: dict[str, str] = {
    "conversions": "sales",
    "sales": "sales",
    "traffic": "traffic",
    "lead_generation": "leads",
    "leads": "leads",
    "awareness": "awareness",
    "brand_awareness": "awareness",
    "reach": "awareness",
    "engagement": "engagement",
    "video_views": "engagement",
    "app_installs": "app_promotion",
    "app_promotion": "app_promotion",
}


def to_minor_units(amount: Decimal, units_per_major: int) -> int:
    """Convert a decimal currency amount to integer minor units (half-even)."""
    scaled = Decimal(amount) * units_per_major
    return int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_EVEN))


def from_minor_units(value: int | str, units_per_major: int) -> Decimal:
    """Convert integer minor units back to an exact decimal amount."""
    return Decimal(int(value)) / Decimal(units_per_major)


class NativeMapping(BaseModel):
    """Result of mapping a unified ad to one platform's schema."""

    platform: Platform
    payload: dict[str, Any]
    dropped_fields: list[str] = Field(default_factory=list)


class PlatformMapper(ABC):
    """Deterministic, side-effect free unified <-> native translation."""

    platform: Platform

    @abstractmethod
    def to_native(self, ad: UnifiedAd) -> NativeMapping:
        """Map ``ad`` to the native payload.

        Raises ``MappingValidationError`` listing every required field that is
        missing or invalid.  Optional fields the platform cannot express are
        listed in ``NativeMapping.dropped_fields``.
        """

    @abstractmethod
    def from_native(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Inverse of ``to_native`` for the fields the platform supports."""

    @abstractmethod
    def metrics_from_native(
        self, native_campaign_id: str, rows: list[dict[str, Any]]
    ) -> list[MetricsRow]:
        """Translate native performance rows into unified daily metrics."""

    # ------------------------------------------------------------------
    # Helpers shared by variants
    # ------------------------------------------------------------------

    def _fail_if(self, problems: list[str]) -> None:
        if problems:
            raise MappingValidationError(self.platform.value, problems)

    @staticmethod
    def _objective_family(objective: str) -> str | None:
        return OBJECTIVE_ALIASES.get(objective.lower())

    @staticmethod
    def _lossy_fields(ad: UnifiedAd, stored_objective: str | None) -> list[str]:
        """Fields the platform keeps only in approximated form.

        ``stored_objective`` is what the platform retains of ``ad.objective``,
        ``None`` when it keeps nothing.
        """
        lossy: list[str] = []
        # Platforms hold running or paused campaigns; draft and archived map to paused.
        if ad.status not in (AdStatus.ACTIVE, AdStatus.PAUSED):
            lossy.append("status")
        if ad.objective != stored_objective:
            lossy.append("objective")
        return lossy

    @staticmethod
    def _apply_overrides(payload: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
        """Merge per-platform overrides last; nested dicts merge key by key."""
        merged = dict(payload)
        for key, value in overrides.items():
            if isinstance(value, dict) and isinstance(merged.get(key), dict):
                merged[key] = {**merged[key], **value}
            else:
                merged[key] = value
        return merged
