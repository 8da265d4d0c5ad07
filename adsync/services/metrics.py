"""Daily metric reconciliation.

Platforms keep revising recent days (late conversions, invalid-click refunds),
so a refetch of a day that is already stored is not a duplicate.  Snapshots
are keyed by (ad, platform, day): a refetch with different figures overwrites
the row and bumps ``version``; identical figures leave it untouched.
"""

from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import date
from decimal import Decimal

from pydantic import BaseModel

from adsync.platforms.base import MetricsRow, Platform

COMPARED_FIELDS = ("impressions", "clicks", "spend", "conversions", "conversion_value")


class MetricSnapshot(BaseModel):
    ad_id: uuid.UUID
    platform: Platform
    native_campaign_id: str
    day: date
    impressions: int = 0
    clicks: int = 0
    spend: Decimal = Decimal("0")
    conversions: Decimal = Decimal("0")
    conversion_value: Decimal = Decimal("0")
    version: int = 1


class ReconcileSummary(BaseModel):
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0

    def __add__(self, other: "ReconcileSummary") -> "ReconcileSummary":
        return ReconcileSummary(
            inserted=self.inserted + other.inserted,
            updated=self.updated + other.updated,
            unchanged=self.unchanged + other.unchanged,
        )


def _same_figures(snapshot: MetricSnapshot, row: MetricsRow) -> bool:
    # Decimal equality ignores trailing zeros, so 1.50 == 1.5
    return all(getattr(snapshot, f) == getattr(row, f) for f in COMPARED_FIELDS)


def reconcile_row(
    ad_id: uuid.UUID, existing: MetricSnapshot | None, row: MetricsRow
) -> tuple[MetricSnapshot, str]:
    """Merge one fetched row into the stored snapshot for its day.

    Returns the snapshot to store and one of ``inserted``, ``updated`` or
    ``unchanged``.
    """
    if existing is None:
        return (
            MetricSnapshot(ad_id=ad_id, version=1, **row.model_dump()),
            "inserted",
        )
    if _same_figures(existing, row) and existing.native_campaign_id == row.native_campaign_id:
        return existing, "unchanged"
    return (
        MetricSnapshot(ad_id=ad_id, version=existing.version + 1, **row.model_dump()),
        "updated",
    )


def collapse_rows(rows: list[MetricsRow]) -> list[MetricsRow]:
    """Sum rows that share (platform, day).

    Some report endpoints split a day across segments (devices, placements);
    the stored grain is one row per day.
    """
    grouped: dict[tuple[Platform, date], list[MetricsRow]] = defaultdict(list)
    for row in rows:
        grouped[(row.platform, row.day)].append(row)

    collapsed: list[MetricsRow] = []
    for (platform, day), group in grouped.items():
        if len(group) == 1:
            collapsed.append(group[0])
            continue
        collapsed.append(
            MetricsRow(
                platform=platform,
                native_campaign_id=group[0].native_campaign_id,
                day=day,
                impressions=sum(r.impressions for r in group),
                clicks=sum(r.clicks for r in group),
                spend=sum((r.spend for r in group), Decimal("0")),
                conversions=sum((r.conversions for r in group), Decimal("0")),
                conversion_value=sum((r.conversion_value for r in group), Decimal("0")),
            )
        )
    return sorted(collapsed, key=lambda r: (r.platform.value, r.day))


def totals(snapshots: list[MetricSnapshot]) -> dict[str, Decimal | int]:
    """Cross-platform totals for a reporting window."""
    return {
        "impressions": sum(s.impressions for s in snapshots),
        "clicks": sum(s.clicks for s in snapshots),
        "spend": sum((s.spend for s in snapshots), Decimal("0")),
        "conversions": sum((s.conversions for s in snapshots), Decimal("0")),
        "conversion_value": sum((s.conversion_value for s in snapshots), Decimal("0")),
    }
