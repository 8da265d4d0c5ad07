from datetime import date
from decimal import Decimal

from pydantic import BaseModel, model_validator

from adsync.platforms.base import NativeStatus, Platform, SyncResult
from adsync.services.metrics import MetricSnapshot, ReconcileSummary


class SyncRequest(BaseModel):
    platforms: list[Platform] | None = None


class StatusRequest(BaseModel):
    status: NativeStatus
    platforms: list[Platform] | None = None


class MetricsRequest(BaseModel):
    start: date
    end: date

    @model_validator(mode="after")
    def _check_order(self) -> "MetricsRequest":
        if self.end < self.start:
            raise ValueError("end must not be before start")
        return self


class MetricsOut(BaseModel):
    result: SyncResult
    summary: ReconcileSummary
    snapshots: list[MetricSnapshot]
    totals: dict[str, Decimal | int]


class CancelOut(BaseModel):
    cancelled: int


class CircuitOut(BaseModel):
    platform: str
    endpoint: str
    state: str
    consecutive_failures: int
    last_failure_time: float | None = None
    opened_at: float | None = None
