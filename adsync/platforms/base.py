from __future__ import annotations

import enum
import uuid
from abc import ABC, abstractmethod
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, ClassVar

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_validator,
    model_validator,
)

from adsync.platforms.exceptions import ErrorKind, PlatformError

if TYPE_CHECKING:
    from adsync.platforms.mapping import NativeMapping, PlatformMapper


class Platform(str, enum.Enum):
    GOOGLE = "google"
    META = "meta"
    DRY_RUN = "dry_run"


class AdStatus(str, enum.Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class NativeStatus(str, enum.Enum):
    """Status values a connector can set on a platform campaign."""

    ACTIVE = "active"
    PAUSED = "paused"


class BudgetPeriod(str, enum.Enum):
    DAILY = "daily"
    LIFETIME = "lifetime"


class SyncOperation(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    SET_STATUS = "set_status"
    FETCH_METRICS = "fetch_metrics"


# ---------------------------------------------------------------------------
# Unified ad
# ---------------------------------------------------------------------------


class CreativeSpec(BaseModel):
    headlines: list[str] = Field(default_factory=list)
    descriptions: list[str] = Field(default_factory=list)
    call_to_action: str | None = None
    asset_refs: list[str] = Field(default_factory=list)  # ordered
    landing_url: str | None = None

    @field_validator("call_to_action")
    @classmethod
    def _canonical_cta(cls, value: str | None) -> str | None:
        # Stored lower-case ("shop_now"); platforms apply their own casing.
        return (value or "").strip().lower() or None


class TargetingSpec(BaseModel):
    countries: list[str] = Field(default_factory=list)  # ISO 3166 alpha-2
    languages: list[str] = Field(default_factory=list)  # ISO 639-1
    age_min: int | None = None
    age_max: int | None = None
    genders: list[str] = Field(default_factory=list)  # "male" | "female"
    interests: list[str] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)


class BudgetSpec(BaseModel):
    amount: Decimal = Field(gt=0)
    currency: str = "USD"
    period: BudgetPeriod = BudgetPeriod.DAILY


class ScheduleSpec(BaseModel):
    start_date: date | None = None
    end_date: date | None = None

    @model_validator(mode="after")
    def _check_order(self) -> "ScheduleSpec":
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class UnifiedAd(BaseModel):
    """Canonical, platform-agnostic advertisement.

    Platform quirks go in ``platform_overrides`` only; every other field means
    the same thing on every platform.
    """

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    user_id: str
    name: str
    objective: str = "traffic"
    creative: CreativeSpec = Field(default_factory=CreativeSpec)
    targeting: TargetingSpec = Field(default_factory=TargetingSpec)
    budget: BudgetSpec
    schedule: ScheduleSpec = Field(default_factory=ScheduleSpec)
    status: AdStatus = AdStatus.DRAFT
    platform_overrides: dict[Platform, dict[str, Any]] = Field(default_factory=dict)

    def overrides_for(self, platform: Platform) -> dict[str, Any]:
        return dict(self.platform_overrides.get(platform, {}))


# ---------------------------------------------------------------------------
# Bindings, credentials, metrics
# ---------------------------------------------------------------------------


class PlatformBinding(BaseModel):
    """Link between a unified ad and the campaign realised on one platform."""

    ad_id: uuid.UUID
    platform: Platform
    native_campaign_id: str | None = None
    native_status: str | None = None
    external_ids: dict[str, str] = Field(default_factory=dict)
    last_synced_at: datetime | None = None
    last_error: str | None = None
    last_error_kind: ErrorKind | None = None
    archived_at: datetime | None = None

    @property
    def is_live(self) -> bool:
        return self.archived_at is None and self.native_campaign_id is not None


class Credential(BaseModel):
    user_id: str
    platform: Platform
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    is_valid: bool = True

    def expires_within(self, now: datetime, margin_seconds: float) -> bool:
        if self.expires_at is None:
            return False
        return (self.expires_at - now).total_seconds() <= margin_seconds


class DateRange(BaseModel):
    start: date
    end: date

    @model_validator(mode="after")
    def _check_order(self) -> "DateRange":
        if self.end < self.start:
            raise ValueError("end must not be before start")
        return self


class MetricsRow(BaseModel):
    """One day of unified campaign performance."""

    platform: Platform
    native_campaign_id: str
    day: date
    impressions: int = 0
    clicks: int = 0
    spend: Decimal = Decimal("0")
    conversions: Decimal = Decimal("0")
    conversion_value: Decimal = Decimal("0")


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: ErrorKind
    message: str
    retry_after: float | None = None

    @classmethod
    def from_exception(cls, exc: PlatformError) -> "ErrorDetail":
        return cls(kind=exc.kind, message=exc.message, retry_after=exc.retry_after)


class DeploymentResult(BaseModel):
    """Immutable outcome of one platform operation."""

    model_config = ConfigDict(frozen=True)

    platform: Platform
    operation: SyncOperation
    success: bool
    native_id: str | None = None
    native_status: str | None = None
    error: ErrorDetail | None = None
    attempts: int = 0
    elapsed_ms: int = 0
    dropped_fields: tuple[str, ...] = ()


class SyncResult(BaseModel):
    """Aggregated outcome of a sync across every targeted platform."""

    model_config = ConfigDict(frozen=True)

    ad_id: uuid.UUID
    operation: SyncOperation
    results: tuple[DeploymentResult, ...] = ()

    @computed_field  # type: ignore[prop-decorator]
    @property
    def success(self) -> bool:
        return any(r.success for r in self.results)

    @property
    def failures(self) -> list[DeploymentResult]:
        return [r for r in self.results if not r.success]

    def for_platform(self, platform: Platform | str) -> DeploymentResult | None:
        for r in self.results:
            if r.platform == platform:
                return r
        return None


# ---------------------------------------------------------------------------
# Connector capability
# ---------------------------------------------------------------------------


class NativeCampaignRef(BaseModel):
    """What a connector reports back after touching a native campaign."""

    native_id: str
    native_status: str | None = None
    external_ids: dict[str, str] = Field(default_factory=dict)
    raw_response: dict[str, Any] = Field(default_factory=dict)


class PlatformConnector(ABC):
    """Capability set every advertising platform variant implements.

    Connectors are registered per ``Platform`` tag in
    ``adsync.platforms.factory``; the orchestrator only ever talks to this
    interface.  Every method raises a classified ``PlatformError`` on failure
    and never returns a partial result.
    """

    platform: ClassVar[Platform]
    mapper: "PlatformMapper"

    @abstractmethod
    async def create_campaign(
        self, mapping: "NativeMapping", *, access_token: str, idempotency_key: str
    ) -> NativeCampaignRef:
        raise NotImplementedError

    @abstractmethod
    async def update_campaign(
        self, binding: PlatformBinding, mapping: "NativeMapping", *, access_token: str
    ) -> NativeCampaignRef:
        raise NotImplementedError

    @abstractmethod
    async def set_status(
        self, binding: PlatformBinding, status: NativeStatus, *, access_token: str
    ) -> NativeCampaignRef:
        raise NotImplementedError

    @abstractmethod
    async def fetch_metrics(
        self, binding: PlatformBinding, date_range: DateRange, *, access_token: str
    ) -> list[dict[str, Any]]:
        """Return raw native metric rows; the mapper turns them into ``MetricsRow``."""
        raise NotImplementedError

    async def find_campaign(
        self, mapping: "NativeMapping", *, access_token: str
    ) -> NativeCampaignRef | None:
        """Find a campaign an earlier, ambiguously failed create left behind."""
        return None

    async def close(self) -> None:
        return None
