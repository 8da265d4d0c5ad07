from __future__ import annotations

import random
from decimal import Decimal
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from adsync import models  # noqa: F401  -- ensure all models are registered
from adsync.db import Base
from adsync.platforms.base import (
    AdStatus,
    BudgetSpec,
    CreativeSpec,
    Platform,
    PlatformConnector,
    TargetingSpec,
    UnifiedAd,
)
from adsync.platforms.oauth import StaticTokenRefresher
from adsync.services.credentials import TokenCache
from adsync.services.orchestrator import SyncOrchestrator
from adsync.services.resilience import CircuitBreaker, RateLimiter
from adsync.services.storage import InMemorySyncStore, SyncStore
from adsync.settings import RateLimitPolicy


# ---------------------------------------------------------------------------
# Time doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Manually advanced clock in seconds."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SleepRecorder:
    """Stands in for ``asyncio.sleep``; records delays and moves a clock."""

    def __init__(self, clock: FakeClock | None = None):
        self.delays: list[float] = []
        self.clock = clock

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds)


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_ad(**overrides: Any) -> UnifiedAd:
    """A unified ad that maps cleanly onto every platform."""
    defaults: dict[str, Any] = {
        "user_id": "user-1",
        "name": "Spring Coffee Sale",
        "objective": "traffic",
        "creative": CreativeSpec(
            headlines=["Fresh Coffee Daily", "Roasted This Week", "Order In Minutes"],
            descriptions=["Small batch beans shipped fast.", "Free shipping over $30."],
            call_to_action="shop_now",
            asset_refs=["img-hash-1"],
            landing_url="https://example.com/coffee",
        ),
        "targeting": TargetingSpec(countries=["US"], languages=["en"], keywords=["coffee"]),
        "budget": BudgetSpec(amount=Decimal("50.00")),
        "status": AdStatus.ACTIVE,
        "platform_overrides": {Platform.META: {"page_id": "page-1"}},
    }
    defaults.update(overrides)
    return UnifiedAd(**defaults)


def build_orchestrator(
    connectors: dict[Platform, PlatformConnector],
    *,
    store: SyncStore | None = None,
    breaker: CircuitBreaker | None = None,
    rate_limiter: RateLimiter | None = None,
    sleep: SleepRecorder | None = None,
) -> tuple[SyncOrchestrator, SyncStore, SleepRecorder]:
    store = store or InMemorySyncStore()
    sleep = sleep or SleepRecorder()
    unlimited = RateLimitPolicy(capacity=1000, refill_rate=1000)
    rate_limiter = rate_limiter or RateLimiter(lambda platform, endpoint: unlimited, sleep=sleep)
    refresher = StaticTokenRefresher()
    tokens = TokenCache(store, {p: refresher for p in Platform}, issue_missing=True)
    orchestrator = SyncOrchestrator(
        store,
        tokens,
        connectors=connectors,
        rate_limiter=rate_limiter,
        breaker=breaker,
        sleep=sleep,
        rng=random.Random(7),
    )
    return orchestrator, store, sleep


# ---------------------------------------------------------------------------
# Async test DB
# ---------------------------------------------------------------------------


def setup_async_test_db():
    """Create an in-memory async SQLite engine and session factory."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingAsyncSession = async_sessionmaker(
        bind=engine, class_=AsyncSession, expire_on_commit=False
    )
    return engine, TestingAsyncSession


async def create_tables(engine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
