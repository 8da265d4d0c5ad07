"""Token-bucket rate limiting per (platform, endpoint).

``admit`` never blocks: it refills the bucket from the elapsed monotonic
time, then either spends ``cost`` tokens or reports how long the caller has to
wait.  ``acquire`` is the waiting convenience built on top of it.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from adsync.platforms.exceptions import RateLimitedError
from adsync.settings import RateLimitPolicy, Settings, settings as default_settings

logger = logging.getLogger(__name__)

PolicyLookup = Callable[[str, str], RateLimitPolicy]

# Absorbs float drift so a caller that waited exactly wait_ms is admitted.
_EPSILON = 1e-9


@dataclass(frozen=True)
class Admission:
    granted: bool
    wait_ms: int = 0


@dataclass
class RateBudget:
    platform: str
    endpoint: str
    capacity: float
    refill_rate: float
    tokens: float
    last_refill: float
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    def refill(self, now: float) -> None:
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = max(self.last_refill, now)


class RateLimiter:
    def __init__(
        self,
        policy_for: PolicyLookup | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        settings: Settings | None = None,
    ) -> None:
        cfg = settings or default_settings
        self._policy_for = policy_for or cfg.rate_limit_for
        self._clock = clock
        self._sleep = sleep
        self._buckets: dict[tuple[str, str], RateBudget] = {}

    def _bucket(self, platform: str, endpoint: str) -> RateBudget:
        key = (platform, endpoint)
        bucket = self._buckets.get(key)
        if bucket is None:
            policy = self._policy_for(platform, endpoint)
            bucket = RateBudget(
                platform=platform,
                endpoint=endpoint,
                capacity=policy.capacity,
                refill_rate=policy.refill_rate,
                tokens=policy.capacity,
                last_refill=self._clock(),
            )
            self._buckets[key] = bucket
        return bucket

    async def admit(self, platform: str, endpoint: str, cost: float = 1) -> Admission:
        """Spend ``cost`` tokens now, or say how many ms until that is possible."""
        bucket = self._bucket(platform, endpoint)
        if cost <= 0:
            raise ValueError("cost must be positive")
        if cost > bucket.capacity:
            raise ValueError(
                f"cost {cost} exceeds bucket capacity {bucket.capacity} "
                f"for {platform}:{endpoint}"
            )

        async with bucket.lock:
            bucket.refill(self._clock())
            if bucket.tokens + _EPSILON >= cost:
                bucket.tokens = max(0.0, bucket.tokens - cost)
                return Admission(granted=True)
            missing = cost - bucket.tokens
            wait_ms = max(1, math.ceil(missing / bucket.refill_rate * 1000))
            return Admission(granted=False, wait_ms=wait_ms)

    async def acquire(
        self,
        platform: str,
        endpoint: str,
        cost: float = 1,
        *,
        max_wait: float | None = None,
    ) -> float:
        """Wait until ``cost`` tokens are admitted; returns seconds waited.

        Raises ``RateLimitedError`` when the next wait would push the total
        beyond ``max_wait`` seconds.
        """
        waited = 0.0
        while True:
            admission = await self.admit(platform, endpoint, cost)
            if admission.granted:
                return waited
            delay = admission.wait_ms / 1000
            if max_wait is not None and waited + delay > max_wait:
                logger.warning(
                    "Local rate limit wait exceeds budget",
                    extra={"platform": platform, "endpoint": endpoint, "wait_ms": admission.wait_ms},
                )
                raise RateLimitedError(
                    f"local rate limit for {platform}:{endpoint}",
                    {"platform": platform, "endpoint": endpoint, "local": True},
                    retry_after=delay,
                )
            await self._sleep(delay)
            waited += delay

    def snapshot(self) -> list[dict[str, float | str]]:
        return [
            {
                "platform": b.platform,
                "endpoint": b.endpoint,
                "capacity": b.capacity,
                "refill_rate": b.refill_rate,
                "tokens": b.tokens,
            }
            for b in self._buckets.values()
        ]
