"""Bounded retries with exponential backoff for one platform operation."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from adsync.platforms.exceptions import ErrorKind, PlatformError, classify_exception
from adsync.settings import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Unknown failures are retried at most this many times before surfacing.
UNKNOWN_RETRY_LIMIT = 1


@dataclass(frozen=True)
class RetryResult(Generic[T]):
    value: T
    attempts: int
    elapsed_ms: int


class RetryHandler:
    """Runs an operation up to ``max_attempts`` times.

    Failures are classified with ``classify_exception`` and only retryable
    kinds are re-attempted.  An authentication failure triggers
    ``on_auth_failure`` (a token refresh) and one extra attempt that does not
    count against ``max_attempts``.  When the handler gives up, the last
    classified error is raised with ``attempts`` set on it.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._rng = rng or random.Random()

    def backoff_delay(self, retry_number: int, error: PlatformError | None = None) -> float:
        """Seconds to wait before retry ``retry_number`` (1-based)."""
        if error is not None and error.retry_after is not None:
            return error.retry_after
        base = self.policy.base_delay_ms / 1000 * (2 ** (retry_number - 1))
        base = min(base, self.policy.max_delay_ms / 1000)
        return base + self._rng.uniform(0, base * self.policy.jitter_ratio)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        on_auth_failure: Callable[[PlatformError], Awaitable[None]] | None = None,
        label: str = "operation",
    ) -> RetryResult[T]:
        started = time.monotonic()
        attempts = 0
        unknown_retries = 0
        auth_retry_used = False

        while True:
            attempts += 1
            try:
                value = await operation()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                error = classify_exception(exc)
                error.attempts = attempts

                if error.kind == ErrorKind.AUTHENTICATION:
                    if on_auth_failure is None or auth_retry_used:
                        raise error from (exc if error is not exc else None)
                    auth_retry_used = True
                    logger.info("Refreshing credentials after auth failure in %s", label)
                    await on_auth_failure(error)
                    attempts -= 1  # the auth retry is free
                    continue

                if not error.retryable:
                    raise error from (exc if error is not exc else None)
                if error.kind == ErrorKind.UNKNOWN:
                    if unknown_retries >= UNKNOWN_RETRY_LIMIT:
                        raise error from (exc if error is not exc else None)
                    unknown_retries += 1
                if attempts >= self.policy.max_attempts:
                    logger.warning(
                        "%s failed after %d attempts: %s", label, attempts, error.message
                    )
                    raise error from (exc if error is not exc else None)

                delay = self.backoff_delay(attempts, error)
                logger.info(
                    "Retrying %s after %s error",
                    label,
                    error.kind.value,
                    extra={"attempt": attempts, "delay_seconds": round(delay, 3)},
                )
                await self._sleep(delay)
                continue

            return RetryResult(
                value=value,
                attempts=attempts,
                elapsed_ms=int((time.monotonic() - started) * 1000),
            )
