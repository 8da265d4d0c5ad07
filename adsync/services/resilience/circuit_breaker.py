"""Circuit breaker per (platform, endpoint).

closed -> open after ``failure_threshold`` consecutive counted failures.
open rejects with ``CircuitOpenError`` until the cool-down elapses; the next
call becomes the single half-open trial.  Trial success closes the circuit,
trial failure re-opens it with a fresh cool-down.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from adsync.platforms.exceptions import (
    BREAKER_COUNTED_KINDS,
    CircuitOpenError,
    classify_exception,
)
from adsync.settings import BreakerPolicy, Settings, settings as default_settings

logger = logging.getLogger(__name__)

T = TypeVar("T")
PolicyLookup = Callable[[str, str], BreakerPolicy]


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class Circuit:
    platform: str
    endpoint: str
    failure_threshold: int
    cooldown_seconds: float
    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    last_failure_time: float | None = None
    opened_at: float | None = None
    trial_in_flight: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    def open(self, now: float) -> None:
        self.state = CircuitState.OPEN
        self.opened_at = now
        self.trial_in_flight = False

    def close(self) -> None:
        self.state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.opened_at = None
        self.trial_in_flight = False

    def remaining_cooldown(self, now: float) -> float:
        if self.opened_at is None:
            return 0.0
        return max(0.0, self.opened_at + self.cooldown_seconds - now)


class CircuitBreaker:
    """Owns every circuit; entries are created lazily on first use.

    The clock is wall time (seconds since the epoch) so snapshots can be
    persisted and restored by another process.
    """

    def __init__(
        self,
        policy_for: PolicyLookup | None = None,
        *,
        clock: Callable[[], float] = time.time,
        settings: Settings | None = None,
    ) -> None:
        cfg = settings or default_settings
        self._policy_for = policy_for or cfg.breaker_policy_for
        self._clock = clock
        self._circuits: dict[tuple[str, str], Circuit] = {}

    def _circuit(self, platform: str, endpoint: str) -> Circuit:
        key = (platform, endpoint)
        circuit = self._circuits.get(key)
        if circuit is None:
            policy = self._policy_for(platform, endpoint)
            circuit = Circuit(
                platform=platform,
                endpoint=endpoint,
                failure_threshold=policy.failure_threshold,
                cooldown_seconds=policy.cooldown_seconds,
            )
            self._circuits[key] = circuit
        return circuit

    def state(self, platform: str, endpoint: str) -> CircuitState:
        circuit = self._circuits.get((platform, endpoint))
        return circuit.state if circuit else CircuitState.CLOSED

    async def execute(
        self, platform: str, endpoint: str, operation: Callable[[], Awaitable[T]]
    ) -> T:
        circuit = self._circuit(platform, endpoint)

        async with circuit.lock:
            now = self._clock()
            if circuit.state == CircuitState.OPEN:
                remaining = circuit.remaining_cooldown(now)
                if remaining > 0:
                    raise CircuitOpenError(platform, endpoint, retry_after=remaining)
                circuit.state = CircuitState.HALF_OPEN
                circuit.trial_in_flight = True
                is_trial = True
                logger.info(
                    "Circuit half-open, sending trial call",
                    extra={"platform": platform, "endpoint": endpoint},
                )
            elif circuit.state == CircuitState.HALF_OPEN:
                # Another caller owns the trial.
                raise CircuitOpenError(platform, endpoint)
            else:
                is_trial = False

        try:
            result = await operation()
        except asyncio.CancelledError:
            if is_trial:
                async with circuit.lock:
                    # The trial produced no verdict; the next caller may retry it.
                    circuit.state = CircuitState.OPEN
                    circuit.trial_in_flight = False
            raise
        except Exception as exc:
            error = classify_exception(exc)
            async with circuit.lock:
                if error.details.get("local"):
                    # Throttled before reaching the platform: no verdict either way.
                    if is_trial:
                        circuit.state = CircuitState.OPEN
                        circuit.trial_in_flight = False
                else:
                    self._record_failure(circuit, error.kind in BREAKER_COUNTED_KINDS, is_trial)
            raise

        async with circuit.lock:
            if is_trial:
                logger.info(
                    "Circuit closed after successful trial",
                    extra={"platform": platform, "endpoint": endpoint},
                )
                circuit.close()
            elif circuit.state == CircuitState.CLOSED:
                circuit.consecutive_failures = 0
        return result

    def _record_failure(self, circuit: Circuit, counted: bool, is_trial: bool) -> None:
        now = self._clock()
        if not counted:
            # The platform answered, which is enough to end a trial.
            if is_trial:
                circuit.close()
            return

        circuit.consecutive_failures += 1
        circuit.last_failure_time = now
        if is_trial:
            logger.warning(
                "Circuit trial failed, re-opening",
                extra={"platform": circuit.platform, "endpoint": circuit.endpoint},
            )
            circuit.open(now)
        elif (
            circuit.state == CircuitState.CLOSED
            and circuit.consecutive_failures >= circuit.failure_threshold
        ):
            logger.warning(
                "Circuit opened after %d consecutive failures",
                circuit.consecutive_failures,
                extra={"platform": circuit.platform, "endpoint": circuit.endpoint},
            )
            circuit.open(now)

    def snapshot(self) -> list[dict[str, Any]]:
        return [
            {
                "platform": c.platform,
                "endpoint": c.endpoint,
                "state": c.state.value,
                "consecutive_failures": c.consecutive_failures,
                "last_failure_time": c.last_failure_time,
                "opened_at": c.opened_at,
            }
            for c in self._circuits.values()
        ]

    def restore(self, states: Iterable[dict[str, Any]]) -> None:
        """Load circuits saved by ``snapshot``.

        A circuit saved mid-trial comes back open; its trial died with the
        process that ran it.
        """
        for saved in states:
            circuit = self._circuit(saved["platform"], saved["endpoint"])
            state = CircuitState(saved["state"])
            circuit.state = CircuitState.OPEN if state == CircuitState.HALF_OPEN else state
            circuit.consecutive_failures = int(saved.get("consecutive_failures") or 0)
            circuit.last_failure_time = saved.get("last_failure_time")
            circuit.opened_at = saved.get("opened_at")
            circuit.trial_in_flight = False
