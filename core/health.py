"""Per-backend health bookkeeping shared by all request tasks.

Each backend entry carries its own ``asyncio.Lock``; there is no lock spanning
the whole table, so traffic to one backend never waits on another.

State machine::

    unknown -> healthy -> unhealthy -> healthy      (probe succeeds)
                          unhealthy -> unhealthy    (probe fails, cool-down restarts)
"""

import asyncio
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from core.exceptions import BackendUnavailable
from core.protocols import RequestLogger


class HealthStatus(str, Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


@dataclass
class BackendState:
    """Mutable health descriptor for one backend."""

    name: str
    base_url: str
    status: HealthStatus = HealthStatus.UNKNOWN
    consecutive_failures: int = 0
    unhealthy_since: float | None = None
    probe_in_flight: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    def snapshot(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "base_url": self.base_url,
            "status": self.status.value,
            "consecutive_failures": self.consecutive_failures,
        }


class HealthTable:
    """Track consecutive failures and short-circuit unhealthy backends."""

    def __init__(
        self,
        backends: Mapping[str, str],
        *,
        failure_threshold: int = 3,
        cooldown_seconds: float = 30.0,
        logger: RequestLogger | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._states = {
            name: BackendState(name=name, base_url=base_url)
            for name, base_url in backends.items()
        }
        self._threshold = failure_threshold
        self._cooldown = cooldown_seconds
        self._logger = logger
        self._clock = clock

    def get(self, name: str) -> BackendState:
        return self._states[name]

    def snapshot(self) -> list[dict[str, Any]]:
        return [state.snapshot() for state in self._states.values()]

    async def acquire(self, name: str) -> bool:
        """Admit a request to ``name``.

        Returns True when the request is the re-probe of an unhealthy backend.
        Raises BackendUnavailable while the backend is cooling down or another
        probe is in flight.
        """
        state = self._states[name]
        async with state.lock:
            if state.status is not HealthStatus.UNHEALTHY:
                return False
            elapsed = self._clock() - (state.unhealthy_since or 0.0)
            if state.probe_in_flight or elapsed < self._cooldown:
                raise BackendUnavailable(
                    f"Backend '{name}' is unhealthy",
                    status_code=502,
                    backend=name,
                )
            state.probe_in_flight = True
            return True

    async def record_success(self, name: str, *, probe: bool = False) -> None:
        state = self._states[name]
        async with state.lock:
            if probe:
                state.probe_in_flight = False
            state.consecutive_failures = 0
            changed = state.status is not HealthStatus.HEALTHY
            state.status = HealthStatus.HEALTHY
            state.unhealthy_since = None
        if changed:
            self._notify(state)

    async def record_failure(self, name: str, *, probe: bool = False) -> None:
        state = self._states[name]
        changed = False
        async with state.lock:
            state.consecutive_failures += 1
            if probe:
                state.probe_in_flight = False
                state.unhealthy_since = self._clock()
                changed = True
            elif (
                state.status is not HealthStatus.UNHEALTHY
                and state.consecutive_failures >= self._threshold
            ):
                state.status = HealthStatus.UNHEALTHY
                state.unhealthy_since = self._clock()
                changed = True
        if changed:
            self._notify(state)

    async def release_probe(self, name: str) -> None:
        """Free the probe slot when a probe ended without an outcome."""
        state = self._states[name]
        async with state.lock:
            state.probe_in_flight = False

    def _notify(self, state: BackendState) -> None:
        if self._logger:
            self._logger.log_health(state.name, state.status.value, state.consecutive_failures)
