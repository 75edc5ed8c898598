"""Storage circuit breaker.

Entitlement redemption and script lookups both go through SQLite. When the
database turns slow or starts raising OperationalError, the breaker trips and
the stores stop touching it for a while: writes are refused (a half-applied
redemption is worse than a refused one) and reads are answered from the local
mirror.

Tripping rules:
- any single op slower than `latency_threshold_ms` trips immediately
- `failure_threshold` failures trip; each success forgives one failure
"""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from . import metrics

logger = logging.getLogger("vh_gateway")


class StorageLockdownError(RuntimeError):
    """Raised instead of touching the database while the breaker is open."""


def _env_number(name: str, default, cast):
    raw = (os.getenv(name, "") or "").strip()
    if not raw:
        return default
    try:
        return cast(raw)
    except ValueError:
        logger.warning("Invalid %s=%r (using %s)", name, raw, default)
        return default


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Tunables, read from VH_DB_* environment variables by `from_env`.

    - VH_DB_LATENCY_THRESHOLD_MS
    - VH_DB_FAILURE_THRESHOLD
    - VH_DB_LOCKDOWN_SECONDS
    - VH_DB_CONNECT_TIMEOUT_SECONDS (also the sqlite busy wait)
    """

    latency_threshold_ms: int = 500
    failure_threshold: int = 2
    lockdown_seconds: int = 30
    connect_timeout_seconds: float = 5.0

    @classmethod
    def from_env(cls) -> "CircuitBreakerConfig":
        latency = _env_number("VH_DB_LATENCY_THRESHOLD_MS", cls.latency_threshold_ms, int)
        failures = _env_number("VH_DB_FAILURE_THRESHOLD", cls.failure_threshold, int)
        lockdown = _env_number("VH_DB_LOCKDOWN_SECONDS", cls.lockdown_seconds, int)
        timeout = _env_number("VH_DB_CONNECT_TIMEOUT_SECONDS", cls.connect_timeout_seconds, float)
        return cls(
            latency_threshold_ms=latency if latency >= 0 else cls.latency_threshold_ms,
            failure_threshold=max(1, failures),
            lockdown_seconds=max(1, lockdown),
            connect_timeout_seconds=timeout if timeout > 0 else 0.01,
        )


class DbCircuitBreaker:
    """Shared by every store handle that talks to the same database file."""

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.config = config or CircuitBreakerConfig.from_env()
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        self._failures = 0
        self._open_until = 0.0

    def remaining_seconds(self) -> float:
        with self._lock:
            return max(0.0, self._open_until - self._clock())

    def is_lockdown_active(self) -> bool:
        return self.remaining_seconds() > 0.0

    def raise_if_lockdown(self) -> None:
        if self.is_lockdown_active():
            raise StorageLockdownError("LOCKDOWN_ACTIVE")

    def _trip(self, why: str) -> None:
        # Caller holds self._lock.
        self._open_until = self._clock() + float(self.config.lockdown_seconds)
        self._failures = self.config.failure_threshold
        logger.error("Storage lockdown for %ds: %s", self.config.lockdown_seconds, why)
        metrics.set_lockdown_active(True)

    def record_success(self) -> None:
        with self._lock:
            if self._failures > 0:
                self._failures -= 1

    def record_latency(self, elapsed_ms: float) -> None:
        if elapsed_ms < float(self.config.latency_threshold_ms):
            return
        with self._lock:
            self._trip(f"op took {elapsed_ms:.0f} ms")

    def record_failure(self, exc: Optional[BaseException] = None) -> None:
        with self._lock:
            self._failures += 1
            if self._failures >= self.config.failure_threshold:
                self._trip(f"{self._failures} failures (last: {exc})")

    def reset(self) -> None:
        with self._lock:
            self._failures = 0
            self._open_until = 0.0
        metrics.set_lockdown_active(False)
