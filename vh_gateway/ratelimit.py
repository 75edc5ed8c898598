"""Best-effort in-process rate limiting for script fetches.

Keyed token buckets, per process, not distributed. Callers past their budget
get a 429 before admission runs. A reverse proxy limiter is still the right
place for anything serious.
"""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

_UNITS = {
    "s": 1.0, "sec": 1.0, "second": 1.0, "seconds": 1.0,
    "m": 60.0, "min": 60.0, "minute": 60.0, "minutes": 60.0,
    "h": 3600.0, "hr": 3600.0, "hour": 3600.0, "hours": 3600.0,
}


@dataclass
class TokenBucket:
    capacity: float
    refill_rate_per_sec: float
    tokens: float
    last_ts: float

    @classmethod
    def new(cls, capacity: float, refill_rate_per_sec: float, now: float) -> "TokenBucket":
        return cls(capacity=capacity, refill_rate_per_sec=refill_rate_per_sec, tokens=capacity, last_ts=now)

    def _refill(self, now: float) -> None:
        elapsed = max(0.0, now - self.last_ts)
        self.last_ts = now
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate_per_sec)

    def allow(self, now: float, cost: float = 1.0) -> bool:
        self._refill(now)
        if self.tokens >= cost:
            self.tokens -= cost
            return True
        return False

    def seconds_until(self, now: float, cost: float = 1.0) -> float:
        self._refill(now)
        missing = cost - self.tokens
        return 0.0 if missing <= 0 else missing / self.refill_rate_per_sec

    def is_full(self, now: float) -> bool:
        self._refill(now)
        return self.tokens >= self.capacity


class RateLimiter:
    """Reject after N requests per window per caller key.

    At most `max_keys` buckets are tracked. When the table is full, buckets
    that have refilled completely are dropped first (they carry no state a
    fresh bucket would not); if none can be dropped, new keys are refused.
    """

    def __init__(
        self,
        capacity: float,
        refill_rate_per_sec: float,
        max_keys: int = 20000,
        clock: Optional[Callable[[], float]] = None,
    ):
        if capacity <= 0 or refill_rate_per_sec <= 0:
            raise ValueError("capacity and refill_rate_per_sec must be positive")
        self._capacity = float(capacity)
        self._refill = float(refill_rate_per_sec)
        self._max_keys = int(max_keys) if int(max_keys) > 0 else 20000
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        self._buckets: Dict[str, TokenBucket] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)

    def _prune(self, now: float) -> None:
        idle = [k for k, b in self._buckets.items() if b.is_full(now)]
        for k in idle:
            del self._buckets[k]

    def allow(self, key: str, cost: float = 1.0) -> bool:
        key = key or "_anon"
        now = self._clock()
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                if len(self._buckets) >= self._max_keys:
                    self._prune(now)
                if len(self._buckets) >= self._max_keys:
                    return False
                bucket = TokenBucket.new(self._capacity, self._refill, now)
                self._buckets[key] = bucket
            return bucket.allow(now, cost=cost)

    def retry_after(self, key: str) -> int:
        """Whole seconds until `key` may send one more request."""
        now = self._clock()
        with self._lock:
            bucket = self._buckets.get(key or "_anon")
            if bucket is None:
                return 0
            return int(math.ceil(bucket.seconds_until(now)))


def parse_rate_limit(spec: str) -> Tuple[float, float]:
    """Parse '60/m' or '10/s' into (capacity, refill_rate_per_sec).

    The burst capacity is one full window.
    """
    s = (spec or "").strip().lower()
    if "/" not in s:
        raise ValueError(f"invalid rate limit spec {spec!r}; expected like '60/m' or '10/s'")
    num_str, unit = s.split("/", 1)
    n = float(num_str)
    if n <= 0:
        raise ValueError("rate must be positive")
    window = _UNITS.get(unit.strip())
    if window is None:
        raise ValueError(f"unsupported rate unit: {unit}")
    return n, n / window
