"""Operational statistics for the gateway.

Lightweight in-memory counters and a snapshot endpoint, complementary to the
Prometheus metrics in `vh_gateway.metrics`.

Notes
-----
- Counters reset on process restart.
- Device identifiers and credentials are never used as keys here.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class _Counters:
    # Admission
    admissions_total: int = 0
    admissions_by_outcome: Dict[str, int] = field(default_factory=dict)  # allow/deny/decoy
    denials_by_reason: Dict[str, int] = field(default_factory=dict)

    # Serving
    transforms_total: int = 0
    transforms_by_tier: Dict[str, int] = field(default_factory=dict)
    raw_served_total: int = 0
    not_found_total: int = 0

    # Fail-closed / degraded signals
    store_fallback_total: int = 0
    store_unavailable_total: int = 0
    rate_limited_total: int = 0
    firewall_blocked_total: int = 0
    firewall_bans_total: int = 0


class OpsStats:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._start_monotonic = time.monotonic()
        self._c = _Counters()

    def _inc_map(self, m: Dict[str, int], key: str) -> None:
        m[key] = int(m.get(key, 0)) + 1

    def record_admission(self, outcome: str, reason: str = "") -> None:
        with self._lock:
            self._c.admissions_total += 1
            self._inc_map(self._c.admissions_by_outcome, outcome or "unknown")
            if reason and outcome != "allow":
                self._inc_map(self._c.denials_by_reason, reason)

    def record_transform(self, tier: str) -> None:
        with self._lock:
            self._c.transforms_total += 1
            self._inc_map(self._c.transforms_by_tier, tier or "unknown")

    def record_raw_served(self) -> None:
        with self._lock:
            self._c.raw_served_total += 1

    def record_not_found(self) -> None:
        with self._lock:
            self._c.not_found_total += 1

    def record_store_fallback(self) -> None:
        with self._lock:
            self._c.store_fallback_total += 1

    def record_store_unavailable(self) -> None:
        with self._lock:
            self._c.store_unavailable_total += 1

    def record_rate_limited(self) -> None:
        with self._lock:
            self._c.rate_limited_total += 1

    def record_firewall_blocked(self) -> None:
        with self._lock:
            self._c.firewall_blocked_total += 1

    def record_firewall_ban(self) -> None:
        with self._lock:
            self._c.firewall_bans_total += 1

    def snapshot(self, extra: Dict[str, Any] | None = None) -> Dict[str, Any]:
        with self._lock:
            c = self._c
            snap: Dict[str, Any] = {
                "uptime_seconds": int(time.monotonic() - self._start_monotonic),
                "admissions_total": c.admissions_total,
                "admissions_by_outcome": dict(c.admissions_by_outcome),
                "denials_by_reason": dict(c.denials_by_reason),
                "transforms_total": c.transforms_total,
                "transforms_by_tier": dict(c.transforms_by_tier),
                "raw_served_total": c.raw_served_total,
                "not_found_total": c.not_found_total,
                "store_fallback_total": c.store_fallback_total,
                "store_unavailable_total": c.store_unavailable_total,
                "rate_limited_total": c.rate_limited_total,
                "firewall_blocked_total": c.firewall_blocked_total,
                "firewall_bans_total": c.firewall_bans_total,
            }
        if extra:
            snap.update(extra)
        return snap


OPS_STATS = OpsStats()
