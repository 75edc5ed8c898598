"""Behavioural IP blocking.

Per-process suspicion scores with a persistent blacklist:
 - every 401/403 the app sends counts as one violation for the caller's IP
 - probing a well-known bot path counts as one violation and gets a 404
 - a score reset happens after `violation_timeout` seconds of quiet
 - reaching `ban_threshold` bans the IP permanently (written to disk)

Like the rate limiter this is best-effort hardening, not access control: IPs
are shared and rotated, and X-Forwarded-For is only trustworthy behind a proxy
that sets it.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set

from fastapi.responses import PlainTextResponse

from . import metrics
from .ops_stats import OPS_STATS

logger = logging.getLogger("vh_gateway")

BAN_MESSAGE = "-- FIREWALL BLOCK: Your IP is blacklisted due to recurring security violations."
BOT_PATHS = ("/wp-admin", "/.env", "/config", "/phpmyadmin", "/api/debug")


@dataclass
class _Suspicion:
    score: int
    last_seen: float


class Firewall:
    def __init__(
        self,
        blacklist_path: Optional[str] = None,
        ban_threshold: int = 5,
        violation_timeout: float = 600.0,
        max_tracked: int = 20000,
        clock: Optional[Callable[[], float]] = None,
    ):
        if ban_threshold <= 0:
            raise ValueError("ban_threshold must be positive")
        self.blacklist_path = blacklist_path
        self.ban_threshold = int(ban_threshold)
        self.violation_timeout = float(violation_timeout)
        self._max_tracked = int(max_tracked)
        self._clock = clock or time.time
        self._lock = threading.Lock()
        self._suspicion: Dict[str, _Suspicion] = {}
        self._banned: Set[str] = set(self._load())

    @classmethod
    def from_env(cls) -> "Firewall":
        def _int(name: str, default: int) -> int:
            try:
                return int(os.getenv(name, str(default)) or default)
            except ValueError:
                logger.warning("Invalid %s (using %d)", name, default)
                return default

        return cls(
            blacklist_path=os.getenv("VH_FIREWALL_BLACKLIST_PATH") or "firewall_blacklist.json",
            ban_threshold=_int("VH_FIREWALL_BAN_THRESHOLD", 5),
            violation_timeout=float(_int("VH_FIREWALL_VIOLATION_TIMEOUT", 600)),
        )

    def _load(self) -> List[str]:
        if not self.blacklist_path or not os.path.exists(self.blacklist_path):
            return []
        try:
            data = json.loads(Path(self.blacklist_path).read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Firewall blacklist at %s unreadable (%s); starting empty", self.blacklist_path, e)
            return []
        if not isinstance(data, list):
            logger.warning("Firewall blacklist at %s is not a list; ignoring", self.blacklist_path)
            return []
        return [str(ip) for ip in data]

    def _save(self) -> None:
        if not self.blacklist_path:
            return
        tmp = self.blacklist_path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(sorted(self._banned), f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self.blacklist_path)

    @property
    def banned(self) -> Set[str]:
        with self._lock:
            return set(self._banned)

    def is_banned(self, ip: Optional[str]) -> bool:
        if not ip:
            return False
        with self._lock:
            return ip in self._banned

    @staticmethod
    def is_bot_path(path: str) -> bool:
        # Anchored at the root and cut at a segment or extension boundary, so
        # /raw/<repo>/config.lua is not a trap.
        p = (path or "").lower()
        return any(p.startswith(b) and p[len(b):len(b) + 1] in ("", "/", ".") for b in BOT_PATHS)

    def add_violation(self, ip: Optional[str], reason: str = "unknown") -> bool:
        """Count one violation; return True if this one triggered a ban."""
        if not ip:
            return False
        now = self._clock()
        with self._lock:
            if ip in self._banned:
                return False
            entry = self._suspicion.get(ip)
            if entry is None:
                if len(self._suspicion) >= self._max_tracked:
                    self._suspicion.clear()
                entry = _Suspicion(score=0, last_seen=now)
                self._suspicion[ip] = entry
            if now - entry.last_seen > self.violation_timeout:
                entry.score = 0
            entry.score += 1
            entry.last_seen = now
            logger.warning("Firewall violation from %s: %s (score %d/%d)", ip, reason, entry.score, self.ban_threshold)
            if entry.score < self.ban_threshold:
                return False
            self._banned.add(ip)
            self._suspicion.pop(ip, None)
            try:
                self._save()
            except OSError as e:
                logger.error("Could not persist firewall blacklist: %s", e)

        logger.error("Firewall perma-banned %s", ip)
        OPS_STATS.record_firewall_ban()
        metrics.record_firewall_ban()
        return True

    def unban(self, ip: str) -> bool:
        with self._lock:
            if ip not in self._banned:
                return False
            self._banned.discard(ip)
            self._save()
        return True

    def install(self, app, client_ip: Callable) -> None:
        """Attach the firewall as HTTP middleware on a FastAPI app."""
        @app.middleware("http")
        async def _firewall(request, call_next):
            ip = client_ip(request)
            if self.is_banned(ip):
                OPS_STATS.record_firewall_blocked()
                logger.info("Firewall blocked banned visitor %s", ip)
                return PlainTextResponse(BAN_MESSAGE, status_code=403)
            if self.is_bot_path(request.url.path):
                self.add_violation(ip, f"sensitive path {request.url.path}")
                return PlainTextResponse("Not Found", status_code=404)
            response = await call_next(request)
            if response.status_code in (401, 403):
                self.add_violation(ip, f"rejected with {response.status_code}")
            return response
