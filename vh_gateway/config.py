"""Gateway configuration.

Everything tunable is read from ``VH_*`` environment variables once, at app
construction time, and carried around as a frozen dataclass. Malformed values
fall back to defaults (with a warning) rather than crashing the process.

Env vars:
  - VH_GATEWAY_DB_PATH: sqlite path for entitlements + repositories
  - VH_MIRROR_PATH: local mirror snapshot (default: <db>.mirror.json)
  - VH_RAW_KEY: shared static credential required on /raw fetches
  - VH_SESSION_SECRET: secret mixed into the rotating session key
  - VH_SESSION_BUCKET_SECONDS: session key rotation window (default: 60)
  - VH_ADMIN_DEVICE_IDS: comma-separated device ids that bypass entitlements
  - VH_PROTECTION_TIER: standard | device | labyrinth
  - VH_FILLER_COUNT: inert filler statements per transform stage
  - VH_CHUNK_SIZE: entries per literal table chunk (default: 500)
  - VH_SESSION_KEY_DELIVERY: embedded | handshake
  - VH_PUBLIC_URL: externally visible base URL (handshake fetches)
  - VH_RENEW_URL: where expired devices are pointed to
  - VH_ENTITLEMENT_DAYS: validity window for trial/time-limited keys
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import FrozenSet, Optional

logger = logging.getLogger("vh_gateway")

PROTECTION_TIERS = ("standard", "device", "labyrinth")
SESSION_KEY_DELIVERY_MODES = ("embedded", "handshake")


def _get_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        logger.warning("Invalid %s=%r (using %d)", name, raw, default)
        return default
    if value < minimum:
        logger.warning("%s=%d below minimum %d (using %d)", name, value, minimum, default)
        return default
    return value


def _get_choice(name: str, default: str, choices: tuple) -> str:
    value = (os.getenv(name, "") or "").strip().lower()
    if not value:
        return default
    if value not in choices:
        logger.warning("Unsupported %s=%r (using %s)", name, value, default)
        return default
    return value


@dataclass(frozen=True)
class GatewayConfig:
    db_path: str = "vanderhub_gateway.db"
    mirror_path: Optional[str] = None
    raw_key: Optional[str] = None
    session_secret: str = "vander-session"
    session_bucket_seconds: int = 60
    admin_device_ids: FrozenSet[str] = field(default_factory=frozenset)
    protection_tier: str = "standard"
    filler_count: int = 6
    chunk_size: int = 500
    session_key_delivery: str = "embedded"
    public_url: str = "http://127.0.0.1:8000"
    renew_url: str = "/api/verify-key"
    entitlement_days: int = 30

    @property
    def resolved_mirror_path(self) -> str:
        return self.mirror_path or str(Path(self.db_path).with_suffix(".mirror.json"))

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        admin_raw = os.getenv("VH_ADMIN_DEVICE_IDS", "") or ""
        admin_ids = frozenset(x.strip() for x in admin_raw.split(",") if x.strip())

        raw_key = (os.getenv("VH_RAW_KEY", "") or "").strip() or None
        if raw_key is None:
            logger.warning("VH_RAW_KEY is not set; every /raw fetch will fail the handshake gate")

        secret = (os.getenv("VH_SESSION_SECRET", "") or "").strip() or cls.session_secret

        return cls(
            db_path=os.getenv("VH_GATEWAY_DB_PATH") or cls.db_path,
            mirror_path=os.getenv("VH_MIRROR_PATH") or None,
            raw_key=raw_key,
            session_secret=secret,
            session_bucket_seconds=_get_int("VH_SESSION_BUCKET_SECONDS", cls.session_bucket_seconds, minimum=1),
            admin_device_ids=admin_ids,
            protection_tier=_get_choice("VH_PROTECTION_TIER", cls.protection_tier, PROTECTION_TIERS),
            filler_count=_get_int("VH_FILLER_COUNT", cls.filler_count),
            chunk_size=_get_int("VH_CHUNK_SIZE", cls.chunk_size, minimum=1),
            session_key_delivery=_get_choice(
                "VH_SESSION_KEY_DELIVERY", cls.session_key_delivery, SESSION_KEY_DELIVERY_MODES
            ),
            public_url=(os.getenv("VH_PUBLIC_URL") or cls.public_url).rstrip("/"),
            renew_url=os.getenv("VH_RENEW_URL") or cls.renew_url,
            entitlement_days=_get_int("VH_ENTITLEMENT_DAYS", cls.entitlement_days, minimum=1),
        )
