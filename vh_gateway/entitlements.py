"""Per-device entitlement registry and access-credential ledger.

A credential (``TRIAL-…``, ``KEY-…``, ``LIFE-…``) is redeemed once, binding it
to the device that redeemed it. The redemption produces an entitlement for
that device. Entitlements are revoked, or expire, but rows are never deleted:
the ledger doubles as replay detection.

Redemption is a compare-and-set on ``credentials.used`` inside an IMMEDIATE
transaction, so concurrent redeemers of the same credential resolve to
exactly one winner.
"""

from __future__ import annotations

import secrets
import sqlite3
import string
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import (
    VH_E_CREDENTIAL_CONFLICT,
    VH_E_CREDENTIAL_NOT_FOUND,
    VH_E_ENTITLEMENT_EXPIRED,
    VH_E_ENTITLEMENT_NOT_FOUND,
    VH_E_TRIAL_ALREADY_CLAIMED,
    VH_E_TRIAL_EXPIRED,
    vh_error,
)
from .store import SqliteStore, _parse_iso_utc

DEFAULT_ENTITLEMENT_DAYS = 30
# Timestamp the original trial-wipe tooling used to force-expire trials.
TRIAL_WIPE_TIMESTAMP = datetime(2024, 1, 1, tzinfo=timezone.utc)

_ID_ALPHABET = string.ascii_uppercase + string.digits


class EntitlementKind(str, Enum):
    LIFETIME = "lifetime"
    TIME_LIMITED = "time_limited"
    REVOKED = "revoked"


class CredentialKind(str, Enum):
    TRIAL = "trial"
    TIME_LIMITED = "time_limited"
    LIFETIME = "lifetime"


_ID_PREFIX = {
    CredentialKind.TRIAL: ("TRIAL", 2),
    CredentialKind.TIME_LIMITED: ("KEY", 3),
    CredentialKind.LIFETIME: ("LIFE", 3),
}


def generate_credential_id(kind: CredentialKind) -> str:
    """Return e.g. ``LIFE-7Q2M-K0ZP-AB12``."""
    prefix, groups = _ID_PREFIX[kind]
    segs = ["".join(secrets.choice(_ID_ALPHABET) for _ in range(4)) for _ in range(groups)]
    return "-".join([prefix] + segs)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt is not None else None


@dataclass(frozen=True)
class EntitlementRecord:
    device_id: str
    kind: EntitlementKind
    issued_at: datetime
    expires_at: Optional[datetime] = None
    linked_credential_id: Optional[str] = None

    @property
    def revoked(self) -> bool:
        return self.kind is EntitlementKind.REVOKED

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def is_active(self, now: datetime) -> bool:
        return not self.revoked and not self.is_expired(now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device_id": self.device_id,
            "kind": self.kind.value,
            "issued_at": _iso(self.issued_at),
            "expires_at": _iso(self.expires_at),
            "linked_credential_id": self.linked_credential_id,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "EntitlementRecord":
        return cls(
            device_id=str(d["device_id"]),
            kind=EntitlementKind(d["kind"]),
            issued_at=_parse_iso_utc(d["issued_at"]),
            expires_at=_parse_iso_utc(d.get("expires_at")),
            linked_credential_id=d.get("linked_credential_id"),
        )


@dataclass(frozen=True)
class AccessCredential:
    id: str
    kind: CredentialKind
    used: bool = False
    bound_device_id: Optional[str] = None
    created_at: Optional[datetime] = None
    redeemed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "used": self.used,
            "bound_device_id": self.bound_device_id,
            "created_at": _iso(self.created_at),
            "redeemed_at": _iso(self.redeemed_at),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "AccessCredential":
        return cls(
            id=str(d["id"]),
            kind=CredentialKind(d["kind"]),
            used=bool(d.get("used")),
            bound_device_id=d.get("bound_device_id"),
            created_at=_parse_iso_utc(d.get("created_at")),
            redeemed_at=_parse_iso_utc(d.get("redeemed_at")),
        )


def _entitlement_from_row(row: sqlite3.Row) -> EntitlementRecord:
    return EntitlementRecord(
        device_id=row["device_id"],
        kind=EntitlementKind(row["kind"]),
        issued_at=_parse_iso_utc(row["issued_at_utc"]),
        expires_at=_parse_iso_utc(row["expires_at_utc"]),
        linked_credential_id=row["linked_credential_id"],
    )


def _credential_from_row(row: sqlite3.Row) -> AccessCredential:
    return AccessCredential(
        id=row["id"],
        kind=CredentialKind(row["kind"]),
        used=bool(row["used"]),
        bound_device_id=row["bound_device_id"],
        created_at=_parse_iso_utc(row["created_at_utc"]),
        redeemed_at=_parse_iso_utc(row["redeemed_at_utc"]),
    )


class EntitlementStore(SqliteStore):
    """Entitlements keyed by device id, plus the credential ledger."""

    collections = ("entitlements", "credentials")

    def __init__(self, *args: Any, entitlement_days: int = DEFAULT_ENTITLEMENT_DAYS, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.entitlement_days = int(entitlement_days)

    def _init_schema(self, conn: sqlite3.Connection) -> None:
        conn.execute("""
        CREATE TABLE IF NOT EXISTS credentials (
            id TEXT PRIMARY KEY,
            kind TEXT NOT NULL,
            used INTEGER NOT NULL DEFAULT 0,
            bound_device_id TEXT,
            created_at_utc TEXT NOT NULL,
            redeemed_at_utc TEXT
        )
        """)
        conn.execute("""
        CREATE TABLE IF NOT EXISTS entitlements (
            device_id TEXT PRIMARY KEY,
            kind TEXT NOT NULL,
            issued_at_utc TEXT NOT NULL,
            expires_at_utc TEXT,
            linked_credential_id TEXT,
            revoked_at_utc TEXT
        )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_credentials_bound ON credentials (bound_device_id, kind)"
        )

    def _snapshot(self, conn: sqlite3.Connection) -> Dict[str, Dict[str, Dict[str, Any]]]:
        ents = {
            r["device_id"]: _entitlement_from_row(r).to_dict()
            for r in conn.execute("SELECT * FROM entitlements")
        }
        creds = {
            r["id"]: _credential_from_row(r).to_dict()
            for r in conn.execute("SELECT * FROM credentials")
        }
        return {"entitlements": ents, "credentials": creds}

    # ---------------------------
    # Row helpers (inside a transaction)
    # ---------------------------

    @staticmethod
    def _get_entitlement(conn: sqlite3.Connection, device_id: str) -> Optional[EntitlementRecord]:
        row = conn.execute("SELECT * FROM entitlements WHERE device_id = ?", (device_id,)).fetchone()
        return _entitlement_from_row(row) if row else None

    @staticmethod
    def _get_credential(conn: sqlite3.Connection, credential_id: str) -> Optional[AccessCredential]:
        row = conn.execute("SELECT * FROM credentials WHERE id = ?", (credential_id,)).fetchone()
        return _credential_from_row(row) if row else None

    def _insert_credential(self, conn: sqlite3.Connection, kind: CredentialKind, credential_id: str) -> AccessCredential:
        now = self.clock()
        try:
            conn.execute(
                "INSERT INTO credentials (id, kind, used, created_at_utc) VALUES (?, ?, 0, ?)",
                (credential_id, kind.value, now.isoformat()),
            )
        except sqlite3.IntegrityError:
            raise vh_error(VH_E_CREDENTIAL_CONFLICT, "credential id already exists", http_status=409)
        return AccessCredential(id=credential_id, kind=kind, created_at=now)

    def _bind(self, conn: sqlite3.Connection, cred: AccessCredential, device_id: str) -> EntitlementRecord:
        now = self.clock()
        cur = conn.execute(
            "UPDATE credentials SET used = 1, bound_device_id = ?, redeemed_at_utc = ? WHERE id = ? AND used = 0",
            (device_id, now.isoformat(), cred.id),
        )
        if cur.rowcount != 1:
            raise vh_error(VH_E_CREDENTIAL_CONFLICT, "credential already redeemed", http_status=409)

        if cred.kind is CredentialKind.LIFETIME:
            kind, expires = EntitlementKind.LIFETIME, None
        else:
            kind, expires = EntitlementKind.TIME_LIMITED, now + timedelta(days=self.entitlement_days)

        conn.execute(
            """
            INSERT INTO entitlements (device_id, kind, issued_at_utc, expires_at_utc, linked_credential_id)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(device_id) DO UPDATE SET
                kind = excluded.kind,
                issued_at_utc = excluded.issued_at_utc,
                expires_at_utc = excluded.expires_at_utc,
                linked_credential_id = excluded.linked_credential_id
            """,
            (device_id, kind.value, now.isoformat(), _iso(expires), cred.id),
        )
        return EntitlementRecord(
            device_id=device_id,
            kind=kind,
            issued_at=now,
            expires_at=expires,
            linked_credential_id=cred.id,
        )

    # ---------------------------
    # Public API
    # ---------------------------

    def lookup(self, device_id: str) -> Optional[EntitlementRecord]:
        def primary(conn: sqlite3.Connection) -> Optional[EntitlementRecord]:
            return self._get_entitlement(conn, device_id)

        def fallback() -> Optional[EntitlementRecord]:
            d = self._mirrored("entitlements").get(device_id)
            return EntitlementRecord.from_dict(d) if d else None

        return self._read("lookup", primary, fallback)

    def get_credential(self, credential_id: str) -> Optional[AccessCredential]:
        def fallback() -> Optional[AccessCredential]:
            d = self._mirrored("credentials").get(credential_id)
            return AccessCredential.from_dict(d) if d else None

        return self._read("get_credential", lambda conn: self._get_credential(conn, credential_id), fallback)

    def list_credentials(self) -> List[AccessCredential]:
        def primary(conn: sqlite3.Connection) -> List[AccessCredential]:
            rows = conn.execute("SELECT * FROM credentials ORDER BY created_at_utc, id")
            return [_credential_from_row(r) for r in rows]

        def fallback() -> List[AccessCredential]:
            return [AccessCredential.from_dict(d) for d in self._mirrored("credentials").values()]

        return self._read("list_credentials", primary, fallback)

    def issue_credential(self, kind: CredentialKind, credential_id: Optional[str] = None) -> AccessCredential:
        """Create an unused credential (out-of-band issuance)."""
        # Generated before the transaction so a journaled issue replays to the same id.
        cid = credential_id or generate_credential_id(kind)
        return self._write(
            "issue_credential",
            {"kind": kind.value, "credential_id": cid},
            lambda conn: self._insert_credential(conn, kind, cid),
        )

    def redeem(self, credential_id: str, device_id: str) -> EntitlementRecord:
        """Bind `credential_id` to `device_id` (or re-check an existing binding)."""
        if not credential_id or not device_id:
            raise vh_error(VH_E_CREDENTIAL_NOT_FOUND, "credential and device id are required", http_status=401)

        def tx(conn: sqlite3.Connection) -> EntitlementRecord:
            now = self.clock()
            cred = self._get_credential(conn, credential_id)
            if cred is None:
                raise vh_error(VH_E_CREDENTIAL_NOT_FOUND, "invalid or unknown key", http_status=401)

            existing = self._get_entitlement(conn, device_id)

            if cred.used:
                if cred.bound_device_id != device_id:
                    raise vh_error(VH_E_CREDENTIAL_CONFLICT, "key already used by another device", http_status=409)
                if existing is None or existing.revoked:
                    raise vh_error(VH_E_CREDENTIAL_CONFLICT, "entitlement revoked", http_status=403)
                if existing.linked_credential_id != cred.id or existing.is_expired(now):
                    raise vh_error(
                        VH_E_ENTITLEMENT_EXPIRED,
                        "key expired",
                        http_status=403,
                        expires_at=_iso(existing.expires_at),
                    )
                return existing

            if existing is not None and existing.revoked:
                raise vh_error(VH_E_CREDENTIAL_CONFLICT, "device has been revoked", http_status=403)
            if existing is not None and existing.is_active(now):
                raise vh_error(
                    VH_E_CREDENTIAL_CONFLICT,
                    "device already holds an active key",
                    http_status=409,
                )
            return self._bind(conn, cred, device_id)

        return self._write("redeem", {"credential_id": credential_id, "device_id": device_id}, tx)

    def claim_trial(self, device_id: str, credential_id: Optional[str] = None) -> EntitlementRecord:
        """Issue and redeem a one-off trial credential for `device_id`.

        Repeated claims by the same device return the same record (and thus the
        same `linked_credential_id`) until it expires.
        """
        if not device_id:
            raise vh_error(VH_E_TRIAL_ALREADY_CLAIMED, "device id is required", http_status=401)

        def tx(conn: sqlite3.Connection) -> EntitlementRecord:
            now = self.clock()
            existing = self._get_entitlement(conn, device_id)
            trial_row = conn.execute(
                "SELECT * FROM credentials WHERE kind = ? AND bound_device_id = ? ORDER BY created_at_utc LIMIT 1",
                (CredentialKind.TRIAL.value, device_id),
            ).fetchone()

            if trial_row is not None:
                trial = _credential_from_row(trial_row)
                if existing is None or existing.revoked or existing.linked_credential_id != trial.id:
                    raise vh_error(VH_E_TRIAL_ALREADY_CLAIMED, "trial already claimed for this device", http_status=409)
                if existing.is_expired(now):
                    raise vh_error(
                        VH_E_TRIAL_EXPIRED,
                        "trial expired",
                        http_status=403,
                        expires_at=_iso(existing.expires_at),
                    )
                return existing

            if existing is not None and (existing.revoked or existing.is_active(now)):
                raise vh_error(VH_E_TRIAL_ALREADY_CLAIMED, "device already holds an entitlement", http_status=409)

            cred = self._insert_credential(conn, CredentialKind.TRIAL, trial_id)
            return self._bind(conn, cred, device_id)

        trial_id = credential_id or generate_credential_id(CredentialKind.TRIAL)
        return self._write("claim_trial", {"device_id": device_id, "credential_id": trial_id}, tx)

    def revoke(self, device_id: str) -> EntitlementRecord:
        def tx(conn: sqlite3.Connection) -> EntitlementRecord:
            existing = self._get_entitlement(conn, device_id)
            if existing is None:
                raise vh_error(VH_E_ENTITLEMENT_NOT_FOUND, "no entitlement for device", http_status=404)
            conn.execute(
                "UPDATE entitlements SET kind = ?, revoked_at_utc = ? WHERE device_id = ?",
                (EntitlementKind.REVOKED.value, self.clock().isoformat(), device_id),
            )
            return EntitlementRecord(
                device_id=existing.device_id,
                kind=EntitlementKind.REVOKED,
                issued_at=existing.issued_at,
                expires_at=existing.expires_at,
                linked_credential_id=existing.linked_credential_id,
            )

        return self._write("revoke", {"device_id": device_id}, tx)

    def expire_trials(self, at: datetime = TRIAL_WIPE_TIMESTAMP) -> int:
        """Force every non-revoked trial-derived entitlement to expire at `at`."""

        def tx(conn: sqlite3.Connection) -> int:
            cur = conn.execute(
                """
                UPDATE entitlements SET expires_at_utc = ?
                WHERE kind != ? AND linked_credential_id IN (SELECT id FROM credentials WHERE kind = ?)
                """,
                (at.isoformat(), EntitlementKind.REVOKED.value, CredentialKind.TRIAL.value),
            )
            return int(cur.rowcount or 0)

        return self._write("expire_trials", {"at": at.isoformat()}, tx)
