"""SQLite-backed store base shared by the entitlement and repository stores.

Lifecycle
---------
Every store handle carries an explicit state:

    UNINITIALIZED --(initial read ok)--> LOADED --(mirror reconciled)--> READY

- Writes are only accepted in READY. Anything else raises STORE_UNAVAILABLE
  and journals the intended write to the local mirror.
- Reads use the primary in READY and fall back to the mirror snapshot on
  failure. Outside READY, reads are served from the mirror (or an empty view).

A store whose primary comes up empty while the mirror still holds records
stays in LOADED: the write-back guard refuses to overwrite the mirror, and
write traffic is held until an operator looks at it.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, TypeVar

from .errors import VHError, store_unavailable
from .lockdown import DbCircuitBreaker, StorageLockdownError
from .mirror import LocalMirror
from .ops_stats import OPS_STATS

logger = logging.getLogger("vh_gateway")

T = TypeVar("T")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _parse_iso_utc(ts: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp into a timezone-aware UTC datetime.

    Returns None if input is empty.
    """
    if not ts:
        return None
    s = str(ts).strip()
    if not s:
        return None
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class StoreState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADED = "loaded"
    READY = "ready"


class SqliteStore:
    """Base class: connection handling, lifecycle, mirror upkeep."""

    # Collections this store mirrors; subclasses override.
    collections: tuple = ()

    def __init__(
        self,
        db_path: str,
        mirror: Optional[LocalMirror] = None,
        circuit: Optional[DbCircuitBreaker] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db_path = db_path
        self.mirror = mirror
        self.circuit = circuit or DbCircuitBreaker()
        self.clock = clock or _now_utc
        self.state = StoreState.UNINITIALIZED
        self._write_lock = threading.RLock()

    # ---------------------------
    # Connection
    # ---------------------------

    @contextmanager
    def _db(self, op_name: str, isolation_level: Optional[str] = "DEFERRED"):
        """DB connection wrapper with circuit breaker (fail-closed)."""
        self.circuit.raise_if_lockdown()
        start = time.monotonic()
        try:
            conn = sqlite3.connect(
                self.db_path,
                timeout=float(self.circuit.config.connect_timeout_seconds),
                isolation_level=isolation_level,
            )
            conn.row_factory = sqlite3.Row
            try:
                with conn:
                    yield conn
            finally:
                conn.close()
            elapsed_ms = (time.monotonic() - start) * 1000.0
            if elapsed_ms >= float(self.circuit.config.latency_threshold_ms):
                logger.warning("Slow store op %s (%.1f ms)", op_name, elapsed_ms)
                self.circuit.record_latency(elapsed_ms)
            else:
                self.circuit.record_success()
        except sqlite3.OperationalError as e:
            self.circuit.record_failure(e)
            raise

    # ---------------------------
    # Lifecycle
    # ---------------------------

    def _init_schema(self, conn: sqlite3.Connection) -> None:
        raise NotImplementedError

    def _snapshot(self, conn: sqlite3.Connection) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """Return {collection: {key: record}} for every mirrored collection."""
        raise NotImplementedError

    def open(self) -> "SqliteStore":
        """Perform the initial read and advance the lifecycle as far as possible."""
        try:
            with self._db("init") as conn:
                conn.execute("PRAGMA journal_mode = WAL")
                conn.execute("PRAGMA synchronous = FULL")
                conn.execute("PRAGMA busy_timeout = 5000")
                self._init_schema(conn)
                snapshot = self._snapshot(conn)
        except (sqlite3.Error, StorageLockdownError) as e:
            logger.warning("%s initial read failed (%s); serving from mirror", type(self).__name__, e)
            return self

        self.state = StoreState.LOADED
        if self.mirror is not None:
            try:
                self.mirror.write_snapshot(snapshot)
            except VHError as e:
                logger.error(
                    "%s held in LOADED: %s. Writes stay disabled until the primary is restored.",
                    type(self).__name__, e.message,
                )
                return self
            except OSError as e:
                logger.warning("Mirror unavailable at startup (%s); continuing without it", e)
        self.state = StoreState.READY
        return self

    # ---------------------------
    # Read / write helpers
    # ---------------------------

    def _read(self, op_name: str, primary: Callable[[sqlite3.Connection], T], fallback: Callable[[], T]) -> T:
        if self.state is StoreState.READY:
            try:
                with self._db(op_name) as conn:
                    return primary(conn)
            except (sqlite3.OperationalError, StorageLockdownError) as e:
                logger.warning("Primary read %s failed (%s); falling back to mirror", op_name, e)
                OPS_STATS.record_store_fallback()
        return fallback()

    def _mirrored(self, collection: str) -> Dict[str, Dict[str, Any]]:
        if self.mirror is None:
            return {}
        return self.mirror.collection(collection)

    def _journal(self, op_name: str, payload: Dict[str, Any]) -> None:
        if self.mirror is None:
            return
        try:
            self.mirror.append_pending(op_name, payload)
        except OSError as e:
            logger.error("Could not journal refused write %s: %s", op_name, e)

    def _write(self, op_name: str, payload: Dict[str, Any], fn: Callable[[sqlite3.Connection], T]) -> T:
        """Run `fn` inside an IMMEDIATE transaction, then refresh the mirror.

        The primary is authoritative: a mirror failure after a committed write
        is logged and the write still reports success.
        """
        if self.state is not StoreState.READY:
            self._journal(op_name, payload)
            raise store_unavailable(f"store not ready ({self.state.value})", op=op_name)

        with self._write_lock:
            try:
                with self._db(op_name, isolation_level=None) as conn:
                    conn.execute("BEGIN IMMEDIATE")
                    result = fn(conn)
                    snapshot = self._snapshot(conn) if self.mirror is not None else None
            except (sqlite3.OperationalError, StorageLockdownError) as e:
                logger.warning("Primary write %s failed (%s); journaled for reconciliation", op_name, e)
                OPS_STATS.record_store_unavailable()
                self._journal(op_name, payload)
                raise store_unavailable(f"primary store unavailable during {op_name}", op=op_name) from e

            if snapshot is not None:
                try:
                    self.mirror.write_snapshot(snapshot)
                except (VHError, OSError) as e:
                    logger.warning("Mirror update after %s failed: %s", op_name, e)
            return result
