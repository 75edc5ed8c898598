"""Local mirror of the primary store.

Purpose
-------
The sqlite store is authoritative, but deployments have lost it before
(ephemeral disks, a locked WAL, an operator restoring the wrong file). The
mirror keeps two things on local disk:

- a JSON snapshot of each store collection, rewritten after every successful
  primary write. Reads fall back to it while the primary is unavailable.
- an append-only, fsync'd journal of writes the primary refused, so an
  out-of-band reconciliation pass can replay them. Nothing in this package
  replays the journal.

Write-back guard: a snapshot that would replace a non-empty collection with
an empty one is refused. A transient empty read of the primary must never be
propagated as a wipe.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import VH_E_WRITE_BACK_REFUSED, vh_error

logger = logging.getLogger("vh_gateway")

SNAPSHOT_VERSION = 1


def guard_write_back(collection: str, existing_count: int, new_count: int) -> None:
    """Refuse to replace a non-empty collection with an empty one."""
    if existing_count > 0 and new_count == 0:
        raise vh_error(
            VH_E_WRITE_BACK_REFUSED,
            f"refusing to replace {existing_count} {collection} record(s) with an empty set",
            http_status=409,
            collection=collection,
            existing_count=existing_count,
        )


class LocalMirror:
    """JSON snapshot + pending-write journal living next to the sqlite file."""

    def __init__(self, path: str):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.journal_path = self.path.with_suffix(".pending.jsonl")
        self._lock = threading.Lock()

    # ---------------------------
    # Snapshot
    # ---------------------------

    def _read(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists() or self.path.stat().st_size == 0:
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Mirror snapshot %s unreadable: %s", self.path, e)
            return None
        if not isinstance(data, dict) or not isinstance(data.get("collections"), dict):
            logger.warning("Mirror snapshot %s has unexpected shape; ignoring", self.path)
            return None
        return data

    def exists(self) -> bool:
        with self._lock:
            return self._read() is not None

    def collection(self, name: str) -> Dict[str, Dict[str, Any]]:
        """Return the last-known contents of a collection (empty if unknown)."""
        with self._lock:
            data = self._read()
        if data is None:
            return {}
        coll = data["collections"].get(name)
        return dict(coll) if isinstance(coll, dict) else {}

    def write_snapshot(self, collections: Dict[str, Dict[str, Dict[str, Any]]]) -> None:
        """Replace the given collections in the snapshot (others are kept).

        Written to a temp file, fsync'd, then atomically renamed into place.
        """
        with self._lock:
            current = self._read() or {"version": SNAPSHOT_VERSION, "collections": {}}
            merged = dict(current["collections"])
            for name, records in collections.items():
                existing = merged.get(name) or {}
                guard_write_back(name, len(existing), len(records))
                merged[name] = records

            payload = {
                "version": SNAPSHOT_VERSION,
                "written_at_utc": datetime.now(timezone.utc).isoformat(),
                "collections": merged,
            }
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(payload, f, sort_keys=True, indent=1)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)

    # ---------------------------
    # Pending-write journal
    # ---------------------------

    def append_pending(self, op: str, payload: Dict[str, Any]) -> None:
        """Append a refused write and fsync it."""
        rec = {
            "op": op,
            "payload": payload,
            "ts_utc": datetime.now(timezone.utc).isoformat(),
        }
        line = json.dumps(rec, separators=(",", ":"), sort_keys=True) + "\n"
        with self._lock:
            with open(self.journal_path, "a", encoding="utf-8") as f:
                f.write(line)
                f.flush()
                os.fsync(f.fileno())

    def pending(self) -> List[Dict[str, Any]]:
        """Read journaled writes. Tolerates a truncated final line."""
        with self._lock:
            if not self.journal_path.exists():
                return []
            out: List[Dict[str, Any]] = []
            with open(self.journal_path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        out.append(json.loads(line))
                    except json.JSONDecodeError:
                        # Likely a truncated tail line after crash.
                        break
            return out
