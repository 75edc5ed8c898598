"""Repository/file store.

Only what the serving path and the script sync tool need: look up a file by
(repo id, file name), upsert files, replace a repository's file set. Full
repository CRUD, issues and commits live elsewhere.
"""

from __future__ import annotations

import sqlite3
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from .errors import VH_E_NOT_FOUND, vh_error
from .mirror import guard_write_back
from .store import SqliteStore


@dataclass(frozen=True)
class Repository:
    id: str
    name: str
    owner: str = "System"
    status: str = "Private"


@dataclass(frozen=True)
class RepoFile:
    repo_id: str
    name: str
    content: str


def repo_not_found(repo_id: str):
    return vh_error(VH_E_NOT_FOUND, "repository not found", http_status=404, what="repo", repo_id=repo_id)


def file_not_found(repo_id: str, name: str):
    return vh_error(VH_E_NOT_FOUND, "file not found", http_status=404, what="file", repo_id=repo_id, name=name)


class RepositoryStore(SqliteStore):
    collections = ("repos",)

    def _init_schema(self, conn: sqlite3.Connection) -> None:
        conn.execute("""
        CREATE TABLE IF NOT EXISTS repos (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            owner TEXT NOT NULL,
            status TEXT NOT NULL,
            created_at_utc TEXT NOT NULL
        )
        """)
        conn.execute("""
        CREATE TABLE IF NOT EXISTS repo_files (
            repo_id TEXT NOT NULL REFERENCES repos(id),
            name TEXT NOT NULL,
            content TEXT NOT NULL,
            updated_at_utc TEXT NOT NULL,
            PRIMARY KEY (repo_id, name)
        )
        """)

    def _snapshot(self, conn: sqlite3.Connection) -> Dict[str, Dict[str, Dict[str, Any]]]:
        repos: Dict[str, Dict[str, Any]] = {}
        for r in conn.execute("SELECT id, name, owner, status FROM repos"):
            repos[r["id"]] = {"id": r["id"], "name": r["name"], "owner": r["owner"], "status": r["status"], "files": {}}
        for f in conn.execute("SELECT repo_id, name, content FROM repo_files"):
            if f["repo_id"] in repos:
                repos[f["repo_id"]]["files"][f["name"]] = f["content"]
        return {"repos": repos}

    # ---------------------------
    # Reads
    # ---------------------------

    def get_repository(self, repo_id: str) -> Optional[Repository]:
        def primary(conn: sqlite3.Connection) -> Optional[Repository]:
            row = conn.execute("SELECT id, name, owner, status FROM repos WHERE id = ?", (repo_id,)).fetchone()
            return Repository(row["id"], row["name"], row["owner"], row["status"]) if row else None

        def fallback() -> Optional[Repository]:
            d = self._mirrored("repos").get(repo_id)
            return Repository(d["id"], d["name"], d.get("owner", "System"), d.get("status", "Private")) if d else None

        return self._read("get_repository", primary, fallback)

    def get_file(self, repo_id: str, name: str) -> RepoFile:
        """Return the named file or raise NOT_FOUND (repo or file)."""

        def primary(conn: sqlite3.Connection) -> RepoFile:
            if conn.execute("SELECT 1 FROM repos WHERE id = ?", (repo_id,)).fetchone() is None:
                raise repo_not_found(repo_id)
            row = conn.execute(
                "SELECT content FROM repo_files WHERE repo_id = ? AND name = ?", (repo_id, name)
            ).fetchone()
            if row is None:
                raise file_not_found(repo_id, name)
            return RepoFile(repo_id, name, row["content"])

        def fallback() -> RepoFile:
            d = self._mirrored("repos").get(repo_id)
            if d is None:
                raise repo_not_found(repo_id)
            files = d.get("files") or {}
            if name not in files:
                raise file_not_found(repo_id, name)
            return RepoFile(repo_id, name, files[name])

        return self._read("get_file", primary, fallback)

    def list_files(self, repo_id: str) -> List[str]:
        def primary(conn: sqlite3.Connection) -> List[str]:
            rows = conn.execute("SELECT name FROM repo_files WHERE repo_id = ? ORDER BY name", (repo_id,))
            return [r["name"] for r in rows]

        def fallback() -> List[str]:
            d = self._mirrored("repos").get(repo_id) or {}
            return sorted((d.get("files") or {}).keys())

        return self._read("list_files", primary, fallback)

    # ---------------------------
    # Writes
    # ---------------------------

    def _ensure_repo(self, conn: sqlite3.Connection, repo: Repository) -> None:
        conn.execute(
            "INSERT OR IGNORE INTO repos (id, name, owner, status, created_at_utc) VALUES (?, ?, ?, ?, ?)",
            (repo.id, repo.name, repo.owner, repo.status, self.clock().isoformat()),
        )

    def ensure_repository(self, repo: Repository) -> Repository:
        def tx(conn: sqlite3.Connection) -> Repository:
            self._ensure_repo(conn, repo)
            return repo

        return self._write("ensure_repository", asdict(repo), tx)

    def put_file(self, repo_id: str, name: str, content: str, owner: str = "System") -> RepoFile:
        """Create or overwrite a file, creating the repository if needed."""

        def tx(conn: sqlite3.Connection) -> RepoFile:
            self._ensure_repo(conn, Repository(id=repo_id, name=repo_id, owner=owner))
            conn.execute(
                """
                INSERT INTO repo_files (repo_id, name, content, updated_at_utc) VALUES (?, ?, ?, ?)
                ON CONFLICT(repo_id, name) DO UPDATE SET content = excluded.content, updated_at_utc = excluded.updated_at_utc
                """,
                (repo_id, name, content, self.clock().isoformat()),
            )
            return RepoFile(repo_id, name, content)

        return self._write(
            "put_file", {"repo_id": repo_id, "name": name, "content": content, "owner": owner}, tx
        )

    def replace_files(self, repo_id: str, files: Dict[str, str]) -> int:
        """Replace a repository's whole file set. Refuses to empty a non-empty repo."""

        def tx(conn: sqlite3.Connection) -> int:
            if conn.execute("SELECT 1 FROM repos WHERE id = ?", (repo_id,)).fetchone() is None:
                raise repo_not_found(repo_id)
            existing = conn.execute("SELECT COUNT(*) FROM repo_files WHERE repo_id = ?", (repo_id,)).fetchone()[0]
            guard_write_back(f"files of {repo_id}", int(existing), len(files))
            conn.execute("DELETE FROM repo_files WHERE repo_id = ?", (repo_id,))
            now = self.clock().isoformat()
            conn.executemany(
                "INSERT INTO repo_files (repo_id, name, content, updated_at_utc) VALUES (?, ?, ?, ?)",
                [(repo_id, n, c, now) for n, c in files.items()],
            )
            return len(files)

        return self._write("replace_files", {"repo_id": repo_id, "files": dict(files)}, tx)
