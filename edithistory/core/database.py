"""
edithistory.core.database — SQLite persistence for edits and manifests.

Two tables:
  edits      one row per (collection_id, branch_name, edit_id); the
             AUTOINCREMENT row id is the sequence order of a branch
  manifests  one JSON manifest per collection

A single connection is shared behind a re-entrant lock. Writers go through
:meth:`EditDatabase.transaction`, which runs a synchronous function inside
``BEGIN IMMEDIATE … COMMIT`` on a worker thread. Nothing a transaction
wrote is visible until it commits, and an exception rolls all of it back.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Sequence, TypeVar

from edithistory.core.errors import EditHistoryError
from edithistory.core.models import (
    CollectionManifest,
    EditHistoryConfig,
    StorageType,
    StoredEdit,
)

logger = logging.getLogger("edithistory.database")

T = TypeVar("T")

# ---------------------------------------------------------------------------
# SQL DDL
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS edits (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    collection_id       TEXT    NOT NULL,
    branch_name         TEXT    NOT NULL,
    edit_id             TEXT    NOT NULL,
    content             BLOB    NOT NULL,
    content_hash        TEXT    NOT NULL DEFAULT '',
    storage_type        TEXT    NOT NULL DEFAULT 'full',
    base_edit_id        TEXT,
    previous_edit_id    TEXT,
    chain_length        INTEGER NOT NULL DEFAULT 0,
    size                INTEGER NOT NULL DEFAULT 0,
    uncompressed_size   INTEGER NOT NULL DEFAULT 0,
    created_at          REAL    NOT NULL,
    updated_at          REAL    NOT NULL,
    UNIQUE (collection_id, branch_name, edit_id)
);

CREATE TABLE IF NOT EXISTS manifests (
    collection_id       TEXT PRIMARY KEY,
    manifest_json       TEXT NOT NULL,
    updated_at          REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_edits_branch     ON edits(collection_id, branch_name, id);
CREATE INDEX IF NOT EXISTS idx_edits_collection ON edits(collection_id, edit_id);
CREATE INDEX IF NOT EXISTS idx_manifests_updated ON manifests(updated_at);
"""

_EDIT_COLUMNS = (
    "collection_id, branch_name, edit_id, content, content_hash, storage_type, "
    "base_edit_id, previous_edit_id, chain_length, size, uncompressed_size, "
    "created_at, updated_at"
)


class EditDatabase:
    """Synchronous SQLite store with an asyncio-friendly transaction façade."""

    def __init__(self, config: EditHistoryConfig) -> None:
        config.ensure_dirs()
        self.config = config
        self._lock = threading.RLock()
        self._in_transaction = False
        self._conn = sqlite3.connect(
            str(config.db_path),
            check_same_thread=False,
            isolation_level=None,           # Transactions are managed explicitly
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(_SCHEMA_SQL)
        if not config.in_memory:
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        logger.info("Edit database opened at %s", config.db_path)

    # -- Transactions ------------------------------------------------------

    @contextmanager
    def _transaction(self) -> Iterator["EditDatabase"]:
        with self._lock:
            if self._in_transaction:
                # Nested call from inside a running transaction joins it.
                yield self
                return
            self._conn.execute("BEGIN IMMEDIATE")
            self._in_transaction = True
            try:
                yield self
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                try:
                    self._conn.execute("COMMIT")
                except sqlite3.Error:
                    self._conn.execute("ROLLBACK")
                    raise
            finally:
                self._in_transaction = False

    def run_transaction(self, fn: Callable[["EditDatabase"], T], label: str = "transaction") -> T:
        """Run *fn* atomically on the calling thread."""
        try:
            with self._transaction():
                return fn(self)
        except EditHistoryError:
            raise
        except Exception as exc:
            logger.error("Transaction %s failed: %s", label, exc)
            raise

    def run_read(self, fn: Callable[["EditDatabase"], T]) -> T:
        with self._lock:
            return fn(self)

    async def transaction(self, fn: Callable[["EditDatabase"], T], label: str = "transaction") -> T:
        """
        Run *fn* atomically on a worker thread.

        Once started, the transaction runs to COMMIT or ROLLBACK even if the
        awaiting task is cancelled.
        """
        return await asyncio.to_thread(self.run_transaction, fn, label)

    async def read(self, fn: Callable[["EditDatabase"], T]) -> T:
        return await asyncio.to_thread(self.run_read, fn)

    # -- Edits: queries ----------------------------------------------------

    def get_edit(self, collection_id: str, branch_name: str, edit_id: str) -> StoredEdit | None:
        row = self._conn.execute(
            "SELECT * FROM edits WHERE collection_id = ? AND branch_name = ? AND edit_id = ?",
            (collection_id, branch_name, edit_id),
        ).fetchone()
        return self._row_to_edit(row) if row else None

    def get_head(self, collection_id: str, branch_name: str) -> StoredEdit | None:
        """The most recently appended edit of a branch."""
        row = self._conn.execute(
            "SELECT * FROM edits WHERE collection_id = ? AND branch_name = ? "
            "ORDER BY id DESC LIMIT 1",
            (collection_id, branch_name),
        ).fetchone()
        return self._row_to_edit(row) if row else None

    def list_branch_edits(self, collection_id: str, branch_name: str) -> list[StoredEdit]:
        rows = self._conn.execute(
            "SELECT * FROM edits WHERE collection_id = ? AND branch_name = ? ORDER BY id",
            (collection_id, branch_name),
        ).fetchall()
        return [self._row_to_edit(r) for r in rows]

    def list_collection_edits(self, collection_id: str) -> list[StoredEdit]:
        rows = self._conn.execute(
            "SELECT * FROM edits WHERE collection_id = ? ORDER BY id",
            (collection_id,),
        ).fetchall()
        return [self._row_to_edit(r) for r in rows]

    def list_branches(self, collection_id: str) -> list[str]:
        rows = self._conn.execute(
            "SELECT DISTINCT branch_name FROM edits WHERE collection_id = ? ORDER BY branch_name",
            (collection_id,),
        ).fetchall()
        return [r["branch_name"] for r in rows]

    def edit_exists_in_collection(self, collection_id: str, edit_id: str) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM edits WHERE collection_id = ? AND edit_id = ? LIMIT 1",
            (collection_id, edit_id),
        ).fetchone()
        return row is not None

    def count_edits(self, collection_id: str | None = None) -> int:
        if collection_id is None:
            return self._conn.execute("SELECT COUNT(*) FROM edits").fetchone()[0]
        return self._conn.execute(
            "SELECT COUNT(*) FROM edits WHERE collection_id = ?", (collection_id,)
        ).fetchone()[0]

    def branch_counts(self, collection_id: str) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT branch_name, COUNT(*) AS cnt FROM edits WHERE collection_id = ? "
            "GROUP BY branch_name",
            (collection_id,),
        ).fetchall()
        return {r["branch_name"]: r["cnt"] for r in rows}

    # -- Edits: mutations --------------------------------------------------

    def put_edit(self, edit: StoredEdit) -> int:
        """Insert a new row or rewrite an existing one in place (keeping its id)."""
        values = (
            edit.collection_id,
            edit.branch_name,
            edit.edit_id,
            edit.content,
            edit.content_hash,
            edit.storage_type.value,
            edit.base_edit_id,
            edit.previous_edit_id,
            edit.chain_length,
            edit.size,
            edit.uncompressed_size,
            edit.created_at,
            edit.updated_at,
        )
        if edit.id is None:
            cursor = self._conn.execute(
                f"INSERT INTO edits ({_EDIT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                values,
            )
            return cursor.lastrowid or 0
        self._conn.execute(
            """UPDATE edits SET
                   collection_id = ?, branch_name = ?, edit_id = ?, content = ?,
                   content_hash = ?, storage_type = ?, base_edit_id = ?,
                   previous_edit_id = ?, chain_length = ?, size = ?,
                   uncompressed_size = ?, created_at = ?, updated_at = ?
               WHERE id = ?""",
            (*values, edit.id),
        )
        return edit.id

    def put_edits(self, edits: Sequence[StoredEdit]) -> None:
        for edit in edits:
            self.put_edit(edit)

    def delete_edit_row(self, row_id: int) -> None:
        self._conn.execute("DELETE FROM edits WHERE id = ?", (row_id,))

    def delete_branch_edits(self, collection_id: str, branch_name: str) -> int:
        cursor = self._conn.execute(
            "DELETE FROM edits WHERE collection_id = ? AND branch_name = ?",
            (collection_id, branch_name),
        )
        return cursor.rowcount

    def delete_collection_edits(self, collection_id: str) -> int:
        cursor = self._conn.execute(
            "DELETE FROM edits WHERE collection_id = ?", (collection_id,)
        )
        return cursor.rowcount

    def move_collection_edits(self, old_collection_id: str, new_collection_id: str) -> int:
        cursor = self._conn.execute(
            "UPDATE edits SET collection_id = ?, updated_at = ? WHERE collection_id = ?",
            (new_collection_id, time.time(), old_collection_id),
        )
        return cursor.rowcount

    # -- Manifests ---------------------------------------------------------

    def get_manifest(self, collection_id: str) -> CollectionManifest | None:
        row = self._conn.execute(
            "SELECT manifest_json FROM manifests WHERE collection_id = ?", (collection_id,)
        ).fetchone()
        if row is None:
            return None
        return CollectionManifest.model_validate_json(row["manifest_json"])

    def put_manifest(self, collection_id: str, manifest: CollectionManifest) -> None:
        self._conn.execute(
            "INSERT OR REPLACE INTO manifests (collection_id, manifest_json, updated_at) "
            "VALUES (?, ?, ?)",
            (collection_id, manifest.model_dump_json(), time.time()),
        )

    def delete_manifest(self, collection_id: str) -> None:
        self._conn.execute("DELETE FROM manifests WHERE collection_id = ?", (collection_id,))

    def list_manifests(self) -> list[CollectionManifest]:
        rows = self._conn.execute(
            "SELECT manifest_json FROM manifests ORDER BY updated_at"
        ).fetchall()
        return [CollectionManifest.model_validate_json(r["manifest_json"]) for r in rows]

    def count_manifests(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM manifests").fetchone()[0]

    # -- Maintenance -------------------------------------------------------

    def clear(self) -> None:
        self._conn.execute("DELETE FROM edits")
        self._conn.execute("DELETE FROM manifests")

    def storage_stats(self) -> dict[str, Any]:
        row = self._conn.execute(
            "SELECT COUNT(*) AS cnt, COALESCE(SUM(size), 0) AS total FROM edits"
        ).fetchone()
        count, total = row["cnt"], row["total"]
        return {
            "edit_count": count,
            "manifest_count": self.count_manifests(),
            "total_size": total,
            "avg_edit_size": total / count if count else 0.0,
        }

    # -- Helpers -----------------------------------------------------------

    @staticmethod
    def _row_to_edit(row: sqlite3.Row) -> StoredEdit:
        return StoredEdit(
            id=row["id"],
            collection_id=row["collection_id"],
            branch_name=row["branch_name"],
            edit_id=row["edit_id"],
            content=bytes(row["content"]),
            content_hash=row["content_hash"] or "",
            storage_type=StorageType(row["storage_type"] or "full"),
            base_edit_id=row["base_edit_id"],
            previous_edit_id=row["previous_edit_id"],
            chain_length=row["chain_length"] or 0,
            size=row["size"] or 0,
            uncompressed_size=row["uncompressed_size"] or 0,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def close(self) -> None:
        with self._lock:
            self._conn.close()
