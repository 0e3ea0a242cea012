"""
edithistory.core.models — Pydantic schemas for the delta-chained edit store.

Every stored edit is a node in a per-(collection, branch) linked sequence.
A node either carries a full snapshot of the logical content or a patch
against the node it follows:

    FULL:  content = zstd(text)                     chain_length = 0
    DIFF:  content = zstd(patch(previous -> text))  chain_length = previous + 1

``content_hash`` is always the SHA-256 of the *reconstructed* text, so any
corruption anywhere along the chain is caught when the target is rebuilt.
"""

from __future__ import annotations

import os
import time
from datetime import datetime, timezone
from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field


def utc_now_iso() -> str:
    """ISO-8601 timestamp used for manifest bookkeeping."""
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class StorageType(StrEnum):
    """How an edit's payload is stored."""
    FULL = "full"                   # Self-contained snapshot
    DIFF = "diff"                   # Patch against previous_edit_id


# ---------------------------------------------------------------------------
# Stored edit: one row of the edit table
# ---------------------------------------------------------------------------

class StoredEdit(BaseModel):
    """
    A single persisted entry, keyed by (collection_id, branch_name, edit_id).

    ``id`` is the database row id. It is assigned on first insert and kept
    across rewrites, so it doubles as the insertion order of the sequence.
    """
    id: int | None = None
    collection_id: str
    branch_name: str
    edit_id: str
    content: bytes = b""                    # Compressed payload (snapshot or patch)
    content_hash: str = ""                  # SHA-256 of the reconstructed text
    storage_type: StorageType = StorageType.FULL
    base_edit_id: str | None = None         # FULL anchor of this chain
    previous_edit_id: str | None = None     # Preceding entry in the sequence
    chain_length: int = 0
    size: int = 0                           # Compressed bytes
    uncompressed_size: int = 0              # Logical bytes (UTF-8)
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)

    @property
    def is_full(self) -> bool:
        return self.storage_type == StorageType.FULL

    @property
    def cache_key(self) -> str:
        return f"{self.collection_id}:{self.branch_name}:{self.edit_id}"

    def export_metadata(self) -> dict[str, Any]:
        """Everything except the payload and the local row id."""
        return self.model_dump(mode="json", exclude={"id", "content"})


class SaveResult(BaseModel):
    size: int
    content_hash: str


class PreviousEditContext(BaseModel):
    """Cached view of a branch head, with its reconstructed content."""
    edit_id: str
    content: str
    content_hash: str
    base_edit_id: str
    chain_length: int
    timestamp: float


class ReconstructionResult(BaseModel):
    content: str
    hash: str
    verified: bool = True
    chain_length: int = 0
    reconstructed_at: float = Field(default_factory=time.time)
    # Populated only by repair: the edit the content actually came from.
    repaired_from: str | None = None
    note: str | None = None

    @property
    def degraded(self) -> bool:
        return self.repaired_from is not None


class ChainValidationResult(BaseModel):
    valid: bool
    chain_length: int = 0
    has_base: bool = False
    is_complete: bool = False
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    diagnostics: dict[str, Any] = Field(default_factory=dict)


class IntegrityCheckResult(BaseModel):
    valid: bool
    expected_hash: str
    actual_hash: str
    edit_id: str
    collection_id: str
    branch_name: str
    verified_at: str = Field(default_factory=utc_now_iso)
    was_healed: bool = False
    error: str | None = None


class IntegrityReport(BaseModel):
    collection_id: str
    branch_count: int
    edit_count: int
    corrupt_edits: list[str] = Field(default_factory=list)
    chain_consistency: bool = True
    generated_at: str = Field(default_factory=utc_now_iso)


class DatabaseStats(BaseModel):
    edit_count: int
    manifest_count: int
    active_keys: list[str] = Field(default_factory=list)
    queue_length: int = 0


# ---------------------------------------------------------------------------
# Manifest: caller-owned bookkeeping for one collection
# ---------------------------------------------------------------------------

class VersionInfo(BaseModel):
    version_number: int
    timestamp: str = Field(default_factory=utc_now_iso)
    size: int = 0
    name: str | None = Field(default=None, max_length=200)
    description: str | None = Field(default=None, max_length=1000)
    compressed_size: int | None = None
    uncompressed_size: int | None = None
    content_hash: str | None = None


class BranchManifest(BaseModel):
    versions: dict[str, VersionInfo] = Field(default_factory=dict)
    total_versions: int = 0


class CollectionManifest(BaseModel):
    collection_id: str
    path: str = ""
    current_branch: str = "main"
    branches: dict[str, BranchManifest] = Field(default_factory=dict)
    created_at: str = Field(default_factory=utc_now_iso)
    last_modified: str = Field(default_factory=utc_now_iso)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ChainThresholds(BaseModel):
    """Larger documents get shorter diff chains to bound rebuild cost."""
    small_size_limit: int = 10 * 1024
    medium_size_limit: int = 50 * 1024
    small_chain_length: int = 50
    medium_chain_length: int = 10
    large_chain_length: int = 1

    def max_chain_length(self, uncompressed_size: int) -> int:
        if uncompressed_size > self.medium_size_limit:
            return self.large_chain_length
        if uncompressed_size > self.small_size_limit:
            return self.medium_chain_length
        return self.small_chain_length


class EditHistoryConfig(BaseModel):
    """Runtime configuration for the edit store."""
    db_path: Path = Path(".edithistory/edits.db")
    compression_level: int = 9
    diff_size_threshold: float = 0.8        # Diff kept only if < fraction of full size
    max_content_size: int = 50 * 1024 * 1024
    max_id_length: int = 255
    max_retries: int = 5
    retry_base_delay_ms: int = 10
    max_reconstruction_chain: int = 1000
    reconstruction_cache_size: int = 50
    context_cache_size: int = 50
    mutex_timeout_s: float = 30.0
    chain_thresholds: ChainThresholds = Field(default_factory=ChainThresholds)

    @property
    def in_memory(self) -> bool:
        return str(self.db_path) == ":memory:"

    def ensure_dirs(self) -> None:
        if not self.in_memory:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @classmethod
    def for_path(cls, root: Path | None = None, **overrides: Any) -> "EditHistoryConfig":
        """
        Build a config anchored to *root* (default: CWD).

        Resolution order (highest priority first):
          1. Explicit ``overrides`` keyword arguments
          2. Environment variables (EDITHISTORY_DB_PATH, …)
          3. Built-in defaults
        """
        root = root or Path.cwd()
        env: dict[str, Any] = {}
        if (db_path := os.getenv("EDITHISTORY_DB_PATH")) is not None:
            env["db_path"] = Path(db_path)
        if (level := os.getenv("EDITHISTORY_COMPRESSION_LEVEL")) is not None:
            env["compression_level"] = int(level)
        if (threshold := os.getenv("EDITHISTORY_DIFF_THRESHOLD")) is not None:
            env["diff_size_threshold"] = float(threshold)
        if (retries := os.getenv("EDITHISTORY_MAX_RETRIES")) is not None:
            env["max_retries"] = int(retries)
        if (timeout := os.getenv("EDITHISTORY_MUTEX_TIMEOUT")) is not None:
            env["mutex_timeout_s"] = float(timeout)

        values: dict[str, Any] = {"db_path": root / ".edithistory" / "edits.db"}
        values.update(env)
        values.update(overrides)
        return cls(**values)
