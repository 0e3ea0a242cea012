"""
Rebuild logical content from a delta chain.

Walks ``previous_edit_id`` links back from the target to the nearest FULL
snapshot, replays each patch forward, and checks the result against the
target's stored SHA-256. Verified results go into a small LRU cache; a hit
is served only while the cached hash still equals the hash currently
stored on the record, so a rewritten entry is never answered from cache.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from typing import Iterable, Mapping

from edithistory.core.errors import (
    BrokenChainError,
    ChainError,
    ChainLengthError,
    CircularReferenceError,
    EditHistoryError,
    IntegrityError,
    MissingEditError,
    ReconstructionError,
    StateConsistencyError,
    ValidationError,
)
from edithistory.core.models import (
    ChainValidationResult,
    ReconstructionResult,
    StorageType,
    StoredEdit,
)
from edithistory.services.compression_service import CompressionService
from edithistory.services.diff_service import DiffService
from edithistory.services.hash_service import HashService

logger = logging.getLogger("edithistory.reconstruction")

LONG_CHAIN_WARNING = 100


def index_edits(edits: Iterable[StoredEdit]) -> dict[str, StoredEdit]:
    """Map edit_id -> record for one (collection, branch)."""
    return {e.edit_id: e for e in edits}


class ReconstructionService:
    def __init__(
        self,
        compression: CompressionService,
        max_chain_length: int = 1000,
        cache_size: int = 50,
    ) -> None:
        self.compression = compression
        self.max_chain_length = max_chain_length
        self.cache_size = cache_size
        self._cache: OrderedDict[str, ReconstructionResult] = OrderedDict()
        self._cache_lock = threading.Lock()

    # -- Reconstruction ----------------------------------------------------

    def reconstruct(
        self,
        target_edit_id: str,
        entries: Mapping[str, StoredEdit],
        verify: bool = True,
        use_cache: bool = True,
    ) -> ReconstructionResult:
        if not isinstance(target_edit_id, str) or not target_edit_id.strip():
            raise ValidationError("target_edit_id must be a non-empty string", "target_edit_id")
        if not entries:
            raise ValidationError("entries cannot be empty", "entries", {"size": 0})

        target = entries.get(target_edit_id)
        if target is None:
            raise ValidationError(
                f"Target edit {target_edit_id} not found",
                "target_edit_id",
                {
                    "target_edit_id": target_edit_id,
                    "available_ids": list(entries)[:10],
                    "total_edits": len(entries),
                },
            )

        if use_cache and target.content_hash:
            cached = self._cached_result(target)
            if cached is not None:
                logger.debug("Reconstruction cache hit for %s", target_edit_id)
                return cached

        chain = self._build_chain(target_edit_id, entries)
        content = self._apply_chain(chain)
        actual_hash = HashService.compute_hash(content)

        verified = True
        if verify and target.content_hash:
            verified = actual_hash == target.content_hash
            if not verified:
                raise IntegrityError(
                    f"Content integrity check failed for edit {target_edit_id}",
                    target.content_hash,
                    actual_hash,
                    {"edit_id": target_edit_id, "chain_length": len(chain)},
                )

        result = ReconstructionResult(
            content=content,
            hash=actual_hash,
            verified=verified,
            chain_length=len(chain),
        )
        if target.content_hash and target.content_hash == actual_hash:
            self._update_cache(target.cache_key, result)
        return result

    def reconstruct_batch(
        self,
        edit_ids: list[str],
        entries: Mapping[str, StoredEdit],
        verify: bool = True,
    ) -> list[ReconstructionResult]:
        """Reconstruct in order; the first failure aborts the batch."""
        if not edit_ids:
            return []
        missing = [eid for eid in edit_ids if eid not in entries]
        if missing:
            raise ValidationError(
                f"Missing edit ids in batch: {', '.join(missing[:5])}"
                + ("..." if len(missing) > 5 else ""),
                "edit_ids",
                {"missing_ids": missing[:10], "total_missing": len(missing)},
            )

        results: list[ReconstructionResult] = []
        for index, edit_id in enumerate(edit_ids):
            try:
                results.append(self.reconstruct(edit_id, entries, verify))
            except EditHistoryError as exc:
                raise StateConsistencyError(
                    f"Failed to reconstruct edit at index {index}: {edit_id}",
                    {
                        "index": index,
                        "edit_id": edit_id,
                        "successful_reconstructions": len(results),
                        "total_in_batch": len(edit_ids),
                        "cause": str(exc),
                    },
                ) from exc
        return results

    # -- Diagnostics -------------------------------------------------------

    def validate_chain(
        self,
        edit_id: str,
        entries: Mapping[str, StoredEdit],
        strict: bool = False,
    ) -> ChainValidationResult:
        """
        Inspect the chain behind *edit_id* without changing anything.

        Problems are reported in ``errors``/``warnings``. With ``strict`` an
        integrity failure found by the trial reconstruction is raised
        instead of only being reported.
        """
        errors: list[str] = []
        warnings: list[str] = []
        diagnostics: dict = {}

        if not isinstance(edit_id, str) or not edit_id.strip():
            return ChainValidationResult(valid=False, errors=["edit_id must be a non-empty string"])

        try:
            chain = self._build_chain(edit_id, entries)
        except ChainError as exc:
            diagnostics["chain_error"] = type(exc).__name__
            diagnostics.update(exc.context)
            return ChainValidationResult(valid=False, errors=[exc.message], diagnostics=diagnostics)

        has_base = any(e.is_full for e in chain)
        is_complete = self._is_chain_complete(chain)
        diagnostics.update(
            chain_length=len(chain),
            has_base=has_base,
            is_complete=is_complete,
            chain_edit_ids=[e.edit_id for e in chain],
        )

        if not has_base:
            errors.append("Chain missing base (full) edit - cannot reconstruct from diffs only")
        if not is_complete:
            errors.append("Chain is incomplete - missing intermediate edits")

        for position, edit in enumerate(chain):
            if edit.storage_type == StorageType.DIFF and not edit.previous_edit_id:
                errors.append(f"Diff edit {edit.edit_id} missing previous_edit_id at position {position}")
            if edit.is_full and position != len(chain) - 1:
                warnings.append(f"Full edit {edit.edit_id} is not at chain end (anomaly)")
            if edit.content_hash and len(edit.content_hash) != 64:
                warnings.append(
                    f"Edit {edit.edit_id} has non-standard hash length: {len(edit.content_hash)}"
                )
            if edit.storage_type == StorageType.DIFF and edit.chain_length != len(chain) - 1 - position:
                warnings.append(
                    f"Edit {edit.edit_id} records chain_length {edit.chain_length}, "
                    f"actual {len(chain) - 1 - position}"
                )

        if len(chain) > LONG_CHAIN_WARNING:
            warnings.append(f"Long chain detected ({len(chain)} edits) - reconstruction may be slow")

        if not errors:
            try:
                self.reconstruct(edit_id, entries, verify=True, use_cache=False)
                diagnostics["test_reconstruction"] = "success"
            except IntegrityError as exc:
                if strict:
                    raise
                errors.append(str(exc))
                diagnostics["test_reconstruction"] = "failed"
                diagnostics["expected_hash"] = exc.expected_hash
                diagnostics["actual_hash"] = exc.actual_hash
            except EditHistoryError as exc:
                if strict:
                    raise IntegrityError(
                        f"Edit {edit_id} cannot be reconstructed",
                        entries[edit_id].content_hash,
                        "",
                        {"edit_id": edit_id, "cause": str(exc)},
                    ) from exc
                errors.append(f"Test reconstruction failed: {exc}")
                diagnostics["test_reconstruction"] = "failed"

        return ChainValidationResult(
            valid=not errors,
            chain_length=len(chain),
            has_base=has_base,
            is_complete=is_complete,
            errors=errors,
            warnings=warnings,
            diagnostics=diagnostics,
        )

    def attempt_repair(
        self, target_edit_id: str, entries: Mapping[str, StoredEdit]
    ) -> ReconstructionResult | None:
        """
        Best-effort recovery. Tries the target, then each ancestor in turn,
        then the chain's FULL base alone. Anything other than the target
        itself comes back with ``repaired_from`` set (``degraded``).
        """
        target = entries.get(target_edit_id)
        if target is None:
            return None

        try:
            return self.reconstruct(target_edit_id, entries, verify=True)
        except EditHistoryError as exc:
            logger.warning("Reconstruction of %s failed, attempting repair: %s", target_edit_id, exc)

        current_id = target.previous_edit_id
        visited: set[str] = set()
        while current_id and current_id not in visited:
            visited.add(current_id)
            try:
                result = self.reconstruct(current_id, entries, verify=True)
                return result.model_copy(
                    update={"repaired_from": current_id, "note": "Repaired from nearest valid edit"}
                )
            except EditHistoryError:
                edit = entries.get(current_id)
                current_id = edit.previous_edit_id if edit else None

        base = self._find_reachable_base(target_edit_id, entries)
        if base is not None and base.edit_id not in visited:
            try:
                result = self.reconstruct(base.edit_id, entries, verify=True)
                return result.model_copy(
                    update={
                        "repaired_from": base.edit_id,
                        "note": "Reconstructed from base only - diffs may be missing",
                    }
                )
            except EditHistoryError:
                pass

        logger.warning("Edit %s is unrecoverable", target_edit_id)
        return None

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()

    def invalidate(self, edits: Iterable[StoredEdit]) -> None:
        with self._cache_lock:
            for edit in edits:
                self._cache.pop(edit.cache_key, None)

    # -- Internals ---------------------------------------------------------

    def _cached_result(self, target: StoredEdit) -> ReconstructionResult | None:
        with self._cache_lock:
            cached = self._cache.get(target.cache_key)
            if cached is None:
                return None
            if cached.hash != target.content_hash:
                # Record was rewritten since it was cached.
                del self._cache[target.cache_key]
                return None
            self._cache.move_to_end(target.cache_key)
            return cached

    def _update_cache(self, key: str, result: ReconstructionResult) -> None:
        with self._cache_lock:
            self._cache[key] = result
            self._cache.move_to_end(key)
            while len(self._cache) > self.cache_size:
                self._cache.popitem(last=False)

    def _build_chain(self, target_edit_id: str, entries: Mapping[str, StoredEdit]) -> list[StoredEdit]:
        """Newest first; ends at the first FULL record."""
        chain: list[StoredEdit] = []
        visited: set[str] = set()
        current_id: str | None = target_edit_id

        while current_id is not None:
            if current_id in visited:
                raise CircularReferenceError(
                    f"Circular reference detected at {current_id}",
                    {"current_id": current_id, "visited": list(visited)},
                )
            visited.add(current_id)

            record = entries.get(current_id)
            if record is None:
                raise MissingEditError(
                    f"Missing edit record in chain: {current_id}",
                    {"current_id": current_id, "target_edit_id": target_edit_id},
                )
            chain.append(record)

            if len(chain) > self.max_chain_length:
                raise ChainLengthError(
                    f"Chain length exceeds maximum {self.max_chain_length}",
                    {"target_edit_id": target_edit_id, "max_length": self.max_chain_length},
                )

            if record.is_full:
                break

            current_id = record.previous_edit_id
            if current_id is None:
                raise BrokenChainError(
                    f"Broken chain: diff {record.edit_id} missing previous_edit_id",
                    {"edit_id": record.edit_id, "storage_type": record.storage_type.value},
                )
        return chain

    def _apply_chain(self, chain: list[StoredEdit]) -> str:
        if not chain:
            raise ReconstructionError("Empty chain - no records to apply", {"chain_length": 0})

        forward = list(reversed(chain))
        base = forward[0]
        if not base.is_full:
            raise StateConsistencyError(
                "Base record must be of storage type 'full'",
                {"edit_id": base.edit_id, "storage_type": base.storage_type.value},
            )

        content = self.compression.decompress_content(base.content)

        for position, edit in enumerate(forward[1:], start=1):
            # A FULL record mid-chain acts as a fresh base.
            if edit.is_full:
                content = self.compression.decompress_content(edit.content)
                continue
            try:
                patch = self.compression.decompress_content(edit.content)
                content = DiffService.apply_diff(content, patch)
            except EditHistoryError as exc:
                raise ReconstructionError(
                    f"Failed to apply diff at position {position}",
                    {
                        "edit_id": edit.edit_id,
                        "chain_position": position,
                        "chain_length": len(forward),
                        "cause": str(exc),
                    },
                ) from exc

            if edit.content_hash and position < len(forward) - 1:
                intermediate = HashService.compute_hash(content)
                if intermediate != edit.content_hash:
                    raise IntegrityError(
                        f"Intermediate integrity check failed at position {position}",
                        edit.content_hash,
                        intermediate,
                        {"edit_id": edit.edit_id, "chain_position": position},
                    )
        return content

    @staticmethod
    def _is_chain_complete(chain: list[StoredEdit]) -> bool:
        if not chain:
            return False
        for current, following in zip(chain, chain[1:]):
            if current.storage_type == StorageType.DIFF and current.previous_edit_id != following.edit_id:
                return False
        return chain[-1].is_full

    @staticmethod
    def _find_reachable_base(
        target_edit_id: str, entries: Mapping[str, StoredEdit]
    ) -> StoredEdit | None:
        """First FULL record reachable backwards, ignoring broken links past it."""
        visited: set[str] = set()
        current_id: str | None = target_edit_id
        while current_id and current_id not in visited:
            visited.add(current_id)
            record = entries.get(current_id)
            if record is None:
                break
            if record.is_full:
                return record
            current_id = record.previous_edit_id
        base_id = entries[target_edit_id].base_edit_id
        return entries.get(base_id) if base_id else None
