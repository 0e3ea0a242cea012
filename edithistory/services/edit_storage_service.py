"""
Save, read, delete and rename edits.

Saving decides between a FULL snapshot and a DIFF against the branch head,
then commits the record and the updated manifest in one transaction. The
transaction re-reads the head and aborts with :class:`ConcurrencyError` if
it is no longer the head the strategy was computed against (compare-and-
swap); the save is then retried from scratch with exponential backoff.

Deleting a record splices it out of its sequence. Each direct child is
rewritten as a self-contained FULL snapshot, and every diff descendant of
that child is re-anchored to it, all inside a single transaction.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from collections import deque
from dataclasses import dataclass

from edithistory.core.database import EditDatabase
from edithistory.core.errors import (
    ConcurrencyError,
    EditHistoryError,
    IntegrityError,
    StateConsistencyError,
    ValidationError,
)
from edithistory.core.models import (
    CollectionManifest,
    EditHistoryConfig,
    PreviousEditContext,
    SaveResult,
    StorageType,
    StoredEdit,
)
from edithistory.services.compression_service import CompressionService
from edithistory.services.context_service import ContextService
from edithistory.services.diff_service import DiffService
from edithistory.services.hash_service import HashService
from edithistory.services.manifest_service import ManifestService
from edithistory.services.reconstruction_service import ReconstructionService, index_edits
from edithistory.utils.keyed_mutex import KeyedMutex

logger = logging.getLogger("edithistory.storage")


@dataclass(frozen=True)
class StorageDecision:
    content: bytes
    storage_type: StorageType
    chain_length: int
    base_edit_id: str | None = None
    previous_edit_id: str | None = None


class EditStorageService:
    def __init__(
        self,
        config: EditHistoryConfig,
        db: EditDatabase,
        compression: CompressionService,
        reconstruction: ReconstructionService,
        context: ContextService,
        mutex: KeyedMutex,
    ) -> None:
        self.config = config
        self.db = db
        self.compression = compression
        self.reconstruction = reconstruction
        self.context = context
        self.mutex = mutex

    # -- Save --------------------------------------------------------------

    async def save_edit(
        self,
        collection_id: str,
        branch_name: str,
        edit_id: str,
        content: str,
        manifest: CollectionManifest,
        force: bool = False,
    ) -> SaveResult:
        """Store *content* as edit *edit_id*. Re-saving an existing id is a no-op."""
        for name, value in (
            ("collection_id", collection_id),
            ("branch_name", branch_name),
            ("edit_id", edit_id),
        ):
            if not value:
                raise ValidationError(f"{name} cannot be empty", name)

        return await self.mutex.run(
            collection_id,
            lambda: self._save_edit_locked(
                collection_id, branch_name, edit_id, content, manifest, force
            ),
        )

    async def _save_edit_locked(
        self,
        collection_id: str,
        branch_name: str,
        edit_id: str,
        content: str,
        manifest: CollectionManifest,
        force: bool,
    ) -> SaveResult:
        content_hash = HashService.compute_hash(content)
        uncompressed_size = CompressionService.get_uncompressed_size(content)
        max_chain_length = self.config.chain_thresholds.max_chain_length(uncompressed_size)
        max_retries = self.config.max_retries

        for attempt in range(max_retries):
            existing = await self.db.read(
                lambda db: db.get_edit(collection_id, branch_name, edit_id)
            )
            if existing is not None and not force:
                return SaveResult(size=existing.size, content_hash=existing.content_hash)

            if existing is not None:
                # Forced overwrite: a self-contained snapshot in the same slot.
                head_id, previous = None, None
            else:
                head_id, previous = await self.db.read(
                    lambda db: self._read_head(db, collection_id, branch_name)
                )

            decision = await asyncio.to_thread(
                self._determine_storage_strategy,
                content,
                uncompressed_size,
                max_chain_length,
                previous,
                head_id,
                edit_id,
            )
            now = time.time()
            record = StoredEdit(
                collection_id=collection_id,
                branch_name=branch_name,
                edit_id=edit_id,
                content=decision.content,
                content_hash=content_hash,
                storage_type=decision.storage_type,
                chain_length=decision.chain_length,
                base_edit_id=decision.base_edit_id,
                previous_edit_id=decision.previous_edit_id,
                size=len(decision.content),
                uncompressed_size=uncompressed_size,
                created_at=now,
                updated_at=now,
            )
            updated_manifest = ManifestService.update_manifest_with_edit_info(
                manifest,
                branch_name,
                edit_id,
                record.size,
                uncompressed_size,
                content_hash,
            )

            try:
                result = await self.db.transaction(
                    lambda db: self._execute_save_transaction(
                        db, record, updated_manifest, head_id, force
                    ),
                    "save_edit",
                )
            except ConcurrencyError as exc:
                logger.warning(
                    "Concurrency conflict saving %s/%s/%s (%s), attempt %d/%d",
                    collection_id, branch_name, edit_id, exc.reason, attempt + 1, max_retries,
                )
            except sqlite3.OperationalError as exc:
                logger.warning(
                    "Transient database error saving %s/%s/%s: %s, attempt %d/%d",
                    collection_id, branch_name, edit_id, exc, attempt + 1, max_retries,
                )
            else:
                self.context.clear_cache(collection_id, branch_name)
                logger.debug(
                    "Saved %s/%s/%s [%s, chain=%d, %d bytes]",
                    collection_id, branch_name, edit_id,
                    result.storage_type.value, result.chain_length, result.size,
                )
                return SaveResult(size=result.size, content_hash=result.content_hash)

            if attempt < max_retries - 1:
                await asyncio.sleep(self.config.retry_base_delay_ms * (2 ** attempt) / 1000)

        raise StateConsistencyError(
            "Failed to save edit after maximum retries",
            {
                "collection_id": collection_id,
                "branch_name": branch_name,
                "edit_id": edit_id,
                "attempts": max_retries,
            },
        )

    def _read_head(
        self, db: EditDatabase, collection_id: str, branch_name: str
    ) -> tuple[str | None, PreviousEditContext | None]:
        """Head id as observed now, plus its context when it can be rebuilt."""
        head = db.get_head(collection_id, branch_name)
        if head is None:
            return None, None
        try:
            return head.edit_id, self.context.get_previous_edit_context(db, collection_id, branch_name)
        except EditHistoryError as exc:
            logger.warning(
                "Failed to rebuild head %s of %s:%s, forcing full save: %s",
                head.edit_id, collection_id, branch_name, exc,
            )
            return head.edit_id, None

    def _determine_storage_strategy(
        self,
        content: str,
        uncompressed_size: int,
        max_chain_length: int,
        previous: PreviousEditContext | None,
        head_id: str | None,
        edit_id: str,
    ) -> StorageDecision:
        if previous is None:
            # First edit, or a head that could not be rebuilt: still link to it.
            previous_id = head_id if head_id != edit_id else None
            return StorageDecision(
                content=self.compression.compress_content(content),
                storage_type=StorageType.FULL,
                chain_length=0,
                previous_edit_id=previous_id,
            )

        if previous.chain_length >= max_chain_length:
            return StorageDecision(
                content=self.compression.compress_content(content),
                storage_type=StorageType.FULL,
                chain_length=0,
                previous_edit_id=previous.edit_id,
            )

        patch = DiffService.create_diff(previous.content, content, label=f"edit_{edit_id}")
        if DiffService.calculate_diff_size(patch) < uncompressed_size * self.config.diff_size_threshold:
            return StorageDecision(
                content=self.compression.compress_content(patch),
                storage_type=StorageType.DIFF,
                chain_length=previous.chain_length + 1,
                base_edit_id=previous.base_edit_id,
                previous_edit_id=previous.edit_id,
            )

        return StorageDecision(
            content=self.compression.compress_content(content),
            storage_type=StorageType.FULL,
            chain_length=0,
            previous_edit_id=previous.edit_id,
        )

    def _execute_save_transaction(
        self,
        db: EditDatabase,
        record: StoredEdit,
        manifest: CollectionManifest,
        expected_head_id: str | None,
        force: bool,
    ) -> StoredEdit:
        existing = db.get_edit(record.collection_id, record.branch_name, record.edit_id)

        if existing is not None:
            if not force:
                return existing                 # Lost a benign race: same key already saved
            dependents = [
                e for e in db.list_branch_edits(record.collection_id, record.branch_name)
                if e.previous_edit_id == existing.edit_id and e.storage_type == StorageType.DIFF
            ]
            if dependents:
                raise StateConsistencyError(
                    f"Cannot overwrite edit {existing.edit_id}: diff edits depend on it",
                    {"edit_id": existing.edit_id, "dependents": [e.edit_id for e in dependents]},
                )
            if record.storage_type == StorageType.DIFF:
                # Record appeared after the strategy was chosen against the head.
                raise ConcurrencyError(
                    f"Edit {record.edit_id} was created during save",
                    "record_appeared",
                    "edits",
                    {"edit_id": record.edit_id},
                )
            record = record.model_copy(update={
                "id": existing.id,
                "previous_edit_id": existing.previous_edit_id,
                "created_at": existing.created_at,
            })
            self.reconstruction.invalidate([existing])
        else:
            head = db.get_head(record.collection_id, record.branch_name)
            current_head_id = head.edit_id if head else None
            if current_head_id != expected_head_id:
                raise ConcurrencyError(
                    "Head moved during save transaction"
                    if expected_head_id
                    else "Head exists but expected none (initialization conflict)",
                    "head_mismatch",
                    "edits",
                    {"expected_head": expected_head_id, "actual_head": current_head_id},
                )

        record = record.model_copy(update={"id": db.put_edit(record)})
        db.put_manifest(record.collection_id, manifest)
        return record

    # -- Read --------------------------------------------------------------

    async def get_edit_content(
        self, collection_id: str, branch_name: str, edit_id: str
    ) -> str | None:
        """Reconstructed text of an edit, or None if there is no such edit."""
        return await self.db.read(
            lambda db: self._read_content(db, collection_id, branch_name, edit_id)
        )

    def _read_content(
        self, db: EditDatabase, collection_id: str, branch_name: str, edit_id: str
    ) -> str | None:
        entries = index_edits(db.list_branch_edits(collection_id, branch_name))
        target = entries.get(edit_id)
        if target is None:
            return None
        try:
            result = self.reconstruction.reconstruct(edit_id, entries, verify=True)
        except IntegrityError:
            raise
        except EditHistoryError as exc:
            raise IntegrityError(
                f"Failed to reconstruct edit {edit_id}",
                target.content_hash,
                "",
                {
                    "collection_id": collection_id,
                    "branch_name": branch_name,
                    "edit_id": edit_id,
                    "reason": type(exc).__name__,
                    "detail": str(exc),
                },
            ) from exc
        return result.content

    async def list_edits(self, collection_id: str, branch_name: str) -> list[StoredEdit]:
        return await self.db.read(lambda db: db.list_branch_edits(collection_id, branch_name))

    # -- Delete ------------------------------------------------------------

    async def delete_edit(self, collection_id: str, branch_name: str, edit_id: str) -> None:
        await self.mutex.run(
            collection_id,
            lambda: self.db.transaction(
                lambda db: self._delete_in_transaction(db, collection_id, branch_name, edit_id),
                "delete_edit",
            ),
        )
        self.context.clear_cache(collection_id, branch_name)

    def _delete_in_transaction(
        self, db: EditDatabase, collection_id: str, branch_name: str, edit_id: str
    ) -> None:
        branch_edits = db.list_branch_edits(collection_id, branch_name)
        entries = index_edits(branch_edits)
        target = entries.get(edit_id)
        if target is None:
            return

        updates = self._rebase_children(target, branch_edits, entries)
        db.put_edits(list(updates.values()))
        if target.id is not None:
            db.delete_edit_row(target.id)

        manifest = db.get_manifest(collection_id)
        if manifest is not None:
            db.put_manifest(
                collection_id,
                ManifestService.remove_version_info(manifest, branch_name, edit_id),
            )
        self.reconstruction.invalidate([target, *updates.values()])
        logger.info(
            "Deleted edit %s/%s/%s, rewrote %d dependent record(s)",
            collection_id, branch_name, edit_id, len(updates),
        )

    def _rebase_children(
        self,
        target: StoredEdit,
        branch_edits: list[StoredEdit],
        entries: dict[str, StoredEdit],
    ) -> dict[str, StoredEdit]:
        """Records to rewrite so that *target* can be removed, keyed by edit id."""
        now = time.time()
        updates: dict[str, StoredEdit] = {}
        children = [e for e in branch_edits if e.previous_edit_id == target.edit_id]

        for child in children:
            if child.is_full:
                # Already self-contained; only the link moves.
                updates[child.edit_id] = child.model_copy(
                    update={"previous_edit_id": target.previous_edit_id, "updated_at": now}
                )
                continue

            result = self.reconstruction.reconstruct(child.edit_id, entries, verify=False, use_cache=False)
            compressed = self.compression.compress_content(result.content)
            new_anchor = child.model_copy(update={
                "storage_type": StorageType.FULL,
                "content": compressed,
                "content_hash": result.hash,
                "base_edit_id": child.edit_id,
                "chain_length": 0,
                "size": len(compressed),
                "uncompressed_size": CompressionService.get_uncompressed_size(result.content),
                "previous_edit_id": target.previous_edit_id,
                "updated_at": now,
            })
            updates[child.edit_id] = new_anchor
            self._reanchor_descendants(new_anchor, branch_edits, updates, now)

        return updates

    @staticmethod
    def _reanchor_descendants(
        anchor: StoredEdit,
        branch_edits: list[StoredEdit],
        updates: dict[str, StoredEdit],
        now: float,
    ) -> None:
        """Breadth-first: point every diff descendant at *anchor* and renumber chain_length."""
        queue = deque([anchor])
        visited = {anchor.edit_id}
        while queue:
            parent = queue.popleft()
            for descendant in branch_edits:
                if descendant.previous_edit_id != parent.edit_id or descendant.edit_id in visited:
                    continue
                if descendant.is_full:
                    continue
                visited.add(descendant.edit_id)
                current = updates.get(descendant.edit_id, descendant)
                rebased = current.model_copy(update={
                    "base_edit_id": anchor.edit_id,
                    "chain_length": parent.chain_length + 1,
                    "updated_at": now,
                })
                updates[descendant.edit_id] = rebased
                queue.append(rebased)

    # -- Rename ------------------------------------------------------------

    async def rename_edit(self, collection_id: str, old_edit_id: str, new_edit_id: str) -> None:
        if old_edit_id == new_edit_id:
            return
        await self.mutex.run(
            collection_id,
            lambda: self.db.transaction(
                lambda db: self._rename_in_transaction(db, collection_id, old_edit_id, new_edit_id),
                "rename_edit",
            ),
        )
        self.context.clear_cache(collection_id)

    def _rename_in_transaction(
        self, db: EditDatabase, collection_id: str, old_edit_id: str, new_edit_id: str
    ) -> None:
        if not db.edit_exists_in_collection(collection_id, old_edit_id):
            return
        if db.edit_exists_in_collection(collection_id, new_edit_id):
            raise ValidationError(f"Edit {new_edit_id} already exists", "new_edit_id")

        now = time.time()
        renamed: list[StoredEdit] = []
        for edit in db.list_collection_edits(collection_id):
            changes: dict = {}
            if edit.edit_id == old_edit_id:
                changes["edit_id"] = new_edit_id
            if edit.base_edit_id == old_edit_id:
                changes["base_edit_id"] = new_edit_id
            if edit.previous_edit_id == old_edit_id:
                changes["previous_edit_id"] = new_edit_id
            if changes:
                changes["updated_at"] = now
                renamed.append(edit)
                db.put_edit(edit.model_copy(update=changes))

        manifest = db.get_manifest(collection_id)
        if manifest is not None:
            db.put_manifest(
                collection_id, ManifestService.rename_version(manifest, old_edit_id, new_edit_id)
            )
        self.reconstruction.invalidate(renamed)
        logger.info(
            "Renamed edit %s -> %s in %s (%d record(s) touched)",
            old_edit_id, new_edit_id, collection_id, len(renamed),
        )
