"""Collection- and branch-level maintenance: manifests, bulk deletes, renames."""

from __future__ import annotations

import asyncio
import logging

from edithistory.core.database import EditDatabase
from edithistory.core.errors import EditHistoryError, StateConsistencyError, ValidationError
from edithistory.core.models import CollectionManifest
from edithistory.services.context_service import ContextService
from edithistory.services.manifest_service import ManifestService
from edithistory.services.reconstruction_service import ReconstructionService

logger = logging.getLogger("edithistory.history")


class HistoryManagementService:
    MAX_TRANSACTION_ATTEMPTS = 3
    RETRY_BASE_DELAY_S = 0.1

    def __init__(
        self,
        db: EditDatabase,
        context: ContextService,
        reconstruction: ReconstructionService,
    ) -> None:
        self.db = db
        self.context = context
        self.reconstruction = reconstruction

    async def get_manifest(self, collection_id: str) -> CollectionManifest | None:
        return await self.db.read(lambda db: db.get_manifest(collection_id))

    async def save_manifest(self, collection_id: str, manifest: CollectionManifest) -> None:
        for attempt in range(self.MAX_TRANSACTION_ATTEMPTS):
            try:
                await self.db.transaction(
                    lambda db: db.put_manifest(collection_id, manifest), "save_manifest"
                )
                return
            except EditHistoryError:
                raise
            except Exception as exc:
                if attempt == self.MAX_TRANSACTION_ATTEMPTS - 1:
                    raise StateConsistencyError(
                        "Failed to save manifest after multiple attempts",
                        {"collection_id": collection_id, "cause": str(exc)},
                    ) from exc
                logger.warning("Manifest save for %s failed, retrying: %s", collection_id, exc)
                await asyncio.sleep(self.RETRY_BASE_DELAY_S * (2 ** attempt))

    async def delete_collection_history(self, collection_id: str) -> None:
        def _delete(db: EditDatabase) -> int:
            removed = db.delete_collection_edits(collection_id)
            db.delete_manifest(collection_id)
            return removed

        removed = await self.db.transaction(_delete, "delete_collection_history")
        self.context.clear_cache(collection_id)
        logger.info("Deleted history of %s (%d edit(s))", collection_id, removed)

    async def delete_branch(self, collection_id: str, branch_name: str) -> None:
        def _delete(db: EditDatabase) -> int:
            removed = db.delete_branch_edits(collection_id, branch_name)
            manifest = db.get_manifest(collection_id)
            if manifest is not None:
                db.put_manifest(collection_id, ManifestService.remove_branch(manifest, branch_name))
            return removed

        removed = await self.db.transaction(_delete, "delete_branch")
        self.context.clear_cache(collection_id, branch_name)
        logger.info("Deleted branch %s of %s (%d edit(s))", branch_name, collection_id, removed)

    async def rename_collection(self, old_collection_id: str, new_collection_id: str, new_path: str) -> None:
        if old_collection_id == new_collection_id:
            return

        def _rename(db: EditDatabase) -> None:
            if db.count_edits(new_collection_id) or db.get_manifest(new_collection_id) is not None:
                raise ValidationError(
                    f"Collection {new_collection_id} already has history", "new_collection_id"
                )
            db.move_collection_edits(old_collection_id, new_collection_id)
            manifest = db.get_manifest(old_collection_id)
            if manifest is not None:
                db.put_manifest(
                    new_collection_id,
                    ManifestService.update_manifest_collection_id(manifest, new_collection_id, new_path),
                )
                db.delete_manifest(old_collection_id)

        await self.db.transaction(_rename, "rename_collection")
        self.context.clear_cache(old_collection_id)
        # Cache keys embed the collection id.
        self.reconstruction.clear_cache()
        logger.info("Renamed collection %s -> %s", old_collection_id, new_collection_id)

    async def update_collection_path(self, collection_id: str, new_path: str) -> None:
        def _update(db: EditDatabase) -> None:
            manifest = db.get_manifest(collection_id)
            if manifest is not None:
                db.put_manifest(collection_id, ManifestService.update_manifest_path(manifest, new_path))

        await self.db.transaction(_update, "update_collection_path")

    async def clear_all(self) -> None:
        await self.db.transaction(lambda db: db.clear(), "clear_all")
        self.context.clear_cache()
        self.reconstruction.clear_cache()
        logger.info("Cleared all edit history")

    async def get_database_counts(self) -> dict[str, int]:
        return await self.db.read(
            lambda db: {"edit_count": db.count_edits(), "manifest_count": db.count_manifests()}
        )

    async def get_branch_counts(self, collection_id: str) -> dict[str, int]:
        return await self.db.read(lambda db: db.branch_counts(collection_id))

    async def validate_database_integrity(self) -> bool:
        """False if any manifest lists branches for a collection with no edits."""
        def _check(db: EditDatabase) -> bool:
            for manifest in db.list_manifests():
                if manifest.branches and db.count_edits(manifest.collection_id) == 0:
                    logger.warning("Orphaned manifest found for %s", manifest.collection_id)
                    return False
            return True

        return await self.db.read(_check)
