"""
edithistory.operations.engine — Public façade over the edit store.

``EditHistoryEngine`` owns the database, the services and the shared
:class:`KeyedMutex`. Every identifier, path, manifest and content argument
is validated here before it reaches a service. Mutations are serialized
per collection id; reads run unlocked against committed state.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any

from edithistory.core.database import EditDatabase
from edithistory.core.errors import EditHistoryError
from edithistory.core.models import (
    ChainValidationResult,
    CollectionManifest,
    DatabaseStats,
    EditHistoryConfig,
    IntegrityCheckResult,
    IntegrityReport,
    ReconstructionResult,
    SaveResult,
    StoredEdit,
)
from edithistory.core.validation import (
    validate_content,
    validate_id,
    validate_manifest,
    validate_path,
)
from edithistory.services.compression_service import CompressionService
from edithistory.services.context_service import ContextService
from edithistory.services.edit_storage_service import EditStorageService
from edithistory.services.history_management_service import HistoryManagementService
from edithistory.services.import_export_service import ImportExportService
from edithistory.services.integrity_service import IntegrityService
from edithistory.services.reconstruction_service import ReconstructionService, index_edits
from edithistory.utils.keyed_mutex import KeyedMutex

logger = logging.getLogger("edithistory.engine")

GLOBAL_LOCK_KEY = "*"


class EditHistoryEngine:
    """
    Entry point for callers. Construct with an :class:`EditHistoryConfig`
    (``EditHistoryConfig(db_path=":memory:")`` for a throwaway store) and
    ``close()`` when done.
    """

    def __init__(self, config: EditHistoryConfig | None = None) -> None:
        self.config = config or EditHistoryConfig.for_path()
        self.db = EditDatabase(self.config)
        self.mutex = KeyedMutex(default_timeout=self.config.mutex_timeout_s)

        self.compression = CompressionService(self.config.compression_level)
        self.reconstruction = ReconstructionService(
            self.compression,
            max_chain_length=self.config.max_reconstruction_chain,
            cache_size=self.config.reconstruction_cache_size,
        )
        self.context = ContextService(self.reconstruction, cache_size=self.config.context_cache_size)
        self.storage = EditStorageService(
            self.config, self.db, self.compression, self.reconstruction, self.context, self.mutex
        )
        self.history = HistoryManagementService(self.db, self.context, self.reconstruction)
        self.integrity = IntegrityService(self.db, self.reconstruction)
        self.archive = ImportExportService(self.db, self.context, self.reconstruction)

    # -- Validation helpers ------------------------------------------------

    def _id(self, value: Any, field: str) -> str:
        return validate_id(value, field, self.config.max_id_length)

    def _ids(self, collection_id: Any, branch_name: Any) -> tuple[str, str]:
        return self._id(collection_id, "collection_id"), self._id(branch_name, "branch_name")

    # -- Edits -------------------------------------------------------------

    async def save_edit(
        self,
        collection_id: str,
        branch_name: str,
        edit_id: str,
        content: str,
        manifest: CollectionManifest | dict[str, Any],
        force: bool = False,
    ) -> SaveResult:
        collection_id, branch_name = self._ids(collection_id, branch_name)
        edit_id = self._id(edit_id, "edit_id")
        content = validate_content(content, self.config.max_content_size)
        return await self.storage.save_edit(
            collection_id, branch_name, edit_id, content, validate_manifest(manifest), force
        )

    async def get_edit_content(self, collection_id: str, branch_name: str, edit_id: str) -> str | None:
        collection_id, branch_name = self._ids(collection_id, branch_name)
        return await self.storage.get_edit_content(collection_id, branch_name, self._id(edit_id, "edit_id"))

    async def list_edits(self, collection_id: str, branch_name: str) -> list[StoredEdit]:
        return await self.storage.list_edits(*self._ids(collection_id, branch_name))

    async def delete_edit(self, collection_id: str, branch_name: str, edit_id: str) -> None:
        collection_id, branch_name = self._ids(collection_id, branch_name)
        await self.storage.delete_edit(collection_id, branch_name, self._id(edit_id, "edit_id"))

    async def rename_edit(self, collection_id: str, old_edit_id: str, new_edit_id: str) -> None:
        await self.storage.rename_edit(
            self._id(collection_id, "collection_id"),
            self._id(old_edit_id, "old_edit_id"),
            self._id(new_edit_id, "new_edit_id"),
        )

    async def get_edit_chain(self, collection_id: str, branch_name: str, edit_id: str) -> list[str]:
        collection_id, branch_name = self._ids(collection_id, branch_name)
        edit_id = self._id(edit_id, "edit_id")
        return await self.db.read(
            lambda db: self.context.get_edit_chain(db, collection_id, branch_name, edit_id)
        )

    async def validate_chain(
        self, collection_id: str, branch_name: str, edit_id: str, strict: bool = False
    ) -> ChainValidationResult:
        collection_id, branch_name = self._ids(collection_id, branch_name)
        edit_id = self._id(edit_id, "edit_id")

        def _validate(db: EditDatabase) -> ChainValidationResult:
            entries = index_edits(db.list_branch_edits(collection_id, branch_name))
            if edit_id not in entries:
                return ChainValidationResult(valid=False, errors=[f"Edit {edit_id} not found"])
            return self.reconstruction.validate_chain(edit_id, entries, strict=strict)

        return await self.db.read(_validate)

    async def attempt_repair(
        self, collection_id: str, branch_name: str, edit_id: str
    ) -> ReconstructionResult | None:
        collection_id, branch_name = self._ids(collection_id, branch_name)
        edit_id = self._id(edit_id, "edit_id")
        return await self.db.read(
            lambda db: self.reconstruction.attempt_repair(
                edit_id, index_edits(db.list_branch_edits(collection_id, branch_name))
            )
        )

    # -- Manifests and collections -----------------------------------------

    async def get_manifest(self, collection_id: str) -> CollectionManifest | None:
        return await self.history.get_manifest(self._id(collection_id, "collection_id"))

    async def save_manifest(self, collection_id: str, manifest: CollectionManifest | dict[str, Any]) -> None:
        collection_id = self._id(collection_id, "collection_id")
        manifest = validate_manifest(manifest)
        await self.mutex.run(collection_id, lambda: self.history.save_manifest(collection_id, manifest))

    async def delete_collection_history(self, collection_id: str) -> None:
        collection_id = self._id(collection_id, "collection_id")
        await self.mutex.run(collection_id, lambda: self.history.delete_collection_history(collection_id))

    async def delete_branch(self, collection_id: str, branch_name: str) -> None:
        collection_id, branch_name = self._ids(collection_id, branch_name)
        await self.mutex.run(collection_id, lambda: self.history.delete_branch(collection_id, branch_name))

    async def rename_collection(self, old_collection_id: str, new_collection_id: str, new_path: str) -> None:
        old_collection_id = self._id(old_collection_id, "old_collection_id")
        new_collection_id = self._id(new_collection_id, "new_collection_id")
        new_path = validate_path(new_path)
        await self.mutex.run_multiple(
            [old_collection_id, new_collection_id],
            lambda: self.history.rename_collection(old_collection_id, new_collection_id, new_path),
        )

    async def update_collection_path(self, collection_id: str, new_path: str) -> None:
        collection_id = self._id(collection_id, "collection_id")
        new_path = validate_path(new_path)
        await self.mutex.run(collection_id, lambda: self.history.update_collection_path(collection_id, new_path))

    async def get_branch_counts(self, collection_id: str) -> dict[str, int]:
        return await self.history.get_branch_counts(self._id(collection_id, "collection_id"))

    async def clear_all(self) -> None:
        await self.mutex.run(GLOBAL_LOCK_KEY, self.history.clear_all)

    # -- Integrity ---------------------------------------------------------

    async def verify_edit_integrity(
        self, collection_id: str, branch_name: str, edit_id: str, fix: bool = False
    ) -> IntegrityCheckResult:
        collection_id, branch_name = self._ids(collection_id, branch_name)
        edit_id = self._id(edit_id, "edit_id")
        return await self.mutex.run(
            collection_id,
            lambda: self.integrity.verify_edit_integrity(collection_id, branch_name, edit_id, fix),
        )

    async def verify_branch_integrity(
        self, collection_id: str, branch_name: str, fix: bool = False
    ) -> list[IntegrityCheckResult]:
        collection_id, branch_name = self._ids(collection_id, branch_name)
        return await self.mutex.run(
            collection_id,
            lambda: self.integrity.verify_branch_integrity(collection_id, branch_name, fix),
        )

    async def verify_all_branches(
        self, collection_id: str, fix: bool = False
    ) -> dict[str, list[IntegrityCheckResult]]:
        collection_id = self._id(collection_id, "collection_id")
        return await self.mutex.run(
            collection_id, lambda: self.integrity.verify_all_branches(collection_id, fix)
        )

    async def find_corrupt_edits(self, collection_id: str) -> list[str]:
        collection_id = self._id(collection_id, "collection_id")
        return await self.mutex.run(collection_id, lambda: self.integrity.find_corrupt_edits(collection_id))

    async def verify_chain_consistency(self, collection_id: str, branch_name: str) -> bool:
        return await self.integrity.verify_chain_consistency(*self._ids(collection_id, branch_name))

    async def generate_integrity_report(self, collection_id: str) -> IntegrityReport:
        collection_id = self._id(collection_id, "collection_id")
        return await self.mutex.run(
            collection_id, lambda: self.integrity.generate_integrity_report(collection_id)
        )

    # -- Import / export ---------------------------------------------------

    async def export_branch_data(self, collection_id: str, branch_name: str) -> bytes:
        collection_id, branch_name = self._ids(collection_id, branch_name)
        return await self.mutex.run(
            collection_id, lambda: self.archive.export_branch_data(collection_id, branch_name)
        )

    async def import_branch_data(self, collection_id: str, branch_name: str, data: bytes) -> None:
        collection_id, branch_name = self._ids(collection_id, branch_name)
        await self.mutex.run(
            collection_id, lambda: self.archive.import_branch_data(collection_id, branch_name, data)
        )

    def read_manifest_from_zip(self, data: bytes) -> dict[str, Any] | None:
        return self.archive.read_manifest_from_zip(data)

    # -- Housekeeping ------------------------------------------------------

    async def get_database_stats(self) -> DatabaseStats:
        counts = await self.history.get_database_counts()
        return DatabaseStats(
            edit_count=counts["edit_count"],
            manifest_count=counts["manifest_count"],
            active_keys=self.mutex.active_keys,
            queue_length=self.mutex.queue_length,
        )

    async def health_check(self) -> dict[str, Any]:
        errors: list[str] = []
        try:
            await self.history.get_database_counts()
            if not await self.history.validate_database_integrity():
                errors.append("Orphaned manifest found")
        except (EditHistoryError, sqlite3.Error) as exc:
            errors.append(f"Database check failed: {exc}")
        if self.mutex.queue_length > 100:
            errors.append(f"Mutex queue is backed up ({self.mutex.queue_length} waiting)")
        return {"healthy": not errors, "errors": errors}

    def close(self) -> None:
        self.db.close()
        logger.info("Edit history engine closed")
