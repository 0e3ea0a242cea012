"""
edithistory.services — the store's service layer.

Stateless helpers (hashing, compression, diffs, manifests) and the stateful
services built on :class:`~edithistory.core.database.EditDatabase`.
"""

from __future__ import annotations

from edithistory.services.compression_service import CompressionService
from edithistory.services.context_service import ContextService
from edithistory.services.diff_service import DiffService
from edithistory.services.edit_storage_service import EditStorageService
from edithistory.services.hash_service import HashService
from edithistory.services.history_management_service import HistoryManagementService
from edithistory.services.import_export_service import ImportExportService
from edithistory.services.integrity_service import IntegrityService
from edithistory.services.manifest_service import ManifestService
from edithistory.services.reconstruction_service import ReconstructionService

__all__ = [
    "CompressionService",
    "ContextService",
    "DiffService",
    "EditStorageService",
    "HashService",
    "HistoryManagementService",
    "ImportExportService",
    "IntegrityService",
    "ManifestService",
    "ReconstructionService",
]
