"""
Branch archives.

An archive is a zip holding:

    data.json            edit metadata, in sequence order, without payloads
    blobs/<edit_id>.bin  stored (compressed) payload of each edit
    manifest.json        export header plus the branch's manifest entry

Payloads are copied as stored, so an import reproduces the exact chain
that was exported. Importing replaces the target branch atomically.
"""

from __future__ import annotations

import io
import json
import logging
import zipfile
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from edithistory.core.database import EditDatabase
from edithistory.core.errors import StateConsistencyError, ValidationError
from edithistory.core.models import (
    BranchManifest,
    CollectionManifest,
    StorageType,
    StoredEdit,
    VersionInfo,
    utc_now_iso,
)
from edithistory.services.context_service import ContextService
from edithistory.services.manifest_service import ManifestService
from edithistory.services.reconstruction_service import ReconstructionService

logger = logging.getLogger("edithistory.archive")

ARCHIVE_VERSION = "1.0"


class ImportExportService:
    MAX_ZIP_SIZE = 100 * 1024 * 1024
    MAX_FILE_COUNT = 10_000

    def __init__(
        self,
        db: EditDatabase,
        context: ContextService,
        reconstruction: ReconstructionService,
    ) -> None:
        self.db = db
        self.context = context
        self.reconstruction = reconstruction

    # -- Export ------------------------------------------------------------

    async def export_branch_data(self, collection_id: str, branch_name: str) -> bytes:
        edits, manifest = await self.db.read(
            lambda db: (db.list_branch_edits(collection_id, branch_name), db.get_manifest(collection_id))
        )
        if len(edits) > self.MAX_FILE_COUNT:
            raise ValidationError(f"Too many edits to export: {len(edits)}", "edit_count")

        total_size = sum(len(e.content) for e in edits)
        if total_size > self.MAX_ZIP_SIZE:
            raise ValidationError(
                f"Export size exceeds maximum {self.MAX_ZIP_SIZE} bytes", "export_size"
            )

        branch_meta = manifest.branches.get(branch_name) if manifest else None
        header = {
            "collection_id": collection_id,
            "branch_name": branch_name,
            "edit_count": len(edits),
            "total_size": total_size,
            "version": ARCHIVE_VERSION,
            "exported_at": manifest.last_modified if manifest else utc_now_iso(),
            "branch_metadata": branch_meta.model_dump(mode="json") if branch_meta else None,
        }

        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            # Payloads are already compressed.
            for edit in edits:
                archive.writestr(f"blobs/{edit.edit_id}.bin", edit.content, compress_type=zipfile.ZIP_STORED)
            archive.writestr("data.json", json.dumps([e.export_metadata() for e in edits]))
            archive.writestr("manifest.json", json.dumps(header))

        data = buffer.getvalue()
        if len(data) > self.MAX_ZIP_SIZE:
            raise ValidationError(f"Generated archive exceeds maximum size: {len(data)} bytes", "zip_size")
        logger.info("Exported %s/%s: %d edit(s), %d bytes", collection_id, branch_name, len(edits), len(data))
        return data

    # -- Import ------------------------------------------------------------

    async def import_branch_data(self, collection_id: str, branch_name: str, data: bytes) -> None:
        files = self._open(data)
        if "data.json" not in files:
            raise StateConsistencyError("Invalid archive: missing data.json")

        try:
            metadata = json.loads(files["data.json"])
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise StateConsistencyError("Invalid archive: data.json is not valid JSON") from exc
        if not isinstance(metadata, list):
            raise StateConsistencyError("Invalid archive: data.json must hold a list")
        if len(metadata) > self.MAX_FILE_COUNT:
            raise ValidationError(f"Too many edits in import: {len(metadata)}", "edit_count")

        edits = [self._restore_edit(collection_id, branch_name, meta, files) for meta in metadata]
        header = self._parse_header(files.get("manifest.json"))
        branch_meta = self._branch_metadata(header, edits)
        exported_at = header.get("exported_at") or utc_now_iso()

        def _replace(db: EditDatabase) -> None:
            removed = db.delete_branch_edits(collection_id, branch_name)
            for edit in edits:
                db.put_edit(edit)
            manifest = db.get_manifest(collection_id) or CollectionManifest(
                collection_id=collection_id, current_branch=branch_name
            )
            manifest = ManifestService.set_branch_data(manifest, branch_name, branch_meta)
            # Matching the archive timestamp keeps a re-export byte-stable.
            manifest.last_modified = exported_at
            db.put_manifest(collection_id, manifest)
            logger.info(
                "Imported %s/%s: replaced %d edit(s) with %d",
                collection_id, branch_name, removed, len(edits),
            )

        await self.db.transaction(_replace, "import_branch_data")
        self.context.clear_cache(collection_id, branch_name)
        self.reconstruction.clear_cache()

    def read_manifest_from_zip(self, data: bytes) -> dict[str, Any] | None:
        try:
            with zipfile.ZipFile(io.BytesIO(data)) as archive:
                if "manifest.json" not in archive.namelist():
                    return None
                parsed = json.loads(archive.read("manifest.json"))
        except (zipfile.BadZipFile, json.JSONDecodeError, UnicodeDecodeError) as exc:
            logger.warning("Could not read archive manifest: %s", exc)
            return None
        return parsed if isinstance(parsed, dict) else None

    # -- Helpers -----------------------------------------------------------

    def _open(self, data: bytes) -> dict[str, bytes]:
        if not data:
            raise ValidationError("Empty archive data", "data")
        if len(data) > self.MAX_ZIP_SIZE:
            raise ValidationError(
                f"Archive size {len(data)} exceeds maximum {self.MAX_ZIP_SIZE}", "zip_size"
            )
        try:
            with zipfile.ZipFile(io.BytesIO(data)) as archive:
                infos = archive.infolist()
                if len(infos) > self.MAX_FILE_COUNT:
                    raise ValidationError("Too many files in archive", "file_count")
                if sum(info.file_size for info in infos) > self.MAX_ZIP_SIZE:
                    raise ValidationError("Import exceeds maximum size", "import_size")
                return {info.filename: archive.read(info) for info in infos}
        except zipfile.BadZipFile as exc:
            raise StateConsistencyError("Archive extraction failed", {"cause": str(exc)}) from exc

    @staticmethod
    def _restore_edit(
        collection_id: str, branch_name: str, meta: Any, files: dict[str, bytes]
    ) -> StoredEdit:
        if not isinstance(meta, dict):
            raise StateConsistencyError("Invalid archive: edit metadata must be an object")
        if meta.get("collection_id") != collection_id or meta.get("branch_name") != branch_name:
            raise StateConsistencyError(
                "Import data does not match target branch",
                {
                    "expected": {"collection_id": collection_id, "branch_name": branch_name},
                    "actual": {
                        "collection_id": meta.get("collection_id"),
                        "branch_name": meta.get("branch_name"),
                    },
                },
            )
        edit_id = meta.get("edit_id")
        blob = files.get(f"blobs/{edit_id}.bin")
        if blob is None:
            raise StateConsistencyError(f"Missing blob for edit {edit_id}", {"edit_id": edit_id})

        try:
            edit = StoredEdit.model_validate({**meta, "id": None, "content": blob})
        except PydanticValidationError as exc:
            raise StateConsistencyError(
                f"Invalid metadata for edit {edit_id}", {"errors": exc.error_count()}
            ) from exc
        if edit.storage_type == StorageType.FULL and edit.chain_length:
            edit = edit.model_copy(update={"chain_length": 0})
        return edit

    @staticmethod
    def _parse_header(raw: bytes | None) -> dict[str, Any]:
        if raw is None:
            return {}
        try:
            parsed = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            logger.warning("Ignoring unreadable manifest.json in archive: %s", exc)
            return {}
        return parsed if isinstance(parsed, dict) else {}

    @staticmethod
    def _branch_metadata(header: dict[str, Any], edits: list[StoredEdit]) -> BranchManifest:
        raw = header.get("branch_metadata")
        if raw:
            try:
                return BranchManifest.model_validate(raw)
            except PydanticValidationError as exc:
                logger.warning("Rebuilding branch metadata, archive copy is invalid: %s", exc)

        versions: dict[str, VersionInfo] = {}
        for number, edit in enumerate(sorted(edits, key=lambda e: e.created_at), start=1):
            versions[edit.edit_id] = VersionInfo(
                version_number=number,
                timestamp=datetime.fromtimestamp(edit.created_at, timezone.utc).isoformat(),
                size=edit.uncompressed_size,
                compressed_size=edit.size,
                uncompressed_size=edit.uncompressed_size,
                content_hash=edit.content_hash,
            )
        return BranchManifest(versions=versions, total_versions=len(versions))
