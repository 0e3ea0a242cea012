"""
Hash verification over stored edits, with optional healing.

A check rebuilds the edit without verification and compares the digest
against the stored ``content_hash``. Healing trusts the rebuilt text: it
rewrites the stored hash and logical size, and the manifest entry, in one
transaction.
"""

from __future__ import annotations

import logging
import time

from edithistory.core.database import EditDatabase
from edithistory.core.errors import EditHistoryError, ValidationError
from edithistory.core.models import IntegrityCheckResult, IntegrityReport, ReconstructionResult, StoredEdit
from edithistory.services.compression_service import CompressionService
from edithistory.services.context_service import sequence_is_consistent
from edithistory.services.hash_service import HashService
from edithistory.services.manifest_service import ManifestService
from edithistory.services.reconstruction_service import ReconstructionService, index_edits

logger = logging.getLogger("edithistory.integrity")


class IntegrityService:
    def __init__(self, db: EditDatabase, reconstruction: ReconstructionService) -> None:
        self.db = db
        self.reconstruction = reconstruction

    async def verify_edit_integrity(
        self, collection_id: str, branch_name: str, edit_id: str, fix: bool = False
    ) -> IntegrityCheckResult:
        return await self.db.read(
            lambda db: self._verify_edit(db, collection_id, branch_name, edit_id, fix)
        )

    async def verify_branch_integrity(
        self, collection_id: str, branch_name: str, fix: bool = False
    ) -> list[IntegrityCheckResult]:
        def _verify(db: EditDatabase) -> list[IntegrityCheckResult]:
            return [
                self._verify_edit(db, collection_id, branch_name, edit.edit_id, fix)
                for edit in db.list_branch_edits(collection_id, branch_name)
            ]

        return await self.db.read(_verify)

    async def verify_all_branches(
        self, collection_id: str, fix: bool = False
    ) -> dict[str, list[IntegrityCheckResult]]:
        results: dict[str, list[IntegrityCheckResult]] = {}
        branches = await self.db.read(lambda db: db.list_branches(collection_id))
        for branch_name in branches:
            results[branch_name] = await self.verify_branch_integrity(collection_id, branch_name, fix)
        return results

    async def find_corrupt_edits(self, collection_id: str) -> list[str]:
        corrupt: list[str] = []
        for branch_results in (await self.verify_all_branches(collection_id)).values():
            corrupt.extend(r.edit_id for r in branch_results if not r.valid)
        return corrupt

    async def verify_chain_consistency(self, collection_id: str, branch_name: str) -> bool:
        edits = await self.db.read(lambda db: db.list_branch_edits(collection_id, branch_name))
        return sequence_is_consistent(edits)

    async def generate_integrity_report(self, collection_id: str) -> IntegrityReport:
        all_results = await self.verify_all_branches(collection_id)
        consistent = True
        for branch_name in all_results:
            if not await self.verify_chain_consistency(collection_id, branch_name):
                consistent = False
        report = IntegrityReport(
            collection_id=collection_id,
            branch_count=len(all_results),
            edit_count=sum(len(results) for results in all_results.values()),
            corrupt_edits=[
                r.edit_id for results in all_results.values() for r in results if not r.valid
            ],
            chain_consistency=consistent,
        )
        logger.info(
            "Integrity report for %s: %d edit(s), %d corrupt, consistent=%s",
            collection_id, report.edit_count, len(report.corrupt_edits), consistent,
        )
        return report

    # -- Internals ---------------------------------------------------------

    def _verify_edit(
        self, db: EditDatabase, collection_id: str, branch_name: str, edit_id: str, fix: bool
    ) -> IntegrityCheckResult:
        entries = index_edits(db.list_branch_edits(collection_id, branch_name))
        target = entries.get(edit_id)
        if target is None:
            raise ValidationError(f"Edit {edit_id} not found", "edit_id")

        expected = target.content_hash
        try:
            result = self.reconstruction.reconstruct(edit_id, entries, verify=False, use_cache=False)
        except EditHistoryError as exc:
            logger.warning("Edit %s/%s/%s cannot be rebuilt: %s", collection_id, branch_name, edit_id, exc)
            return IntegrityCheckResult(
                valid=False,
                expected_hash=expected,
                actual_hash="",
                edit_id=edit_id,
                collection_id=collection_id,
                branch_name=branch_name,
                error=str(exc),
            )

        # A missing or malformed stored hash counts as a mismatch.
        valid = HashService.validate_hash_format(expected) and expected == result.hash
        healed = False
        if not valid and fix:
            db.run_transaction(lambda tx: self._heal(tx, target, result), "heal_edit")
            valid = healed = True

        return IntegrityCheckResult(
            valid=valid,
            expected_hash=expected,
            actual_hash=result.hash,
            edit_id=edit_id,
            collection_id=collection_id,
            branch_name=branch_name,
            was_healed=healed,
        )

    def _heal(self, db: EditDatabase, target: StoredEdit, result: ReconstructionResult) -> None:
        uncompressed = CompressionService.get_uncompressed_size(result.content)
        db.put_edit(target.model_copy(update={
            "content_hash": result.hash,
            "uncompressed_size": uncompressed,
            "updated_at": time.time(),
        }))
        manifest = db.get_manifest(target.collection_id)
        if manifest is not None:
            db.put_manifest(
                target.collection_id,
                ManifestService.update_manifest_with_edit_info(
                    manifest, target.branch_name, target.edit_id, target.size, uncompressed, result.hash
                ),
            )
        self.reconstruction.invalidate([target])
        logger.warning(
            "Healed stored hash of %s/%s/%s: %s -> %s",
            target.collection_id, target.branch_name, target.edit_id,
            target.content_hash or "<none>", result.hash,
        )
