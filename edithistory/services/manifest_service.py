"""
Pure manifest bookkeeping.

Every function returns a new :class:`CollectionManifest` and leaves its
argument untouched. The caller decides when (and whether) to persist.
"""

from __future__ import annotations

from edithistory.core.models import (
    BranchManifest,
    CollectionManifest,
    VersionInfo,
    utc_now_iso,
)

DEFAULT_BRANCH = "main"


class ManifestService:
    @staticmethod
    def update_manifest_with_edit_info(
        manifest: CollectionManifest,
        branch_name: str,
        edit_id: str,
        compressed_size: int,
        uncompressed_size: int,
        content_hash: str,
    ) -> CollectionManifest:
        """Record sizes and hash for *edit_id*, adding the branch/version if absent."""
        updated = manifest.model_copy(deep=True)
        branch = updated.branches.setdefault(branch_name, BranchManifest())
        version = branch.versions.get(edit_id)
        if version is None:
            next_number = max((v.version_number for v in branch.versions.values()), default=0) + 1
            version = VersionInfo(version_number=next_number, size=uncompressed_size)
            branch.versions[edit_id] = version
            branch.total_versions = len(branch.versions)
        version.compressed_size = compressed_size
        version.uncompressed_size = uncompressed_size
        version.content_hash = content_hash
        updated.last_modified = utc_now_iso()
        return updated

    @staticmethod
    def remove_version_info(
        manifest: CollectionManifest, branch_name: str, edit_id: str
    ) -> CollectionManifest:
        updated = manifest.model_copy(deep=True)
        branch = updated.branches.get(branch_name)
        if branch is not None and branch.versions.pop(edit_id, None) is not None:
            branch.total_versions = len(branch.versions)
            updated.last_modified = utc_now_iso()
        return updated

    @staticmethod
    def rename_version(
        manifest: CollectionManifest, old_edit_id: str, new_edit_id: str
    ) -> CollectionManifest:
        """Re-key a version in every branch that lists it, keeping key order."""
        updated = manifest.model_copy(deep=True)
        changed = False
        for branch in updated.branches.values():
            if old_edit_id in branch.versions:
                branch.versions = {
                    (new_edit_id if key == old_edit_id else key): value
                    for key, value in branch.versions.items()
                }
                changed = True
        if changed:
            updated.last_modified = utc_now_iso()
        return updated

    @staticmethod
    def remove_branch(manifest: CollectionManifest, branch_name: str) -> CollectionManifest:
        updated = manifest.model_copy(deep=True)
        updated.branches.pop(branch_name, None)
        if updated.current_branch == branch_name:
            remaining = list(updated.branches)
            updated.current_branch = remaining[0] if remaining else DEFAULT_BRANCH
        updated.last_modified = utc_now_iso()
        return updated

    @staticmethod
    def update_manifest_path(manifest: CollectionManifest, new_path: str) -> CollectionManifest:
        return manifest.model_copy(update={"path": new_path}, deep=True)

    @staticmethod
    def update_manifest_collection_id(
        manifest: CollectionManifest, new_collection_id: str, new_path: str
    ) -> CollectionManifest:
        return manifest.model_copy(
            update={"collection_id": new_collection_id, "path": new_path},
            deep=True,
        )

    @staticmethod
    def set_branch_data(
        manifest: CollectionManifest, branch_name: str, branch: BranchManifest
    ) -> CollectionManifest:
        """Replace one branch wholesale (used when importing a branch archive)."""
        updated = manifest.model_copy(deep=True)
        updated.branches[branch_name] = branch.model_copy(deep=True)
        updated.last_modified = utc_now_iso()
        return updated
