"""Pure manifest bookkeeping."""

from __future__ import annotations

from edithistory.core.models import BranchManifest, CollectionManifest, VersionInfo
from edithistory.services.manifest_service import ManifestService


def _manifest() -> CollectionManifest:
    return CollectionManifest(
        collection_id="note-1",
        path="notes/a.md",
        current_branch="draft",
        branches={
            "main": BranchManifest(
                versions={
                    "e1": VersionInfo(version_number=1, name="first"),
                    "e2": VersionInfo(version_number=2),
                },
                total_versions=2,
            ),
            "draft": BranchManifest(),
        },
    )


class TestManifestService:
    def test_update_adds_branch_and_version(self):
        original = CollectionManifest(collection_id="note-1")
        updated = ManifestService.update_manifest_with_edit_info(original, "main", "e1", 10, 20, "h1")
        version = updated.branches["main"].versions["e1"]
        assert version.version_number == 1
        assert (version.compressed_size, version.uncompressed_size, version.content_hash) == (10, 20, "h1")
        assert updated.branches["main"].total_versions == 1
        assert original.branches == {}

    def test_update_numbers_new_versions_after_highest(self):
        updated = ManifestService.update_manifest_with_edit_info(_manifest(), "main", "e3", 1, 2, "h")
        assert updated.branches["main"].versions["e3"].version_number == 3

    def test_update_keeps_existing_version_metadata(self):
        updated = ManifestService.update_manifest_with_edit_info(_manifest(), "main", "e1", 5, 6, "h")
        version = updated.branches["main"].versions["e1"]
        assert version.name == "first"
        assert version.version_number == 1
        assert version.content_hash == "h"

    def test_remove_version_info(self):
        original = _manifest()
        updated = ManifestService.remove_version_info(original, "main", "e1")
        assert list(updated.branches["main"].versions) == ["e2"]
        assert updated.branches["main"].total_versions == 1
        assert "e1" in original.branches["main"].versions

    def test_rename_version_keeps_order(self):
        updated = ManifestService.rename_version(_manifest(), "e1", "renamed")
        assert list(updated.branches["main"].versions) == ["renamed", "e2"]
        assert updated.branches["main"].versions["renamed"].name == "first"

    def test_remove_current_branch_falls_back(self):
        updated = ManifestService.remove_branch(_manifest(), "draft")
        assert list(updated.branches) == ["main"]
        assert updated.current_branch == "main"

        emptied = ManifestService.remove_branch(
            CollectionManifest(collection_id="x", current_branch="only", branches={"only": BranchManifest()}),
            "only",
        )
        assert emptied.branches == {}
        assert emptied.current_branch == "main"

    def test_path_and_collection_id_updates(self):
        moved = ManifestService.update_manifest_path(_manifest(), "notes/b.md")
        assert moved.path == "notes/b.md"

        renamed = ManifestService.update_manifest_collection_id(_manifest(), "note-2", "notes/c.md")
        assert (renamed.collection_id, renamed.path) == ("note-2", "notes/c.md")

    def test_set_branch_data_replaces_branch(self):
        branch = BranchManifest(versions={"x": VersionInfo(version_number=1)}, total_versions=1)
        updated = ManifestService.set_branch_data(_manifest(), "main", branch)
        assert list(updated.branches["main"].versions) == ["x"]
