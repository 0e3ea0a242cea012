"""Collection- and branch-level maintenance."""

from __future__ import annotations

import pytest

from conftest import make_document
from edithistory.core.errors import ValidationError
from edithistory.core.models import BranchManifest, CollectionManifest

CID = "note-1"


async def save(engine, edit_id, content, branch="main", collection_id=CID):
    manifest = await engine.get_manifest(collection_id) or CollectionManifest(collection_id=collection_id)
    return await engine.save_edit(collection_id, branch, edit_id, content, manifest)


class TestHistoryManagement:
    @pytest.mark.asyncio
    async def test_save_and_get_manifest(self, engine, manifest):
        await engine.save_manifest(CID, manifest)
        stored = await engine.get_manifest(CID)
        assert stored == manifest

        await engine.save_manifest(CID, {"collection_id": CID, "path": "from/dict.md"})
        assert (await engine.get_manifest(CID)).path == "from/dict.md"

    @pytest.mark.asyncio
    async def test_invalid_manifest_is_rejected(self, engine):
        with pytest.raises(ValidationError):
            await engine.save_manifest(CID, {"path": "missing collection id"})

    @pytest.mark.asyncio
    async def test_delete_collection_history(self, engine):
        await save(engine, "e0", make_document())
        await save(engine, "o0", make_document(), collection_id="other")
        await engine.delete_collection_history(CID)

        assert await engine.list_edits(CID, "main") == []
        assert await engine.get_manifest(CID) is None
        assert len(await engine.list_edits("other", "main")) == 1

    @pytest.mark.asyncio
    async def test_delete_branch_updates_manifest(self, engine):
        await save(engine, "m0", make_document())
        await save(engine, "d0", make_document(marker="d\n"), branch="draft")
        manifest = await engine.get_manifest(CID)
        await engine.save_manifest(CID, manifest.model_copy(update={"current_branch": "draft"}))

        await engine.delete_branch(CID, "draft")
        assert await engine.list_edits(CID, "draft") == []
        manifest = await engine.get_manifest(CID)
        assert list(manifest.branches) == ["main"]
        assert manifest.current_branch == "main"

    @pytest.mark.asyncio
    async def test_rename_collection_moves_everything(self, engine):
        await save(engine, "e0", make_document())
        await save(engine, "e1", make_document(marker="x\n"))
        await engine.rename_collection(CID, "note-2", "notes//renamed.md")

        assert await engine.list_edits(CID, "main") == []
        assert await engine.get_manifest(CID) is None
        assert await engine.get_edit_content("note-2", "main", "e1") == make_document(marker="x\n")
        manifest = await engine.get_manifest("note-2")
        assert (manifest.collection_id, manifest.path) == ("note-2", "notes/renamed.md")

        # Saving continues the moved sequence.
        await save(engine, "e2", make_document(marker="y\n"), collection_id="note-2")
        edits = {e.edit_id: e for e in await engine.list_edits("note-2", "main")}
        assert edits["e2"].previous_edit_id == "e1"

    @pytest.mark.asyncio
    async def test_rename_collection_refuses_occupied_target(self, engine):
        await save(engine, "e0", make_document())
        await save(engine, "x0", make_document(), collection_id="taken")
        with pytest.raises(ValidationError):
            await engine.rename_collection(CID, "taken", "p")
        assert len(await engine.list_edits(CID, "main")) == 1

    @pytest.mark.asyncio
    async def test_update_collection_path(self, engine, manifest):
        await engine.save_manifest(CID, manifest)
        await engine.update_collection_path(CID, "moved/here.md")
        assert (await engine.get_manifest(CID)).path == "moved/here.md"

    @pytest.mark.asyncio
    async def test_clear_all_and_stats(self, engine):
        await save(engine, "e0", make_document())
        await save(engine, "o0", make_document(), collection_id="other")
        stats = await engine.get_database_stats()
        assert (stats.edit_count, stats.manifest_count) == (2, 2)
        assert stats.active_keys == [] and stats.queue_length == 0

        await engine.clear_all()
        stats = await engine.get_database_stats()
        assert (stats.edit_count, stats.manifest_count) == (0, 0)

    @pytest.mark.asyncio
    async def test_health_check_flags_orphaned_manifest(self, engine):
        assert await engine.health_check() == {"healthy": True, "errors": []}

        orphan = CollectionManifest(collection_id="ghost", branches={"main": BranchManifest()})
        await engine.save_manifest("ghost", orphan)
        health = await engine.health_check()
        assert not health["healthy"]
        assert health["errors"] == ["Orphaned manifest found"]
