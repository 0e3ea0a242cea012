"""Chain walking, replay, verification and repair."""

from __future__ import annotations

import pytest

from edithistory.core.errors import (
    BrokenChainError,
    ChainLengthError,
    CircularReferenceError,
    IntegrityError,
    MissingEditError,
    StateConsistencyError,
    ValidationError,
)
from edithistory.core.models import StorageType, StoredEdit
from edithistory.services.compression_service import CompressionService
from edithistory.services.diff_service import DiffService
from edithistory.services.hash_service import HashService
from edithistory.services.reconstruction_service import ReconstructionService, index_edits

compression = CompressionService()


def full(edit_id: str, text: str, previous: str | None = None) -> StoredEdit:
    return StoredEdit(
        collection_id="c",
        branch_name="main",
        edit_id=edit_id,
        content=compression.compress_content(text),
        content_hash=HashService.compute_hash(text),
        storage_type=StorageType.FULL,
        base_edit_id=edit_id,
        previous_edit_id=previous,
    )


def diff(edit_id: str, base_text: str, text: str, previous: str, chain_length: int = 1) -> StoredEdit:
    return StoredEdit(
        collection_id="c",
        branch_name="main",
        edit_id=edit_id,
        content=compression.compress_content(DiffService.create_diff(base_text, text)),
        content_hash=HashService.compute_hash(text),
        storage_type=StorageType.DIFF,
        base_edit_id="e1",
        previous_edit_id=previous,
        chain_length=chain_length,
    )


V1 = "alpha\nbeta\ngamma\n"
V2 = "alpha\nBETA\ngamma\n"
V3 = "alpha\nBETA\ngamma\ndelta\n"


def chain_entries() -> dict[str, StoredEdit]:
    return index_edits([
        full("e1", V1),
        diff("e2", V1, V2, "e1"),
        diff("e3", V2, V3, "e2", chain_length=2),
    ])


@pytest.fixture
def service() -> ReconstructionService:
    return ReconstructionService(compression, max_chain_length=10)


class TestReconstruct:
    def test_replays_diffs_on_top_of_base(self, service):
        result = service.reconstruct("e3", chain_entries())
        assert result.content == V3
        assert result.hash == HashService.compute_hash(V3)
        assert result.verified
        assert result.chain_length == 3

    def test_full_record_mid_chain_resets_content(self, service):
        entries = index_edits([
            full("e1", V1),
            full("e2", V2, previous="e1"),
            diff("e3", V2, V3, "e2"),
        ])
        assert service.reconstruct("e3", entries).content == V3

    def test_unknown_target_is_validation_error(self, service):
        with pytest.raises(ValidationError):
            service.reconstruct("nope", chain_entries())

    def test_circular_reference(self, service):
        entries = index_edits([diff("a", V1, V2, "b"), diff("b", V1, V2, "a")])
        with pytest.raises(CircularReferenceError):
            service.reconstruct("a", entries)

    def test_missing_link(self, service):
        entries = index_edits([diff("e2", V1, V2, "gone")])
        with pytest.raises(MissingEditError):
            service.reconstruct("e2", entries)

    def test_diff_without_previous_is_broken(self, service):
        entries = index_edits([diff("e2", V1, V2, "e1").model_copy(update={"previous_edit_id": None})])
        with pytest.raises(BrokenChainError):
            service.reconstruct("e2", entries)

    def test_chain_length_bound(self):
        service = ReconstructionService(compression, max_chain_length=2)
        with pytest.raises(ChainLengthError):
            service.reconstruct("e3", chain_entries())

    def test_hash_mismatch_is_integrity_error(self, service):
        entries = chain_entries()
        entries["e3"] = entries["e3"].model_copy(update={"content_hash": "0" * 64})
        with pytest.raises(IntegrityError) as info:
            service.reconstruct("e3", entries)
        assert info.value.expected_hash == "0" * 64
        assert info.value.actual_hash == HashService.compute_hash(V3)

    def test_unverified_read_skips_target_check(self, service):
        entries = chain_entries()
        entries["e3"] = entries["e3"].model_copy(update={"content_hash": "0" * 64})
        result = service.reconstruct("e3", entries, verify=False)
        assert result.content == V3

    def test_corrupt_intermediate_is_detected(self, service):
        entries = chain_entries()
        entries["e2"] = entries["e2"].model_copy(update={"content_hash": "f" * 64})
        with pytest.raises(IntegrityError):
            service.reconstruct("e3", entries)

    def test_stale_cache_entry_is_not_served(self, service):
        entries = chain_entries()
        assert service.reconstruct("e2", entries).content == V2

        # Same key, different stored record.
        other = "completely\ndifferent\n"
        entries["e2"] = full("e2", other, previous="e1")
        assert service.reconstruct("e2", entries).content == other

    def test_batch_rejects_unknown_ids_up_front(self, service):
        entries = chain_entries()
        assert [r.content for r in service.reconstruct_batch(["e1", "e3"], entries)] == [V1, V3]
        with pytest.raises(ValidationError) as info:
            service.reconstruct_batch(["e1", "missing"], entries)
        assert info.value.context["missing_ids"] == ["missing"]

    def test_batch_wraps_first_failure(self, service):
        entries = chain_entries()
        entries["e3"] = entries["e3"].model_copy(update={"content_hash": "0" * 64})
        with pytest.raises(StateConsistencyError) as info:
            service.reconstruct_batch(["e1", "e3", "e2"], entries)
        assert info.value.context["index"] == 1
        assert info.value.context["edit_id"] == "e3"
        assert info.value.context["successful_reconstructions"] == 1


class TestValidateChain:
    def test_healthy_chain(self, service):
        result = service.validate_chain("e3", chain_entries())
        assert result.valid
        assert result.has_base and result.is_complete
        assert result.chain_length == 3
        assert result.diagnostics["test_reconstruction"] == "success"

    def test_missing_link_reported(self, service):
        result = service.validate_chain("e2", index_edits([diff("e2", V1, V2, "gone")]))
        assert not result.valid
        assert result.diagnostics["chain_error"] == "MissingEditError"

    def test_integrity_failure_reported_or_raised(self, service):
        entries = chain_entries()
        entries["e3"] = entries["e3"].model_copy(update={"content_hash": "0" * 64})
        result = service.validate_chain("e3", entries)
        assert not result.valid
        assert result.diagnostics["test_reconstruction"] == "failed"
        with pytest.raises(IntegrityError):
            service.validate_chain("e3", entries, strict=True)


class TestAttemptRepair:
    def test_intact_target_is_not_degraded(self, service):
        result = service.attempt_repair("e3", chain_entries())
        assert result is not None and not result.degraded
        assert result.content == V3

    def test_falls_back_to_nearest_valid_ancestor(self, service):
        entries = chain_entries()
        entries["e3"] = entries["e3"].model_copy(update={"content": compression.compress_content("garbage")})
        result = service.attempt_repair("e3", entries)
        assert result is not None and result.degraded
        assert result.repaired_from == "e2"
        assert result.content == V2

    def test_missing_target_returns_none(self, service):
        assert service.attempt_repair("nope", chain_entries()) is None
