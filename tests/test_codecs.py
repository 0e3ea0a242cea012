"""Diff, compression and hashing primitives."""

from __future__ import annotations

import json

import pytest

from edithistory.core.errors import CompressionError, StateConsistencyError
from edithistory.services.compression_service import CompressionService
from edithistory.services.diff_service import DiffService
from edithistory.services.hash_service import HashService


class TestDiffService:
    @pytest.mark.parametrize(
        "base,target",
        [
            ("", ""),
            ("", "hello\nworld\n"),
            ("hello\nworld\n", ""),
            ("a\nb\nc\n", "a\nB\nc\n"),
            ("no trailing newline", "no trailing newline!"),
            ("line\n", "line\r\nwindows\r\n"),
            ("héllo\n", "héllo\nwörld 🦊\n"),
        ],
    )
    def test_apply_reproduces_target(self, base, target):
        patch = DiffService.create_diff(base, target)
        assert DiffService.apply_diff(base, patch) == target

    def test_identical_texts_produce_no_ops(self):
        patch = json.loads(DiffService.create_diff("same\n", "same\n"))
        assert patch["ops"] == []

    def test_patch_is_deterministic(self):
        base, target = "a\nb\nc\n", "a\nx\nc\nd\n"
        assert DiffService.create_diff(base, target) == DiffService.create_diff(base, target)

    def test_wrong_base_is_rejected(self):
        patch = DiffService.create_diff("a\nb\n", "a\nc\n")
        with pytest.raises(StateConsistencyError):
            DiffService.apply_diff("a\nb\nc\nd\n", patch)

    @pytest.mark.parametrize(
        "patch",
        [
            "not json",
            "{}",
            '{"v": 2, "base_lines": 0, "ops": []}',
            '{"v": 1, "base_lines": 1, "ops": [[0, 5, []]]}',
            '{"v": 1, "base_lines": 1, "ops": [["x", 1, []]]}',
        ],
    )
    def test_malformed_patch_is_rejected(self, patch):
        with pytest.raises(StateConsistencyError):
            DiffService.apply_diff("one line\n", patch)

    def test_label_is_kept_in_patch(self):
        patch = json.loads(DiffService.create_diff("a\n", "b\n", label="edit-7"))
        assert patch["label"] == "edit-7"

    def test_calculate_diff_size_counts_utf8_bytes(self):
        assert DiffService.calculate_diff_size("é") == 2


class TestCompressionService:
    def test_round_trip(self):
        svc = CompressionService()
        text = "Line of text\n" * 200
        packed = svc.compress_content(text)
        assert len(packed) < len(text)
        assert svc.decompress_content(packed) == text

    def test_empty_maps_to_empty(self):
        svc = CompressionService()
        assert svc.compress(b"") == b""
        assert svc.decompress(b"") == b""
        assert svc.decompress_content(b"") == ""

    def test_output_is_deterministic(self):
        svc = CompressionService(level=3)
        assert svc.compress(b"payload" * 50) == svc.compress(b"payload" * 50)

    def test_garbage_raises_compression_error(self):
        with pytest.raises(CompressionError):
            CompressionService().decompress(b"definitely not zstd")

    def test_uncompressed_size_is_utf8_length(self):
        assert CompressionService.get_uncompressed_size("añb") == 4


class TestHashService:
    def test_known_digest(self):
        assert HashService.compute_hash("") == (
            "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
        )

    def test_verify_integrity(self):
        digest = HashService.compute_hash("content")
        assert HashService.verify_integrity("content", digest)
        assert not HashService.verify_integrity("other", digest)
        assert HashService.verify_integrity("anything", "")
        assert not HashService.verify_integrity("content", "abc")

    def test_validate_hash_format(self):
        assert HashService.validate_hash_format("a" * 64)
        assert not HashService.validate_hash_format("g" * 64)
        assert not HashService.validate_hash_format("a" * 63)

    def test_salted_hash_differs_and_verifies(self):
        salted = HashService.compute_hash_with_salt("content", "pepper")
        assert salted != HashService.compute_hash("content")
        assert HashService.verify_integrity_with_salt("content", salted, "pepper")

    def test_batch_hashes_preserve_order(self):
        contents = ["a", "b", "c"]
        assert HashService.compute_batch_hashes(contents) == [
            HashService.compute_hash(c) for c in contents
        ]
