"""Configuration resolution and input validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from edithistory.core.errors import ValidationError
from edithistory.core.models import ChainThresholds, CollectionManifest, EditHistoryConfig
from edithistory.core.validation import validate_content, validate_id, validate_manifest, validate_path


class TestConfig:
    def test_defaults_anchor_to_root(self, tmp_path, monkeypatch):
        for name in ("DB_PATH", "COMPRESSION_LEVEL", "DIFF_THRESHOLD", "MAX_RETRIES", "MUTEX_TIMEOUT"):
            monkeypatch.delenv(f"EDITHISTORY_{name}", raising=False)
        config = EditHistoryConfig.for_path(tmp_path)
        assert config.db_path == tmp_path / ".edithistory" / "edits.db"
        assert config.diff_size_threshold == 0.8
        assert config.compression_level == 9
        assert not config.in_memory

    def test_environment_then_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv("EDITHISTORY_DB_PATH", ":memory:")
        monkeypatch.setenv("EDITHISTORY_COMPRESSION_LEVEL", "3")
        monkeypatch.setenv("EDITHISTORY_DIFF_THRESHOLD", "0.5")
        monkeypatch.setenv("EDITHISTORY_MAX_RETRIES", "2")
        monkeypatch.setenv("EDITHISTORY_MUTEX_TIMEOUT", "1.5")
        config = EditHistoryConfig.for_path(tmp_path, max_retries=9)
        assert config.in_memory
        assert config.compression_level == 3
        assert config.diff_size_threshold == 0.5
        assert config.mutex_timeout_s == 1.5
        assert config.max_retries == 9

    @pytest.mark.parametrize(
        "size,expected",
        [(1024, 50), (10 * 1024 + 1, 10), (50 * 1024 + 1, 1)],
    )
    def test_chain_thresholds_by_size(self, size, expected):
        assert ChainThresholds().max_chain_length(size) == expected

    def test_ensure_dirs_creates_parent(self, tmp_path):
        config = EditHistoryConfig(db_path=tmp_path / "nested" / "dir" / "edits.db")
        config.ensure_dirs()
        assert (tmp_path / "nested" / "dir").is_dir()


class TestValidation:
    def test_validate_id(self):
        assert validate_id("  abc  ", "edit_id") == "abc"
        for bad in ("", "   ", None, 5, "x" * 256):
            with pytest.raises(ValidationError) as info:
                validate_id(bad, "edit_id")
            assert info.value.field == "edit_id"
        assert validate_id("x" * 10, "edit_id", max_length=10) == "x" * 10

    def test_validate_content(self):
        assert validate_content("", 0) == ""
        with pytest.raises(ValidationError):
            validate_content("é", 1)
        with pytest.raises(ValidationError):
            validate_content(b"bytes", 100)

    def test_validate_path(self):
        assert validate_path(" notes//sub\\\\file.md ") == "notes/sub/file.md"
        with pytest.raises(ValidationError):
            validate_path("p" * 4097)
        with pytest.raises(ValidationError):
            validate_path(Path("notes"))

    def test_validate_manifest(self):
        manifest = CollectionManifest(collection_id="c")
        assert validate_manifest(manifest) is manifest
        assert validate_manifest({"collection_id": "c"}).collection_id == "c"
        with pytest.raises(ValidationError):
            validate_manifest({"collection_id": "c", "branches": "nope"})


class TestPackage:
    def test_version_matches_checkout(self):
        import edithistory

        assert edithistory.__version__ == "0.4.0"

    def test_checkout_version_ignores_unusable_pyproject(self, tmp_path):
        from edithistory import _checkout_version

        assert _checkout_version(tmp_path / "missing.toml") is None
        broken = tmp_path / "pyproject.toml"
        broken.write_text("[project]\nversion = 4\n", encoding="utf-8")
        assert _checkout_version(broken) is None
        broken.write_text("[project]\nversion = ' 1.2.3 '\n", encoding="utf-8")
        assert _checkout_version(broken) == "1.2.3"

    def test_engine_is_exported(self):
        from edithistory import EditHistoryEngine
        from edithistory.operations.engine import EditHistoryEngine as Engine

        assert EditHistoryEngine is Engine
