"""Shared fixtures for the edit history test suite."""

from __future__ import annotations

import pytest

from edithistory.core.models import CollectionManifest, EditHistoryConfig
from edithistory.operations.engine import EditHistoryEngine


def make_document(lines: int = 40, marker: str = "") -> str:
    """A multi-line note body; small edits to it are stored as diffs."""
    body = "".join(
        f"Line {i:03d}: the quick brown fox jumps over the lazy dog\n" for i in range(lines)
    )
    return body + marker


@pytest.fixture
def config() -> EditHistoryConfig:
    return EditHistoryConfig(db_path=":memory:", retry_base_delay_ms=1, mutex_timeout_s=5.0)


@pytest.fixture
def engine(config):
    eng = EditHistoryEngine(config)
    yield eng
    eng.close()


@pytest.fixture
def file_engine(tmp_path):
    eng = EditHistoryEngine(EditHistoryConfig.for_path(tmp_path, retry_base_delay_ms=1))
    yield eng
    eng.close()


@pytest.fixture
def manifest() -> CollectionManifest:
    return CollectionManifest(collection_id="note-1", path="notes/note-1.md")
