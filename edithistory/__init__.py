"""
Edit History Store — delta-chained snapshots for note content.

Records every automatic snapshot of a document as either a full
Zstandard-compressed snapshot or a patch against its predecessor, with
SHA-256 integrity checks and serialized, transactional mutation.

Typical use::

    from edithistory import EditHistoryConfig, EditHistoryEngine

    engine = EditHistoryEngine(EditHistoryConfig(db_path=":memory:"))
    await engine.save_edit("note-1", "main", "e1", text, manifest)
"""

from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
import tomllib

_DISTRIBUTION = "edithistory"


def _checkout_version(pyproject: Path) -> str | None:
    """Version declared by a source checkout, if this is one."""
    try:
        declared = tomllib.loads(pyproject.read_text(encoding="utf-8"))["project"]["version"]
    except (OSError, KeyError, TypeError, tomllib.TOMLDecodeError):
        return None
    if not isinstance(declared, str):
        return None
    return declared.strip() or None


def _resolve_version() -> str:
    local = _checkout_version(Path(__file__).resolve().parent.parent / "pyproject.toml")
    if local:
        return local
    try:
        return version(_DISTRIBUTION)
    except PackageNotFoundError:
        return "0.0.0"


__version__ = _resolve_version()

from edithistory.core.errors import (  # noqa: E402
    ConcurrencyError,
    EditHistoryError,
    IntegrityError,
    StateConsistencyError,
    ValidationError,
)
from edithistory.core.models import CollectionManifest, EditHistoryConfig, StorageType  # noqa: E402
from edithistory.operations.engine import EditHistoryEngine  # noqa: E402

__all__ = [
    "CollectionManifest",
    "ConcurrencyError",
    "EditHistoryConfig",
    "EditHistoryEngine",
    "EditHistoryError",
    "IntegrityError",
    "StateConsistencyError",
    "StorageType",
    "ValidationError",
    "__version__",
]
