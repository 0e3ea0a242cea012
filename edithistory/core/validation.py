"""
edithistory.core.validation — Input checks applied at the public API.

Identifiers are trimmed, must be non-empty and bounded in length. Content
is bounded by UTF-8 size. Pydantic does the parsing; failures are
re-raised as the store's own :class:`ValidationError`.
"""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Annotated, Any

from pydantic import StringConstraints, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from edithistory.core.errors import ValidationError
from edithistory.core.models import CollectionManifest

_REPEATED_SEPARATORS = re.compile(r"[\\/]{2,}")
MAX_PATH_LENGTH = 4096


@lru_cache(maxsize=8)
def _id_adapter(max_length: int) -> TypeAdapter:
    return TypeAdapter(
        Annotated[
            str,
            StringConstraints(strip_whitespace=True, min_length=1, max_length=max_length),
        ]
    )


def validate_id(value: Any, field: str, max_length: int = 255) -> str:
    """Return the trimmed identifier or raise ValidationError."""
    try:
        return _id_adapter(max_length).validate_python(value)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        raise ValidationError(
            f"{field} is invalid: {first['msg']}",
            field,
            {"type": first["type"]},
        ) from exc


def validate_content(value: Any, max_size: int) -> str:
    if not isinstance(value, str):
        raise ValidationError("content must be a string", "content", {"type": type(value).__name__})
    size = len(value.encode("utf-8"))
    if size > max_size:
        raise ValidationError(
            f"content cannot exceed {max_size} bytes",
            "content",
            {"size": size, "max_size": max_size},
        )
    return value


def validate_path(value: Any) -> str:
    if not isinstance(value, str):
        raise ValidationError("path must be a string", "path")
    if len(value) > MAX_PATH_LENGTH:
        raise ValidationError(f"path cannot exceed {MAX_PATH_LENGTH} characters", "path")
    return _REPEATED_SEPARATORS.sub("/", value.strip())


def validate_manifest(value: Any) -> CollectionManifest:
    if isinstance(value, CollectionManifest):
        return value
    try:
        return CollectionManifest.model_validate(value)
    except PydanticValidationError as exc:
        raise ValidationError(
            f"manifest is invalid: {exc.error_count()} error(s)",
            "manifest",
            {"errors": [e["loc"] for e in exc.errors()][:10]},
        ) from exc
