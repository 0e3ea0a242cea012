"""
edithistory.core.errors — Error taxonomy for the edit store.

Every error carries an optional ``context`` dict of ids, hashes and chain
lengths for diagnosis. Stored payload bytes are never placed in it.
"""

from __future__ import annotations

from typing import Any


class EditHistoryError(Exception):
    """Base class for every error raised by the store."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = dict(context or {})


class ValidationError(EditHistoryError):
    """Bad caller input. Never retried."""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, context)
        self.field = field


class ConcurrencyError(EditHistoryError):
    """The branch head moved between reading it and committing."""

    def __init__(
        self,
        message: str,
        reason: str = "head_mismatch",
        table: str = "edits",
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, context)
        self.reason = reason
        self.table = table


class StateConsistencyError(EditHistoryError):
    """Retries exhausted or a store invariant was violated."""


class IntegrityError(EditHistoryError):
    """Reconstructed content does not hash to the stored digest."""

    def __init__(
        self,
        message: str,
        expected_hash: str,
        actual_hash: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, context)
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash

    def __str__(self) -> str:
        return (
            f"{self.message} (expected {self.expected_hash or '<none>'}, "
            f"got {self.actual_hash or '<none>'})"
        )


class ChainError(EditHistoryError):
    """Structural problem found while walking a chain."""


class CircularReferenceError(ChainError):
    pass


class MissingEditError(ChainError):
    pass


class BrokenChainError(ChainError):
    pass


class ChainLengthError(ChainError):
    pass


class ReconstructionError(EditHistoryError):
    """A patch could not be applied while replaying a chain."""


class CompressionError(EditHistoryError):
    pass


class MutexTimeoutError(EditHistoryError):
    def __init__(self, keys: tuple[str, ...], timeout: float, operation_id: str) -> None:
        super().__init__(
            f"Mutex operation {operation_id} timed out after {timeout:.3f}s "
            f"for keys: {', '.join(keys)}",
            {"keys": list(keys), "timeout": timeout, "operation_id": operation_id},
        )
        self.keys = keys
        self.timeout = timeout
        self.operation_id = operation_id
