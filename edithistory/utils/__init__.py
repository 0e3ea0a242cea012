"""edithistory.utils — concurrency primitives shared by the services."""

from __future__ import annotations

from edithistory.utils.keyed_mutex import KeyedMutex

__all__ = ["KeyedMutex"]
