"""
edithistory.utils.keyed_mutex — FIFO keyed mutual exclusion for asyncio.

``await mutex.run(key, fn)`` runs ``fn()`` only when no other operation
holds *key*. Waiters for the same key are served in submission order;
operations on disjoint keys run concurrently. ``run_multiple`` takes
several keys at once, all or nothing, so two multi-key callers cannot
deadlock each other.

Fairness rule: while scanning the queue, keys wanted by an earlier blocked
waiter are reserved, so a later waiter sharing any of them cannot overtake.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, TypeVar

from edithistory.core.errors import MutexTimeoutError

logger = logging.getLogger("edithistory.mutex")

T = TypeVar("T")


@dataclass(eq=False)
class _Waiter:
    keys: tuple[str, ...]
    granted: asyncio.Future
    operation_id: str
    enqueued_at: float = field(default_factory=time.monotonic)


class KeyedMutex:
    def __init__(self, default_timeout: float | None = 30.0) -> None:
        self.default_timeout = default_timeout
        self._queue: list[_Waiter] = []
        self._held: set[str] = set()
        self._counter = itertools.count(1)
        self._total = 0

    async def run(
        self,
        key: str,
        operation: Callable[[], Awaitable[T]],
        timeout: float | None = None,
    ) -> T:
        return await self.run_multiple([key], operation, timeout)

    async def run_multiple(
        self,
        keys: Iterable[str],
        operation: Callable[[], Awaitable[T]],
        timeout: float | None = None,
    ) -> T:
        normalized = tuple(sorted({k for k in keys if k}))
        if not normalized:
            return await operation()

        timeout = self.default_timeout if timeout is None else timeout
        self._total += 1
        waiter = _Waiter(
            keys=normalized,
            granted=asyncio.get_running_loop().create_future(),
            operation_id=f"op_{next(self._counter)}",
        )
        self._queue.append(waiter)
        self._dispatch()

        try:
            await asyncio.wait_for(asyncio.shield(waiter.granted), timeout)
        except asyncio.TimeoutError:
            self._abandon(waiter)
            raise MutexTimeoutError(normalized, timeout or 0.0, waiter.operation_id) from None
        except asyncio.CancelledError:
            self._abandon(waiter)
            raise

        try:
            return await operation()
        finally:
            self._release(normalized)

    # -- Introspection -----------------------------------------------------

    @property
    def active_keys(self) -> list[str]:
        return sorted(self._held)

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    def get_stats(self) -> dict[str, int]:
        return {
            "queued_operations": len(self._queue),
            "held_keys": len(self._held),
            "total_operations": self._total,
        }

    def has_lock(self, key: str) -> bool:
        return key in self._held

    async def wait_for_lock(self, key: str, timeout: float | None = None) -> None:
        """Wait until *key* is not held (without acquiring it)."""
        timeout = self.default_timeout if timeout is None else timeout
        deadline = None if timeout is None else time.monotonic() + timeout
        while self.has_lock(key):
            if deadline is not None and time.monotonic() > deadline:
                raise MutexTimeoutError((key,), timeout or 0.0, "wait_for_lock")
            await asyncio.sleep(0.01)

    def clear_queue(self) -> None:
        """Fail every operation that is still waiting for its keys."""
        pending, self._queue = self._queue, []
        for waiter in pending:
            if not waiter.granted.done():
                waiter.granted.set_exception(RuntimeError("Queue cleared"))
        logger.info("Cleared %d queued mutex operation(s)", len(pending))

    # -- Internals ---------------------------------------------------------

    def _dispatch(self) -> None:
        reserved: set[str] = set()
        for waiter in list(self._queue):
            if any(k in self._held or k in reserved for k in waiter.keys):
                reserved.update(waiter.keys)
                continue
            self._queue.remove(waiter)
            self._held.update(waiter.keys)
            waiter.granted.set_result(None)

    def _release(self, keys: tuple[str, ...]) -> None:
        self._held.difference_update(keys)
        self._dispatch()

    def _abandon(self, waiter: _Waiter) -> None:
        if waiter in self._queue:
            self._queue.remove(waiter)
            # Its reservations may have been blocking later waiters.
            self._dispatch()
        elif waiter.granted.done() and not waiter.granted.cancelled() and waiter.granted.exception() is None:
            # Keys were granted in the same tick the wait gave up.
            self._release(waiter.keys)
