"""Head context cache: validation against the stored head, thread safety."""

from __future__ import annotations

import asyncio
import threading

import pytest

from conftest import make_document
from edithistory.core.models import PreviousEditContext
from edithistory.services.compression_service import CompressionService
from edithistory.services.context_service import ContextService
from edithistory.services.reconstruction_service import ReconstructionService


def make_context(edit_id: str) -> PreviousEditContext:
    return PreviousEditContext(
        edit_id=edit_id,
        content="",
        content_hash="",
        base_edit_id=edit_id,
        chain_length=0,
        timestamp=0.0,
    )


class TestContextCache:
    def test_prefix_clear_while_another_thread_inserts(self):
        context = ContextService(ReconstructionService(CompressionService()), cache_size=64)
        stop = threading.Event()
        failures: list[BaseException] = []

        def writer() -> None:
            n = 0
            try:
                while not stop.is_set():
                    context._update_cache(f"other{n % 500}:main", make_context(f"e{n}"))
                    n += 1
            except Exception as exc:
                failures.append(exc)

        thread = threading.Thread(target=writer)
        thread.start()
        try:
            for i in range(2000):
                context._update_cache(f"c1:b{i % 3}", make_context(f"c1-{i}"))
                context.clear_cache("c1")
        finally:
            stop.set()
            thread.join()

        assert failures == []
        assert not any(key.startswith("c1:") for key in context._cache)

    def test_clear_scopes(self):
        context = ContextService(ReconstructionService(CompressionService()))
        for key in ("a:main", "a:dev", "b:main"):
            context._update_cache(key, make_context(key))

        context.clear_cache("a", "dev")
        assert set(context._cache) == {"a:main", "b:main"}
        context.clear_cache("a")
        assert set(context._cache) == {"b:main"}
        context.clear_cache()
        assert not context._cache

    def test_eviction_keeps_most_recent(self):
        context = ContextService(ReconstructionService(CompressionService()), cache_size=2)
        for key in ("a:main", "b:main", "c:main"):
            context._update_cache(key, make_context(key))
        assert list(context._cache) == ["b:main", "c:main"]


class TestConcurrentCollections:
    @pytest.mark.asyncio
    async def test_maintenance_on_one_collection_while_another_saves(self, engine):
        doc = make_document()
        await engine.save_edit("a", "main", "a0", doc, {"collection_id": "a"})

        async def save_many() -> None:
            for i in range(20):
                await engine.save_edit(
                    "b", "main", f"b{i}", make_document(marker=f"v{i}\n"), {"collection_id": "b"}
                )

        async def churn_a() -> None:
            for i in range(20):
                await engine.rename_edit("a", f"a{i}", f"a{i + 1}")

        await asyncio.gather(save_many(), churn_a())

        assert await engine.get_edit_content("a", "main", "a20") == doc
        assert await engine.get_edit_content("b", "main", "b19") == make_document(marker="v19\n")
