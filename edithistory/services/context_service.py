"""
Cached "current head" of each (collection, branch).

Appending a diff needs the head's full text. Rebuilding it on every save
would replay the whole chain, so the last result is kept here. The
persisted head row is always read first, and a cached context is used
only if its edit id and hash still match that row.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict

from edithistory.core.database import EditDatabase
from edithistory.core.models import PreviousEditContext, StoredEdit
from edithistory.services.reconstruction_service import ReconstructionService, index_edits

logger = logging.getLogger("edithistory.context")


class ContextService:
    def __init__(self, reconstruction: ReconstructionService, cache_size: int = 50) -> None:
        self.reconstruction = reconstruction
        self.cache_size = cache_size
        self._cache: OrderedDict[str, PreviousEditContext] = OrderedDict()
        self._cache_lock = threading.Lock()

    @staticmethod
    def _key(collection_id: str, branch_name: str) -> str:
        return f"{collection_id}:{branch_name}"

    def get_previous_edit_context(
        self,
        db: EditDatabase,
        collection_id: str,
        branch_name: str,
        use_cache: bool = True,
    ) -> PreviousEditContext | None:
        """Head of the branch with its reconstructed content, or None if empty."""
        key = self._key(collection_id, branch_name)
        head = db.get_head(collection_id, branch_name)
        if head is None:
            with self._cache_lock:
                self._cache.pop(key, None)
            return None

        if use_cache:
            cached = self._cached_context(key, head)
            if cached is not None:
                logger.debug("Context cache hit for %s", key)
                return cached

        edits = db.list_branch_edits(collection_id, branch_name)
        result = self.reconstruction.reconstruct(head.edit_id, index_edits(edits), verify=True)

        context = PreviousEditContext(
            edit_id=head.edit_id,
            content=result.content,
            content_hash=result.hash,
            base_edit_id=self._resolve_base(head, edits),
            chain_length=head.chain_length,
            timestamp=head.created_at,
        )
        self._update_cache(key, context)
        return context

    def get_edit_chain(
        self, db: EditDatabase, collection_id: str, branch_name: str, target_edit_id: str
    ) -> list[str]:
        """Edit ids from the start of the sequence up to *target_edit_id*."""
        entries = index_edits(db.list_branch_edits(collection_id, branch_name))
        chain: list[str] = []
        visited: set[str] = set()
        current_id: str | None = target_edit_id
        while current_id and current_id not in visited:
            visited.add(current_id)
            chain.append(current_id)
            edit = entries.get(current_id)
            if edit is None:
                break
            current_id = edit.previous_edit_id
        chain.reverse()
        return chain

    def validate_chain_integrity(self, db: EditDatabase, collection_id: str, branch_name: str) -> bool:
        """Structural check: links resolve, diffs have a predecessor, no cycles."""
        edits = db.list_branch_edits(collection_id, branch_name)
        return sequence_is_consistent(edits)

    def clear_cache(self, collection_id: str | None = None, branch_name: str | None = None) -> None:
        with self._cache_lock:
            if collection_id and branch_name:
                self._cache.pop(self._key(collection_id, branch_name), None)
            elif collection_id:
                prefix = f"{collection_id}:"
                for key in [k for k in self._cache if k.startswith(prefix)]:
                    del self._cache[key]
            else:
                self._cache.clear()

    def _cached_context(self, key: str, head: StoredEdit) -> PreviousEditContext | None:
        with self._cache_lock:
            cached = self._cache.get(key)
            if cached is None:
                return None
            if cached.edit_id != head.edit_id or cached.content_hash != head.content_hash:
                del self._cache[key]
                return None
            self._cache.move_to_end(key)
            return cached

    def _update_cache(self, key: str, context: PreviousEditContext) -> None:
        with self._cache_lock:
            self._cache[key] = context
            self._cache.move_to_end(key)
            while len(self._cache) > self.cache_size:
                self._cache.popitem(last=False)

    @staticmethod
    def _resolve_base(head: StoredEdit, edits: list[StoredEdit]) -> str:
        if head.is_full:
            return head.edit_id
        if head.base_edit_id:
            return head.base_edit_id
        for edit in reversed(edits):
            if edit.is_full:
                return edit.edit_id
        return head.edit_id


def sequence_is_consistent(edits: list[StoredEdit]) -> bool:
    entries = index_edits(edits)
    known_good: set[str] = set()
    for edit in edits:
        if not edit.is_full and not edit.previous_edit_id:
            return False
        if edit.previous_edit_id and edit.previous_edit_id not in entries:
            return False
        path: set[str] = set()
        current_id: str | None = edit.edit_id
        while current_id and current_id in entries and current_id not in known_good:
            if current_id in path:
                return False
            path.add(current_id)
            current_id = entries[current_id].previous_edit_id
        known_good |= path
    return True
