"""
In-process record store for local development and tests.

Every document carries a version. Transactions buffer their writes and record
the version of everything they read; commit re-checks those versions under a
lock and retries the whole callback when another commit got there first.
"""
import asyncio
import copy
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from blacklink.config import TRANSACTION_MAX_ATTEMPTS
from blacklink.store.base import (
    ArrayContains,
    ChangeCallback,
    Document,
    Eq,
    RecordStore,
    StoreTransaction,
    T,
    TransactionConflictError,
)

logger = logging.getLogger(__name__)

Key = Tuple[str, str]


class _Conflict(Exception):
    pass


def _matches(doc: Document, filters: List[Any]) -> bool:
    for f in filters:
        if isinstance(f, Eq):
            if doc.get(f.field) != f.value:
                return False
        elif isinstance(f, ArrayContains):
            values = doc.get(f.field)
            if not isinstance(values, list) or f.value not in values:
                return False
        else:
            raise TypeError(f"Unsupported filter: {f!r}")
    return True


async def _deliver(callback: ChangeCallback, doc: Optional[Document], collection: str, doc_id: str) -> None:
    try:
        await callback(doc)
    except Exception:
        logger.exception(f"Watch callback for {collection}/{doc_id} failed")


class _MemoryTransaction(StoreTransaction):
    def __init__(self, store: "MemoryRecordStore"):
        self._store = store
        self._read_versions: Dict[Key, int] = {}
        self._writes: List[Tuple[str, Key, Optional[Document], bool]] = []

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        # Yield so concurrent transactions interleave like remote round-trips
        await asyncio.sleep(0)
        key = (collection, doc_id)
        self._read_versions.setdefault(key, self._store._versions.get(key, 0))
        return self._store._snapshot(collection, doc_id)

    async def set(self, collection: str, doc_id: str, fields: Document, merge: bool = False) -> None:
        self._writes.append(("set", (collection, doc_id), copy.deepcopy(fields), merge))

    async def delete(self, collection: str, doc_id: str) -> None:
        self._writes.append(("delete", (collection, doc_id), None, False))

    def commit(self) -> None:
        for key, version in self._read_versions.items():
            if self._store._versions.get(key, 0) != version:
                raise _Conflict(f"{key[0]}/{key[1]} changed since read")
        for op, (collection, doc_id), fields, merge in self._writes:
            if op == "set":
                self._store._apply_set(collection, doc_id, fields, merge)
            else:
                self._store._apply_delete(collection, doc_id)


class MemoryRecordStore(RecordStore):
    """Dict-backed RecordStore with optimistic, retried transactions."""

    def __init__(self, max_attempts: int = TRANSACTION_MAX_ATTEMPTS):
        self.max_attempts = max_attempts
        self._collections: Dict[str, Dict[str, Document]] = {}
        self._versions: Dict[Key, int] = {}
        self._lock = asyncio.Lock()
        self._watchers: Dict[Key, List[ChangeCallback]] = {}
        self._watch_tasks: Set[asyncio.Task] = set()

    def _snapshot(self, collection: str, doc_id: str) -> Optional[Document]:
        doc = self._collections.get(collection, {}).get(doc_id)
        if doc is None:
            return None
        return {"_id": doc_id, **copy.deepcopy(doc)}

    def _bump(self, collection: str, doc_id: str) -> None:
        key = (collection, doc_id)
        self._versions[key] = self._versions.get(key, 0) + 1
        self._notify(collection, doc_id)

    def _notify(self, collection: str, doc_id: str) -> None:
        callbacks = self._watchers.get((collection, doc_id))
        if not callbacks:
            return
        doc = self._snapshot(collection, doc_id)
        for callback in list(callbacks):
            task = asyncio.create_task(_deliver(callback, doc, collection, doc_id))
            self._watch_tasks.add(task)
            task.add_done_callback(self._watch_tasks.discard)

    def _apply_set(self, collection: str, doc_id: str, fields: Document, merge: bool) -> None:
        body = {k: copy.deepcopy(v) for k, v in fields.items() if k != "_id"}
        docs = self._collections.setdefault(collection, {})
        if merge and doc_id in docs:
            docs[doc_id].update(body)
        else:
            docs[doc_id] = body
        self._bump(collection, doc_id)

    def _apply_delete(self, collection: str, doc_id: str) -> None:
        docs = self._collections.get(collection, {})
        if doc_id in docs:
            del docs[doc_id]
            self._bump(collection, doc_id)

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        return self._snapshot(collection, doc_id)

    async def set(self, collection: str, doc_id: str, fields: Document, merge: bool = False) -> None:
        async with self._lock:
            self._apply_set(collection, doc_id, fields, merge)

    async def delete(self, collection: str, doc_id: str) -> None:
        async with self._lock:
            self._apply_delete(collection, doc_id)

    async def query(self, collection: str, filters: List[Any], limit: int) -> List[Document]:
        results = []
        for doc_id in list(self._collections.get(collection, {})):
            doc = self._snapshot(collection, doc_id)
            if doc is not None and _matches(doc, filters):
                results.append(doc)
                if len(results) >= limit:
                    break
        return results

    async def run_transaction(self, fn: Callable[[StoreTransaction], Awaitable[T]]) -> T:
        for attempt in range(1, self.max_attempts + 1):
            tx = _MemoryTransaction(self)
            result = await fn(tx)
            async with self._lock:
                try:
                    tx.commit()
                    return result
                except _Conflict as e:
                    logger.debug(f"Transaction attempt {attempt} conflicted: {e}")
        raise TransactionConflictError(f"Transaction aborted after {self.max_attempts} attempts")

    async def conditional_increment(
        self,
        collection: str,
        doc_id: str,
        increments: Dict[str, int],
        minimums: Dict[str, int],
        fields: Optional[Document] = None,
    ) -> Optional[Document]:
        async with self._lock:
            doc = self._collections.get(collection, {}).get(doc_id)
            if doc is None:
                return None
            for key, minimum in minimums.items():
                if doc.get(key, 0) < minimum:
                    return None
            for key, delta in increments.items():
                doc[key] = doc.get(key, 0) + delta
            if fields:
                doc.update(copy.deepcopy(fields))
            self._bump(collection, doc_id)
            return self._snapshot(collection, doc_id)

    def watch(self, collection: str, doc_id: str, callback: ChangeCallback) -> Callable[[], None]:
        """Callbacks run as tasks scheduled after each committed change."""
        key = (collection, doc_id)
        self._watchers.setdefault(key, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._watchers.get(key, [])
            if callback in callbacks:
                callbacks.remove(callback)
            if not callbacks:
                self._watchers.pop(key, None)

        return unsubscribe
