"""
Record store interface - the narrow surface the accounts core needs from the
remote document store.

Documents are plain dicts keyed by ``_id`` inside a named collection.
Implementations: MongoRecordStore (Motor), MemoryRecordStore (in-process).
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

T = TypeVar("T")

Document = Dict[str, Any]

ChangeCallback = Callable[[Optional[Document]], Awaitable[None]]


class FetchErrorCause(str, Enum):
    """Coarse failure causes surfaced on the session snapshot."""
    PERMISSION_DENIED = "permission_denied"
    NOT_FOUND = "not_found"
    TRANSPORT = "transport"
    CONFLICT = "conflict"
    UNKNOWN = "unknown"


class StoreError(Exception):
    """Base exception for record store operations."""
    cause = FetchErrorCause.UNKNOWN

    def __init__(self, message: str = "", cause: Optional[FetchErrorCause] = None):
        super().__init__(message)
        if cause is not None:
            self.cause = cause


class PermissionDeniedError(StoreError):
    cause = FetchErrorCause.PERMISSION_DENIED


class DocumentNotFoundError(StoreError):
    cause = FetchErrorCause.NOT_FOUND


class TransportError(StoreError):
    """Network failure or timeout. Never a semantic answer."""
    cause = FetchErrorCause.TRANSPORT


class TransactionConflictError(StoreError):
    """Transaction could not commit after retrying contended writes."""
    cause = FetchErrorCause.CONFLICT


@dataclass(frozen=True)
class Eq:
    field: str
    value: Any


@dataclass(frozen=True)
class ArrayContains:
    field: str
    value: Any


class StoreTransaction(ABC):
    """Reads and writes applied atomically as one unit."""

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        pass

    @abstractmethod
    async def set(self, collection: str, doc_id: str, fields: Document, merge: bool = False) -> None:
        pass

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> None:
        pass


class RecordStore(ABC):
    """Abstract base class for record store implementations."""

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        """Point read. Returns None when the document is absent."""
        pass

    @abstractmethod
    async def set(self, collection: str, doc_id: str, fields: Document, merge: bool = False) -> None:
        """Write a document; with merge=True only the given fields change."""
        pass

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> None:
        pass

    @abstractmethod
    async def query(self, collection: str, filters: List[Any], limit: int) -> List[Document]:
        """Documents matching every Eq/ArrayContains filter, at most ``limit``."""
        pass

    @abstractmethod
    async def run_transaction(self, fn: Callable[[StoreTransaction], Awaitable[T]]) -> T:
        """
        Run ``fn`` atomically. ``fn`` may be invoked more than once when a
        concurrent transaction touched the same documents, so it must re-read
        everything it depends on. Exceptions raised by ``fn`` abort without
        writing anything and propagate unchanged.
        """
        pass

    @abstractmethod
    async def conditional_increment(
        self,
        collection: str,
        doc_id: str,
        increments: Dict[str, int],
        minimums: Dict[str, int],
        fields: Optional[Document] = None,
    ) -> Optional[Document]:
        """
        Atomically add ``increments`` and set ``fields`` when every
        ``doc[key] >= minimums[key]``. Returns the updated document, or None
        when the document is absent or a guard failed.
        """
        pass

    @abstractmethod
    def watch(self, collection: str, doc_id: str, callback: ChangeCallback) -> Callable[[], None]:
        """
        Call ``callback`` with the new document (None once deleted) every time
        ``collection/doc_id`` changes. Must be called from a running event
        loop. Returns the unsubscribe callable; a raising callback is logged
        and the watch continues.
        """
        pass
