"""Record store adapters."""

from .base import (
    ArrayContains,
    Document,
    DocumentNotFoundError,
    Eq,
    FetchErrorCause,
    PermissionDeniedError,
    RecordStore,
    StoreError,
    StoreTransaction,
    TransactionConflictError,
    TransportError,
)
from .memory import MemoryRecordStore

__all__ = [
    "ArrayContains",
    "Document",
    "DocumentNotFoundError",
    "Eq",
    "FetchErrorCause",
    "PermissionDeniedError",
    "RecordStore",
    "StoreError",
    "StoreTransaction",
    "TransactionConflictError",
    "TransportError",
    "MemoryRecordStore",
]
