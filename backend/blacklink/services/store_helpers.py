"""Shared helpers for services that talk to the record store."""
import logging
from typing import Any, Dict

from blacklink.store.base import Document, RecordStore, StoreError, StoreTransaction

logger = logging.getLogger(__name__)


async def create_if_absent(store: RecordStore, collection: str, doc_id: str, fields: Dict[str, Any]) -> Document:
    """
    Write-back-on-absence inside a transaction: returns the existing document,
    or creates it from ``fields``. Concurrent callers create it at most once.
    """
    created = False

    async def create(tx: StoreTransaction) -> Document:
        nonlocal created
        existing = await tx.get(collection, doc_id)
        if existing is not None:
            created = False
            return existing
        await tx.set(collection, doc_id, fields)
        created = True
        return {"_id": doc_id, **fields}

    doc = await store.run_transaction(create)
    if created:
        logger.info(f"Created default {collection}/{doc_id}")
    return doc


def log_store_error(label: str, err: Exception) -> None:
    cause = err.cause.value if isinstance(err, StoreError) else "unknown"
    logger.error(f"[store][{label}] cause={cause} message={err}")
