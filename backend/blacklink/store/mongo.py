"""
MongoDB record store built on Motor.

Transactions use driver sessions (``with_transaction``) which retry transient
write conflicts, so the losing side of a race re-runs its callback against the
winner's committed state. Requires a replica set or sharded cluster.

Watches are change streams on the document key, which need the same
deployment.
"""
import asyncio
import logging
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorClientSession, AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import (
    ConnectionFailure,
    ExecutionTimeout,
    OperationFailure,
    PyMongoError,
    WTimeoutError,
)

from blacklink.store.base import (
    ArrayContains,
    ChangeCallback,
    Document,
    Eq,
    PermissionDeniedError,
    RecordStore,
    StoreError,
    StoreTransaction,
    T,
    TransactionConflictError,
    TransportError,
)

logger = logging.getLogger(__name__)

# MongoDB "Unauthorized" / "AuthenticationFailed"
PERMISSION_ERROR_CODES = {13, 18}


def translate_error(err: PyMongoError) -> StoreError:
    """Map a driver exception onto the store's coarse error taxonomy."""
    if isinstance(err, (ConnectionFailure, ExecutionTimeout, WTimeoutError)) or getattr(err, "timeout", False):
        return TransportError(str(err))
    if isinstance(err, OperationFailure) and err.code in PERMISSION_ERROR_CODES:
        return PermissionDeniedError(str(err))
    if err.has_error_label("TransientTransactionError") or err.has_error_label("UnknownTransactionCommitResult"):
        return TransactionConflictError(str(err))
    return StoreError(str(err))


@contextmanager
def _translated(operation: str):
    try:
        yield
    except PyMongoError as e:
        logger.debug(f"Mongo {operation} failed: {e}")
        raise translate_error(e) from e


def build_filter(filters: List[Any]) -> Dict[str, Any]:
    """Eq and ArrayContains both map to plain field matches in MongoDB."""
    clauses = []
    for f in filters:
        if isinstance(f, (Eq, ArrayContains)):
            clauses.append({f.field: f.value})
        else:
            raise TypeError(f"Unsupported filter: {f!r}")
    if not clauses:
        return {}
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


class _MongoTransaction(StoreTransaction):
    """Session-bound operations. Driver errors are left raw so
    ``with_transaction`` can recognise retryable ones."""

    def __init__(self, db: AsyncIOMotorDatabase, session: AsyncIOMotorClientSession):
        self._db = db
        self._session = session

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        return await self._db[collection].find_one({"_id": doc_id}, session=self._session)

    async def set(self, collection: str, doc_id: str, fields: Document, merge: bool = False) -> None:
        await _write(self._db, collection, doc_id, fields, merge, session=self._session)

    async def delete(self, collection: str, doc_id: str) -> None:
        await self._db[collection].delete_one({"_id": doc_id}, session=self._session)


async def _write(db, collection: str, doc_id: str, fields: Document, merge: bool, session=None) -> None:
    body = {k: v for k, v in fields.items() if k != "_id"}
    if merge:
        await db[collection].update_one({"_id": doc_id}, {"$set": body}, upsert=True, session=session)
    else:
        await db[collection].replace_one({"_id": doc_id}, body, upsert=True, session=session)


class MongoRecordStore(RecordStore):
    """RecordStore over a Motor database handle."""

    def __init__(self, client: AsyncIOMotorClient, db: AsyncIOMotorDatabase):
        self.client = client
        self.db = db

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        with _translated(f"get {collection}/{doc_id}"):
            return await self.db[collection].find_one({"_id": doc_id})

    async def set(self, collection: str, doc_id: str, fields: Document, merge: bool = False) -> None:
        with _translated(f"set {collection}/{doc_id}"):
            await _write(self.db, collection, doc_id, fields, merge)

    async def delete(self, collection: str, doc_id: str) -> None:
        with _translated(f"delete {collection}/{doc_id}"):
            await self.db[collection].delete_one({"_id": doc_id})

    async def query(self, collection: str, filters: List[Any], limit: int) -> List[Document]:
        with _translated(f"query {collection}"):
            cursor = self.db[collection].find(build_filter(filters)).limit(limit)
            return await cursor.to_list(limit)

    async def run_transaction(self, fn: Callable[[StoreTransaction], Awaitable[T]]) -> T:
        async def callback(session):
            return await fn(_MongoTransaction(self.db, session))

        with _translated("transaction"):
            async with await self.client.start_session() as session:
                return await session.with_transaction(callback)

    async def conditional_increment(
        self,
        collection: str,
        doc_id: str,
        increments: Dict[str, int],
        minimums: Dict[str, int],
        fields: Optional[Document] = None,
    ) -> Optional[Document]:
        query: Dict[str, Any] = {"_id": doc_id}
        for key, minimum in minimums.items():
            query[key] = {"$gte": minimum}
        update: Dict[str, Any] = {"$inc": increments}
        if fields:
            update["$set"] = fields
        with _translated(f"increment {collection}/{doc_id}"):
            return await self.db[collection].find_one_and_update(
                query,
                update,
                return_document=ReturnDocument.AFTER,
            )

    def watch(self, collection: str, doc_id: str, callback: ChangeCallback) -> Callable[[], None]:
        pipeline = [{"$match": {"documentKey._id": doc_id}}]

        async def follow() -> None:
            try:
                async with self.db[collection].watch(pipeline, full_document="updateLookup") as stream:
                    async for change in stream:
                        doc = None if change.get("operationType") == "delete" else change.get("fullDocument")
                        try:
                            await callback(doc)
                        except Exception:
                            logger.exception(f"Watch callback for {collection}/{doc_id} failed")
            except PyMongoError as e:
                err = translate_error(e)
                logger.error(f"[store][watch] {collection}/{doc_id} stopped ({err.cause.value}): {err}")

        task = asyncio.create_task(follow())

        def unsubscribe() -> None:
            task.cancel()

        return unsubscribe
