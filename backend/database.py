from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
import os
import logging
from pathlib import Path
from contextlib import asynccontextmanager

from blacklink.config import DB_NAME, MONGO_TIMEOUT_MS, MONGO_URL, RECORD_STORE_BACKEND
from blacklink.store.base import RecordStore
from blacklink.store.collections import ORGANIZATIONS, QUICKLAUNCH, USERNAMES
from blacklink.store.memory import MemoryRecordStore
from blacklink.store.mongo import MongoRecordStore

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / ".env")

logger = logging.getLogger(__name__)


def create_client(mongo_url: str = MONGO_URL) -> AsyncIOMotorClient:
    """Motor client with the per-operation deadline applied to every read and write."""
    return AsyncIOMotorClient(
        mongo_url,
        timeoutMS=MONGO_TIMEOUT_MS,
        serverSelectionTimeoutMS=MONGO_TIMEOUT_MS,
    )


class Database:
    client: AsyncIOMotorClient = None
    db = None
    store: RecordStore = None

    async def connect(self, backend: str = RECORD_STORE_BACKEND):
        if backend == "memory":
            self.store = MemoryRecordStore()
            logger.info("Using in-memory record store")
            return

        try:
            self.client = create_client()
            self.db = self.client[DB_NAME]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {DB_NAME}")

            await self._create_indexes()
            self.store = MongoRecordStore(self.client, self.db)
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def close(self):
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")
        self.client = None
        self.db = None
        self.store = None

    def get_db(self):
        return self.db

    def get_store(self) -> RecordStore:
        if self.store is None:
            raise RuntimeError("Database is not connected")
        return self.store

    async def _create_indexes(self):
        """Create MongoDB indexes for the lookups the accounts core performs."""
        try:
            # Reverse username lookup (uid -> handle)
            await self.db[USERNAMES].create_index("uid")
            # Organization membership (array contains uid)
            await self.db[ORGANIZATIONS].create_index("members")
            # QuickLaunch shortcuts by owner
            await self.db[QUICKLAUNCH].create_index("userId")
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist, log but don't fail
            logger.warning(f"Index creation note: {e}")

# Global database instance
database = Database()

@asynccontextmanager
async def get_db_context():
    """Context manager for standalone scripts to access the record store.

    Usage in scripts:
        async with get_db_context() as store:
            await store.get("users", uid)
    """
    client = None
    try:
        client = create_client(os.environ.get('MONGO_URL', MONGO_URL))
        db = client[os.environ.get('DB_NAME', DB_NAME)]
        # Verify connection
        await db.command("ping")
        logger.info(f"Script connected to MongoDB: {db.name}")
        yield MongoRecordStore(client, db)
    finally:
        if client:
            client.close()
            logger.info("Script MongoDB connection closed")
