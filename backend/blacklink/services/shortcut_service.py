"""QuickLaunch shortcut CRUD. Shortcuts are owned entirely by their user."""
from datetime import datetime, timezone
from typing import Callable, List, Optional
import logging
import uuid

from database import database
from blacklink.config import SHORTCUT_QUERY_LIMIT
from blacklink.models.shortcuts import (
    DEFAULT_GROUP,
    DEFAULT_ICON,
    QuickLaunchShortcut,
    ShortcutCreate,
    ShortcutUpdate,
)
from blacklink.store.base import DocumentNotFoundError, Eq, RecordStore, StoreTransaction
from blacklink.store.collections import QUICKLAUNCH

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ShortcutService:
    def __init__(self, store: Optional[RecordStore] = None, now: Callable[[], datetime] = _utcnow):
        self.store = store
        self._now = now

    def _get_store(self) -> RecordStore:
        if self.store is None:
            self.store = database.get_store()
        return self.store

    async def list_shortcuts(self, uid: str) -> List[QuickLaunchShortcut]:
        docs = await self._get_store().query(QUICKLAUNCH, [Eq("userId", uid)], limit=SHORTCUT_QUERY_LIMIT)
        return [QuickLaunchShortcut.from_document(doc) for doc in docs]

    async def add_shortcut(self, uid: str, payload: ShortcutCreate) -> QuickLaunchShortcut:
        shortcut_id = uuid.uuid4().hex
        record = {
            "name": payload.name,
            "url": payload.url,
            "icon": payload.icon or DEFAULT_ICON,
            "favorite": bool(payload.favorite),
            "group": payload.group or DEFAULT_GROUP,
            "userId": uid,
            "createdAt": self._now(),
        }
        if payload.color:
            record["color"] = payload.color
        await self._get_store().set(QUICKLAUNCH, shortcut_id, record)
        logger.info(f"Added shortcut {shortcut_id} for user {uid}")
        return QuickLaunchShortcut.from_document({"_id": shortcut_id, **record})

    async def update_shortcut(self, uid: str, shortcut_id: str, payload: ShortcutUpdate) -> QuickLaunchShortcut:
        """Merge changed fields. Raises DocumentNotFoundError for unknown or
        foreign shortcuts."""
        changes = payload.model_dump(exclude_none=True)
        changes["userId"] = uid

        async def update(tx: StoreTransaction) -> dict:
            existing = await tx.get(QUICKLAUNCH, shortcut_id)
            if existing is None or existing.get("userId") != uid:
                raise DocumentNotFoundError(f"Shortcut {shortcut_id} not found")
            await tx.set(QUICKLAUNCH, shortcut_id, changes, merge=True)
            return {**existing, **changes}

        doc = await self._get_store().run_transaction(update)
        return QuickLaunchShortcut.from_document(doc)

    async def delete_shortcut(self, uid: str, shortcut_id: str) -> None:
        store = self._get_store()
        existing = await store.get(QUICKLAUNCH, shortcut_id)
        if existing is None or existing.get("userId") != uid:
            raise DocumentNotFoundError(f"Shortcut {shortcut_id} not found")
        await store.delete(QUICKLAUNCH, shortcut_id)
        logger.info(f"Deleted shortcut {shortcut_id} for user {uid}")


# Global service instance
shortcut_service = ShortcutService()
