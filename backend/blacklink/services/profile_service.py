"""Profile reads (with lazy creation) and user-owned profile overrides.

Tier and isAdmin are never written here; they belong to billing/admin tooling.
"""
from datetime import datetime, timezone
from typing import Callable, Optional
import logging

from database import database
from blacklink.models.profile import Identity, UserProfile
from blacklink.services.store_helpers import create_if_absent
from blacklink.store.base import RecordStore
from blacklink.store.collections import USERS

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProfileService:
    def __init__(self, store: Optional[RecordStore] = None, now: Callable[[], datetime] = _utcnow):
        self.store = store
        self._now = now

    def _get_store(self) -> RecordStore:
        if self.store is None:
            self.store = database.get_store()
        return self.store

    async def get_profile(self, identity: Identity) -> UserProfile:
        """Read ``users/{uid}``, creating it from the identity's claims if absent."""
        store = self._get_store()
        doc = await store.get(USERS, identity.uid)
        if doc is None:
            defaults = UserProfile.from_identity(identity).to_document()
            defaults["createdAt"] = self._now()
            doc = await create_if_absent(store, USERS, identity.uid, defaults)
        return UserProfile.from_document(doc, identity)

    async def set_photo_url(self, uid: str, url: str, fallback_email: Optional[str] = None) -> None:
        store = self._get_store()
        doc = await store.get(USERS, uid) or {}
        await store.set(
            USERS,
            uid,
            {
                "email": doc.get("email") or fallback_email,
                "photoURL": url,
                "updatedAt": self._now(),
            },
            merge=True,
        )
        logger.info(f"Updated photo for user {uid}")


# Global service instance
profile_service = ProfileService()
