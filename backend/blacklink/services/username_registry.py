"""Username Registry

Business rules:
- Handles are globally unique: ``usernames/{handle}`` -> ``{uid, createdAt}``.
- The reservation and ``users/{uid}.username`` change together in one
  transaction; a rename releases the old handle in the same unit.
- Managed (district) accounts get a fixed cohort suffix before the
  uniqueness check: ``alice`` -> ``alice.wsdr4``.
- No application-level locking. Concurrency safety comes from the store's
  transaction isolation; the losing claimant re-reads and sees HANDLE_TAKEN.
- No automatic retries with a different handle. That is the user's call.
"""
from datetime import datetime, timezone
from typing import Callable, Optional
import logging

from database import database
from blacklink.config import COHORT_MARKER, COHORT_SUFFIX
from blacklink.models.profile import UserProfile
from blacklink.models.session import UsernameClaimResult, UsernameError
from blacklink.store.base import Eq, RecordStore, StoreError, StoreTransaction
from blacklink.store.collections import USERNAMES, USERS

logger = logging.getLogger(__name__)


class _HandleTaken(Exception):
    """Aborts the claim transaction without writing."""

    def __init__(self, handle: str, owner: str):
        super().__init__(handle)
        self.handle = handle
        self.owner = owner


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def needs_cohort_suffix(profile: Optional[UserProfile]) -> bool:
    if profile is None or not COHORT_MARKER:
        return False
    if COHORT_MARKER in (profile.organization or "").lower():
        return True
    return any(COHORT_MARKER in role.lower() for role in profile.roles)


class UsernameRegistry:
    """Claims, renames and reverse lookups of handles."""

    def __init__(self, store: Optional[RecordStore] = None, now: Callable[[], datetime] = _utcnow):
        self.store = store
        self._now = now

    def _get_store(self) -> RecordStore:
        if self.store is None:
            self.store = database.get_store()
        return self.store

    def final_handle(self, desired: str, profile: Optional[UserProfile]) -> str:
        desired = desired.strip()
        if needs_cohort_suffix(profile):
            return f"{desired}.{COHORT_SUFFIX}"
        return desired

    async def claim_username(
        self,
        uid: str,
        desired_handle: str,
        profile: Optional[UserProfile] = None,
    ) -> UsernameClaimResult:
        """Reserve a handle for ``uid`` and write it onto the profile.

        ``profile`` is the caller's current view, used for the cohort suffix and
        as the email fallback. When omitted it is read from the store.
        """
        desired = (desired_handle or "").strip()
        if not desired:
            return UsernameClaimResult.failure(UsernameError.EMPTY_HANDLE, "Username cannot be empty")

        store = self._get_store()
        if profile is None:
            try:
                doc = await store.get(USERS, uid)
            except StoreError as e:
                logger.error(f"Username claim for {uid}: profile read failed ({e.cause.value}): {e}")
                return UsernameClaimResult.failure(UsernameError.REGISTRY_ERROR, "Could not update username")
            profile = UserProfile.from_document(doc) if doc else None

        final = self.final_handle(desired, profile)
        fallback_email = profile.email if profile else None
        now = self._now()

        async def claim(tx: StoreTransaction) -> Optional[str]:
            reservation = await tx.get(USERNAMES, final)
            owner = (reservation or {}).get("uid")
            if owner and owner != uid:
                raise _HandleTaken(final, owner)

            user_doc = await tx.get(USERS, uid) or {}
            previous = user_doc.get("username")
            previous_reservation = None
            if previous and previous != final:
                previous_reservation = await tx.get(USERNAMES, previous)

            if owner == uid and previous == final:
                return None

            if owner != uid:
                await tx.set(USERNAMES, final, {"uid": uid, "createdAt": now})
            await tx.set(
                USERS,
                uid,
                {"username": final, "email": user_doc.get("email") or fallback_email, "updatedAt": now},
                merge=True,
            )
            if previous_reservation is not None and previous_reservation.get("uid") == uid:
                await tx.delete(USERNAMES, previous)
            return previous

        try:
            previous = await store.run_transaction(claim)
        except _HandleTaken as e:
            logger.info(f"Username '{e.handle}' requested by {uid} is held by another user")
            return UsernameClaimResult.failure(
                UsernameError.HANDLE_TAKEN,
                f"Username '{e.handle}' is already taken",
                handle=e.handle,
            )
        except StoreError as e:
            logger.error(f"Username claim '{final}' for {uid} failed ({e.cause.value}): {e}")
            return UsernameClaimResult.failure(UsernameError.REGISTRY_ERROR, "Could not update username", handle=final)

        if previous:
            logger.info(f"User {uid} renamed '{previous}' -> '{final}'")
        else:
            logger.info(f"User {uid} holds username '{final}'")
        return UsernameClaimResult.success(final)

    async def resolve_username(self, uid: str) -> Optional[str]:
        """Reverse lookup: the handle whose reservation points at ``uid``."""
        docs = await self._get_store().query(USERNAMES, [Eq("uid", uid)], limit=1)
        if not docs:
            return None
        return str(docs[0]["_id"])


# Global registry instance
username_registry = UsernameRegistry()
