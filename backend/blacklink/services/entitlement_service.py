"""Entitlement & Token Ledger Service

Handles:
- Subscription tier resolution (cached per uid, fail-soft to FREE)
- Default FREE record synthesis on first read
- Aero token ledger creation for paid tiers
- Atomic token debits

Tiers are written only by the external billing process; this service reads them.
"""

from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional
import logging

from pydantic import ValidationError

from database import database
from blacklink.config import (
    ENTITLEMENT_CACHE_MAX_ENTRIES,
    ENTITLEMENT_CACHE_TTL_SECONDS,
    SUBSCRIBE_BASE_URL,
)
from blacklink.models.entitlements import (
    DEFAULT_FEATURES,
    TIER_TOKEN_ALLOCATIONS,
    EntitlementRecord,
    EntitlementSnapshot,
    TokenDebitResult,
    TokenError,
    TokenLedger,
)
from blacklink.models.profile import Tier
from blacklink.services.store_helpers import create_if_absent
from blacklink.services.ttl_cache import TTLCache
from blacklink.store.base import RecordStore, StoreError, TransactionConflictError
from blacklink.store.collections import AERO_TOKENS, SUBSCRIPTIONS

logger = logging.getLogger(__name__)

# Re-reads allowed when a concurrent debit moves the balance between read and write
DEBIT_MAX_ATTEMPTS = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EntitlementService:
    """Subscription tier and metered credit management."""

    def __init__(
        self,
        store: Optional[RecordStore] = None,
        cache: Optional[TTLCache] = None,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.cache = cache or TTLCache(ENTITLEMENT_CACHE_TTL_SECONDS, ENTITLEMENT_CACHE_MAX_ENTRIES)
        self._now = now

    def _get_store(self) -> RecordStore:
        if self.store is None:
            self.store = database.get_store()
        return self.store

    # =========================================================================
    # Entitlement resolution
    # =========================================================================

    async def get_entitlement(self, uid: str, email: Optional[str] = None) -> EntitlementSnapshot:
        """Get the combined subscription + ledger view for a user.

        Served from cache inside the TTL window. On a miss, absent records are
        synthesized. Any store failure yields the default FREE snapshot, which
        is not cached.
        """
        cached = self.cache.get(uid)
        if cached is not None:
            return cached

        try:
            snapshot = await self._resolve(uid, email)
        except StoreError as e:
            logger.error(f"Entitlement lookup failed for {uid} ({e.cause.value}): {e}. Using FREE defaults")
            return EntitlementSnapshot.default(uid)
        except (ValueError, ValidationError) as e:
            # Records are written by the billing process and may be malformed
            logger.error(f"Malformed entitlement records for {uid}: {e}. Using FREE defaults")
            return EntitlementSnapshot.default(uid)

        self.cache.set(uid, snapshot)
        return snapshot

    async def _resolve(self, uid: str, email: Optional[str]) -> EntitlementSnapshot:
        store = self._get_store()
        now = self._now()

        record_doc = await store.get(SUBSCRIPTIONS, uid)
        if record_doc is None:
            record_doc = await create_if_absent(store, SUBSCRIPTIONS, uid, {
                "userId": uid,
                "email": email,
                "tier": Tier.FREE.value,
                "status": "active",
                "price": 0,
                "features": list(DEFAULT_FEATURES),
                "createdAt": now,
                "updatedAt": now,
            })
        record = EntitlementRecord.from_document(record_doc)

        ledger_doc = await store.get(AERO_TOKENS, uid)
        if ledger_doc is None and record.tier in TIER_TOKEN_ALLOCATIONS:
            allocation = TIER_TOKEN_ALLOCATIONS[record.tier]
            ledger_doc = await create_if_absent(store, AERO_TOKENS, uid, {
                "userId": uid,
                "tier": record.tier.value,
                "monthlyAllocation": allocation,
                "remaining": allocation,
                "used": 0,
                "lastReset": now,
                "allocatedAt": now,
                "createdAt": now,
            })
        ledger = TokenLedger.from_document(ledger_doc) if ledger_doc else TokenLedger.zero()

        return EntitlementSnapshot(
            uid=uid,
            tier=record.tier,
            status=record.status,
            price=record.price,
            features=record.features,
            tokens=ledger,
        )

    async def refresh(self, uid: str, email: Optional[str] = None) -> EntitlementSnapshot:
        """Bypass the cache."""
        self.cache.invalidate(uid)
        return await self.get_entitlement(uid, email)

    def watch_subscription(
        self,
        uid: str,
        callback: Callable[[EntitlementSnapshot], Awaitable[None]],
        email: Optional[str] = None,
    ) -> Callable[[], None]:
        """Follow external tier changes for ``uid``.

        Each change to the subscription record drops the cached snapshot, then
        ``callback`` receives the freshly resolved one. Returns the unsubscribe
        callable.
        """
        async def on_change(doc) -> None:
            self.cache.invalidate(uid)
            logger.info(f"Subscription record changed for {uid}")
            await callback(await self.get_entitlement(uid, email))

        return self._get_store().watch(SUBSCRIPTIONS, uid, on_change)

    async def get_tier(self, uid: str) -> Tier:
        return (await self.get_entitlement(uid)).tier

    async def has_ultra(self, uid: str) -> bool:
        return (await self.get_tier(uid)).at_least(Tier.ULTRA)

    async def has_ultra_plus(self, uid: str) -> bool:
        return (await self.get_tier(uid)) == Tier.ULTRA_PLUS

    async def get_features(self, uid: str) -> List[str]:
        return list((await self.get_entitlement(uid)).features)

    async def has_feature(self, uid: str, feature: str) -> bool:
        return feature in await self.get_features(uid)

    async def get_tokens(self, uid: str) -> TokenLedger:
        return (await self.get_entitlement(uid)).tokens

    async def has_tokens(self, uid: str, amount: int) -> bool:
        return (await self.get_tokens(uid)).remaining >= amount

    # =========================================================================
    # Token debits
    # =========================================================================

    async def debit_tokens(self, uid: str, amount: int) -> TokenDebitResult:
        """Spend Aero tokens.

        Reads the ledger directly (never the cache), then applies a guarded
        atomic decrement so concurrent debits from the same user cannot lose
        updates or overdraw. Business failures are returned, not raised.
        """
        if isinstance(amount, bool) or amount <= 0:
            return TokenDebitResult.failure(TokenError.INVALID_AMOUNT, "Amount must be a positive number of tokens")

        store = self._get_store()
        for attempt in range(DEBIT_MAX_ATTEMPTS):
            ledger_doc = await store.get(AERO_TOKENS, uid)
            if ledger_doc is None:
                return TokenDebitResult.failure(
                    TokenError.NO_ALLOCATION,
                    "No token allocation found. Subscribe to ULTRA to get AI credits.",
                )

            remaining = int(ledger_doc.get("remaining") or 0)
            if remaining < amount:
                logger.warning(f"Insufficient tokens for user {uid}. Has {remaining}, needs {amount}")
                return TokenDebitResult.failure(
                    TokenError.INSUFFICIENT_BALANCE,
                    f"Insufficient tokens. You have {remaining} remaining but need {amount}.",
                    shortfall=amount - remaining,
                )

            updated = await store.conditional_increment(
                AERO_TOKENS,
                uid,
                increments={"remaining": -amount, "used": amount},
                minimums={"remaining": amount},
                fields={"lastUsedAt": self._now()},
            )
            if updated is not None:
                self.cache.invalidate(uid)
                new_remaining = int(updated.get("remaining") or 0)
                new_used = int(updated.get("used") or 0)
                logger.info(f"Debited {amount} tokens from user {uid}. Remaining: {new_remaining}")
                return TokenDebitResult.success(new_remaining, new_used)

            logger.debug(f"Ledger for {uid} changed during debit (attempt {attempt + 1}), re-reading")

        raise TransactionConflictError(f"Token ledger for {uid} kept changing during debit")

    # =========================================================================
    # Billing links
    # =========================================================================

    def get_subscribe_url(self, tier: Tier = Tier.ULTRA) -> str:
        if tier == Tier.ULTRA_PLUS:
            return f"{SUBSCRIBE_BASE_URL}?plan=ultra-plus"
        return f"{SUBSCRIBE_BASE_URL}?plan=ultra"

    def get_manage_url(self) -> str:
        return SUBSCRIBE_BASE_URL


# Global service instance
entitlement_service = EntitlementService()
