"""Session Bootstrap Orchestrator

On every identity change, fans out independent reads (profile, organizations,
stats, shortcuts, token ledger, username) and assembles one SessionSnapshot.

Rules:
- A failed read degrades only its own field (default value + cause tag); the
  other reads still populate. Nothing here raises for a read failure.
- Reads have no ordering guarantee relative to each other. The snapshot is a
  best-effort point-in-time composite; later mutations patch single fields.
- Results of a bootstrap for an identity that is no longer current are dropped.
- Listeners receive every published snapshot; subscribe() returns the
  unsubscribe callable.
- While an identity is signed in, external changes to its subscription record
  re-publish the tokens field. close() stops following them.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from blacklink.config import ORG_QUERY_LIMIT
from blacklink.models.entitlements import EntitlementSnapshot, TokenDebitResult, TokenLedger
from blacklink.models.profile import Identity, Organization, Stats, UserProfile
from blacklink.models.session import (
    FieldState,
    NoIdentityError,
    SessionSnapshot,
    UsernameClaimResult,
)
from blacklink.models.shortcuts import QuickLaunchShortcut, ShortcutCreate, ShortcutUpdate
from blacklink.services.entitlement_service import EntitlementService
from blacklink.services.profile_service import ProfileService
from blacklink.services.shortcut_service import ShortcutService
from blacklink.services.store_helpers import log_store_error
from blacklink.services.username_registry import UsernameRegistry
from blacklink.store.base import ArrayContains, FetchErrorCause, RecordStore, StoreError
from blacklink.store.collections import AERO_TOKENS, GLOBAL_STATS_ID, ORGANIZATIONS, STATS

logger = logging.getLogger(__name__)

Listener = Callable[[SessionSnapshot], None]

STATS_RULE_HINT = (
    "Add a read rule for stats/global so signed-in users can read it, "
    "or grant the service role read access to the stats collection."
)


class SessionOrchestrator:
    """Owns the SessionSnapshot for one client session."""

    def __init__(
        self,
        store: Optional[RecordStore] = None,
        profiles: Optional[ProfileService] = None,
        entitlements: Optional[EntitlementService] = None,
        registry: Optional[UsernameRegistry] = None,
        shortcuts: Optional[ShortcutService] = None,
    ):
        self.profiles = profiles or ProfileService(store)
        self.entitlements = entitlements or EntitlementService(store)
        self.registry = registry or UsernameRegistry(store)
        self.shortcuts = shortcuts or ShortcutService(store)
        # Stats and ledger reads go straight to the store the profiles use
        self._store = store
        self._snapshot = SessionSnapshot.guest()
        self._listeners: List[Listener] = []
        self._generation = 0
        self._stats_hint_logged = False
        self._unwatch: Optional[Callable[[], None]] = None

    def _get_store(self) -> RecordStore:
        if self._store is None:
            self._store = self.profiles._get_store()
        return self._store

    # =========================================================================
    # Reactive surface
    # =========================================================================

    @property
    def snapshot(self) -> SessionSnapshot:
        return self._snapshot

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; it is called with the current snapshot at once."""
        self._listeners.append(listener)
        listener(self._snapshot)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, snapshot: SessionSnapshot) -> None:
        self._snapshot = snapshot
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Session listener failed")

    def _watch_subscription(self, identity: Identity) -> None:
        async def on_change(entitlement: EntitlementSnapshot) -> None:
            if not entitlement.is_default:
                self._patch(identity, tokens=FieldState.ok(entitlement.tokens))

        try:
            self._unwatch = self.entitlements.watch_subscription(identity.uid, on_change, identity.email)
        except StoreError as e:
            log_store_error("subscription-watch", e)

    def _stop_watch(self) -> None:
        if self._unwatch is not None:
            self._unwatch()
            self._unwatch = None

    def close(self) -> None:
        """Stop following the subscription record. Listeners stay registered."""
        self._stop_watch()

    def _patch(self, identity: Identity, **fields: Any) -> None:
        """Update single fields if ``identity`` is still the signed-in user."""
        current = self._snapshot.identity
        if current is None or current.uid != identity.uid:
            return
        self._publish(self._snapshot.model_copy(update=fields))

    # =========================================================================
    # Bootstrap
    # =========================================================================

    async def on_identity_changed(self, identity: Optional[Identity]) -> SessionSnapshot:
        self._generation += 1
        generation = self._generation
        self._stop_watch()

        if identity is None:
            self._publish(SessionSnapshot.guest())
            return self._snapshot

        self._publish(SessionSnapshot(
            identity=identity,
            profile=FieldState.ok(UserProfile.from_identity(identity)),
            loading=True,
        ))

        (profile, username), organizations, stats, shortcuts, tokens = await asyncio.gather(
            self._load_profile_and_username(identity),
            self._fetch("org-fetch", [], lambda: self._load_organizations(identity.uid)),
            self._fetch("stats-fetch", Stats(), self._load_stats),
            self._fetch("quicklaunch-fetch", [], lambda: self.shortcuts.list_shortcuts(identity.uid)),
            self._fetch("tokens-fetch", TokenLedger.zero(), lambda: self._load_tokens(identity.uid)),
        )

        if generation != self._generation:
            logger.debug(f"Dropping stale bootstrap for {identity.uid}")
            return self._snapshot

        if stats.cause == FetchErrorCause.PERMISSION_DENIED and not self._stats_hint_logged:
            logger.warning(f"[store][stats-fetch] {STATS_RULE_HINT}")
            self._stats_hint_logged = True

        self._publish(SessionSnapshot(
            identity=identity,
            profile=profile,
            organizations=organizations,
            stats=stats,
            shortcuts=shortcuts,
            tokens=tokens,
            username=username,
            loading=False,
        ))
        self._watch_subscription(identity)
        return self._snapshot

    async def _fetch(self, label: str, default: Any, loader: Callable[[], Awaitable[Any]]) -> FieldState:
        try:
            return FieldState.ok(await loader())
        except StoreError as e:
            log_store_error(label, e)
            return FieldState.degrade(default, e.cause, str(e))
        except Exception as e:
            logger.exception(f"[store][{label}] unexpected failure")
            return FieldState.degrade(default, FetchErrorCause.UNKNOWN, str(e))

    async def _load_profile_and_username(self, identity: Identity) -> Tuple[FieldState, FieldState]:
        """Profile.username wins; otherwise fall back to the reverse lookup.
        The lookup result is merged into the snapshot only, never written."""
        profile = await self._fetch(
            "profile-fetch",
            UserProfile.from_identity(identity),
            lambda: self.profiles.get_profile(identity),
        )
        if profile.value.username:
            return profile, FieldState.ok(profile.value.username)

        username = await self._fetch("username-fetch", None, lambda: self.registry.resolve_username(identity.uid))
        if username.value:
            merged = profile.value.model_copy(update={"username": username.value})
            profile = profile.model_copy(update={"value": merged})
        return profile, username

    async def _load_organizations(self, uid: str) -> List[Organization]:
        docs = await self._get_store().query(ORGANIZATIONS, [ArrayContains("members", uid)], limit=ORG_QUERY_LIMIT)
        return [Organization.from_document(doc) for doc in docs]

    async def _load_stats(self) -> Stats:
        return Stats.from_document(await self._get_store().get(STATS, GLOBAL_STATS_ID))

    async def _load_tokens(self, uid: str) -> TokenLedger:
        doc = await self._get_store().get(AERO_TOKENS, uid)
        return TokenLedger.from_document(doc) if doc else TokenLedger.zero()

    # =========================================================================
    # Mutations
    # =========================================================================

    def _require_identity(self) -> Identity:
        identity = self._snapshot.identity
        if identity is None:
            raise NoIdentityError("This operation requires a signed-in user")
        return identity

    async def claim_username(self, desired_handle: str) -> UsernameClaimResult:
        identity = self._require_identity()
        profile_state = self._snapshot.profile
        known_profile = None if profile_state.degraded else profile_state.value
        result = await self.registry.claim_username(identity.uid, desired_handle, known_profile)
        if result.ok:
            profile = self._snapshot.profile.value.model_copy(update={"username": result.handle})
            self._patch(
                identity,
                profile=self._snapshot.profile.model_copy(update={"value": profile}),
                username=FieldState.ok(result.handle),
            )
        return result

    async def set_photo_url(self, url: str) -> None:
        identity = self._require_identity()
        current = self._snapshot.profile.value
        await self.profiles.set_photo_url(identity.uid, url, fallback_email=current.email)
        profile = current.model_copy(update={"photo_url": url})
        self._patch(identity, profile=self._snapshot.profile.model_copy(update={"value": profile}))

    async def get_entitlement(self) -> EntitlementSnapshot:
        identity = self._require_identity()
        entitlement = await self.entitlements.get_entitlement(identity.uid, identity.email)
        if not entitlement.is_default:
            self._patch(identity, tokens=FieldState.ok(entitlement.tokens))
        return entitlement

    async def refresh_entitlement(self) -> EntitlementSnapshot:
        identity = self._require_identity()
        self.entitlements.cache.invalidate(identity.uid)
        return await self.get_entitlement()

    async def debit_tokens(self, amount: int) -> TokenDebitResult:
        identity = self._require_identity()
        result = await self.entitlements.debit_tokens(identity.uid, amount)
        if result.ok:
            ledger = self._snapshot.tokens.value.model_copy(update={"remaining": result.remaining, "used": result.used})
            self._patch(identity, tokens=FieldState.ok(ledger))
        return result

    async def add_shortcut(self, payload: ShortcutCreate) -> QuickLaunchShortcut:
        identity = self._require_identity()
        shortcut = await self.shortcuts.add_shortcut(identity.uid, payload)
        items = list(self._snapshot.shortcuts.value) + [shortcut]
        self._patch(identity, shortcuts=FieldState.ok(items))
        return shortcut

    async def update_shortcut(self, shortcut_id: str, payload: ShortcutUpdate) -> QuickLaunchShortcut:
        identity = self._require_identity()
        shortcut = await self.shortcuts.update_shortcut(identity.uid, shortcut_id, payload)
        items = [shortcut if item.id == shortcut_id else item for item in self._snapshot.shortcuts.value]
        self._patch(identity, shortcuts=FieldState.ok(items))
        return shortcut

    async def delete_shortcut(self, shortcut_id: str) -> None:
        identity = self._require_identity()
        await self.shortcuts.delete_shortcut(identity.uid, shortcut_id)
        items = [item for item in self._snapshot.shortcuts.value if item.id != shortcut_id]
        self._patch(identity, shortcuts=FieldState.ok(items))
