"""
Session bootstrap: parallel reads assembled into one snapshot.

- A failed read degrades only its own field; the others still populate.
- A denied stats read is flagged and the rules hint is logged once.
- Signing out resets to guest without touching the store.
- Results for an identity that is no longer current are dropped.
- Mutations require an identity and patch the snapshot on success.
- External subscription changes re-publish the tokens field while signed in.
"""
import asyncio
import logging
from unittest.mock import AsyncMock

import pytest

from blacklink.models.entitlements import TokenError
from blacklink.models.profile import Identity, Tier
from blacklink.models.session import NoIdentityError, UsernameError
from blacklink.models.shortcuts import ShortcutCreate, ShortcutUpdate
from blacklink.services.entitlement_service import EntitlementService
from blacklink.services.session_orchestrator import SessionOrchestrator
from blacklink.services.ttl_cache import TTLCache
from blacklink.store.base import FetchErrorCause, PermissionDeniedError, TransportError

pytestmark = pytest.mark.asyncio

UID = "user-alice"


def fail_reads(store, collection, exc):
    """Make ``store.get`` raise for one collection only."""
    real_get = store.get

    async def get(coll, doc_id):
        if coll == collection:
            raise exc
        return await real_get(coll, doc_id)

    store.get = get


@pytest.fixture
def orchestrator(store, clock):
    return SessionOrchestrator(store, entitlements=EntitlementService(store, cache=TTLCache(300, clock=clock)))


async def seed_account(store):
    await store.set("users", UID, {"displayName": "Alice", "email": "alice@example.com", "tier": "ULTRA",
                                   "organization": "Acme", "roles": ["member", "admin"]})
    await store.set("usernames", "alice", {"uid": UID})
    await store.set("organizations", "org-1", {"name": "Acme", "tier": "ULTRA", "members": [UID, "user-bob"]})
    await store.set("organizations", "org-2", {"members": ["user-bob"]})
    await store.set("stats", "global", {"activeUsers": 42, "orgs": 7, "apiHealth": "Operational"})
    await store.set("quicklaunch", "s1", {"name": "Docs", "url": "https://docs.example.com", "userId": UID})
    await store.set("aero_tokens", UID, {"monthlyAllocation": 10, "remaining": 6, "used": 4})


class TestBootstrap:
    async def test_full_bootstrap(self, store, orchestrator, identity):
        await seed_account(store)

        snapshot = await orchestrator.on_identity_changed(identity)

        assert snapshot.loading is False
        assert snapshot.errors() == {}
        assert snapshot.profile.value.tier == Tier.ULTRA
        assert [o.id for o in snapshot.organizations.value] == ["org-1"]
        assert snapshot.organizations.value[0].members == 2
        assert snapshot.stats.value.active_users == 42
        assert [s.name for s in snapshot.shortcuts.value] == ["Docs"]
        assert snapshot.tokens.value.remaining == 6
        assert snapshot.username.value == "alice"
        assert orchestrator.snapshot is snapshot

    async def test_fresh_user_gets_created_profile(self, store, orchestrator, identity):
        snapshot = await orchestrator.on_identity_changed(identity)

        assert snapshot.errors() == {}
        assert snapshot.profile.value.display_name == "Alice"
        assert snapshot.organizations.value == []
        assert snapshot.stats.value.api_health == "Unknown"
        assert snapshot.tokens.value.remaining == 0
        assert snapshot.username.value is None
        assert (await store.get("users", UID))["displayName"] == "Alice"

    async def test_stats_permission_denied_degrades_only_stats(self, store, orchestrator, identity, caplog):
        await seed_account(store)
        fail_reads(store, "stats", PermissionDeniedError("missing rule"))

        with caplog.at_level(logging.WARNING):
            snapshot = await orchestrator.on_identity_changed(identity)
            await orchestrator.on_identity_changed(identity)

        assert snapshot.errors() == {"stats": FetchErrorCause.PERMISSION_DENIED}
        assert snapshot.stats_permission_denied is True
        assert snapshot.stats.value.active_users == 0
        assert snapshot.profile.value.display_name == "Alice"
        assert snapshot.tokens.value.remaining == 6
        assert len(snapshot.organizations.value) == 1
        hints = [r for r in caplog.records if "read rule for stats/global" in r.getMessage()]
        assert len(hints) == 1

    async def test_profile_failure_falls_back_to_identity(self, store, orchestrator, identity):
        await seed_account(store)
        fail_reads(store, "users", TransportError("deadline exceeded"))

        snapshot = await orchestrator.on_identity_changed(identity)

        assert snapshot.profile.degraded is True
        assert snapshot.profile.cause == FetchErrorCause.TRANSPORT
        assert snapshot.profile.value.email == "alice@example.com"
        # Username still resolved through the reservation
        assert snapshot.username.value == "alice"
        assert snapshot.stats.degraded is False

    async def test_unexpected_error_tagged_unknown(self, store, orchestrator, identity):
        orchestrator.shortcuts.list_shortcuts = AsyncMock(side_effect=ValueError("bad document"))

        snapshot = await orchestrator.on_identity_changed(identity)

        assert snapshot.errors() == {"shortcuts": FetchErrorCause.UNKNOWN}
        assert snapshot.shortcuts.value == []

    async def test_reverse_lookup_fills_missing_profile_username(self, store, orchestrator, identity):
        await store.set("users", UID, {"displayName": "Alice"})
        await store.set("usernames", "alice", {"uid": UID})

        snapshot = await orchestrator.on_identity_changed(identity)

        assert snapshot.username.value == "alice"
        assert snapshot.profile.value.username == "alice"
        # Snapshot only, nothing written back
        assert "username" not in await store.get("users", UID)

    async def test_profile_username_wins_over_reservation(self, store, orchestrator, identity):
        await store.set("users", UID, {"displayName": "Alice", "username": "al"})
        await store.set("usernames", "alice", {"uid": UID})

        snapshot = await orchestrator.on_identity_changed(identity)

        assert snapshot.username.value == "al"

    async def test_sign_out_resets_without_store_calls(self, store, orchestrator, identity):
        await orchestrator.on_identity_changed(identity)
        store.get = AsyncMock()
        store.query = AsyncMock()

        snapshot = await orchestrator.on_identity_changed(None)

        assert snapshot.is_guest is True
        assert snapshot.profile.value.display_name == "Guest"
        store.get.assert_not_called()
        store.query.assert_not_called()

    async def test_stale_bootstrap_dropped(self, store, orchestrator, identity):
        bob = Identity(uid="user-bob", display_name="Bob")
        release = asyncio.Event()
        real_get = store.get

        async def slow_get(coll, doc_id):
            if (coll, doc_id) == ("users", UID):
                await release.wait()
            return await real_get(coll, doc_id)

        store.get = slow_get
        alice_task = asyncio.create_task(orchestrator.on_identity_changed(identity))
        await asyncio.sleep(0)

        await orchestrator.on_identity_changed(bob)
        release.set()
        await alice_task

        assert orchestrator.snapshot.identity.uid == "user-bob"
        assert orchestrator.snapshot.profile.value.display_name == "Bob"


class TestSubscribe:
    async def test_listener_sees_every_snapshot_until_unsubscribed(self, orchestrator, identity):
        seen = []
        unsubscribe = orchestrator.subscribe(seen.append)

        await orchestrator.on_identity_changed(identity)
        unsubscribe()
        await orchestrator.on_identity_changed(None)

        assert seen[0].is_guest is True
        assert seen[1].loading is True
        assert seen[2].loading is False
        assert seen[2].identity.uid == UID
        assert len(seen) == 3

    async def test_failing_listener_does_not_break_publish(self, orchestrator, identity):
        seen = []

        def broken(snapshot):
            if snapshot.identity is not None:
                raise RuntimeError("render failed")

        orchestrator.subscribe(broken)
        orchestrator.subscribe(seen.append)
        await orchestrator.on_identity_changed(identity)

        assert seen[-1].identity.uid == UID


class TestMutations:
    @pytest.mark.parametrize("call", [
        lambda o: o.claim_username("alice"),
        lambda o: o.debit_tokens(1),
        lambda o: o.get_entitlement(),
        lambda o: o.add_shortcut(ShortcutCreate(name="Docs", url="https://docs.example.com")),
        lambda o: o.set_photo_url("https://cdn.example.com/a.png"),
    ])
    async def test_require_identity(self, orchestrator, call):
        with pytest.raises(NoIdentityError):
            await call(orchestrator)

    async def test_claim_username_updates_snapshot(self, store, orchestrator, identity):
        await orchestrator.on_identity_changed(identity)

        result = await orchestrator.claim_username("alice")

        assert result.ok is True
        assert orchestrator.snapshot.username.value == "alice"
        assert orchestrator.snapshot.profile.value.username == "alice"

    async def test_claim_username_uses_known_profile_for_suffix(self, store, orchestrator, identity):
        await store.set("users", UID, {"displayName": "Alice", "organization": "Eastside District"})
        await orchestrator.on_identity_changed(identity)

        result = await orchestrator.claim_username("alice")

        assert result.handle == "alice.wsdr4"
        assert orchestrator.snapshot.username.value == "alice.wsdr4"

    async def test_failed_claim_leaves_snapshot(self, store, orchestrator, identity):
        await store.set("usernames", "alice", {"uid": "user-bob"})
        await orchestrator.on_identity_changed(identity)

        result = await orchestrator.claim_username("alice")

        assert result.error == UsernameError.HANDLE_TAKEN
        assert orchestrator.snapshot.username.value is None

    async def test_debit_updates_token_field(self, store, orchestrator, identity):
        await seed_account(store)
        await orchestrator.on_identity_changed(identity)

        result = await orchestrator.debit_tokens(2)
        assert result.ok is True
        assert orchestrator.snapshot.tokens.value.remaining == 4
        assert orchestrator.snapshot.tokens.value.used == 6

        result = await orchestrator.debit_tokens(10)
        assert result.error == TokenError.INSUFFICIENT_BALANCE
        assert orchestrator.snapshot.tokens.value.remaining == 4

    async def test_get_entitlement_refreshes_tokens(self, store, orchestrator, identity):
        await orchestrator.on_identity_changed(identity)
        await store.set("subscriptions", UID, {"tier": "ULTRA_PLUS"})

        entitlement = await orchestrator.get_entitlement()

        assert entitlement.tier == Tier.ULTRA_PLUS
        assert orchestrator.snapshot.tokens.value.remaining == 25

    async def test_shortcut_mutations_patch_list(self, orchestrator, identity):
        await orchestrator.on_identity_changed(identity)

        created = await orchestrator.add_shortcut(ShortcutCreate(name="Docs", url="https://docs.example.com"))
        assert [s.id for s in orchestrator.snapshot.shortcuts.value] == [created.id]

        await orchestrator.update_shortcut(created.id, ShortcutUpdate(name="Manual"))
        assert orchestrator.snapshot.shortcuts.value[0].name == "Manual"

        await orchestrator.delete_shortcut(created.id)
        assert orchestrator.snapshot.shortcuts.value == []

    async def test_set_photo_url(self, store, orchestrator, identity):
        await orchestrator.on_identity_changed(identity)

        await orchestrator.set_photo_url("https://cdn.example.com/a.png")

        assert orchestrator.snapshot.profile.value.photo_url == "https://cdn.example.com/a.png"
        assert (await store.get("users", UID))["photoURL"] == "https://cdn.example.com/a.png"


class TestFreshUserScenario:
    async def test_bootstrap_then_entitlement_creates_one_free_record(self, store, orchestrator):
        newcomer = Identity(uid="user-new", display_name="Newcomer")

        snapshot = await orchestrator.on_identity_changed(newcomer)

        assert snapshot.profile.value.display_name == "Newcomer"
        assert snapshot.profile.value.tier == Tier.FREE
        assert snapshot.tokens.value.remaining == 0
        assert snapshot.shortcuts.value == []
        assert snapshot.organizations.value == []
        assert await store.get("subscriptions", "user-new") is None

        entitlement = await orchestrator.get_entitlement()
        await orchestrator.get_entitlement()

        assert entitlement.tier == Tier.FREE
        assert (await store.get("subscriptions", "user-new"))["tier"] == "FREE"
        assert await store.query("subscriptions", [], limit=10) == [await store.get("subscriptions", "user-new")]


async def settle(rounds=10):
    for _ in range(rounds):
        await asyncio.sleep(0)


class TestSubscriptionWatch:
    async def test_external_upgrade_republishes_tokens(self, store, orchestrator, identity):
        await orchestrator.on_identity_changed(identity)
        assert orchestrator.snapshot.tokens.value.remaining == 0
        published = asyncio.Queue()
        orchestrator.subscribe(published.put_nowait)
        await published.get()

        await store.set("subscriptions", UID, {"tier": "ULTRA"})
        snapshot = await asyncio.wait_for(published.get(), timeout=1)

        assert snapshot.identity.uid == UID
        assert snapshot.tokens.value.remaining == 10
        assert snapshot.tokens.degraded is False

    async def test_sign_out_stops_following(self, store, orchestrator, identity):
        await orchestrator.on_identity_changed(identity)
        await orchestrator.on_identity_changed(None)
        seen = []
        orchestrator.subscribe(seen.append)

        await store.set("subscriptions", UID, {"tier": "ULTRA"})
        await settle()

        assert len(seen) == 1
        assert await store.get("aero_tokens", UID) is None

    async def test_switching_identity_follows_only_the_new_user(self, store, orchestrator, identity):
        bob = Identity(uid="user-bob", display_name="Bob")
        await orchestrator.on_identity_changed(identity)
        await orchestrator.on_identity_changed(bob)

        await store.set("subscriptions", UID, {"tier": "ULTRA"})
        await settle()
        assert await store.get("aero_tokens", UID) is None

        published = asyncio.Queue()
        orchestrator.subscribe(published.put_nowait)
        await published.get()
        await store.set("subscriptions", "user-bob", {"tier": "ULTRA_PLUS"})
        snapshot = await asyncio.wait_for(published.get(), timeout=1)

        assert snapshot.identity.uid == "user-bob"
        assert snapshot.tokens.value.remaining == 25

    async def test_close_stops_following(self, store, orchestrator, identity):
        await orchestrator.on_identity_changed(identity)
        orchestrator.close()

        await store.set("subscriptions", UID, {"tier": "ULTRA"})
        await settle()

        assert orchestrator.snapshot.tokens.value.remaining == 0
        assert await store.get("aero_tokens", UID) is None
