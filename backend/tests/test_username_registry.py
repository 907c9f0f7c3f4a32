"""
Username registry: uniqueness under concurrency, renames, cohort suffixing.

- Two users racing for the same handle: exactly one wins, the other gets HANDLE_TAKEN.
- A rename releases the previous handle in the same transaction.
- Re-claiming a handle you already hold is a no-op success.
- District accounts get the ``.wsdr4`` suffix before the uniqueness check.
"""
import asyncio
from unittest.mock import AsyncMock

import pytest

from blacklink.models.profile import UserProfile
from blacklink.models.session import UsernameError
from blacklink.store.base import TransportError

pytestmark = pytest.mark.asyncio

UID = "user-alice"
OTHER_UID = "user-bob"


class TestClaim:
    async def test_fresh_claim_writes_reservation_and_profile(self, store, registry):
        result = await registry.claim_username(UID, "alice")

        assert result.ok is True
        assert result.handle == "alice"
        reservation = await store.get("usernames", "alice")
        assert reservation["uid"] == UID
        assert "createdAt" in reservation
        assert (await store.get("users", UID))["username"] == "alice"

    async def test_handle_is_trimmed(self, store, registry):
        result = await registry.claim_username(UID, "  alice  ")
        assert result.handle == "alice"
        assert await store.get("usernames", "alice") is not None

    async def test_empty_handle_rejected_without_store_access(self, store, registry):
        store.run_transaction = AsyncMock()
        for handle in ("", "   ", None):
            result = await registry.claim_username(UID, handle)
            assert result.ok is False
            assert result.error == UsernameError.EMPTY_HANDLE
        store.run_transaction.assert_not_called()

    async def test_handle_held_by_other_user(self, store, registry):
        await registry.claim_username(OTHER_UID, "alice")

        result = await registry.claim_username(UID, "alice")

        assert result.ok is False
        assert result.error == UsernameError.HANDLE_TAKEN
        assert (await store.get("usernames", "alice"))["uid"] == OTHER_UID
        assert (await store.get("users", UID) or {}).get("username") is None

    async def test_reclaiming_own_handle_is_noop(self, store, registry):
        await registry.claim_username(UID, "alice")
        before = await store.get("usernames", "alice")

        result = await registry.claim_username(UID, "alice")

        assert result.ok is True
        assert await store.get("usernames", "alice") == before

    async def test_rename_releases_previous_handle(self, store, registry):
        await registry.claim_username(UID, "alice")

        result = await registry.claim_username(UID, "alice2")

        assert result.ok is True
        assert await store.get("usernames", "alice") is None
        assert (await store.get("usernames", "alice2"))["uid"] == UID
        assert (await store.get("users", UID))["username"] == "alice2"

    async def test_rename_keeps_previous_handle_owned_by_someone_else(self, store, registry):
        # Drifted data: profile names a handle whose reservation belongs to another uid
        await store.set("users", UID, {"username": "shared"})
        await store.set("usernames", "shared", {"uid": OTHER_UID})

        result = await registry.claim_username(UID, "alice")

        assert result.ok is True
        assert (await store.get("usernames", "shared"))["uid"] == OTHER_UID

    async def test_concurrent_claims_have_one_winner(self, store, registry):
        first, second = await asyncio.gather(
            registry.claim_username(UID, "alice"),
            registry.claim_username(OTHER_UID, "alice"),
        )

        results = [first, second]
        winners = [r for r in results if r.ok]
        losers = [r for r in results if not r.ok]
        assert len(winners) == 1
        assert len(losers) == 1
        assert losers[0].error == UsernameError.HANDLE_TAKEN

        owner = (await store.get("usernames", "alice"))["uid"]
        loser_uid = OTHER_UID if owner == UID else UID
        assert (await store.get("users", owner))["username"] == "alice"
        assert (await store.get("users", loser_uid) or {}).get("username") is None

    async def test_store_failure_maps_to_registry_error(self, store, registry):
        store.run_transaction = AsyncMock(side_effect=TransportError("deadline exceeded"))

        result = await registry.claim_username(UID, "alice", UserProfile())

        assert result.ok is False
        assert result.error == UsernameError.REGISTRY_ERROR


class TestCohortSuffix:
    async def test_district_organization_gets_suffix(self, store, registry):
        profile = UserProfile(organization="Westside District")

        result = await registry.claim_username(UID, "alice", profile)

        assert result.handle == "alice.wsdr4"
        assert await store.get("usernames", "alice.wsdr4") is not None
        assert await store.get("usernames", "alice") is None

    async def test_district_role_gets_suffix(self, registry):
        profile = UserProfile(roles=["member", "District-Staff"])
        result = await registry.claim_username(UID, "alice", profile)
        assert result.handle == "alice.wsdr4"

    async def test_suffix_read_from_stored_profile_when_not_given(self, store, registry):
        await store.set("users", UID, {"org": "North District"})
        result = await registry.claim_username(UID, "alice")
        assert result.handle == "alice.wsdr4"

    async def test_regular_account_unchanged(self, registry):
        result = await registry.claim_username(UID, "alice", UserProfile(organization="Acme"))
        assert result.handle == "alice"

    async def test_suffixed_handles_do_not_collide_with_plain(self, registry):
        plain = await registry.claim_username(OTHER_UID, "alice")
        suffixed = await registry.claim_username(UID, "alice", UserProfile(organization="District 9"))
        assert plain.ok and suffixed.ok
        assert suffixed.handle == "alice.wsdr4"


class TestResolve:
    async def test_reverse_lookup(self, registry):
        await registry.claim_username(UID, "alice")
        assert await registry.resolve_username(UID) == "alice"

    async def test_reverse_lookup_missing(self, registry):
        assert await registry.resolve_username(UID) is None
