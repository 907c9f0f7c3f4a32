"""
Pytest configuration and shared fixtures for backend tests.
"""
import os
import sys
from pathlib import Path

# Tests never talk to a real MongoDB.
os.environ.setdefault("RECORD_STORE_BACKEND", "memory")
os.environ.setdefault("JWT_SECRET", "test-secret")

BACKEND_DIR = Path(__file__).resolve().parent.parent
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import pytest

from blacklink.models.profile import Identity
from blacklink.services.entitlement_service import EntitlementService
from blacklink.services.profile_service import ProfileService
from blacklink.services.shortcut_service import ShortcutService
from blacklink.services.ttl_cache import TTLCache
from blacklink.services.username_registry import UsernameRegistry
from blacklink.store.memory import MemoryRecordStore

UID = "user-alice"
OTHER_UID = "user-bob"


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def store():
    return MemoryRecordStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def identity():
    return Identity(uid=UID, display_name="Alice", email="alice@example.com")


@pytest.fixture
def entitlements(store, clock):
    return EntitlementService(store, cache=TTLCache(300, clock=clock))


@pytest.fixture
def registry(store):
    return UsernameRegistry(store)


@pytest.fixture
def profiles(store):
    return ProfileService(store)


@pytest.fixture
def shortcuts(store):
    return ShortcutService(store)
