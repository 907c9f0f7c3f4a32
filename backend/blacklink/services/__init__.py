"""Account services: profiles, usernames, entitlements, shortcuts and the
per-session bootstrap that ties them together."""

from .entitlement_service import EntitlementService, entitlement_service
from .profile_service import ProfileService, profile_service
from .session_orchestrator import SessionOrchestrator
from .shortcut_service import ShortcutService, shortcut_service
from .ttl_cache import TTLCache
from .username_registry import UsernameRegistry, username_registry

__all__ = [
    "EntitlementService",
    "ProfileService",
    "SessionOrchestrator",
    "ShortcutService",
    "TTLCache",
    "UsernameRegistry",
    "entitlement_service",
    "profile_service",
    "shortcut_service",
    "username_registry",
]
