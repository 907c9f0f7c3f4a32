"""Accounts core data models"""

from .profile import (
    Identity,
    Organization,
    Stats,
    Tier,
    UserProfile,
)
from .entitlements import (
    DEFAULT_FEATURES,
    TIER_TOKEN_ALLOCATIONS,
    EntitlementRecord,
    EntitlementSnapshot,
    TokenDebitResult,
    TokenError,
    TokenLedger,
)
from .shortcuts import (
    QuickLaunchShortcut,
    ShortcutCreate,
    ShortcutUpdate,
)
from .session import (
    FieldState,
    NoIdentityError,
    SessionSnapshot,
    UsernameClaimResult,
    UsernameError,
)

__all__ = [
    # Identity / profile
    "Identity",
    "Organization",
    "Stats",
    "Tier",
    "UserProfile",
    # Entitlements
    "DEFAULT_FEATURES",
    "TIER_TOKEN_ALLOCATIONS",
    "EntitlementRecord",
    "EntitlementSnapshot",
    "TokenDebitResult",
    "TokenError",
    "TokenLedger",
    # Shortcuts
    "QuickLaunchShortcut",
    "ShortcutCreate",
    "ShortcutUpdate",
    # Session
    "FieldState",
    "NoIdentityError",
    "SessionSnapshot",
    "UsernameClaimResult",
    "UsernameError",
]
