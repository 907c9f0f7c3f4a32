"""Session snapshot: the per-session aggregate handed to the presentation layer.

Each resource is wrapped in a FieldState so a degraded value (a default
substituted after a failed read) stays distinguishable from real data.
"""

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from blacklink.models.entitlements import TokenLedger
from blacklink.models.profile import Identity, Stats, UserProfile
from blacklink.store.base import FetchErrorCause


class FieldState(BaseModel):
    """``ok`` carries real data; ``degraded`` carries a default plus the cause."""
    value: Any = None
    cause: Optional[FetchErrorCause] = None
    detail: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return self.cause is not None

    @classmethod
    def ok(cls, value: Any) -> "FieldState":
        return cls(value=value)

    @classmethod
    def degrade(cls, default: Any, cause: FetchErrorCause, detail: Optional[str] = None) -> "FieldState":
        return cls(value=default, cause=cause, detail=detail)


class SessionSnapshot(BaseModel):
    identity: Optional[Identity] = None
    profile: FieldState = Field(default_factory=lambda: FieldState.ok(UserProfile.guest()))
    organizations: FieldState = Field(default_factory=lambda: FieldState.ok([]))
    stats: FieldState = Field(default_factory=lambda: FieldState.ok(Stats()))
    shortcuts: FieldState = Field(default_factory=lambda: FieldState.ok([]))
    tokens: FieldState = Field(default_factory=lambda: FieldState.ok(TokenLedger.zero()))
    username: FieldState = Field(default_factory=lambda: FieldState.ok(None))
    loading: bool = False

    @classmethod
    def guest(cls) -> "SessionSnapshot":
        return cls()

    @property
    def is_guest(self) -> bool:
        return self.identity is None

    @property
    def stats_permission_denied(self) -> bool:
        """A denied stats read hides the stats panel instead of showing zeros."""
        return self.stats.cause == FetchErrorCause.PERMISSION_DENIED

    def errors(self) -> Dict[str, FetchErrorCause]:
        """Per-resource error tags, e.g. ``{"stats": PERMISSION_DENIED}``."""
        fields = ("profile", "organizations", "stats", "shortcuts", "tokens", "username")
        return {name: getattr(self, name).cause for name in fields if getattr(self, name).degraded}

    def to_response(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json")
        data["errors"] = {k: v.value for k, v in self.errors().items()}
        data["stats_permission_denied"] = self.stats_permission_denied
        return data


class UsernameError(str, Enum):
    EMPTY_HANDLE = "EMPTY_HANDLE"
    HANDLE_TAKEN = "HANDLE_TAKEN"
    REGISTRY_ERROR = "REGISTRY_ERROR"


class UsernameClaimResult(BaseModel):
    ok: bool
    handle: Optional[str] = None
    error: Optional[UsernameError] = None
    message: Optional[str] = None

    @classmethod
    def success(cls, handle: str) -> "UsernameClaimResult":
        return cls(ok=True, handle=handle)

    @classmethod
    def failure(cls, error: UsernameError, message: str, handle: Optional[str] = None) -> "UsernameClaimResult":
        return cls(ok=False, error=error, message=message, handle=handle)


class NoIdentityError(RuntimeError):
    """A mutation was called before an identity was resolved (caller bug)."""

