"""Subscription entitlement and metered AI credit (Aero token) models.

Stored documents:
- ``subscriptions/{uid}``: tier, status, price, features
- ``aero_tokens/{uid}``: monthlyAllocation, remaining, used, lastReset, allocatedAt
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from blacklink.models.profile import Tier


# Baseline capabilities granted to every account
DEFAULT_FEATURES = ["Basic Blacklink Apps", "Standard Support"]

# Monthly credit allocation by tier; FREE has no ledger
TIER_TOKEN_ALLOCATIONS = {
    Tier.ULTRA: 10,
    Tier.ULTRA_PLUS: 25,
}


class EntitlementRecord(BaseModel):
    tier: Tier = Tier.FREE
    status: str = "active"
    price: float = 0
    features: List[str] = Field(default_factory=lambda: list(DEFAULT_FEATURES))

    model_config = {"extra": "ignore"}

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "EntitlementRecord":
        features = doc.get("features")
        return cls(
            tier=Tier.parse(doc.get("tier")),
            status=doc.get("status") or "active",
            price=doc.get("price") or 0,
            features=[str(f) for f in features] if isinstance(features, list) else [],
        )


class TokenLedger(BaseModel):
    """Metered credit balance. remaining + used == monthly_allocation is the
    intended steady state, not an enforced one."""
    monthly_allocation: int = 0
    remaining: int = 0
    used: int = 0
    last_reset: Optional[datetime] = None
    allocated_at: Optional[datetime] = None

    @classmethod
    def zero(cls) -> "TokenLedger":
        return cls()

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "TokenLedger":
        return cls(
            monthly_allocation=int(doc.get("monthlyAllocation") or 0),
            remaining=int(doc.get("remaining") or 0),
            used=int(doc.get("used") or 0),
            last_reset=_as_datetime(doc.get("lastReset")),
            allocated_at=_as_datetime(doc.get("allocatedAt")),
        )


def _as_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None
    return None


class EntitlementSnapshot(BaseModel):
    """Combined subscription + ledger view returned by get_entitlement.

    ``is_default`` marks the hard-coded FREE answer returned when the store
    could not be read.
    """
    uid: Optional[str] = None
    tier: Tier = Tier.FREE
    status: str = "active"
    price: float = 0
    features: List[str] = Field(default_factory=lambda: list(DEFAULT_FEATURES))
    tokens: TokenLedger = Field(default_factory=TokenLedger.zero)
    is_default: bool = False

    @classmethod
    def default(cls, uid: Optional[str] = None) -> "EntitlementSnapshot":
        return cls(uid=uid, is_default=True)


class TokenError(str, Enum):
    INVALID_AMOUNT = "INVALID_AMOUNT"
    NO_ALLOCATION = "NO_ALLOCATION"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"


class TokenDebitResult(BaseModel):
    ok: bool
    remaining: Optional[int] = None
    used: Optional[int] = None
    error: Optional[TokenError] = None
    shortfall: int = 0
    message: Optional[str] = None

    @classmethod
    def success(cls, remaining: int, used: int) -> "TokenDebitResult":
        return cls(ok=True, remaining=remaining, used=used)

    @classmethod
    def failure(cls, error: TokenError, message: str, shortfall: int = 0) -> "TokenDebitResult":
        return cls(ok=False, error=error, message=message, shortfall=shortfall)
