"""Identity, profile and the read-only dashboard records (organizations, stats)."""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class Tier(str, Enum):
    """Subscription tiers, lowest first. Changed only by the billing process."""
    FREE = "FREE"
    ULTRA = "ULTRA"
    ULTRA_PLUS = "ULTRA_PLUS"

    @property
    def rank(self) -> int:
        return list(Tier).index(self)

    def at_least(self, other: "Tier") -> bool:
        return self.rank >= other.rank

    @classmethod
    def parse(cls, value: Any) -> "Tier":
        """Unknown or missing tier strings resolve to FREE."""
        try:
            return cls(str(value).upper())
        except ValueError:
            return cls.FREE


class Identity(BaseModel):
    """Principal issued by the external identity provider."""
    uid: str
    display_name: Optional[str] = None
    email: Optional[str] = None
    photo_url: Optional[str] = None


GUEST_DISPLAY_NAME = "Guest"
GUEST_EMAIL = "guest@blacklink.app"
DEFAULT_ROLES = ["member"]
DEFAULT_DEVICES = 1


class UserProfile(BaseModel):
    """Owned record about a uid. Stored in ``users/{uid}``."""
    display_name: str = GUEST_DISPLAY_NAME
    email: str = GUEST_EMAIL
    tier: Tier = Tier.FREE
    username: Optional[str] = None
    organization: Optional[str] = None
    roles: List[str] = Field(default_factory=lambda: list(DEFAULT_ROLES))
    devices: int = DEFAULT_DEVICES
    photo_url: Optional[str] = None
    is_admin: bool = False

    model_config = {"extra": "ignore"}

    @classmethod
    def guest(cls) -> "UserProfile":
        return cls(roles=["viewer"])

    @classmethod
    def from_identity(cls, identity: Identity) -> "UserProfile":
        return cls(
            display_name=identity.display_name or GUEST_DISPLAY_NAME,
            email=identity.email or GUEST_EMAIL,
            photo_url=identity.photo_url,
        )

    @classmethod
    def from_document(cls, doc: Dict[str, Any], identity: Optional[Identity] = None) -> "UserProfile":
        """
        Normalize a stored profile. Missing fields fall back to the identity's
        claims, then to guest defaults. ``org`` is the legacy organization key.
        """
        organization = doc.get("organization")
        if not isinstance(organization, str):
            legacy = doc.get("org")
            organization = legacy if isinstance(legacy, str) else None

        roles = doc.get("roles")
        if not isinstance(roles, list) or not roles:
            roles = list(DEFAULT_ROLES)

        devices = doc.get("devices")
        if not isinstance(devices, int) or isinstance(devices, bool):
            devices = DEFAULT_DEVICES

        photo_url = doc.get("photoURL")
        if not isinstance(photo_url, str) or not photo_url:
            photo_url = identity.photo_url if identity else None

        username = doc.get("username")
        return cls(
            display_name=doc.get("displayName") or (identity.display_name if identity else None) or GUEST_DISPLAY_NAME,
            email=doc.get("email") or (identity.email if identity else None) or GUEST_EMAIL,
            tier=Tier.parse(doc.get("tier")),
            username=username if isinstance(username, str) and username else None,
            organization=organization,
            roles=[str(r) for r in roles],
            devices=devices,
            photo_url=photo_url,
            is_admin=bool(doc.get("isAdmin")),
        )

    def to_document(self) -> Dict[str, Any]:
        doc = {
            "displayName": self.display_name,
            "email": self.email,
            "tier": self.tier.value,
            "roles": list(self.roles),
            "devices": self.devices,
            "isAdmin": self.is_admin,
        }
        if self.username:
            doc["username"] = self.username
        if self.organization:
            doc["organization"] = self.organization
        if self.photo_url:
            doc["photoURL"] = self.photo_url
        return doc


class Organization(BaseModel):
    id: str
    name: str = "Workspace"
    tier: str = "FREE"
    members: int = 0

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Organization":
        members = doc.get("members")
        if isinstance(members, list):
            count = len(members)
        elif isinstance(members, int):
            count = members
        else:
            count = 0
        return cls(
            id=str(doc["_id"]),
            name=doc.get("name") or "Workspace",
            tier=doc.get("tier") or "FREE",
            members=count,
        )


class Stats(BaseModel):
    """Global dashboard counters from ``stats/global``."""
    active_users: int = 0
    orgs: int = 0
    api_health: str = "Unknown"

    @classmethod
    def from_document(cls, doc: Optional[Dict[str, Any]]) -> "Stats":
        if not doc:
            return cls()
        return cls(
            active_users=doc.get("activeUsers") or 0,
            orgs=doc.get("orgs") or 0,
            api_health=doc.get("apiHealth") or "Unknown",
        )
