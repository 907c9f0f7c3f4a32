"""QuickLaunch shortcut models. Stored in ``quicklaunch/{id}`` with ``userId``."""

from typing import Any, Dict, Optional

from pydantic import BaseModel

DEFAULT_GROUP = "General"
DEFAULT_ICON = "⚡"


class QuickLaunchShortcut(BaseModel):
    id: str
    name: str = "App"
    url: str = "#"
    icon: str = DEFAULT_ICON
    favorite: bool = False
    group: str = DEFAULT_GROUP
    color: Optional[str] = None

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "QuickLaunchShortcut":
        icon = doc.get("icon")
        color = doc.get("color")
        return cls(
            id=str(doc["_id"]),
            name=doc.get("name") or "App",
            url=doc.get("url") or "#",
            icon=icon if isinstance(icon, str) and icon else DEFAULT_ICON,
            favorite=bool(doc.get("favorite")),
            group=doc.get("group") or DEFAULT_GROUP,
            color=color if isinstance(color, str) and color else None,
        )


class ShortcutCreate(BaseModel):
    name: str
    url: str
    icon: Optional[str] = None
    favorite: bool = False
    group: Optional[str] = None
    color: Optional[str] = None

    model_config = {"extra": "ignore"}


class ShortcutUpdate(BaseModel):
    name: Optional[str] = None
    url: Optional[str] = None
    icon: Optional[str] = None
    favorite: Optional[bool] = None
    group: Optional[str] = None
    color: Optional[str] = None

    model_config = {"extra": "ignore"}
