"""Window and tab records, and the id types that keep them apart.

Two kinds of identity flow through the system:

- Ephemeral ids (``TabId``, ``WindowId``) are assigned by the host to live
  windows and tabs. They are only valid for the current host process and
  are reused freely. Inside a captured session they survive only as
  intra-session references (window -> tabs grouping, opener links).
- Durable ids (``SessionId``) are assigned by tabvault to sessions and are
  the only identifiers that may key persisted data.

The same ``Tab``/``Window`` records describe both live host objects and
captured ones. ``Window.tabs`` is only filled in by the host when asked to
populate; captured sessions keep their tabs in ``Session.tabs_of_window``.
"""

import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, NewType

TabId = NewType("TabId", int)
WindowId = NewType("WindowId", int)
SessionId = NewType("SessionId", str)


def new_session_id() -> SessionId:
    """Generate a fresh durable session id."""
    return SessionId(str(uuid.uuid4()))


class WindowState(str, Enum):
    NORMAL = "normal"
    MINIMIZED = "minimized"
    MAXIMIZED = "maximized"
    FULLSCREEN = "fullscreen"
    DOCKED = "docked"


class SessionType(str, Enum):
    USER = "user"
    AUTO = "auto"           # scheduled rotation backup
    ONCHANGE = "onchange"   # on-change backup


class SavedAs(str, Enum):
    AS_ALL = "as_all"   # every window
    AS_WIN = "as_win"   # the current window only


@dataclass
class Tab:
    """A captured (or live) tab."""
    id: TabId
    window_id: WindowId
    url: str = ""
    title: str = ""
    fav_icon_url: str = ""
    index: int = 0
    active: bool = False
    pinned: bool = False
    incognito: bool = False
    cookie_store_id: str | None = None  # container tag
    opener_tab_id: TabId | None = None
    last_accessed: float = 0.0
    width: int | None = None
    height: int | None = None

    def copy(self, **changes: Any) -> "Tab":
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "window_id": self.window_id,
            "index": self.index,
            "url": self.url,
            "title": self.title,
            "fav_icon_url": self.fav_icon_url,
            "active": self.active,
            "pinned": self.pinned,
            "incognito": self.incognito,
            "cookie_store_id": self.cookie_store_id,
            "opener_tab_id": self.opener_tab_id,
            "last_accessed": self.last_accessed,
            "width": self.width,
            "height": self.height,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Tab":
        return cls(
            id=TabId(d["id"]),
            window_id=WindowId(d.get("window_id", 0)),
            index=d.get("index", 0),
            url=d.get("url") or "",
            title=d.get("title") or "",
            fav_icon_url=d.get("fav_icon_url") or "",
            active=d.get("active", False),
            pinned=d.get("pinned", False),
            incognito=d.get("incognito", False),
            cookie_store_id=d.get("cookie_store_id"),
            opener_tab_id=d.get("opener_tab_id"),
            last_accessed=d.get("last_accessed", 0.0),
            width=d.get("width"),
            height=d.get("height"),
        )


@dataclass
class Window:
    """A captured (or live) window."""
    id: WindowId
    state: WindowState = WindowState.NORMAL
    type: str = "normal"
    left: int | None = None
    top: int | None = None
    width: int | None = None
    height: int | None = None
    focused: bool = False
    title: str = ""
    incognito: bool = False

    # Only meaningful on captured windows
    explicit_restore: bool = False  # skipped by bulk restore
    name: str = ""                  # user-assigned display name

    # Only populated on live windows returned by the host
    tabs: list[Tab] = field(default_factory=list)

    def copy(self, **changes: Any) -> "Window":
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "state": self.state.value,
            "type": self.type,
            "left": self.left,
            "top": self.top,
            "width": self.width,
            "height": self.height,
            "focused": self.focused,
            "title": self.title,
            "incognito": self.incognito,
            "explicit_restore": self.explicit_restore,
            "name": self.name,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Window":
        return cls(
            id=WindowId(d["id"]),
            state=WindowState(d.get("state", "normal")),
            type=d.get("type", "normal"),
            left=d.get("left"),
            top=d.get("top"),
            width=d.get("width"),
            height=d.get("height"),
            focused=d.get("focused", False),
            title=d.get("title") or "",
            incognito=d.get("incognito", False),
            explicit_restore=d.get("explicit_restore", False),
            name=d.get("name") or "",
        )
