"""Host adapter interface.

tabvault never talks to a browser (or any other windows-with-tabs host)
directly. Everything it needs from the host goes through ``Host``:
enumerate/create/update/remove windows and tabs, and deliver a message to
a tab's content probe.

Every method is a coroutine; the store suspends only on these calls and on
storage I/O. Implementations translate host errors into ``HostCallError``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from tabvault.models import Tab, TabId, Window, WindowId, WindowState

BLANK_URL = "about:blank"


@dataclass
class WindowCreateInfo:
    """Arguments for ``Host.create_window``.

    Geometry is only set for NORMAL windows; for other states the host
    decides the placement.
    """
    state: WindowState = WindowState.NORMAL
    type: str = "normal"
    url: str = BLANK_URL
    left: int | None = None
    top: int | None = None
    width: int | None = None
    height: int | None = None

    @classmethod
    def for_window(cls, win: Window) -> "WindowCreateInfo":
        info = cls(state=win.state, type=win.type)
        if win.state == WindowState.NORMAL:
            info.left = win.left
            info.top = win.top
            info.width = win.width
            info.height = win.height
        return info


@dataclass
class TabCreateInfo:
    """Arguments for ``Host.create_tab``."""
    window_id: WindowId
    url: str
    active: bool = False
    pinned: bool = False
    cookie_store_id: str | None = None
    discarded: bool = False
    title: str | None = None    # only honoured for discarded tabs


class Host(ABC):
    """Abstract host the store captures from and restores into."""

    @property
    def supports_discarded(self) -> bool:
        """Whether tabs can be created unloaded (deferred loading)."""
        return False

    # ── Windows ─────────────────────────────────────────────

    @abstractmethod
    async def get_all_windows(self, populate: bool = False) -> list[Window]:
        ...

    @abstractmethod
    async def get_current_window(self, populate: bool = False) -> Window:
        ...

    @abstractmethod
    async def get_window(self, window_id: WindowId) -> Window:
        ...

    @abstractmethod
    async def create_window(self, info: WindowCreateInfo) -> Window:
        """Create a window. The returned window carries its one placeholder tab."""
        ...

    @abstractmethod
    async def update_window(self, window_id: WindowId, focused: bool = True) -> Window:
        ...

    @abstractmethod
    async def remove_window(self, window_id: WindowId) -> None:
        ...

    # ── Tabs ────────────────────────────────────────────────

    @abstractmethod
    async def query_tabs(self, current_window: bool = False) -> list[Tab]:
        """List live tabs, optionally only those of the current window."""
        ...

    @abstractmethod
    async def create_tab(self, info: TabCreateInfo) -> Tab:
        ...

    @abstractmethod
    async def update_tab(self, tab_id: TabId, opener_tab_id: TabId | None) -> Tab:
        ...

    @abstractmethod
    async def remove_tabs(self, tab_ids: list[TabId]) -> None:
        ...

    @abstractmethod
    async def send_tab_message(self, tab_id: TabId, message: dict[str, Any]) -> Any:
        """Deliver a message to the tab's content probe.

        Raises HostCallError when nothing in the tab is listening yet.
        """
        ...
