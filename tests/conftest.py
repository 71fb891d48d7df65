"""Shared fixtures: an in-memory host and session builders."""

from collections import Counter
from typing import Any

import pytest

from tabvault.errors import HostCallError, PersistenceError
from tabvault.host import Host, TabCreateInfo, WindowCreateInfo
from tabvault.models import Tab, TabId, Window, WindowId, WindowState
from tabvault.pending import PendingTabs
from tabvault.restore import RestoreContext
from tabvault.session import Session
from tabvault.storage import MemoryStorage


class FakeHost(Host):
    """Windows and tabs kept in dicts. Ids count up from 100."""

    def __init__(self, supports_discarded: bool = False):
        self._supports_discarded = supports_discarded
        self.windows: dict[WindowId, Window] = {}
        self.tabs: dict[TabId, Tab] = {}
        self.current_window_id: WindowId | None = None
        self._next_id = 100

        self.calls: Counter = Counter()
        self.created_tabs: list[TabCreateInfo] = []
        self.created_windows: list[WindowCreateInfo] = []
        self.messages: list[tuple[TabId, dict[str, Any]]] = []
        self.discarded: set[TabId] = set()

        # Failure injection
        self.fail_urls: set[str] = set()
        self.fail_window_create = False
        self.message_failures = 0

    @property
    def supports_discarded(self) -> bool:
        return self._supports_discarded

    def _new_id(self) -> int:
        self._next_id += 1
        return self._next_id

    # ── Seeding ─────────────────────────────────────────────

    def open_window(self, urls: list[str], state: WindowState = WindowState.NORMAL,
                    incognito: bool = False) -> Window:
        win = Window(id=WindowId(self._new_id()), state=state, left=10, top=20, width=800,
                     height=600, focused=True, incognito=incognito)
        for other in self.windows.values():
            other.focused = False
        self.windows[win.id] = win
        self.current_window_id = win.id
        for i, url in enumerate(urls):
            self._add_tab(win.id, url, title=f"Title {url}", active=(i == 0), incognito=incognito)
        return win

    def _add_tab(self, window_id: WindowId, url: str, title: str = "", active: bool = False,
                 pinned: bool = False, incognito: bool = False, cookie_store_id: str | None = None) -> Tab:
        index = len(self.window_tabs(window_id))
        tab = Tab(id=TabId(self._new_id()), window_id=window_id, url=url, title=title, index=index,
                  active=active, pinned=pinned, incognito=incognito, cookie_store_id=cookie_store_id)
        self.tabs[tab.id] = tab
        return tab

    def window_tabs(self, window_id: WindowId) -> list[Tab]:
        return [t for t in self.tabs.values() if t.window_id == window_id]

    def urls(self, window_id: WindowId) -> list[str]:
        return [t.url for t in self.window_tabs(window_id)]

    def _view(self, win: Window, populate: bool) -> Window:
        tabs = [t.copy() for t in self.window_tabs(win.id)] if populate else []
        return win.copy(tabs=tabs)

    # ── Windows ─────────────────────────────────────────────

    async def get_all_windows(self, populate: bool = False) -> list[Window]:
        self.calls["get_all_windows"] += 1
        return [self._view(w, populate) for w in self.windows.values()]

    async def get_current_window(self, populate: bool = False) -> Window:
        self.calls["get_current_window"] += 1
        if self.current_window_id is None:
            raise HostCallError("No current window")
        return self._view(self.windows[self.current_window_id], populate)

    async def get_window(self, window_id: WindowId) -> Window:
        self.calls["get_window"] += 1
        if window_id not in self.windows:
            raise HostCallError(f"No window {window_id}")
        return self._view(self.windows[window_id], False)

    async def create_window(self, info: WindowCreateInfo) -> Window:
        self.calls["create_window"] += 1
        self.created_windows.append(info)
        if self.fail_window_create:
            raise HostCallError("create_window failed")
        win = Window(id=WindowId(self._new_id()), state=info.state, type=info.type,
                     left=info.left, top=info.top, width=info.width, height=info.height)
        self.windows[win.id] = win
        self.current_window_id = win.id
        self._add_tab(win.id, info.url, active=True)
        return self._view(win, True)

    async def update_window(self, window_id: WindowId, focused: bool = True) -> Window:
        self.calls["update_window"] += 1
        if window_id not in self.windows:
            raise HostCallError(f"No window {window_id}")
        for win in self.windows.values():
            win.focused = win.id == window_id
        self.current_window_id = window_id
        return self._view(self.windows[window_id], False)

    async def remove_window(self, window_id: WindowId) -> None:
        self.calls["remove_window"] += 1
        if window_id not in self.windows:
            raise HostCallError(f"No window {window_id}")
        del self.windows[window_id]
        self.tabs = {tid: t for tid, t in self.tabs.items() if t.window_id != window_id}
        if self.current_window_id == window_id:
            self.current_window_id = next(iter(self.windows), None)

    # ── Tabs ────────────────────────────────────────────────

    async def query_tabs(self, current_window: bool = False) -> list[Tab]:
        self.calls["query_tabs"] += 1
        tabs = []
        for win in self.windows.values():
            if current_window and win.id != self.current_window_id:
                continue
            tabs.extend(t.copy() for t in self.window_tabs(win.id))
        return tabs

    async def create_tab(self, info: TabCreateInfo) -> Tab:
        self.calls["create_tab"] += 1
        self.created_tabs.append(info)
        if info.url in self.fail_urls:
            raise HostCallError(f"create_tab {info.url} failed")
        if info.window_id not in self.windows:
            raise HostCallError(f"No window {info.window_id}")
        tab = self._add_tab(info.window_id, info.url, title=info.title or "", active=info.active,
                            pinned=info.pinned, cookie_store_id=info.cookie_store_id)
        if info.discarded:
            self.discarded.add(tab.id)
        return tab.copy()

    async def update_tab(self, tab_id: TabId, opener_tab_id: TabId | None) -> Tab:
        self.calls["update_tab"] += 1
        if tab_id not in self.tabs:
            raise HostCallError(f"No tab {tab_id}")
        self.tabs[tab_id].opener_tab_id = opener_tab_id
        return self.tabs[tab_id].copy()

    async def remove_tabs(self, tab_ids: list[TabId]) -> None:
        self.calls["remove_tabs"] += 1
        for tab_id in tab_ids:
            self.tabs.pop(tab_id, None)

    async def send_tab_message(self, tab_id: TabId, message: dict[str, Any]) -> Any:
        self.calls["send_tab_message"] += 1
        if self.message_failures > 0:
            self.message_failures -= 1
            raise HostCallError("Could not establish connection. Receiving end does not exist.")
        self.messages.append((tab_id, message))
        return {"status": "ok"}


class FlakyStorage(MemoryStorage):
    """MemoryStorage whose writes can be made to fail."""

    def __init__(self):
        super().__init__()
        self.fail_writes = False
        self.write_count = 0

    async def _write(self, items: dict[str, str]) -> None:
        if self.fail_writes:
            raise PersistenceError("disk full")
        self.write_count += 1
        await super()._write(items)


def make_session(*windows: list[str], name: str = "", active: int = 0) -> Session:
    """Build a captured session; each argument is one window's urls."""
    sess = Session(session_name=name)
    tab_id = 1
    for wi, urls in enumerate(windows, start=1):
        win = Window(id=WindowId(wi), focused=(wi == 1), left=wi * 10, top=wi * 10, width=800, height=600)
        sess.windows.append(win)
        tabs = []
        for i, url in enumerate(urls):
            tabs.append(Tab(id=TabId(tab_id), window_id=win.id, url=url, title=f"Title {url}",
                            index=i, active=(i == active)))
            tab_id += 1
        sess.tabs_of_window[win.id] = tabs
    return sess.update_tab_data()


# ── Fixtures ──────────────────────────────────────────────────

@pytest.fixture
def host():
    """Host with one window of three tabs."""
    h = FakeHost()
    h.open_window(["https://a.example/", "https://b.example/", "https://c.example/"])
    return h


@pytest.fixture
def storage():
    return FlakyStorage()


@pytest.fixture
def ctx(host):
    """Restore context that loads tabs right away."""
    return RestoreContext(host=host, pending=PendingTabs(), lazy_loading=False)
