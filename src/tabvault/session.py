"""Captured session: one durable snapshot of one or more windows.

A ``Session`` owns its windows (in display/restore order) and, per window,
an ordered tab list. Two derived structures are kept in step with them and
rebuilt after every structural edit:

- ``tab_map``: ephemeral tab id -> url, used to tell "nothing changed"
  before paying for a fresh capture.
- the content fingerprint (``compute_tab_url_hash``): md5 over all tab
  urls in window order, used to drop duplicate on-change backups.

Persisted format is versioned (``_type="Session"``, ``_version=2``).
Version 1 records load and gain the per-window ``explicit_restore`` and
``name`` fields; anything else is rejected.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Iterator

from tabvault.errors import InvalidStateError, NotFoundError, VersionMismatchError
from tabvault.host import BLANK_URL, Host
from tabvault.models import (
    SavedAs,
    SessionId,
    SessionType,
    Tab,
    TabId,
    Window,
    WindowId,
    new_session_id,
)

if TYPE_CHECKING:
    from tabvault.pending import PendingTabs
    from tabvault.restore import RestoreContext

logger = logging.getLogger(__name__)

SESSION_TYPE = "Session"
SESSION_VERSION = 2
GROUP_PREFIX = "group:"

# Window/tab attributes that may be edited through the command surface
WINDOW_PROPERTIES = {"explicit_restore", "name"}
TAB_PROPERTIES = {"url", "title"}


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Session:
    """One captured window set."""

    session_id: SessionId = field(default_factory=new_session_id)
    session_time: int = field(default_factory=now_ms)  # epoch ms
    session_type: SessionType = SessionType.USER
    saved_as: SavedAs = SavedAs.AS_ALL
    session_name: str = ""
    windows: list[Window] = field(default_factory=list)
    tabs_of_window: dict[WindowId, list[Tab]] = field(default_factory=dict)
    group: str = ""         # mainly for backup grouping
    group_title: str = ""   # tooltip over the group
    tab_map: dict[TabId, str] = field(default_factory=dict)

    def __post_init__(self):
        if not self.session_name:
            self.session_name = self.user_session_ts_name

    # ── Basic properties ────────────────────────────────────

    @property
    def is_user(self) -> bool:
        return self.session_type == SessionType.USER

    @property
    def is_auto(self) -> bool:
        return self.session_type == SessionType.AUTO

    @property
    def is_onchange(self) -> bool:
        return self.session_type == SessionType.ONCHANGE

    @property
    def is_as_win(self) -> bool:
        return self.saved_as == SavedAs.AS_WIN

    @property
    def window_count(self) -> int:
        return len(self.windows)

    @property
    def tab_count(self) -> int:
        return sum(len(tabs) for tabs in self.tabs_of_window.values())

    @property
    def all_tabs(self) -> list[Tab]:
        return [tab for tabs in self.tabs_of_window.values() for tab in tabs]

    @property
    def short_time(self) -> str:
        return datetime.fromtimestamp(self.session_time / 1000).strftime("%m-%d %H:%M")

    @property
    def full_time(self) -> str:
        return datetime.fromtimestamp(self.session_time / 1000).strftime("%Y-%m-%d %H:%M")

    @property
    def user_session_ts_name(self) -> str:
        return f"User Session {self.short_time}"

    @property
    def sub_title_info(self) -> str:
        return f"{self.window_count}W, {self.tab_count}T, {self.full_time}"

    @property
    def focused_window(self) -> Window | None:
        return next((w for w in self.windows if w.focused), None)

    def set_group(self, group: str) -> "Session":
        self.group = group
        self.group_title = f"{GROUP_PREFIX}{group}"
        return self

    def clone(self) -> "Session":
        """Deep copy, same session id."""
        return Session.from_dict(self.to_dict())

    def clone_with_new_id(self) -> "Session":
        sess = self.clone()
        sess.session_id = new_session_id()
        return sess

    # ── Lookup ──────────────────────────────────────────────

    def iter_tabs(self) -> Iterator[Tab]:
        """All tabs, window by window in window order."""
        for win in self.windows:
            yield from self.tabs_of_window.get(win.id, [])

    def windex(self, window_id: WindowId) -> int:
        return next((i for i, w in enumerate(self.windows) if w.id == window_id), -1)

    def find_window(self, window_id: WindowId) -> Window | None:
        index = self.windex(window_id)
        return self.windows[index] if index > -1 else None

    def window_tabs(self, window_id: WindowId) -> list[Tab] | None:
        return self.tabs_of_window.get(window_id)

    def find_tab(self, window_id: WindowId, tab_id: TabId) -> Tab | None:
        return next((t for t in self.tabs_of_window.get(window_id, []) if t.id == tab_id), None)

    def url_of_tab(self, tab_id: TabId) -> str:
        return self.tab_map.get(tab_id, "")

    def window_name(self, windex: int) -> str:
        win = self.windows[windex]
        return win.name or win.title or f"Window #{windex + 1}"

    def compute_tab_url_hash(self) -> str:
        """Content fingerprint over every tab url in window order."""
        md5 = hashlib.md5()
        for tab in self.iter_tabs():
            md5.update(tab.url.encode("utf-8"))
        return md5.hexdigest()

    def update_tab_data(self) -> "Session":
        """Rebuild the tab url index after a structural change."""
        self.tab_map = {tab.id: tab.url for tab in self.iter_tabs()}
        return self

    # ── Editing ─────────────────────────────────────────────

    def delete_window(self, window_id: WindowId) -> bool:
        index = self.windex(window_id)
        if index == -1:
            return False
        del self.windows[index]
        self.tabs_of_window.pop(window_id, None)
        self.update_tab_data()
        return True

    def update_window(self, window_id: WindowId, new_sess: "Session") -> bool:
        """Replace a window's content with the single window of ``new_sess``.

        The old window id is kept so references to it stay valid.
        """
        index = self.windex(window_id)
        if index == -1 or not new_sess.windows:
            return False
        new_win = new_sess.windows[0]
        new_tabs = new_sess.tabs_of_window.get(new_win.id, [])
        self.windows[index] = new_win.copy(
            id=window_id,
            explicit_restore=self.windows[index].explicit_restore,
            name=self.windows[index].name,
        )
        self.tabs_of_window[window_id] = [t.copy(window_id=window_id) for t in new_tabs]
        self.update_tab_data()
        return True

    def set_window_property(self, window_id: WindowId, name: str, value: Any) -> bool:
        if name not in WINDOW_PROPERTIES:
            raise InvalidStateError(f"Window property {name!r} can't be set")
        win = self.find_window(window_id)
        if win is None:
            return False
        setattr(win, name, value)
        self.update_tab_data()
        return True

    def set_window_order_pos(self, window_id: WindowId, new_pos: int) -> bool:
        if new_pos < 0 or new_pos >= len(self.windows):
            raise InvalidStateError(
                f"The new window position {new_pos} is out of range [0, {len(self.windows)})")
        index = self.windex(window_id)
        if index == -1:
            return False
        self.windows.insert(new_pos, self.windows.pop(index))
        self.update_tab_data()
        return True

    def update_tabs(
        self,
        window_id: WindowId,
        changed_tabs: dict[TabId, dict[str, str]],
        deleted: set[TabId],
        ordered_ids: list[TabId],
    ) -> bool:
        """Apply an edit batch: url/title changes, deletions, then the new order."""
        tabs = self.tabs_of_window.get(window_id)
        if tabs is None:
            return False
        for tab in tabs:
            change = changed_tabs.get(tab.id)
            if change:
                tab.url = change.get("url", tab.url)
                tab.title = change.get("title", tab.title)
        tabs = [tab for tab in tabs if tab.id not in deleted]
        by_id = {tab.id: tab for tab in tabs}
        self.tabs_of_window[window_id] = [by_id[tid] for tid in ordered_ids if tid in by_id]
        self.update_tab_data()
        return True

    def delete_tab(self, window_id: WindowId, tab_id: TabId) -> bool:
        tabs = self.tabs_of_window.get(window_id)
        if tabs is None:
            return False
        index = next((i for i, t in enumerate(tabs) if t.id == tab_id), -1)
        if index == -1:
            return False
        del tabs[index]
        self.update_tab_data()
        return True

    def set_tab_property(self, window_id: WindowId, tab_id: TabId, name: str, value: Any) -> bool:
        if name not in TAB_PROPERTIES:
            raise InvalidStateError(f"Tab property {name!r} can't be set")
        tab = self.find_tab(window_id, tab_id)
        if tab is None:
            return False
        setattr(tab, name, value)
        self.update_tab_data()
        return True

    def reorder_tabs(self, window_id: WindowId, tab_ids: list[TabId]) -> bool:
        tabs = self.tabs_of_window.get(window_id)
        if tabs is None:
            return False
        by_id = {tab.id: tab for tab in tabs}
        self.tabs_of_window[window_id] = [by_id[tid] for tid in tab_ids if tid in by_id]
        self.update_tab_data()
        return True

    # ── Restoration ─────────────────────────────────────────

    async def restore_session(
        self,
        ctx: "RestoreContext",
        is_replace: bool,
        search_terms: list[str],
        search_by_tab: bool,
    ) -> None:
        """Restore every window not flagged for explicit restore."""
        from tabvault.restore import RestoreTask

        logger.info(f"restore_session {self.session_id} replace={is_replace} "
                    f"terms={search_terms} by_tab={search_by_tab}")
        targets = [w for w in self.windows if not w.explicit_restore]
        await RestoreTask(self, ctx, search_terms, search_by_tab).restore_windows(targets, is_replace)

    async def restore_window(
        self,
        ctx: "RestoreContext",
        window_id: WindowId,
        search_terms: list[str],
        search_by_tab: bool,
    ) -> None:
        """Restore one window as a new host window."""
        from tabvault.restore import RestoreTask

        targets = [w for w in self.windows if w.id == window_id]
        await RestoreTask(self, ctx, search_terms, search_by_tab).restore_windows(targets, False)

    async def restore_window_to_current(
        self,
        ctx: "RestoreContext",
        window: Window,
        is_replace: bool,
        search_terms: list[str],
        search_by_tab: bool,
    ) -> None:
        """Restore one window's tabs into the host's current window."""
        from tabvault.restore import RestoreTask

        await RestoreTask(self, ctx, search_terms, search_by_tab).restore_into_current(window, is_replace)

    async def restore_tab(self, ctx: "RestoreContext", window_id: WindowId, tab_id: TabId) -> None:
        from tabvault.restore import RestoreTask

        if self.window_tabs(window_id) is None:
            raise NotFoundError(f"Tabs are not found for the window {window_id} in the session {self.session_name}")
        tab = self.find_tab(window_id, tab_id)
        if tab is None:
            raise NotFoundError(f"Tab {tab_id} is not found for the window {window_id} in the session {self.session_name}")
        await RestoreTask(self, ctx, [], False).restore_single_tab(tab.copy(active=True))

    # ── Capture ─────────────────────────────────────────────

    @classmethod
    async def capture(
        cls,
        host: Host,
        pending: "PendingTabs | None" = None,
        current_window: bool = False,
    ) -> "Session":
        """Snapshot the live host state into a new session.

        Incognito tabs are skipped. Tabs still waiting on a pending
        restoration report the url they are about to load, not about:blank.
        """
        tabs = [t for t in await host.query_tabs(current_window=current_window) if not t.incognito]

        sess = cls()
        for tab in tabs:
            tab = tab.copy()
            pending_tab = pending.get(tab.id) if pending else None
            if pending_tab:
                if not tab.url or tab.url == BLANK_URL:
                    tab.url = pending_tab.url
                tab.title = tab.title or pending_tab.title
                tab.fav_icon_url = tab.fav_icon_url or pending_tab.fav_icon_url
            sess.tabs_of_window.setdefault(tab.window_id, []).append(tab)

        windows = await asyncio.gather(*(host.get_window(wid) for wid in sess.tabs_of_window))
        sess.windows = [w.copy(tabs=[]) for w in windows]
        return sess.update_tab_data()

    # ── Search filtering ────────────────────────────────────

    @staticmethod
    def get_group_tokens(search_terms: list[str]) -> list[str]:
        return [t[len(GROUP_PREFIX):].lower() for t in search_terms if t.startswith(GROUP_PREFIX)]

    @staticmethod
    def get_filter_tokens(search_terms: list[str]) -> list[str]:
        return [t.lower() for t in search_terms if not t.startswith(GROUP_PREFIX)]

    @staticmethod
    def _has_all(text: str, tokens: list[str]) -> bool:
        text = (text or "").lower()
        return all(not token or token in text for token in tokens)

    @staticmethod
    def filter_by_groups(sessions: list["Session"], search_terms: list[str]) -> list["Session"]:
        tokens = Session.get_group_tokens(search_terms)
        if not tokens:
            return list(sessions)
        return [s for s in sessions if any(not t or t in s.group.lower() for t in tokens)]

    @staticmethod
    def filter_by_tabs(sessions: list["Session"], search_terms: list[str]) -> list["Session"]:
        tokens = Session.get_filter_tokens(search_terms)
        return [s for s in sessions if any(Session._has_all(t.title, tokens) for t in s.all_tabs)]

    @staticmethod
    def filter_by_names(sessions: list["Session"], search_terms: list[str]) -> list["Session"]:
        tokens = Session.get_filter_tokens(search_terms)
        return [
            s for s in sessions
            if Session._has_all(s.session_name, tokens) or Session._has_all(s.sub_title_info, tokens)
        ]

    @staticmethod
    def filter(sessions: list["Session"], search_terms: list[str], search_by_tab: bool) -> list["Session"]:
        sessions = Session.filter_by_groups(sessions, search_terms)
        if search_by_tab:
            return Session.filter_by_tabs(sessions, search_terms)
        return Session.filter_by_names(sessions, search_terms)

    @staticmethod
    def filter_tabs(tabs: list[Tab], search_terms: list[str], search_by_tab: bool) -> list[Tab]:
        if not search_by_tab:
            return list(tabs)
        tokens = Session.get_filter_tokens(search_terms)
        return [t for t in tabs if Session._has_all(t.title, tokens)]

    # ── Serialization ───────────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        return {
            "_type": SESSION_TYPE,
            "_version": SESSION_VERSION,
            "session_id": self.session_id,
            "session_time": self.session_time,
            "session_type": self.session_type.value,
            "saved_as": self.saved_as.value,
            "session_name": self.session_name,
            "windows": [w.to_dict() for w in self.windows],
            # JSON object keys are strings; window ids are restored on load
            "tabs_of_window": {
                str(wid): [t.to_dict() for t in tabs] for wid, tabs in self.tabs_of_window.items()
            },
            "group": self.group,
            "group_title": self.group_title,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Session":
        version = d.get("_version")
        if version not in (1, 2):
            raise VersionMismatchError(SESSION_TYPE, version)

        windows = []
        for wd in d.get("windows") or []:
            if version == 1:
                wd = {**wd, "explicit_restore": False, "name": ""}
            windows.append(Window.from_dict(wd))

        session_time = d.get("session_time") or 0
        sess = cls(
            session_id=SessionId(d.get("session_id") or new_session_id()),
            session_time=session_time if session_time > 0 else now_ms(),
            session_type=SessionType(d.get("session_type", "user")),
            saved_as=SavedAs(d.get("saved_as", "as_all")),
            session_name=d.get("session_name", ""),
            windows=windows,
            tabs_of_window={
                WindowId(int(wid)): [Tab.from_dict(t) for t in tabs]
                for wid, tabs in (d.get("tabs_of_window") or {}).items()
            },
            group=d.get("group", ""),
            group_title=d.get("group_title", ""),
        )
        return sess.update_tab_data()
