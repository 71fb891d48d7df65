"""Restoration engine: re-create windows and tabs from a captured session.

A ``RestoreTask`` runs one restoration request through ordered phases:

    COLLECTING_TARGETS -> MATERIALIZING_WINDOWS -> MATERIALIZING_TABS
        -> REWIRING_OPENERS -> CLEANUP -> DONE

Tabs of one window are created as a parallel batch and joined before that
window's cleanup. A failed host call for one tab is logged and treated as
"no tab produced"; it never aborts the restoration. There is no
cancellation of an in-flight restoration.

Captured ephemeral ids don't match the new ones, so opener links are
rewired through an ``OpenerMapping`` filled in while tabs materialize.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum

from tabvault.errors import HostCallError
from tabvault.host import BLANK_URL, Host, TabCreateInfo, WindowCreateInfo
from tabvault.models import Tab, TabId, Window, WindowId
from tabvault.pending import PendingTabs
from tabvault.session import Session

logger = logging.getLogger(__name__)


class RestorePhase(str, Enum):
    COLLECTING_TARGETS = "collecting_targets"
    MATERIALIZING_WINDOWS = "materializing_windows"
    MATERIALIZING_TABS = "materializing_tabs"
    REWIRING_OPENERS = "rewiring_openers"
    CLEANUP = "cleanup"
    DONE = "done"


class TabStrategy(str, Enum):
    EAGER = "eager"           # load the real url right away
    DISCARDED = "discarded"   # create unloaded, host loads on activation
    PENDING = "pending"       # blank tab + pending entry, probe loads it


@dataclass
class RestoreContext:
    """What a restoration needs from the running process."""
    host: Host
    pending: PendingTabs
    lazy_loading: bool = True

    def choose_strategy(self) -> TabStrategy:
        if not self.lazy_loading:
            return TabStrategy.EAGER
        if self.host.supports_discarded:
            return TabStrategy.DISCARDED
        return TabStrategy.PENDING


@dataclass
class OpenerMapping:
    """Two-way map between captured and newly created tab ids."""
    new_to_org_opener: dict[TabId, TabId | None] = field(default_factory=dict)
    org_to_new: dict[TabId, TabId] = field(default_factory=dict)

    def record(self, original: Tab, new_tab: Tab) -> None:
        self.new_to_org_opener[new_tab.id] = original.opener_tab_id
        self.org_to_new[original.id] = new_tab.id

    def new_opener_for(self, new_tab_id: TabId) -> TabId | None:
        org_opener = self.new_to_org_opener.get(new_tab_id)
        if org_opener is None:
            return None
        return self.org_to_new.get(org_opener)


@dataclass
class WindowRestore:
    """One target window paired with the host window receiving its tabs."""
    original: Window
    new_window: Window
    tabs_to_remove: list[TabId] = field(default_factory=list)


def map_url(url: str) -> str:
    if url == "about:newtab":
        return BLANK_URL
    return url


def ensure_one_active_tab(tabs: list[Tab]) -> list[Tab]:
    """Promote the first tab to active when filtering dropped the active one."""
    tabs = list(tabs)
    if tabs and not any(tab.active for tab in tabs):
        tabs[0] = tabs[0].copy(active=True)
    return tabs


class RestoreTask:
    """A single restoration request."""

    def __init__(
        self,
        session: Session,
        ctx: RestoreContext,
        search_terms: list[str] | None = None,
        search_by_tab: bool = False,
    ):
        self.session = session
        self.ctx = ctx
        self.search_terms = search_terms or []
        self.search_by_tab = search_by_tab
        self.mapping = OpenerMapping()
        self.phase = RestorePhase.COLLECTING_TARGETS

    @property
    def host(self) -> Host:
        return self.ctx.host

    # ── Entry points ────────────────────────────────────────

    async def restore_windows(self, targets: list[Window], is_replace: bool) -> list[Tab]:
        """Restore ``targets`` as new host windows.

        With ``is_replace`` every window open beforehand is removed, but only
        after all new content exists. When no new window ends up holding a
        tab the old windows stay open.
        """
        self.phase = RestorePhase.COLLECTING_TARGETS
        replaced_window_ids: list[WindowId] = []
        if is_replace:
            replaced_window_ids = [w.id for w in await self.host.get_all_windows()]
        window_ids_to_remove: list[WindowId] = []

        self.phase = RestorePhase.MATERIALIZING_WINDOWS
        restores = await self._create_windows(targets)
        await self._focus_first_window(restores)

        self.phase = RestorePhase.MATERIALIZING_TABS

        async def fill(restore: WindowRestore) -> list[Tab]:
            tabs = self._restoring_window_tabs(restore.original.id)
            if not tabs:
                # Nothing left after filtering; drop the window with its placeholder
                window_ids_to_remove.append(restore.new_window.id)
                return []
            new_tabs = await self._restore_window_tabs(restore, tabs)
            if not new_tabs:
                window_ids_to_remove.append(restore.new_window.id)
            return new_tabs

        tabs_of_new_windows = await asyncio.gather(*(fill(r) for r in restores))
        new_tabs = [tab for tabs in tabs_of_new_windows for tab in tabs]

        self.phase = RestorePhase.REWIRING_OPENERS
        await self._update_opener_tab_ids(new_tabs)

        self.phase = RestorePhase.CLEANUP
        if new_tabs:
            window_ids_to_remove.extend(replaced_window_ids)
        elif replaced_window_ids:
            logger.warning(f"no tab restored, keeping {len(replaced_window_ids)} open windows")
        await self._remove_windows(window_ids_to_remove)

        self.phase = RestorePhase.DONE
        return new_tabs

    async def restore_into_current(self, target: Window, is_replace: bool) -> list[Tab]:
        """Restore one window's tabs into the live foreground window."""
        self.phase = RestorePhase.COLLECTING_TARGETS
        current = await self.host.get_current_window(populate=True)
        restore = WindowRestore(
            original=target,
            new_window=current,
            tabs_to_remove=[t.id for t in current.tabs] if is_replace else [],
        )

        self.phase = RestorePhase.MATERIALIZING_TABS
        tabs = self._restoring_window_tabs(target.id)
        new_tabs = await self._restore_window_tabs(restore, tabs) if tabs else []

        self.phase = RestorePhase.REWIRING_OPENERS
        await self._update_opener_tab_ids(new_tabs)

        self.phase = RestorePhase.DONE
        logger.info(f"restore into current window {current.id} done, {len(new_tabs)} tabs")
        return new_tabs

    async def restore_single_tab(self, tab: Tab) -> Tab | None:
        """Restore one captured tab into the current host window."""
        self.phase = RestorePhase.MATERIALIZING_TABS
        current = await self.host.get_current_window()
        new_tab = await self._restore_tab_in_window(tab, current.id)

        self.phase = RestorePhase.REWIRING_OPENERS
        await self._update_opener_tab_ids([new_tab] if new_tab else [])

        self.phase = RestorePhase.DONE
        return new_tab

    # ── Phases ──────────────────────────────────────────────

    async def _create_windows(self, targets: list[Window]) -> list[WindowRestore]:
        async def create(win: Window) -> WindowRestore | None:
            try:
                new_window = await self.host.create_window(WindowCreateInfo.for_window(win))
            except HostCallError as e:
                logger.error(f"creating window for {win.id} failed: {e}")
                return None
            # The host always opens a window with one placeholder tab
            return WindowRestore(
                original=win,
                new_window=new_window,
                tabs_to_remove=[t.id for t in new_window.tabs[:1]],
            )

        results = await asyncio.gather(*(create(win) for win in targets))
        return [r for r in results if r is not None]

    async def _focus_first_window(self, restores: list[WindowRestore]) -> None:
        if len(restores) > 1:
            try:
                await self.host.update_window(restores[0].new_window.id, focused=True)
            except HostCallError as e:
                logger.warning(f"focusing window {restores[0].new_window.id} failed: {e}")

    def _restoring_window_tabs(self, window_id: WindowId) -> list[Tab]:
        tabs = self.session.window_tabs(window_id) or []
        return ensure_one_active_tab(Session.filter_tabs(tabs, self.search_terms, self.search_by_tab))

    async def _restore_window_tabs(self, restore: WindowRestore, tabs: list[Tab]) -> list[Tab]:
        results = await asyncio.gather(
            *(self._restore_tab_in_window(tab, restore.new_window.id) for tab in tabs))
        new_tabs = [tab for tab in results if tab is not None]

        # Placeholder/replaced tabs go only once something real is in the window
        if new_tabs and restore.tabs_to_remove:
            try:
                await self.host.remove_tabs(restore.tabs_to_remove)
            except HostCallError as e:
                logger.error(f"failed to remove tabs {restore.tabs_to_remove}: {e}")
        return new_tabs

    async def _restore_tab_in_window(self, original: Tab, window_id: WindowId) -> Tab | None:
        strategy = self.ctx.choose_strategy()
        try:
            if strategy == TabStrategy.EAGER:
                new_tab = await self._create_loaded(original, window_id)
            elif strategy == TabStrategy.DISCARDED:
                new_tab = await self._create_discarded(original, window_id)
            else:
                new_tab = await self._create_pending(original, window_id)
        except HostCallError as e:
            logger.error(f"restoring tab {original.id} ({original.url}) failed: {e}")
            return None
        self.mapping.record(original, new_tab)
        return new_tab

    async def _create_loaded(self, original: Tab, window_id: WindowId) -> Tab:
        return await self.host.create_tab(TabCreateInfo(
            window_id=window_id,
            url=original.url,
            active=original.active,
            pinned=original.pinned,
            cookie_store_id=original.cookie_store_id,
        ))

    async def _create_discarded(self, original: Tab, window_id: WindowId) -> Tab:
        # The active tab can't be created discarded, and only discarded tabs take a title
        discard = not original.active
        return await self.host.create_tab(TabCreateInfo(
            window_id=window_id,
            url=original.url,
            active=original.active,
            pinned=original.pinned,
            cookie_store_id=original.cookie_store_id,
            discarded=discard,
            title=original.title if discard else None,
        ))

    async def _create_pending(self, original: Tab, window_id: WindowId) -> Tab:
        new_tab = await self.host.create_tab(TabCreateInfo(
            window_id=window_id,
            url=BLANK_URL,
            active=original.active,
            pinned=original.pinned,
            cookie_store_id=original.cookie_store_id,
        ))
        # The new tab's probe may query before this lands; it retries
        self.ctx.pending.add(new_tab.copy(
            url=map_url(original.url),
            title=original.title,
            fav_icon_url=original.fav_icon_url,
            active=original.active,
        ))
        return new_tab

    async def _update_opener_tab_ids(self, new_tabs: list[Tab]) -> None:
        async def rewire(new_tab: Tab) -> None:
            opener = self.mapping.new_opener_for(new_tab.id)
            if opener is None:
                return
            try:
                await self.host.update_tab(new_tab.id, opener_tab_id=opener)
            except HostCallError as e:
                logger.warning(f"setting opener of tab {new_tab.id} failed: {e}")

        await asyncio.gather(*(rewire(tab) for tab in new_tabs))

    async def _remove_windows(self, window_ids: list[WindowId]) -> None:
        async def remove(window_id: WindowId) -> None:
            try:
                await self.host.remove_window(window_id)
            except HostCallError as e:
                logger.error(f"removing window {window_id} failed: {e}")

        await asyncio.gather(*(remove(wid) for wid in window_ids))
