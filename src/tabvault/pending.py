"""Pending-tab registry.

When a tab is restored with the PENDING strategy it is created blank, and
the captured url/title/favicon it should load are parked here under the
new tab's ephemeral id. Two paths drain an entry:

1. The host reports the tab was activated: push the real url to the tab
   and drop the entry once the push is accepted.
2. The tab's own content probe asks for its target (``query``), retrying
   with jitter because it can start before the entry is registered.

Entries for tabs closed before either happened are dropped by ``sweep``,
which runs at most once per ``gc_interval``.

Entries are keyed by ephemeral ids and are never persisted; a tab id from
a previous host process may point at an unrelated tab.
"""

import asyncio
import logging
import random
import time
from typing import Any, Awaitable, Callable

from tabvault.errors import HostCallError
from tabvault.host import Host
from tabvault.models import Tab, TabId, WindowId

logger = logging.getLogger(__name__)

GC_INTERVAL_S = 11 * 60  # interleaves with the 5 minute backup schedule


class PendingTabs:
    """Process-wide map of newly created tab id -> captured tab data."""

    def __init__(self, gc_interval_s: float = GC_INTERVAL_S):
        self.gc_interval_s = gc_interval_s
        self.at_least_one_restored = False
        self._tabs: dict[TabId, Tab] = {}
        # Push the first sweep one interval away from startup
        self._last_gc = time.time()

    def __len__(self) -> int:
        return len(self._tabs)

    def __contains__(self, tab_id: object) -> bool:
        return tab_id in self._tabs

    def add(self, tab: Tab) -> None:
        self.at_least_one_restored = True
        self._tabs[tab.id] = tab

    def get(self, tab_id: TabId) -> Tab | None:
        return self._tabs.get(tab_id)

    def discard(self, tab_id: TabId) -> None:
        self._tabs.pop(tab_id, None)

    def clear(self) -> None:
        self._tabs.clear()

    async def on_tab_activated(self, host: Host, tab_id: TabId, window_id: WindowId) -> bool:
        """Push the captured url to a pending tab that just got activated.

        Returns True when the entry was delivered and removed.
        """
        pending_tab = self._tabs.get(tab_id)
        if pending_tab is None:
            logger.debug(f"tab {tab_id} win {window_id} not a pending tab")
            return False

        if pending_tab.active:
            # The active pending tab loads itself through its probe
            logger.info(f"tab {tab_id} win {window_id} is the active pending tab; it refreshes itself")
            return False

        logger.info(f"tab {tab_id} win {window_id} restore url {pending_tab.url}")
        try:
            await host.send_tab_message(tab_id, {"cmd": "restore-url", "url": pending_tab.url})
        except HostCallError as e:
            # Activated before its probe started listening; the probe asks later
            logger.warning(f"restore-url to tab {tab_id} not delivered: {e}")
            return False

        self._tabs.pop(tab_id, None)
        return True

    def query(self, tab_id: TabId) -> dict[str, Any]:
        """Answer a content probe asking for its restoration target."""
        pending_tab = self._tabs.get(tab_id)
        logger.info(f"query pending tab {tab_id}, restored={self.at_least_one_restored}, "
                    f"found={pending_tab is not None}")
        if pending_tab is not None and pending_tab.active:
            # The probe loads the active tab's url itself
            self._tabs.pop(tab_id, None)
        return {
            "status": "ok",
            "has_restored": self.at_least_one_restored,
            "pending_tab": pending_tab.to_dict() if pending_tab else None,
        }

    def sweep_due(self, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return now - self._last_gc > self.gc_interval_s

    async def sweep(self, host: Host, now: float | None = None) -> int:
        """Drop entries whose tab no longer exists. Returns the number dropped."""
        now = time.time() if now is None else now
        if not self.sweep_due(now):
            return 0
        self._last_gc = now

        live_ids = {tab.id for tab in await host.query_tabs()}
        surviving = {tid: tab for tid, tab in self._tabs.items() if tid in live_ids}
        dropped = len(self._tabs) - len(surviving)
        self._tabs = surviving
        if dropped:
            logger.info(f"pending tab sweep dropped {dropped} entries")
        return dropped


class ProbeRetry(Exception):
    """Raised by a probe attempt that should be retried."""


async def probe_pending_tab(
    query: Callable[[], Awaitable[dict[str, Any]]],
    retries: int = 5,
    max_delay_s: float = 1.0,
) -> dict[str, Any] | None:
    """Content-side helper: ask for this tab's pending target with retries.

    ``query`` returns the ``PendingTabs.query`` response. A response with
    no pending tab while a restoration has happened is a race with the
    registration, so it's retried after a random delay of up to
    ``max_delay_s``. Gives up silently after ``retries`` attempts.
    """
    for attempt in range(retries):
        try:
            response = await query()
            if not response or response.get("status") != "ok":
                raise ProbeRetry(f"non-ok response: {response}")
            if not response.get("has_restored"):
                logger.info("probe: no session being restored")
                return None
            if response.get("pending_tab") is None:
                raise ProbeRetry("no pending tab yet")
            return response["pending_tab"]
        except (ProbeRetry, HostCallError) as e:
            logger.info(f"probe attempt {attempt + 1}/{retries} failed: {e}")
            if attempt + 1 < retries:
                await asyncio.sleep(random.uniform(0, max_delay_s))
    return None
