"""Background coordinator.

``SessionDaemon`` owns the one ``SessionStore`` of the process and wires it
to the outside world:

- host events (tab activated/attached/detached/moved/removed/updated,
  window created/removed) feed pending-tab delivery and on-change backups;
- named timers drive the backup rotation, the pending-tab sweep and the
  startup auto-restore;
- the storage change feed keeps the settings current.

Lifecycle: ``start()`` loads settings and the store, records the previous
exit id and registers timers. ``stop()`` cancels timers and waiting
debounced calls, then flushes the store.

All store mutations run under ``self.lock``, so a rotation tick or a sweep
never interleaves with a restoration in progress.
"""

import asyncio
import contextlib
import logging
import time
from typing import Any, AsyncIterator

from tabvault.config import TabVaultConfig
from tabvault.heartbeat import Debouncer, Scheduler
from tabvault.host import Host
from tabvault.models import TabId, WindowId
from tabvault.pending import PendingTabs
from tabvault.restore import RestoreContext
from tabvault.session import Session
from tabvault.settings import SETTINGS_KEY, Settings, load_settings
from tabvault.storage import Storage
from tabvault.store import SessionStore

logger = logging.getLogger(__name__)

BACKUP_TIMER = "scheduled-backup"
GC_TIMER = "gc"
AUTO_RESTORE_TIMER = "auto-restore"


class SessionDaemon:
    """Owns the store and reacts to host events and timers."""

    def __init__(
        self,
        host: Host,
        storage: Storage,
        config: TabVaultConfig | None = None,
        just_installed: bool = False,
    ):
        self.host = host
        self.storage = storage
        self.config = config or TabVaultConfig()
        self.just_installed = just_installed

        self.settings = Settings.of_latest()
        self.store = SessionStore(storage, self.config)
        self.pending = PendingTabs()
        self.lock = asyncio.Lock()

        self.previous_exit_id = ""
        self.initial_window_count = 0
        self.window_count = 0
        self.already_auto_restored = False
        self.last_restoring_time = 0.0

        self.scheduler = Scheduler(self.on_timer)
        # Tab moves and loads: wait for quiet, but not forever
        self._backup_soon = Debouncer(
            self._backup_after_events,
            wait_s=self.config.change_quiet_s,
            reset_wait=True,
            max_wait_s=self.config.change_ceiling_s,
            name="backup-after-events",
        )
        # Tab closes: the user may be closing everything to quit
        self._backup_after_remove = Debouncer(
            self.backup_on_change,
            wait_s=self.config.remove_ceiling_s,
            reset_wait=False,
            name="backup-after-remove",
        )
        self._unsubscribe = None
        self._auto_restore_timers: list[str] = []

    @property
    def ctx(self) -> RestoreContext:
        return RestoreContext(
            host=self.host,
            pending=self.pending,
            lazy_loading=self.settings.lazy_tab_loading_on_restore,
        )

    # ── Lifecycle ───────────────────────────────────────────

    async def start(self) -> None:
        logger.info("session daemon starting")
        windows = await self.host.get_all_windows()
        self.initial_window_count = self.window_count = len(windows)
        self.settings = await load_settings(self.storage)
        self.store = await SessionStore.load(self.storage, self.config)
        self.previous_exit_id = self.store.auto_saved_id_on_crash or ""
        self._unsubscribe = self.storage.subscribe(self._on_storage_changed)

        self.scheduler.add_periodic(BACKUP_TIMER, self.config.backup_interval_s)
        self.scheduler.add_periodic(GC_TIMER, self.config.gc_interval_s)
        # Increasing delays cover fast and slow host startups; past 2s it's not worth it
        self._auto_restore_timers = []
        for i, delay in enumerate(self.config.auto_restore_delays_s, start=1):
            name = f"{AUTO_RESTORE_TIMER}-{i}"
            self.scheduler.add_oneshot(name, delay)
            self._auto_restore_timers.append(name)
        await self.scheduler.start()
        logger.info(f"session daemon started, {self.initial_window_count} windows, "
                    f"previous exit {self.previous_exit_id or '-'}")

    async def stop(self) -> None:
        logger.info("session daemon stopping")
        self._backup_soon.cancel()
        self._backup_after_remove.cancel()
        await self.scheduler.stop()
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        async with self.lock:
            await self.store.flush()

    def _on_storage_changed(self, changes: dict[str, Any]) -> None:
        if SETTINGS_KEY not in changes:
            return
        value = changes[SETTINGS_KEY]
        self.settings = Settings.upgrade_with(value) if value else Settings.of_latest()
        logger.info(f"settings reloaded: {self.settings}")

    @contextlib.asynccontextmanager
    async def restoring(self) -> AsyncIterator[RestoreContext]:
        """Hold the lock for a restoration and stamp its time.

        On-change backups are held off for a grace period after this, so
        the restoration's own tab traffic doesn't overwrite the history.
        """
        async with self.lock:
            self.last_restoring_time = time.time()
            try:
                yield self.ctx
            finally:
                self.last_restoring_time = time.time()

    # ── Timers ──────────────────────────────────────────────

    async def on_timer(self, name: str) -> None:
        if name == BACKUP_TIMER:
            if not self.settings.enable_schedule_backup:
                logger.info("scheduled backup is disabled in settings")
                return
            async with self.lock:
                await self.store.run_scheduled_backup(self.ctx)
        elif name == GC_TIMER:
            async with self.lock:
                await self.pending.sweep(self.host)
        elif name in self._auto_restore_timers:
            if not self.already_auto_restored:
                await self.auto_restore_on_startup()
        else:
            logger.warning(f"unknown timer {name}")

    async def auto_restore_on_startup(self) -> bool:
        """Restore the auto-restore session over a fresh, empty startup.

        Runs at most once. Returns True if a restoration happened.
        """
        logger.info(f"auto_restore_on_startup enabled={self.settings.auto_restore_on_startup} "
                    f"already={self.already_auto_restored} just_installed={self.just_installed} "
                    f"initial_windows={self.initial_window_count} "
                    f"session={self.store.auto_restore_session_id or '-'}")

        if not self.settings.auto_restore_on_startup:
            logger.info("skipped: auto-restore is disabled in settings")
            return False
        if self.already_auto_restored:
            logger.info("skipped: auto-restore already ran")
            return False
        self.already_auto_restored = True

        if self.just_installed:
            logger.info("skipped: just installed, not a real startup")
            return False
        if self.initial_window_count > 1:
            logger.info("skipped: more than one window at startup")
            return False
        if not self.store.auto_restore_session_id:
            logger.info("skipped: no auto-restore session set")
            return False
        if len(await self.host.query_tabs()) > 1:
            logger.info("skipped: more than one tab open")
            return False

        session_id = self.store.auto_restore_session_id
        logger.info(f"auto-restoring {session_id}")
        async with self.restoring() as ctx:
            await self.store.restore_session(ctx, session_id, is_replace=True)
        logger.info("auto-restore done")
        return True

    # ── Host events ─────────────────────────────────────────

    def on_window_created(self, window_id: WindowId) -> None:
        self.window_count += 1

    def on_window_removed(self, window_id: WindowId) -> None:
        self.window_count -= 1
        if self.window_count <= 0:
            logger.info("last window closed, host shutting down")

    async def on_tab_activated(self, tab_id: TabId, window_id: WindowId) -> bool:
        return await self.pending.on_tab_activated(self.host, tab_id, window_id)

    def on_tab_attached(self, tab_id: TabId) -> None:
        self._backup_soon()

    def on_tab_detached(self, tab_id: TabId) -> None:
        self._backup_soon()

    def on_tab_moved(self, tab_id: TabId) -> None:
        self._backup_soon()

    def on_tab_removed(self, tab_id: TabId, is_window_closing: bool = False) -> None:
        if is_window_closing:
            logger.info(f"tab {tab_id} removed with its window, backup in {self.config.remove_ceiling_s}s")
        self._backup_after_remove()

    def on_tab_updated(self, tab_id: TabId, status: str, url: str) -> None:
        if status != "complete":
            return
        recent = self.store.most_recent_session
        if recent is not None and recent.url_of_tab(tab_id) == url:
            return
        self._backup_soon()

    async def _backup_after_events(self) -> Session | None:
        if time.time() - self.last_restoring_time < self.config.restore_grace_s:
            logger.info("on-change backup skipped, too close to the last restoration")
            return None
        return await self.backup_on_change()

    async def backup_on_change(self) -> Session | None:
        if not self.settings.enable_on_change_backup:
            logger.info("on-change backup is disabled in settings")
            return None
        async with self.lock:
            return await self.store.backup_on_change(self.ctx)
