"""SessionStore: the root aggregate over every saved session.

Three pools:
- user sessions: a bounded list, oldest dropped on overflow. Every change
  to it goes through the undo/redo change log.
- rotation backups: one ``RotationGroup`` per tier.
- on-change backups: a ring of recent captures, deduplicated by content
  fingerprint.

Persistence is split into partitions so each command only writes what it
touched:

    changeLogStore        change log ring + cursor
    snapshotNN            user pool snapshot at change log slot NN
    backupSessionStore    rotation tiers + last backup id
    onchangeSessionStore  on-change ring + last on-change id
    crashStore            id of the newest automatic backup (previous exit)
    appStateStore         id of the last restored session

Change log
----------
Each user pool mutation pushes an empty entry on the change log, points the
cursor at it and writes the whole pool under ``snapshotNN``, where NN is
the entry's physical ring slot. Keys are reused once the ring wraps. Undo
and redo move the cursor and reload the snapshot under it. An edit after an
undo appends at the head again; the snapshots that were ahead of the old
cursor stay on disk, unreachable, until their slot comes around.

The store is mutated from a single asyncio task at a time; ``SessionDaemon``
holds the lock.
"""

import logging
import re
import time
from datetime import datetime
from typing import Any, Iterator

from tabvault.config import MAX_ONCHANGE_SESSIONS, MAX_SNAPSHOTS, MAX_USER_SESSIONS, TabVaultConfig
from tabvault.errors import InvalidStateError, NotFoundError, PersistenceError
from tabvault.models import SavedAs, SessionId, SessionType, TabId, WindowId
from tabvault.restore import RestoreContext
from tabvault.ringbuf import RingBuffer
from tabvault.rotation import (
    BACKUP_15MIN,
    RotationGroup,
    create_backup_groups,
    current_interval_range_map,
)
from tabvault.session import Session
from tabvault.storage import Storage

logger = logging.getLogger(__name__)

CHANGE_LOG_KEY = "changeLogStore"
BACKUP_KEY = "backupSessionStore"
ONCHANGE_KEY = "onchangeSessionStore"
CRASH_KEY = "crashStore"
APP_STATE_KEY = "appStateStore"
SNAPSHOT_BASE = "snapshot"

GROUP_ONCHANGE = "onchange"
COPY_SUFFIX = " - Copy"


def is_snapshot_key(name: str) -> bool:
    return name.startswith(SNAPSHOT_BASE)


def compare_session_time(s1: Session | None, s2: Session | None) -> int:
    """Sort key helper: negative when ``s1`` is newer than ``s2``."""
    if s1 is None and s2 is None:
        return 0
    if s1 is None:
        return 1
    if s2 is None:
        return -1
    return s2.session_time - s1.session_time


class SessionStore:
    """All sessions, their history and their persistence."""

    def __init__(self, storage: Storage, config: TabVaultConfig | None = None):
        self.storage = storage
        self.max_user_sessions = config.max_user_sessions if config else MAX_USER_SESSIONS
        self.max_onchange_sessions = config.max_onchange_sessions if config else MAX_ONCHANGE_SESSIONS
        self.max_snapshots = config.max_snapshots if config else MAX_SNAPSHOTS

        self._reset_change_log()
        self._reset_user_sessions()
        self._reset_backup_sessions()
        self._reset_onchange_sessions()
        self.auto_saved_id_on_crash: SessionId | str = ""
        self.last_restored_id: SessionId | str = ""

        self._session_map_by_id: dict[str, Session] = {}
        self._update_session_map_by_id()

    def _reset_change_log(self) -> None:
        self.change_log: RingBuffer[str] = RingBuffer(self.max_snapshots)
        self.snapshot_cursor = self.change_log.newest_index  # -1 when empty

    def _reset_user_sessions(self) -> None:
        self.user_sessions: list[Session] = []
        self.last_user_saved_id: SessionId | str = ""
        self.last_operation_id: SessionId | str = ""
        self.auto_restore_session_id: SessionId | str = ""

    def _reset_backup_sessions(self) -> None:
        self.backup_groups: list[RotationGroup] = create_backup_groups()
        self.last_backup_saved_id: SessionId | str = ""

    def _reset_onchange_sessions(self) -> None:
        self.onchange_sessions: RingBuffer[Session] = RingBuffer(self.max_onchange_sessions)
        self.last_onchange_saved_id: SessionId | str = ""

    # ── Loading ─────────────────────────────────────────────

    @classmethod
    async def load(cls, storage: Storage, config: TabVaultConfig | None = None) -> "SessionStore":
        """Build a store from every persisted partition.

        Missing partitions start empty. A record with an unknown version
        raises VersionMismatchError.
        """
        store = cls(storage, config)

        loaded = await storage.get(CHANGE_LOG_KEY)
        if CHANGE_LOG_KEY in loaded:
            store._deserialize_change_log(loaded[CHANGE_LOG_KEY])
            if store.snapshot_cursor >= 0:
                snapshot = await store._read_snapshot()
                if snapshot is None:
                    logger.warning(f"snapshot {store._snapshot_name()} not found, starting with no user sessions")
                else:
                    store._deserialize_user_sessions(snapshot)

        loaded = await storage.get([BACKUP_KEY, ONCHANGE_KEY, APP_STATE_KEY, CRASH_KEY])
        if BACKUP_KEY in loaded:
            store._deserialize_backup_sessions(loaded[BACKUP_KEY])
        if ONCHANGE_KEY in loaded:
            store._deserialize_onchange_sessions(loaded[ONCHANGE_KEY])
        store.last_restored_id = (loaded.get(APP_STATE_KEY) or {}).get("last_restored_id", "")
        store.auto_saved_id_on_crash = (loaded.get(CRASH_KEY) or {}).get("auto_saved_id_on_crash", "")

        store._update_session_map_by_id()
        logger.info(f"loaded {store.user_count} user, {store.auto_count} backup, "
                    f"{store.onchange_count} on-change sessions; snapshot cursor {store.snapshot_cursor}")
        return store

    def _deserialize_change_log(self, d: dict[str, Any]) -> None:
        self.change_log = RingBuffer.from_dict(d["change_log"])
        self.snapshot_cursor = d.get("snapshot_cursor", self.change_log.newest_index)

    def _deserialize_user_sessions(self, d: dict[str, Any]) -> None:
        self.user_sessions = [Session.from_dict(s) for s in d.get("user_sessions") or []]
        self.last_user_saved_id = d.get("last_user_saved_id") or ""
        self.last_operation_id = d.get("last_operation_id") or ""
        self.auto_restore_session_id = d.get("auto_restore_session_id") or ""

    def _deserialize_backup_sessions(self, d: dict[str, Any]) -> None:
        self.backup_groups = create_backup_groups()
        stored = d.get("backup_session_groups") or []
        for i in range(min(len(self.backup_groups), len(stored))):
            if stored[i]:
                self.backup_groups[i] = RotationGroup.from_dict(stored[i])
        self.last_backup_saved_id = d.get("last_backup_saved_id") or ""

    def _deserialize_onchange_sessions(self, d: dict[str, Any]) -> None:
        if d.get("onchange_session_list"):
            self.onchange_sessions = RingBuffer.from_dict(d["onchange_session_list"], Session.from_dict)
        self.last_onchange_saved_id = d.get("last_onchange_saved_id") or ""

    # ── Partition writers ───────────────────────────────────

    def _snapshot_name(self) -> str:
        return f"{SNAPSHOT_BASE}{self.change_log.pos(self.snapshot_cursor):02d}"

    def _change_log_record(self) -> dict[str, Any]:
        return {
            "change_log": self.change_log.to_dict(),
            "snapshot_cursor": self.snapshot_cursor,
        }

    def _snapshot_record(self) -> dict[str, Any]:
        return {
            "user_sessions": [s.to_dict() for s in self.user_sessions],
            "last_user_saved_id": self.last_user_saved_id,
            "last_operation_id": self.last_operation_id,
            "auto_restore_session_id": self.auto_restore_session_id,
            "save_time": int(time.time() * 1000),
        }

    def _crash_record(self) -> dict[str, Any]:
        return {"auto_saved_id_on_crash": self.auto_saved_id_on_crash}

    async def _read_snapshot(self) -> dict[str, Any] | None:
        name = self._snapshot_name()
        return (await self.storage.get(name)).get(name)

    async def _save_change_log(self) -> None:
        await self.storage.set({CHANGE_LOG_KEY: self._change_log_record()})

    async def _save_change_log_and_user_sessions(self) -> None:
        """Record the user pool as a new change log entry.

        The snapshot is written first and the change log only once it is
        stored, so the persisted cursor never points at a missing snapshot.
        If either write fails the change log is put back the way it was and
        the error propagates; the in-memory pool keeps the edit.
        """
        previous_log = self.change_log.to_dict()
        previous_cursor = self.snapshot_cursor

        self.change_log.push("")
        self.snapshot_cursor = self.change_log.newest_index
        name = self._snapshot_name()
        try:
            await self.storage.set({name: self._snapshot_record()})
            await self.storage.set({CHANGE_LOG_KEY: self._change_log_record()})
        except PersistenceError:
            self.change_log = RingBuffer.from_dict(previous_log)
            self.snapshot_cursor = previous_cursor
            raise
        logger.info(f"saved {name}, snapshot cursor {self.snapshot_cursor}, "
                    f"change log newest {self.change_log.newest_index}")

    async def _save_backup_sessions(self) -> None:
        await self.storage.set({
            BACKUP_KEY: {
                "backup_session_groups": [g.to_dict() for g in self.backup_groups],
                "last_backup_saved_id": self.last_backup_saved_id,
            },
            CRASH_KEY: self._crash_record(),
        })

    async def _save_onchange_sessions(self) -> None:
        await self.storage.set({
            ONCHANGE_KEY: {
                "onchange_session_list": self.onchange_sessions.to_dict(lambda s: s.to_dict()),
                "last_onchange_saved_id": self.last_onchange_saved_id,
            },
            CRASH_KEY: self._crash_record(),
        })

    async def _save_app_state(self) -> None:
        await self.storage.set({APP_STATE_KEY: {"last_restored_id": self.last_restored_id}})

    async def _save_last_restored_id(self, session_id: SessionId) -> None:
        self.last_restored_id = session_id
        await self._save_app_state()

    async def clear_crash_store(self) -> None:
        self.auto_saved_id_on_crash = ""
        await self.storage.set({CRASH_KEY: self._crash_record()})

    async def flush(self) -> None:
        """Write every partition except the snapshots. Used at shutdown."""
        await self.storage.set({
            CHANGE_LOG_KEY: self._change_log_record(),
            BACKUP_KEY: {
                "backup_session_groups": [g.to_dict() for g in self.backup_groups],
                "last_backup_saved_id": self.last_backup_saved_id,
            },
            ONCHANGE_KEY: {
                "onchange_session_list": self.onchange_sessions.to_dict(lambda s: s.to_dict()),
                "last_onchange_saved_id": self.last_onchange_saved_id,
            },
            CRASH_KEY: self._crash_record(),
            APP_STATE_KEY: {"last_restored_id": self.last_restored_id},
        })

    # ── Lookup ──────────────────────────────────────────────

    def iter_sessions(self) -> Iterator[Session]:
        """User sessions, then backups tier by tier, then on-change newest first."""
        yield from self.user_sessions
        for group in self.backup_groups:
            yield from group.occupied()
        yield from self.onchange_sessions.to_list_newest()

    def _update_session_map_by_id(self) -> None:
        self._session_map_by_id = {s.session_id: s for s in self.iter_sessions()}

    def get_session_by_id(self, session_id: str) -> Session | None:
        return self._session_map_by_id.get(session_id) if session_id else None

    def find_session(self, session_id: str, ensure_windows: bool = False) -> Session:
        sess = self.get_session_by_id(session_id)
        if sess is None:
            raise NotFoundError(f"Session {session_id} is not found.")
        if ensure_windows and sess.window_count == 0:
            raise InvalidStateError(f"No window in session {session_id}")
        return sess

    def find_user_session(self, session_id: str) -> Session:
        """Find a session that may be edited in place."""
        sess = self.find_session(session_id)
        if not sess.is_user:
            raise InvalidStateError(
                f"Session {sess.session_name} is a {sess.session_type.value} backup and can't be edited; "
                "copy it to the user sessions first")
        return sess

    @property
    def user_count(self) -> int:
        return len(self.user_sessions)

    @property
    def auto_count(self) -> int:
        return sum(len(group.ui_sessions) for group in self.backup_groups)

    @property
    def onchange_count(self) -> int:
        return len(self.onchange_sessions)

    @property
    def total_count(self) -> int:
        return self.user_count + self.auto_count + self.onchange_count

    @property
    def auto_sessions(self) -> list[Session]:
        return [s for group in self.backup_groups for s in group.ui_sessions]

    @property
    def onchange_session_list(self) -> list[Session]:
        return self.onchange_sessions.to_list_newest()

    @property
    def most_recent_session(self) -> Session | None:
        return self.backup_groups[BACKUP_15MIN].newest

    @property
    def reached_user_max(self) -> bool:
        return len(self.user_sessions) >= self.max_user_sessions

    def last_saved_label(self, sess: Session) -> str:
        """"current" for the newest save of any kind, "saved" for the other last-saved ids."""
        candidates = [
            self.get_session_by_id(self.last_user_saved_id),
            self.get_session_by_id(self.last_backup_saved_id),
            self.get_session_by_id(self.last_onchange_saved_id),
        ]
        current = None
        for candidate in candidates:
            if compare_session_time(candidate, current) < 0:
                current = candidate

        if current is not None and current.session_id == sess.session_id:
            return "current"
        if sess.session_id in (self.last_user_saved_id, self.last_backup_saved_id, self.last_onchange_saved_id):
            return "saved"
        return ""

    def list_sessions(
        self,
        search_terms: list[str] | None = None,
        search_by_tab: bool = False,
    ) -> dict[str, list[Session]]:
        terms = search_terms or []
        return {
            "user": Session.filter(self.user_sessions, terms, search_by_tab),
            "backup": Session.filter(self.auto_sessions, terms, search_by_tab),
            "onchange": Session.filter(self.onchange_session_list, terms, search_by_tab),
        }

    # ── User pool ───────────────────────────────────────────

    def _add_user(self, sess: Session, saved_as: SavedAs) -> Session:
        sess.session_type = SessionType.USER
        sess.saved_as = saved_as
        self.user_sessions.append(sess)
        if len(self.user_sessions) > self.max_user_sessions:
            self.user_sessions = self.user_sessions[-self.max_user_sessions:]
        self._update_session_map_by_id()
        return sess

    def _update_last_saved(self, sess: Session) -> Session:
        self.last_user_saved_id = sess.session_id
        self.last_operation_id = sess.session_id
        return sess

    async def _commit_user(self) -> None:
        self._update_session_map_by_id()
        await self._save_change_log_and_user_sessions()

    async def save_all_windows(self, ctx: RestoreContext) -> Session:
        sess = await Session.capture(ctx.host, ctx.pending)
        self._update_last_saved(self._add_user(sess, SavedAs.AS_ALL))
        await self._save_change_log_and_user_sessions()
        return sess

    async def save_current_window(self, ctx: RestoreContext) -> Session:
        sess = await Session.capture(ctx.host, ctx.pending, current_window=True)
        self._update_last_saved(self._add_user(sess, SavedAs.AS_WIN))
        await self._save_change_log_and_user_sessions()
        return sess

    async def update_session(self, ctx: RestoreContext, session_id: str) -> Session:
        """Recapture a user session in place, keeping its identity and labels."""
        old = self.find_user_session(session_id)
        new = await Session.capture(ctx.host, ctx.pending, current_window=old.is_as_win)
        new.session_id = old.session_id
        new.session_type = old.session_type
        new.session_name = old.session_name
        new.group = old.group
        new.group_title = old.group_title
        new.saved_as = old.saved_as

        index = next(i for i, s in enumerate(self.user_sessions) if s.session_id == old.session_id)
        self.user_sessions[index] = new
        self._update_last_saved(new)
        await self._commit_user()
        return new

    async def update_window(self, ctx: RestoreContext, session_id: str, window_id: WindowId) -> None:
        sess = self.find_user_session(session_id)
        if sess.find_window(window_id) is None:
            raise NotFoundError(f"No window found for the window id {window_id}")
        current = await Session.capture(ctx.host, ctx.pending, current_window=True)
        if not sess.update_window(window_id, current):
            raise InvalidStateError("The current window has no tabs to capture")
        await self._commit_user()

    async def set_window_property(self, session_id: str, window_id: WindowId, name: str, value: Any) -> None:
        sess = self.find_user_session(session_id)
        if not sess.set_window_property(window_id, name, value):
            raise NotFoundError(f"No window found for the window id {window_id}")
        await self._commit_user()

    async def move_window(self, session_id: str, window_id: WindowId, new_pos: int) -> None:
        sess = self.find_user_session(session_id)
        if not sess.set_window_order_pos(window_id, new_pos):
            raise NotFoundError(f"No window found for the window id {window_id}")
        await self._commit_user()

    async def delete_window(self, session_id: str, window_id: WindowId) -> None:
        sess = self.find_user_session(session_id)
        if not sess.delete_window(window_id):
            raise NotFoundError(f"No window found for the window id {window_id}")
        await self._commit_user()

    async def rename_session(self, session_id: str, new_name: str) -> None:
        self.find_user_session(session_id).session_name = new_name
        await self._commit_user()

    async def set_session_group(self, session_id: str, group: str) -> None:
        self.find_user_session(session_id).set_group(group)
        await self._commit_user()

    async def toggle_auto_restore(self, session_id: str) -> bool:
        """Flip the startup auto-restore target. Returns whether it is now set."""
        self.find_session(session_id)
        self.auto_restore_session_id = "" if self.auto_restore_session_id == session_id else session_id
        await self._save_change_log_and_user_sessions()
        return self.auto_restore_session_id == session_id

    async def delete_session(self, session_id: str) -> None:
        sess = self.find_session(session_id)
        if sess.is_user:
            self.user_sessions = [s for s in self.user_sessions if s.session_id != session_id]
            await self._commit_user()
        elif sess.is_auto:
            for group in self.backup_groups:
                group.remove(session_id)
            self._update_session_map_by_id()
            await self._save_backup_sessions()
        else:
            raise InvalidStateError("On-change backups can't be deleted one by one")

    def _make_session_name_copy(self, name: str) -> str:
        index = name.find(COPY_SUFFIX)
        base = name if index < 0 else name[:index]
        new_name = base + COPY_SUFFIX
        numbers = []
        for s in self.user_sessions:
            if s.session_name.startswith(new_name):
                m = re.match(r"\d+", s.session_name[len(new_name):])
                if m:
                    numbers.append(int(m.group()))
        return new_name + str(max(numbers) + 1 if numbers else 1)

    async def copy_to_user(self, session_id: str) -> Session:
        old = self.find_session(session_id)
        sess = old.clone_with_new_id()
        sess.session_name = self._make_session_name_copy(sess.session_name)
        if old.is_auto or old.is_onchange:
            sess.group = ""
            sess.group_title = ""
        self._add_user(sess, sess.saved_as)
        self.last_operation_id = sess.session_id
        await self._save_change_log_and_user_sessions()
        return sess

    # ── Tab editing ─────────────────────────────────────────

    async def update_tabs(
        self,
        session_id: str,
        window_id: WindowId,
        changed_tabs: dict[TabId, dict[str, str]],
        deleted: set[TabId],
        ordered_ids: list[TabId],
    ) -> None:
        logger.info(f"update_tabs session {session_id} window {window_id}")
        sess = self.find_user_session(session_id)
        if not sess.update_tabs(window_id, changed_tabs, deleted, ordered_ids):
            raise NotFoundError(f"No window found for the window id {window_id}")
        await self._commit_user()

    async def delete_tab(self, session_id: str, window_id: WindowId, tab_id: TabId) -> None:
        logger.info(f"delete_tab session {session_id} window {window_id} tab {tab_id}")
        sess = self.find_user_session(session_id)
        if not sess.delete_tab(window_id, tab_id):
            raise NotFoundError(f"No tab {tab_id} in window {window_id}")
        await self._commit_user()

    async def set_tab_property(self, session_id: str, window_id: WindowId, tab_id: TabId, name: str, value: Any) -> None:
        sess = self.find_user_session(session_id)
        if not sess.set_tab_property(window_id, tab_id, name, value):
            raise NotFoundError(f"No tab {tab_id} in window {window_id}")
        await self._commit_user()

    async def reorder_tabs(self, session_id: str, window_id: WindowId, tab_ids: list[TabId]) -> None:
        sess = self.find_user_session(session_id)
        if not sess.reorder_tabs(window_id, tab_ids):
            raise NotFoundError(f"No window found for the window id {window_id}")
        await self._commit_user()

    # ── Undo / redo ─────────────────────────────────────────

    async def _load_snapshot_at(self, cursor: int) -> None:
        previous = self.snapshot_cursor
        self.snapshot_cursor = cursor
        snapshot = await self._read_snapshot()
        if snapshot is None:
            name = self._snapshot_name()
            self.snapshot_cursor = previous
            raise PersistenceError(f"Snapshot {name} not found")
        self._deserialize_user_sessions(snapshot)
        self._update_session_map_by_id()
        await self._save_change_log()

    async def undo_snapshot(self) -> bool:
        if self.snapshot_cursor <= 0:
            return False
        await self._load_snapshot_at(self.snapshot_cursor - 1)
        return True

    async def redo_snapshot(self) -> bool:
        if self.snapshot_cursor >= self.change_log.newest_index:
            return False
        await self._load_snapshot_at(self.snapshot_cursor + 1)
        return True

    # ── Restoration ─────────────────────────────────────────

    async def restore_session(
        self,
        ctx: RestoreContext,
        session_id: str,
        is_replace: bool,
        search_terms: list[str] | None = None,
        search_by_tab: bool = False,
    ) -> None:
        sess = self.find_session(session_id, ensure_windows=True)
        if all(w.explicit_restore for w in sess.windows):
            raise InvalidStateError(f"Every window of session {sess.session_name} is restored only explicitly")
        await sess.restore_session(ctx, is_replace, search_terms or [], search_by_tab)
        await self._save_last_restored_id(sess.session_id)

    async def restore_window(
        self,
        ctx: RestoreContext,
        session_id: str,
        window_id: WindowId,
        search_terms: list[str] | None = None,
        search_by_tab: bool = False,
    ) -> None:
        """Restore one window of a session as a new host window."""
        sess = self.find_session(session_id, ensure_windows=True)
        if sess.find_window(window_id) is None:
            raise NotFoundError(f"Window {window_id} not found in session {sess.session_name}")
        await sess.restore_window(ctx, window_id, search_terms or [], search_by_tab)
        await self._save_last_restored_id(sess.session_id)

    async def restore_window_to_current(
        self,
        ctx: RestoreContext,
        session_id: str,
        window_id: WindowId,
        is_replace: bool,
        search_terms: list[str] | None = None,
        search_by_tab: bool = False,
    ) -> None:
        """Restore one window's tabs into the current host window."""
        sess = self.find_session(session_id, ensure_windows=True)
        window = sess.find_window(window_id)
        if window is None:
            raise NotFoundError(f"Window {window_id} not found in session {sess.session_name}")
        await sess.restore_window_to_current(ctx, window, is_replace, search_terms or [], search_by_tab)
        await self._save_last_restored_id(sess.session_id)

    async def restore_tab(self, ctx: RestoreContext, session_id: str, window_id: WindowId, tab_id: TabId) -> None:
        await self.find_session(session_id).restore_tab(ctx, window_id, tab_id)

    # ── Automatic backups ───────────────────────────────────

    def _set_last_auto_saved_id(self, session_id: SessionId) -> None:
        self.last_backup_saved_id = session_id
        self.auto_saved_id_on_crash = session_id

    def _set_last_onchange_saved_id(self, session_id: SessionId) -> None:
        self.last_onchange_saved_id = session_id
        self.auto_saved_id_on_crash = session_id

    def _fill_newest(self, groups: list[RotationGroup], sess: Session) -> None:
        """Give each group its own clone of ``sess`` in slot 0."""
        sess.session_type = SessionType.AUTO
        sess.saved_as = SavedAs.AS_ALL
        sess.session_name = f"Backup {sess.short_time}"
        for group in groups:
            group.newest = sess.clone_with_new_id()
            group.update_session_group_info()

    async def run_scheduled_backup(self, ctx: RestoreContext, now: datetime | None = None) -> bool:
        """Advance every tier, then back up the ones left without a current entry.

        At most one live capture is taken however many tiers are due.
        Returns True if a capture was taken.
        """
        now = now or datetime.now()
        logger.info(f"run_scheduled_backup at {now:%Y-%m-%d %H:%M:%S}")

        ranges = current_interval_range_map(now)
        changed = [group.propagate(ranges[group.group_type]) for group in self.backup_groups]
        due = [group for group in self.backup_groups if group.newest is None]
        logger.info(f"tiers due for backup: {[g.group_type for g in due]}")

        if due:
            sess = await Session.capture(ctx.host, ctx.pending)
            sess.session_time = int(now.timestamp() * 1000)
            self._fill_newest(due, sess)
            self._set_last_auto_saved_id(due[0].newest.session_id)
            self._update_session_map_by_id()

        if any(changed) or due:
            await self._save_backup_sessions()
        return bool(due)

    async def force_scheduled_backup(self, ctx: RestoreContext) -> None:
        """Capture now and overwrite slot 0 of every tier."""
        logger.info("force_scheduled_backup")
        sess = await Session.capture(ctx.host, ctx.pending)
        self._fill_newest(self.backup_groups, sess)
        self._set_last_auto_saved_id(self.backup_groups[BACKUP_15MIN].newest.session_id)
        self._update_session_map_by_id()
        await self._save_backup_sessions()

    async def backup_on_change(self, ctx: RestoreContext) -> Session | None:
        """Record an on-change backup unless it matches the newest one."""
        sess = await Session.capture(ctx.host, ctx.pending)
        newest = self.onchange_sessions.newest()
        if newest is not None and newest.compute_tab_url_hash() == sess.compute_tab_url_hash():
            logger.debug("on-change capture identical to the newest one, skipped")
            return None

        sess.session_type = SessionType.ONCHANGE
        sess.saved_as = SavedAs.AS_ALL
        sess.session_name = f"Backup {sess.short_time} {GROUP_ONCHANGE}"
        sess.set_group(GROUP_ONCHANGE)
        self.onchange_sessions.push(sess)
        self._set_last_onchange_saved_id(sess.session_id)
        self._update_session_map_by_id()
        await self._save_onchange_sessions()
        return sess

    # ── Bulk deletes ────────────────────────────────────────

    async def delete_all_user_sessions(self) -> None:
        logger.info("delete_all_user_sessions")
        # Backups are left alone; only the user pool goes through undo/redo
        self._reset_user_sessions()
        await self._commit_user()

    async def delete_all_backup_sessions(self) -> None:
        logger.info("delete_all_backup_sessions")
        self._reset_backup_sessions()
        self._update_session_map_by_id()
        await self._save_backup_sessions()

    async def delete_all_onchange_sessions(self) -> None:
        logger.info("delete_all_onchange_sessions")
        self._reset_onchange_sessions()
        self._update_session_map_by_id()
        await self._save_onchange_sessions()

    async def purge_all_data(self) -> None:
        """Drop everything, in memory and in storage."""
        logger.info("purge_all_data")
        self._reset_change_log()
        self._reset_user_sessions()
        self._reset_backup_sessions()
        self._reset_onchange_sessions()
        self.auto_saved_id_on_crash = ""
        self.last_restored_id = ""
        self._update_session_map_by_id()
        await self.storage.clear()


