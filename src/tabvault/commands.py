"""Command surface.

Messages are dicts with a ``cmd`` verb plus arguments, as sent by a UI or
over HTTP::

    {"cmd": "rename-sess", "session_id": "...", "new_name": "Work"}

``CommandDispatcher.dispatch`` runs the verb against the daemon's store and
answers ``{"status": "ok", ...}`` or ``{"status": "error", "message": ...}``.
Store mutations take the daemon lock; restorations go through
``SessionDaemon.restoring``.
"""

import logging
from typing import Any, Awaitable, Callable

from tabvault.daemon import SessionDaemon
from tabvault.errors import InvalidStateError, TabVaultError
from tabvault.models import TabId, WindowId
from tabvault.session import Session
from tabvault.store import SessionStore

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], Awaitable[dict[str, Any] | None]]


def session_summary(sess: Session, store: SessionStore) -> dict[str, Any]:
    """List view of one session."""
    return {
        "session_id": sess.session_id,
        "session_name": sess.session_name,
        "session_type": sess.session_type.value,
        "saved_as": sess.saved_as.value,
        "session_time": sess.session_time,
        "group": sess.group,
        "group_title": sess.group_title,
        "window_count": sess.window_count,
        "tab_count": sess.tab_count,
        "sub_title": sess.sub_title_info,
        "label": store.last_saved_label(sess),
        "auto_restore": store.auto_restore_session_id == sess.session_id,
    }


def _arg(msg: dict[str, Any], name: str) -> Any:
    if name not in msg:
        raise InvalidStateError(f"Missing argument {name!r} for {msg.get('cmd')}")
    return msg[name]


def _as_int(value: Any, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise InvalidStateError(f"Argument {name!r} must be an integer, got {value!r}") from e


def _int_arg(msg: dict[str, Any], name: str) -> int:
    return _as_int(_arg(msg, name), name)


def _tab_ids(values: Any, name: str) -> list[TabId]:
    if not isinstance(values, (list, tuple, set, dict)):
        raise InvalidStateError(f"Argument {name!r} must be a list of tab ids, got {values!r}")
    return [TabId(_as_int(v, name)) for v in values]


def _window_id(msg: dict[str, Any]) -> WindowId:
    return WindowId(_int_arg(msg, "window_id"))


def _tab_id(msg: dict[str, Any]) -> TabId:
    return TabId(_int_arg(msg, "tab_id"))


def _search(msg: dict[str, Any]) -> tuple[list[str], bool]:
    return list(msg.get("search_terms") or []), bool(msg.get("search_by_tab", False))


class CommandDispatcher:
    """Routes command messages to the store."""

    def __init__(self, daemon: SessionDaemon):
        self.daemon = daemon
        self._handlers: dict[str, Handler] = {
            "save-all": self._save_all,
            "save-window": self._save_window,
            "update-sess": self._update_session,
            "delete-sess": self._delete_session,
            "copy-sess": self._copy_session,
            "rename-sess": self._rename_session,
            "setgroup-sess": self._set_session_group,
            "toggle-auto-restore": self._toggle_auto_restore,
            "replace-sess": self._replace_session,
            "restore-sess": self._restore_session,
            "restore-win": self._restore_window,
            "replace-win": self._replace_window,
            "append-win": self._append_window,
            "delete-win": self._delete_window,
            "update-win": self._update_window,
            "explicit-win": self._explicit_window,
            "rename-win": self._rename_window,
            "move-win": self._move_window,
            "restore-tab": self._restore_tab,
            "delete-tab": self._delete_tab,
            "set-tab-url": self._set_tab_url,
            "reorder-tabs": self._reorder_tabs,
            "update-tabs": self._update_tabs,
            "undo-snapshot": self._undo,
            "redo-snapshot": self._redo,
            "del-all-user": self._delete_all_user,
            "del-all-backup": self._delete_all_backup,
            "del-all-onchange": self._delete_all_onchange,
            "purge-all": self._purge_all,
            "backup-now": self._backup_now,
            "run-scheduled-backup": self._run_scheduled_backup,
            "force-backup": self._force_backup,
            "cs-query-pending-tab": self._query_pending_tab,
            "get-prev-exit": self._get_previous_exit,
            "list-sessions": self._list_sessions,
            "get-sess": self._get_session,
        }

    @property
    def store(self) -> SessionStore:
        return self.daemon.store

    @property
    def verbs(self) -> list[str]:
        return sorted(self._handlers)

    async def dispatch(self, msg: dict[str, Any]) -> dict[str, Any]:
        verb = msg.get("cmd", "")
        handler = self._handlers.get(verb)
        if handler is None:
            logger.info(f"unknown command: {msg}")
            return {"status": "error", "error": "UnknownCommand", "message": f"Unknown command {verb!r}"}

        try:
            result = await handler(msg)
        except TabVaultError as e:
            logger.warning(f"{verb} failed: {e}")
            return {"status": "error", "error": type(e).__name__, "message": str(e)}
        return {"status": "ok", **(result or {})}

    async def _locked(self, fn: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        async with self.daemon.lock:
            return await fn(*args)

    # ── Saving ──────────────────────────────────────────────

    async def _save_all(self, msg):
        sess = await self._locked(self.store.save_all_windows, self.daemon.ctx)
        return {"session_id": sess.session_id}

    async def _save_window(self, msg):
        sess = await self._locked(self.store.save_current_window, self.daemon.ctx)
        return {"session_id": sess.session_id}

    async def _update_session(self, msg):
        await self._locked(self.store.update_session, self.daemon.ctx, _arg(msg, "session_id"))

    async def _delete_session(self, msg):
        await self._locked(self.store.delete_session, _arg(msg, "session_id"))

    async def _copy_session(self, msg):
        sess = await self._locked(self.store.copy_to_user, _arg(msg, "session_id"))
        return {"session_id": sess.session_id, "session_name": sess.session_name}

    async def _rename_session(self, msg):
        await self._locked(self.store.rename_session, _arg(msg, "session_id"), _arg(msg, "new_name"))
        return {"message": "Session renamed."}

    async def _set_session_group(self, msg):
        await self._locked(self.store.set_session_group, _arg(msg, "session_id"), _arg(msg, "group"))
        return {"message": "Session group set."}

    async def _toggle_auto_restore(self, msg):
        enabled = await self._locked(self.store.toggle_auto_restore, _arg(msg, "session_id"))
        return {"auto_restore": enabled}

    # ── Restoring ───────────────────────────────────────────

    async def _replace_session(self, msg):
        terms, by_tab = _search(msg)
        async with self.daemon.restoring() as ctx:
            await self.store.restore_session(ctx, _arg(msg, "session_id"), True, terms, by_tab)
        return {"message": "Restored"}

    async def _restore_session(self, msg):
        terms, by_tab = _search(msg)
        async with self.daemon.restoring() as ctx:
            await self.store.restore_session(ctx, _arg(msg, "session_id"), False, terms, by_tab)
        return {"message": "Restored"}

    async def _restore_window(self, msg):
        terms, by_tab = _search(msg)
        async with self.daemon.restoring() as ctx:
            await self.store.restore_window(ctx, _arg(msg, "session_id"), _window_id(msg), terms, by_tab)
        return {"message": "Restored"}

    async def _replace_window(self, msg):
        terms, by_tab = _search(msg)
        async with self.daemon.restoring() as ctx:
            await self.store.restore_window_to_current(
                ctx, _arg(msg, "session_id"), _window_id(msg), True, terms, by_tab)
        return {"message": "Restored"}

    async def _append_window(self, msg):
        terms, by_tab = _search(msg)
        async with self.daemon.restoring() as ctx:
            await self.store.restore_window_to_current(
                ctx, _arg(msg, "session_id"), _window_id(msg), False, terms, by_tab)
        return {"message": "Restored"}

    async def _restore_tab(self, msg):
        async with self.daemon.restoring() as ctx:
            await self.store.restore_tab(ctx, _arg(msg, "session_id"), _window_id(msg), _tab_id(msg))

    # ── Window editing ──────────────────────────────────────

    async def _delete_window(self, msg):
        await self._locked(self.store.delete_window, _arg(msg, "session_id"), _window_id(msg))

    async def _update_window(self, msg):
        await self._locked(self.store.update_window, self.daemon.ctx, _arg(msg, "session_id"), _window_id(msg))

    async def _explicit_window(self, msg):
        await self._locked(self.store.set_window_property, _arg(msg, "session_id"), _window_id(msg),
                           "explicit_restore", bool(_arg(msg, "explicit_restore")))

    async def _rename_window(self, msg):
        await self._locked(self.store.set_window_property, _arg(msg, "session_id"), _window_id(msg),
                           "name", str(_arg(msg, "new_name")))

    async def _move_window(self, msg):
        await self._locked(self.store.move_window, _arg(msg, "session_id"), _window_id(msg),
                           _int_arg(msg, "new_pos"))

    # ── Tab editing ─────────────────────────────────────────

    async def _delete_tab(self, msg):
        await self._locked(self.store.delete_tab, _arg(msg, "session_id"), _window_id(msg), _tab_id(msg))

    async def _set_tab_url(self, msg):
        await self._locked(self.store.set_tab_property, _arg(msg, "session_id"), _window_id(msg),
                           _tab_id(msg), "url", str(_arg(msg, "url")))

    async def _reorder_tabs(self, msg):
        tab_ids = _tab_ids(_arg(msg, "tab_ids"), "tab_ids")
        await self._locked(self.store.reorder_tabs, _arg(msg, "session_id"), _window_id(msg), tab_ids)

    async def _update_tabs(self, msg):
        changed_tabs = msg.get("changed_tabs") or {}
        if not isinstance(changed_tabs, dict):
            raise InvalidStateError(f"Argument 'changed_tabs' must map tab ids to tabs, got {changed_tabs!r}")
        changed = {TabId(_as_int(k, "changed_tabs")): v for k, v in changed_tabs.items()}
        deleted = set(_tab_ids(msg.get("deleted") or [], "deleted"))
        ordered = _tab_ids(_arg(msg, "ordered_ids"), "ordered_ids")
        await self._locked(self.store.update_tabs, _arg(msg, "session_id"), _window_id(msg),
                           changed, deleted, ordered)

    # ── History ─────────────────────────────────────────────

    async def _undo(self, msg):
        return {"changed": await self._locked(self.store.undo_snapshot)}

    async def _redo(self, msg):
        return {"changed": await self._locked(self.store.redo_snapshot)}

    # ── Bulk ────────────────────────────────────────────────

    async def _delete_all_user(self, msg):
        await self._locked(self.store.delete_all_user_sessions)

    async def _delete_all_backup(self, msg):
        await self._locked(self.store.delete_all_backup_sessions)

    async def _delete_all_onchange(self, msg):
        await self._locked(self.store.delete_all_onchange_sessions)

    async def _purge_all(self, msg):
        await self._locked(self.store.purge_all_data)

    # ── Backups ─────────────────────────────────────────────

    async def _backup_now(self, msg):
        sess = await self.daemon.backup_on_change()
        return {"session_id": sess.session_id if sess else None}

    async def _run_scheduled_backup(self, msg):
        captured = await self._locked(self.store.run_scheduled_backup, self.daemon.ctx)
        return {"captured": captured}

    async def _force_backup(self, msg):
        await self._locked(self.store.force_scheduled_backup, self.daemon.ctx)

    # ── Queries ─────────────────────────────────────────────

    async def _query_pending_tab(self, msg):
        response = self.daemon.pending.query(_tab_id(msg))
        response.pop("status", None)
        return response

    async def _get_previous_exit(self, msg):
        return {"previous_exit_id": self.daemon.previous_exit_id}

    async def _list_sessions(self, msg):
        terms, by_tab = _search(msg)
        pools = self.store.list_sessions(terms, by_tab)
        return {
            pool: [session_summary(s, self.store) for s in sessions]
            for pool, sessions in pools.items()
        }

    async def _get_session(self, msg):
        sess = self.store.find_session(_arg(msg, "session_id"))
        return {"session": sess.to_dict(), "summary": session_summary(sess, self.store)}
