"""Tests for SessionStore: pools, undo/redo, rotation backups, persistence."""

import asyncio
import os
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from tabvault.config import TabVaultConfig
from tabvault.errors import InvalidStateError, NotFoundError, PersistenceError, VersionMismatchError
from tabvault.models import SavedAs, TabId, WindowId
from tabvault.storage import JsonFileStorage
from tabvault.store import SessionStore, is_snapshot_key

NOW = datetime(2020, 6, 10, 10, 7)


def pool_state(store: SessionStore) -> dict:
    return {
        "user_sessions": [s.to_dict() for s in store.user_sessions],
        "last_user_saved_id": store.last_user_saved_id,
        "last_operation_id": store.last_operation_id,
        "auto_restore_session_id": store.auto_restore_session_id,
    }


@pytest.fixture
def store(storage):
    return SessionStore(storage)


# ═══════════════════════════════════════════════════════════════
# 1. USER POOL
# ═══════════════════════════════════════════════════════════════

class TestUserPool:

    def test_save_all_windows(self, store, storage, ctx, host):
        host.open_window(["https://d.example/"])
        sess = asyncio.run(store.save_all_windows(ctx))

        assert store.user_count == 1
        assert sess.is_user and sess.saved_as == SavedAs.AS_ALL
        assert sess.window_count == 2
        assert store.last_user_saved_id == sess.session_id
        assert store.find_session(sess.session_id) is sess
        keys = asyncio.run(storage.keys())
        assert "changeLogStore" in keys and "snapshot00" in keys

    def test_save_current_window(self, store, ctx, host):
        host.open_window(["https://d.example/"])
        sess = asyncio.run(store.save_current_window(ctx))
        assert sess.saved_as == SavedAs.AS_WIN
        assert sess.window_count == 1

    def test_oldest_dropped_over_max(self, storage, ctx):
        store = SessionStore(storage, TabVaultConfig(max_user_sessions=2))

        async def scenario():
            first = await store.save_all_windows(ctx)
            await store.save_all_windows(ctx)
            await store.save_all_windows(ctx)
            return first

        first = asyncio.run(scenario())
        assert store.user_count == 2
        assert store.reached_user_max
        assert store.get_session_by_id(first.session_id) is None

    def test_rename_and_group(self, store, ctx):
        async def scenario():
            sess = await store.save_all_windows(ctx)
            await store.rename_session(sess.session_id, "Work")
            await store.set_session_group(sess.session_id, "projects")
            return sess

        sess = asyncio.run(scenario())
        assert sess.session_name == "Work"
        assert sess.group == "projects"
        assert store.snapshot_cursor == 2

    def test_unknown_session(self, store):
        with pytest.raises(NotFoundError):
            asyncio.run(store.rename_session("nope", "x"))
        with pytest.raises(NotFoundError):
            asyncio.run(store.delete_session("nope"))

    def test_delete_user_session(self, store, ctx):
        async def scenario():
            sess = await store.save_all_windows(ctx)
            await store.delete_session(sess.session_id)
            return sess

        sess = asyncio.run(scenario())
        assert store.user_count == 0
        assert store.get_session_by_id(sess.session_id) is None

    def test_copy_names(self, store, ctx):
        async def scenario():
            sess = await store.save_all_windows(ctx)
            await store.rename_session(sess.session_id, "Work")
            c1 = await store.copy_to_user(sess.session_id)
            c2 = await store.copy_to_user(c1.session_id)
            c3 = await store.copy_to_user(sess.session_id)
            return c1, c2, c3

        c1, c2, c3 = asyncio.run(scenario())
        assert [c1.session_name, c2.session_name, c3.session_name] == [
            "Work - Copy1", "Work - Copy2", "Work - Copy3"]
        assert len({c1.session_id, c2.session_id, c3.session_id}) == 3
        assert store.last_operation_id == c3.session_id

    def test_toggle_auto_restore(self, store, ctx):
        async def scenario():
            sess = await store.save_all_windows(ctx)
            on = await store.toggle_auto_restore(sess.session_id)
            off = await store.toggle_auto_restore(sess.session_id)
            return on, off

        assert asyncio.run(scenario()) == (True, False)
        assert store.auto_restore_session_id == ""
        with pytest.raises(NotFoundError):
            asyncio.run(store.toggle_auto_restore("nope"))

    def test_update_session_keeps_identity(self, store, ctx, host):
        async def scenario():
            sess = await store.save_all_windows(ctx)
            await store.rename_session(sess.session_id, "Keep")
            host._add_tab(host.current_window_id, "https://new.example/")
            return sess, await store.update_session(ctx, sess.session_id)

        old, new = asyncio.run(scenario())
        assert new.session_id == old.session_id
        assert new.session_name == "Keep"
        assert new.tab_count == 4
        assert store.user_sessions == [new]

    def test_update_window(self, store, ctx, host):
        async def scenario():
            sess = await store.save_all_windows(ctx)
            host._add_tab(host.current_window_id, "https://new.example/")
            await store.update_window(ctx, sess.session_id, sess.windows[0].id)
            return sess

        sess = asyncio.run(scenario())
        urls = [t.url for t in sess.window_tabs(sess.windows[0].id)]
        assert urls[-1] == "https://new.example/"
        assert sess.url_of_tab(TabId(max(host.tabs))) == "https://new.example/"

    def test_window_edits(self, store, ctx, host):
        host.open_window(["https://d.example/"])

        async def scenario():
            sess = await store.save_all_windows(ctx)
            first, second = [w.id for w in sess.windows]
            await store.move_window(sess.session_id, second, 0)
            await store.set_window_property(sess.session_id, first, "name", "Main")
            await store.delete_window(sess.session_id, second)
            return sess, first

        sess, first = asyncio.run(scenario())
        assert [w.id for w in sess.windows] == [first]
        assert sess.windows[0].name == "Main"

    def test_bad_move_leaves_no_history(self, store, ctx):
        async def scenario():
            sess = await store.save_all_windows(ctx)
            with pytest.raises(InvalidStateError):
                await store.move_window(sess.session_id, sess.windows[0].id, 5)

        asyncio.run(scenario())
        assert len(store.change_log) == 1

    def test_tab_edits(self, store, ctx):
        async def scenario():
            sess = await store.save_all_windows(ctx)
            wid = sess.windows[0].id
            a, b, c = [t.id for t in sess.window_tabs(wid)]
            await store.reorder_tabs(sess.session_id, wid, [c, b, a])
            await store.set_tab_property(sess.session_id, wid, b, "url", "https://bb/")
            await store.delete_tab(sess.session_id, wid, a)
            await store.update_tabs(sess.session_id, wid, {c: {"title": "Cee"}}, set(), [b, c])
            with pytest.raises(NotFoundError):
                await store.delete_tab(sess.session_id, wid, TabId(12345))
            return sess, wid

        sess, wid = asyncio.run(scenario())
        tabs = sess.window_tabs(wid)
        assert [t.url for t in tabs] == ["https://bb/", "https://c.example/"]
        assert tabs[1].title == "Cee"


# ═══════════════════════════════════════════════════════════════
# 2. UNDO / REDO
# ═══════════════════════════════════════════════════════════════

class TestUndoRedo:

    def test_undo_then_redo_restores_pool(self, store, ctx):
        async def scenario():
            sess = await store.save_all_windows(ctx)
            await store.rename_session(sess.session_id, "Renamed")
            before = pool_state(store)

            assert await store.undo_snapshot()
            assert store.user_sessions[0].session_name != "Renamed"
            assert await store.redo_snapshot()
            return before

        before = asyncio.run(scenario())
        assert pool_state(store) == before

    def test_nothing_to_undo_or_redo(self, store, ctx):
        assert asyncio.run(store.undo_snapshot()) is False
        asyncio.run(store.save_all_windows(ctx))
        assert asyncio.run(store.undo_snapshot()) is False
        assert asyncio.run(store.redo_snapshot()) is False

    def test_edit_after_undo_disables_redo(self, store, ctx):
        async def scenario():
            sess = await store.save_all_windows(ctx)
            await store.rename_session(sess.session_id, "One")
            await store.rename_session(sess.session_id, "Two")
            await store.undo_snapshot()
            await store.undo_snapshot()
            sess = store.user_sessions[0]
            await store.rename_session(sess.session_id, "Three")
            return await store.redo_snapshot()

        assert asyncio.run(scenario()) is False
        assert store.user_sessions[0].session_name == "Three"
        assert store.snapshot_cursor == store.change_log.newest_index

    def test_undo_is_persisted(self, store, storage, ctx):
        async def scenario():
            sess = await store.save_all_windows(ctx)
            await store.rename_session(sess.session_id, "Renamed")
            await store.undo_snapshot()
            return await SessionStore.load(storage)

        loaded = asyncio.run(scenario())
        assert loaded.snapshot_cursor == 0
        assert pool_state(loaded) == pool_state(store)

    def test_delete_all_user_sessions_can_be_undone(self, store, ctx):
        async def scenario():
            await store.save_all_windows(ctx)
            await store.save_all_windows(ctx)
            await store.delete_all_user_sessions()
            assert store.user_count == 0
            await store.undo_snapshot()

        asyncio.run(scenario())
        assert store.user_count == 2

    def test_snapshot_keys_wrap(self, storage, ctx):
        store = SessionStore(storage, TabVaultConfig(max_snapshots=3))

        async def scenario():
            sess = await store.save_all_windows(ctx)
            for n in range(4):
                await store.rename_session(sess.session_id, f"Name {n}")
            keys = [k for k in await storage.keys() if is_snapshot_key(k)]
            undos = [await store.undo_snapshot() for _ in range(3)]
            return sorted(keys), undos

        keys, undos = asyncio.run(scenario())
        assert keys == ["snapshot00", "snapshot01", "snapshot02"]
        assert undos == [True, True, False]
        assert store.user_sessions[0].session_name == "Name 1"

    def test_failed_write_rolls_back_log(self, store, storage, ctx):
        async def scenario():
            sess = await store.save_all_windows(ctx)
            storage.fail_writes = True
            with pytest.raises(PersistenceError):
                await store.rename_session(sess.session_id, "Lost")
            return sess

        sess = asyncio.run(scenario())
        assert len(store.change_log) == 1
        assert store.snapshot_cursor == 0
        # Memory keeps the edit
        assert sess.session_name == "Lost"

    @pytest.mark.parametrize("failing_prefix", ["snapshot", "changeLogStore"])
    def test_failed_write_keeps_disk_consistent(self, tmp_path, ctx, monkeypatch, failing_prefix):
        real_replace = os.replace

        def replace(src, dst):
            if Path(dst).name.startswith(failing_prefix):
                raise OSError("disk full")
            return real_replace(src, dst)

        async def scenario():
            store = SessionStore(JsonFileStorage(tmp_path))
            await store.save_all_windows(ctx)
            await store.save_all_windows(ctx)
            monkeypatch.setattr(os, "replace", replace)
            with pytest.raises(PersistenceError):
                await store.save_all_windows(ctx)
            monkeypatch.setattr(os, "replace", real_replace)
            return store, await SessionStore.load(JsonFileStorage(tmp_path))

        store, loaded = asyncio.run(scenario())
        assert store.user_count == 3
        assert store.snapshot_cursor == 1
        assert loaded.snapshot_cursor == 1
        assert loaded.user_count == 2

    def test_missing_snapshot_on_undo(self, store, storage, ctx):
        async def scenario():
            sess = await store.save_all_windows(ctx)
            await store.rename_session(sess.session_id, "x")
            await storage.remove("snapshot00")
            with pytest.raises(PersistenceError):
                await store.undo_snapshot()

        asyncio.run(scenario())
        assert store.snapshot_cursor == 1


# ═══════════════════════════════════════════════════════════════
# 3. SCHEDULED BACKUPS
# ═══════════════════════════════════════════════════════════════

class TestScheduledBackup:

    def test_one_capture_for_all_due_tiers(self, store, ctx, host):
        queries = host.calls["query_tabs"]
        assert asyncio.run(store.run_scheduled_backup(ctx, NOW))

        assert host.calls["query_tabs"] - queries == 1
        newest = [g.newest for g in store.backup_groups]
        assert all(s is not None and s.is_auto for s in newest)
        assert len({s.session_id for s in newest}) == 5
        assert len({s.compute_tab_url_hash() for s in newest}) == 1
        assert [s.group for s in newest] == ["15-minute", "hourly", "daily", "weekly", "monthly"]
        assert store.last_backup_saved_id == newest[0].session_id
        assert store.auto_saved_id_on_crash == newest[0].session_id

    def test_nothing_due_no_capture(self, store, ctx, host):
        asyncio.run(store.run_scheduled_backup(ctx, NOW))
        queries = host.calls["query_tabs"]
        assert not asyncio.run(store.run_scheduled_backup(ctx, NOW + timedelta(minutes=2)))
        assert host.calls["query_tabs"] == queries

    def test_only_aged_tier_refilled(self, store, ctx, host):
        asyncio.run(store.run_scheduled_backup(ctx, NOW))
        first_quarter = store.backup_groups[0].newest
        first_hourly = store.backup_groups[1].newest

        queries = host.calls["query_tabs"]
        assert asyncio.run(store.run_scheduled_backup(ctx, NOW + timedelta(minutes=20)))
        assert host.calls["query_tabs"] - queries == 1
        assert store.backup_groups[0].sessions[1] is first_quarter
        assert store.backup_groups[0].newest is not first_quarter
        assert store.backup_groups[1].newest is first_hourly
        assert store.auto_count == 2

    def test_backup_stamped_with_tick_time(self, store, ctx):
        asyncio.run(store.run_scheduled_backup(ctx, NOW))
        assert store.backup_groups[0].newest.session_time == int(NOW.timestamp() * 1000)

    def test_force_backup_overwrites_every_tier(self, store, ctx):
        asyncio.run(store.run_scheduled_backup(ctx, NOW))
        old_ids = {g.newest.session_id for g in store.backup_groups}
        asyncio.run(store.force_scheduled_backup(ctx))
        new_ids = {g.newest.session_id for g in store.backup_groups}
        assert len(new_ids) == 5
        assert not old_ids & new_ids

    def test_backups_are_read_only(self, store, ctx):
        asyncio.run(store.run_scheduled_backup(ctx, NOW))
        backup = store.backup_groups[0].newest
        with pytest.raises(InvalidStateError):
            asyncio.run(store.rename_session(backup.session_id, "x"))
        with pytest.raises(InvalidStateError):
            asyncio.run(store.delete_window(backup.session_id, backup.windows[0].id))

    def test_delete_backup(self, store, storage, ctx):
        asyncio.run(store.run_scheduled_backup(ctx, NOW))
        backup = store.backup_groups[2].newest
        asyncio.run(store.delete_session(backup.session_id))

        assert store.backup_groups[2].newest is None
        assert store.get_session_by_id(backup.session_id) is None
        assert len(store.change_log) == 0
        reloaded = asyncio.run(SessionStore.load(storage))
        assert reloaded.backup_groups[2].newest is None
        assert reloaded.backup_groups[0].newest is not None

    def test_copy_backup_to_user(self, store, ctx):
        asyncio.run(store.run_scheduled_backup(ctx, NOW))
        backup = store.backup_groups[0].newest
        copy = asyncio.run(store.copy_to_user(backup.session_id))

        assert copy.is_user
        assert copy.group == ""
        assert copy.session_name == f"{backup.session_name} - Copy1"
        assert store.user_count == 1

    def test_delete_all_backups(self, store, ctx):
        asyncio.run(store.run_scheduled_backup(ctx, NOW))
        asyncio.run(store.delete_all_backup_sessions())
        assert store.auto_count == 0
        assert store.most_recent_session is None


# ═══════════════════════════════════════════════════════════════
# 4. ON-CHANGE BACKUPS
# ═══════════════════════════════════════════════════════════════

class TestOnChangeBackup:

    def test_identical_capture_skipped(self, store, ctx, host):
        async def scenario():
            first = await store.backup_on_change(ctx)
            second = await store.backup_on_change(ctx)
            next(iter(host.tabs.values())).url = "https://changed.example/"
            third = await store.backup_on_change(ctx)
            return first, second, third

        first, second, third = asyncio.run(scenario())
        assert first is not None and first.is_onchange
        assert second is None
        assert third is not None
        assert store.onchange_count == 2
        assert store.onchange_session_list[0] is third
        assert store.last_onchange_saved_id == third.session_id

    def test_ring_is_bounded(self, storage, ctx, host):
        store = SessionStore(storage, TabVaultConfig(max_onchange_sessions=2))
        tab = next(iter(host.tabs.values()))

        async def scenario():
            for n in range(3):
                tab.url = f"https://page{n}.example/"
                await store.backup_on_change(ctx)

        asyncio.run(scenario())
        assert store.onchange_count == 2

    def test_not_deletable_one_by_one(self, store, ctx):
        sess = asyncio.run(store.backup_on_change(ctx))
        with pytest.raises(InvalidStateError):
            asyncio.run(store.delete_session(sess.session_id))

    def test_delete_all(self, store, ctx):
        asyncio.run(store.backup_on_change(ctx))
        asyncio.run(store.delete_all_onchange_sessions())
        assert store.onchange_count == 0


# ═══════════════════════════════════════════════════════════════
# 5. RESTORATION THROUGH THE STORE
# ═══════════════════════════════════════════════════════════════

class TestStoreRestore:

    def test_restore_records_last_restored(self, store, storage, ctx):
        async def scenario():
            sess = await store.save_all_windows(ctx)
            await store.restore_session(ctx, sess.session_id, is_replace=False)
            return sess, await storage.get("appStateStore")

        sess, stored = asyncio.run(scenario())
        assert store.last_restored_id == sess.session_id
        assert stored["appStateStore"]["last_restored_id"] == sess.session_id

    def test_session_without_windows_rejected_before_host_calls(self, store, ctx, host):
        async def scenario():
            sess = await store.save_all_windows(ctx)
            await store.delete_window(sess.session_id, sess.windows[0].id)
            with pytest.raises(InvalidStateError):
                await store.restore_session(ctx, sess.session_id, is_replace=True)

        asyncio.run(scenario())
        assert host.calls["create_window"] == 0
        assert host.calls["get_all_windows"] == 0

    def test_only_explicit_windows_rejected_before_host_calls(self, store, ctx, host):
        async def scenario():
            sess = await store.save_all_windows(ctx)
            await store.set_window_property(sess.session_id, sess.windows[0].id, "explicit_restore", True)
            with pytest.raises(InvalidStateError):
                await store.restore_session(ctx, sess.session_id, is_replace=True)

        before = set(host.windows)
        asyncio.run(scenario())
        assert host.calls["create_window"] == 0
        assert host.calls["get_all_windows"] == 0
        assert set(host.windows) == before

    def test_replace_with_nothing_matching_keeps_windows(self, store, ctx, host):
        async def scenario():
            sess = await store.save_all_windows(ctx)
            await store.restore_session(ctx, sess.session_id, True, ["nomatch"], True)

        before = set(host.windows)
        asyncio.run(scenario())
        assert set(host.windows) == before

    def test_restore_unknown_window(self, store, ctx):
        sess = asyncio.run(store.save_all_windows(ctx))
        with pytest.raises(NotFoundError):
            asyncio.run(store.restore_window(ctx, sess.session_id, WindowId(424242)))

    def test_restore_tab_leaves_last_restored(self, store, ctx):
        async def scenario():
            sess = await store.save_all_windows(ctx)
            wid = sess.windows[0].id
            await store.restore_tab(ctx, sess.session_id, wid, sess.window_tabs(wid)[0].id)

        asyncio.run(scenario())
        assert store.last_restored_id == ""


# ═══════════════════════════════════════════════════════════════
# 6. LOADING AND LISTING
# ═══════════════════════════════════════════════════════════════

class TestPersistence:

    def test_reload_everything(self, store, storage, ctx):
        async def scenario():
            user = await store.save_all_windows(ctx)
            await store.toggle_auto_restore(user.session_id)
            await store.run_scheduled_backup(ctx, NOW)
            await store.backup_on_change(ctx)
            await store.restore_session(ctx, user.session_id, is_replace=False)
            return await SessionStore.load(storage)

        loaded = asyncio.run(scenario())
        assert pool_state(loaded) == pool_state(store)
        assert [g.to_dict() for g in loaded.backup_groups] == [g.to_dict() for g in store.backup_groups]
        assert [s.session_id for s in loaded.onchange_session_list] == [
            s.session_id for s in store.onchange_session_list]
        assert loaded.last_restored_id == store.last_restored_id
        assert loaded.auto_saved_id_on_crash == store.last_onchange_saved_id
        assert loaded.total_count == store.total_count

    def test_missing_snapshot_starts_empty(self, store, storage, ctx):
        async def scenario():
            await store.save_all_windows(ctx)
            await storage.remove("snapshot00")
            return await SessionStore.load(storage)

        assert asyncio.run(scenario()).user_count == 0

    def test_unknown_backup_version(self, storage):
        asyncio.run(storage.set({"backupSessionStore": {
            "backup_session_groups": [{"_type": "SessionGroup", "_version": 9, "group_type": "hourly"}],
        }}))
        with pytest.raises(VersionMismatchError):
            asyncio.run(SessionStore.load(storage))

    def test_purge(self, store, storage, ctx):
        async def scenario():
            await store.save_all_windows(ctx)
            await store.run_scheduled_backup(ctx, NOW)
            await store.purge_all_data()
            return await storage.keys()

        assert asyncio.run(scenario()) == []
        assert store.total_count == 0
        assert store.snapshot_cursor == -1

    def test_flush(self, store, storage, ctx):
        asyncio.run(store.backup_on_change(ctx))
        asyncio.run(store.flush())
        keys = asyncio.run(storage.keys())
        assert {"changeLogStore", "backupSessionStore", "onchangeSessionStore",
                "crashStore", "appStateStore"} <= set(keys)

    def test_list_and_labels(self, store, ctx):
        async def scenario():
            user = await store.save_all_windows(ctx)
            await store.rename_session(user.session_id, "Morning reading")
            await store.run_scheduled_backup(ctx, NOW)
            return user

        user = asyncio.run(scenario())
        pools = store.list_sessions(["morning"])
        assert [s.session_id for s in pools["user"]] == [user.session_id]
        assert pools["backup"] == []
        assert store.last_saved_label(user) == "current"
        assert store.last_saved_label(store.backup_groups[0].newest) == "saved"
        assert store.last_saved_label(store.backup_groups[1].newest) == ""
