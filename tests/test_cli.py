"""Tests for the tabvault CLI."""

import asyncio

import pytest
from typer.testing import CliRunner

from tabvault import __version__, cli
from tabvault.cli import app
from tabvault.pending import PendingTabs
from tabvault.restore import RestoreContext
from tabvault.settings import load_settings
from tabvault.storage import JsonFileStorage
from tabvault.store import SessionStore

runner = CliRunner()


@pytest.fixture(autouse=True)
def wide_console(monkeypatch):
    # Session ids and names stay on one line in tables
    monkeypatch.setattr(cli.console, "width", 200)


@pytest.fixture
def data_dir(tmp_path, host):
    """A store on disk holding one user session named "Morning"."""
    async def seed():
        store = SessionStore(JsonFileStorage(tmp_path))
        sess = await store.save_all_windows(RestoreContext(host, PendingTabs()))
        await store.rename_session(sess.session_id, "Morning")
        return sess.session_id

    return tmp_path, asyncio.run(seed())


def invoke(*args):
    return runner.invoke(app, list(args))


class TestCli:

    def test_version(self):
        result = invoke("version")
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_list(self, data_dir):
        path, sid = data_dir
        result = invoke("list", "--data-dir", str(path))
        assert result.exit_code == 0
        assert "Morning" in result.output

    def test_list_empty(self, tmp_path):
        result = invoke("list", "--data-dir", str(tmp_path))
        assert result.exit_code == 0
        assert "No sessions." in result.output

    def test_show(self, data_dir):
        path, sid = data_dir
        result = invoke("show", sid, "--data-dir", str(path))
        assert result.exit_code == 0
        assert "https://a.example/" in result.output

    def test_show_unknown(self, data_dir):
        path, _ = data_dir
        result = invoke("show", "nope", "--data-dir", str(path))
        assert result.exit_code == 1
        assert "NotFoundError" in result.output

    def test_rename_then_undo(self, data_dir):
        path, sid = data_dir
        assert invoke("rename", sid, "Evening", "--data-dir", str(path)).exit_code == 0
        assert "Evening" in invoke("list", "--data-dir", str(path)).output

        result = invoke("undo", "--data-dir", str(path))
        assert "Undone." in result.output
        assert "Morning" in invoke("list", "--data-dir", str(path)).output
        assert "Redone." in invoke("redo", "--data-dir", str(path)).output

    def test_copy(self, data_dir):
        path, sid = data_dir
        result = invoke("copy", sid, "--data-dir", str(path))
        assert result.exit_code == 0
        assert "Morning - Copy1" in result.output

    def test_delete_needs_confirmation(self, data_dir):
        path, sid = data_dir
        result = runner.invoke(app, ["delete", sid, "--data-dir", str(path)], input="n\n")
        assert result.exit_code != 0
        assert "Morning" in invoke("list", "--data-dir", str(path)).output

        assert invoke("delete", sid, "--yes", "--data-dir", str(path)).exit_code == 0
        assert "No sessions." in invoke("list", "--data-dir", str(path)).output

    def test_purge(self, data_dir):
        path, _ = data_dir
        assert invoke("purge", "--yes", "--data-dir", str(path)).exit_code == 0
        assert list(path.glob("*.json")) == []


class TestSettingsCli:

    def test_set_and_show(self, tmp_path):
        result = invoke("settings", "set", "auto_restore_on_startup", "true", "--data-dir", str(tmp_path))
        assert result.exit_code == 0
        assert asyncio.run(load_settings(JsonFileStorage(tmp_path))).auto_restore_on_startup

        shown = invoke("settings", "show", "--data-dir", str(tmp_path))
        assert "auto_restore_on_startup" in shown.output

    def test_unknown_setting(self, tmp_path):
        result = invoke("settings", "set", "dark_mode", "true", "--data-dir", str(tmp_path))
        assert result.exit_code == 1
