"""CLI interface for tabvault.

Offline access to a session store on disk. Settings come from
~/.tabvault/config.yaml; --data-dir overrides the store location.

Quick start:
    tabvault list                          # All sessions, newest last
    tabvault list work --by-tab            # Sessions with a tab matching "work"
    tabvault show <session-id>             # Windows and tabs of a session
    tabvault rename <session-id> "Work"    # Rename a user session
    tabvault undo                          # Step back one user-session change
"""

import asyncio
from pathlib import Path
from typing import Any, Awaitable, Callable

import typer
from rich.console import Console
from rich.table import Table

from tabvault import __version__
from tabvault.config import load_config, setup_logging
from tabvault.errors import TabVaultError
from tabvault.session import Session
from tabvault.settings import Settings, load_settings, update_setting
from tabvault.storage import JsonFileStorage
from tabvault.store import SessionStore

app = typer.Typer(
    name="tabvault",
    help="Tab session manager: saved sessions, rotating backups, undo/redo",
    no_args_is_help=True,
)

settings_app = typer.Typer(help="Show or change persisted settings")
app.add_typer(settings_app, name="settings")

console = Console()

DATA_DIR_OPTION = typer.Option(None, "--data-dir", "-d", help="Store directory (overrides config)")


def _storage(data_dir: Path | None) -> JsonFileStorage:
    config = load_config()
    setup_logging(config)
    return JsonFileStorage(data_dir or config.data_dir)


def _with_store(data_dir: Path | None, fn: Callable[[SessionStore], Awaitable[Any]]) -> Any:
    """Load the store, run ``fn`` against it, and report store errors."""
    async def run() -> Any:
        store = await SessionStore.load(_storage(data_dir), load_config())
        return await fn(store)

    try:
        return asyncio.run(run())
    except TabVaultError as e:
        console.print(f"[red]{type(e).__name__}: {e}[/red]")
        raise typer.Exit(1)


def _session_table(title: str, sessions: list[Session], store: SessionStore) -> Table:
    table = Table(title=title)
    table.add_column("ID", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Group")
    table.add_column("Saved", style="green")
    table.add_column("Windows", justify="right")
    table.add_column("Tabs", justify="right")
    table.add_column("")
    for sess in sessions:
        marks = [store.last_saved_label(sess)]
        if store.auto_restore_session_id == sess.session_id:
            marks.append("auto-restore")
        table.add_row(
            sess.session_id,
            sess.session_name,
            sess.group,
            sess.full_time,
            str(sess.window_count),
            str(sess.tab_count),
            " ".join(m for m in marks if m),
        )
    return table


@app.command()
def version() -> None:
    """Show the tabvault version."""
    console.print(f"tabvault version {__version__}")


@app.command("list")
def list_sessions(
    terms: list[str] = typer.Argument(None, help="Search terms; group:name matches groups"),
    by_tab: bool = typer.Option(False, "--by-tab", "-t", help="Match tab titles instead of session names"),
    data_dir: Path = DATA_DIR_OPTION,
) -> None:
    """List user, backup and on-change sessions."""
    async def run(store: SessionStore) -> None:
        pools = store.list_sessions(terms or [], by_tab)
        titles = {"user": "User sessions", "backup": "Backups", "onchange": "On-change backups"}
        for pool, sessions in pools.items():
            if sessions:
                console.print(_session_table(titles[pool], sessions, store))
        if not any(pools.values()):
            console.print("[dim]No sessions.[/dim]")

    _with_store(data_dir, run)


@app.command()
def show(
    session_id: str = typer.Argument(..., help="Session id"),
    data_dir: Path = DATA_DIR_OPTION,
) -> None:
    """Show the windows and tabs of one session."""
    async def run(store: SessionStore) -> None:
        sess = store.find_session(session_id)
        console.print(f"[bold]{sess.session_name}[/bold] [dim]{sess.full_time}[/dim]")
        if sess.group:
            console.print(f"Group: {sess.group}")
        for windex, win in enumerate(sess.windows):
            table = Table(title=sess.window_name(windex))
            table.add_column("Tab", style="dim")
            table.add_column("Title", style="cyan")
            table.add_column("URL")
            for tab in sess.tabs_of_window.get(win.id, []):
                title = ("* " if tab.active else "") + tab.title
                table.add_row(str(tab.id), title, tab.url)
            console.print(table)

    _with_store(data_dir, run)


@app.command()
def rename(
    session_id: str = typer.Argument(..., help="Session id"),
    new_name: str = typer.Argument(..., help="New session name"),
    data_dir: Path = DATA_DIR_OPTION,
) -> None:
    """Rename a user session."""
    _with_store(data_dir, lambda store: store.rename_session(session_id, new_name))
    console.print(f"[green]Renamed {session_id} to {new_name}[/green]")


@app.command("set-group")
def set_group(
    session_id: str = typer.Argument(..., help="Session id"),
    group: str = typer.Argument("", help="Group name; empty clears it"),
    data_dir: Path = DATA_DIR_OPTION,
) -> None:
    """Set or clear the group of a user session."""
    _with_store(data_dir, lambda store: store.set_session_group(session_id, group))
    console.print(f"[green]Group of {session_id} set to {group or '(none)'}[/green]")


@app.command()
def copy(
    session_id: str = typer.Argument(..., help="Session id"),
    data_dir: Path = DATA_DIR_OPTION,
) -> None:
    """Copy a session (typically a backup) into the user sessions."""
    sess = _with_store(data_dir, lambda store: store.copy_to_user(session_id))
    console.print(f"[green]Copied as {sess.session_name} ({sess.session_id})[/green]")


@app.command()
def delete(
    session_id: str = typer.Argument(..., help="Session id"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Don't ask for confirmation"),
    data_dir: Path = DATA_DIR_OPTION,
) -> None:
    """Delete a user or backup session."""
    if not yes and not typer.confirm(f"Delete session {session_id}?"):
        raise typer.Abort()
    _with_store(data_dir, lambda store: store.delete_session(session_id))
    console.print(f"[green]Deleted {session_id}[/green]")


@app.command()
def undo(data_dir: Path = DATA_DIR_OPTION) -> None:
    """Step the user sessions back one change."""
    if _with_store(data_dir, lambda store: store.undo_snapshot()):
        console.print("[green]Undone.[/green]")
    else:
        console.print("[yellow]Nothing to undo.[/yellow]")


@app.command()
def redo(data_dir: Path = DATA_DIR_OPTION) -> None:
    """Step the user sessions forward one change."""
    if _with_store(data_dir, lambda store: store.redo_snapshot()):
        console.print("[green]Redone.[/green]")
    else:
        console.print("[yellow]Nothing to redo.[/yellow]")


@app.command()
def purge(
    yes: bool = typer.Option(False, "--yes", "-y", help="Don't ask for confirmation"),
    data_dir: Path = DATA_DIR_OPTION,
) -> None:
    """Delete every session, backup, snapshot and setting."""
    if not yes and not typer.confirm("Delete ALL tabvault data?"):
        raise typer.Abort()
    _with_store(data_dir, lambda store: store.purge_all_data())
    console.print("[green]All data purged.[/green]")


# ── Settings ─────────────────────────────────────────────────

@settings_app.command("show")
def settings_show(data_dir: Path = DATA_DIR_OPTION) -> None:
    """Show the persisted settings."""
    settings = asyncio.run(load_settings(_storage(data_dir)))
    table = Table(title="Settings")
    table.add_column("Name", style="cyan")
    table.add_column("Value")
    for name, value in settings.to_dict().items():
        if not name.startswith("_"):
            table.add_row(name, str(value))
    console.print(table)


@settings_app.command("set")
def settings_set(
    name: str = typer.Argument(..., help="Setting name, e.g. enable_schedule_backup"),
    value: bool = typer.Argument(..., help="true or false"),
    data_dir: Path = DATA_DIR_OPTION,
) -> None:
    """Change one setting."""
    try:
        settings: Settings = asyncio.run(update_setting(_storage(data_dir), name, value))
    except TabVaultError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]{name} = {settings.to_dict()[name]}[/green]")


if __name__ == "__main__":
    app()
