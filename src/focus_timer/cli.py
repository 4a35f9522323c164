"""Command-line interface for the focus timer."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional

import typer

from .config import Preferences, TrackerSettings
from .db import SqliteUsageRepository, database_connection
from .errors import SubjectError
from .normalization import SESSION_KEY, display_name, normalize_executable_path
from .paths import get_db_path, get_log_path
from .server_runner import run_server

app = typer.Typer(help="Focus timer: track how long registered apps hold your focus.")


@app.callback(no_args_is_help=True)
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logs.")) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        handlers=[logging.StreamHandler(), logging.FileHandler(get_log_path(), encoding="utf-8")],
    )


@app.command()
def run(
    db_path: Optional[Path] = typer.Option(
        None,
        "--db",
        path_type=Path,
        help="Location of the usage SQLite database.",
    ),
    app_paths: List[str] = typer.Option(
        [],
        "--app",
        help="Executable path of an application to register (repeatable).",
    ),
    idle_seconds: Optional[float] = typer.Option(
        None,
        "--idle-timeout",
        min=1.0,
        help="Seconds without input before the user counts as idle.",
    ),
) -> None:
    """Run the tracker until interrupted."""
    from .tracker import build_tracker

    settings = TrackerSettings()
    tracker = build_tracker(db_path or get_db_path(), settings)
    if idle_seconds is not None:
        tracker.activity.idle_timeout = settings.idle_timeout = timedelta(seconds=idle_seconds)
    for path in app_paths:
        try:
            tracker.register_app(path)
        except SubjectError as exc:
            raise typer.BadParameter(str(exc), param_hint="--app") from exc
    try:
        tracker.run_forever()
    finally:
        tracker.close()


@app.command()
def web(
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind the API."),
    port: int = typer.Option(8766, "--port", min=1, max=65535, help="TCP port for the API."),
    db_path: Optional[Path] = typer.Option(
        None, "--db", path_type=Path, help="Location of the usage SQLite database."
    ),
) -> None:
    """Run the tracker behind the local HTTP API."""
    run_server(host=host, port=port, db_path=db_path or get_db_path())


@app.command()
def summary(
    date: Optional[str] = typer.Option(
        None,
        "--date",
        help="Date (YYYY-MM-DD) to summarize. Defaults to today.",
    ),
    db_path: Optional[Path] = typer.Option(
        None,
        "--db",
        path_type=Path,
        help="Location of the usage SQLite database.",
    ),
) -> None:
    """Print the usage recorded on a specific day."""
    from .reporting import SummaryPrinter

    target = datetime.strptime(date, "%Y-%m-%d") if date else datetime.now()
    SummaryPrinter(db_path=db_path or get_db_path()).print_daily_summary(target)


@app.command()
def register(
    executable_path: str = typer.Argument(..., help="Executable of the application."),
    uncounted: bool = typer.Option(
        False, "--uncounted", help="Leave the app out of the concentration figure."
    ),
    db_path: Optional[Path] = typer.Option(None, "--db", path_type=Path),
) -> None:
    """Register an application for the next run."""
    try:
        key = normalize_executable_path(executable_path)
    except SubjectError as exc:
        raise typer.BadParameter(str(exc)) from exc
    with database_connection(db_path or get_db_path()) as conn:
        preferences = Preferences(conn)
        entries = [entry for entry in preferences.registered_apps if entry["path"] != key]
        entries.append({"path": key, "counted": not uncounted})
        preferences.registered_apps = entries
    typer.echo(f"Registered {display_name(key)} ({key}).")


@app.command()
def unregister(
    executable_path: str = typer.Argument(..., help="Executable of the application."),
    db_path: Optional[Path] = typer.Option(None, "--db", path_type=Path),
) -> None:
    """Remove an application from the registered list."""
    try:
        key = normalize_executable_path(executable_path)
    except SubjectError as exc:
        raise typer.BadParameter(str(exc)) from exc
    with database_connection(db_path or get_db_path()) as conn:
        preferences = Preferences(conn)
        entries = preferences.registered_apps
        remaining = [entry for entry in entries if entry["path"] != key]
        if len(remaining) == len(entries):
            typer.echo(f"{key} is not registered.", err=True)
            raise typer.Exit(code=1)
        preferences.registered_apps = remaining
    typer.echo(f"Unregistered {display_name(key)}.")


@app.command()
def apps(db_path: Optional[Path] = typer.Option(None, "--db", path_type=Path)) -> None:
    """List registered applications."""
    with database_connection(db_path or get_db_path()) as conn:
        entries = Preferences(conn).registered_apps
    if not entries:
        typer.echo("No applications registered.")
        return
    for entry in entries:
        marker = "" if entry["counted"] else "  (not counted)"
        typer.echo(f"{display_name(entry['path']):<24} {entry['path']}{marker}")


@app.command()
def reset(db_path: Optional[Path] = typer.Option(None, "--db", path_type=Path)) -> None:
    """Start the timer over; the next run does not continue previous usage."""
    with database_connection(db_path or get_db_path()) as conn:
        repository = SqliteUsageRepository(conn)
        keys = [SESSION_KEY] + [entry["path"] for entry in Preferences(conn).registered_apps]
        for key in keys:
            latest = repository.find_latest_usage(key)
            counted = latest.is_concentrated if latest else True
            repository.create_usage(key, False, is_concentrated=counted)
    typer.echo(f"Reset {len(keys)} subject(s).")


@app.command()
def prefs(
    hold_minutes: Optional[int] = typer.Option(
        None, "--hold-minutes", min=1, help="Default focus-lock hold duration."
    ),
    idle_seconds: Optional[int] = typer.Option(
        None, "--idle-timeout", min=1, help="Seconds without input before counting as idle."
    ),
    db_path: Optional[Path] = typer.Option(None, "--db", path_type=Path),
) -> None:
    """Show or change stored preferences."""
    with database_connection(db_path or get_db_path()) as conn:
        preferences = Preferences(conn)
        if hold_minutes is not None:
            preferences.focus_lock_hold_minutes = hold_minutes
        if idle_seconds is not None:
            preferences.activity_timeout_seconds = idle_seconds
        typer.echo(f"Focus-lock hold: {preferences.focus_lock_hold_minutes} min")
        typer.echo(f"Idle timeout:    {preferences.activity_timeout_seconds} s")

