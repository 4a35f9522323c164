"""Locations of the usage database and log file."""

from __future__ import annotations

from pathlib import Path

from platformdirs import PlatformDirs


APP_NAME = "FocusTimer"
APP_AUTHOR = "FocusTimer"


def _dirs() -> PlatformDirs:
    return PlatformDirs(appname=APP_NAME, appauthor=APP_AUTHOR, roaming=True)


def _ensure(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_dir() -> Path:
    """Directory holding the usage database; created on first use."""
    return _ensure(Path(_dirs().user_data_path))


def get_log_dir() -> Path:
    return _ensure(Path(_dirs().user_log_path))


def get_db_path() -> Path:
    return get_data_dir() / "usage.sqlite3"


def get_log_path() -> Path:
    return get_log_dir() / "focus-timer.log"
