"""Configuration models and helpers for the focus timer."""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass
from datetime import timedelta

from .db import get_setting, set_setting

DEFAULT_HOLD_MINUTES = 10
DEFAULT_ACTIVITY_TIMEOUT_SECONDS = 10


@dataclass(slots=True)
class TrackerSettings:
    """Runtime configuration for the tracker loop and its observers."""

    tick_interval: timedelta = timedelta(seconds=1)
    poll_interval: timedelta = timedelta(milliseconds=50)
    idle_timeout: timedelta = timedelta(seconds=DEFAULT_ACTIVITY_TIMEOUT_SECONDS)
    restore_debounce: timedelta = timedelta(milliseconds=200)
    downtime_tolerance: timedelta = timedelta(seconds=5)
    focus_lock_hold: timedelta = timedelta(minutes=DEFAULT_HOLD_MINUTES)


class Preferences:
    """User preferences persisted next to the usage records.

    Missing or non-positive numbers fall back to their defaults.
    """

    FOCUS_LOCK_HOLD = "focus_lock_hold_minutes"
    ACTIVITY_TIMEOUT = "activity_timeout_seconds"
    REGISTERED_APPS = "registered_apps"

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    @property
    def focus_lock_hold_minutes(self) -> int:
        return self._positive_int(self.FOCUS_LOCK_HOLD, DEFAULT_HOLD_MINUTES)

    @focus_lock_hold_minutes.setter
    def focus_lock_hold_minutes(self, minutes: int) -> None:
        set_setting(self._conn, self.FOCUS_LOCK_HOLD, str(int(minutes)))

    @property
    def activity_timeout_seconds(self) -> int:
        return self._positive_int(self.ACTIVITY_TIMEOUT, DEFAULT_ACTIVITY_TIMEOUT_SECONDS)

    @activity_timeout_seconds.setter
    def activity_timeout_seconds(self, seconds: int) -> None:
        set_setting(self._conn, self.ACTIVITY_TIMEOUT, str(int(seconds)))

    @property
    def registered_apps(self) -> list[dict]:
        """Registered apps as ``{"path": ..., "counted": ...}`` entries."""
        raw = get_setting(self._conn, self.REGISTERED_APPS)
        if not raw:
            return []
        try:
            entries = json.loads(raw)
        except json.JSONDecodeError:
            return []
        return [
            {"path": entry["path"], "counted": bool(entry.get("counted", True))}
            for entry in entries
            if isinstance(entry, dict) and entry.get("path")
        ]

    @registered_apps.setter
    def registered_apps(self, entries: list[dict]) -> None:
        set_setting(self._conn, self.REGISTERED_APPS, json.dumps(entries))

    def apply_to(self, settings: TrackerSettings) -> TrackerSettings:
        """Overlay stored preferences onto runtime settings."""
        settings.idle_timeout = timedelta(seconds=self.activity_timeout_seconds)
        settings.focus_lock_hold = timedelta(minutes=self.focus_lock_hold_minutes)
        return settings

    def _positive_int(self, key: str, fallback: int) -> int:
        raw = get_setting(self._conn, key)
        try:
            value = int(raw) if raw is not None else 0
        except ValueError:
            value = 0
        return value if value > 0 else fallback
