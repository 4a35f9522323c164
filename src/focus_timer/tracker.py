"""Runtime loop that drives accounting from clock pulses and OS events."""

from __future__ import annotations

import logging
import queue
import sqlite3
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

from .config import Preferences, TrackerSettings
from .db import SqliteUsageRepository, open_database
from .engine import AccountingEngine
from .errors import SubjectError
from .focus_lock import FocusLock
from .observers import ActivityObserver, FocusObserver

logger = logging.getLogger(__name__)

_QUEUE_WAIT_SECONDS = 0.25


@dataclass(frozen=True, slots=True)
class Tick:
    pulse: int


@dataclass(frozen=True, slots=True)
class FocusChanged:
    previous: int
    current: int


@dataclass(frozen=True, slots=True)
class Activated:
    pass


@dataclass(frozen=True, slots=True)
class Call:
    fn: Callable[[], Any]
    future: Future = field(default_factory=Future)


class FocusTracker:
    """Funnels clock pulses and observer events into the accounting engine.

    Pulses come from a clock thread and focus/activity edges from an observer
    thread, but both only enqueue events. The thread running
    :meth:`run_until_stopped` handles them one at a time in arrival order and
    is the only one that touches accounting state.
    """

    def __init__(
        self,
        engine: AccountingEngine,
        focus: FocusObserver,
        activity: ActivityObserver,
        focus_lock: FocusLock,
        preferences: Optional[Preferences] = None,
        settings: Optional[TrackerSettings] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> None:
        self.engine = engine
        self.focus = focus
        self.activity = activity
        self.focus_lock = focus_lock
        self.preferences = preferences
        self.settings = settings or engine.settings
        self._events: queue.Queue[object] = queue.Queue()
        self._registering = False
        self.last_failures: dict[str, Exception] = {}
        self._conn = conn

    @property
    def is_registering(self) -> bool:
        return self._registering

    # Producers

    def post(self, event: object) -> None:
        self._events.put(event)

    def submit(self, fn: Callable[[], Any]) -> Future:
        """Run ``fn`` on the accounting thread and return its future."""
        call = Call(fn)
        self._events.put(call)
        return call.future

    def poll_observers(self) -> None:
        change = self.focus.poll()
        if change is not None:
            self.post(FocusChanged(change.previous, change.current))
        if self.activity.poll():
            self.post(Activated())

    # Consumer

    def run_forever(self) -> None:
        stop_event = threading.Event()
        try:
            self.run_until_stopped(stop_event)
        except KeyboardInterrupt:
            logger.info("Tracker interrupted; stopping.")
            stop_event.set()

    def run_until_stopped(self, stop_event: threading.Event) -> None:
        """Run the tracker until the provided event is set."""
        workers = [
            threading.Thread(target=self._run_clock, args=(stop_event,), daemon=True),
            threading.Thread(target=self._run_observers, args=(stop_event,), daemon=True),
        ]
        for worker in workers:
            worker.start()
        logger.info("Tracker started with %d registered app(s).", len(self.engine.app_keys))
        try:
            self._run_loop(stop_event)
        finally:
            stop_event.set()
            for worker in workers:
                worker.join(timeout=5)
            self.focus_lock.cancel_pending()
            logger.info("Tracker stopped.")

    def close(self) -> None:
        self.focus_lock.cancel_pending()
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def drain(self) -> int:
        """Handle every queued event without blocking. Returns how many ran."""
        handled = 0
        while True:
            try:
                event = self._events.get_nowait()
            except queue.Empty:
                return handled
            self.dispatch(event)
            handled += 1

    def dispatch(self, event: object) -> None:
        if isinstance(event, Call):
            self._handle_call(event)
            return
        try:
            if isinstance(event, Tick):
                self._handle_tick()
            elif isinstance(event, FocusChanged):
                self._handle_focus_changed(event)
            elif isinstance(event, Activated):
                self.engine.notify_activated()
            else:
                logger.warning("Ignoring unknown event %r.", event)
        except Exception:
            logger.exception("Failed to handle %r.", event)

    def _run_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                event = self._events.get(timeout=_QUEUE_WAIT_SECONDS)
            except queue.Empty:
                continue
            self.dispatch(event)

    def _run_clock(self, stop_event: threading.Event) -> None:
        interval = self.settings.tick_interval.total_seconds()
        next_at = time.monotonic() + interval
        pulse = 0
        while not stop_event.wait(max(0.0, next_at - time.monotonic())):
            pulse += 1
            self.post(Tick(pulse))
            next_at += interval
            now = time.monotonic()
            if next_at < now:
                # Fell behind (e.g. system sleep): resume the cadence from now
                # instead of emitting the missed pulses in a burst.
                next_at = now + interval

    def _run_observers(self, stop_event: threading.Event) -> None:
        interval = self.settings.poll_interval.total_seconds()
        while not stop_event.is_set():
            try:
                self.poll_observers()
            except Exception:
                logger.exception("Observer poll failed.")
            stop_event.wait(interval)

    def _handle_tick(self) -> None:
        self.last_failures = self.engine.tick_all()
        self.focus_lock.update()

    def _handle_focus_changed(self, event: FocusChanged) -> None:
        if self._registering and not self.focus.api.is_this_process_foreground():
            self._finish_registration(event.current)
        self.engine.notify_focus_changed(event.previous, event.current)
        self.focus_lock.on_focus_changed(event.previous, event.current)

    @staticmethod
    def _handle_call(call: Call) -> None:
        if not call.future.set_running_or_notify_cancel():
            return
        try:
            result = call.fn()
        except Exception as exc:
            call.future.set_exception(exc)
        else:
            call.future.set_result(result)

    # Subjects

    def begin_registration(self) -> None:
        """Register the next application that receives focus."""
        self._registering = True
        logger.info("Waiting for an application to register.")

    def cancel_registration(self) -> None:
        self._registering = False

    def _finish_registration(self, hwnd: int) -> None:
        self._registering = False
        try:
            self.register_app(self.focus.api.get_process_path(hwnd))
        except SubjectError as exc:
            logger.warning("Could not register window %#x: %s", hwnd, exc)

    def register_app(self, executable_path: Optional[str], counted: Optional[bool] = None) -> str:
        key = self.engine.register_app(executable_path, counted)
        self._save_registered_apps()
        return key

    def unregister_app(self, key: str) -> None:
        self.engine.unregister_app(key)
        self._save_registered_apps()

    def set_counted(self, key: str, counted: bool) -> None:
        self.engine.set_counted(key, counted)
        self._save_registered_apps()

    def restore_registered_apps(self) -> None:
        if self.preferences is None:
            return
        for entry in self.preferences.registered_apps:
            try:
                self.engine.register_app(entry["path"], entry["counted"])
            except SubjectError as exc:
                logger.warning("Skipping stored app %r: %s", entry["path"], exc)

    def _save_registered_apps(self) -> None:
        if self.preferences is None:
            return
        self.preferences.registered_apps = [
            {"path": key, "counted": self.engine.is_counted(key)}
            for key in self.engine.app_keys
        ]


def build_tracker(db_path: Path, settings: Optional[TrackerSettings] = None) -> FocusTracker:
    """Wire a tracker to the Win32 APIs and the database at ``db_path``."""
    from .win32 import WindowsFocusApi, WindowsIdleDetector

    conn = open_database(db_path, check_same_thread=False)
    preferences = Preferences(conn)
    resolved_settings = preferences.apply_to(settings or TrackerSettings())

    api = WindowsFocusApi()
    focus = FocusObserver(api)
    activity = ActivityObserver(
        WindowsIdleDetector(), focus, idle_timeout=resolved_settings.idle_timeout
    )
    engine = AccountingEngine(SqliteUsageRepository(conn), activity, resolved_settings)
    focus_lock = FocusLock(
        api,
        engine.is_any_app_active,
        default_hold=resolved_settings.focus_lock_hold,
        debounce=resolved_settings.restore_debounce,
    )
    tracker = FocusTracker(
        engine, focus, activity, focus_lock, preferences, resolved_settings, conn
    )
    tracker.restore_registered_apps()
    return tracker
