"""FastAPI application exposing the running focus timer over a local API."""

from __future__ import annotations

import logging
import threading
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from .config import TrackerSettings
from .db import SqliteUsageRepository, database_connection
from .engine import SubjectStatus
from .errors import SubjectError
from .models import Interval
from .normalization import SESSION_KEY
from .paths import get_db_path
from .reporting import SubjectDayUsage, collect_usages_for_date, concentration_percent
from .tracker import FocusTracker, build_tracker

logger = logging.getLogger(__name__)

_CALL_TIMEOUT_SECONDS = 5.0


class TrackerRunner:
    """Manage the tracker loop in a background thread."""

    def __init__(self, tracker: FocusTracker) -> None:
        self.tracker = tracker
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event: Optional[threading.Event] = None

    def start(self) -> None:
        with self._lock:
            if self._thread and self._thread.is_alive():
                return
            stop_event = threading.Event()
            thread = threading.Thread(
                target=self.tracker.run_until_stopped,
                args=(stop_event,),
                daemon=True,
            )
            self._thread = thread
            self._stop_event = stop_event
            thread.start()
            logger.info("Tracker background thread started.")

    def stop(self) -> None:
        thread: Optional[threading.Thread] = None
        with self._lock:
            if not self._thread or not self._thread.is_alive() or not self._stop_event:
                return
            self._stop_event.set()
            thread = self._thread
            self._thread = None
            self._stop_event = None
        if thread:
            thread.join(timeout=10)
            logger.info("Tracker background thread stopped.")

    def is_running(self) -> bool:
        with self._lock:
            return bool(self._thread and self._thread.is_alive())

    def call(self, fn: Callable[[], Any]) -> Any:
        """Run ``fn`` on the accounting thread, or inline when it is not running."""
        if not self.is_running():
            return fn()
        return self.tracker.submit(fn).result(timeout=_CALL_TIMEOUT_SECONDS)


class SubjectPayload(BaseModel):
    executable_path: str
    counted: Optional[bool] = None

    model_config = ConfigDict(extra="forbid")


class SubjectUpdate(BaseModel):
    key: str
    counted: bool

    model_config = ConfigDict(extra="forbid")


class HoldPayload(BaseModel):
    minutes: Optional[int] = Field(default=None, gt=0)

    model_config = ConfigDict(extra="forbid")


class PreferencesUpdate(BaseModel):
    focus_lock_hold_minutes: Optional[int] = Field(default=None, gt=0)
    activity_timeout_seconds: Optional[int] = Field(default=None, gt=0)

    model_config = ConfigDict(extra="forbid")


def create_app(
    *,
    db_path: Optional[Path] = None,
    settings: Optional[TrackerSettings] = None,
    tracker: Optional[FocusTracker] = None,
    start_tracker: bool = True,
) -> FastAPI:
    """Instantiate the FastAPI application."""
    resolved_db_path = Path(db_path or get_db_path())
    resolved_tracker = tracker or build_tracker(resolved_db_path, settings)
    runner = TrackerRunner(resolved_tracker)

    app = FastAPI(title="Focus Timer", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.db_path = resolved_db_path
    app.state.tracker_runner = runner

    @app.on_event("startup")
    async def _startup() -> None:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
        if start_tracker:
            runner.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        runner.stop()
        resolved_tracker.close()

    @app.get("/api/status")
    def status(request: Request) -> Dict[str, Any]:
        return {
            "tracker_running": request.app.state.tracker_runner.is_running(),
            "database_path": str(request.app.state.db_path),
            **runner.call(lambda: _status_snapshot(resolved_tracker)),
        }

    @app.get("/api/subjects")
    def list_subjects() -> Dict[str, Any]:
        subjects = runner.call(resolved_tracker.engine.subjects)
        return {"subjects": [_subject_payload(subject) for subject in subjects]}

    @app.get("/api/usages")
    def usages(
        request: Request,
        date: Optional[str] = Query(
            default=None,
            description="Target date in YYYY-MM-DD format.",
        ),
    ) -> Dict[str, Any]:
        target_day = _parse_date(date)
        with database_connection(request.app.state.db_path) as conn:
            entries = collect_usages_for_date(SqliteUsageRepository(conn), target_day)
        return {
            "date": target_day.isoformat(),
            "concentration": concentration_percent(entries),
            "subjects": [_day_usage_payload(entry) for entry in entries],
        }

    @app.post("/api/subjects")
    def register_subject(payload: SubjectPayload) -> Dict[str, Any]:
        try:
            key = runner.call(
                lambda: resolved_tracker.register_app(payload.executable_path, payload.counted)
            )
        except SubjectError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"key": key}

    @app.post("/api/subjects/register-next")
    def register_next_focused() -> Dict[str, Any]:
        runner.call(resolved_tracker.begin_registration)
        return {"registering": True}

    @app.delete("/api/subjects/register-next")
    def cancel_register_next() -> Dict[str, Any]:
        runner.call(resolved_tracker.cancel_registration)
        return {"registering": False}

    @app.patch("/api/subjects")
    def update_subject(payload: SubjectUpdate) -> Dict[str, Any]:
        try:
            runner.call(lambda: resolved_tracker.set_counted(payload.key, payload.counted))
        except SubjectError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return {"key": payload.key, "counted": payload.counted}

    @app.delete("/api/subjects")
    def unregister_subject(key: str = Query(...)) -> Dict[str, Any]:
        try:
            runner.call(lambda: resolved_tracker.unregister_app(key))
        except SubjectError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return {"key": key, "removed": True}

    @app.post("/api/focus-lock/toggle")
    def toggle_focus_lock() -> Dict[str, Any]:
        accepted = resolved_tracker.focus_lock.toggle()
        return {"accepted": accepted, **_focus_lock_payload(resolved_tracker)}

    @app.post("/api/focus-lock/hold")
    def hold_focus_lock(payload: HoldPayload) -> Dict[str, Any]:
        duration = timedelta(minutes=payload.minutes) if payload.minutes else None
        resolved_tracker.focus_lock.start_with_hold(duration)
        return _focus_lock_payload(resolved_tracker)

    @app.post("/api/reset")
    def reset() -> Dict[str, Any]:
        runner.call(resolved_tracker.engine.reset)
        return {"reset": True}

    @app.get("/api/preferences")
    def get_preferences() -> Dict[str, Any]:
        return runner.call(lambda: _preferences_payload(resolved_tracker))

    @app.put("/api/preferences")
    def update_preferences(payload: PreferencesUpdate) -> Dict[str, Any]:
        updates = payload.model_dump(exclude_unset=True, exclude_none=True)
        return runner.call(lambda: _apply_preferences(resolved_tracker, updates))

    return app


def _focus_lock_payload(tracker: FocusTracker) -> Dict[str, Any]:
    focus_lock = tracker.focus_lock
    return {
        "state": focus_lock.state.value,
        "hold_seconds_left": focus_lock.hold_remaining.total_seconds(),
        "minutes_left": focus_lock.minutes_left,
    }


def _status_snapshot(tracker: FocusTracker) -> Dict[str, Any]:
    engine = tracker.engine
    return {
        "elapsed_seconds": engine.get_elapsed(SESSION_KEY).total_seconds(),
        "active_seconds": engine.get_active_elapsed(SESSION_KEY).total_seconds(),
        "concentration": engine.get_concentration_percent(),
        "downtime_gaps": engine.downtime_gaps,
        "registering": tracker.is_registering,
        "focus_lock": _focus_lock_payload(tracker),
        "subjects": [_subject_payload(subject) for subject in engine.subjects()],
    }


def _subject_payload(subject: SubjectStatus) -> Dict[str, Any]:
    return {
        "key": subject.key,
        "name": subject.name,
        "is_session": subject.is_session,
        "counted": subject.counted,
        "active": subject.active,
        "elapsed_seconds": subject.elapsed.total_seconds(),
        "active_seconds": subject.active_elapsed.total_seconds(),
    }


def _preferences_payload(tracker: FocusTracker) -> Dict[str, Any]:
    preferences = tracker.preferences
    if preferences is None:
        raise HTTPException(status_code=404, detail="Preferences are not available")
    return {
        "focus_lock_hold_minutes": preferences.focus_lock_hold_minutes,
        "activity_timeout_seconds": preferences.activity_timeout_seconds,
        "registered_apps": preferences.registered_apps,
    }


def _apply_preferences(tracker: FocusTracker, updates: Dict[str, int]) -> Dict[str, Any]:
    preferences = tracker.preferences
    if preferences is None:
        raise HTTPException(status_code=404, detail="Preferences are not available")
    if "focus_lock_hold_minutes" in updates:
        preferences.focus_lock_hold_minutes = updates["focus_lock_hold_minutes"]
        tracker.focus_lock.default_hold = timedelta(minutes=preferences.focus_lock_hold_minutes)
    if "activity_timeout_seconds" in updates:
        preferences.activity_timeout_seconds = updates["activity_timeout_seconds"]
        tracker.activity.idle_timeout = timedelta(seconds=preferences.activity_timeout_seconds)
    return _preferences_payload(tracker)


def _parse_date(value: Optional[str]) -> date:
    if not value:
        return datetime.now().date()
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid date format") from exc


def _interval_payload(interval: Interval) -> Dict[str, Any]:
    return {
        "started_at": interval.started_at.isoformat(),
        "updated_at": interval.updated_at.isoformat(),
        "seconds": interval.elapsed.total_seconds(),
    }


def _day_usage_payload(entry: SubjectDayUsage) -> Dict[str, Any]:
    return {
        "key": entry.subject_key,
        "name": entry.name,
        "counted": entry.counted,
        "running_seconds": entry.running_elapsed.total_seconds(),
        "active_seconds": entry.active_elapsed.total_seconds(),
        "running_usages": [
            {
                **_interval_payload(running),
                "active_usages": [_interval_payload(active) for active in running.active_usages],
            }
            for running in entry.running_usages
        ],
    }
