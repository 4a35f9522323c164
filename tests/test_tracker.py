import logging
import threading
import pytest
from datetime import timedelta

from focus_timer.config import Preferences
from focus_timer.focus_lock import FocusLock, FocusLockState
from focus_timer.normalization import SESSION_KEY
from focus_timer.observers import ActivityObserver, FocusObserver
from focus_timer.tracker import Activated, FocusChanged, FocusTracker, Tick

from conftest import APP_A, APP_B

NOTES = "c:\\tools\\notes.exe"


@pytest.fixture
def tracker(engine, conn, clock, focus_api, idle_api, fake_timer):
    focus = FocusObserver(focus_api)
    focus_lock = FocusLock(
        focus_api, engine.is_any_app_active, clock=clock, timer_factory=fake_timer
    )
    return FocusTracker(
        engine,
        focus,
        ActivityObserver(idle_api, focus),
        focus_lock,
        preferences=Preferences(conn),
    )


def test_tick_event_advances_engine(tracker, clock):
    clock.advance()
    tracker.post(Tick(1))
    clock.advance()
    tracker.post(Tick(2))

    assert tracker.drain() == 2
    assert tracker.engine.get_elapsed(SESSION_KEY) == timedelta(seconds=2)
    assert tracker.last_failures == {}


def test_submit_runs_on_loop(tracker):
    future = tracker.submit(lambda: 42)
    assert not future.done()
    tracker.drain()
    assert future.result() == 42


def test_submit_propagates_errors(tracker):
    def boom():
        raise ValueError("bad")

    future = tracker.submit(boom)
    tracker.drain()
    assert isinstance(future.exception(), ValueError)


def test_unknown_event_is_logged(tracker, caplog):
    with caplog.at_level(logging.WARNING, logger="focus_timer.tracker"):
        tracker.post("nonsense")
        tracker.drain()
    assert any("unknown event" in r.getMessage() for r in caplog.records)


def test_events_are_handled_in_order(tracker, engine, activity, clock, repository):
    activity.key = APP_A
    clock.advance()
    tracker.post(Tick(1))
    tracker.post(FocusChanged(0x10, 0x20))
    clock.advance()
    tracker.post(Tick(2))
    tracker.post(Activated())
    clock.advance()
    tracker.post(Tick(3))

    assert tracker.drain() == 5

    fragments = repository.find_latest_usage(APP_A).running_usages[0].active_usages
    assert [f.elapsed for f in fragments] == [timedelta(seconds=1)] * 3


def test_poll_observers_posts_edges(tracker, focus_api):
    focus_api.foreground = 0x100
    tracker.poll_observers()
    assert tracker.drain() == 2

    tracker.poll_observers()
    assert tracker.drain() == 0


def test_registration_takes_next_focused_app(tracker, focus_api, conn):
    focus_api.paths[0x300] = "C:\\Tools\\Notes.exe"
    tracker.begin_registration()
    assert tracker.is_registering

    tracker.post(FocusChanged(0, 0x300))
    tracker.drain()

    assert not tracker.is_registering
    assert NOTES in tracker.engine.app_keys
    assert {"path": NOTES, "counted": True} in Preferences(conn).registered_apps


def test_registration_waits_while_own_window_focused(tracker, focus_api):
    focus_api.own_process_foreground = True
    focus_api.paths[0x300] = "C:\\Tools\\Notes.exe"
    tracker.begin_registration()

    tracker.post(FocusChanged(0, 0x300))
    tracker.drain()

    assert tracker.is_registering
    assert NOTES not in tracker.engine.app_keys


def test_registration_without_process_path_is_dropped(tracker, caplog):
    tracker.begin_registration()
    with caplog.at_level(logging.WARNING, logger="focus_timer.tracker"):
        tracker.post(FocusChanged(0, 0x400))
        tracker.drain()

    assert not tracker.is_registering
    assert tracker.engine.app_keys == [APP_A, APP_B]
    assert any("Could not register" in r.getMessage() for r in caplog.records)


def test_subject_changes_are_persisted(tracker, conn):
    tracker.set_counted(APP_B, True)
    tracker.unregister_app(APP_A)

    assert Preferences(conn).registered_apps == [{"path": APP_B, "counted": True}]


def test_restore_registered_apps(tracker, conn):
    Preferences(conn).registered_apps = [
        {"path": NOTES, "counted": False},
        {"path": SESSION_KEY, "counted": True},
    ]
    tracker.restore_registered_apps()

    assert NOTES in tracker.engine.app_keys
    assert tracker.engine.is_counted(NOTES) is False


def test_tick_releases_expired_hold(tracker, clock):
    tracker.focus_lock.start_with_hold(timedelta(minutes=1))
    clock.advance(timedelta(minutes=2))
    tracker.post(Tick(1))
    tracker.drain()

    assert tracker.focus_lock.state is FocusLockState.LOCKED


def test_focus_change_while_locked_schedules_restore(tracker, fake_timer):
    tracker.focus_lock.lock()
    tracker.post(FocusChanged(0x10, 0x20))
    tracker.drain()

    assert len(fake_timer.created) == 1


def test_run_until_stopped_returns_when_stopped(tracker):
    stop_event = threading.Event()
    stop_event.set()
    tracker.run_until_stopped(stop_event)
    assert stop_event.is_set()
