import pytest
from datetime import timedelta

from focus_timer.observers import (
    IGNORED_WINDOW_CLASSES,
    ActivityObserver,
    FocusChange,
    FocusObserver,
)

from conftest import APP_A


def test_focus_change_is_reported_once(focus_api):
    observer = FocusObserver(focus_api)
    focus_api.foreground = 100

    assert observer.poll() == FocusChange(previous=0, current=100)
    assert observer.poll() is None
    assert observer.last_focused == 100

    focus_api.foreground = 200
    assert observer.poll() == FocusChange(previous=100, current=200)


def test_null_foreground_is_ignored(focus_api):
    observer = FocusObserver(focus_api)
    focus_api.foreground = 100
    observer.poll()

    focus_api.foreground = 0
    assert observer.poll() is None
    assert observer.last_focused == 100


@pytest.mark.parametrize("window_class", sorted(IGNORED_WINDOW_CLASSES))
def test_shell_windows_do_not_change_focus(focus_api, window_class):
    observer = FocusObserver(focus_api)
    focus_api.foreground = 100
    observer.poll()

    focus_api.foreground = 300
    focus_api.classes[300] = window_class
    assert observer.poll() is None
    assert observer.last_focused == 100


def test_ignore_list_has_shell_classes():
    assert len(IGNORED_WINDOW_CLASSES) == 9
    assert "Shell_TrayWnd" in IGNORED_WINDOW_CLASSES
    assert "Notepad" not in IGNORED_WINDOW_CLASSES


def test_current_subject_key_normalizes_process_path(focus_api):
    observer = FocusObserver(focus_api)
    focus_api.foreground = 100
    focus_api.paths[100] = "C:\\Apps\\Editor.exe"
    assert observer.current_subject_key() == APP_A

    focus_api.foreground = 200
    assert observer.current_subject_key() is None


def test_activity_edge_fires_on_becoming_active(focus_api, idle_api):
    observer = ActivityObserver(idle_api, FocusObserver(focus_api))

    assert observer.poll() is True
    assert observer.poll() is False

    idle_api.idle = timedelta(seconds=30)
    assert observer.poll() is False
    assert not observer.is_user_active

    idle_api.idle = timedelta(milliseconds=100)
    assert observer.poll() is True


def test_idle_timeout_is_configurable(focus_api, idle_api):
    observer = ActivityObserver(
        idle_api, FocusObserver(focus_api), idle_timeout=timedelta(seconds=60)
    )
    idle_api.idle = timedelta(seconds=30)
    assert observer.is_user_active


def test_idle_query_failure_counts_as_active(focus_api, idle_api):
    observer = ActivityObserver(idle_api, FocusObserver(focus_api))
    idle_api.error = OSError("GetLastInputInfo failed")
    assert observer.is_user_active


def test_active_subject_follows_focus_and_idle(focus_api, idle_api):
    observer = ActivityObserver(idle_api, FocusObserver(focus_api))
    focus_api.foreground = 100
    focus_api.paths[100] = "c:/apps/editor.exe"

    assert observer.active_subject_key() == APP_A
    assert observer.is_active(APP_A)

    idle_api.idle = timedelta(minutes=5)
    assert observer.active_subject_key() is None
    assert not observer.is_active(APP_A)
