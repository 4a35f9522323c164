import logging
import pytest
from datetime import timedelta

from focus_timer.errors import FocusRestoreError
from focus_timer.focus_lock import FocusLock, FocusLockState
from focus_timer.observers import IGNORED_WINDOW_CLASSES


@pytest.fixture
def subject_active():
    return {"value": False}


@pytest.fixture
def focus_lock(focus_api, clock, fake_timer, subject_active):
    return FocusLock(
        focus_api,
        lambda: subject_active["value"],
        default_hold=timedelta(minutes=10),
        clock=clock,
        timer_factory=fake_timer,
    )


def test_toggle_locks_and_unlocks(focus_lock):
    assert focus_lock.state is FocusLockState.UNLOCKED
    assert focus_lock.toggle() is True
    assert focus_lock.state is FocusLockState.LOCKED
    assert focus_lock.toggle() is True
    assert focus_lock.state is FocusLockState.UNLOCKED


def test_toggle_is_refused_during_hold(focus_lock):
    rejected = []
    focus_lock.add_rejection_listener(rejected.append)
    focus_lock.start_with_hold()

    assert focus_lock.toggle() is False
    assert focus_lock.state is FocusLockState.LOCKED_WITH_HOLD
    assert rejected == [timedelta(minutes=10)]


def test_minutes_left_rounds_up(focus_lock, clock):
    focus_lock.start_with_hold(timedelta(minutes=10))
    assert focus_lock.minutes_left == 10
    clock.advance(timedelta(minutes=4, seconds=30))
    assert focus_lock.minutes_left == 6


def test_hold_expires_into_plain_lock(focus_lock, clock):
    focus_lock.start_with_hold(timedelta(minutes=5))
    clock.advance(timedelta(minutes=4))
    assert focus_lock.update() is False

    clock.advance(timedelta(minutes=1))
    assert focus_lock.update() is True
    assert focus_lock.state is FocusLockState.LOCKED
    assert focus_lock.hold_remaining == timedelta(0)

    assert focus_lock.toggle() is True
    assert focus_lock.state is FocusLockState.UNLOCKED


def test_state_reflects_expired_hold_without_update(focus_lock, clock):
    focus_lock.start_with_hold(timedelta(minutes=1))
    clock.advance(timedelta(minutes=2))
    assert focus_lock.state is FocusLockState.LOCKED


def test_hold_must_be_positive(focus_lock):
    with pytest.raises(ValueError):
        focus_lock.start_with_hold(timedelta(0))


def test_focus_leaving_while_locked_is_restored(focus_lock, focus_api, fake_timer):
    focus_lock.lock()

    assert focus_lock.on_focus_changed(10, 20) is True

    timer = fake_timer.created[-1]
    assert timer.interval == pytest.approx(0.2)
    assert timer.daemon is True
    assert timer.started
    timer.fire()
    assert focus_api.minimized == [20]
    assert focus_api.raised == [10]


def test_no_restore_while_unlocked(focus_lock, fake_timer):
    assert focus_lock.on_focus_changed(10, 20) is False
    assert fake_timer.created == []


def test_no_restore_while_registered_app_active(focus_lock, subject_active, fake_timer):
    focus_lock.lock()
    subject_active["value"] = True
    assert focus_lock.on_focus_changed(10, 20) is False
    assert fake_timer.created == []


@pytest.mark.parametrize("window_class", sorted(IGNORED_WINDOW_CLASSES))
def test_no_restore_to_shell_windows(focus_lock, focus_api, fake_timer, window_class):
    focus_lock.lock()
    focus_api.classes[20] = window_class
    assert focus_lock.on_focus_changed(10, 20) is False
    assert fake_timer.created == []


def test_no_restore_when_own_window_focused(focus_lock, focus_api):
    focus_lock.lock()
    focus_api.own_process_foreground = True
    assert focus_lock.on_focus_changed(10, 20) is False


def test_new_focus_change_replaces_pending_restore(focus_lock, fake_timer):
    focus_lock.lock()
    focus_lock.on_focus_changed(10, 20)
    focus_lock.on_focus_changed(20, 30)

    first, second = fake_timer.created
    assert first.cancelled
    assert not second.cancelled


def test_restore_rechecks_before_acting(focus_lock, focus_api, subject_active, fake_timer):
    focus_lock.lock()
    focus_lock.on_focus_changed(10, 20)
    subject_active["value"] = True

    fake_timer.created[-1].fire()

    assert focus_api.minimized == []
    assert focus_api.raised == []


def test_unlock_cancels_pending_restore(focus_lock, fake_timer):
    focus_lock.lock()
    focus_lock.on_focus_changed(10, 20)
    focus_lock.toggle()
    assert fake_timer.created[-1].cancelled


def test_restore_failure_is_logged(focus_lock, focus_api, fake_timer, caplog):
    focus_lock.lock()
    focus_lock.on_focus_changed(10, 20)
    focus_api.fail_with = OSError("access denied")

    with caplog.at_level(logging.WARNING, logger="focus_timer.focus_lock"):
        fake_timer.created[-1].fire()

    assert any("Could not restore focus" in r.getMessage() for r in caplog.records)


def test_force_focus_without_previous_window(focus_lock):
    with pytest.raises(FocusRestoreError):
        focus_lock.force_focus(0, 20)
