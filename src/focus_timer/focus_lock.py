"""Focus lock: keep focus on the registered applications."""

from __future__ import annotations

import logging
import math
import threading
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from .errors import FocusRestoreError
from .observers import FocusApi, is_ignored_window_class

logger = logging.getLogger(__name__)


class FocusLockState(str, Enum):
    UNLOCKED = "unlocked"
    LOCKED = "locked"
    LOCKED_WITH_HOLD = "locked_with_hold"


class FocusLock:
    """State machine for the focus lock and its hold countdown.

    While locked, a focus change away from every registered application
    schedules a forced restore after a short debounce. A lock started with a
    hold cannot be released until the hold runs out, at which point it falls
    back to a plain lock.
    """

    def __init__(
        self,
        api: FocusApi,
        is_any_subject_active: Callable[[], bool],
        *,
        default_hold: timedelta = timedelta(minutes=10),
        debounce: timedelta = timedelta(milliseconds=200),
        clock: Callable[[], datetime] = datetime.now,
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
    ) -> None:
        self.api = api
        self.default_hold = default_hold
        self.debounce = debounce
        self._is_any_subject_active = is_any_subject_active
        self._clock = clock
        self._timer_factory = timer_factory
        self._lock = threading.RLock()
        self._state = FocusLockState.UNLOCKED
        self._hold_deadline: Optional[datetime] = None
        self._pending: Optional[threading.Timer] = None
        self._rejection_listeners: list[Callable[[timedelta], None]] = []

    @property
    def state(self) -> FocusLockState:
        with self._lock:
            self.update()
            return self._state

    @property
    def is_locked(self) -> bool:
        return self.state is not FocusLockState.UNLOCKED

    @property
    def is_hold(self) -> bool:
        return self.state is FocusLockState.LOCKED_WITH_HOLD

    @property
    def hold_remaining(self) -> timedelta:
        with self._lock:
            if not self.is_hold or self._hold_deadline is None:
                return timedelta(0)
            return max(self._hold_deadline - self._clock(), timedelta(0))

    @property
    def minutes_left(self) -> int:
        return math.ceil(self.hold_remaining.total_seconds() / 60)

    def add_rejection_listener(self, listener: Callable[[timedelta], None]) -> None:
        """Called with the remaining hold whenever an unlock is refused."""
        self._rejection_listeners.append(listener)

    def toggle(self) -> bool:
        """Lock when unlocked, unlock when locked. Returns False if refused."""
        with self._lock:
            if self.state is FocusLockState.UNLOCKED:
                self._lock_without_hold()
                return True
            if self._state is FocusLockState.LOCKED_WITH_HOLD:
                remaining = self.hold_remaining
                logger.info("Unlock refused; hold ends in %s.", remaining)
                listeners = list(self._rejection_listeners)
            else:
                self._state = FocusLockState.UNLOCKED
                self._cancel_pending()
                logger.info("Focus unlocked.")
                return True
        for listener in listeners:
            listener(remaining)
        return False

    def lock(self) -> None:
        with self._lock:
            if self.state is FocusLockState.UNLOCKED:
                self._lock_without_hold()

    def start_with_hold(self, duration: Optional[timedelta] = None) -> None:
        hold = duration if duration is not None else self.default_hold
        if hold <= timedelta(0):
            raise ValueError("Hold duration must be positive.")
        with self._lock:
            self._state = FocusLockState.LOCKED_WITH_HOLD
            self._hold_deadline = self._clock() + hold
        logger.info("Focus locked with a hold of %s.", hold)

    def update(self) -> bool:
        """Release an expired hold. Returns True when the state changed."""
        with self._lock:
            if self._state is not FocusLockState.LOCKED_WITH_HOLD:
                return False
            if self._hold_deadline is not None and self._clock() < self._hold_deadline:
                return False
            self._state = FocusLockState.LOCKED
            self._hold_deadline = None
        logger.info("Focus lock hold ended; the lock stays on.")
        return True

    def _lock_without_hold(self) -> None:
        self._state = FocusLockState.LOCKED
        self._hold_deadline = None
        logger.info("Focus locked.")

    # Forced restore

    def should_restore(self, current: int) -> bool:
        if not self.is_locked:
            return False
        if self._is_any_subject_active():
            return False
        if is_ignored_window_class(self.api.get_window_class(current)):
            return False
        if self.api.is_this_process_foreground():
            return False
        return True

    def on_focus_changed(self, previous: int, current: int) -> bool:
        """Schedule a restore if focus drifted away while locked."""
        if not self.should_restore(current):
            return False
        timer = self._timer_factory(
            self.debounce.total_seconds(), self._restore, args=(previous, current)
        )
        timer.daemon = True
        with self._lock:
            self._cancel_pending()
            self._pending = timer
        timer.start()
        logger.debug("Scheduled focus restore to %#x in %s.", previous, self.debounce)
        return True

    def _restore(self, previous: int, current: int) -> None:
        with self._lock:
            if self._pending is threading.current_thread():
                self._pending = None
        if not self.should_restore(current):
            logger.debug("Focus restore no longer needed.")
            return
        try:
            self.force_focus(previous, current)
        except FocusRestoreError as exc:
            logger.warning("%s", exc)
            return
        logger.info("Restored focus from %#x to %#x.", current, previous)

    def force_focus(self, previous: int, current: int) -> None:
        """Minimize ``current`` and bring ``previous`` to the foreground."""
        if not previous:
            raise FocusRestoreError("No previous window to restore focus to.")
        try:
            self.api.minimize(current)
            self.api.set_foreground(previous)
        except OSError as exc:
            raise FocusRestoreError(f"Could not restore focus to {previous:#x}: {exc}") from exc

    def _cancel_pending(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None

    def cancel_pending(self) -> None:
        with self._lock:
            self._cancel_pending()
