"""Foreground-window and user-activity observers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Protocol

from .errors import SubjectError
from .normalization import normalize_executable_path

logger = logging.getLogger(__name__)

# Shell surfaces that briefly take focus without the user switching apps.
IGNORED_WINDOW_CLASSES = frozenset(
    {
        "TaskListThumbnailWnd",  # taskbar thumbnails of grouped windows
        "ForegroundStaging",  # Alt+Tab
        "MultitaskingViewFrame",  # Alt+Tab
        "Windows.UI.Core.CoreWindow",  # start menu
        "Shell_TrayWnd",  # taskbar
        "Shell_SecondaryTrayWnd",  # taskbar on other monitors
        "ApplicationManager_DesktopShellWindow",
        "WorkerW",  # desktop icons host
        "NotifyIconOverflowWindow",  # tray overflow
    }
)


class FocusApi(Protocol):
    def get_foreground_window(self) -> int: ...

    def get_window_class(self, hwnd: int) -> Optional[str]: ...

    def get_process_path(self, hwnd: int) -> Optional[str]: ...

    def is_this_process_foreground(self) -> bool: ...

    def set_foreground(self, hwnd: int) -> None: ...

    def minimize(self, hwnd: int) -> None: ...


class IdleApi(Protocol):
    def time_since_last_input(self) -> timedelta: ...


@dataclass(frozen=True, slots=True)
class FocusChange:
    previous: int
    current: int


def is_ignored_window_class(window_class: Optional[str]) -> bool:
    return window_class in IGNORED_WINDOW_CLASSES


class FocusObserver:
    """Polls the foreground window and reports changes of focus."""

    def __init__(self, api: FocusApi) -> None:
        self.api = api
        self._last_focused = 0

    @property
    def last_focused(self) -> int:
        return self._last_focused

    def poll(self) -> Optional[FocusChange]:
        now_focused = self.api.get_foreground_window()
        if not now_focused or now_focused == self._last_focused:
            return None
        if is_ignored_window_class(self.api.get_window_class(now_focused)):
            return None

        change = FocusChange(previous=self._last_focused, current=now_focused)
        self._last_focused = now_focused
        logger.debug("Focus moved from %#x to %#x.", change.previous, change.current)
        return change

    def current_subject_key(self) -> Optional[str]:
        """Subject key of the process owning the current foreground window."""
        hwnd = self.api.get_foreground_window()
        if not hwnd:
            return None
        try:
            return normalize_executable_path(self.api.get_process_path(hwnd))
        except SubjectError:
            return None


class ActivityObserver:
    """Tracks whether the user is at the keyboard and on which subject."""

    def __init__(
        self,
        idle_api: IdleApi,
        focus: FocusObserver,
        idle_timeout: timedelta = timedelta(seconds=10),
    ) -> None:
        self.idle_api = idle_api
        self.focus = focus
        self.idle_timeout = idle_timeout
        self._was_active = False

    @property
    def is_user_active(self) -> bool:
        try:
            return self.idle_api.time_since_last_input() < self.idle_timeout
        except OSError:
            logger.exception("Failed to query idle state; assuming not idle.")
            return True

    def active_subject_key(self) -> Optional[str]:
        """Key of the focused subject while the user is active, else None."""
        if not self.is_user_active:
            return None
        return self.focus.current_subject_key()

    def is_active(self, subject_key: str) -> bool:
        return self.active_subject_key() == subject_key

    def poll(self) -> bool:
        """Update the activity state. Returns True on the idle-to-active edge."""
        active = self.is_user_active
        activated = active and not self._was_active
        self._was_active = active
        if activated:
            logger.debug("User became active.")
        return activated
