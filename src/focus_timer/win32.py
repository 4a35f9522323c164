"""Win32 focus and idle primitives."""

from __future__ import annotations

import ctypes
import logging
import os
from ctypes import wintypes
from datetime import timedelta
from typing import Optional

import psutil

logger = logging.getLogger(__name__)

SW_MINIMIZE = 6
_CLASS_NAME_LENGTH = 256


class WindowsIdleDetector:
    """Detects idle state using Win32 APIs."""

    class LASTINPUTINFO(ctypes.Structure):
        _fields_ = [("cbSize", wintypes.UINT), ("dwTime", wintypes.DWORD)]

    def __init__(self) -> None:
        self._user32 = ctypes.windll.user32  # type: ignore[attr-defined]
        self._kernel32 = ctypes.windll.kernel32  # type: ignore[attr-defined]
        self._kernel32.GetTickCount.restype = wintypes.DWORD

    def milliseconds_since_input(self) -> int:
        last_input = self.LASTINPUTINFO()
        last_input.cbSize = ctypes.sizeof(last_input)
        if not self._user32.GetLastInputInfo(ctypes.byref(last_input)):
            raise ctypes.WinError()
        # Both values are 32-bit tick counts, so compare them modulo 2**32.
        elapsed = (self._kernel32.GetTickCount() - last_input.dwTime) & 0xFFFFFFFF
        return int(elapsed)

    def time_since_last_input(self) -> timedelta:
        return timedelta(milliseconds=self.milliseconds_since_input())


class WindowsFocusApi:
    """Foreground window queries and the calls used to force focus back."""

    def __init__(self) -> None:
        self._user32 = ctypes.windll.user32  # type: ignore[attr-defined]
        self._user32.GetForegroundWindow.restype = wintypes.HWND

    def get_foreground_window(self) -> int:
        return self._user32.GetForegroundWindow() or 0

    def get_window_class(self, hwnd: int) -> Optional[str]:
        if not hwnd:
            return None
        buffer = ctypes.create_unicode_buffer(_CLASS_NAME_LENGTH)
        if not self._user32.GetClassNameW(wintypes.HWND(hwnd), buffer, _CLASS_NAME_LENGTH):
            return None
        return buffer.value

    def get_window_process_id(self, hwnd: int) -> Optional[int]:
        if not hwnd:
            return None
        pid = wintypes.DWORD()
        self._user32.GetWindowThreadProcessId(wintypes.HWND(hwnd), ctypes.byref(pid))
        return pid.value or None

    def get_process_path(self, hwnd: int) -> Optional[str]:
        pid = self.get_window_process_id(hwnd)
        if pid is None:
            return None
        try:
            return psutil.Process(pid).exe() or None
        except (psutil.Error, ProcessLookupError):
            return None

    def is_this_process_foreground(self) -> bool:
        return self.get_window_process_id(self.get_foreground_window()) == os.getpid()

    def set_foreground(self, hwnd: int) -> None:
        if not self._user32.SetForegroundWindow(wintypes.HWND(hwnd)):
            raise ctypes.WinError()

    def minimize(self, hwnd: int) -> None:
        if not self._user32.IsWindow(wintypes.HWND(hwnd)):
            raise ctypes.WinError()
        self._user32.ShowWindow(wintypes.HWND(hwnd), SW_MINIMIZE)
