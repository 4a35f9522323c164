"""Utilities to turn process executable paths into subject keys."""

from __future__ import annotations

import ntpath
import re
from typing import Optional

from .errors import SubjectError

SESSION_KEY = "__session__"

_REPEATED_SEPARATORS = re.compile(r"[\\/]+")


def normalize_executable_path(executable_path: Optional[str]) -> str:
    """Return the canonical key for an executable path.

    Windows paths are case-insensitive and accept either slash, so both are
    folded. An empty path cannot identify an application.
    """
    if not executable_path or not executable_path.strip():
        raise SubjectError("An application cannot be tracked without an executable path.")
    normalized = executable_path.strip().strip('"')
    normalized = _REPEATED_SEPARATORS.sub(r"\\", normalized)
    normalized = ntpath.normcase(normalized)
    if normalized == SESSION_KEY:
        raise SubjectError(f"{executable_path!r} is reserved for the session subject.")
    return normalized


def display_name(subject_key: str) -> str:
    """Human-readable label for a subject key."""
    if subject_key == SESSION_KEY:
        return "Session"
    stem, _ = ntpath.splitext(ntpath.basename(subject_key))
    return stem or subject_key
