"""Exception hierarchy for the focus timer."""

from __future__ import annotations


class FocusTimerError(Exception):
    """Base exception for all focus timer errors."""


class SubjectError(FocusTimerError):
    """Raised when a subject cannot be identified or tracked."""


class PersistenceError(FocusTimerError):
    """Raised when usage records cannot be read from or written to storage."""


class FocusRestoreError(FocusTimerError):
    """Raised when a forced focus restore cannot be carried out."""
