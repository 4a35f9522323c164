"""Domain models for recorded usage intervals.

A subject's time is recorded as three nested interval kinds:

* :class:`Usage` spans everything between two resets of a subject.
* :class:`RunningUsage` spans a stretch during which the subject's tracking
  slot stayed open (the timer ran, the app stayed registered).
* :class:`ActiveUsage` spans a stretch during which the subject additionally
  held focus while the user was not idle.

The open child of a parent is always the last element of its child list;
appending a new child closes the previous one.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, TypeVar

logger = logging.getLogger(__name__)

TICK = timedelta(seconds=1)
DOWNTIME_TOLERANCE = timedelta(seconds=5)

_I = TypeVar("_I", bound="Interval")


@dataclass(slots=True)
class Interval:
    """Fields and behaviour shared by every interval kind."""

    id: Optional[int] = None
    started_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    elapsed: timedelta = timedelta(0)
    reported_excess: timedelta = field(default=timedelta(0), repr=False, compare=False)

    @classmethod
    def from_bounds(cls: type[_I], started_at: datetime, updated_at: datetime) -> _I:
        """Build a childless interval whose elapsed time is its wall-clock span."""
        return cls(
            started_at=started_at,
            updated_at=updated_at,
            elapsed=updated_at - started_at,
        )

    @property
    def span(self) -> timedelta:
        return self.updated_at - self.started_at

    def touch(
        self,
        now: datetime,
        tick: timedelta = TICK,
        tolerance: timedelta = DOWNTIME_TOLERANCE,
    ) -> bool:
        """Advance by one tick. Returns True when a new downtime gap is detected.

        Excess span already reported is not reported again, so each separate
        gap in an interval is flagged exactly once.
        """
        self.updated_at = now
        self.elapsed += tick
        excess = self.span - self.elapsed
        if excess - self.reported_excess <= tolerance:
            return False
        logger.warning(
            "%s had a downtime gap of %s: span %s, elapsed %s.",
            self,
            excess - self.reported_excess,
            self.span,
            self.elapsed,
        )
        self.reported_excess = excess
        return True

    def __str__(self) -> str:
        return (
            f"{type(self).__name__}(id={self.id}, "
            f"started_at={self.started_at:%Y-%m-%d %H:%M:%S}, elapsed={self.elapsed})"
        )


@dataclass(slots=True)
class ActiveUsage(Interval):
    """Time during which the subject held focus while the user was active."""


@dataclass(slots=True)
class RunningUsage(Interval):
    """Time during which the subject's tracking slot stayed open."""

    active_usages: list[ActiveUsage] = field(default_factory=list)

    @property
    def active_elapsed(self) -> timedelta:
        return sum((usage.elapsed for usage in self.active_usages), timedelta(0))

    def current_or_open_new(self, now: datetime) -> ActiveUsage:
        if self.active_usages:
            return self.active_usages[-1]
        return self.open_new_active_usage(now)

    def open_new_active_usage(self, now: datetime) -> ActiveUsage:
        logger.debug("Opening a new ActiveUsage under %s.", self)
        usage = ActiveUsage(started_at=now, updated_at=now)
        self.active_usages.append(usage)
        return usage


@dataclass(slots=True)
class Usage(Interval):
    """Everything recorded for one subject between two resets."""

    subject_key: str = ""
    is_concentrated: bool = True
    continues_previous: bool = False
    running_usages: list[RunningUsage] = field(default_factory=list)

    @property
    def running_elapsed(self) -> timedelta:
        return sum((usage.elapsed for usage in self.running_usages), timedelta(0))

    @property
    def active_elapsed(self) -> timedelta:
        return sum(
            (usage.active_elapsed for usage in self.running_usages), timedelta(0)
        )

    def current_or_open_new(self, now: datetime) -> RunningUsage:
        if self.running_usages:
            return self.running_usages[-1]
        return self.open_new_running_usage(now)

    def open_new_running_usage(self, now: datetime) -> RunningUsage:
        logger.debug("Opening a new RunningUsage under %s.", self)
        usage = RunningUsage(started_at=now, updated_at=now)
        self.running_usages.append(usage)
        return usage

    def record(self, now: datetime, elapsed: timedelta, is_concentrated: bool) -> None:
        """Store the subject's total since this usage began."""
        if elapsed < self.elapsed:
            raise ValueError(
                f"Usage elapsed must not decrease ({self.elapsed} -> {elapsed})."
            )
        self.updated_at = now
        self.elapsed = elapsed
        self.is_concentrated = is_concentrated
