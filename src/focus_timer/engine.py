"""Usage accounting for the session and every registered application.

The engine owns one :class:`SubjectState` per tracked subject. Each clock
pulse advances the subject's open running interval and, while the subject
holds focus with the user at the keyboard, its open active interval. Totals
survive restarts through offsets restored from the repository, so the
visible elapsed time of a subject is always its restored offset plus what
was counted since this process started tracking it.

All mutation happens on the caller's thread; the tracker loop is the only
caller in a running application.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable, Optional, Protocol

from .config import TrackerSettings
from .db import UsageRepository
from .errors import PersistenceError, SubjectError
from .models import Usage
from .normalization import SESSION_KEY, display_name, normalize_executable_path
from .reporting import SubjectDayUsage, collect_usages_for_date

logger = logging.getLogger(__name__)


class ActivitySource(Protocol):
    def active_subject_key(self) -> Optional[str]: ...


@dataclass(slots=True)
class SubjectState:
    """In-memory accounting state of one subject."""

    key: str
    usage: Usage
    counted: bool = True
    ticks_start_offset: timedelta = timedelta(0)
    ticks_elapsed_offset: timedelta = timedelta(0)
    active_start_offset: timedelta = timedelta(0)
    live_elapsed: timedelta = timedelta(0)
    live_active_elapsed: timedelta = timedelta(0)
    was_active: bool = field(default=False, repr=False)

    @property
    def elapsed(self) -> timedelta:
        return self.ticks_start_offset + self.live_elapsed

    @property
    def active_elapsed(self) -> timedelta:
        return self.active_start_offset + self.live_active_elapsed


@dataclass(frozen=True, slots=True)
class SubjectStatus:
    key: str
    name: str
    is_session: bool
    counted: bool
    active: bool
    elapsed: timedelta
    active_elapsed: timedelta


class AccountingEngine:
    """Keeps elapsed and active time for the session and registered apps."""

    def __init__(
        self,
        repository: UsageRepository,
        activity: ActivitySource,
        settings: Optional[TrackerSettings] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._repository = repository
        self._activity = activity
        self.settings = settings or TrackerSettings()
        self._clock = clock
        self._subjects: dict[str, SubjectState] = {}
        self.downtime_gaps = 0
        self._subjects[SESSION_KEY] = self._restore(SESSION_KEY, counted=None)

    # Subjects

    @property
    def app_keys(self) -> list[str]:
        return [key for key in self._subjects if key != SESSION_KEY]

    def register_app(self, executable_path: Optional[str], counted: Optional[bool] = None) -> str:
        """Start tracking an application. Returns its subject key."""
        key = normalize_executable_path(executable_path)
        state = self._subjects.get(key)
        if state is None:
            state = self._restore(key, counted)
            self._subjects[key] = state
            logger.info("Registered %s.", key)
        elif counted is not None:
            state.counted = counted
        return key

    def unregister_app(self, key: str) -> None:
        if key == SESSION_KEY:
            raise SubjectError("The session cannot be unregistered.")
        if self._subjects.pop(key, None) is None:
            raise SubjectError(f"{key} is not registered.")
        logger.info("Unregistered %s.", key)

    def set_counted(self, key: str, counted: bool) -> None:
        self._state(key).counted = counted

    def is_counted(self, key: str) -> bool:
        return self._state(key).counted

    def _state(self, key: str) -> SubjectState:
        try:
            return self._subjects[key]
        except KeyError:
            raise SubjectError(f"{key} is not tracked.") from None

    def _restore(self, key: str, counted: Optional[bool]) -> SubjectState:
        now = self._clock()
        chain = self._repository.find_usage_chain(key)
        if chain:
            latest = chain[-1]
            closed = chain[:-1]
            state = SubjectState(
                key=key,
                usage=latest,
                counted=latest.is_concentrated if counted is None else counted,
                ticks_start_offset=_sum(u.elapsed for u in chain),
                ticks_elapsed_offset=_sum(u.elapsed for u in closed),
                active_start_offset=_sum(u.active_elapsed for u in chain),
            )
            logger.info(
                "Restored %s from %d usage record(s): elapsed %s, active %s.",
                key,
                len(chain),
                state.elapsed,
                state.active_elapsed,
            )
        else:
            is_concentrated = True if counted is None else counted
            usage = self._repository.create_usage(
                key, False, started_at=now, is_concentrated=is_concentrated
            )
            state = SubjectState(key=key, usage=usage, counted=is_concentrated)
            logger.info("No usage to continue for %s; starting fresh.", key)
        # A usage from an earlier day is continued in a new one, not reopened.
        if not self._roll_over_if_needed(state, now):
            state.usage.open_new_running_usage(now)
        return state

    # Tick protocol

    def tick(self, key: str) -> None:
        """Count one pulse for one subject.

        Must be called at most once per pulse per subject. Raises
        PersistenceError when the save fails; the counters stay advanced.
        """
        self._tick(self._state(key), self._activity.active_subject_key())

    def tick_all(self) -> dict[str, Exception]:
        """Count one pulse for every subject, isolating per-subject failures."""
        active_key = self._activity.active_subject_key()
        failures: dict[str, Exception] = {}
        for state in list(self._subjects.values()):
            try:
                self._tick(state, active_key)
            except Exception as exc:
                logger.exception("Tick failed for %s.", state.key)
                failures[state.key] = exc
        return failures

    def _tick(self, state: SubjectState, active_key: Optional[str]) -> None:
        now = self._clock()
        self._roll_over_if_needed(state, now)

        tick = self.settings.tick_interval
        tolerance = self.settings.downtime_tolerance
        active = self._is_active(state, active_key)

        running = state.usage.current_or_open_new(now)
        if running.touch(now, tick, tolerance):
            self.downtime_gaps += 1
        state.live_elapsed += tick

        if active:
            if not state.was_active:
                running.open_new_active_usage(now)
            if running.current_or_open_new(now).touch(now, tick, tolerance):
                self.downtime_gaps += 1
            state.live_active_elapsed += tick
        state.was_active = active

        state.usage.record(now, state.elapsed - state.ticks_elapsed_offset, state.counted)
        self._repository.save(state.usage)

    def _roll_over_if_needed(self, state: SubjectState, now: datetime) -> bool:
        """Continue the subject in a new usage once the day has changed."""
        previous = state.usage
        if previous.started_at.date() >= now.date():
            return False

        try:
            self._repository.save(previous)
        except PersistenceError:
            logger.warning("Could not save %s before rolling over.", previous, exc_info=True)
        usage = self._repository.create_usage(
            state.key, True, started_at=now, is_concentrated=state.counted
        )
        usage.open_new_running_usage(now)
        logger.info("Day changed; %s continues in a new usage.", state.key)

        state.ticks_elapsed_offset += previous.elapsed
        state.usage = usage
        state.was_active = False
        return True

    def _is_active(self, state: SubjectState, active_key: Optional[str]) -> bool:
        if active_key is None:
            return False
        if state.key == SESSION_KEY:
            return active_key != SESSION_KEY and active_key in self._subjects
        return state.key == active_key

    # Edge events

    def notify_activated(self) -> None:
        self._open_active_fragments("activated")

    def notify_focus_changed(self, previous: int, current: int) -> None:
        self._open_active_fragments(f"focus change {previous:#x} -> {current:#x}")

    def _open_active_fragments(self, reason: str) -> None:
        active_key = self._activity.active_subject_key()
        now = self._clock()
        for state in self._subjects.values():
            if not self._is_active(state, active_key):
                continue
            logger.info("Opening a new active interval for %s on %s.", state.key, reason)
            state.usage.current_or_open_new(now).open_new_active_usage(now)
            state.was_active = True

    # Reset

    def reset(self) -> None:
        """Start every subject over from zero with a fresh usage."""
        now = self._clock()
        fresh: dict[str, SubjectState] = {}
        for key, state in self._subjects.items():
            usage = self._repository.create_usage(
                key, False, started_at=now, is_concentrated=state.counted
            )
            usage.open_new_running_usage(now)
            fresh[key] = SubjectState(key=key, usage=usage, counted=state.counted)
        self._subjects = fresh
        logger.info("Timer reset for %d subject(s).", len(fresh))

    # Queries

    def get_elapsed(self, key: str = SESSION_KEY) -> timedelta:
        return self._state(key).elapsed

    def get_active_elapsed(self, key: str = SESSION_KEY) -> timedelta:
        return self._state(key).active_elapsed

    def get_concentration_percent(self) -> int:
        """Share of the session's elapsed time spent active in counted apps."""
        total = self.get_elapsed(SESSION_KEY)
        counted = _sum(
            state.active_elapsed
            for key, state in self._subjects.items()
            if key != SESSION_KEY and state.counted
        )
        if not total or not counted:
            return 0
        return min(100, (counted * 100) // total)

    def is_any_app_active(self) -> bool:
        return self._is_active(self._subjects[SESSION_KEY], self._activity.active_subject_key())

    def get_usages_for_date(self, day: date) -> list[SubjectDayUsage]:
        return collect_usages_for_date(self._repository, day)

    def subjects(self) -> list[SubjectStatus]:
        active_key = self._activity.active_subject_key()
        return [
            SubjectStatus(
                key=key,
                name=display_name(key),
                is_session=key == SESSION_KEY,
                counted=state.counted,
                active=self._is_active(state, active_key),
                elapsed=state.elapsed,
                active_elapsed=state.active_elapsed,
            )
            for key, state in self._subjects.items()
        ]


def _sum(values) -> timedelta:
    return sum(values, timedelta(0))
