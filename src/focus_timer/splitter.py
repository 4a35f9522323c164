"""Split recorded intervals at calendar-day boundaries for reporting."""

from __future__ import annotations

from collections import defaultdict
from datetime import date, datetime, time, timedelta
from typing import Generic, Iterator, TypeVar

from .models import ActiveUsage, Interval, RunningUsage, Usage

_I = TypeVar("_I", bound=Interval)

ONE_DAY = timedelta(days=1)


def _midnight(day: date) -> datetime:
    return datetime.combine(day, time.min)


class DaySplitter(Generic[_I]):
    """Iterable of same-typed pieces of an interval, one per calendar day.

    Pieces are produced lazily and the splitter can be iterated any number of
    times. The pieces' elapsed times are their wall-clock spans and add up to
    the span of the interval being split.
    """

    def __init__(self, interval: _I) -> None:
        self.interval = interval

    def __iter__(self) -> Iterator[_I]:
        kind = type(self.interval)
        started_at = self.interval.started_at
        updated_at = self.interval.updated_at
        first_day = started_at.date()
        last_day = updated_at.date()

        current = first_day
        while current <= last_day:
            piece_start = started_at if current == first_day else _midnight(current)
            piece_end = (
                updated_at
                if current == last_day
                else _midnight(current + ONE_DAY)
            )
            yield kind.from_bounds(piece_start, piece_end)
            current += ONE_DAY


def split_running_usages(usage: Usage) -> list[RunningUsage]:
    """Split a usage's running and active intervals by day and reparent them.

    Every running interval and every active interval is split on its own;
    each active piece is then attached to the piece of its own running
    interval that covers the same day. Active pieces falling on a day their
    running interval does not cover are dropped.
    """
    result: list[RunningUsage] = []
    for running in usage.running_usages:
        active_by_day: defaultdict[date, list[ActiveUsage]] = defaultdict(list)
        for active in running.active_usages:
            for piece in DaySplitter(active):
                active_by_day[piece.started_at.date()].append(piece)

        for running_piece in DaySplitter(running):
            day = running_piece.started_at.date()
            running_piece.active_usages.extend(active_by_day.pop(day, ()))
            result.append(running_piece)
    return result
