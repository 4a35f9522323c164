"""Per-day usage reports and console summaries."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from pathlib import Path

from .db import SqliteUsageRepository, UsageRepository, database_connection
from .models import ActiveUsage, RunningUsage
from .normalization import SESSION_KEY, display_name
from .splitter import split_running_usages


@dataclass(slots=True)
class SubjectDayUsage:
    """A subject's running and active pieces confined to a single day."""

    subject_key: str
    day: date
    counted: bool = True
    running_usages: list[RunningUsage] = field(default_factory=list)

    @property
    def name(self) -> str:
        return display_name(self.subject_key)

    @property
    def active_usages(self) -> list[ActiveUsage]:
        return [active for running in self.running_usages for active in running.active_usages]

    @property
    def running_elapsed(self) -> timedelta:
        return sum((piece.elapsed for piece in self.running_usages), timedelta(0))

    @property
    def active_elapsed(self) -> timedelta:
        return sum((piece.elapsed for piece in self.active_usages), timedelta(0))


def collect_usages_for_date(repository: UsageRepository, day: date) -> list[SubjectDayUsage]:
    """Split every usage touching ``day`` and keep the pieces on that day.

    The session comes first, then applications by descending active time.
    """
    start = datetime.combine(day, time.min)
    end = start + timedelta(days=1)

    by_subject: dict[str, SubjectDayUsage] = {}
    for usage in repository.fetch_usages_between(start, end):
        entry = by_subject.setdefault(
            usage.subject_key, SubjectDayUsage(subject_key=usage.subject_key, day=day)
        )
        entry.counted = usage.is_concentrated
        entry.running_usages.extend(
            piece for piece in split_running_usages(usage) if piece.started_at.date() == day
        )

    session = by_subject.pop(SESSION_KEY, None)
    apps = sorted(by_subject.values(), key=lambda item: item.active_elapsed, reverse=True)
    return ([session] if session else []) + apps


def concentration_percent(entries: list[SubjectDayUsage]) -> int:
    """Concentration over a reported day, measured against the session."""
    session = next((entry for entry in entries if entry.subject_key == SESSION_KEY), None)
    if session is None or not session.running_elapsed:
        return 0
    counted = sum(
        (
            entry.active_elapsed
            for entry in entries
            if entry.subject_key != SESSION_KEY and entry.counted
        ),
        timedelta(0),
    )
    return min(100, (counted * 100) // session.running_elapsed)


class SummaryPrinter:
    """Render human-readable summaries in the console."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)

    def print_daily_summary(self, day: datetime) -> None:
        with database_connection(self.db_path) as conn:
            entries = collect_usages_for_date(SqliteUsageRepository(conn), day.date())
        if not entries:
            print("No usage recorded for the selected day.")
            return

        session = entries[0] if entries[0].subject_key == SESSION_KEY else None
        print(f"Summary for {day.strftime('%Y-%m-%d')}")
        print("-" * 40)
        if session:
            print(f"Timer running: {format_duration(session.running_elapsed.total_seconds())}")
            print(f"Focused:       {format_duration(session.active_elapsed.total_seconds())}")
        print(f"Concentration: {concentration_percent(entries)}%")
        print()

        apps = [entry for entry in entries if entry.subject_key != SESSION_KEY]
        if apps:
            print("Applications:")
            for entry in apps:
                marker = " " if entry.counted else "*"
                print(
                    f" {marker}{entry.name:<30} "
                    f"{format_duration(entry.active_elapsed.total_seconds())} active / "
                    f"{format_duration(entry.running_elapsed.total_seconds())} registered"
                )
            if any(not entry.counted for entry in apps):
                print()
                print("  * not counted towards concentration")

        print()
        print("Focused time by hour:")
        for hour, seconds in sorted(hourly_active_seconds(entries).items()):
            print(f"  {hour:02d}:00  {format_duration(seconds)}")


def hourly_active_seconds(entries: list[SubjectDayUsage]) -> dict[int, float]:
    """Active seconds of the session per starting hour."""
    totals: defaultdict[int, float] = defaultdict(float)
    for entry in entries:
        if entry.subject_key != SESSION_KEY:
            continue
        for active in entry.active_usages:
            totals[active.started_at.hour] += active.elapsed.total_seconds()
    return dict(totals)


def format_duration(seconds: float) -> str:
    total_seconds = int(round(seconds))
    hours, remainder = divmod(total_seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"
