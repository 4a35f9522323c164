"""SQLite persistence for usage records and preferences."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterator, Optional, Protocol, Union

from .errors import PersistenceError
from .models import ActiveUsage, RunningUsage, Usage


DATETIME_FMT = "%Y-%m-%d %H:%M:%S.%f"

_ONE_MICROSECOND = timedelta(microseconds=1)


class UsageRepository(Protocol):
    """Storage contract the accounting engine depends on."""

    def find_latest_usage(self, subject_key: str) -> Optional[Usage]: ...

    def find_usage_chain(self, subject_key: str) -> list[Usage]: ...

    def create_usage(
        self,
        subject_key: str,
        continues_previous: bool,
        *,
        started_at: Optional[datetime] = None,
        is_concentrated: bool = True,
    ) -> Usage: ...

    def save(self, usage: Usage) -> None: ...

    def fetch_usages_between(self, start: datetime, end: datetime) -> list[Usage]: ...


def open_database(
    path: Union[Path, str], *, check_same_thread: bool = True
) -> sqlite3.Connection:
    """Open (and initialize) the SQLite database."""
    conn = sqlite3.connect(
        path,
        isolation_level=None,
        check_same_thread=check_same_thread,
    )
    conn.row_factory = sqlite3.Row
    enable_foreign_keys(conn)
    initialize_schema(conn)
    return conn


@contextmanager
def database_connection(
    path: Union[Path, str], *, check_same_thread: bool = True
) -> Iterator[sqlite3.Connection]:
    conn = open_database(path, check_same_thread=check_same_thread)
    try:
        yield conn
    finally:
        conn.close()


def enable_foreign_keys(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA foreign_keys = ON;")


def initialize_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS usages (
            id INTEGER PRIMARY KEY,
            subject_key TEXT NOT NULL,
            started_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            elapsed_us INTEGER NOT NULL DEFAULT 0,
            is_concentrated INTEGER NOT NULL DEFAULT 1,
            continues_previous INTEGER NOT NULL DEFAULT 0
        );

        CREATE TABLE IF NOT EXISTS running_usages (
            id INTEGER PRIMARY KEY,
            usage_id INTEGER NOT NULL REFERENCES usages(id) ON DELETE CASCADE,
            started_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            elapsed_us INTEGER NOT NULL DEFAULT 0
        );

        CREATE TABLE IF NOT EXISTS active_usages (
            id INTEGER PRIMARY KEY,
            running_usage_id INTEGER NOT NULL
                REFERENCES running_usages(id) ON DELETE CASCADE,
            started_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            elapsed_us INTEGER NOT NULL DEFAULT 0
        );

        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_usages_subject
            ON usages(subject_key, id);
        CREATE INDEX IF NOT EXISTS idx_usages_span
            ON usages(started_at, updated_at);
        CREATE INDEX IF NOT EXISTS idx_running_usages_usage
            ON running_usages(usage_id);
        CREATE INDEX IF NOT EXISTS idx_active_usages_running
            ON active_usages(running_usage_id);
        """
    )


def get_setting(
    conn: sqlite3.Connection, key: str, default: Optional[str] = None
) -> Optional[str]:
    row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
    return row["value"] if row is not None else default


def set_setting(conn: sqlite3.Connection, key: str, value: str) -> None:
    conn.execute(
        """
        INSERT INTO settings (key, value) VALUES (?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value
        """,
        (key, value),
    )


def _format(value: datetime) -> str:
    return value.strftime(DATETIME_FMT)


def _parse(value: str) -> datetime:
    return datetime.strptime(value, DATETIME_FMT)


def _to_us(value: timedelta) -> int:
    return value // _ONE_MICROSECOND


def _from_us(value: int) -> timedelta:
    return timedelta(microseconds=value)


class SqliteUsageRepository:
    """Usage repository backed by a SQLite connection."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def find_latest_usage(self, subject_key: str) -> Optional[Usage]:
        try:
            row = self.conn.execute(
                """
                SELECT * FROM usages
                WHERE subject_key = ?
                ORDER BY id DESC
                LIMIT 1
                """,
                (subject_key,),
            ).fetchone()
            return self._load_usage(row) if row is not None else None
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to load usage for {subject_key}") from exc

    def find_usage_chain(self, subject_key: str) -> list[Usage]:
        """Latest usage and the rolled-over usages it continues, oldest first."""
        chain: list[Usage] = []
        try:
            rows = self.conn.execute(
                "SELECT * FROM usages WHERE subject_key = ? ORDER BY id DESC",
                (subject_key,),
            )
            for row in rows:
                chain.append(self._load_usage(row))
                if not row["continues_previous"]:
                    break
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to load usages for {subject_key}") from exc
        chain.reverse()
        return chain

    def create_usage(
        self,
        subject_key: str,
        continues_previous: bool,
        *,
        started_at: Optional[datetime] = None,
        is_concentrated: bool = True,
    ) -> Usage:
        now = started_at or datetime.now()
        usage = Usage(
            started_at=now,
            updated_at=now,
            subject_key=subject_key,
            is_concentrated=is_concentrated,
            continues_previous=continues_previous,
        )
        try:
            cur = self.conn.execute(
                """
                INSERT INTO usages (
                    subject_key,
                    started_at,
                    updated_at,
                    elapsed_us,
                    is_concentrated,
                    continues_previous
                ) VALUES (?, ?, ?, 0, ?, ?)
                """,
                (
                    subject_key,
                    _format(now),
                    _format(now),
                    1 if is_concentrated else 0,
                    1 if continues_previous else 0,
                ),
            )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to create usage for {subject_key}") from exc
        usage.id = cur.lastrowid
        return usage

    def save(self, usage: Usage) -> None:
        """Write a usage and all of its children in one transaction.

        New children get their ids only after the transaction commits, so a
        failed save leaves the in-memory tree ready to be saved again.
        """
        if usage.id is None:
            raise PersistenceError("Usage must be created through the repository first.")
        assigned: list[tuple[object, int]] = []
        try:
            self.conn.execute("BEGIN")
            self.conn.execute(
                """
                UPDATE usages
                SET updated_at = ?, elapsed_us = ?, is_concentrated = ?
                WHERE id = ?
                """,
                (
                    _format(usage.updated_at),
                    _to_us(usage.elapsed),
                    1 if usage.is_concentrated else 0,
                    usage.id,
                ),
            )
            for running in usage.running_usages:
                running_id = self._upsert(
                    "running_usages", "usage_id", usage.id, running, assigned
                )
                for active in running.active_usages:
                    self._upsert(
                        "active_usages", "running_usage_id", running_id, active, assigned
                    )
            self.conn.execute("COMMIT")
        except sqlite3.Error as exc:
            if self.conn.in_transaction:
                self.conn.execute("ROLLBACK")
            raise PersistenceError(f"Failed to save {usage}") from exc
        for interval, new_id in assigned:
            interval.id = new_id  # type: ignore[attr-defined]

    def fetch_usages_between(self, start: datetime, end: datetime) -> list[Usage]:
        """Usages of every subject overlapping ``[start, end)``."""
        try:
            rows = self.conn.execute(
                """
                SELECT * FROM usages
                WHERE started_at < ? AND updated_at >= ?
                ORDER BY subject_key, id
                """,
                (_format(end), _format(start)),
            ).fetchall()
            return [self._load_usage(row) for row in rows]
        except sqlite3.Error as exc:
            raise PersistenceError("Failed to load usages") from exc

    def _upsert(
        self,
        table: str,
        parent_column: str,
        parent_id: int,
        interval: RunningUsage | ActiveUsage,
        assigned: list[tuple[object, int]],
    ) -> int:
        values = (
            _format(interval.started_at),
            _format(interval.updated_at),
            _to_us(interval.elapsed),
        )
        if interval.id is None:
            cur = self.conn.execute(
                f"""
                INSERT INTO {table} ({parent_column}, started_at, updated_at, elapsed_us)
                VALUES (?, ?, ?, ?)
                """,
                (parent_id, *values),
            )
            assigned.append((interval, cur.lastrowid))
            return cur.lastrowid
        self.conn.execute(
            f"UPDATE {table} SET started_at = ?, updated_at = ?, elapsed_us = ? WHERE id = ?",
            (*values, interval.id),
        )
        return interval.id

    def _load_usage(self, row: sqlite3.Row) -> Usage:
        usage = Usage(
            id=row["id"],
            started_at=_parse(row["started_at"]),
            updated_at=_parse(row["updated_at"]),
            elapsed=_from_us(row["elapsed_us"]),
            subject_key=row["subject_key"],
            is_concentrated=bool(row["is_concentrated"]),
            continues_previous=bool(row["continues_previous"]),
        )
        running_rows = self.conn.execute(
            "SELECT * FROM running_usages WHERE usage_id = ? ORDER BY id",
            (usage.id,),
        ).fetchall()
        for running_row in running_rows:
            running = RunningUsage(
                id=running_row["id"],
                started_at=_parse(running_row["started_at"]),
                updated_at=_parse(running_row["updated_at"]),
                elapsed=_from_us(running_row["elapsed_us"]),
            )
            active_rows = self.conn.execute(
                "SELECT * FROM active_usages WHERE running_usage_id = ? ORDER BY id",
                (running.id,),
            ).fetchall()
            running.active_usages.extend(
                ActiveUsage(
                    id=active_row["id"],
                    started_at=_parse(active_row["started_at"]),
                    updated_at=_parse(active_row["updated_at"]),
                    elapsed=_from_us(active_row["elapsed_us"]),
                )
                for active_row in active_rows
            )
            usage.running_usages.append(running)
        return usage
