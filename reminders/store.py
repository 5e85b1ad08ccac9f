"""Persistent reminder store.

Local SQLite (WAL mode) keyed by reminder id. Each call is atomic on its
own; there is no multi-record transaction guarantee.

A deletion whose pending alert could not be cancelled is recorded in
pending_deletions. Those records are hidden from every read (and refuse
updates) until the deletion is retried, but survive a restart.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime, time
from pathlib import Path
from typing import Callable, Optional

from dateutil.parser import isoparse

import config
from logger import logger
from .errors import RecordNotFound
from .models import Reminder, RepeatFrequency, RepeatRule

_NOT_DELETING = "id NOT IN (SELECT reminder_id FROM pending_deletions)"


class ReminderStore:
    """SQLite-backed collection of Reminder records."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._connection: Optional[sqlite3.Connection] = None

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create database connection with WAL mode."""
        if self._connection is not None:
            return self._connection

        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._connection = sqlite3.connect(
            self.db_path,
            check_same_thread=False,
            timeout=10.0
        )
        self._connection.row_factory = sqlite3.Row
        self._connection.execute("PRAGMA journal_mode=WAL")
        self._connection.execute("PRAGMA busy_timeout=5000")
        self._init_schema(self._connection)

        logger.info(f"Reminder store initialized: {self.db_path}")
        return self._connection

    @staticmethod
    def _init_schema(conn: sqlite3.Connection) -> None:
        """Create tables if they don't exist."""
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS reminders (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                fire_at TEXT NOT NULL,
                anchor_at TEXT NOT NULL,
                repeat_frequency TEXT NOT NULL DEFAULT 'none',
                repeat_interval INTEGER NOT NULL DEFAULT 1,
                custom_dates TEXT,
                custom_time TEXT,
                is_completed INTEGER NOT NULL DEFAULT 0,
                parent_reminder_id TEXT,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_reminders_parent ON reminders(parent_reminder_id);
            CREATE INDEX IF NOT EXISTS idx_reminders_fire_at ON reminders(fire_at);

            CREATE TABLE IF NOT EXISTS pending_deletions (
                reminder_id TEXT PRIMARY KEY,
                requested_at TEXT NOT NULL
            );
        """)
        conn.commit()

    @contextmanager
    def _transaction(self):
        """Context manager for database transactions."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    def insert(self, reminder: Reminder) -> Reminder:
        """Insert a new reminder."""
        if reminder.created_at is None:
            reminder.created_at = datetime.now(reminder.fire_at.tzinfo)
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO reminders
                (id, title, fire_at, anchor_at, repeat_frequency, repeat_interval,
                 custom_dates, custom_time, is_completed, parent_reminder_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (reminder.id, *self._columns(reminder), reminder.created_at.isoformat())
            )
        logger.debug(f"Inserted reminder {reminder.id}: '{reminder.title}'")
        return reminder

    def update(self, reminder: Reminder) -> None:
        """Update an existing reminder.

        Raises:
            RecordNotFound: If the reminder was deleted (or is being deleted) meanwhile
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE reminders SET
                    title = ?, fire_at = ?, anchor_at = ?, repeat_frequency = ?,
                    repeat_interval = ?, custom_dates = ?, custom_time = ?,
                    is_completed = ?, parent_reminder_id = ?
                WHERE id = ? AND {_NOT_DELETING}
                """,
                (*self._columns(reminder), reminder.id)
            )
            if cursor.rowcount == 0:
                raise RecordNotFound(reminder.id)
        logger.debug(f"Updated reminder {reminder.id}: fire_at={reminder.fire_at}, completed={reminder.is_completed}")

    def delete(self, reminder_id: str) -> bool:
        """Delete a reminder. Returns True if a row was removed."""
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM reminders WHERE id = ?", (reminder_id,))
            conn.execute("DELETE FROM pending_deletions WHERE reminder_id = ?", (reminder_id,))
        return cursor.rowcount > 0

    def mark_deleting(self, reminder_ids: list[str]) -> None:
        """Record that these reminders are being deleted.

        They disappear from reads immediately; the rows go once their alerts
        are known to be cancelled.
        """
        requested_at = datetime.now(config.TIMEZONE).isoformat()
        with self._transaction() as conn:
            conn.executemany(
                "INSERT OR IGNORE INTO pending_deletions (reminder_id, requested_at) VALUES (?, ?)",
                [(rid, requested_at) for rid in reminder_ids]
            )

    def deleting_ids(self) -> set[str]:
        """Ids whose deletion was requested but not finished."""
        rows = self._get_connection().execute(
            "SELECT reminder_id FROM pending_deletions"
        ).fetchall()
        return {row["reminder_id"] for row in rows}

    def fetch_all(self) -> list[Reminder]:
        """All reminders, soonest first."""
        rows = self._get_connection().execute(
            f"SELECT * FROM reminders WHERE {_NOT_DELETING}"
        ).fetchall()
        return sorted((self._from_row(row) for row in rows), key=lambda r: r.fire_at)

    def fetch_by_id(self, reminder_id: str, include_deleting: bool = False) -> Optional[Reminder]:
        """Get a specific reminder by id."""
        sql = "SELECT * FROM reminders WHERE id = ?"
        if not include_deleting:
            sql += f" AND {_NOT_DELETING}"
        row = self._get_connection().execute(sql, (reminder_id,)).fetchone()
        return self._from_row(row) if row else None

    def require(self, reminder_id: str) -> Reminder:
        """Get a reminder by id, raising RecordNotFound if it's gone."""
        reminder = self.fetch_by_id(reminder_id)
        if reminder is None:
            raise RecordNotFound(reminder_id)
        return reminder

    def query(self, predicate: Callable[[Reminder], bool]) -> list[Reminder]:
        """All reminders matching a predicate, soonest first."""
        return [r for r in self.fetch_all() if predicate(r)]

    def children_of(self, parent_id: str, include_deleting: bool = False) -> list[Reminder]:
        """Generated occurrences belonging to a series, soonest first."""
        sql = "SELECT * FROM reminders WHERE parent_reminder_id = ?"
        if not include_deleting:
            sql += f" AND {_NOT_DELETING}"
        rows = self._get_connection().execute(sql, (parent_id,)).fetchall()
        return sorted((self._from_row(row) for row in rows), key=lambda r: r.fire_at)

    @staticmethod
    def _columns(reminder: Reminder) -> tuple:
        rule = reminder.repeat_rule
        custom_dates = json.dumps(sorted(d.isoformat() for d in rule.dates)) if rule.dates else None
        return (
            reminder.title,
            reminder.fire_at.isoformat(),
            reminder.anchor_at.isoformat(),
            rule.frequency.value,
            rule.interval,
            custom_dates,
            rule.time_of_day.strftime("%H:%M") if rule.time_of_day else None,
            int(reminder.is_completed),
            reminder.parent_reminder_id,
        )

    @staticmethod
    def _from_row(row: sqlite3.Row) -> Reminder:
        custom_dates = frozenset(
            date.fromisoformat(d) for d in json.loads(row["custom_dates"])
        ) if row["custom_dates"] else frozenset()
        custom_time = time.fromisoformat(row["custom_time"]) if row["custom_time"] else None

        return Reminder(
            id=row["id"],
            title=row["title"],
            fire_at=_parse_timestamp(row["fire_at"]),
            anchor_at=_parse_timestamp(row["anchor_at"]),
            repeat_rule=RepeatRule(
                frequency=RepeatFrequency(row["repeat_frequency"]),
                interval=row["repeat_interval"],
                dates=custom_dates,
                time_of_day=custom_time,
            ),
            is_completed=bool(row["is_completed"]),
            parent_reminder_id=row["parent_reminder_id"],
            created_at=_parse_timestamp(row["created_at"]),
        )


def _parse_timestamp(value: str) -> datetime:
    """Parse a stored timestamp back onto the local calendar."""
    dt = isoparse(value)
    return dt.astimezone(config.TIMEZONE) if dt.tzinfo else dt
