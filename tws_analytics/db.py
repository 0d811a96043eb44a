"""SQLite interval store for TimeWellSpent analytics."""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterable
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from tws_analytics.clipping import (
    MalformedTimestampError,
    format_timestamp,
    parse_timestamp_ms,
)

Category = Literal["productive", "neutral", "frivolity", "draining", "emergency"]


def _normalize_timestamp(value: str) -> str:
    try:
        return format_timestamp(parse_timestamp_ms(value))
    except MalformedTimestampError as e:
        raise ValueError(str(e)) from None


class ActivityInterval(BaseModel):
    """A foreground activity interval reported by the tracker.

    ``ended_at`` is None while the interval is still open.
    """

    started_at: str
    ended_at: str | None = None
    source: Literal["app", "url"] = "url"
    app_name: str | None = None
    domain: str | None = None
    category: Category | None = None
    seconds_active: float = Field(default=0, ge=0, allow_inf_nan=False)
    idle_seconds: float = Field(default=0, ge=0, allow_inf_nan=False)

    @field_validator("started_at", "ended_at")
    @classmethod
    def _timestamps_are_iso(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return _normalize_timestamp(value)


class BehaviorEvent(BaseModel):
    """Fine-grained behavior signal from the browser extension."""

    timestamp: str
    domain: str
    event_type: str
    session_id: int | None = None
    value_int: int | None = None
    value_float: float | None = None
    metadata: dict[str, Any] | None = None

    @field_validator("timestamp")
    @classmethod
    def _timestamp_is_iso(cls, value: str) -> str:
        return _normalize_timestamp(value)


class FocusSession(BaseModel):
    """A pomodoro session, used only for the deep-work overlay."""

    started_at: str
    ended_at: str | None = None
    planned_duration_sec: int = Field(ge=0)

    @field_validator("started_at", "ended_at")
    @classmethod
    def _timestamps_are_iso(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return _normalize_timestamp(value)


class ProgressDelta(BaseModel):
    """Counter increments from a reading or writing progress event.

    Progress events carry deltas, so rollups accumulate them.
    """

    occurred_at: str
    active_seconds: float = Field(default=0, ge=0, allow_inf_nan=False)
    focused_seconds: float = Field(default=0, ge=0, allow_inf_nan=False)
    keystrokes: int = Field(default=0, ge=0)
    words_added: int = Field(default=0, ge=0)
    words_deleted: int = Field(default=0, ge=0)
    net_words: int = 0

    @field_validator("occurred_at")
    @classmethod
    def _timestamp_is_iso(cls, value: str) -> str:
        return _normalize_timestamp(value)


class ActivityRollup(BaseModel):
    """Per-device, per-hour category totals, keyed by ``(device_id, hour_start)``."""

    device_id: str
    hour_start: str
    productive: float = 0
    neutral: float = 0
    frivolity: float = 0
    idle: float = 0
    updated_at: str


SCHEMA = """
CREATE TABLE IF NOT EXISTS activities (
    id INTEGER PRIMARY KEY,
    started_at TEXT NOT NULL,
    ended_at TEXT,
    source TEXT NOT NULL DEFAULT 'url' CHECK(source IN ('app', 'url')),
    app_name TEXT,
    domain TEXT,
    category TEXT,
    seconds_active REAL DEFAULT 0,
    idle_seconds REAL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS activity_rollups (
    device_id TEXT NOT NULL,
    hour_start TEXT NOT NULL,
    productive REAL NOT NULL DEFAULT 0,
    neutral REAL NOT NULL DEFAULT 0,
    frivolity REAL NOT NULL DEFAULT 0,
    idle REAL NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (device_id, hour_start)
);

CREATE TABLE IF NOT EXISTS reading_hourly_rollups (
    hour_start TEXT PRIMARY KEY,
    active_seconds REAL NOT NULL DEFAULT 0,
    focused_seconds REAL NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS writing_hourly_rollups (
    hour_start TEXT PRIMARY KEY,
    active_seconds REAL NOT NULL DEFAULT 0,
    focused_seconds REAL NOT NULL DEFAULT 0,
    keystrokes INTEGER NOT NULL DEFAULT 0,
    words_added INTEGER NOT NULL DEFAULT 0,
    words_deleted INTEGER NOT NULL DEFAULT 0,
    net_words INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS writing_daily_rollups (
    day TEXT PRIMARY KEY,
    active_seconds REAL NOT NULL DEFAULT 0,
    focused_seconds REAL NOT NULL DEFAULT 0,
    keystrokes INTEGER NOT NULL DEFAULT 0,
    words_added INTEGER NOT NULL DEFAULT 0,
    words_deleted INTEGER NOT NULL DEFAULT 0,
    net_words INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS pomodoro_sessions (
    id INTEGER PRIMARY KEY,
    started_at TEXT NOT NULL,
    ended_at TEXT,
    planned_duration_sec INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS behavior_events (
    id INTEGER PRIMARY KEY,
    timestamp TEXT NOT NULL,
    session_id INTEGER,
    domain TEXT NOT NULL,
    event_type TEXT NOT NULL,
    value_int INTEGER,
    value_float REAL,
    metadata TEXT
);

CREATE TABLE IF NOT EXISTS behavioral_patterns (
    id INTEGER PRIMARY KEY,
    computed_at TEXT NOT NULL,
    from_category TEXT,
    from_domain TEXT,
    to_category TEXT,
    to_domain TEXT,
    transition_count INTEGER NOT NULL,
    avg_duration_before REAL NOT NULL,
    correlation_strength REAL NOT NULL,
    time_of_day_bucket INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_activities_started ON activities(started_at);
CREATE INDEX IF NOT EXISTS idx_activities_domain ON activities(domain);
CREATE INDEX IF NOT EXISTS idx_rollups_updated ON activity_rollups(device_id, updated_at);
CREATE INDEX IF NOT EXISTS idx_behavior_events_domain ON behavior_events(domain, timestamp);
CREATE INDEX IF NOT EXISTS idx_patterns_count ON behavioral_patterns(transition_count);
"""

logger = logging.getLogger(__name__)


def _query_bounds(start_ms: int, end_ms: int) -> tuple[str, str]:
    """SQL bounds widened to whole seconds on both sides.

    Stored timestamps may or may not carry milliseconds, which breaks plain
    string ordering within a second. The SQL filter only has to return a
    superset; exact clipping happens in Python.
    """
    start = (start_ms // 1000 - 1) * 1000
    end = (-(-end_ms // 1000) + 1) * 1000
    return format_timestamp(start), format_timestamp(end)


class AnalyticsStore:
    """SQLite-backed interval store.

    Not thread-safe. Each thread should have its own AnalyticsStore instance.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._init_schema()

    def __enter__(self) -> "AnalyticsStore":
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        self.close()

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def _init_schema(self) -> None:
        """Initialize database schema."""
        self._conn.executescript(SCHEMA)
        self._conn.commit()

    @classmethod
    def open(cls, path: Path) -> AnalyticsStore:
        """Open or create a database at the given path."""
        conn = sqlite3.connect(path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode = WAL")
        return cls(conn)

    @classmethod
    def open_in_memory(cls) -> AnalyticsStore:
        """Create an in-memory database for testing."""
        conn = sqlite3.connect(":memory:")
        conn.row_factory = sqlite3.Row
        return cls(conn)

    # -- activities ---------------------------------------------------------

    def insert_activity(self, activity: ActivityInterval) -> int:
        """Insert an activity interval. Returns the row ID."""
        cursor = self._conn.execute(
            """
            INSERT INTO activities
            (started_at, ended_at, source, app_name, domain, category, seconds_active, idle_seconds)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                activity.started_at,
                activity.ended_at,
                activity.source,
                activity.app_name,
                activity.domain,
                activity.category,
                activity.seconds_active,
                activity.idle_seconds,
            ),
        )
        self._conn.commit()
        return cursor.lastrowid

    def get_activities_in_range(self, start_ms: int, end_ms: int) -> list[dict[str, Any]]:
        """Activities that may overlap ``[start_ms, end_ms)``.

        Open intervals (no ``ended_at``) are always candidates. Rows are
        ordered by ``started_at`` ascending; callers clip them exactly.
        """
        start, end = _query_bounds(start_ms, end_ms)
        cursor = self._conn.execute(
            """
            SELECT * FROM activities
            WHERE started_at <= ? AND (ended_at IS NULL OR ended_at >= ?)
            ORDER BY started_at ASC, id ASC
            """,
            (end, start),
        )
        return [dict(row) for row in cursor.fetchall()]

    def get_domain_activities_in_range(
        self, domain: str, start_ms: int, end_ms: int
    ) -> list[dict[str, Any]]:
        """Like :meth:`get_activities_in_range`, restricted to one domain."""
        start, end = _query_bounds(start_ms, end_ms)
        cursor = self._conn.execute(
            """
            SELECT * FROM activities
            WHERE domain = ? AND started_at <= ? AND (ended_at IS NULL OR ended_at >= ?)
            ORDER BY started_at ASC, id ASC
            """,
            (domain, end, start),
        )
        return [dict(row) for row in cursor.fetchall()]

    def get_activities_started_between(self, start_ms: int, end_ms: int) -> list[dict[str, Any]]:
        """Activities whose ``started_at`` may lie in ``[start_ms, end_ms)``.

        The bounds are widened to whole seconds; callers filter exactly.
        """
        start, end = _query_bounds(start_ms, end_ms)
        cursor = self._conn.execute(
            """
            SELECT * FROM activities
            WHERE started_at >= ? AND started_at < ?
            ORDER BY started_at ASC, id ASC
            """,
            (start, end),
        )
        return [dict(row) for row in cursor.fetchall()]

    # -- reading / writing rollups -----------------------------------------

    def record_reading_progress(self, delta: ProgressDelta, hour_start: str) -> None:
        """Add a reading progress delta to its hourly rollup."""
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO reading_hourly_rollups (hour_start, active_seconds, focused_seconds, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(hour_start) DO UPDATE SET
                    active_seconds = reading_hourly_rollups.active_seconds + excluded.active_seconds,
                    focused_seconds = reading_hourly_rollups.focused_seconds + excluded.focused_seconds,
                    updated_at = excluded.updated_at
                """,
                (hour_start, delta.active_seconds, delta.focused_seconds, delta.occurred_at),
            )

    def record_writing_progress(self, delta: ProgressDelta, hour_start: str, day: str) -> None:
        """Add a writing progress delta to its hourly and daily rollups.

        Both upserts share one transaction.
        """
        counters = (
            delta.active_seconds,
            delta.focused_seconds,
            delta.keystrokes,
            delta.words_added,
            delta.words_deleted,
            delta.net_words,
            delta.occurred_at,
        )
        with self._conn:
            for table, key_column, key in (
                ("writing_hourly_rollups", "hour_start", hour_start),
                ("writing_daily_rollups", "day", day),
            ):
                self._conn.execute(
                    f"""
                    INSERT INTO {table}
                    ({key_column}, active_seconds, focused_seconds, keystrokes,
                     words_added, words_deleted, net_words, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT({key_column}) DO UPDATE SET
                        active_seconds = {table}.active_seconds + excluded.active_seconds,
                        focused_seconds = {table}.focused_seconds + excluded.focused_seconds,
                        keystrokes = {table}.keystrokes + excluded.keystrokes,
                        words_added = {table}.words_added + excluded.words_added,
                        words_deleted = {table}.words_deleted + excluded.words_deleted,
                        net_words = {table}.net_words + excluded.net_words,
                        updated_at = excluded.updated_at
                    """,
                    (key, *counters),
                )

    def get_reading_hourly(self, start_ms: int, end_ms: int) -> list[dict[str, Any]]:
        return self._hourly_rollups("reading_hourly_rollups", start_ms, end_ms)

    def get_writing_hourly(self, start_ms: int, end_ms: int) -> list[dict[str, Any]]:
        return self._hourly_rollups("writing_hourly_rollups", start_ms, end_ms)

    def get_writing_daily(self, start_day: str, end_day: str) -> list[dict[str, Any]]:
        """Daily writing rollups for days in ``[start_day, end_day]`` (YYYY-MM-DD)."""
        cursor = self._conn.execute(
            "SELECT * FROM writing_daily_rollups WHERE day >= ? AND day <= ? ORDER BY day ASC",
            (start_day, end_day),
        )
        return [dict(row) for row in cursor.fetchall()]

    def _hourly_rollups(self, table: str, start_ms: int, end_ms: int) -> list[dict[str, Any]]:
        start, end = _query_bounds(start_ms, end_ms)
        cursor = self._conn.execute(
            f"SELECT * FROM {table} WHERE hour_start >= ? AND hour_start <= ? ORDER BY hour_start ASC",
            (start, end),
        )
        return [dict(row) for row in cursor.fetchall()]

    # -- focus sessions -----------------------------------------------------

    def insert_focus_session(self, session: FocusSession) -> int:
        cursor = self._conn.execute(
            "INSERT INTO pomodoro_sessions (started_at, ended_at, planned_duration_sec) VALUES (?, ?, ?)",
            (session.started_at, session.ended_at, session.planned_duration_sec),
        )
        self._conn.commit()
        return cursor.lastrowid

    def get_focus_sessions_in_range(self, start_ms: int, end_ms: int) -> list[dict[str, Any]]:
        start, end = _query_bounds(start_ms, end_ms)
        cursor = self._conn.execute(
            """
            SELECT * FROM pomodoro_sessions
            WHERE (ended_at IS NULL OR ended_at >= ?) AND started_at <= ?
            ORDER BY started_at ASC
            """,
            (start, end),
        )
        return [dict(row) for row in cursor.fetchall()]

    # -- behavior events ----------------------------------------------------

    def insert_behavior_events(self, events: Iterable[BehaviorEvent]) -> int:
        """Insert behavior events in one transaction. Returns the count inserted."""
        rows = [
            (
                event.timestamp,
                event.session_id,
                event.domain,
                event.event_type,
                event.value_int,
                event.value_float,
                json.dumps(event.metadata) if event.metadata else None,
            )
            for event in events
        ]
        with self._conn:
            self._conn.executemany(
                """
                INSERT INTO behavior_events
                (timestamp, session_id, domain, event_type, value_int, value_float, metadata)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
        return len(rows)

    def get_behavior_events(
        self,
        *,
        domain: str | None = None,
        start: str | None = None,
        end: str | None = None,
    ) -> list[dict[str, Any]]:
        """Query behavior events ordered by timestamp ascending.

        Args:
            domain: Restrict to one domain
            start: ISO 8601 timestamp (inclusive lower bound)
            end: ISO 8601 timestamp (inclusive upper bound)
        """
        query = "SELECT * FROM behavior_events WHERE 1=1"
        params: list[str] = []

        if domain is not None:
            query += " AND domain = ?"
            params.append(domain)
        if start is not None:
            query += " AND timestamp >= ?"
            params.append(start)
        if end is not None:
            query += " AND timestamp <= ?"
            params.append(end)

        query += " ORDER BY timestamp ASC, id ASC"
        cursor = self._conn.execute(query, params)
        return [dict(row) for row in cursor.fetchall()]

    def get_behavior_events_in_range(
        self, start_ms: int, end_ms: int, domain: str | None = None
    ) -> list[dict[str, Any]]:
        """Behavior events that may lie in ``[start_ms, end_ms]``.

        The bounds are widened to whole seconds; callers filter exactly.
        """
        start, end = _query_bounds(start_ms, end_ms)
        return self.get_behavior_events(domain=domain, start=start, end=end)

    # -- activity rollups ---------------------------------------------------

    def upsert_activity_rollups(self, rollups: Iterable[ActivityRollup]) -> int:
        """Overwrite each ``(device_id, hour_start)`` row in one transaction.

        Last write wins: rollups are always recomputed from source intervals,
        so the incoming row replaces the stored one rather than adding to it.
        """
        rows = [
            (r.device_id, r.hour_start, r.productive, r.neutral, r.frivolity, r.idle, r.updated_at)
            for r in rollups
        ]
        with self._conn:
            self._conn.executemany(
                """
                INSERT INTO activity_rollups
                (device_id, hour_start, productive, neutral, frivolity, idle, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(device_id, hour_start) DO UPDATE SET
                    productive = excluded.productive,
                    neutral = excluded.neutral,
                    frivolity = excluded.frivolity,
                    idle = excluded.idle,
                    updated_at = excluded.updated_at
                """,
                rows,
            )
        return len(rows)

    def list_activity_rollups_since(self, device_id: str, updated_after: str) -> list[ActivityRollup]:
        cursor = self._conn.execute(
            """
            SELECT * FROM activity_rollups
            WHERE device_id = ? AND updated_at >= ?
            ORDER BY hour_start ASC
            """,
            (device_id, updated_after),
        )
        return [ActivityRollup.model_validate(dict(row)) for row in cursor.fetchall()]

    def list_activity_rollups_for_window(
        self, window_start: str, device_id: str | None = None
    ) -> list[ActivityRollup]:
        """Rollups with ``hour_start >= window_start``, for one device or all."""
        query = "SELECT * FROM activity_rollups WHERE hour_start >= ?"
        params: list[str] = [window_start]
        if device_id is not None:
            query += " AND device_id = ?"
            params.append(device_id)
        query += " ORDER BY hour_start ASC, device_id ASC"
        cursor = self._conn.execute(query, params)
        return [ActivityRollup.model_validate(dict(row)) for row in cursor.fetchall()]

    # -- behavioral patterns ------------------------------------------------

    def replace_patterns(self, rows: Iterable[dict[str, Any]]) -> int:
        """Replace the whole pattern table atomically.

        Readers see either the old set or the new one, never a mix.
        """
        values = [
            (
                row["computed_at"],
                row["from_category"],
                row["from_domain"],
                row["to_category"],
                row["to_domain"],
                row["transition_count"],
                row["avg_duration_before"],
                row["correlation_strength"],
                row["time_of_day_bucket"],
            )
            for row in rows
        ]
        with self._conn:
            self._conn.execute("DELETE FROM behavioral_patterns")
            self._conn.executemany(
                """
                INSERT INTO behavioral_patterns
                (computed_at, from_category, from_domain, to_category, to_domain,
                 transition_count, avg_duration_before, correlation_strength, time_of_day_bucket)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                values,
            )
        logger.debug("Replaced behavioral_patterns with %d rows", len(values))
        return len(values)

    def get_top_patterns(self, limit: int = 50) -> list[dict[str, Any]]:
        cursor = self._conn.execute(
            "SELECT * FROM behavioral_patterns ORDER BY transition_count DESC, id ASC LIMIT ?",
            (limit,),
        )
        return [dict(row) for row in cursor.fetchall()]

    def latest_pattern_computed_at(self) -> str | None:
        row = self._conn.execute(
            "SELECT computed_at FROM behavioral_patterns ORDER BY computed_at DESC LIMIT 1"
        ).fetchone()
        return row["computed_at"] if row else None

    # -- settings -----------------------------------------------------------

    def get_setting(self, key: str, default: Any = None) -> Any:
        """Return the JSON-decoded value stored under ``key``."""
        row = self._conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        if row is None:
            return default
        return json.loads(row["value"])

    def set_setting(self, key: str, value: Any) -> None:
        self._conn.execute(
            """
            INSERT INTO settings (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (key, json.dumps(value)),
        )
        self._conn.commit()
