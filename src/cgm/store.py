"""SQLite persistence for reconciled glucose readings.

The store is an append-only, deduplicating log keyed by reading id.  It owns
the sync cursor: the timestamp of the newest persisted reading, used by the
reconciler as the low-water mark for "new since last sync".

Timestamps are stored as fixed-width UTC text so that SQL string ordering and
range comparisons match chronological order.
"""

from __future__ import annotations

import logging
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterable, Sequence

from src.cgm.base import GlucoseReading, ensure_utc, utc_now

logger = logging.getLogger("glucolink.cgm.store")

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%f"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS glucose (
    id TEXT PRIMARY KEY,
    timestamp TEXT NOT NULL,
    value REAL NOT NULL,
    source TEXT NOT NULL,
    device TEXT,
    direction TEXT
);

CREATE INDEX IF NOT EXISTS idx_glucose_timestamp
ON glucose(timestamp);
"""


class ReadingStoreError(RuntimeError):
    """Raised when the reading store cannot complete a read or write."""


def filter_too_frequent(
    candidates: Iterable[GlucoseReading],
    cursor: datetime,
    min_interval: timedelta,
) -> list[GlucoseReading]:
    """Drop readings that arrive too soon after the previous kept reading.

    Candidates are walked in timestamp order (stable, so the earliest-seen of
    equal timestamps wins).  A candidate is kept only if it lies more than
    ``min_interval`` after the last kept reading, starting from ``cursor``.

    Args:
        candidates:   Readings newer than the cursor.
        cursor:       Timestamp of the newest persisted reading.
        min_interval: Minimum spacing between kept readings.

    Returns:
        Kept readings in timestamp order.
    """
    last = ensure_utc(cursor)
    kept: list[GlucoseReading] = []
    for reading in sorted(candidates, key=lambda r: r.timestamp):
        if reading.timestamp - min_interval <= last:
            continue
        kept.append(reading)
        last = reading.timestamp
    return kept


class ReadingStore(ABC):
    """Append/query interface used by the reconciler and the API layer."""

    @abstractmethod
    def recent(self) -> list[GlucoseReading]:
        """Return retained readings.  Callers must not assume an order."""

    @abstractmethod
    def store_glucose(self, readings: Sequence[GlucoseReading]) -> int:
        """Persist readings; already-present ids are ignored.

        Returns:
            Number of readings actually inserted.
        """

    @abstractmethod
    def remove_glucose(self, ids: Sequence[str]) -> int:
        """Delete readings by id.  Returns the number removed."""

    @abstractmethod
    def sync_cursor(self) -> datetime:
        """Return the timestamp of the newest persisted reading."""

    @abstractmethod
    def filter_too_frequent_glucose(
        self, candidates: Sequence[GlucoseReading], cursor: datetime
    ) -> list[GlucoseReading]:
        """Apply the frequency filter against the persisted timeline."""

    def retention_cutoff(self) -> datetime | None:
        """Oldest timestamp the store keeps, or None if it keeps everything."""
        return None


class SQLiteReadingStore(ReadingStore):
    """Reading store backed by a single SQLite file."""

    def __init__(
        self,
        db_path: Path,
        *,
        min_interval: timedelta | Callable[[], timedelta] = timedelta(seconds=210),
        retention: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Create store and ensure schema exists.

        Args:
            db_path:      SQLite file path (parent directories are created).
            min_interval: Frequency filter spacing, or a callable returning it
                          so it can follow configuration changes.
            retention:    Readings older than this are trimmed on every store.
            clock:        Returns the current UTC time.
        """
        self._db_path = db_path
        self._min_interval = min_interval
        self._retention = retention
        self._clock = clock
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.executescript(SCHEMA_SQL)
            conn.commit()

    # ------------------------------------------------------------------
    # ReadingStore interface
    # ------------------------------------------------------------------

    def recent(self) -> list[GlucoseReading]:
        """Return retained readings, oldest first."""
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM glucose ORDER BY timestamp"
                ).fetchall()
        except sqlite3.Error as exc:
            raise ReadingStoreError(f"Could not read glucose: {exc}") from exc
        return [_reading_from_row(row) for row in rows]

    def readings_between(
        self, start: datetime, end: datetime
    ) -> list[GlucoseReading]:
        """Return readings with ``start <= timestamp <= end``, oldest first."""
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT * FROM glucose
                    WHERE timestamp >= ? AND timestamp <= ?
                    ORDER BY timestamp
                    """,
                    (_format_ts(start), _format_ts(end)),
                ).fetchall()
        except sqlite3.Error as exc:
            raise ReadingStoreError(f"Could not read glucose: {exc}") from exc
        return [_reading_from_row(row) for row in rows]

    def store_glucose(self, readings: Sequence[GlucoseReading]) -> int:
        """Insert new readings and trim expired ones in one transaction.

        Readings already older than the retention cutoff are not inserted.
        """
        cutoff = self.retention_cutoff()
        rows = [
            (
                r.id,
                _format_ts(r.timestamp),
                r.value,
                r.source,
                r.device,
                r.direction,
            )
            for r in readings
            if r.timestamp >= cutoff
        ]
        try:
            with self._connect() as conn:
                before = conn.total_changes
                conn.executemany(
                    """
                    INSERT OR IGNORE INTO glucose(
                        id, timestamp, value, source, device, direction
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    rows,
                )
                inserted = conn.total_changes - before
                conn.execute(
                    "DELETE FROM glucose WHERE timestamp < ?", (_format_ts(cutoff),)
                )
                conn.commit()
        except sqlite3.Error as exc:
            raise ReadingStoreError(f"Could not store glucose: {exc}") from exc
        logger.debug("Stored %d/%d glucose readings", inserted, len(readings))
        return inserted

    def remove_glucose(self, ids: Sequence[str]) -> int:
        if not ids:
            return 0
        placeholders = ",".join("?" for _ in ids)
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    f"DELETE FROM glucose WHERE id IN ({placeholders})", tuple(ids)
                )
                conn.commit()
        except sqlite3.Error as exc:
            raise ReadingStoreError(f"Could not remove glucose: {exc}") from exc
        logger.info("Removed %d glucose readings", cur.rowcount)
        return cur.rowcount

    def retention_cutoff(self) -> datetime:
        return self._clock() - self._retention

    def sync_cursor(self) -> datetime:
        """Newest persisted timestamp, or one day ago for an empty store."""
        try:
            with self._connect() as conn:
                row = conn.execute("SELECT MAX(timestamp) AS ts FROM glucose").fetchone()
        except sqlite3.Error as exc:
            raise ReadingStoreError(f"Could not read sync cursor: {exc}") from exc
        if row is None or row["ts"] is None:
            return self._clock() - timedelta(days=1)
        return _parse_ts(row["ts"])

    def filter_too_frequent_glucose(
        self, candidates: Sequence[GlucoseReading], cursor: datetime
    ) -> list[GlucoseReading]:
        interval = (
            self._min_interval()
            if callable(self._min_interval)
            else self._min_interval
        )
        return filter_too_frequent(candidates, cursor, interval)


def _format_ts(value: datetime) -> str:
    return ensure_utc(value).strftime(_TS_FORMAT)


def _parse_ts(value: str) -> datetime:
    return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=timezone.utc)


def _reading_from_row(row: sqlite3.Row) -> GlucoseReading:
    return GlucoseReading(
        id=row["id"],
        timestamp=_parse_ts(row["timestamp"]),
        value=row["value"],
        source=row["source"],
        device=row["device"],
        direction=row["direction"],
    )
