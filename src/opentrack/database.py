import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from .exceptions import ConflictError, StorageError
from .models import (
    DeviceInfo,
    EventKind,
    Location,
    OpenEvent,
    StatisticsRow,
    TrackedMessage,
    utcnow,
)

logger = logging.getLogger(__name__)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class Database:
    """Append-only event log and message registry on SQLite.

    One connection is shared by every request thread and guarded by a lock.
    Call :meth:`open` on startup and :meth:`close` on shutdown.
    """

    def __init__(self, db_path: str = "tracking.db", timeout: float = 30.0):
        self.db_path = db_path
        self.timeout = timeout
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._last_observed_at: Optional[datetime] = None

    def open(self) -> "Database":
        with self._lock:
            if self._conn is not None:
                return self
            try:
                self._conn = sqlite3.connect(
                    self.db_path,
                    check_same_thread=False,
                    timeout=self.timeout
                )
                self._conn.row_factory = sqlite3.Row
                if self.db_path != ":memory:":
                    self._conn.execute("PRAGMA journal_mode=WAL")
                self._init_db()
            except sqlite3.Error as e:
                self._conn = None
                raise StorageError(f"Could not open event log at {self.db_path}: {e}", cause=e)
        logger.info("Event log opened at %s", self.db_path)
        return self

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                logger.info("Event log closed")

    def locked(self):
        """The store lock, for callers that need several operations to be atomic."""
        return self._lock

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def __enter__(self) -> "Database":
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _init_db(self):
        """Initialize the database with required tables."""
        cursor = self._conn.cursor()

        cursor.execute("""
        CREATE TABLE IF NOT EXISTS tracked_messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            tracking_id TEXT NOT NULL UNIQUE,
            original_recipient TEXT NOT NULL,
            subject TEXT DEFAULT '',
            parent_tracking_id TEXT,
            sent_at TIMESTAMP NOT NULL,
            ever_opened INTEGER DEFAULT 0,
            ever_forwarded INTEGER DEFAULT 0
        )
        """)

        # No foreign key on tracking_id: events for unknown ids are still kept
        cursor.execute("""
        CREATE TABLE IF NOT EXISTS open_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            tracking_id TEXT NOT NULL,
            observed_at TIMESTAMP NOT NULL,
            event_kind TEXT NOT NULL DEFAULT 'open',
            classified_forwarded INTEGER DEFAULT 0,
            ip_address TEXT,
            user_agent TEXT,
            referer TEXT,
            claimed_recipient TEXT,
            forwarded_by TEXT,
            country TEXT,
            region TEXT,
            city TEXT,
            latitude REAL,
            longitude REAL,
            device_info TEXT
        )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_open_events_tracking_id ON open_events(tracking_id, observed_at)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_tracked_messages_parent ON tracked_messages(parent_tracking_id)")

        self._conn.commit()

    @contextmanager
    def get_connection(self):
        """Yield the shared connection while holding the store lock."""
        with self._lock:
            if self._conn is None:
                raise StorageError("Event log is not open")
            try:
                yield self._conn
            except sqlite3.IntegrityError:
                self._conn.rollback()
                raise
            except sqlite3.Error as e:
                self._conn.rollback()
                raise StorageError(f"Event log operation failed: {e}", cause=e)

    # Messages

    def create_message(
        self,
        tracking_id: str,
        original_recipient: str,
        subject: str = "",
        parent_tracking_id: Optional[str] = None,
        sent_at: Optional[datetime] = None
    ) -> TrackedMessage:
        """Register an outbound message.

        Events already recorded for ``tracking_id`` seed the rollup flags.
        """
        sent_at = sent_at or utcnow()
        try:
            with self.get_connection() as conn:
                conn.execute("""
                    INSERT INTO tracked_messages
                    (tracking_id, original_recipient, subject, parent_tracking_id, sent_at,
                     ever_opened, ever_forwarded)
                    SELECT ?, ?, ?, ?, ?,
                        EXISTS (SELECT 1 FROM open_events
                                WHERE tracking_id = ? AND event_kind != 'click'),
                        EXISTS (SELECT 1 FROM open_events
                                WHERE tracking_id = ? AND event_kind != 'click'
                                  AND classified_forwarded = 1)
                """, (tracking_id, original_recipient, subject or "", parent_tracking_id,
                      sent_at.isoformat(timespec="microseconds"), tracking_id, tracking_id))
                conn.commit()
                row = conn.execute(
                    "SELECT * FROM tracked_messages WHERE tracking_id = ?", (tracking_id,)
                ).fetchone()
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"Tracking id {tracking_id} already exists", cause=e)
        return self._row_to_message(row)

    def get_message(self, tracking_id: str) -> Optional[TrackedMessage]:
        """Get message by tracking id."""
        with self.get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM tracked_messages WHERE tracking_id = ?", (tracking_id,)
            ).fetchone()
        return self._row_to_message(row) if row else None

    def get_child_messages(self, parent_tracking_id: str) -> List[TrackedMessage]:
        """Messages that were forwarded from ``parent_tracking_id``."""
        with self.get_connection() as conn:
            rows = conn.execute("""
                SELECT * FROM tracked_messages
                WHERE parent_tracking_id = ?
                ORDER BY sent_at ASC, id ASC
            """, (parent_tracking_id,)).fetchall()
        return [self._row_to_message(row) for row in rows]

    def list_messages(self) -> List[Dict[str, Any]]:
        """Every message with its open count, newest first."""
        with self.get_connection() as conn:
            rows = conn.execute("""
                SELECT m.*, COUNT(e.id) AS open_count
                FROM tracked_messages m
                LEFT JOIN open_events e
                    ON e.tracking_id = m.tracking_id AND e.event_kind != 'click'
                GROUP BY m.id
                ORDER BY m.sent_at DESC, m.id DESC
            """).fetchall()
        result = []
        for row in rows:
            data = self._row_to_message(row).to_dict()
            data["open_count"] = row["open_count"]
            result.append(data)
        return result

    def mark_opened(self, tracking_id: str) -> bool:
        with self.get_connection() as conn:
            cursor = conn.execute("""
                UPDATE tracked_messages SET ever_opened = 1
                WHERE tracking_id = ? AND ever_opened = 0
            """, (tracking_id,))
            conn.commit()
            return cursor.rowcount > 0

    def mark_forwarded(self, tracking_id: str) -> bool:
        with self.get_connection() as conn:
            cursor = conn.execute("""
                UPDATE tracked_messages SET ever_forwarded = 1
                WHERE tracking_id = ? AND ever_forwarded = 0
            """, (tracking_id,))
            conn.commit()
            return cursor.rowcount > 0

    # Events

    def _next_observed_at(self) -> datetime:
        # Never hand out a timestamp earlier than the previous one.
        now = utcnow()
        if self._last_observed_at is not None and now < self._last_observed_at:
            now = self._last_observed_at
        self._last_observed_at = now
        return now

    def insert_event(self, event: OpenEvent) -> int:
        """Append an event; ``observed_at`` is assigned here."""
        location = event.location or Location()
        with self.get_connection() as conn:
            event.observed_at = self._next_observed_at()
            cursor = conn.execute("""
                INSERT INTO open_events
                (tracking_id, observed_at, event_kind, classified_forwarded,
                 ip_address, user_agent, referer, claimed_recipient, forwarded_by,
                 country, region, city, latitude, longitude, device_info)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                event.tracking_id,
                event.observed_at.isoformat(timespec="microseconds"),
                event.event_kind.value,
                int(event.classified_forwarded),
                event.ip,
                event.user_agent,
                event.referrer,
                event.claimed_recipient,
                event.forwarded_by,
                location.country,
                location.region,
                location.city,
                location.latitude,
                location.longitude,
                json.dumps(event.device_info.to_dict()) if event.device_info else None,
            ))
            conn.commit()
            event.id = cursor.lastrowid
            return event.id

    def get_events(self, tracking_id: str) -> List[OpenEvent]:
        """Events for one tracking id, oldest first."""
        with self.get_connection() as conn:
            rows = conn.execute("""
                SELECT * FROM open_events
                WHERE tracking_id = ?
                ORDER BY observed_at ASC, id ASC
            """, (tracking_id,)).fetchall()
        return [self._row_to_event(row) for row in rows]

    def get_statistics(self) -> List[StatisticsRow]:
        """One row per tracking id, most recently active first."""
        with self.get_connection() as conn:
            rows = conn.execute("""
                SELECT
                    tracking_id,
                    COUNT(*) AS open_count,
                    MIN(observed_at) AS first_open,
                    MAX(observed_at) AS last_open
                FROM open_events
                GROUP BY tracking_id
                ORDER BY last_open DESC, MAX(id) DESC
            """).fetchall()
        return [
            StatisticsRow(
                tracking_id=row["tracking_id"],
                open_count=row["open_count"],
                first_open=_parse_ts(row["first_open"]),
                last_open=_parse_ts(row["last_open"]),
            )
            for row in rows
        ]

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> TrackedMessage:
        return TrackedMessage(
            tracking_id=row["tracking_id"],
            original_recipient=row["original_recipient"],
            subject=row["subject"] or "",
            sent_at=_parse_ts(row["sent_at"]),
            parent_tracking_id=row["parent_tracking_id"],
            ever_opened=bool(row["ever_opened"]),
            ever_forwarded=bool(row["ever_forwarded"]),
        )

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> OpenEvent:
        location = None
        if any(row[key] is not None for key in ("country", "region", "city", "latitude", "longitude")):
            location = Location(
                country=row["country"],
                region=row["region"],
                city=row["city"],
                latitude=row["latitude"],
                longitude=row["longitude"],
            )
        device_info = None
        if row["device_info"]:
            device_info = DeviceInfo(**json.loads(row["device_info"]))
        return OpenEvent(
            id=row["id"],
            tracking_id=row["tracking_id"],
            observed_at=_parse_ts(row["observed_at"]),
            ip=row["ip_address"],
            user_agent=row["user_agent"],
            referrer=row["referer"],
            location=location,
            device_info=device_info,
            event_kind=EventKind(row["event_kind"]),
            classified_forwarded=bool(row["classified_forwarded"]),
            claimed_recipient=row["claimed_recipient"],
            forwarded_by=row["forwarded_by"],
        )
