from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from icsmirror.errors import InvalidArgument, NotFound
from icsmirror.models import EventRecord, SyncStatus, parse_iso_datetime, serialize_datetime

# Content fields serialized into events.payload_json. Identity, sequence,
# acknowledged payload and sync status live in their own columns.
CONTENT_FIELDS = (
    "title",
    "description",
    "location",
    "start",
    "end",
    "all_day",
    "recurrence_rule",
    "organizer",
    "attendees",
    "resources",
    "updated_at",
)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StateStore:
    """SQLite storage for event records, UID mappings and sync attempts."""

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            uid TEXT NOT NULL DEFAULT '',
            calendar_id INTEGER NOT NULL,
            payload_json TEXT NOT NULL,
            sequence INTEGER NOT NULL DEFAULT 0,
            raw_ics TEXT NOT NULL DEFAULT '',
            x_properties_json TEXT NOT NULL DEFAULT '[]',
            active INTEGER NOT NULL DEFAULT 1,
            sync_state TEXT NOT NULL DEFAULT '',
            sync_operation TEXT NOT NULL DEFAULT '',
            last_sent_at TEXT,
            last_error TEXT NOT NULL DEFAULT '',
            last_attempted_ics TEXT NOT NULL DEFAULT '',
            created_at TEXT NOT NULL,
            modified_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS uid_mappings (
            event_id INTEGER PRIMARY KEY,
            uid TEXT NOT NULL UNIQUE,
            calendar_id INTEGER NOT NULL,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS sync_attempts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            event_id INTEGER,
            uid TEXT NOT NULL,
            operation TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            attempts INTEGER NOT NULL,
            sequence INTEGER,
            duration_ms INTEGER NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    @staticmethod
    def _content_json(record: EventRecord) -> str:
        full = record.to_dict()
        return json.dumps({key: full[key] for key in CONTENT_FIELDS}, ensure_ascii=False)

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> EventRecord:
        payload = json.loads(row["payload_json"] or "{}")
        payload.update(
            {
                "id": row["id"],
                "uid": row["uid"],
                "calendar_id": row["calendar_id"],
                "sequence": row["sequence"],
                "raw_ics": row["raw_ics"],
                "x_properties": json.loads(row["x_properties_json"] or "[]"),
                "active": bool(row["active"]),
            }
        )
        record = EventRecord.from_dict(payload)
        record.sync_status = SyncStatus(
            state=row["sync_state"] or "",
            operation=row["sync_operation"] or "",
            last_sent_at=parse_iso_datetime(row["last_sent_at"]),
            last_error=row["last_error"] or "",
            last_attempted_ics=row["last_attempted_ics"] or "",
        )
        return record

    def fetch_event(self, event_id: int) -> EventRecord:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM events WHERE id = ?", (int(event_id),)).fetchone()
        if row is None:
            raise NotFound(f"Event {event_id} not found")
        return self._row_to_record(row)

    def persist_event(self, record: EventRecord) -> EventRecord:
        """Insert or update the locally edited content of ``record``.

        The acknowledged ``sequence``/``raw_ics`` pair, the ``active`` flag and
        the sync status are only written by :meth:`record_acknowledgement` and
        :meth:`record_sync_failure`. A stored UID is never replaced.
        """
        if not record.calendar_id:
            raise InvalidArgument("calendar_id is required to persist an event")
        now = _utc_now()
        with self._lock:
            with self._connect() as conn:
                if record.id is None:
                    cursor = conn.execute(
                        """
                        INSERT INTO events(uid, calendar_id, payload_json, x_properties_json, created_at, modified_at)
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (
                            record.uid or "",
                            int(record.calendar_id),
                            self._content_json(record),
                            json.dumps(record.x_properties, ensure_ascii=False),
                            now,
                            now,
                        ),
                    )
                    event_id = int(cursor.lastrowid)
                else:
                    cursor = conn.execute(
                        """
                        UPDATE events
                        SET uid = CASE WHEN uid = '' THEN ? ELSE uid END,
                            calendar_id = ?,
                            payload_json = ?,
                            modified_at = ?
                        WHERE id = ?
                        """,
                        (
                            record.uid or "",
                            int(record.calendar_id),
                            self._content_json(record),
                            now,
                            int(record.id),
                        ),
                    )
                    if cursor.rowcount == 0:
                        raise NotFound(f"Event {record.id} not found")
                    event_id = int(record.id)
                conn.commit()
        return self.fetch_event(event_id)

    def set_sync_state(self, event_id: int, *, state: str, operation: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE events SET sync_state = ?, sync_operation = ? WHERE id = ?",
                    (state, operation, int(event_id)),
                )
                conn.commit()

    def record_acknowledgement(
        self,
        event_id: int,
        *,
        sequence: int,
        raw_ics: str,
        x_properties: list[str],
        operation: str,
        state: str,
        sent_at: datetime,
        deactivate: bool = False,
    ) -> bool:
        """Write the acknowledged sequence and payload in one statement.

        Returns False without writing when ``sequence`` would not advance the
        previously acknowledged one.
        """
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    UPDATE events
                    SET sequence = ?,
                        raw_ics = ?,
                        x_properties_json = ?,
                        active = CASE WHEN ? THEN 0 ELSE active END,
                        sync_state = ?,
                        sync_operation = ?,
                        last_sent_at = ?,
                        last_error = '',
                        last_attempted_ics = ''
                    WHERE id = ? AND (raw_ics = '' OR sequence < ?)
                    """,
                    (
                        int(sequence),
                        raw_ics,
                        json.dumps(list(x_properties), ensure_ascii=False),
                        1 if deactivate else 0,
                        state,
                        operation,
                        serialize_datetime(sent_at),
                        int(event_id),
                        int(sequence),
                    ),
                )
                conn.commit()
                return cursor.rowcount == 1

    def record_sync_failure(
        self,
        event_id: int,
        *,
        error: str,
        attempted_ics: str,
        operation: str,
        state: str,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE events
                    SET last_error = ?, last_attempted_ics = ?, sync_state = ?, sync_operation = ?
                    WHERE id = ?
                    """,
                    (str(error), attempted_ics, state, operation, int(event_id)),
                )
                conn.commit()

    def fetch_uid_mapping(self, event_id: int) -> str | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT uid FROM uid_mappings WHERE event_id = ?",
                    (int(event_id),),
                ).fetchone()
        if row is None:
            return None
        return str(row["uid"])

    def store_uid_mapping(self, event_id: int, uid: str, calendar_id: int) -> str:
        """Insert the mapping unless one exists; return the uid that won."""
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT OR IGNORE INTO uid_mappings(event_id, uid, calendar_id, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (int(event_id), uid, int(calendar_id), _utc_now()),
                )
                conn.commit()
                row = conn.execute(
                    "SELECT uid FROM uid_mappings WHERE event_id = ?",
                    (int(event_id),),
                ).fetchone()
        if row is None:
            raise InvalidArgument(f"UID {uid} is already mapped to another event")
        return str(row["uid"])

    def fetch_event_id_for_uid(self, uid: str) -> int | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT event_id FROM uid_mappings WHERE uid = ?",
                    (uid,),
                ).fetchone()
        if row is None:
            return None
        return int(row["event_id"])

    def count_uid_mappings(self, event_id: int | None = None) -> int:
        with self._lock:
            with self._connect() as conn:
                if event_id is None:
                    row = conn.execute("SELECT COUNT(*) AS total FROM uid_mappings").fetchone()
                else:
                    row = conn.execute(
                        "SELECT COUNT(*) AS total FROM uid_mappings WHERE event_id = ?",
                        (int(event_id),),
                    ).fetchone()
        return int(row["total"])

    def record_sync_attempt(
        self,
        *,
        event_id: int | None,
        uid: str,
        operation: str,
        status: str,
        message: str,
        attempts: int,
        sequence: int | None,
        duration_ms: int,
    ) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_attempts(run_at, event_id, uid, operation, status, message, attempts, sequence, duration_ms)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (_utc_now(), event_id, uid, operation, status, message, attempts, sequence, duration_ms),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def recent_sync_attempts(self, limit: int = 20, event_id: int | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if event_id is None:
                    rows = conn.execute(
                        """
                        SELECT id, run_at, event_id, uid, operation, status, message, attempts, sequence, duration_ms
                        FROM sync_attempts
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT id, run_at, event_id, uid, operation, status, message, attempts, sequence, duration_ms
                        FROM sync_attempts
                        WHERE event_id = ?
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (int(event_id), max(1, limit)),
                    ).fetchall()
        return [dict(row) for row in rows]
