"""
Local durable store for offline notifications, pending actions and cached data.

This module keeps everything the client needs while disconnected in a single
embedded DuckDB file: one notification log per user, the offline action
queue, and the expiring offline cache.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional, Tuple

import duckdb

from ..sync.exceptions import StorageError
from ..sync.interfaces import DurableStore
from ..sync.models import (
    ActionStatus, CacheEntryType, NotificationRecord, NotificationType,
    OfflineCacheEntry, PendingAction, RelatedEntity
)

logger = logging.getLogger(__name__)


SCHEMA_STATEMENTS = [
    "CREATE SEQUENCE IF NOT EXISTS notification_seq START 1",
    "CREATE SEQUENCE IF NOT EXISTS action_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS notifications (
        user_id VARCHAR NOT NULL,
        id VARCHAR NOT NULL,
        seq BIGINT NOT NULL,
        type VARCHAR NOT NULL,
        title VARCHAR NOT NULL,
        message VARCHAR NOT NULL,
        timestamp TIMESTAMP NOT NULL,
        read BOOLEAN DEFAULT FALSE,
        action_url VARCHAR,
        action_text VARCHAR,
        related_kind VARCHAR,
        related_id VARCHAR,
        PRIMARY KEY (user_id, id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pending_actions (
        id VARCHAR NOT NULL PRIMARY KEY,
        seq BIGINT NOT NULL,
        type VARCHAR NOT NULL,
        action VARCHAR NOT NULL,
        data VARCHAR NOT NULL,
        created_at TIMESTAMP NOT NULL,
        attempts INTEGER DEFAULT 0,
        status VARCHAR NOT NULL,
        last_error VARCHAR
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS offline_cache (
        type VARCHAR NOT NULL,
        id VARCHAR NOT NULL,
        data VARCHAR NOT NULL,
        cached_at TIMESTAMP NOT NULL,
        expires_at TIMESTAMP NOT NULL,
        PRIMARY KEY (type, id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS cached_searches (
        query VARCHAR NOT NULL PRIMARY KEY,
        results VARCHAR NOT NULL,
        cached_at TIMESTAMP NOT NULL
    )
    """,
]

NOTIFICATION_COLUMNS = (
    "id, type, title, message, timestamp, read, action_url, action_text, "
    "related_kind, related_id"
)

ACTION_COLUMNS = "id, seq, type, action, data, created_at, attempts, status, last_error"


class OfflineDatabase(DurableStore):
    """
    Manages the DuckDB file that backs every offline feature.

    The connection is opened with the context manager (or ``open()``) and
    every statement failure is reported as a ``StorageError``.
    """

    def __init__(self, db_path: Path):
        """
        Initialize the store.

        Args:
            db_path: Path to the DuckDB database file, or ":memory:"
        """
        self.db_path = db_path
        self.conn: Optional[duckdb.DuckDBPyConnection] = None

    def __enter__(self) -> 'OfflineDatabase':
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            self.close()
        except Exception as e:
            logger.warning(f"Error while closing offline database: {e}", exc_info=True)

    def open(self) -> 'OfflineDatabase':
        """Open the connection and create the schema if needed."""
        if self.conn is not None:
            return self
        try:
            if str(self.db_path) != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self.conn = duckdb.connect(str(self.db_path))
            logger.info(f"Connected to offline database at {self.db_path}")
            for statement in SCHEMA_STATEMENTS:
                self.conn.execute(statement)
            return self
        except duckdb.Error as e:
            logger.error(f"Failed to initialize offline database at {self.db_path}: {e}", exc_info=True)
            self.conn = None
            raise StorageError("open", str(e), {"db_path": str(self.db_path)}) from e

    def close(self) -> None:
        if self.conn is not None:
            try:
                self.conn.close()
                logger.debug("Offline database connection closed")
            finally:
                self.conn = None

    def _execute(self, operation: str, sql: str, params: Optional[list] = None):
        if self.conn is None:
            raise StorageError(operation, "database connection not established")
        try:
            return self.conn.execute(sql, params or [])
        except duckdb.Error as e:
            logger.error(f"Storage operation {operation} failed: {e}", exc_info=True)
            raise StorageError(operation, str(e)) from e

    # Notification log

    def load_notifications(self, user_id: str) -> List[NotificationRecord]:
        rows = self._execute(
            "load_notifications",
            f"SELECT {NOTIFICATION_COLUMNS} FROM notifications WHERE user_id = ? ORDER BY seq DESC",
            [user_id],
        ).fetchall()
        return [self._row_to_notification(row) for row in rows]

    def append_notification(self, user_id: str, record: NotificationRecord) -> bool:
        existing = self._execute(
            "append_notification",
            "SELECT 1 FROM notifications WHERE user_id = ? AND id = ?",
            [user_id, record.id],
        ).fetchone()
        if existing:
            return False

        related = record.related_entity
        self._execute(
            "append_notification",
            f"""
            INSERT INTO notifications (user_id, seq, {NOTIFICATION_COLUMNS})
            VALUES (?, nextval('notification_seq'), ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                user_id,
                record.id,
                record.type.value,
                record.title,
                record.message,
                record.timestamp,
                record.read,
                record.action_url,
                record.action_text,
                related.kind if related else None,
                related.id if related else None,
            ],
        )
        return True

    def set_notifications_read(self, user_id: str, ids: Optional[List[str]] = None) -> None:
        if ids is None:
            self._execute(
                "mark_read", "UPDATE notifications SET read = TRUE WHERE user_id = ?", [user_id]
            )
            return
        for notification_id in ids:
            self._execute(
                "mark_read",
                "UPDATE notifications SET read = TRUE WHERE user_id = ? AND id = ?",
                [user_id, notification_id],
            )

    def delete_notifications(self, user_id: str, ids: Optional[List[str]] = None) -> None:
        if ids is None:
            self._execute("delete_notifications", "DELETE FROM notifications WHERE user_id = ?", [user_id])
            return
        for notification_id in ids:
            self._execute(
                "delete_notifications",
                "DELETE FROM notifications WHERE user_id = ? AND id = ?",
                [user_id, notification_id],
            )

    @staticmethod
    def _row_to_notification(row) -> NotificationRecord:
        return NotificationRecord(
            id=row[0],
            type=NotificationType(row[1]),
            title=row[2],
            message=row[3],
            timestamp=row[4],
            read=bool(row[5]),
            action_url=row[6],
            action_text=row[7],
            related_entity=RelatedEntity(kind=row[8], id=row[9]) if row[8] else None,
        )

    # Pending actions

    def insert_action(self, action: PendingAction) -> PendingAction:
        seq = self._execute("enqueue", "SELECT nextval('action_seq')").fetchone()[0]
        self._execute(
            "enqueue",
            f"INSERT INTO pending_actions ({ACTION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [
                action.id,
                seq,
                action.type,
                action.action,
                json.dumps(action.data, default=str),
                action.created_at,
                action.attempts,
                action.status.value,
                action.last_error,
            ],
        )
        action.seq = seq
        return action

    def list_actions(self, status: Optional[ActionStatus] = None) -> List[PendingAction]:
        if status is None:
            rows = self._execute(
                "list_actions", f"SELECT {ACTION_COLUMNS} FROM pending_actions ORDER BY seq"
            ).fetchall()
        else:
            rows = self._execute(
                "list_actions",
                f"SELECT {ACTION_COLUMNS} FROM pending_actions WHERE status = ? ORDER BY seq",
                [status.value],
            ).fetchall()
        return [self._row_to_action(row) for row in rows]

    def get_action(self, action_id: str) -> Optional[PendingAction]:
        row = self._execute(
            "get_action", f"SELECT {ACTION_COLUMNS} FROM pending_actions WHERE id = ?", [action_id]
        ).fetchone()
        return self._row_to_action(row) if row else None

    def update_action(self, action: PendingAction) -> None:
        self._execute(
            "update_action",
            "UPDATE pending_actions SET attempts = ?, status = ?, last_error = ? WHERE id = ?",
            [action.attempts, action.status.value, action.last_error, action.id],
        )

    def requeue_action(self, action_id: str) -> Optional[PendingAction]:
        existing = self._execute(
            "requeue_action", "SELECT 1 FROM pending_actions WHERE id = ?", [action_id]
        ).fetchone()
        if not existing:
            return None
        # Single UPDATE so a failure leaves the row as it was
        self._execute(
            "requeue_action",
            """
            UPDATE pending_actions
            SET seq = nextval('action_seq'), status = ?, attempts = 0, last_error = NULL
            WHERE id = ?
            """,
            [ActionStatus.PENDING.value, action_id],
        )
        return self.get_action(action_id)

    def delete_action(self, action_id: str) -> bool:
        existing = self._execute(
            "delete_action", "SELECT 1 FROM pending_actions WHERE id = ?", [action_id]
        ).fetchone()
        if not existing:
            return False
        self._execute("delete_action", "DELETE FROM pending_actions WHERE id = ?", [action_id])
        return True

    def count_actions(self, status: Optional[ActionStatus] = None) -> int:
        if status is None:
            row = self._execute("count_actions", "SELECT COUNT(*) FROM pending_actions").fetchone()
        else:
            row = self._execute(
                "count_actions", "SELECT COUNT(*) FROM pending_actions WHERE status = ?", [status.value]
            ).fetchone()
        return int(row[0])

    @staticmethod
    def _row_to_action(row) -> PendingAction:
        return PendingAction(
            id=row[0],
            seq=row[1],
            type=row[2],
            action=row[3],
            data=json.loads(row[4]),
            created_at=row[5],
            attempts=row[6],
            status=ActionStatus(row[7]),
            last_error=row[8],
        )

    # Offline cache

    def put_cache_entry(self, entry: OfflineCacheEntry) -> None:
        self._execute(
            "store_offline_data",
            """
            INSERT OR REPLACE INTO offline_cache (type, id, data, cached_at, expires_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            [
                entry.type.value,
                entry.id,
                json.dumps(entry.data, default=str),
                entry.cached_at,
                entry.expires_at,
            ],
        )

    def get_cache_entries(self, entry_type: CacheEntryType) -> List[OfflineCacheEntry]:
        rows = self._execute(
            "get_offline_data",
            "SELECT id, type, data, cached_at, expires_at FROM offline_cache WHERE type = ? ORDER BY cached_at",
            [entry_type.value],
        ).fetchall()
        return [
            OfflineCacheEntry(
                id=row[0],
                type=CacheEntryType(row[1]),
                data=json.loads(row[2]),
                cached_at=row[3],
                expires_at=row[4],
            )
            for row in rows
        ]

    def delete_expired_cache(self, now: datetime) -> int:
        row = self._execute(
            "sweep_expired", "SELECT COUNT(*) FROM offline_cache WHERE expires_at < ?", [now]
        ).fetchone()
        expired = int(row[0])
        if expired:
            self._execute("sweep_expired", "DELETE FROM offline_cache WHERE expires_at < ?", [now])
        return expired

    def clear_cache(self) -> None:
        self._execute("clear_cache", "DELETE FROM offline_cache")
        self._execute("clear_cache", "DELETE FROM cached_searches")

    def put_search(self, query: str, results: List[Any], cached_at: datetime) -> None:
        self._execute(
            "cache_search",
            "INSERT OR REPLACE INTO cached_searches (query, results, cached_at) VALUES (?, ?, ?)",
            [query, json.dumps(results, default=str), cached_at],
        )

    def get_search(self, query: str) -> Optional[Tuple[List[Any], datetime]]:
        row = self._execute(
            "get_cached_search",
            "SELECT results, cached_at FROM cached_searches WHERE query = ?",
            [query],
        ).fetchone()
        if row is None:
            return None
        return json.loads(row[0]), row[1]

    def size_bytes(self) -> int:
        if str(self.db_path) == ":memory:":
            return 0
        total = 0
        for candidate in (Path(self.db_path), Path(f"{self.db_path}.wal")):
            if candidate.exists():
                total += candidate.stat().st_size
        return total
