"""In-memory registry of open notification streams, one per user."""

import asyncio
import time
from datetime import datetime
from typing import Dict, List, Optional, Any

from ..sync.interfaces import StreamHandle
from ..sync.logging_config import get_logger, log_connection_event
from ..sync.models import ConnectionRecord, StreamEvent


class ConnectionRegistry:
    """Tracks the live stream handle of each connected user.

    All mutations are synchronous, so an insert or removal is never
    interleaved with another handler's work on the event loop.
    """

    def __init__(self):
        self.logger = get_logger(__name__)
        self._connections: Dict[str, ConnectionRecord] = {}

        # Metrics
        self._total_connections = 0
        self._disconnection_count = 0
        self._failed_sends = 0

    def register(self, user_id: str, handle: StreamHandle,
                 heartbeat_task: Optional[asyncio.Task] = None) -> ConnectionRecord:
        """Register a handle for a user, replacing and closing any prior one."""
        previous = self._connections.pop(user_id, None)
        if previous is not None:
            self._release(previous)
            log_connection_event(
                self.logger, user_id, "replaced",
                f"Replaced existing stream for user {user_id}"
            )

        record = ConnectionRecord(
            user_id=user_id,
            handle=handle,
            connected_at=datetime.now(),
            heartbeat_task=heartbeat_task,
        )
        record._connection_start_time = time.time()
        self._connections[user_id] = record
        self._total_connections += 1

        log_connection_event(
            self.logger, user_id, "connected",
            f"Stream registered for user {user_id}",
            total_connections=len(self._connections),
        )
        return record

    def attach_heartbeat(self, user_id: str, handle: StreamHandle, task: asyncio.Task) -> bool:
        """Attach a heartbeat task to the entry that still owns ``handle``."""
        record = self._connections.get(user_id)
        if record is None or record.handle is not handle:
            task.cancel()
            return False
        record.heartbeat_task = task
        return True

    def unregister(self, user_id: str, handle: Optional[StreamHandle] = None) -> bool:
        """Remove a user's entry.

        When ``handle`` is given, the entry is only removed if it still
        belongs to that handle; a newer connection for the same user stays.
        """
        record = self._connections.get(user_id)
        if record is None:
            return False
        if handle is not None and record.handle is not handle:
            return False

        del self._connections[user_id]
        self._release(record)
        self._disconnection_count += 1

        log_connection_event(
            self.logger, user_id, "disconnected",
            f"Stream unregistered for user {user_id}",
            remaining_connections=len(self._connections),
            connection_start=getattr(record, '_connection_start_time', time.time()),
        )
        return True

    def send(self, user_id: str, event: StreamEvent) -> bool:
        """Send an event to one user. False if not connected or the write failed."""
        record = self._connections.get(user_id)
        if record is None:
            return False

        try:
            record.handle.send(event.to_frame())
            return True
        except Exception as e:
            self._failed_sends += 1
            log_connection_event(
                self.logger, user_id, "send_failed",
                f"Failed to send {event.type} event to user {user_id}: {e}"
            )
            self.unregister(user_id, record.handle)
            return False

    def broadcast(self, event: StreamEvent) -> int:
        """Best-effort delivery to every registered user.

        Returns:
            Number of users the event was written to
        """
        frame = event.to_frame()
        delivered = 0

        for user_id, record in list(self._connections.items()):
            try:
                record.handle.send(frame)
                delivered += 1
            except Exception as e:
                self._failed_sends += 1
                log_connection_event(
                    self.logger, user_id, "send_failed",
                    f"Error broadcasting to user {user_id}: {e}"
                )
                self.unregister(user_id, record.handle)

        return delivered

    def is_connected(self, user_id: str) -> bool:
        return user_id in self._connections

    def get(self, user_id: str) -> Optional[ConnectionRecord]:
        return self._connections.get(user_id)

    def user_ids(self) -> List[str]:
        return list(self._connections.keys())

    def __len__(self) -> int:
        return len(self._connections)

    def close_all(self) -> None:
        """Unregister every connection, used on server shutdown."""
        for user_id in list(self._connections.keys()):
            self.unregister(user_id)

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "active_connections": len(self._connections),
            "total_connections": self._total_connections,
            "disconnections": self._disconnection_count,
            "failed_sends": self._failed_sends,
        }

    def _release(self, record: ConnectionRecord) -> None:
        """Cancel the heartbeat and close the handle of a removed entry."""
        task = record.heartbeat_task
        if task is not None and not task.done():
            try:
                current = asyncio.current_task()
            except RuntimeError:
                current = None
            if task is not current:
                task.cancel()
        record.heartbeat_task = None

        try:
            record.handle.close()
        except Exception as e:
            self.logger.debug(f"Error closing stream handle for {record.user_id}: {e}")
