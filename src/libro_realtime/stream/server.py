"""Server-sent events endpoint logic with per-connection heartbeats."""

import asyncio
from enum import Enum
from typing import AsyncIterator, Optional, Set

from fastapi.responses import PlainTextResponse, StreamingResponse

from ..sync.config import SyncConfig
from ..sync.exceptions import MissingUserIdError, TransportError
from ..sync.interfaces import StreamHandle
from ..sync.logging_config import get_logger, log_connection_event
from ..sync.models import EventType, StreamEvent
from .registry import ConnectionRegistry


STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "Cache-Control",
}

_CLOSE = object()


class ConnectionState(Enum):
    """Lifecycle of one stream connection."""
    OPENING = "opening"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class QueueStreamHandle(StreamHandle):
    """Bounded outbound frame queue drained by the streaming response.

    A write fails once the handle is closed or when the reader has fallen
    ``maxsize`` frames behind.
    """

    def __init__(self, maxsize: int = 100):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize + 1)
        self._maxsize = maxsize
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, frame: str) -> None:
        if self._closed:
            raise TransportError("stream_handle", "handle is closed")
        if self._queue.qsize() >= self._maxsize:
            raise TransportError("stream_handle", f"outbound queue full ({self._maxsize} frames)")
        self._queue.put_nowait(frame)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Pending frames are dropped; the sentinel always fits in the spare slot
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSE)

    async def frames(self) -> AsyncIterator[str]:
        while True:
            frame = await self._queue.get()
            if frame is _CLOSE:
                return
            yield frame


class StreamConnection:
    """One client's stream, from validation to cleanup."""

    def __init__(self, user_id: str, handle: QueueStreamHandle):
        self.user_id = user_id
        self.handle = handle
        self.state = ConnectionState.OPENING
        self.heartbeat_task: Optional[asyncio.Task] = None


class EventStreamServer:
    """Accepts stream connections, registers them and keeps them alive."""

    def __init__(self, registry: ConnectionRegistry, config: SyncConfig):
        self.registry = registry
        self.config = config
        self.logger = get_logger(__name__)
        self._active: Set[StreamConnection] = set()

    async def open_connection(self, user_id: Optional[str]) -> StreamConnection:
        """Validate the user, register the stream and start its heartbeat.

        Raises:
            MissingUserIdError: When no user identifier was supplied
        """
        if user_id is None or not str(user_id).strip():
            raise MissingUserIdError()

        for previous in [c for c in self._active if c.user_id == user_id]:
            await self.close_connection(previous, "replaced by new connection")

        connection = StreamConnection(user_id, QueueStreamHandle(self.config.handle_queue_size))
        self.registry.register(user_id, connection.handle)
        self._active.add(connection)

        connection.handle.send(StreamEvent(
            type=EventType.CONNECTED.value,
            payload={"message": "Real-time notifications connected"},
        ).to_frame())

        connection.heartbeat_task = asyncio.create_task(self._heartbeat_loop(connection))
        self.registry.attach_heartbeat(user_id, connection.handle, connection.heartbeat_task)
        connection.state = ConnectionState.OPEN
        return connection

    async def close_connection(self, connection: StreamConnection, reason: str) -> None:
        """Stop the heartbeat, unregister and release the handle."""
        if connection.state in (ConnectionState.CLOSING, ConnectionState.CLOSED):
            return
        connection.state = ConnectionState.CLOSING

        task = connection.heartbeat_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        connection.heartbeat_task = None

        self.registry.unregister(connection.user_id, connection.handle)
        connection.handle.close()
        self._active.discard(connection)
        connection.state = ConnectionState.CLOSED

        self.logger.info(f"Stream for user {connection.user_id} closed: {reason}")

    async def stream(self, connection: StreamConnection) -> AsyncIterator[str]:
        """Yield frames until the handle closes or the client goes away."""
        try:
            async for frame in connection.handle.frames():
                yield frame
        finally:
            await self.close_connection(connection, "client disconnected")

    async def stream_response(self, user_id: Optional[str]):
        """Build the HTTP response for a stream request."""
        try:
            connection = await self.open_connection(user_id)
        except MissingUserIdError as e:
            self.logger.warning("Stream request rejected: missing user id")
            return PlainTextResponse(e.message, status_code=400)

        return StreamingResponse(
            self.stream(connection),
            media_type="text/event-stream",
            headers=STREAM_HEADERS,
        )

    async def stop(self) -> None:
        """Close every open connection."""
        for connection in list(self._active):
            await self.close_connection(connection, "server shutdown")

    @property
    def active_connections(self) -> int:
        return len(self._active)

    async def _heartbeat_loop(self, connection: StreamConnection) -> None:
        """Push heartbeat events; a failed push closes the connection."""
        while True:
            try:
                await asyncio.sleep(self.config.heartbeat_interval_seconds)
                connection.handle.send(StreamEvent(type=EventType.HEARTBEAT.value).to_frame())
            except asyncio.CancelledError:
                break
            except Exception as e:
                log_connection_event(
                    self.logger, connection.user_id, "heartbeat_failed",
                    f"Heartbeat failed for user {connection.user_id}: {e}"
                )
                await self.close_connection(connection, f"heartbeat failed: {e}")
                break
