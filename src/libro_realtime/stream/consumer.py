"""Reconnecting client for the notification stream with local pub/sub."""

import asyncio
import json
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from ..sync.config import SyncConfig
from ..sync.logging_config import get_logger
from ..sync.models import ConnectionStatus


ALL_EVENTS = "all"

Handler = Callable[[Dict[str, Any]], Any]
StatusListener = Callable[[ConnectionStatus], None]


class StreamConsumer:
    """Keeps a best-effort connection to the event stream and dispatches events.

    Reconnects after a fixed delay for as long as ``disconnect()`` has not
    been called. Handlers subscribed to ``"all"`` receive every event.
    """

    def __init__(self, config: SyncConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.logger = get_logger(__name__)

        self._client = client
        self._owns_client = client is None
        self._user_id: Optional[str] = None
        self._status = ConnectionStatus.IDLE
        self._run_task: Optional[asyncio.Task] = None
        self._stopped = True

        self._listeners: Dict[str, List[Tuple[int, Handler]]] = defaultdict(list)
        self._next_token = 0
        self._status_listeners: List[StatusListener] = []

        # Metrics
        self._connection_attempts = 0
        self._reconnect_attempts = 0
        self._events_received = 0
        self._handler_errors = 0
        self._last_event_at: Optional[datetime] = None

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    @property
    def is_connected(self) -> bool:
        return self._status == ConnectionStatus.OPEN

    async def connect(self, user_id: str) -> None:
        """Open the stream for a user, dropping any existing connection first."""
        if self._run_task is not None:
            await self.disconnect()

        self._user_id = user_id
        self._stopped = False
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.request_timeout_seconds)
            self._owns_client = True
        self._run_task = asyncio.create_task(self._run())

    async def disconnect(self) -> None:
        """Cancel any pending reconnect and close the transport. Safe to call twice."""
        self._stopped = True
        task, self._run_task = self._run_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

        if self._status != ConnectionStatus.IDLE:
            self._set_status(ConnectionStatus.CLOSED)
            self.logger.info(f"Notification stream for user {self._user_id} disconnected")

    def subscribe(self, event_type: str, handler: Handler) -> Callable[[], None]:
        """Register a handler and return a function that removes exactly that registration."""
        token = self._next_token
        self._next_token += 1
        self._listeners[event_type].append((token, handler))

        def unsubscribe() -> None:
            handlers = self._listeners.get(event_type)
            if handlers is None:
                return
            handlers[:] = [entry for entry in handlers if entry[0] != token]
            if not handlers:
                del self._listeners[event_type]

        return unsubscribe

    def add_status_listener(self, listener: StatusListener) -> Callable[[], None]:
        """Call ``listener`` with the new status whenever the connection status changes."""
        self._status_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._status_listeners:
                self._status_listeners.remove(listener)

        return unsubscribe

    def notify(self, event_type: str, data: Dict[str, Any]) -> None:
        """Dispatch an event locally, as if it had arrived on the stream."""
        self._dispatch(event_type, data)

    def listener_count(self, event_type: str) -> int:
        return len(self._listeners.get(event_type, []))

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "status": self._status.value,
            "connection_attempts": self._connection_attempts,
            "reconnect_attempts": self._reconnect_attempts,
            "events_received": self._events_received,
            "handler_errors": self._handler_errors,
            "last_event_at": self._last_event_at.isoformat() if self._last_event_at else None,
        }

    async def _run(self) -> None:
        """Connect, consume until the stream drops, wait, repeat."""
        while not self._stopped:
            try:
                await self._consume_once()
                if self._stopped:
                    break
                self.logger.warning("Notification stream closed by server")
            except asyncio.CancelledError:
                raise
            except httpx.HTTPStatusError as e:
                if 400 <= e.response.status_code < 500:
                    self.logger.error(
                        f"Notification stream rejected with {e.response.status_code}; not reconnecting"
                    )
                    self._set_status(ConnectionStatus.CLOSED)
                    self._stopped = True
                    break
                self.logger.warning(f"Notification stream error: {e}")
            except (httpx.HTTPError, OSError) as e:
                self.logger.warning(f"Notification stream transport error: {e}")
            except Exception as e:
                self.logger.error(f"Unexpected error in notification stream: {e}", exc_info=True)

            self._set_status(ConnectionStatus.RECONNECTING)
            self._reconnect_attempts += 1
            self.logger.info(f"Reconnecting in {self.config.reconnect_delay_seconds}s")
            await asyncio.sleep(self.config.reconnect_delay_seconds)

    async def _consume_once(self) -> None:
        self._set_status(ConnectionStatus.CONNECTING)
        self._connection_attempts += 1

        timeout = httpx.Timeout(
            self.config.request_timeout_seconds,
            read=self.config.stream_read_timeout_seconds,
        )
        async with self._client.stream(
            "GET",
            self.config.stream_url,
            params={"userId": self._user_id},
            headers={"Accept": "text/event-stream", "Cache-Control": "no-cache"},
            timeout=timeout,
        ) as response:
            response.raise_for_status()
            self._set_status(ConnectionStatus.OPEN)
            self.logger.info(f"Real-time notifications connected for user {self._user_id}")

            data_lines: List[str] = []
            async for line in response.aiter_lines():
                if line == "":
                    if data_lines:
                        self._handle_frame("\n".join(data_lines))
                        data_lines = []
                elif line.startswith("data:"):
                    data_lines.append(line[5:].lstrip(" "))
                # comments and other fields are ignored

    def _handle_frame(self, raw: str) -> None:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            self.logger.error(f"Error parsing stream message: {e}")
            return
        if not isinstance(data, dict):
            self.logger.error(f"Ignoring non-object stream message: {raw[:100]}")
            return

        self._events_received += 1
        self._last_event_at = datetime.now()
        self._dispatch(str(data.get("type", "message")), data)

    def _dispatch(self, event_type: str, data: Dict[str, Any]) -> None:
        """Invoke every handler independently; one failure never blocks the rest."""
        for _, handler in list(self._listeners.get(event_type, [])):
            self._invoke(handler, event_type, data)

        if event_type != ALL_EVENTS:
            merged = {**data, "type": event_type}
            for _, handler in list(self._listeners.get(ALL_EVENTS, [])):
                self._invoke(handler, event_type, merged)

    def _invoke(self, handler: Handler, event_type: str, data: Dict[str, Any]) -> None:
        try:
            handler(data)
        except Exception as e:
            self._handler_errors += 1
            self.logger.error(f"Error in {event_type} handler {getattr(handler, '__name__', handler)}: {e}")

    def _set_status(self, status: ConnectionStatus) -> None:
        if status == self._status:
            return
        self._status = status
        for listener in list(self._status_listeners):
            try:
                listener(status)
            except Exception as e:
                self._handler_errors += 1
                self.logger.error(f"Error in stream status listener: {e}")
