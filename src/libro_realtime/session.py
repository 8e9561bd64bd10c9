"""Client-side wiring of the realtime and offline components for one user."""

from pathlib import Path
from typing import Any, Dict, Optional

import httpx

from .notifications.store import NotificationStore
from .storage.cache import OfflineCache
from .storage.database import OfflineDatabase
from .stream.consumer import StreamConsumer
from .sync.config import SyncConfig
from .sync.coordinator import HttpActionTransport, SyncCoordinator
from .sync.exceptions import StorageError
from .sync.interfaces import ActionTransport, DurableStore
from .sync.logging_config import get_logger
from .sync.models import ConnectionStatus, EventType
from .sync.queue import OfflineActionQueue


NOTIFICATION_UPDATE = "notification_update"


class RealtimeSession:
    """Owns the consumer, notification store, action queue, coordinator and cache.

    Stream ``notification`` and ``broadcast`` events are the only path by
    which pushed notifications enter the store. A ``notification_update``
    event only wakes the store up to merge what another context persisted.

    Usage::

        async with RealtimeSession("user-9", config) as session:
            session.queue.make_reservation("book-1", "user-9")
            await session.coordinator.sync_now()
    """

    def __init__(self, user_id: str, config: Optional[SyncConfig] = None,
                 store: Optional[DurableStore] = None,
                 client: Optional[httpx.AsyncClient] = None,
                 transport: Optional[ActionTransport] = None,
                 online: bool = True):
        self.user_id = user_id
        self.config = config or SyncConfig()
        self.logger = get_logger(__name__)

        self._owns_store = store is None
        self.store = store if store is not None else OfflineDatabase(Path(self.config.db_path))

        self._owns_client = client is None
        self.client = client if client is not None else httpx.AsyncClient(
            timeout=self.config.request_timeout_seconds
        )

        self.consumer = StreamConsumer(self.config, self.client)
        self.notifications = NotificationStore(self.store, user_id, self.config)
        self.cache = OfflineCache(self.store, self.config)

        self.queue = OfflineActionQueue(self.store, self.config)
        self.coordinator = SyncCoordinator(
            self.queue,
            transport or HttpActionTransport(self.config, self.client),
            self.config,
            online=online,
        )

        self._unsubscribers = []
        self._started = False

    async def __aenter__(self) -> "RealtimeSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    async def start(self, connect: bool = True) -> None:
        """Open storage, rehydrate notifications and start background work."""
        if self._started:
            return
        if self._owns_store:
            self.store.open()

        # The log must be rehydrated before the first stream event can append to it
        self.notifications.load()

        self._unsubscribers = [
            self.consumer.subscribe(EventType.NOTIFICATION.value, self._on_notification),
            self.consumer.subscribe(EventType.BROADCAST.value, self._on_notification),
            self.consumer.subscribe(NOTIFICATION_UPDATE, self._on_notification_update),
            self.consumer.subscribe(EventType.CONNECTED.value, self._on_connected),
            self.consumer.add_status_listener(self._on_stream_status),
        ]

        await self.cache.start()
        await self.coordinator.start()
        if connect:
            await self.consumer.connect(self.user_id)
        self._started = True
        self.logger.info(f"Realtime session started for user {self.user_id}")

    async def stop(self) -> None:
        """Stop background work; an in-flight sync pass is allowed to finish."""
        if not self._started:
            return
        self._started = False

        # Unsubscribe first so closing the stream is not mistaken for going offline
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        await self.consumer.disconnect()

        await self.coordinator.stop()
        await self.cache.stop()

        if self._owns_client:
            await self.client.aclose()
        if self._owns_store:
            self.store.close()
        self.logger.info(f"Realtime session stopped for user {self.user_id}")

    def set_online(self, online: bool):
        """Forward a connectivity change; returns the sync task it started, if any."""
        return self.coordinator.set_online(online)

    def get_status(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "stream": self.consumer.get_metrics(),
            "online": self.coordinator.is_online,
            "syncing": self.coordinator.is_syncing,
            "pending_actions": self.queue.pending_count,
            "dead_letters": len(self.queue.dead_letters()),
            "unread_notifications": self.notifications.unread_count,
        }

    def _on_notification(self, data: Dict[str, Any]) -> None:
        try:
            self.notifications.add_from_event(data)
        except StorageError as e:
            self.logger.error(f"Pushed notification kept in memory only: {e}")

    def _on_notification_update(self, data: Dict[str, Any]) -> None:
        self.notifications.reconcile()

    def _on_connected(self, data: Dict[str, Any]) -> None:
        self.coordinator.set_online(True)

    def _on_stream_status(self, status: ConnectionStatus) -> None:
        # The stream is the connectivity signal: replay waits until it is back
        if status in (ConnectionStatus.RECONNECTING, ConnectionStatus.CLOSED):
            self.coordinator.set_online(False)
        elif status == ConnectionStatus.OPEN:
            self.coordinator.set_online(True)
