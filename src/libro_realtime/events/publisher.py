"""Programmatic push API used by server-side business logic."""

import logging
import time
import uuid
from typing import Any, Dict

from ..stream.registry import ConnectionRegistry
from ..sync.models import EventType, StreamEvent


logger = logging.getLogger(__name__)


class NotificationPublisher:
    """Routes notifications to connected users through the registry.

    Delivery is fire-and-forget: nothing is retried here because the
    client-side notification store is the durable record.
    """

    def __init__(self, registry: ConnectionRegistry):
        self._registry = registry
        self._metrics = {
            "notifications_sent": 0,
            "notifications_undelivered": 0,
            "broadcasts_sent": 0,
            "broadcast_recipients": 0,
        }

    def send_notification_to_user(self, user_id: str, notification: Dict[str, Any]) -> bool:
        """Push a notification to one user. True if the user was connected and the write succeeded."""
        event = StreamEvent(type=EventType.NOTIFICATION.value, payload=self._prepare(notification))
        delivered = self._registry.send(user_id, event)

        if delivered:
            self._metrics["notifications_sent"] += 1
            logger.debug(f"Sent notification {event.payload['id']} to user {user_id}")
        else:
            self._metrics["notifications_undelivered"] += 1
            logger.debug(f"User {user_id} not connected, notification {event.payload['id']} not pushed")
        return delivered

    def broadcast_notification(self, notification: Dict[str, Any]) -> None:
        """Push a notification to every connected user."""
        event = StreamEvent(type=EventType.BROADCAST.value, payload=self._prepare(notification))
        recipients = self._registry.broadcast(event)

        self._metrics["broadcasts_sent"] += 1
        self._metrics["broadcast_recipients"] += recipients
        logger.info(f"Broadcast notification {event.payload['id']} to {recipients} users")

    def get_metrics(self) -> Dict[str, Any]:
        return {**self._metrics, "active_connections": len(self._registry)}

    @staticmethod
    def _prepare(notification: Dict[str, Any]) -> Dict[str, Any]:
        """Give the payload a stable id and move its severity out of the event ``type`` slot."""
        payload = dict(notification)
        if "type" in payload:
            payload.setdefault("notificationType", payload.pop("type"))
        payload.pop("timestamp", None)
        if not payload.get("id"):
            payload["id"] = f"{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"
        return payload
