"""Per-user notification log mirrored between memory and the local store."""

import logging
import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from ..sync.config import SyncConfig
from ..sync.exceptions import StorageError
from ..sync.interfaces import DurableStore
from ..sync.models import NotificationRecord, NotificationType, RelatedEntity


logger = logging.getLogger(__name__)

AlertListener = Callable[[NotificationRecord], None]


RESERVATION_TEMPLATES = {
    "confirmed": (
        NotificationType.SUCCESS,
        "Reservation Confirmed",
        'Your reservation for "{title}" has been confirmed. '
        "You'll be notified when it's ready for pickup.",
        "View Reservations",
    ),
    "ready": (
        NotificationType.INFO,
        "Book Ready for Pickup",
        '"{title}" is now available for pickup at the library front desk.',
        "View Details",
    ),
    "overdue": (
        NotificationType.WARNING,
        "Return Reminder",
        '"{title}" is overdue. Please return it as soon as possible to avoid late fees.',
        "View Details",
    ),
}


class NotificationStore:
    """Ordered notification log for one user, newest first.

    The log is rehydrated from durable storage before the first mutation,
    and every mutation writes only the rows it touches, so entries persisted
    by an earlier run or by another context are never overwritten.
    """

    def __init__(self, store: DurableStore, user_id: str, config: Optional[SyncConfig] = None):
        config = config or SyncConfig()
        self._store = store
        self.user_id = user_id
        self._retention = timedelta(days=config.notification_retention_days)
        self._max_entries = config.max_notifications

        self._log: List[NotificationRecord] = []
        self._index: Dict[str, NotificationRecord] = {}
        self._hydrated = False
        self._alert_listeners: List[AlertListener] = []

    def load(self) -> None:
        """Rehydrate the log from durable storage. Runs at most once."""
        if self._hydrated:
            return
        records = self._store.load_notifications(self.user_id)
        self._log = records
        self._index = {record.id: record for record in records}
        self._hydrated = True
        logger.info(f"Loaded {len(records)} notifications for user {self.user_id}")

    @property
    def notifications(self) -> List[NotificationRecord]:
        self.load()
        return list(self._log)

    @property
    def unread_count(self) -> int:
        self.load()
        return sum(1 for record in self._log if not record.read)

    def get(self, notification_id: str) -> Optional[NotificationRecord]:
        self.load()
        return self._index.get(notification_id)

    def add(self, title: str, message: str,
            type: NotificationType = NotificationType.INFO,
            action_url: Optional[str] = None,
            action_text: Optional[str] = None,
            related_entity: Optional[RelatedEntity] = None,
            notification_id: Optional[str] = None,
            timestamp: Optional[datetime] = None) -> NotificationRecord:
        """Prepend a new unread notification and raise a user-facing alert.

        A ``notification_id`` already in the log is treated as a redelivery
        and returns the existing record unchanged.

        Raises:
            StorageError: The record is in memory but could not be persisted
        """
        self.load()
        if notification_id and notification_id in self._index:
            logger.debug(f"Ignoring duplicate notification {notification_id}")
            return self._index[notification_id]

        record = NotificationRecord(
            id=notification_id or self._generate_id(),
            type=type,
            title=title,
            message=message,
            timestamp=timestamp or datetime.now(),
            read=False,
            action_url=action_url,
            action_text=action_text,
            related_entity=related_entity,
        )
        self._log.insert(0, record)
        self._index[record.id] = record

        self._persist("add", lambda: self._store.append_notification(self.user_id, record))
        self._alert(record)

        if len(self._log) > self._max_entries:
            self.prune()
        return record

    def add_from_event(self, data: Dict[str, Any]) -> NotificationRecord:
        """Record a notification or broadcast event received on the stream."""
        try:
            notification_type = NotificationType(data.get("notificationType", "info"))
        except ValueError:
            notification_type = NotificationType.INFO

        related = data.get("relatedEntity")
        related_entity = None
        if isinstance(related, dict) and "kind" in related and "id" in related:
            related_entity = RelatedEntity(kind=str(related["kind"]), id=str(related["id"]))

        return self.add(
            title=data.get("title", "Notification"),
            message=data.get("message", ""),
            type=notification_type,
            action_url=data.get("actionUrl"),
            action_text=data.get("actionText"),
            related_entity=related_entity,
            notification_id=data.get("id"),
        )

    def mark_read(self, notification_id: str) -> bool:
        self.load()
        record = self._index.get(notification_id)
        if record is None:
            return False
        if not record.read:
            record.read = True
            self._persist("mark_read", lambda: self._store.set_notifications_read(self.user_id, [notification_id]))
        return True

    def mark_all_read(self) -> None:
        self.load()
        unread = [record for record in self._log if not record.read]
        if not unread:
            return
        for record in unread:
            record.read = True
        self._persist("mark_all_read", lambda: self._store.set_notifications_read(self.user_id))

    def remove(self, notification_id: str) -> bool:
        self.load()
        record = self._index.pop(notification_id, None)
        if record is None:
            return False
        self._log.remove(record)
        self._persist("remove", lambda: self._store.delete_notifications(self.user_id, [notification_id]))
        return True

    def clear_all(self) -> None:
        self.load()
        self._log = []
        self._index = {}
        self._persist("clear_all", lambda: self._store.delete_notifications(self.user_id))

    def prune(self, now: Optional[datetime] = None) -> List[str]:
        """Drop entries past the retention age, then the oldest beyond the size cap."""
        self.load()
        cutoff = (now or datetime.now()) - self._retention
        keep = [record for record in self._log if record.timestamp >= cutoff][:self._max_entries]
        keep_ids = {record.id for record in keep}
        removed = [record.id for record in self._log if record.id not in keep_ids]
        if not removed:
            return []

        self._log = keep
        self._index = {record.id: record for record in keep}
        self._persist("prune", lambda: self._store.delete_notifications(self.user_id, removed))
        logger.info(f"Pruned {len(removed)} notifications for user {self.user_id}")
        return removed

    def reconcile(self) -> List[NotificationRecord]:
        """Merge entries another context appended to durable storage.

        Each new id is merged once, at the position its durable insertion
        order gives it; records already in memory keep their local state.
        """
        self.load()
        durable = self._store.load_notifications(self.user_id)
        position = {record.id: i for i, record in enumerate(durable)}

        merged = []
        for record in durable:
            if record.id in self._index:
                continue
            insert_at = len(self._log)
            for j, existing in enumerate(self._log):
                if existing.id in position and position[existing.id] > position[record.id]:
                    insert_at = j
                    break
            self._log.insert(insert_at, record)
            self._index[record.id] = record
            merged.append(record)

        for record in merged:
            self._alert(record)
        if merged:
            logger.info(f"Merged {len(merged)} externally added notifications for user {self.user_id}")
        return merged

    def send_reservation_notification(self, book_title: str, status: str) -> NotificationRecord:
        """Add one of the standard reservation notifications (confirmed, ready, overdue)."""
        if status not in RESERVATION_TEMPLATES:
            raise ValueError(f"Unknown reservation status: {status}")
        notification_type, title, message, action_text = RESERVATION_TEMPLATES[status]
        return self.add(
            title=title,
            message=message.format(title=book_title),
            type=notification_type,
            action_url="/dashboard/user",
            action_text=action_text,
        )

    def add_alert_listener(self, listener: AlertListener) -> Callable[[], None]:
        """Register a callback for transient alerts; returns an unsubscribe function."""
        self._alert_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._alert_listeners:
                self._alert_listeners.remove(listener)

        return unsubscribe

    def _alert(self, record: NotificationRecord) -> None:
        logger.info(f"Notification for user {self.user_id}: {record.title}")
        for listener in list(self._alert_listeners):
            try:
                listener(record)
            except Exception as e:
                logger.error(f"Error in notification alert listener: {e}")

    def _persist(self, operation: str, write: Callable[[], object]) -> None:
        try:
            write()
        except StorageError:
            logger.error(f"Notification {operation} applied in memory but not persisted for user {self.user_id}")
            raise

    def _generate_id(self) -> str:
        while True:
            candidate = f"{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"
            if candidate not in self._index:
                return candidate
