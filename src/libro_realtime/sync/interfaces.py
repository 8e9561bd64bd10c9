"""Base interfaces for realtime and offline sync components."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, List, Optional, Tuple

from .models import (
    ActionOutcome, ActionStatus, CacheEntryType, NotificationRecord,
    OfflineCacheEntry, PendingAction
)


class StreamHandle(ABC):
    """Writable output side of one open stream connection."""

    @abstractmethod
    def send(self, frame: str) -> None:
        """Write one encoded frame. Raises when the handle cannot accept it."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close the handle. Closing twice is a no-op."""
        pass

    @property
    @abstractmethod
    def closed(self) -> bool:
        pass


class ActionTransport(ABC):
    """Interface for replaying a pending action against the server."""

    @abstractmethod
    async def apply(self, action: PendingAction) -> ActionOutcome:
        """Invoke the server endpoint for an action."""
        pass


class DurableStore(ABC):
    """Interface for the local durable store backing offline features."""

    # Notification log, one per user

    @abstractmethod
    def load_notifications(self, user_id: str) -> List[NotificationRecord]:
        """Return a user's log, newest inserted first."""
        pass

    @abstractmethod
    def append_notification(self, user_id: str, record: NotificationRecord) -> bool:
        """Append a record unless its id is already present."""
        pass

    @abstractmethod
    def set_notifications_read(self, user_id: str, ids: Optional[List[str]] = None) -> None:
        """Mark the given records (or all when ``ids`` is None) read."""
        pass

    @abstractmethod
    def delete_notifications(self, user_id: str, ids: Optional[List[str]] = None) -> None:
        """Delete the given records (or the whole log when ``ids`` is None)."""
        pass

    # Pending action queue

    @abstractmethod
    def insert_action(self, action: PendingAction) -> PendingAction:
        """Persist a new action and assign its queue position."""
        pass

    @abstractmethod
    def list_actions(self, status: Optional[ActionStatus] = None) -> List[PendingAction]:
        """Return actions in creation order."""
        pass

    @abstractmethod
    def get_action(self, action_id: str) -> Optional[PendingAction]:
        pass

    @abstractmethod
    def update_action(self, action: PendingAction) -> None:
        pass

    @abstractmethod
    def requeue_action(self, action_id: str) -> Optional[PendingAction]:
        """Move an action to the tail as pending with its attempts reset, in one write."""
        pass

    @abstractmethod
    def delete_action(self, action_id: str) -> bool:
        pass

    @abstractmethod
    def count_actions(self, status: Optional[ActionStatus] = None) -> int:
        pass

    # Offline cache

    @abstractmethod
    def put_cache_entry(self, entry: OfflineCacheEntry) -> None:
        pass

    @abstractmethod
    def get_cache_entries(self, entry_type: CacheEntryType) -> List[OfflineCacheEntry]:
        pass

    @abstractmethod
    def delete_expired_cache(self, now: datetime) -> int:
        pass

    @abstractmethod
    def clear_cache(self) -> None:
        pass

    @abstractmethod
    def put_search(self, query: str, results: List[Any], cached_at: datetime) -> None:
        pass

    @abstractmethod
    def get_search(self, query: str) -> Optional[Tuple[List[Any], datetime]]:
        pass

    @abstractmethod
    def size_bytes(self) -> int:
        pass
