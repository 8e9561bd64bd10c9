"""Data models for realtime notifications and offline synchronization."""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Any, List, Optional
from pydantic import BaseModel, ConfigDict, Field


class EventType(Enum):
    """Types of events pushed over the notification stream."""
    CONNECTED = "connected"
    HEARTBEAT = "heartbeat"
    NOTIFICATION = "notification"
    BROADCAST = "broadcast"


class NotificationType(Enum):
    """Severity of a notification record."""
    SUCCESS = "success"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class ActionStatus(Enum):
    """States of a queued offline action."""
    PENDING = "pending"
    DEAD_LETTER = "dead_letter"


class ActionOutcome(Enum):
    """Result of replaying a single action against the server."""
    APPLIED = "applied"
    RETRY = "retry"
    REJECTED = "rejected"


class CacheEntryType(Enum):
    """Kinds of data kept in the offline cache."""
    BOOK = "book"
    RESERVATION = "reservation"
    NOTIFICATION = "notification"
    USER = "user"


class ConnectionStatus(Enum):
    """Advisory status of the client stream consumer."""
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


# Pydantic model for stream frame validation

class StreamEvent(BaseModel):
    """An event in transit on the notification stream.

    On the wire the payload is flattened next to ``type`` and ``timestamp``.
    """
    model_config = ConfigDict(frozen=True)

    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.now)

    def to_wire(self) -> Dict[str, Any]:
        """Flatten the event into its outbound JSON shape."""
        return {
            "type": self.type,
            **{k: v for k, v in self.payload.items() if k not in ("type", "timestamp")},
            "timestamp": self.timestamp.isoformat()
        }

    def to_frame(self) -> str:
        """Encode the event as a server-sent events frame."""
        return f"data: {json.dumps(self.to_wire(), default=str)}\n\n"

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "StreamEvent":
        """Build an event from a decoded frame body."""
        payload = {k: v for k, v in data.items() if k not in ("type", "timestamp")}
        timestamp = data.get("timestamp")
        if isinstance(timestamp, str):
            try:
                parsed = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
            except ValueError:
                parsed = datetime.now()
        else:
            parsed = datetime.now()
        return cls(type=str(data.get("type", "message")), payload=payload, timestamp=parsed)


@dataclass(frozen=True)
class RelatedEntity:
    """Reference from a notification to a domain object (book, reservation, ...)."""
    kind: str
    id: str


@dataclass
class NotificationRecord:
    """A single entry in a user's notification log."""
    id: str
    type: NotificationType
    title: str
    message: str
    timestamp: datetime
    read: bool = False
    action_url: Optional[str] = None
    action_text: Optional[str] = None
    related_entity: Optional[RelatedEntity] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "title": self.title,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "read": self.read,
            "actionUrl": self.action_url,
            "actionText": self.action_text,
            "relatedEntity": (
                {"kind": self.related_entity.kind, "id": self.related_entity.id}
                if self.related_entity else None
            ),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NotificationRecord":
        related = data.get("relatedEntity")
        timestamp = data.get("timestamp")
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp)
        return cls(
            id=str(data["id"]),
            type=NotificationType(data.get("type", "info")),
            title=data.get("title", ""),
            message=data.get("message", ""),
            timestamp=timestamp or datetime.now(),
            read=bool(data.get("read", False)),
            action_url=data.get("actionUrl"),
            action_text=data.get("actionText"),
            related_entity=RelatedEntity(kind=related["kind"], id=str(related["id"])) if related else None,
        )


@dataclass
class PendingAction:
    """A user mutation recorded while offline, waiting to be replayed."""
    id: str
    type: str
    action: str
    data: Dict[str, Any]
    created_at: datetime
    attempts: int = 0
    status: ActionStatus = ActionStatus.PENDING
    last_error: Optional[str] = None
    seq: int = 0


@dataclass
class OfflineCacheEntry:
    """Data stored locally for offline use until it expires."""
    id: str
    type: CacheEntryType
    data: Any
    cached_at: datetime
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.now()) > self.expires_at


@dataclass
class ConnectionRecord:
    """Registry entry for one user's open stream."""
    user_id: str
    handle: Any
    connected_at: datetime
    heartbeat_task: Optional[asyncio.Task] = None


@dataclass
class StorageInfo:
    """Local storage usage against the configured quota."""
    used: int
    quota: int
    percentage: int


@dataclass
class SyncResult:
    """Aggregate outcome of one sync pass."""
    applied: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    dead_lettered: List[str] = field(default_factory=list)
    remaining: int = 0
    skipped_reason: Optional[str] = None
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None

    @property
    def applied_count(self) -> int:
        return len(self.applied)

    @property
    def failed_count(self) -> int:
        return len(self.failed) + len(self.dead_lettered)

    @property
    def skipped(self) -> bool:
        return self.skipped_reason is not None

    @property
    def title(self) -> str:
        if self.skipped:
            return "Sync Skipped"
        if self.failed_count == 0:
            return "Sync Complete"
        if self.applied_count > 0:
            return "Sync Partially Complete"
        return "Sync Failed"

    @property
    def description(self) -> str:
        if self.skipped:
            return f"Sync did not run: {self.skipped_reason}."
        if self.failed_count == 0:
            return f"Successfully synced {self.applied_count} pending changes."
        parts = [f"Synced {self.applied_count} changes, {self.remaining} still pending."]
        if self.dead_lettered:
            parts.append(f"{len(self.dead_lettered)} need your attention.")
        else:
            parts.append("Will retry automatically.")
        return " ".join(parts)
