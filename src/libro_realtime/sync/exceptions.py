"""Custom exceptions for realtime delivery and offline synchronization."""

from typing import Optional, Dict, Any
from datetime import datetime


class SyncError(Exception):
    """Base exception for realtime and synchronization errors."""

    def __init__(self, message: str, error_code: str = "sync_error",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.timestamp = datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for serialization."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp.isoformat()
        }


class MissingUserIdError(SyncError):
    """Raised when a stream is requested without a user identifier."""

    def __init__(self, parameter: str = "userId"):
        message = "User ID required"
        details = {
            "parameter": parameter,
            "retryable": False
        }
        super().__init__(message, "missing_user_id", details)


class StorageError(SyncError):
    """Raised when the local durable store cannot be read or written."""

    def __init__(self, operation: str, reason: str,
                 details: Optional[Dict[str, Any]] = None):
        message = f"Storage operation '{operation}' failed: {reason}"
        error_details = {
            "operation": operation,
            "reason": reason,
            **(details or {})
        }
        super().__init__(message, "storage_error", error_details)


class TransportError(SyncError):
    """Raised when the stream or replay transport fails."""

    def __init__(self, target: str, reason: str):
        message = f"Transport error for {target}: {reason}"
        details = {
            "target": target,
            "reason": reason,
            "retryable": True
        }
        super().__init__(message, "transport_error", details)


class ActionNotFoundError(SyncError):
    """Raised when a pending action id is not present in the queue."""

    def __init__(self, action_id: str):
        message = f"Pending action {action_id} not found"
        details = {"action_id": action_id}
        super().__init__(message, "action_not_found", details)
