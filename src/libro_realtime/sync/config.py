"""Configuration for the realtime notification and offline sync system."""

import os
from dataclasses import dataclass
from typing import Dict, Any
from pathlib import Path


@dataclass
class SyncConfig:
    """Configuration settings for streaming, offline storage and sync."""

    # Stream settings
    server_url: str = "http://localhost:8000"
    stream_path: str = "/api/notifications/stream"
    heartbeat_interval_seconds: float = 30.0
    handle_queue_size: int = 100

    # Client settings
    reconnect_delay_seconds: float = 5.0
    stream_read_timeout_seconds: float = 90.0
    request_timeout_seconds: float = 10.0

    # Sync settings
    sync_interval_seconds: float = 30.0
    max_action_attempts: int = 3

    # Storage settings
    db_path: str = "./data/offline.duckdb"
    cache_ttl_hours: int = 24 * 7
    search_cache_ttl_hours: int = 24
    cache_sweep_interval_seconds: float = 3600.0
    notification_retention_days: int = 30
    max_notifications: int = 200
    storage_quota_bytes: int = 50 * 1024 * 1024

    # Logging settings
    log_level: str = "INFO"

    @property
    def stream_url(self) -> str:
        return f"{self.server_url.rstrip('/')}{self.stream_path}"

    def validate(self) -> None:
        """Validate configuration parameters."""
        errors = []

        if not self.server_url.startswith(("http://", "https://")):
            errors.append(f"Server URL must start with http:// or https://, got {self.server_url}")

        if not self.stream_path.startswith("/"):
            errors.append(f"Stream path must start with '/', got {self.stream_path}")

        if self.heartbeat_interval_seconds <= 0:
            errors.append(f"Heartbeat interval must be positive, got {self.heartbeat_interval_seconds}")

        if self.handle_queue_size <= 0:
            errors.append(f"Handle queue size must be positive, got {self.handle_queue_size}")

        if self.reconnect_delay_seconds <= 0:
            errors.append(f"Reconnect delay must be positive, got {self.reconnect_delay_seconds}")

        if self.stream_read_timeout_seconds <= self.heartbeat_interval_seconds:
            errors.append(
                f"Stream read timeout ({self.stream_read_timeout_seconds}) must exceed "
                f"heartbeat interval ({self.heartbeat_interval_seconds})"
            )

        if self.request_timeout_seconds <= 0:
            errors.append(f"Request timeout must be positive, got {self.request_timeout_seconds}")

        if self.sync_interval_seconds <= 0:
            errors.append(f"Sync interval must be positive, got {self.sync_interval_seconds}")

        if self.max_action_attempts < 1:
            errors.append(f"Max action attempts must be at least 1, got {self.max_action_attempts}")

        if self.cache_ttl_hours <= 0:
            errors.append(f"Cache TTL must be positive, got {self.cache_ttl_hours}")

        if self.search_cache_ttl_hours <= 0:
            errors.append(f"Search cache TTL must be positive, got {self.search_cache_ttl_hours}")

        if self.cache_sweep_interval_seconds <= 0:
            errors.append(f"Cache sweep interval must be positive, got {self.cache_sweep_interval_seconds}")

        if self.notification_retention_days <= 0:
            errors.append(f"Notification retention must be positive, got {self.notification_retention_days}")

        if self.max_notifications <= 0:
            errors.append(f"Max notifications must be positive, got {self.max_notifications}")

        if self.storage_quota_bytes <= 0:
            errors.append(f"Storage quota must be positive, got {self.storage_quota_bytes}")

        valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.log_level.upper() not in valid_log_levels:
            errors.append(f"Log level must be one of {valid_log_levels}, got {self.log_level}")

        if errors:
            raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return {
            "server_url": self.server_url,
            "stream_path": self.stream_path,
            "heartbeat_interval_seconds": self.heartbeat_interval_seconds,
            "handle_queue_size": self.handle_queue_size,
            "reconnect_delay_seconds": self.reconnect_delay_seconds,
            "stream_read_timeout_seconds": self.stream_read_timeout_seconds,
            "request_timeout_seconds": self.request_timeout_seconds,
            "sync_interval_seconds": self.sync_interval_seconds,
            "max_action_attempts": self.max_action_attempts,
            "db_path": self.db_path,
            "cache_ttl_hours": self.cache_ttl_hours,
            "search_cache_ttl_hours": self.search_cache_ttl_hours,
            "cache_sweep_interval_seconds": self.cache_sweep_interval_seconds,
            "notification_retention_days": self.notification_retention_days,
            "max_notifications": self.max_notifications,
            "storage_quota_bytes": self.storage_quota_bytes,
            "log_level": self.log_level,
        }

    @classmethod
    def from_env(cls) -> "SyncConfig":
        """Create configuration from environment variables with validation."""
        try:
            config = cls(
                server_url=os.getenv("LIBRO_SERVER_URL", "http://localhost:8000"),
                stream_path=os.getenv("LIBRO_STREAM_PATH", "/api/notifications/stream"),
                heartbeat_interval_seconds=float(os.getenv("LIBRO_HEARTBEAT_INTERVAL", "30")),
                handle_queue_size=int(os.getenv("LIBRO_HANDLE_QUEUE_SIZE", "100")),

                reconnect_delay_seconds=float(os.getenv("LIBRO_RECONNECT_DELAY", "5.0")),
                stream_read_timeout_seconds=float(os.getenv("LIBRO_STREAM_READ_TIMEOUT", "90")),
                request_timeout_seconds=float(os.getenv("LIBRO_REQUEST_TIMEOUT", "10")),

                sync_interval_seconds=float(os.getenv("LIBRO_SYNC_INTERVAL", "30")),
                max_action_attempts=int(os.getenv("LIBRO_MAX_ACTION_ATTEMPTS", "3")),

                db_path=os.getenv("LIBRO_DB_PATH", "./data/offline.duckdb"),
                cache_ttl_hours=int(os.getenv("LIBRO_CACHE_TTL_HOURS", "168")),
                search_cache_ttl_hours=int(os.getenv("LIBRO_SEARCH_CACHE_TTL_HOURS", "24")),
                cache_sweep_interval_seconds=float(os.getenv("LIBRO_CACHE_SWEEP_INTERVAL", "3600")),
                notification_retention_days=int(os.getenv("LIBRO_NOTIFICATION_RETENTION_DAYS", "30")),
                max_notifications=int(os.getenv("LIBRO_MAX_NOTIFICATIONS", "200")),
                storage_quota_bytes=int(os.getenv("LIBRO_STORAGE_QUOTA_BYTES", str(50 * 1024 * 1024))),

                log_level=os.getenv("LIBRO_LOG_LEVEL", "INFO"),
            )

            config.validate()
            return config

        except ValueError as e:
            if "could not convert" in str(e) or "invalid literal" in str(e):
                raise ValueError(f"Invalid environment variable format: {e}")
            raise

    @classmethod
    def from_file(cls, config_path: str) -> "SyncConfig":
        """Load configuration from a .env file."""
        from dotenv import load_dotenv

        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        load_dotenv(config_file, override=True)

        return cls.from_env()
