"""Logging configuration for realtime delivery and offline sync."""

import logging
import sys
import time
from datetime import datetime
from typing import Optional


class RealtimeEventFormatter(logging.Formatter):
    """Formatter that appends structured realtime fields to the message."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with connection and action information."""
        if not hasattr(record, 'timestamp'):
            record.timestamp = datetime.now().isoformat()

        extra_fields = []
        for field in ['user_id', 'action_id', 'event_type', 'connection_id']:
            if hasattr(record, field):
                extra_fields.append(f"{field}={getattr(record, field)}")

        base_msg = super().format(record)

        if extra_fields:
            return f"{base_msg} [{', '.join(extra_fields)}]"

        return base_msg


def setup_logging(log_level: str = "INFO") -> logging.Logger:
    """Set up logging for the realtime package.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)

    Returns:
        Configured package logger
    """
    logger = logging.getLogger("libro_realtime")

    # Avoid duplicate handlers
    if logger.handlers:
        return logger

    logger.setLevel(getattr(logging, log_level.upper()))

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, log_level.upper()))

    formatter = RealtimeEventFormatter(
        fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    handler.setFormatter(formatter)

    logger.addHandler(handler)

    return logger


def log_connection_event(logger: logging.Logger, user_id: str, event: str,
                         message: str, **kwargs) -> None:
    """Log a stream connection event.

    Args:
        logger: Logger instance
        user_id: ID of the user owning the stream
        event: Type of connection event
        message: Human-readable message
        **kwargs: Additional fields to include in log
    """
    connection_duration_ms = kwargs.pop('connection_duration_ms', None)
    if 'connection_start' in kwargs and event in ['disconnected', 'heartbeat_failed']:
        connection_duration_ms = (time.time() - kwargs['connection_start']) * 1000

    extra = {
        'user_id': user_id,
        'event_type': f"connection_{event}",
        'timestamp': datetime.now().isoformat(),
        'connection_duration_ms': connection_duration_ms,
        **kwargs
    }

    if event in ['heartbeat_failed', 'send_failed', 'error']:
        logger.warning(message, extra=extra)
    elif event in ['connected', 'disconnected', 'replaced']:
        logger.info(message, extra=extra)
    else:
        logger.debug(message, extra=extra)


def log_action_event(logger: logging.Logger, action_id: str, action_type: str,
                     event: str, message: str, **kwargs) -> None:
    """Log a lifecycle event of a pending offline action.

    Args:
        logger: Logger instance
        action_id: ID of the pending action
        action_type: Type of the action (reservation, return, ...)
        event: enqueued, applied, failed or dead_lettered
        message: Human-readable message
        **kwargs: Additional fields to include in log
    """
    extra = {
        'action_id': action_id,
        'event_type': f"action_{event}",
        'action_type': action_type,
        'timestamp': datetime.now().isoformat(),
        **kwargs
    }

    if event == 'dead_lettered':
        logger.error(message, extra=extra)
    elif event == 'failed':
        logger.warning(message, extra=extra)
    else:
        logger.info(message, extra=extra)


def log_sync_pass(logger: logging.Logger, total: int, processing_time_ms: float,
                  applied: int, failed: int, remaining: int, **kwargs) -> None:
    """Log the aggregate outcome of a sync pass.

    Args:
        logger: Logger instance
        total: Number of actions in the pass snapshot
        processing_time_ms: Time to run the pass
        applied: Number of actions applied on the server
        failed: Number of actions that failed in this pass
        remaining: Queue depth after the pass
        **kwargs: Additional metrics
    """
    success_rate = (applied / total) if total > 0 else 1.0

    extra = {
        'event_type': 'sync_pass',
        'batch_size': total,
        'processing_time_ms': round(processing_time_ms, 2),
        'success_count': applied,
        'failure_count': failed,
        'remaining': remaining,
        'success_rate': round(success_rate, 3),
        'timestamp': datetime.now().isoformat(),
        **kwargs
    }

    if failed > 0:
        logger.warning(
            f"Sync pass finished with {failed} failures: {applied}/{total} applied, "
            f"{remaining} remaining", extra=extra
        )
    else:
        logger.info(f"Sync pass applied {applied} actions in {processing_time_ms:.2f}ms", extra=extra)


def get_logger(name: str, log_level: Optional[str] = None) -> logging.Logger:
    """Get a configured logger for realtime components.

    Args:
        name: Logger name (usually __name__)
        log_level: Logging level

    Returns:
        Configured logger instance
    """
    setup_logging(log_level or "INFO")

    return logging.getLogger(name)
