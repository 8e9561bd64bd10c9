"""
FastAPI application serving the realtime notification stream.

This module exposes the server-sent events endpoint, the idempotent replay
endpoint used by the offline sync coordinator, and health/status endpoints.
"""

import logging
from collections import OrderedDict
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional

import click
from dotenv import load_dotenv
from fastapi import FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from .events.publisher import NotificationPublisher
from .stream.registry import ConnectionRegistry
from .stream.server import EventStreamServer
from .sync.config import SyncConfig
from .sync.logging_config import setup_logging

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

# Components (initialized in lifespan)
config: Optional[SyncConfig] = None
registry: Optional[ConnectionRegistry] = None
stream_server: Optional[EventStreamServer] = None
publisher: Optional[NotificationPublisher] = None

# Replayed actions by idempotency key, with the response that was returned.
# Least recently seen keys are evicted past MAX_IDEMPOTENCY_KEYS.
MAX_IDEMPOTENCY_KEYS = 10000
applied_actions: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()

ACTION_NOTIFICATIONS = {
    ("reservation", "create"): ("success", "Reservation Confirmed", "Your reservation has been confirmed."),
    ("reservation", "cancel"): ("info", "Reservation Cancelled", "Your reservation has been cancelled."),
    ("borrowing", "return"): ("success", "Book Returned", "Your book return has been recorded."),
}


class ActionRequest(BaseModel):
    """Body of a replayed offline action."""
    actionId: str = Field(min_length=1)
    action: str = Field(min_length=1)
    data: Dict[str, Any] = Field(default_factory=dict)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan event handler.

    Builds the stream components on startup and closes every open stream
    on shutdown.
    """
    global config, registry, stream_server, publisher

    config = SyncConfig.from_env()
    setup_logging(config.log_level)
    logger.info("Starting realtime notification server")

    registry = ConnectionRegistry()
    stream_server = EventStreamServer(registry, config)
    publisher = NotificationPublisher(registry)
    applied_actions.clear()

    yield

    logger.info("Shutting down realtime notification server")
    try:
        await stream_server.stop()
        registry.close_all()
    except Exception as e:
        logger.error(f"Error closing notification streams: {e}")
    logger.info("Realtime notification server shutdown complete")


app = FastAPI(
    title="Libro Realtime",
    description="Realtime notifications and offline action replay for the library system",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


@app.get("/health")
async def health_check():
    """
    Health check endpoint for monitoring.

    Returns:
        JSON response with application status
    """
    return {
        "status": "healthy",
        "application": "Libro Realtime",
        "version": app.version,
        "stream": "enabled" if stream_server else "disabled",
    }


@app.get("/api/notifications/stream")
async def notification_stream(userId: Optional[str] = Query(default=None)):
    """
    Open a server-sent events stream for one user.

    Responds with 400 when ``userId`` is missing.
    """
    if stream_server is None:
        raise HTTPException(status_code=503, detail="Notification stream is not available")
    return await stream_server.stream_response(userId)


@app.get("/api/stream/status")
async def get_stream_status():
    """
    Get the current status of the notification stream.

    Returns:
        JSON response with connection and delivery metrics
    """
    if registry is None or publisher is None:
        return {
            "status": "disabled",
            "message": "Notification stream is not available"
        }

    return {
        "status": "enabled",
        "connected_users": len(registry),
        "connections": registry.get_metrics(),
        "notifications": publisher.get_metrics(),
        "timestamp": datetime.now().isoformat()
    }


@app.post("/api/{action_type}")
async def apply_action(action_type: str, request: ActionRequest,
                       idempotency_key: Optional[str] = Header(default=None)):
    """
    Apply a replayed offline action.

    The same idempotency key (the action id) is applied at most once; a
    repeated request gets the original response back.
    """
    key = idempotency_key or request.actionId
    if key in applied_actions:
        applied_actions.move_to_end(key)
        logger.info(f"Action {key} already applied, returning recorded result")
        return {**applied_actions[key], "duplicate": True}

    result = {
        "status": "applied",
        "actionId": request.actionId,
        "type": action_type,
        "action": request.action,
        "appliedAt": datetime.now().isoformat(),
    }
    applied_actions[key] = result
    while len(applied_actions) > MAX_IDEMPOTENCY_KEYS:
        applied_actions.popitem(last=False)
    logger.info(f"Applied {action_type}/{request.action} action {key}")

    user_id = request.data.get("userId")
    template = ACTION_NOTIFICATIONS.get((action_type, request.action))
    if user_id and template and publisher is not None:
        notification_type, title, message = template
        publisher.send_notification_to_user(str(user_id), {
            "type": notification_type,
            "title": title,
            "message": message,
            "actionUrl": "/dashboard/user",
        })

    return {**result, "duplicate": False}


@click.command()
@click.option(
    '--host',
    envvar='WEB_HOST',
    default='0.0.0.0',
    show_default=True,
    help='Host to bind the web server to'
)
@click.option(
    '--port',
    envvar='WEB_PORT',
    type=int,
    default=8000,
    show_default=True,
    help='Port to bind the web server to'
)
@click.option(
    '--reload',
    envvar='WEB_RELOAD',
    is_flag=True,
    default=False,
    help='Enable auto-reload for development'
)
@click.option(
    '--log-level',
    envvar='WEB_LOG_LEVEL',
    default='info',
    show_default=True,
    type=click.Choice(['critical', 'error', 'warning', 'info', 'debug'], case_sensitive=False),
    help='Logging level for the web server'
)
def run_server(host: str, port: int, reload: bool, log_level: str):
    """
    Run the notification server with uvicorn (`libro-web`).

    Options can also be set through WEB_HOST, WEB_PORT, WEB_RELOAD and
    WEB_LOG_LEVEL.
    """
    import uvicorn

    logger.info(f"Starting web server on {host}:{port}")
    logger.info(f"Reload mode: {reload}")

    uvicorn.run(
        "libro_realtime.web:app",
        host=host,
        port=port,
        reload=reload,
        log_level=log_level.lower()
    )
