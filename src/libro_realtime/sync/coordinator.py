"""Replays the offline action queue against the server."""

import asyncio
import time
from datetime import datetime
from typing import Callable, List, Optional, Set

import httpx

from .config import SyncConfig
from .exceptions import StorageError
from .interfaces import ActionTransport
from .logging_config import get_logger, log_action_event, log_sync_pass
from .models import ActionOutcome, PendingAction, SyncResult
from .queue import OfflineActionQueue


ResultListener = Callable[[SyncResult], None]

# Client errors that are still worth retrying
RETRYABLE_CLIENT_STATUSES = {408, 429}


class HttpActionTransport(ActionTransport):
    """Posts a pending action to ``/api/{type}``, keyed by the action id."""

    def __init__(self, config: SyncConfig, client: httpx.AsyncClient):
        self.config = config
        self._client = client
        self.logger = get_logger(__name__)

    async def apply(self, action: PendingAction) -> ActionOutcome:
        url = f"{self.config.server_url.rstrip('/')}/api/{action.type}"
        try:
            response = await self._client.post(
                url,
                json={"actionId": action.id, "action": action.action, "data": action.data},
                headers={"Idempotency-Key": action.id},
                timeout=self.config.request_timeout_seconds,
            )
        except httpx.RequestError as e:
            self.logger.warning(f"Replay of {action.id} failed to reach server: {e}")
            return ActionOutcome.RETRY

        if response.is_success:
            return ActionOutcome.APPLIED
        if 400 <= response.status_code < 500 and response.status_code not in RETRYABLE_CLIENT_STATUSES:
            return ActionOutcome.REJECTED
        return ActionOutcome.RETRY


class SyncCoordinator:
    """Runs sync passes over the pending queue.

    At most one pass runs at a time; concurrent ``sync_now()`` calls share
    the in-flight pass. A pass runs over a snapshot of the queue taken when
    it starts, so actions enqueued meanwhile wait for the next pass.
    """

    def __init__(self, queue: OfflineActionQueue, transport: ActionTransport,
                 config: Optional[SyncConfig] = None, online: bool = True):
        self.queue = queue
        self.transport = transport
        self.config = config or SyncConfig()
        self.logger = get_logger(__name__)

        self._online = online
        self._inflight: Optional[asyncio.Task] = None
        self._periodic_task: Optional[asyncio.Task] = None
        self._result_listeners: List[ResultListener] = []
        self._applied_ids: Set[str] = set()
        self.last_result: Optional[SyncResult] = None

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def is_syncing(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def set_online(self, online: bool) -> Optional[asyncio.Task]:
        """Record connectivity; going online starts a sync pass.

        Must be called from a running event loop when ``online`` is True.

        Returns:
            The sync task started by the transition, if any
        """
        was_online, self._online = self._online, online
        if online and not was_online:
            self.logger.info("Connection restored, syncing pending actions")
            return self._ensure_pass()
        if not online and was_online:
            self.logger.info("Gone offline, actions will be queued")
        return None

    async def sync_now(self) -> SyncResult:
        """Run a sync pass, or join the one already running."""
        if not self._online and not self.is_syncing:
            return SyncResult(skipped_reason="offline", remaining=self.queue.pending_count,
                              finished_at=datetime.now())
        return await asyncio.shield(self._ensure_pass())

    def add_result_listener(self, listener: ResultListener) -> Callable[[], None]:
        self._result_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._result_listeners:
                self._result_listeners.remove(listener)

        return unsubscribe

    async def start(self) -> None:
        """Start the periodic sync timer."""
        if self._periodic_task is None:
            self._periodic_task = asyncio.create_task(self._periodic_sync())
            self.logger.info(f"Periodic sync started every {self.config.sync_interval_seconds}s")

    async def stop(self) -> None:
        """Stop the timer and let an in-flight pass finish."""
        if self._periodic_task:
            self._periodic_task.cancel()
            try:
                await self._periodic_task
            except asyncio.CancelledError:
                pass
            self._periodic_task = None
            self.logger.info("Periodic sync stopped")

        if self.is_syncing:
            await asyncio.shield(self._inflight)

    def _ensure_pass(self) -> asyncio.Task:
        if not self.is_syncing:
            self._inflight = asyncio.create_task(self._run_pass())
        return self._inflight

    async def _run_pass(self) -> SyncResult:
        start_time = time.time()
        result = SyncResult()
        snapshot = self.queue.pending()

        for action in snapshot:
            if action.id in self._applied_ids:
                # Applied earlier but its removal was not persisted
                self._remove_applied(action, result)
                continue

            try:
                outcome = await self.transport.apply(action)
            except Exception as e:
                self.logger.error(f"Unexpected error replaying {action.id}: {e}")
                outcome = ActionOutcome.RETRY

            if outcome == ActionOutcome.APPLIED:
                self._applied_ids.add(action.id)
                self._remove_applied(action, result)
                continue

            error = "rejected by server" if outcome == ActionOutcome.REJECTED else "server unavailable"
            try:
                dead = self.queue.record_failure(action, error)
            except StorageError as e:
                self.logger.error(f"Could not record failure of {action.id}: {e}")
                dead = False
            (result.dead_lettered if dead else result.failed).append(action.id)

        result.remaining = self.queue.pending_count
        result.finished_at = datetime.now()
        self.last_result = result

        log_sync_pass(
            self.logger,
            total=len(snapshot),
            processing_time_ms=(time.time() - start_time) * 1000,
            applied=result.applied_count,
            failed=result.failed_count,
            remaining=result.remaining,
        )
        self._notify(result)
        return result

    def _remove_applied(self, action: PendingAction, result: SyncResult) -> None:
        try:
            self.queue.mark_applied(action.id)
            self._applied_ids.discard(action.id)
        except StorageError as e:
            self.logger.error(f"Applied action {action.id} could not be removed: {e}")
        result.applied.append(action.id)
        log_action_event(self.logger, action.id, action.type, "applied", f"Synced {action.type}/{action.action}")

    def _notify(self, result: SyncResult) -> None:
        if not (result.applied or result.failed or result.dead_lettered):
            return
        for listener in list(self._result_listeners):
            try:
                listener(result)
            except Exception as e:
                self.logger.error(f"Error in sync result listener: {e}")

    async def _periodic_sync(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.config.sync_interval_seconds)
                if self._online and self.queue.pending_count > 0:
                    await self.sync_now()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error(f"Error in periodic sync: {e}")

