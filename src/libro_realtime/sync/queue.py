"""Durable FIFO queue of user mutations recorded while offline."""

import random
import string
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from .config import SyncConfig
from .exceptions import ActionNotFoundError
from .interfaces import DurableStore
from .logging_config import get_logger, log_action_event
from .models import ActionStatus, PendingAction


class OfflineActionQueue:
    """Pending actions in creation order, persisted before ``enqueue`` returns.

    Actions that keep failing are moved to a dead-letter state instead of
    being dropped, so they stay visible until resubmitted or discarded.
    """

    def __init__(self, store: DurableStore, config: Optional[SyncConfig] = None):
        self._store = store
        self.config = config or SyncConfig()
        self.logger = get_logger(__name__)

    def enqueue(self, action_type: str, action: str, data: Dict[str, Any]) -> str:
        """Record an action for later replay.

        Returns:
            The generated action id

        Raises:
            StorageError: The action could not be persisted
        """
        pending = PendingAction(
            id=self._generate_id(action_type),
            type=action_type,
            action=action,
            data=dict(data),
            created_at=datetime.now(),
        )
        pending = self._store.insert_action(pending)

        log_action_event(
            self.logger, pending.id, action_type, "enqueued",
            f"Queued {action_type}/{action} for sync",
        )
        return pending.id

    @property
    def pending_count(self) -> int:
        return self._store.count_actions(ActionStatus.PENDING)

    def pending(self) -> List[PendingAction]:
        """Actions awaiting replay, oldest first."""
        return self._store.list_actions(ActionStatus.PENDING)

    def dead_letters(self) -> List[PendingAction]:
        return self._store.list_actions(ActionStatus.DEAD_LETTER)

    def get(self, action_id: str) -> Optional[PendingAction]:
        return self._store.get_action(action_id)

    def mark_applied(self, action_id: str) -> None:
        """Remove an action the server accepted."""
        if self._store.delete_action(action_id):
            self.logger.debug(f"Removed applied action {action_id}")

    def record_failure(self, action: PendingAction, error: str) -> bool:
        """Count a failed replay attempt.

        Returns:
            True when the action was moved to the dead-letter state
        """
        action.attempts += 1
        action.last_error = error
        dead = action.attempts >= self.config.max_action_attempts
        if dead:
            action.status = ActionStatus.DEAD_LETTER
        self._store.update_action(action)

        if dead:
            log_action_event(
                self.logger, action.id, action.type, "dead_lettered",
                f"Action {action.id} dead-lettered after {action.attempts} attempts: {error}",
                attempts=action.attempts,
            )
        else:
            log_action_event(
                self.logger, action.id, action.type, "failed",
                f"Action {action.id} failed (attempt {action.attempts}): {error}",
                attempts=action.attempts,
            )
        return dead

    def resubmit(self, action_id: str) -> PendingAction:
        """Move a dead-lettered action back to the end of the pending queue.

        Raises:
            ActionNotFoundError: No action with that id exists
            StorageError: The move was not persisted; the action is left unchanged
        """
        action = self._store.requeue_action(action_id)
        if action is None:
            raise ActionNotFoundError(action_id)

        log_action_event(
            self.logger, action.id, action.type, "resubmitted",
            f"Action {action.id} resubmitted for sync",
        )
        return action

    def discard(self, action_id: str) -> None:
        """Delete an action permanently.

        Raises:
            ActionNotFoundError: No action with that id exists
        """
        if not self._store.delete_action(action_id):
            raise ActionNotFoundError(action_id)
        self.logger.info(f"Discarded action {action_id}")

    # Offline counterparts of the library mutations

    def make_reservation(self, book_id: str, user_id: str) -> str:
        return self.enqueue("reservation", "create", {"bookId": book_id, "userId": user_id})

    def cancel_reservation(self, reservation_id: str) -> str:
        return self.enqueue("reservation", "cancel", {"reservationId": reservation_id})

    def return_book(self, borrowing_id: str) -> str:
        return self.enqueue("borrowing", "return", {"borrowingId": borrowing_id})

    @staticmethod
    def _generate_id(action_type: str) -> str:
        suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
        return f"{action_type}_{int(time.time() * 1000)}_{suffix}"
