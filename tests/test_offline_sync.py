"""Tests for the offline action queue and the sync coordinator."""

import asyncio
import json
from typing import Dict, List

import httpx
import pytest
from hypothesis import given, settings, strategies as st

from conftest import wait_until
from libro_realtime.storage.database import OfflineDatabase
from libro_realtime.sync.config import SyncConfig
from libro_realtime.sync.coordinator import HttpActionTransport, SyncCoordinator
from libro_realtime.sync.exceptions import ActionNotFoundError, StorageError
from libro_realtime.sync.interfaces import ActionTransport
from libro_realtime.sync.models import ActionOutcome, ActionStatus, PendingAction
from libro_realtime.sync.queue import OfflineActionQueue


class ScriptedTransport(ActionTransport):
    """Transport returning a fixed outcome per action label (``data["label"]``)."""

    def __init__(self, outcomes: Dict[str, ActionOutcome] = None, gate: asyncio.Event = None):
        self.outcomes = outcomes or {}
        self.gate = gate
        self.calls: List[str] = []

    async def apply(self, action: PendingAction) -> ActionOutcome:
        label = action.data.get("label", action.id)
        self.calls.append(label)
        if self.gate is not None:
            await self.gate.wait()
        outcome = self.outcomes.get(label, ActionOutcome.APPLIED)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def enqueue_labels(queue: OfflineActionQueue, *labels: str) -> Dict[str, str]:
    return {label: queue.enqueue("reservation", "create", {"label": label}) for label in labels}


class TestOfflineActionQueue:

    def test_enqueue_persists_before_returning(self, db_path):
        with OfflineDatabase(db_path) as db:
            action_id = OfflineActionQueue(db).make_reservation("book-1", "user-9")

        with OfflineDatabase(db_path) as db:
            queue = OfflineActionQueue(db)
            assert queue.pending_count == 1
            action = queue.get(action_id)
            assert action.type == "reservation"
            assert action.action == "create"
            assert action.data == {"bookId": "book-1", "userId": "user-9"}
            assert action_id.startswith("reservation_")

    def test_pending_is_in_creation_order(self, offline_db):
        queue = OfflineActionQueue(offline_db)
        ids = enqueue_labels(queue, "A", "B", "C")
        assert [a.id for a in queue.pending()] == [ids["A"], ids["B"], ids["C"]]

    def test_enqueue_without_storage_raises(self, offline_db):
        queue = OfflineActionQueue(offline_db)
        offline_db.close()
        with pytest.raises(StorageError):
            queue.return_book("borrow-1")

    def test_failures_dead_letter_at_the_cap(self, offline_db):
        queue = OfflineActionQueue(offline_db, SyncConfig(max_action_attempts=2))
        queue.cancel_reservation("res-1")
        action = queue.pending()[0]

        assert queue.record_failure(action, "server unavailable") is False
        assert queue.record_failure(action, "server unavailable") is True
        assert queue.pending_count == 0
        dead = queue.dead_letters()
        assert [a.id for a in dead] == [action.id]
        assert dead[0].attempts == 2
        assert dead[0].last_error == "server unavailable"

    def test_resubmit_requeues_at_tail(self, offline_db):
        queue = OfflineActionQueue(offline_db, SyncConfig(max_action_attempts=1))
        ids = enqueue_labels(queue, "A", "B")
        assert queue.record_failure(queue.get(ids["A"]), "rejected by server") is True

        queue.resubmit(ids["A"])

        assert [a.id for a in queue.pending()] == [ids["B"], ids["A"]]
        assert queue.get(ids["A"]).attempts == 0
        assert queue.get(ids["A"]).last_error is None
        assert queue.dead_letters() == []

    def test_failed_resubmit_keeps_the_dead_letter(self, offline_db, monkeypatch):
        queue = OfflineActionQueue(offline_db, SyncConfig(max_action_attempts=1))
        ids = enqueue_labels(queue, "A")
        queue.record_failure(queue.get(ids["A"]), "server unavailable")

        def failing_update(operation, sql, params=None):
            if sql.lstrip().startswith("UPDATE"):
                raise StorageError(operation, "disk full")
            return original_execute(operation, sql, params)

        original_execute = offline_db._execute
        monkeypatch.setattr(offline_db, "_execute", failing_update)
        with pytest.raises(StorageError):
            queue.resubmit(ids["A"])
        monkeypatch.undo()

        kept = queue.get(ids["A"])
        assert kept is not None
        assert kept.status == ActionStatus.DEAD_LETTER
        assert kept.attempts == 1
        assert kept.last_error == "server unavailable"

    def test_discard_and_unknown_ids(self, offline_db):
        queue = OfflineActionQueue(offline_db)
        action_id = queue.return_book("borrow-1")

        queue.discard(action_id)

        assert queue.pending_count == 0
        with pytest.raises(ActionNotFoundError):
            queue.discard(action_id)
        with pytest.raises(ActionNotFoundError):
            queue.resubmit(action_id)


class TestSyncCoordinator:

    def test_actions_apply_in_creation_order(self, offline_db):
        queue = OfflineActionQueue(offline_db)
        enqueue_labels(queue, "A", "B", "C")
        transport = ScriptedTransport()

        result = asyncio.run(SyncCoordinator(queue, transport).sync_now())

        assert transport.calls == ["A", "B", "C"]
        assert result.applied_count == 3
        assert queue.pending_count == 0
        assert result.title == "Sync Complete"

    def test_partial_failure_leaves_only_failed_action(self, offline_db):
        queue = OfflineActionQueue(offline_db)
        ids = enqueue_labels(queue, "A", "B", "C")
        transport = ScriptedTransport({"B": ActionOutcome.RETRY})

        result = asyncio.run(SyncCoordinator(queue, transport).sync_now())

        assert transport.calls == ["A", "B", "C"]
        assert result.applied_count == 2
        assert result.failed == [ids["B"]]
        assert [a.id for a in queue.pending()] == [ids["B"]]
        assert result.remaining == 1
        assert result.title == "Sync Partially Complete"

    def test_transport_exception_counts_as_retry(self, offline_db):
        queue = OfflineActionQueue(offline_db)
        ids = enqueue_labels(queue, "A", "B")
        transport = ScriptedTransport({"A": RuntimeError("socket closed")})

        result = asyncio.run(SyncCoordinator(queue, transport).sync_now())

        assert result.failed == [ids["A"]]
        assert result.applied == [ids["B"]]
        assert queue.get(ids["A"]).attempts == 1

    def test_rejected_action_stays_queued_until_the_cap(self, offline_db):
        queue = OfflineActionQueue(offline_db, SyncConfig(max_action_attempts=2))
        ids = enqueue_labels(queue, "A")
        coordinator = SyncCoordinator(queue, ScriptedTransport({"A": ActionOutcome.REJECTED}))

        first = asyncio.run(coordinator.sync_now())

        assert first.failed == [ids["A"]]
        assert first.dead_lettered == []
        assert first.title == "Sync Failed"
        assert [a.id for a in queue.pending()] == [ids["A"]]
        assert queue.get(ids["A"]).attempts == 1
        assert queue.get(ids["A"]).last_error == "rejected by server"

        second = asyncio.run(coordinator.sync_now())

        assert second.dead_lettered == [ids["A"]]
        assert queue.pending_count == 0
        assert [a.status for a in queue.dead_letters()] == [ActionStatus.DEAD_LETTER]

    def test_repeated_failures_dead_letter_after_max_attempts(self, offline_db):
        queue = OfflineActionQueue(offline_db, SyncConfig(max_action_attempts=3))
        enqueue_labels(queue, "A")
        coordinator = SyncCoordinator(queue, ScriptedTransport({"A": ActionOutcome.RETRY}))

        async def run():
            return [await coordinator.sync_now() for _ in range(4)]

        results = asyncio.run(run())

        assert [len(r.failed) for r in results[:2]] == [1, 1]
        assert len(results[2].dead_lettered) == 1
        assert results[3].applied == [] and results[3].failed == []
        assert len(queue.dead_letters()) == 1

    def test_concurrent_calls_share_one_pass(self, offline_db):
        queue = OfflineActionQueue(offline_db)
        enqueue_labels(queue, "A", "B")

        async def run():
            gate = asyncio.Event()
            transport = ScriptedTransport(gate=gate)
            coordinator = SyncCoordinator(queue, transport)

            first = asyncio.create_task(coordinator.sync_now())
            second = asyncio.create_task(coordinator.sync_now())
            await asyncio.sleep(0.01)
            assert coordinator.is_syncing
            gate.set()
            results = await asyncio.gather(first, second)
            return transport, results

        transport, (first, second) = asyncio.run(run())

        assert transport.calls == ["A", "B"]
        assert first is second

    def test_offline_sync_is_a_no_op(self, offline_db):
        queue = OfflineActionQueue(offline_db)
        enqueue_labels(queue, "A")
        transport = ScriptedTransport()

        result = asyncio.run(SyncCoordinator(queue, transport, online=False).sync_now())

        assert result.skipped
        assert result.title == "Sync Skipped"
        assert transport.calls == []
        assert queue.pending_count == 1

    def test_going_online_replays_offline_reservation(self, offline_db):
        queue = OfflineActionQueue(offline_db)
        coordinator = SyncCoordinator(queue, ScriptedTransport(), online=False)
        reported = []
        coordinator.add_result_listener(reported.append)

        queue.make_reservation("book-1", "user-9")
        assert queue.pending_count == 1

        async def run():
            task = coordinator.set_online(True)
            assert task is not None
            return await task

        result = asyncio.run(run())

        assert queue.pending_count == 0
        assert result.applied_count == 1
        assert result.title == "Sync Complete"
        assert reported == [result]

    def test_actions_enqueued_during_a_pass_wait_for_the_next(self, offline_db):
        queue = OfflineActionQueue(offline_db)
        enqueue_labels(queue, "A")

        async def run():
            gate = asyncio.Event()
            transport = ScriptedTransport(gate=gate)
            coordinator = SyncCoordinator(queue, transport)
            running = asyncio.create_task(coordinator.sync_now())
            await asyncio.sleep(0.01)
            enqueue_labels(queue, "B")
            gate.set()
            first = await running
            second = await coordinator.sync_now()
            return first, second

        first, second = asyncio.run(run())

        assert first.applied_count == 1
        assert first.remaining == 1
        assert second.applied_count == 1
        assert queue.pending_count == 0

    def test_periodic_sync_drains_queue(self, offline_db):
        config = SyncConfig(sync_interval_seconds=0.02)
        queue = OfflineActionQueue(offline_db, config)
        enqueue_labels(queue, "A", "B")

        async def run():
            coordinator = SyncCoordinator(queue, ScriptedTransport(), config)
            await coordinator.start()
            await wait_until(lambda: queue.pending_count == 0)
            await coordinator.stop()

        asyncio.run(run())
        assert queue.pending_count == 0

    def test_listener_errors_do_not_break_the_pass(self, offline_db):
        queue = OfflineActionQueue(offline_db)
        enqueue_labels(queue, "A")
        coordinator = SyncCoordinator(queue, ScriptedTransport())
        seen = []

        def broken(result):
            raise RuntimeError("toast failed")

        coordinator.add_result_listener(broken)
        coordinator.add_result_listener(seen.append)

        result = asyncio.run(coordinator.sync_now())
        assert seen == [result]


@settings(max_examples=20)
@given(st.lists(st.sampled_from(list(ActionOutcome)), min_size=1, max_size=8))
def test_pass_accounts_for_every_action(outcomes):
    """Property: applied + failed covers the snapshot and only failed actions remain, in order."""
    with OfflineDatabase(":memory:") as db:
        queue = OfflineActionQueue(db)
        labels = [f"L{i}" for i in range(len(outcomes))]
        ids = enqueue_labels(queue, *labels)
        transport = ScriptedTransport(dict(zip(labels, outcomes)))

        result = asyncio.run(SyncCoordinator(queue, transport).sync_now())

        expected_remaining = [ids[l] for l, o in zip(labels, outcomes) if o != ActionOutcome.APPLIED]
        assert result.applied_count + len(result.failed) == len(outcomes)
        assert [a.id for a in queue.pending()] == expected_remaining
        assert transport.calls == labels


class TestHttpActionTransport:

    @staticmethod
    def apply_with(handler) -> ActionOutcome:
        action = PendingAction(
            id="reservation_1_abc", type="reservation", action="create",
            data={"bookId": "book-1"}, created_at=None,
        )

        async def run():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                return await HttpActionTransport(SyncConfig(), client).apply(action)

        return asyncio.run(run())

    def test_success_posts_action_with_idempotency_key(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"status": "applied"})

        assert self.apply_with(handler) == ActionOutcome.APPLIED
        request = seen[0]
        assert request.method == "POST"
        assert request.url.path == "/api/reservation"
        assert request.headers["Idempotency-Key"] == "reservation_1_abc"
        assert json.loads(request.content) == {
            "actionId": "reservation_1_abc", "action": "create", "data": {"bookId": "book-1"}
        }

    @pytest.mark.parametrize("status, outcome", [
        (400, ActionOutcome.REJECTED),
        (422, ActionOutcome.REJECTED),
        (408, ActionOutcome.RETRY),
        (429, ActionOutcome.RETRY),
        (500, ActionOutcome.RETRY),
        (503, ActionOutcome.RETRY),
    ])
    def test_status_mapping(self, status, outcome):
        assert self.apply_with(lambda request: httpx.Response(status)) == outcome

    def test_network_error_is_retryable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        assert self.apply_with(handler) == ActionOutcome.RETRY

    def test_conflict_leaves_only_the_rejected_action_queued(self, offline_db):
        queue = OfflineActionQueue(offline_db)
        ids = enqueue_labels(queue, "A", "B", "C")

        def handler(request):
            if json.loads(request.content)["data"]["label"] == "B":
                return httpx.Response(409, json={"error": "book already reserved"})
            return httpx.Response(200, json={"status": "applied"})

        async def run():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                transport = HttpActionTransport(SyncConfig(), client)
                return await SyncCoordinator(queue, transport).sync_now()

        result = asyncio.run(run())

        assert result.applied == [ids["A"], ids["C"]]
        assert result.failed == [ids["B"]]
        assert [a.id for a in queue.pending()] == [ids["B"]]
        assert queue.dead_letters() == []
