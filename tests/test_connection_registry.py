"""Tests for the connection registry."""

import json

from hypothesis import given, strategies as st

from conftest import RecordingHandle
from libro_realtime.stream.registry import ConnectionRegistry
from libro_realtime.sync.models import StreamEvent


def decode(frame: str) -> dict:
    assert frame.startswith("data: ") and frame.endswith("\n\n")
    return json.loads(frame[len("data: "):])


def test_send_writes_frame_to_registered_user():
    registry = ConnectionRegistry()
    handle = RecordingHandle()
    registry.register("user-1", handle)

    assert registry.send("user-1", StreamEvent(type="notification", payload={"title": "Hi"}))

    body = decode(handle.frames[0])
    assert body["type"] == "notification"
    assert body["title"] == "Hi"
    assert "timestamp" in body


def test_send_to_unknown_user_returns_false():
    registry = ConnectionRegistry()
    assert registry.send("nobody", StreamEvent(type="notification")) is False


def test_register_replaces_and_closes_previous_handle():
    registry = ConnectionRegistry()
    first, second = RecordingHandle(), RecordingHandle()

    registry.register("user-1", first)
    registry.register("user-1", second)

    assert len(registry) == 1
    assert first.closed
    assert registry.get("user-1").handle is second


def test_unregister_with_stale_handle_keeps_newer_connection():
    registry = ConnectionRegistry()
    first, second = RecordingHandle(), RecordingHandle()
    registry.register("user-1", first)
    registry.register("user-1", second)

    assert registry.unregister("user-1", first) is False
    assert registry.is_connected("user-1")

    assert registry.unregister("user-1", second) is True
    assert not registry.is_connected("user-1")


def test_failed_send_removes_entry():
    registry = ConnectionRegistry()
    registry.register("user-1", RecordingHandle(fail=True))

    assert registry.send("user-1", StreamEvent(type="notification")) is False
    assert not registry.is_connected("user-1")
    assert registry.get_metrics()["failed_sends"] == 1


def test_broadcast_isolates_failing_handle():
    registry = ConnectionRegistry()
    good_a, bad, good_b = RecordingHandle(), RecordingHandle(fail=True), RecordingHandle()
    registry.register("a", good_a)
    registry.register("b", bad)
    registry.register("c", good_b)

    delivered = registry.broadcast(StreamEvent(type="broadcast", payload={"title": "Closing early"}))

    assert delivered == 2
    assert len(good_a.frames) == 1
    assert len(good_b.frames) == 1
    assert registry.user_ids() == ["a", "c"]


def test_close_all_closes_every_handle():
    registry = ConnectionRegistry()
    handles = [RecordingHandle() for _ in range(3)]
    for i, handle in enumerate(handles):
        registry.register(f"user-{i}", handle)

    registry.close_all()

    assert len(registry) == 0
    assert all(handle.closed for handle in handles)


@given(st.lists(st.sampled_from(["u1", "u2", "u3", "u4"]), max_size=30))
def test_at_most_one_entry_per_user(user_ids):
    """Property: however often users reconnect, each has at most one open entry."""
    registry = ConnectionRegistry()
    handles = []
    for user_id in user_ids:
        handle = RecordingHandle()
        handles.append(handle)
        registry.register(user_id, handle)

    assert len(registry) == len(set(user_ids))
    open_handles = [h for h in handles if not h.closed]
    assert len(open_handles) == len(set(user_ids))
