"""Tests for the FastAPI endpoints."""

import json

import pytest
from fastapi.testclient import TestClient

from conftest import RecordingHandle
from libro_realtime import web


@pytest.fixture
def client():
    with TestClient(web.app) as test_client:
        yield test_client


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["stream"] == "enabled"


def test_stream_requires_user_id(client):
    response = client.get("/api/notifications/stream")

    assert response.status_code == 400
    assert response.text == "User ID required"


def test_stream_status_counts_connected_users(client):
    web.registry.register("user-1", RecordingHandle())
    web.registry.register("user-2", RecordingHandle())

    response = client.get("/api/stream/status")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "enabled"
    assert body["connected_users"] == 2


def test_replayed_action_is_applied_once(client):
    payload = {"actionId": "reservation_1_abc", "action": "create", "data": {"bookId": "book-1"}}
    headers = {"Idempotency-Key": "reservation_1_abc"}

    first = client.post("/api/reservation", json=payload, headers=headers)
    second = client.post("/api/reservation", json=payload, headers=headers)

    assert first.status_code == 200
    assert first.json()["duplicate"] is False
    assert second.status_code == 200
    assert second.json()["duplicate"] is True
    assert second.json()["appliedAt"] == first.json()["appliedAt"]


def test_replayed_action_notifies_connected_user(client):
    handle = RecordingHandle()
    web.registry.register("user-9", handle)

    response = client.post("/api/reservation", json={
        "actionId": "reservation_2_def",
        "action": "create",
        "data": {"bookId": "book-1", "userId": "user-9"},
    })

    assert response.status_code == 200
    body = json.loads(handle.frames[0][len("data: "):])
    assert body["type"] == "notification"
    assert body["notificationType"] == "success"
    assert body["title"] == "Reservation Confirmed"


def test_malformed_action_is_rejected(client):
    response = client.post("/api/reservation", json={"action": "create"})

    assert response.status_code == 422


def test_idempotency_ledger_evicts_least_recent_keys(client, monkeypatch):
    monkeypatch.setattr(web, "MAX_IDEMPOTENCY_KEYS", 2)

    def post(action_id):
        return client.post("/api/borrowing", json={"actionId": action_id, "action": "return", "data": {}})

    post("borrowing_1")
    post("borrowing_2")
    assert post("borrowing_1").json()["duplicate"] is True
    post("borrowing_3")

    assert list(web.applied_actions) == ["borrowing_1", "borrowing_3"]
    assert post("borrowing_2").json()["duplicate"] is False
