import types

import pytest
from fastapi.testclient import TestClient

from mail_outbox import api
from mail_outbox.api import API_TOKEN_HEADER_NAME, create_app
from mail_outbox.models import DeliveryRecord, MailStatus
from mail_outbox.persistence import PersistenceError


API_TOKEN = "secret-token"


class DummyService:
    def __init__(self):
        self.submitted = []
        self.list_calls = []
        self.metrics = types.SimpleNamespace(generate_latest=lambda: b"metrics-data")
        self.records = {
            "msg1": DeliveryRecord(
                id="msg1",
                recipient="dest@example.com",
                subject="Hello",
                body="Body",
                status=MailStatus.SENT,
            )
        }
        self.fail_submit = False

    def status(self):
        return {"state": "idle", "running": True, "queue_size": 2}

    async def submit(self, recipient, subject, body):
        if self.fail_submit:
            raise PersistenceError("database is locked")
        self.submitted.append((recipient, subject, body))
        return f"id-{len(self.submitted)}"

    async def list_messages(self, status=None, limit=None):
        self.list_calls.append((status, limit))
        return list(self.records.values())

    async def get_message(self, msg_id):
        return self.records.get(msg_id)

    async def stats(self):
        return {"in_progress": 0, "sent": 1, "deleted": 0}


@pytest.fixture(autouse=True)
def reset_service():
    original = api.service
    api.service = None
    try:
        yield
    finally:
        api.service = original


@pytest.fixture
def client_and_service():
    svc = DummyService()
    client = TestClient(create_app(svc, api_token=API_TOKEN))
    client.headers.update({API_TOKEN_HEADER_NAME: API_TOKEN})
    return client, svc


def test_health_needs_no_token():
    client = TestClient(create_app(DummyService(), api_token=API_TOKEN))
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_rejects_missing_token():
    client = TestClient(create_app(DummyService(), api_token=API_TOKEN))
    response = client.get("/status")
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid or missing API token"


def test_rejects_wrong_token():
    client = TestClient(create_app(DummyService(), api_token=API_TOKEN))
    response = client.get("/stats", headers={API_TOKEN_HEADER_NAME: "nope"})
    assert response.status_code == 401


def test_no_token_configured_allows_requests():
    client = TestClient(create_app(DummyService()))
    assert client.get("/status").status_code == 200


def test_returns_500_when_service_missing():
    app = create_app(DummyService(), api_token=API_TOKEN)
    api.service = None
    client = TestClient(app)
    response = client.get("/status", headers={API_TOKEN_HEADER_NAME: API_TOKEN})
    assert response.status_code == 500
    assert response.json()["detail"] == "Service not initialized"


def test_status(client_and_service):
    client, _ = client_and_service
    assert client.get("/status").json() == {"ok": True, "state": "idle", "running": True, "queue_size": 2}


def test_submit_message(client_and_service):
    client, svc = client_and_service
    response = client.post(
        "/messages", json={"recipient": "dest@example.com", "subject": "Hi", "body": "<p>Body</p>"}
    )
    assert response.status_code == 200
    assert response.json() == {"ok": True, "id": "id-1"}
    assert svc.submitted == [("dest@example.com", "Hi", "<p>Body</p>")]


def test_submit_validates_payload(client_and_service):
    client, svc = client_and_service
    response = client.post("/messages", json={"recipient": "x", "subject": "Hi", "body": "b"})
    assert response.status_code == 422
    assert svc.submitted == []


def test_submit_rejects_header_injection(client_and_service):
    client, svc = client_and_service
    response = client.post(
        "/messages",
        json={"recipient": "dest@example.com\r\nBcc: victim@example.com", "subject": "Hi", "body": "b"},
    )
    assert response.status_code == 422
    assert svc.submitted == []


def test_submit_ledger_failure_maps_to_503(client_and_service):
    client, svc = client_and_service
    svc.fail_submit = True
    response = client.post("/messages", json={"recipient": "dest@example.com", "subject": "Hi", "body": "b"})
    assert response.status_code == 503
    assert "database is locked" in response.json()["detail"]


def test_list_messages_passes_filters(client_and_service):
    client, svc = client_and_service
    response = client.get("/messages", params={"status": "sent", "limit": 10})
    data = response.json()
    assert data["ok"] is True
    assert data["messages"][0]["id"] == "msg1"
    assert data["messages"][0]["status"] == "sent"
    assert svc.list_calls == [(MailStatus.SENT, 10)]


def test_list_messages_rejects_unknown_status(client_and_service):
    client, _ = client_and_service
    assert client.get("/messages", params={"status": "bogus"}).status_code == 422


def test_get_message(client_and_service):
    client, _ = client_and_service
    assert client.get("/messages/msg1").json()["recipient"] == "dest@example.com"

    missing = client.get("/messages/nope")
    assert missing.status_code == 404
    assert missing.json()["detail"] == "Message 'nope' not found"


def test_stats_and_metrics(client_and_service):
    client, _ = client_and_service
    assert client.get("/stats").json() == {"ok": True, "counts": {"in_progress": 0, "sent": 1, "deleted": 0}}

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert metrics.content == b"metrics-data"
