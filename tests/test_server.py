import time

import pytest
from fastapi.testclient import TestClient

from mail_outbox import core
from mail_outbox.api import API_TOKEN_HEADER_NAME
from mail_outbox.config_loader import SettingsMonitor
from mail_outbox.server import build_app, build_outbox


class DummyTransport:
    sent = []

    def __init__(self, settings):
        self.settings = settings

    async def connect(self, host, port, security):
        pass

    async def authenticate(self, username, password):
        pass

    async def send(self, message, sender):
        DummyTransport.sent.append((message.id, self.settings.host, sender))

    async def disconnect(self):
        pass

    def close(self):
        pass


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    for name in ("OUTBOX_CONFIG", "OUTBOX_DB_PATH", "OUTBOX_API_TOKEN"):
        monkeypatch.delenv(name, raising=False)
    path = tmp_path / "config.ini"
    path.write_text(
        f"""
[storage]
db_path = {tmp_path / 'outbox.db'}

[server]
api_token = token
shutdown_timeout = 2

[smtp]
host = smtp.example.com
sender = noreply@example.com

[delivery]
delay_on_error = 0
"""
    )
    return path


def test_build_outbox_reads_configuration(config_file, tmp_path):
    outbox, api_token = build_outbox(config_file)
    assert api_token == "token"
    assert outbox.persistence.db_path == str(tmp_path / "outbox.db")
    assert isinstance(outbox._settings, SettingsMonitor)
    assert outbox.settings.host == "smtp.example.com"


def test_application_lifespan_runs_delivery(config_file, monkeypatch):
    DummyTransport.sent = []
    monkeypatch.setattr(core, "default_transport_factory", DummyTransport)
    app = build_app(config_file)

    with TestClient(app) as client:
        client.headers.update({API_TOKEN_HEADER_NAME: "token"})
        assert client.get("/status").json()["running"] is True

        msg_id = client.post(
            "/messages", json={"recipient": "dest@example.com", "subject": "Hi", "body": "Body"}
        ).json()["id"]

        deadline = time.monotonic() + 3
        while client.get(f"/messages/{msg_id}").json()["status"] != "sent":
            assert time.monotonic() < deadline, "message was not delivered"
            time.sleep(0.02)

    assert DummyTransport.sent == [(msg_id, "smtp.example.com", "noreply@example.com")]
