"""
Pytest configuration and shared fixtures.

Each test gets its own SQLite database under tmp_path and an app whose outbound
messenger is replaced with a recorder, so no Twilio traffic is produced.
"""

import os

# Module-level app in spenly_whatsapp.main needs a DATABASE_URL at import time
os.environ.setdefault("DATABASE_URL", "sqlite:///./spenly_test.db")

import pytest
from fastapi.testclient import TestClient

from spenly_whatsapp.config import Settings, get_settings
from spenly_whatsapp.main import create_app, get_messenger
from spenly_whatsapp.storage import create_db_engine, create_session_factory, init_db
from spenly_whatsapp.utils import compute_webhook_signature

get_settings.cache_clear()

TEST_WEBHOOK_SECRET = "test-webhook-secret"
WEBHOOK_PATH = "/api/whatsapp/webhook"
WEBHOOK_URL = f"http://testserver{WEBHOOK_PATH}"


class RecordingMessenger:
    """Collects outbound replies instead of sending them."""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    def send_text(self, to_phone: str, body: str) -> str:
        if self.fail:
            raise RuntimeError("provider unavailable")
        self.sent.append((to_phone, body))
        return f"SM{len(self.sent):032d}"

    @property
    def last_text(self) -> str:
        return self.sent[-1][1]


def make_settings(tmp_path, **overrides) -> Settings:
    values = {
        "DATABASE_URL": f"sqlite:///{tmp_path}/spenly.db",
        "LOG_LEVEL": "WARNING",
        "TWILIO_WEBHOOK_VERIFY_TOKEN": TEST_WEBHOOK_SECRET,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def sign(params: dict, secret: str = TEST_WEBHOOK_SECRET, url: str = WEBHOOK_URL) -> str:
    return compute_webhook_signature(url, params, secret)


@pytest.fixture
def messenger():
    return RecordingMessenger()


@pytest.fixture
def make_client(tmp_path, messenger):
    """Factory: build a TestClient for an app with the given setting overrides."""
    clients = []

    def _make(**overrides):
        app = create_app(make_settings(tmp_path, **overrides))
        app.dependency_overrides[get_messenger] = lambda: messenger
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield _make

    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client):
    return make_client()


@pytest.fixture
def db_session(tmp_path):
    """Session bound to a fresh database, for store-level tests."""
    engine = create_db_engine(f"sqlite:///{tmp_path}/store.db")
    init_db(engine)
    session = create_session_factory(engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def send_whatsapp(client):
    """Post a signed inbound message to the webhook."""

    def _send(body: str = "", phone: str = "+15550001111", **extra):
        params = {
            "MessageSid": "SM00000000000000000000000000000001",
            "From": f"whatsapp:{phone}",
            "To": "whatsapp:+14155238886",
            "Body": body,
            "NumMedia": "0",
        }
        params.update(extra)
        return client.post(
            WEBHOOK_PATH,
            data=params,
            headers={"X-Twilio-Signature": sign(params)},
        )

    return _send


@pytest.fixture
def linked_phone(client, send_whatsapp):
    """Link +15550001111 to app account 'user-1' through the real flow."""
    response = client.post("/api/whatsapp/link-token", json={"apple_user_id": "user-1"})
    token = response.json()["token"]
    send_whatsapp(f"link_{token}")
    return "+15550001111"
