import pytest
from fastapi.testclient import TestClient

from hallcall import db as db_module
from hallcall.db import InMemoryDB


VENDOR_ENV = (
    "SUPABASE_URL", "SUPABASE_SERVICE_ROLE_KEY", "ELEVENLABS_API_KEY",
    "TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN", "TWILIO_PHONE_NUMBER", "TWILIO_SMS_PHONE_NUMBER",
    "RESEND_API_KEY", "GOOGLE_CLIENT_ID", "GOOGLE_CLIENT_SECRET",
    "MICROSOFT_CLIENT_ID", "MICROSOFT_CLIENT_SECRET",
)


@pytest.fixture(autouse=True)
def store(monkeypatch):
    """Fresh in-memory store and a clean vendor environment for every test."""
    for name in VENDOR_ENV:
        monkeypatch.delenv(name, raising=False)
    memory = InMemoryDB()
    monkeypatch.setattr(db_module, "_db_instance", memory)
    return memory


@pytest.fixture
def client():
    from hallcall.main import app
    return TestClient(app)


@pytest.fixture
def user(store):
    return store.create_user("owner@example.com", "secret123", "Owner")


@pytest.fixture
def auth_headers(store, user):
    return {"Authorization": f"Bearer {store.issue_token(user['id'])}"}


@pytest.fixture
def other_headers(store):
    other = store.create_user("intruder@example.com", "secret123")
    return {"Authorization": f"Bearer {store.issue_token(other['id'])}"}


@pytest.fixture
def agent(store, user):
    return store.insert("agents", {
        "user_id": user["id"],
        "elevenlabs_agent_id": "agent_abc",
        "name": "Accueil",
        "language": "fr",
    })


@pytest.fixture
def voice_env(monkeypatch):
    monkeypatch.setenv("ELEVENLABS_API_KEY", "xi-test")


@pytest.fixture
def twilio_env(monkeypatch):
    monkeypatch.setenv("TWILIO_ACCOUNT_SID", "AC123")
    monkeypatch.setenv("TWILIO_AUTH_TOKEN", "token")
    monkeypatch.setenv("TWILIO_PHONE_NUMBER", "+33100000000")
