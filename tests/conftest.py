"""
Pytest configuration and shared fixtures.

Test environment variables are set here, before any chatapp import, so the
cached settings pick them up: a throwaway SQLite file and a temporary
directory for object storage.
"""

import os
import shutil
import tempfile

import pytest

_TEST_DIR = tempfile.mkdtemp(prefix="chatapp-tests-")

os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_DIR, 'test.db')}"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["PUBLIC_API_KEY"] = "test-public-key"
os.environ["STORAGE_BACKEND"] = "local"
os.environ["STORAGE_ROOT"] = os.path.join(_TEST_DIR, "objects")
os.environ["PUBLIC_URL"] = ""

# Clear settings cache before any app imports to ensure test env vars are used
from chatapp.config import get_settings  # noqa: E402

get_settings.cache_clear()

from fastapi.testclient import TestClient  # noqa: E402

from chatapp.main import app  # noqa: E402
from chatapp.storage import Base, engine  # noqa: E402

API_KEY = os.environ["PUBLIC_API_KEY"]


@pytest.fixture
def api_key() -> str:
    return API_KEY


@pytest.fixture
def storage_root() -> str:
    return os.environ["STORAGE_ROOT"]


@pytest.fixture(scope="function")
def client(storage_root):
    """Create test client with fresh database and empty object storage for each test."""
    Base.metadata.create_all(bind=engine)

    with TestClient(app) as test_client:
        yield test_client

    Base.metadata.drop_all(bind=engine)
    shutil.rmtree(storage_root, ignore_errors=True)


@pytest.fixture
def make_user(client):
    """
    Factory that signs a user up and returns
    {"user_id", "token", "headers", "username", "display_name"}.
    """
    def _make_user(username: str, display_name: str = None, password: str = "secret123"):
        display_name = display_name or username.capitalize()
        response = client.post(
            "/auth/signup",
            json={
                "email": f"{username}@example.com",
                "password": password,
                "username": username,
                "display_name": display_name,
            },
            headers={"apikey": API_KEY},
        )
        assert response.status_code == 201, response.text
        body = response.json()
        return {
            "user_id": body["user_id"],
            "token": body["access_token"],
            "headers": {"apikey": API_KEY, "Authorization": f"Bearer {body['access_token']}"},
            "username": username,
            "display_name": display_name,
        }

    return _make_user


@pytest.fixture
def alice(make_user):
    return make_user("alice", "Alice")


@pytest.fixture
def bob(make_user):
    return make_user("bob", "Bob")


@pytest.fixture
def carol(make_user):
    return make_user("carol", "Carol")


@pytest.fixture
def direct_chat(client, alice, bob):
    """A one-to-one conversation created by alice with bob."""
    response = client.post("/conversations/direct", json={"user_id": bob["user_id"]}, headers=alice["headers"])
    assert response.status_code == 201, response.text
    return response.json()


def feed_url(user) -> str:
    return f"/realtime?token={user['token']}&apikey={API_KEY}"


@pytest.fixture
def realtime_url():
    return feed_url
