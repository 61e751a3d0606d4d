"""Shared test fixtures and configuration for backend tests."""
import pytest
from fastapi.testclient import TestClient

from safelease.config import AppConfig, ChatSettings, set_config

# Install a file-free configuration before the app module reads it.
set_config(AppConfig(chat=ChatSettings(db_path=":memory:")))

from safelease.auth.service import create_access_token  # noqa: E402
from safelease.chat.manager import manager  # noqa: E402
from safelease.chat.store import MessageStore  # noqa: E402
from safelease.main import app  # noqa: E402
from safelease.users.service import UserDirectory  # noqa: E402


@pytest.fixture(autouse=True)
def chat_db():
    """Use in-memory stores and a clean connection manager for each test."""
    MessageStore.reset_instance()
    UserDirectory.reset_instance()
    MessageStore.get_instance(db_path=":memory:")
    UserDirectory.get_instance(db_path=":memory:")
    manager.clear()
    yield
    manager.clear()
    MessageStore.reset_instance()
    UserDirectory.reset_instance()


@pytest.fixture
def users():
    """Seed three users: a tenant, a landlord and an unrelated third user."""
    directory = UserDirectory.get_instance()
    return {
        "u1": directory.upsert_user("u1", "Alice Tenant", "https://img.example/alice.png"),
        "u2": directory.upsert_user("u2", "Bob Landlord"),
        "u3": directory.upsert_user("u3", "Carol Tenant"),
    }


@pytest.fixture
def tokens(users):
    """Valid access tokens for the seeded users."""
    return {user_id: create_access_token(user_id) for user_id in users}


@pytest.fixture
def api_client():
    """Provide a TestClient for the main FastAPI app.

    Entered as a context manager so every WebSocket in a test shares one
    event loop, as connections do in a real server process.
    """
    with TestClient(app) as client:
        yield client
