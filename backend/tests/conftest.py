"""Shared test fixtures and configuration for backend tests."""
import pytest
from fastapi.testclient import TestClient

from chatrelay.auth.service import TokenService
from chatrelay.config import AppSettings, JWTSecrets, Secrets, set_config
from chatrelay.main import app
from chatrelay.services import Services, set_services
from chatrelay.storage.service import ChatStore

TEST_SECRET = "test-secret-key"


class FakeWebSocket:
    """Stand-in transport that records frames sent to it."""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail
        self.close_code = None

    async def send_json(self, frame):
        if self.fail:
            raise RuntimeError("connection reset")
        self.sent.append(frame)

    async def close(self, code=1000):
        self.close_code = code

    def events(self, name=None):
        return [f for f in self.sent if name is None or f["event"] == name]


@pytest.fixture
def config():
    """Process-wide settings with a known JWT secret."""
    settings = AppSettings(secrets=Secrets(jwt=JWTSecrets(secret_key=TEST_SECRET)))
    set_config(settings)
    yield settings
    set_config(None)


@pytest.fixture
def store():
    """In-memory store, separate from the process singleton."""
    chat_store = ChatStore(db_path=":memory:")
    yield chat_store
    chat_store.close()


@pytest.fixture
def services(config, store):
    """Fresh messaging services installed as the global container."""
    container = Services(store, config=config)
    set_services(container)
    yield container
    set_services(None)


@pytest.fixture
def tokens(config):
    return TokenService.from_config(config)


@pytest.fixture
def auth_headers(tokens):
    """Build an ``Authorization`` header for a user id."""
    def _headers(user_id):
        return {"Authorization": f"Bearer {tokens.create_access_token(user_id)}"}
    return _headers


@pytest.fixture
def api_client(services):
    """TestClient running the app lifespan against the test services.

    Used as a context manager so HTTP requests and WebSocket sessions share
    one event loop, which real-time fan-out from REST handlers relies on.
    """
    with TestClient(app) as client:
        yield client


@pytest.fixture
def connect(services):
    """Register a fake connection for a user in the test registry."""
    def _connect(user_id, fail=False):
        websocket = FakeWebSocket(fail=fail)
        connection = services.registry.register(websocket, user_id)
        return connection, websocket
    return _connect


@pytest.fixture
def fake_websocket():
    """Factory for recording transports."""
    return FakeWebSocket
