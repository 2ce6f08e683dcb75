"""
Shared fixtures: a throwaway SQLite database per test, plus the app wired to it.
"""
import pytest
from fastapi.testclient import TestClient

from config import get_settings
from notifier import EventNotifier
from orders import OrderRepository
from storage import DocumentStore, create_engine, create_session_factory, init_db

MANAGER_SECRET = "let-me-cook"
STORE_KEY = "test_orders"


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}"


@pytest.fixture
async def sessions(database_url):
    engine = create_engine(database_url)
    await init_db(engine)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def store(sessions):
    return DocumentStore(sessions, STORE_KEY)


@pytest.fixture
def notifier(sessions):
    return EventNotifier(sessions, STORE_KEY)


@pytest.fixture
def repo(store):
    return OrderRepository(store)


@pytest.fixture
def app_env(monkeypatch, database_url):
    """
    Point the app at the test database.

    Settings are cached, so the cache is cleared on the way in and out to
    keep environments from leaking between tests.
    """
    monkeypatch.setenv("DATABASE_URL", database_url)
    monkeypatch.setenv("MANAGER_SECRET", MANAGER_SECRET)
    monkeypatch.setenv("STREAM_POLL_SECONDS", "0.01")
    monkeypatch.setenv("STREAM_HEARTBEAT_SECONDS", "0.02")
    monkeypatch.setenv("STREAM_MAX_SECONDS", "0.1")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def client(app_env):
    from app import app

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def manager_headers():
    return {"X-Manager-Key": MANAGER_SECRET}
