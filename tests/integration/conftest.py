"""
Pytest configuration for gateway integration tests.

The app runs against an in-memory SQLite database and the stub adapter.
"""

import time

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from whatsapp_gateway.main import create_app
from whatsapp_sessions.adapters.stub import StubConnectionAdapter
from whatsapp_sessions.manager import InstanceManager
from whatsapp_sessions.persistence.repo import SessionStore
from whatsapp_sessions.supervisor import ReconnectPolicy


@pytest.fixture
def store():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    yield SessionStore(sessionmaker(autoflush=False, expire_on_commit=False, bind=engine))
    engine.dispose()


@pytest.fixture
def adapter():
    return StubConnectionAdapter()


@pytest.fixture
def manager(store, adapter, tmp_path):
    return InstanceManager(
        store=store,
        adapter=adapter,
        sessions_dir=tmp_path / "sessions",
        policy=ReconnectPolicy(delay=0.01, max_attempts=3),
        pairing_timeout=2.0,
        qr_renderer=lambda payload: f"data:image/png;base64,QR[{payload}]",
    )


@pytest.fixture
def client(manager):
    app = create_app(manager=manager, restore_on_startup=False)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def wait_for():
    """Poll a predicate from the test thread while the app loop runs."""

    def wait(predicate, timeout: float = 2.0):
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                raise AssertionError("condition not met in time")
            time.sleep(0.01)

    return wait
