"""
Pytest fixtures for session gateway tests.
"""

import asyncio

import pytest
import pytest_asyncio
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from whatsapp_sessions.adapters.stub import CREDS_FILE, StubConnectionAdapter
from whatsapp_sessions.keys import SessionKey
from whatsapp_sessions.manager import InstanceManager
from whatsapp_sessions.persistence.repo import SessionStore
from whatsapp_sessions.supervisor import ReconnectPolicy


def fake_qr_renderer(payload: str) -> str:
    return f"data:image/png;base64,QR[{payload}]"


async def _wait_until(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture
def wait_until():
    """Poll a predicate until it holds (fails the test after a timeout)."""
    return _wait_until


@pytest.fixture
def session_factory():
    """Sessionmaker bound to a private in-memory SQLite database."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    yield sessionmaker(autoflush=False, expire_on_commit=False, bind=engine)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    store = SessionStore(session_factory)
    store.create_schema()
    return store


@pytest.fixture
def adapter():
    return StubConnectionAdapter()


@pytest.fixture
def fast_policy():
    """Reconnect almost immediately, give up after 5 attempts."""
    return ReconnectPolicy(delay=0.01, backoff_factor=1.0, max_delay=0.05, max_attempts=5)


@pytest.fixture
def sessions_dir(tmp_path):
    return tmp_path / "sessions"


@pytest_asyncio.fixture
async def make_manager(store, adapter, sessions_dir, fast_policy):
    """Factory for managers over the shared store; all are shut down after the test."""
    created: list[InstanceManager] = []

    def make(**overrides) -> InstanceManager:
        options = {
            "store": store,
            "adapter": adapter,
            "sessions_dir": sessions_dir,
            "policy": fast_policy,
            "pairing_timeout": 1.0,
            "qr_renderer": fake_qr_renderer,
        }
        options.update(overrides)
        manager = InstanceManager(**options)
        created.append(manager)
        return manager

    yield make
    for manager in created:
        await manager.shutdown()


@pytest.fixture
def manager(make_manager):
    return make_manager()


@pytest.fixture
def pair_session(manager, adapter, wait_until):
    """
    Create a session for a tenant and scan its QR code.

    Returns the session key and the stub transport once the session is
    connected and its credentials are on disk.
    """

    async def pair(token: str = "t1"):
        result = await manager.create_or_resume_session(token)
        key = SessionKey(token, result.instance_id)
        credential_dir = manager.lifecycle.credential_dir(key)
        transport = adapter.latest(credential_dir)
        transport.simulate_scan()

        await wait_until(lambda: manager.registry.get(key) is not None and manager.registry.get(key).connected)
        await wait_until(lambda: (credential_dir / CREDS_FILE).exists())
        return key, transport

    return pair
