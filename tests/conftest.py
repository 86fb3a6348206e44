"""Pytest configuration and shared fixtures."""

import sys
import asyncio
import inspect
from pathlib import Path

import pytest

# Ensure src directory is in Python path for all tests
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from todo_sync.config import Config
from todo_sync.repository import TaskRepository
from todo_sync.sync.engine import SyncEngine
from todo_sync.sync.gateway import InMemoryBackend, InMemoryRemoteGateway
from todo_sync.sync.local_store import LocalStore
from todo_sync.sync.settings import SyncSettings


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem):
    """Execute async tests without external plugins."""
    testfunction = pyfuncitem.obj
    if inspect.iscoroutinefunction(testfunction):
        loop = asyncio.new_event_loop()
        try:
            asyncio.set_event_loop(loop)
            sig = inspect.signature(testfunction)
            call_kwargs = {name: pyfuncitem.funcargs[name] for name in sig.parameters}
            loop.run_until_complete(testfunction(**call_kwargs))
        finally:
            asyncio.set_event_loop(None)
            loop.close()
        return True
    return None


class Client:
    """One simulated device: its own store, queue, engine and repository."""

    def __init__(self, backend: InMemoryBackend, client_id: str, user_id: str = "user-1",
                 settings: SyncSettings = None):
        self.store = LocalStore()
        self.gateway = InMemoryRemoteGateway(backend, client_id, user_id=user_id)
        self.engine = SyncEngine(
            self.store,
            self.gateway,
            settings or SyncSettings(sync_on_mutation=False),
            user_id=user_id,
        )
        self.repo = TaskRepository(self.store, user_id, engine=self.engine)

    @property
    def queue(self):
        return self.engine.queue

    async def sync(self):
        return await self.engine.run("test")


@pytest.fixture
def store():
    store = LocalStore()
    yield store
    store.close()


@pytest.fixture
def backend():
    return InMemoryBackend()


@pytest.fixture
def make_client(backend):
    """Factory for clients sharing the ``backend`` fixture."""
    clients = []

    def factory(client_id: str = "client-a", **kwargs) -> Client:
        client = Client(backend, client_id, **kwargs)
        clients.append(client)
        return client

    yield factory
    for client in clients:
        client.store.close()


@pytest.fixture
def sync_home(tmp_path, monkeypatch):
    """Isolated data directory for config and database files."""
    home = tmp_path / "home"
    monkeypatch.setenv("TODO_SYNC_HOME", str(home))
    for var in ("SUPABASE_URL", "SUPABASE_ANON_KEY", "SUPABASE_ACCESS_TOKEN"):
        monkeypatch.delenv(var, raising=False)
    Config._instance = None
    yield home
    Config._instance = None
