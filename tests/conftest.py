"""Shared test fixtures."""
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from expenso.models.document import StoredDocument  # noqa: F401
from expenso.models.sync import SyncLog  # noqa: F401

from expenso.config import Settings
from expenso.ledger.repository import EntityRepository
from expenso.storage import durable_store
from expenso.storage.durable_store import DurableStore
from expenso.storage.queue import OperationQueue
from expenso.sync.connectivity import ConnectivityMonitor
from expenso.sync.engine import SyncEngine
from expenso.sync.events import EventBus

USER = "tester@example.com"


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="settings")
def settings_fixture():
    """Settings with every delay zeroed so cycles run instantly."""
    return Settings(
        database_url="sqlite:///:memory:",
        user_email=USER,
        enqueue_debounce_seconds=0,
        online_debounce_seconds=0,
        retry_base_delay_seconds=5.0,
        queue_operation_delay_seconds=0,
        pending_operation_delay_seconds=0,
        _env_file=None,
    )


@pytest.fixture(name="store")
def store_fixture(engine):
    return DurableStore(engine).for_user(USER)


@pytest.fixture(name="fail_next_reads")
def fail_next_reads_fixture(monkeypatch):
    """Call with n to make the next n store sessions raise, as a locked database would."""

    def fail(times=1):
        real_session = durable_store.Session
        remaining = {"count": times}

        def session(*args, **kwargs):
            if remaining["count"]:
                remaining["count"] -= 1
                raise OperationalError("SELECT", {}, Exception("database is locked"))
            return real_session(*args, **kwargs)

        monkeypatch.setattr(durable_store, "Session", session)

    return fail


@pytest.fixture(name="queue")
def queue_fixture(store):
    return OperationQueue(store)


@pytest.fixture(name="bus")
def bus_fixture():
    return EventBus()


@pytest.fixture(name="events")
def events_fixture(bus):
    """Every event emitted on the bus, in order."""
    received = []
    bus.subscribe(received.append)
    return received


@pytest.fixture(name="repository")
def repository_fixture(queue, bus):
    return EntityRepository(queue, bus, owner_id=USER)


@pytest.fixture(name="monitor")
def monitor_fixture():
    """Monitor that starts online and probes as online."""
    return ConnectivityMonitor(AsyncMock(return_value=True), initial_state=True)


@pytest.fixture(name="adapter")
def adapter_fixture():
    adapter = AsyncMock()
    adapter.create_container = AsyncMock(return_value="remote-sheet-1")
    adapter.append_record = AsyncMock(return_value=None)
    return adapter


@pytest.fixture(name="scheduler")
def scheduler_fixture():
    """Stand-in scheduler; tests inspect add_job calls instead of waiting."""
    return MagicMock()


@pytest.fixture(name="sync_engine")
def sync_engine_fixture(queue, repository, adapter, monitor, bus, scheduler, settings, engine):
    sync_engine = SyncEngine(
        queue,
        repository,
        adapter,
        monitor,
        bus,
        scheduler=scheduler,
        settings=settings,
        owner_id=USER,
        db_engine=engine,
    )
    repository.sync_engine = sync_engine
    return sync_engine
