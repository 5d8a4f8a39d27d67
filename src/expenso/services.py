"""
Explicit service container.

One Services instance wires the store, repository, monitor, adapter, engine
and scheduler for the configured user. Consumers (API, CLI, scripts) receive
it by reference instead of reaching for module-level singletons.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from expenso.config import Settings, get_settings
from expenso.db.engine import get_engine, init_db
from expenso.ledger.repository import EntityRepository
from expenso.remote.adapter import RemoteAdapter
from expenso.scheduler.jobs import build_scheduler, register_sync_jobs
from expenso.storage.durable_store import DurableStore
from expenso.storage.queue import OperationQueue
from expenso.sync.connectivity import ConnectivityMonitor, Probe, socket_probe
from expenso.sync.engine import SyncEngine
from expenso.sync.events import EventBus

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    store: DurableStore
    queue: OperationQueue
    bus: EventBus
    repository: EntityRepository
    monitor: ConnectivityMonitor
    adapter: RemoteAdapter
    scheduler: AsyncIOScheduler
    engine: SyncEngine
    started: bool = False

    async def start(self) -> None:
        """Start the scheduler, connectivity polling and the sync engine."""
        if self.started:
            return
        register_sync_jobs(self.scheduler, self.engine, self.settings)
        self.monitor.start(self.scheduler, self.settings.connectivity_poll_seconds)
        self.scheduler.start()
        await self.engine.start()
        self.started = True
        logger.info(
            "Services started (periodic sync every %ds)", self.settings.sync_interval_seconds
        )

    async def stop(self) -> None:
        if not self.started:
            return
        await self.engine.stop()
        self.monitor.stop()
        self.scheduler.shutdown(wait=False)
        self.started = False
        logger.info("Services stopped")


def build_services(
    settings: Optional[Settings] = None,
    adapter: Optional[RemoteAdapter] = None,
    probe: Optional[Probe] = None,
    db_engine=None,
) -> Services:
    """
    Wire every service for the configured user.

    Args:
        settings: Defaults to get_settings().
        adapter: RemoteAdapter to sync through. Defaults to GoogleSheetsAdapter.
        probe: Reachability probe. Defaults to the configured socket probe.
        db_engine: SQLAlchemy engine. Defaults to the module-level engine.
    """
    settings = settings or get_settings()
    if db_engine is None:
        db_engine = get_engine()
    else:
        init_db(db_engine)

    if adapter is None:
        from expenso.remote.credentials import GoogleTokenStore
        from expenso.remote.sheets import GoogleSheetsAdapter

        adapter = GoogleSheetsAdapter(GoogleTokenStore(settings.google_token_file))

    store = DurableStore(db_engine).for_user(settings.user_email)
    queue = OperationQueue(store)
    bus = EventBus()
    repository = EntityRepository(queue, bus, owner_id=settings.user_email)
    if probe is None:
        probe = socket_probe(
            settings.connectivity_host,
            settings.connectivity_port,
            settings.connectivity_timeout_seconds,
        )
    monitor = ConnectivityMonitor(probe)
    scheduler = build_scheduler()
    engine = SyncEngine(
        queue,
        repository,
        adapter,
        monitor,
        bus,
        scheduler=scheduler,
        settings=settings,
        owner_id=settings.user_email,
        db_engine=db_engine,
    )
    repository.sync_engine = engine

    return Services(
        settings=settings,
        store=store,
        queue=queue,
        bus=bus,
        repository=repository,
        monitor=monitor,
        adapter=adapter,
        scheduler=scheduler,
        engine=engine,
    )
