"""
APScheduler jobs for background sync.

The periodic sync catches anything the event-driven triggers missed (an
enqueue while offline with no later transition, a lost backoff job after a
restart). Debounced and backoff cycles are one-shot jobs added by the
SyncEngine itself on the same scheduler.

The scheduler runs inside the same process as the API (wired in services.py).
"""
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from expenso.config import get_settings

logger = logging.getLogger(__name__)

PERIODIC_SYNC_JOB = "periodic_sync"


def build_scheduler() -> AsyncIOScheduler:
    """Create the APScheduler (not yet started)."""
    return AsyncIOScheduler(job_defaults={"coalesce": True, "max_instances": 1})


def register_sync_jobs(scheduler: AsyncIOScheduler, engine, settings=None) -> None:
    """
    Register the periodic sync job.

    Args:
        scheduler: Scheduler to add the job to.
        engine: SyncEngine whose cycle the job runs.
        settings: Defaults to get_settings().
    """
    settings = settings or get_settings()
    scheduler.add_job(
        _periodic_sync,
        trigger="interval",
        seconds=settings.sync_interval_seconds,
        id=PERIODIC_SYNC_JOB,
        replace_existing=True,
        kwargs={"engine": engine},
    )


async def _periodic_sync(engine) -> None:
    """
    Periodic job: run a cycle when online and idle.

    Never raises, so the scheduler stays alive.
    """
    if not engine.monitor.is_online() or engine.is_syncing:
        return
    try:
        await engine.sync_all()
    except Exception as exc:
        logger.error("Periodic sync failed: %s", exc)
