"""
Main entrypoint.

Usage:
    python -m expenso               # same as `serve`
    python -m expenso serve         # API + background sync on port 8000
    python -m expenso sync          # run one sync cycle and exit
    python -m expenso status        # print queue sizes and last sync time
"""
import asyncio
import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


def _run_serve() -> None:
    import uvicorn

    uvicorn.run("expenso.api.main:app", host="0.0.0.0", port=8000)


async def _run_sync() -> int:
    from expenso.services import build_services

    services = build_services()
    # No scheduler here: run exactly one cycle
    services.queue.cleanup_old_operations(services.settings.retention_days)
    await services.monitor.refresh()
    result = await services.engine.manual_sync()
    if result.success:
        logger.info("%s (%d remaining)", result.message, result.remaining)
        return 0
    logger.error("Sync failed: %s", result.message)
    return 1


def _run_status() -> int:
    from expenso.services import build_services

    services = build_services()
    status = services.engine.get_sync_status()
    sheets = services.repository.check_all_sheets_sync_status()
    print(f"Queued operations:  {status['queue_size']}")
    print(f"Pending operations: {status['pending_operations']}")
    print(f"Last sync:          {status['last_sync'] or 'never'}")
    print(
        f"Sheets:             {sheets['total']} total, {sheets['synced']} synced, "
        f"{sheets['local']} local, {sheets['error']} error"
    )
    return 0


if __name__ == "__main__":
    # Dispatch on first argument: `python -m expenso [serve|sync|status]`
    command = sys.argv[1] if len(sys.argv) > 1 else "serve"
    if command == "serve":
        _run_serve()
    elif command == "sync":
        sys.exit(asyncio.run(_run_sync()))
    elif command == "status":
        sys.exit(_run_status())
    else:
        print(__doc__)
        sys.exit(2)
