"""
Requeue script: push every local-only sheet back onto the sync queue.

Usage:
    python -m expenso.scripts.requeue
    python -m expenso.scripts.requeue --sheet <sheet id> --no-sync

For each sheet without a remote container (or whose last sync failed),
queues container creation plus a create operation for every unsynced
transaction that has no outstanding operation, then runs one manual sync.
Sheets that are fully synced are skipped.
"""
import argparse
import asyncio
import logging
from typing import Optional

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)


async def _requeue(sheet_id: Optional[str] = None, run_sync: bool = True) -> int:
    from expenso.services import build_services

    services = build_services()
    repository = services.repository

    if sheet_id:
        sheets = [s for s in repository.list_sheets() if s.id == sheet_id]
        if not sheets:
            logger.error("Sheet %s not found", sheet_id)
            return 0
    else:
        sheets = repository.get_local_sheets()

    total_queued = 0
    for sheet in sheets:
        queued = repository.requeue_sheet(sheet.id)
        logger.info("Sheet %s (%s): queued %d operation(s)", sheet.id, sheet.name, queued)
        total_queued += queued

    logger.info("Requeue complete. Sheets: %d, operations queued: %d", len(sheets), total_queued)

    if run_sync and total_queued:
        await services.monitor.refresh()
        result = await services.engine.manual_sync()
        logger.info("Sync: %s", result.message)

    return total_queued


def main() -> None:
    parser = argparse.ArgumentParser(description="Requeue unsynced sheets")
    parser.add_argument("--sheet", help="Only requeue this sheet id")
    parser.add_argument(
        "--no-sync",
        action="store_true",
        help="Queue operations without running a sync cycle",
    )
    args = parser.parse_args()
    asyncio.run(_requeue(args.sheet, run_sync=not args.no_sync))


if __name__ == "__main__":
    main()
