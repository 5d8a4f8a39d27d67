"""
SyncEngine — drains the durable operation queues against a RemoteAdapter.

Flow for a single cycle:
  1. Offline → emit sync_skipped and stop (no state change).
  2. Snapshot the sync queue and the unsynced pending operations.
  3. Drain the sync queue (container-level operations), in enqueue order,
     one at a time with a fixed delay between remote calls.
  4. Drain the pending operations (transaction create/update/delete) the
     same way. An operation whose sheet has no remote id yet is left pending
     for a later cycle and does not count as a failure.
  5. Record the completion timestamp and a SyncLog row, emit sync_completed.

A failed operation has its retry_count bumped and a backoff cycle scheduled
(base * 2^(n-1)). On the max_retries-th failure it is dropped and
operation_failed is emitted. AuthRequiredError aborts the cycle without
consuming a retry.

Nothing raised inside a cycle escapes it: failures end up in the operation's
last_error, the event stream and the SyncLog.

Triggers (all go through the APScheduler instance, so bursts coalesce):
  * connectivity transition to online      → "online_sync" job
  * operation_queued events while online     → "debounced_sync" job
  * backoff after a failed operation         → "retry_<op id>" job
  * periodic interval (scheduler/jobs.py)    → sync_all()
  * manual_sync(), awaited by the caller
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from expenso.config import Settings, get_settings
from expenso.errors import AuthRequiredError, RetryExhaustedError
from expenso.ledger.repository import EntityRepository
from expenso.models.ledger import SyncStatus, utc_now
from expenso.models.operations import (
    OperationType,
    PendingEntityOperation,
    SyncQueueOperation,
)
from expenso.models.sync import SyncLog
from expenso.remote.adapter import RemoteAdapter, build_record
from expenso.storage.queue import OperationQueue
from expenso.sync.connectivity import ConnectivityMonitor
from expenso.sync.events import EventBus, SyncEvent, SyncEventType

logger = logging.getLogger(__name__)

DEBOUNCED_SYNC_JOB = "debounced_sync"
ONLINE_SYNC_JOB = "online_sync"

Operation = Union[SyncQueueOperation, PendingEntityOperation]


@dataclass
class SyncResult:
    """Outcome of one requested cycle, as returned to a manual caller."""

    success: bool
    message: str
    synced_items: int = 0
    remaining: int = 0


def backoff_delay(base_delay: float, retry_count: int) -> float:
    """Delay before retry attempt `retry_count` (1-based): base * 2^(n-1)."""
    return base_delay * (2 ** (retry_count - 1))


class SyncEngine:
    """Orchestrates local queue → remote store sync for one user."""

    def __init__(
        self,
        queue: OperationQueue,
        repository: EntityRepository,
        adapter: RemoteAdapter,
        monitor: ConnectivityMonitor,
        bus: EventBus,
        *,
        scheduler: Optional[AsyncIOScheduler] = None,
        settings: Optional[Settings] = None,
        owner_id: str = "",
        db_engine=None,
    ):
        """
        Args:
            queue: OperationQueue over the user-scoped DurableStore.
            repository: EntityRepository whose sync flags this engine reconciles.
            adapter: RemoteAdapter implementation (or AsyncMock in tests).
            monitor: ConnectivityMonitor gating every cycle.
            bus: EventBus receiving lifecycle events.
            scheduler: Scheduler for debounced and backoff cycles. When omitted
                       the engine creates and owns one.
            settings: Timing and retry settings. Defaults to get_settings().
            owner_id: Identifier recorded on created containers.
            db_engine: SQLAlchemy engine for SyncLog rows. Defaults to the
                       store's engine.
        """
        self.queue = queue
        self.repository = repository
        self.adapter = adapter
        self.monitor = monitor
        self.bus = bus
        self.settings = settings or get_settings()
        self.owner_id = owner_id or repository.owner_id
        self.db_engine = db_engine if db_engine is not None else queue.store.engine

        self._owns_scheduler = scheduler is None
        self.scheduler = scheduler if scheduler is not None else AsyncIOScheduler()
        self._lock = asyncio.Lock()
        self._unsubscribers: List[Callable[[], None]] = []
        self._started = False

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Prune old operations, hook up triggers and probe connectivity."""
        if self._started:
            return
        self.queue.cleanup_old_operations(self.settings.retention_days)

        self._unsubscribers.append(self.monitor.subscribe(self._on_connectivity_change))
        self._unsubscribers.append(self.bus.subscribe(self._on_event))

        if self._owns_scheduler and not self.scheduler.running:
            self.scheduler.start()
        self._started = True
        logger.info("Sync engine started")

        # A transition to online schedules the first cycle
        await self.monitor.refresh()

    async def stop(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        if self._owns_scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self._started = False
        logger.info("Sync engine stopped")

    @property
    def is_syncing(self) -> bool:
        return self._lock.locked()

    # ── Triggers ──────────────────────────────────────────────────────────────

    def schedule_sync(self, delay: float, job_id: str = DEBOUNCED_SYNC_JOB) -> None:
        """Run sync_all() after `delay` seconds. Re-scheduling a job id replaces it."""
        run_date = utc_now() + timedelta(seconds=delay)
        self.scheduler.add_job(
            self.sync_all,
            trigger="date",
            run_date=run_date,
            id=job_id,
            replace_existing=True,
            misfire_grace_time=None,
            coalesce=True,
        )
        logger.debug("Sync %r scheduled in %.1fs", job_id, delay)

    def _on_connectivity_change(self, online: bool) -> None:
        if online:
            self.schedule_sync(self.settings.online_debounce_seconds, job_id=ONLINE_SYNC_JOB)

    def _on_event(self, event: SyncEvent) -> None:
        if event.type == SyncEventType.OPERATION_QUEUED and self.monitor.is_online():
            self.schedule_sync(self.settings.enqueue_debounce_seconds)

    async def manual_sync(self) -> SyncResult:
        """Run one cycle now and report whether it succeeded."""
        self.bus.emit(SyncEventType.MANUAL_SYNC_TRIGGERED)
        if self.is_syncing:
            return SyncResult(False, "Sync already in progress")
        if not self.monitor.is_online() and not await self.monitor.refresh():
            return SyncResult(False, "No internet connection")
        return await self.sync_all()

    async def sync_all(self) -> SyncResult:
        """Run one cycle unless one is already running (then a no-op)."""
        if self._lock.locked():
            logger.debug("Sync already in progress; trigger ignored")
            return SyncResult(False, "Sync already in progress")
        async with self._lock:
            return await self._run_cycle()

    # ── Cycle ─────────────────────────────────────────────────────────────────

    async def _run_cycle(self) -> SyncResult:
        if not self.monitor.is_online():
            logger.info("Offline; sync skipped")
            self.bus.emit(SyncEventType.SYNC_SKIPPED, reason="offline")
            return SyncResult(False, "No internet connection")

        snapshot = self.queue.snapshot()
        self.bus.emit(SyncEventType.SYNC_STARTED)
        if snapshot.is_empty:
            self.bus.emit(SyncEventType.SYNC_COMPLETED, syncedItems=0, remaining=0)
            return SyncResult(True, "Nothing to sync")

        total = len(snapshot)
        logger.info(
            "Sync cycle starting: %d queued, %d pending",
            len(snapshot.sync_queue),
            len(snapshot.pending_operations),
        )
        log_id = self._create_sync_log()
        synced = 0
        current = 0

        try:
            for index, op in enumerate(snapshot.sync_queue):
                if index:
                    await asyncio.sleep(self.settings.queue_operation_delay_seconds)
                current += 1
                self._emit_progress(f"Syncing {op.type}", current, total)
                if await self._process_queue_operation(op):
                    synced += 1

            # A transaction whose earlier operation failed this cycle waits,
            # so its records reach the remote store in order.
            blocked = set()
            for index, op in enumerate(snapshot.pending_operations):
                if index:
                    await asyncio.sleep(self.settings.pending_operation_delay_seconds)
                current += 1
                self._emit_progress(f"Syncing transaction {op.kind.value}", current, total)
                if op.transaction_id in blocked:
                    logger.info("Deferring %s: earlier operation for %s failed", op.id, op.transaction_id)
                    continue
                ok = await self._process_pending_operation(op)
                if ok:
                    synced += 1
                elif ok is False and op.transaction_id:
                    blocked.add(op.transaction_id)

        except AuthRequiredError as exc:
            logger.warning("Sync aborted, re-authorization required: %s", exc)
            return self._fail_cycle(log_id, str(exc), synced)
        except Exception as exc:
            logger.exception("Sync cycle failed")
            return self._fail_cycle(log_id, str(exc), synced)

        remaining = len(self.queue.snapshot())
        self.queue.set_last_sync_timestamp()
        self._finish_sync_log(
            log_id,
            status="success" if remaining == 0 else "partial",
            items_synced=synced,
            items_remaining=remaining,
        )
        logger.info("Sync cycle finished: %d synced, %d remaining", synced, remaining)
        self.bus.emit(SyncEventType.SYNC_COMPLETED, syncedItems=synced, remaining=remaining)
        return SyncResult(True, f"Synced {synced} item(s)", synced, remaining)

    def _fail_cycle(self, log_id: Optional[int], error: str, synced: int) -> SyncResult:
        remaining = len(self.queue.snapshot())
        self._finish_sync_log(
            log_id,
            status="error",
            items_synced=synced,
            items_remaining=remaining,
            error_message=error,
        )
        self.bus.emit(SyncEventType.SYNC_FAILED, error=error)
        return SyncResult(False, error, synced, remaining)

    def _emit_progress(self, message: str, current: int, total: int) -> None:
        self.bus.emit(SyncEventType.SYNC_PROGRESS, message=message, current=current, total=total)

    # ── Sync queue operations ─────────────────────────────────────────────────

    async def _process_queue_operation(self, op: SyncQueueOperation) -> bool:
        """Dispatch one queue operation. Returns True when it was removed as done."""
        try:
            await self._dispatch_queue_operation(op)
        except AuthRequiredError as exc:
            self.queue.update_sync_operation(op.id, last_attempt_at=utc_now(), last_error=str(exc))
            self._reset_sheet_status(op)
            self.bus.emit(SyncEventType.AUTH_REQUIRED, operationId=op.id, error=str(exc))
            raise
        except Exception as exc:
            self._handle_queue_failure(op, exc)
            return False

        self.queue.remove_from_sync_queue(op.id)
        logger.info("Operation %s (%s) synced", op.id, op.type)
        return True

    async def _dispatch_queue_operation(self, op: SyncQueueOperation) -> None:
        if op.type == OperationType.CREATE_SHEET.value:
            await self._create_sheet_container(op.payload)
        elif op.type == OperationType.CREATE_CATEGORY.value:
            # Categories live in the local document only
            logger.debug("Category %r acknowledged", op.payload.get("category_name"))
        else:
            logger.warning("Dropping operation %s with unknown type %r", op.id, op.type)

    async def _create_sheet_container(self, payload: Dict[str, Any]) -> None:
        sheet_id = payload.get("sheet_id")
        sheet = self.repository.get_sheet(sheet_id) if sheet_id else None
        if sheet is None:
            logger.warning("Sheet %s no longer exists; dropping container creation", sheet_id)
            return
        if sheet.remote_id:
            if not sheet.synced:
                self.repository.mark_sheet_synced(sheet.id, sheet.remote_id)
            logger.info("Sheet %s already has container %s", sheet.id, sheet.remote_id)
            return

        self.repository.update_sheet_sync_status(sheet.id, SyncStatus.SYNCING)
        remote_id = await self.adapter.create_container(
            payload.get("sheet_name") or sheet.name,
            payload.get("owner") or self.owner_id,
        )
        # Dependent transaction operations become dispatchable from here on
        self.repository.mark_sheet_synced(sheet.id, remote_id)
        logger.info("Sheet %s linked to container %s", sheet.id, remote_id)

    def _handle_queue_failure(self, op: SyncQueueOperation, exc: Exception) -> None:
        retry_count = op.retry_count + 1
        if retry_count >= self.settings.max_retries:
            self.queue.remove_from_sync_queue(op.id)
            if op.type == OperationType.CREATE_SHEET.value:
                self.repository.update_sheet_sync_status(op.payload.get("sheet_id"), SyncStatus.ERROR)
            self._emit_exhausted(op, op.type, retry_count, exc)
            return

        self.queue.update_sync_operation(
            op.id,
            retry_count=retry_count,
            last_attempt_at=utc_now(),
            last_error=str(exc),
        )
        self._reset_sheet_status(op)
        self._schedule_retry(op, op.type, retry_count, exc)

    def _reset_sheet_status(self, op: SyncQueueOperation) -> None:
        if op.type == OperationType.CREATE_SHEET.value and op.payload.get("sheet_id"):
            self.repository.update_sheet_sync_status(op.payload["sheet_id"], SyncStatus.PENDING)

    # ── Pending entity operations ─────────────────────────────────────────────

    async def _process_pending_operation(self, op: PendingEntityOperation) -> Optional[bool]:
        """Dispatch one pending operation.

        Returns:
            True when synced, False when it failed, None when it was deferred
            because its sheet has no remote container yet.
        """
        sheet = self.repository.get_sheet(op.sheet_id) if op.sheet_id else None
        if sheet is not None and not sheet.remote_id:
            logger.info("Deferring %s: sheet %s has no remote container yet", op.id, sheet.id)
            return None

        try:
            if sheet is None:
                logger.warning("Sheet %s no longer exists; marking %s synced", op.sheet_id, op.id)
            else:
                record = build_record(
                    op.payload.get("transaction") or {},
                    sheet_name=sheet.name,
                    action=op.kind.value,
                    updates=op.payload.get("updates"),
                )
                await self.adapter.append_record(sheet.remote_id, record)
        except AuthRequiredError as exc:
            self.queue.update_pending_operation(op.id, last_attempt_at=utc_now(), last_error=str(exc))
            self.bus.emit(SyncEventType.AUTH_REQUIRED, operationId=op.id, error=str(exc))
            raise
        except Exception as exc:
            self._handle_pending_failure(op, exc)
            return False

        self.queue.mark_operation_synced(op.id)
        self._reconcile_transaction(op)
        logger.info("Pending %s %s synced", op.kind.value, op.id)
        return True

    def _reconcile_transaction(self, op: PendingEntityOperation) -> None:
        """Flag the transaction synced once none of its operations is outstanding."""
        if not op.transaction_id or not op.sheet_id:
            return
        if self.queue.has_unsynced_for_transaction(op.transaction_id, exclude_id=op.id):
            return
        self.repository.mark_transaction_synced(op.sheet_id, op.transaction_id)

    def _handle_pending_failure(self, op: PendingEntityOperation, exc: Exception) -> None:
        op_type = f"transaction_{op.kind.value}"
        retry_count = op.retry_count + 1
        if retry_count >= self.settings.max_retries:
            self.queue.remove_pending_operation(op.id)
            self._emit_exhausted(op, op_type, retry_count, exc)
            return

        self.queue.update_pending_operation(
            op.id,
            retry_count=retry_count,
            last_attempt_at=utc_now(),
            last_error=str(exc),
        )
        self._schedule_retry(op, op_type, retry_count, exc)

    # ── Retry bookkeeping ─────────────────────────────────────────────────────

    def _schedule_retry(self, op: Operation, op_type: str, retry_count: int, exc: Exception) -> None:
        delay = backoff_delay(self.settings.retry_base_delay_seconds, retry_count)
        logger.warning(
            "Operation %s (%s) failed (attempt %d/%d), retrying in %.1fs: %s",
            op.id,
            op_type,
            retry_count,
            self.settings.max_retries,
            delay,
            exc,
        )
        self.bus.emit(
            SyncEventType.OPERATION_RETRY,
            operationId=op.id,
            operationType=op_type,
            retryCount=retry_count,
            retryDelay=delay,
        )
        self.schedule_sync(delay, job_id=f"retry_{op.id}")

    def _emit_exhausted(self, op: Operation, op_type: str, retry_count: int, exc: Exception) -> None:
        exhausted = RetryExhaustedError(op.id, retry_count, str(exc))
        logger.error("%s (%s); dropped", exhausted, op_type)
        self.bus.emit(
            SyncEventType.OPERATION_FAILED,
            operationId=op.id,
            operationType=op_type,
            retryCount=retry_count,
            error=str(exc),
            code=exhausted.code,
        )

    # ── Status ────────────────────────────────────────────────────────────────

    def get_sync_status(self) -> Dict[str, Any]:
        snapshot = self.queue.snapshot()
        return {
            "is_syncing": self.is_syncing,
            "is_online": self.monitor.is_online(),
            "queue_size": len(snapshot.sync_queue),
            "pending_operations": len(snapshot.pending_operations),
            "total_unsynced": len(snapshot),
            "last_sync": self.queue.get_last_sync_timestamp(),
        }

    def has_unsynced_data(self) -> bool:
        return not self.queue.snapshot().is_empty

    def clear_all_sync_data(self) -> bool:
        ok = self.queue.clear()
        if ok:
            logger.info("All sync data cleared")
            self.bus.emit(SyncEventType.SYNC_DATA_CLEARED)
        return ok

    # ── SyncLog ───────────────────────────────────────────────────────────────

    def _create_sync_log(self) -> Optional[int]:
        log = SyncLog(namespace=self.queue.store.namespace, started_at=utc_now(), status="running")
        try:
            with Session(self.db_engine) as s:
                s.add(log)
                s.commit()
                s.refresh(log)
            return log.id
        except SQLAlchemyError as exc:
            logger.error("Failed to write sync log: %s", exc)
            return None

    def _finish_sync_log(
        self,
        log_id: Optional[int],
        *,
        status: str,
        items_synced: int = 0,
        items_remaining: int = 0,
        error_message: Optional[str] = None,
    ) -> None:
        if log_id is None:
            return
        try:
            with Session(self.db_engine) as s:
                db_log = s.get(SyncLog, log_id)
                db_log.status = status
                db_log.finished_at = utc_now()
                db_log.items_synced = items_synced
                db_log.items_remaining = items_remaining
                db_log.error_message = error_message
                s.add(db_log)
                s.commit()
        except SQLAlchemyError as exc:
            logger.error("Failed to update sync log %s: %s", log_id, exc)
