"""
OperationQueue — the two durable operation collections plus the last-sync
timestamp, on top of a (user-scoped) DurableStore.

Each update is a whole-document read-modify-write. All callers run on one
event loop thread and the store itself is sequential, so no lock is needed.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as SchemaError

from expenso.models.ledger import utc_now
from expenso.models.operations import (
    PendingEntityOperation,
    PendingKind,
    SyncQueueOperation,
)
from expenso.storage.durable_store import DurableStore

logger = logging.getLogger(__name__)

SYNC_QUEUE_KEY = "sync_queue"
PENDING_OPERATIONS_KEY = "pending_operations"
LAST_SYNC_TIMESTAMP_KEY = "last_sync_timestamp"

_Op = TypeVar("_Op", bound=BaseModel)


def new_operation_id() -> str:
    return uuid.uuid4().hex


@dataclass
class QueueSnapshot:
    """Operations captured once at cycle start."""

    sync_queue: List[SyncQueueOperation] = field(default_factory=list)
    pending_operations: List[PendingEntityOperation] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.sync_queue and not self.pending_operations

    def __len__(self) -> int:
        return len(self.sync_queue) + len(self.pending_operations)


class OperationQueue:
    """Durable sync queue and pending operations.

    Mutators return None/False without writing when the current document
    could not be read, so a transient store failure reads as "not queued"
    instead of replacing the collection.
    """

    def __init__(self, store: DurableStore):
        self.store = store

    # ── Sync queue ────────────────────────────────────────────────────────────

    def enqueue(self, op_type: str, payload: Dict[str, Any]) -> Optional[str]:
        """Append a SyncQueueOperation. Returns its id, or None if not persisted."""
        op = SyncQueueOperation(id=new_operation_id(), type=op_type, payload=payload)
        entries = self._read(SYNC_QUEUE_KEY, SyncQueueOperation)
        if entries is None:
            return None
        entries.append(op)
        if not self._write(SYNC_QUEUE_KEY, entries):
            return None
        return op.id

    def get_sync_queue(self) -> List[SyncQueueOperation]:
        return self._load(SYNC_QUEUE_KEY, SyncQueueOperation)

    def remove_from_sync_queue(self, operation_id: str) -> bool:
        return self._rewrite(SYNC_QUEUE_KEY, SyncQueueOperation, operation_id, remove=True)

    def update_sync_operation(self, operation_id: str, **updates: Any) -> bool:
        return self._rewrite(SYNC_QUEUE_KEY, SyncQueueOperation, operation_id, updates=updates)

    # ── Pending entity operations ─────────────────────────────────────────────

    def add_pending_operation(self, kind: PendingKind, payload: Dict[str, Any]) -> Optional[str]:
        """Append a PendingEntityOperation. Returns its id, or None if not persisted."""
        op = PendingEntityOperation(id=new_operation_id(), kind=kind, payload=payload)
        entries = self._read(PENDING_OPERATIONS_KEY, PendingEntityOperation)
        if entries is None:
            return None
        entries.append(op)
        if not self._write(PENDING_OPERATIONS_KEY, entries):
            return None
        return op.id

    def get_pending_operations(self) -> List[PendingEntityOperation]:
        return self._load(PENDING_OPERATIONS_KEY, PendingEntityOperation)

    def mark_operation_synced(self, operation_id: str) -> bool:
        return self.update_pending_operation(operation_id, synced=True, synced_at=utc_now())

    def update_pending_operation(self, operation_id: str, **updates: Any) -> bool:
        return self._rewrite(
            PENDING_OPERATIONS_KEY, PendingEntityOperation, operation_id, updates=updates
        )

    def remove_pending_operation(self, operation_id: str) -> bool:
        return self._rewrite(
            PENDING_OPERATIONS_KEY, PendingEntityOperation, operation_id, remove=True
        )

    def remove_synced_operations(self) -> bool:
        entries = self._read(PENDING_OPERATIONS_KEY, PendingEntityOperation)
        if entries is None:
            return False
        return self._write(
            PENDING_OPERATIONS_KEY,
            [e for e in entries if not (isinstance(e, PendingEntityOperation) and e.synced)],
        )

    def has_unsynced_for_transaction(
        self, transaction_id: str, exclude_id: Optional[str] = None
    ) -> bool:
        return any(
            not op.synced and op.transaction_id == transaction_id and op.id != exclude_id
            for op in self.get_pending_operations()
        )

    # ── Bulk ──────────────────────────────────────────────────────────────────

    def snapshot(self) -> QueueSnapshot:
        """The whole sync queue and the unsynced pending operations, in enqueue order."""
        return QueueSnapshot(
            sync_queue=self.get_sync_queue(),
            pending_operations=[op for op in self.get_pending_operations() if not op.synced],
        )

    def cleanup_old_operations(
        self, retention_days: int = 7, now: Optional[datetime] = None
    ) -> bool:
        """Drop entries older than the retention window, whatever their sync state.

        A collection that cannot be read is left untouched.
        """
        cutoff = (now or utc_now()) - timedelta(days=retention_days)
        ok = True
        for key, model in (
            (SYNC_QUEUE_KEY, SyncQueueOperation),
            (PENDING_OPERATIONS_KEY, PendingEntityOperation),
        ):
            entries = self._read(key, model)
            if entries is None:
                ok = False
                continue
            fresh = [e for e in entries if not isinstance(e, model) or e.enqueued_at > cutoff]
            dropped = len(entries) - len(fresh)
            if dropped:
                logger.info("Retention cleanup dropped %d %s entries older than %s", dropped, key, cutoff)
            ok = self._write(key, fresh) and ok
        return ok

    def clear(self) -> bool:
        ok = self._write(SYNC_QUEUE_KEY, [])
        ok = self._write(PENDING_OPERATIONS_KEY, []) and ok
        return self.store.remove(LAST_SYNC_TIMESTAMP_KEY) and ok

    # ── Last sync timestamp ───────────────────────────────────────────────────

    def set_last_sync_timestamp(self, when: Optional[datetime] = None) -> bool:
        return self.store.set(LAST_SYNC_TIMESTAMP_KEY, (when or utc_now()).isoformat())

    def get_last_sync_timestamp(self) -> Optional[datetime]:
        raw = self.store.get(LAST_SYNC_TIMESTAMP_KEY)
        if not raw:
            return None
        try:
            return datetime.fromisoformat(raw)
        except (TypeError, ValueError):
            logger.warning("Ignoring malformed last sync timestamp %r", raw)
            return None

    # ── Internal helpers ──────────────────────────────────────────────────────

    def _load(self, key: str, model: Type[_Op]) -> List[_Op]:
        entries = self._read(key, model) or []
        return [e for e in entries if isinstance(e, model)]

    def _read(self, key: str, model: Type[_Op]) -> Optional[List[Any]]:
        """Parsed entries in stored order, or None if the store read failed.

        Entries that fail validation stay in the list as raw dicts so that
        writing the collection back does not drop them.
        """
        ok, raw = self.store.read(key)
        if not ok:
            return None
        if not isinstance(raw, list):
            return []
        entries: List[Any] = []
        for entry in raw:
            try:
                entries.append(model.model_validate(entry))
            except SchemaError as exc:
                logger.warning("Keeping malformed %s entry as-is: %s", key, exc)
                entries.append(entry)
        return entries

    def _rewrite(
        self,
        key: str,
        model: Type[_Op],
        operation_id: str,
        *,
        updates: Optional[Dict[str, Any]] = None,
        remove: bool = False,
    ) -> bool:
        entries = self._read(key, model)
        if entries is None:
            return False
        result = []
        for entry in entries:
            if isinstance(entry, model) and entry.id == operation_id:
                if remove:
                    continue
                entry = entry.model_copy(update=updates or {})
            result.append(entry)
        return self._write(key, result)

    def _write(self, key: str, entries: List[Any]) -> bool:
        return self.store.set(
            key,
            [e.model_dump(mode="json") if isinstance(e, BaseModel) else e for e in entries],
        )
