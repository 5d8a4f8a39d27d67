"""
EntityRepository — canonical local copies of sheets, transactions and
categories for one user.

Every mutation follows the same steps:
  1. validate input (raises ValidationError / DuplicateNameError /
     ProtectedEntityError / NotFoundError before touching state);
  2. commit the change to the in-memory copy and write it through to the
     DurableStore;
  3. enqueue the matching sync operation and emit `operation_queued`;
  4. return a MutationResult without waiting for the network.

The repository is the only writer of the denormalized sync flags on sheets
and transactions. The SyncEngine calls mark_sheet_synced /
mark_transaction_synced / update_sheet_sync_status after each remote success
or failure so those flags track the queue state.
"""
import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from expenso.errors import (
    DuplicateNameError,
    NotFoundError,
    ProtectedEntityError,
    ValidationError,
)
from expenso.models.ledger import (
    CATEGORY_NAME_MAX_LENGTH,
    DEFAULT_CATEGORY,
    Sheet,
    SheetTotals,
    SyncStatus,
    Transaction,
    TransactionKind,
    utc_now,
)
from expenso.models.operations import OperationType, PendingKind
from expenso.storage.queue import OperationQueue
from expenso.sync.events import EventBus, SyncEventType

logger = logging.getLogger(__name__)

SHEETS_KEY = "expense_sheets"
CATEGORIES_KEY = "categories"

_UPDATABLE_FIELDS = {"amount", "purpose", "category", "kind"}


@dataclass
class MutationResult:
    """Outcome of a successful local mutation.

    operation_id is None when the sync operation could not be persisted,
    which callers must treat as "not queued" rather than "queued, not synced".
    """

    entity: Any = None
    operation_id: Optional[str] = None
    persisted: bool = True
    message: str = ""

    @property
    def queued(self) -> bool:
        return self.operation_id is not None


class EntityRepository:
    def __init__(self, queue: OperationQueue, bus: EventBus, *, owner_id: str = ""):
        """
        Args:
            queue: OperationQueue over the user-scoped DurableStore.
            bus: EventBus that receives `operation_queued` events.
            owner_id: Current user identifier, recorded on container operations.
        """
        self.queue = queue
        self.store = queue.store
        self.bus = bus
        self.owner_id = owner_id
        # Attached by build_services; used by force_sheet_sync only
        self.sync_engine = None
        self._sheets: Optional[List[Sheet]] = None
        self._sheets_loaded = False
        self._categories: Optional[List[str]] = None
        self._categories_loaded = False

    # ── Sheets ────────────────────────────────────────────────────────────────

    def list_sheets(self) -> List[Sheet]:
        return [s.model_copy(deep=True) for s in self._all_sheets()]

    def get_sheet(self, sheet_id: str) -> Optional[Sheet]:
        sheet = self._find_sheet(sheet_id)
        return sheet.model_copy(deep=True) if sheet else None

    def create_sheet(self, name: str) -> MutationResult:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Sheet name is required")
        if any(s.name.lower() == name.lower() for s in self._all_sheets()):
            raise DuplicateNameError(f'Sheet "{name}" already exists')

        sheet = Sheet(id=uuid.uuid4().hex, name=name)
        self._all_sheets().append(sheet)
        persisted = self._save_sheets()

        op_id = self._enqueue(
            OperationType.CREATE_SHEET.value,
            {"sheet_id": sheet.id, "sheet_name": sheet.name, "owner": self.owner_id},
        )
        logger.info("Sheet %s (%s) created locally", sheet.id, sheet.name)
        return MutationResult(
            entity=sheet.model_copy(deep=True),
            operation_id=op_id,
            persisted=persisted,
            message="Sheet created locally. Syncing to remote store...",
        )

    def update_sheet_sync_status(
        self, sheet_id: str, status: SyncStatus, remote_id: Optional[str] = None
    ) -> bool:
        sheet = self._find_sheet(sheet_id)
        if sheet is None:
            return False
        if remote_id:
            sheet.remote_id = remote_id
        sheet.sync_status = status
        if status == SyncStatus.SYNCED:
            if not sheet.remote_id:
                raise ValueError(f"Sheet {sheet_id} cannot be marked synced without a remote id")
            sheet.synced = True
            sheet.last_synced = utc_now()
        logger.debug("Sheet %s sync status -> %s", sheet_id, status.value)
        return self._save_sheets()

    def mark_sheet_synced(self, sheet_id: str, remote_id: str) -> bool:
        return self.update_sheet_sync_status(sheet_id, SyncStatus.SYNCED, remote_id=remote_id)

    def get_local_sheets(self) -> List[Sheet]:
        """Sheets that have not reached the remote store yet."""
        return [s for s in self.list_sheets() if not s.remote_id or not s.synced]

    # ── Transactions ──────────────────────────────────────────────────────────

    def list_transactions(self, sheet_id: str) -> List[Transaction]:
        return list(self._require_sheet(sheet_id).model_copy(deep=True).transactions)

    def add_transaction(
        self,
        sheet_id: str,
        amount: Any,
        purpose: str,
        kind: Any,
        category: Optional[str] = None,
    ) -> MutationResult:
        sheet = self._require_sheet(sheet_id)
        transaction = Transaction(
            id=uuid.uuid4().hex,
            sheet_id=sheet.id,
            amount=_validate_amount(amount),
            purpose=_validate_purpose(purpose),
            category=_normalize_category(category),
            kind=_validate_kind(kind),
        )

        sheet.transactions.insert(0, transaction)
        sheet.last_modified = utc_now()
        persisted = self._save_sheets()

        if not sheet.remote_id:
            logger.warning(
                "Sheet %s not yet synced; transaction %s will sync once it is",
                sheet.id,
                transaction.id,
            )
        op_id = self._add_pending(PendingKind.CREATE, sheet, transaction)
        return MutationResult(
            entity=transaction.model_copy(deep=True),
            operation_id=op_id,
            persisted=persisted,
            message=(
                "Transaction added. Syncing to remote store..."
                if sheet.remote_id
                else "Transaction added locally. Will sync when sheet is ready."
            ),
        )

    def update_transaction(
        self, sheet_id: str, transaction_id: str, **updates: Any
    ) -> MutationResult:
        sheet = self._require_sheet(sheet_id)
        transaction = sheet.find_transaction(transaction_id)
        if transaction is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")

        unknown = set(updates) - _UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update field(s): {', '.join(sorted(unknown))}")

        changes: Dict[str, Any] = {}
        if "amount" in updates:
            changes["amount"] = _validate_amount(updates["amount"])
        if "purpose" in updates:
            changes["purpose"] = _validate_purpose(updates["purpose"])
        if "category" in updates:
            changes["category"] = _normalize_category(updates["category"])
        if "kind" in updates:
            changes["kind"] = _validate_kind(updates["kind"])

        for key, value in changes.items():
            setattr(transaction, key, value)
        transaction.last_modified = utc_now()
        transaction.synced = False
        sheet.last_modified = utc_now()
        persisted = self._save_sheets()

        op_id = self._add_pending(
            PendingKind.UPDATE,
            sheet,
            transaction,
            updates={k: _jsonable(v) for k, v in changes.items()},
        )
        return MutationResult(
            entity=transaction.model_copy(deep=True),
            operation_id=op_id,
            persisted=persisted,
            message="Transaction updated. Syncing to remote store...",
        )

    def delete_transaction(self, sheet_id: str, transaction_id: str) -> MutationResult:
        sheet = self._require_sheet(sheet_id)
        transaction = sheet.find_transaction(transaction_id)
        if transaction is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")

        sheet.transactions = [t for t in sheet.transactions if t.id != transaction_id]
        sheet.last_modified = utc_now()
        persisted = self._save_sheets()

        op_id = self._add_pending(PendingKind.DELETE, sheet, transaction)
        return MutationResult(
            entity=transaction,
            operation_id=op_id,
            persisted=persisted,
            message="Transaction deleted. Syncing to remote store...",
        )

    def mark_transaction_synced(self, sheet_id: str, transaction_id: str) -> bool:
        sheet = self._find_sheet(sheet_id)
        transaction = sheet.find_transaction(transaction_id) if sheet else None
        if transaction is None:
            return False
        transaction.synced = True
        transaction.last_synced = utc_now()
        return self._save_sheets()

    def requeue_sheet(self, sheet_id: str) -> int:
        """Queue whatever this sheet still needs to reach the remote store.

        Queues container creation if the sheet has no remote id (and none is
        already queued), then a create operation for every unsynced
        transaction that has no outstanding pending operation.

        Returns:
            Number of operations queued.
        """
        sheet = self._require_sheet(sheet_id)
        queued = 0
        if not sheet.remote_id and not self._container_queued(sheet.id):
            op_id = self._enqueue(
                OperationType.CREATE_SHEET.value,
                {"sheet_id": sheet.id, "sheet_name": sheet.name, "owner": self.owner_id},
            )
            if op_id is not None:
                queued += 1

        for transaction in sheet.transactions:
            if transaction.synced or self.queue.has_unsynced_for_transaction(transaction.id):
                continue
            if self._add_pending(PendingKind.CREATE, sheet, transaction) is not None:
                queued += 1
        return queued

    async def force_sheet_sync(self, sheet_id: str) -> MutationResult:
        """Requeue everything the sheet still needs and run a manual sync."""
        queued = self.requeue_sheet(sheet_id)
        message = f"Queued {queued} operation(s)"
        if self.sync_engine is not None:
            result = await self.sync_engine.manual_sync()
            message = f"{message}. {result.message}"
        return MutationResult(entity=self.get_sheet(sheet_id), message=message)

    def retry_sheet_sync(self, sheet_id: str) -> MutationResult:
        """Re-queue container creation for a sheet whose sync failed."""
        sheet = self._require_sheet(sheet_id)
        if sheet.remote_id and sheet.synced:
            return MutationResult(entity=self.get_sheet(sheet_id), message="Sheet is already synced")

        self.update_sheet_sync_status(sheet_id, SyncStatus.SYNCING)
        op_id = None
        if not self._container_queued(sheet_id):
            op_id = self._enqueue(
                OperationType.CREATE_SHEET.value,
                {"sheet_id": sheet.id, "sheet_name": sheet.name, "owner": self.owner_id},
            )
        return MutationResult(
            entity=self.get_sheet(sheet_id),
            operation_id=op_id,
            message="Sheet sync retry queued",
        )

    # ── Categories ────────────────────────────────────────────────────────────

    def get_categories(self) -> List[str]:
        return list(self._all_categories())

    def add_category(self, name: str) -> MutationResult:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Category name is required")
        if len(name) > CATEGORY_NAME_MAX_LENGTH:
            raise ValidationError(
                f"Category name must be at most {CATEGORY_NAME_MAX_LENGTH} characters"
            )
        categories = self._all_categories()
        if any(c.lower() == name.lower() for c in categories):
            raise DuplicateNameError(f'Category "{name}" already exists')

        categories.append(name)
        persisted = self._save_categories()
        op_id = self._enqueue(
            OperationType.CREATE_CATEGORY.value,
            {"category_name": name, "owner": self.owner_id},
        )
        return MutationResult(
            entity=name,
            operation_id=op_id,
            persisted=persisted,
            message="Category added successfully.",
        )

    def delete_category(self, name: str) -> MutationResult:
        name = (name or "").strip()
        if name.lower() == DEFAULT_CATEGORY.lower():
            raise ProtectedEntityError(f"Cannot delete the {DEFAULT_CATEGORY} category")

        categories = self._all_categories()
        match = next((c for c in categories if c.lower() == name.lower()), None)
        if match is None:
            raise NotFoundError(f'Category "{name}" not found')

        categories.remove(match)
        persisted = self._save_categories()
        return MutationResult(entity=match, persisted=persisted, message="Category deleted successfully")

    # ── Aggregation / status ──────────────────────────────────────────────────

    @staticmethod
    def calculate_totals(sheet: Optional[Sheet]) -> SheetTotals:
        """Debit sum, credit sum and balance (credits - debits). Pure."""
        if sheet is None or not sheet.transactions:
            return SheetTotals()
        debit = sum(
            (t.amount for t in sheet.transactions if t.kind == TransactionKind.DEBIT),
            Decimal("0"),
        )
        credit = sum(
            (t.amount for t in sheet.transactions if t.kind == TransactionKind.CREDIT),
            Decimal("0"),
        )
        return SheetTotals(debit=debit, credit=credit, balance=credit - debit)

    def get_sheet_sync_status(self, sheet_id: str) -> Dict[str, Any]:
        sheet = self._require_sheet(sheet_id)
        return {
            "sheet_id": sheet.id,
            "sheet_name": sheet.name,
            "remote_id": sheet.remote_id,
            "synced": sheet.synced,
            "sync_status": sheet.sync_status.value,
            "last_synced": sheet.last_synced,
            "last_modified": sheet.last_modified,
            "total_transactions": len(sheet.transactions),
            "unsynced_transactions": sum(1 for t in sheet.transactions if not t.synced),
        }

    def check_all_sheets_sync_status(self) -> Dict[str, Any]:
        status: Dict[str, Any] = {
            "total": 0,
            "synced": 0,
            "local": 0,
            "syncing": 0,
            "error": 0,
            "sheets": [],
        }
        for sheet in self._all_sheets():
            status["total"] += 1
            status["sheets"].append(self.get_sheet_sync_status(sheet.id))
            if sheet.synced and sheet.remote_id:
                status["synced"] += 1
            elif sheet.sync_status == SyncStatus.SYNCING:
                status["syncing"] += 1
            elif sheet.sync_status == SyncStatus.ERROR:
                status["error"] += 1
            else:
                status["local"] += 1
        return status

    def clear_user_data(self) -> bool:
        ok = self.store.remove(SHEETS_KEY)
        ok = self.store.remove(CATEGORIES_KEY) and ok
        self._sheets = None
        self._sheets_loaded = False
        self._categories = None
        self._categories_loaded = False
        return ok

    # ── Internal helpers ──────────────────────────────────────────────────────

    def _all_sheets(self) -> List[Sheet]:
        """Cached sheets.

        Until the stored list has been read once, only sheets created in this
        session are held. They are merged into the stored list on the first
        successful read, which is retried on every access.
        """
        if not self._sheets_loaded:
            ok, raw = self.store.read(SHEETS_KEY)
            if ok:
                stored = [Sheet.model_validate(s) for s in raw] if isinstance(raw, list) else []
                known = {s.id for s in stored}
                stored.extend(s for s in self._sheets or [] if s.id not in known)
                self._sheets = stored
                self._sheets_loaded = True
            elif self._sheets is None:
                self._sheets = []
        return self._sheets

    def _find_sheet(self, sheet_id: str) -> Optional[Sheet]:
        return next((s for s in self._all_sheets() if s.id == sheet_id), None)

    def _require_sheet(self, sheet_id: str) -> Sheet:
        sheet = self._find_sheet(sheet_id)
        if sheet is None:
            raise NotFoundError(f"Sheet {sheet_id} not found")
        return sheet

    def _save_sheets(self) -> bool:
        sheets = self._all_sheets()
        if not self._sheets_loaded:
            logger.error("Sheets kept in memory only; stored sheets could not be read")
            return False
        ok = self.store.set(SHEETS_KEY, [s.model_dump(mode="json") for s in sheets])
        if not ok:
            logger.error("Sheets kept in memory only; durable write failed")
        return ok

    def _all_categories(self) -> List[str]:
        if not self._categories_loaded:
            ok, raw = self.store.read(CATEGORIES_KEY)
            if ok:
                stored = list(raw) if isinstance(raw, list) and raw else [DEFAULT_CATEGORY]
                known = {c.lower() for c in stored}
                stored.extend(c for c in self._categories or [] if c.lower() not in known)
                self._categories = stored
                self._categories_loaded = True
            elif self._categories is None:
                self._categories = [DEFAULT_CATEGORY]
        return self._categories

    def _save_categories(self) -> bool:
        categories = self._all_categories()
        if not self._categories_loaded:
            logger.error("Categories kept in memory only; stored categories could not be read")
            return False
        return self.store.set(CATEGORIES_KEY, categories)

    def _container_queued(self, sheet_id: str) -> bool:
        return any(
            op.type == OperationType.CREATE_SHEET.value and op.payload.get("sheet_id") == sheet_id
            for op in self.queue.get_sync_queue()
        )

    def _enqueue(self, op_type: str, payload: Dict[str, Any]) -> Optional[str]:
        op_id = self.queue.enqueue(op_type, payload)
        if op_id is None:
            logger.error("Failed to queue %s operation; it was not persisted", op_type)
            return None
        logger.info("Queued operation %s (%s)", op_type, op_id)
        self.bus.emit(
            SyncEventType.OPERATION_QUEUED,
            operationId=op_id,
            operationType=op_type,
            data=payload,
        )
        return op_id

    def _add_pending(
        self,
        kind: PendingKind,
        sheet: Sheet,
        transaction: Transaction,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[str]:
        payload: Dict[str, Any] = {
            "sheet_id": sheet.id,
            "transaction": transaction.model_dump(mode="json"),
        }
        if updates is not None:
            payload["updates"] = updates

        op_id = self.queue.add_pending_operation(kind, payload)
        if op_id is None:
            logger.error("Failed to queue pending %s for transaction %s", kind.value, transaction.id)
            return None
        logger.info("Queued pending %s for transaction %s (%s)", kind.value, transaction.id, op_id)
        self.bus.emit(
            SyncEventType.OPERATION_QUEUED,
            operationId=op_id,
            operationType=f"transaction_{kind.value}",
            data=payload,
        )
        return op_id


def _validate_amount(amount: Any) -> Decimal:
    if isinstance(amount, bool):
        raise ValidationError("Amount must be a number")
    try:
        value = Decimal(str(amount).strip())
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"Amount {amount!r} is not a number") from exc
    if not value.is_finite() or value <= 0:
        raise ValidationError("Amount must be greater than zero")
    return value


def _validate_purpose(purpose: Any) -> str:
    if not isinstance(purpose, str) or not purpose.strip():
        raise ValidationError("Purpose is required")
    return purpose.strip()


def _validate_kind(kind: Any) -> TransactionKind:
    try:
        return TransactionKind(kind)
    except ValueError as exc:
        raise ValidationError(f"Kind must be one of: {', '.join(k.value for k in TransactionKind)}") from exc


def _normalize_category(category: Optional[str]) -> str:
    return (category or "").strip() or DEFAULT_CATEGORY


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, TransactionKind):
        return value.value
    return value
