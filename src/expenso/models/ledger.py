"""Ledger documents: sheets, their transactions, and category constants.

These are pydantic documents, not tables. They are persisted as JSON inside
the DurableStore (one document per user holding every sheet).
"""
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

DEFAULT_CATEGORY = "Misc"
CATEGORY_NAME_MAX_LENGTH = 30


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCING = "syncing"
    SYNCED = "synced"
    ERROR = "error"


class TransactionKind(str, Enum):
    DEBIT = "debit"    # money spent
    CREDIT = "credit"  # money collected


class Transaction(BaseModel):
    """One expense or income record. Owned by exactly one Sheet."""

    id: str
    sheet_id: str
    amount: Decimal
    purpose: str
    category: str = DEFAULT_CATEGORY
    kind: TransactionKind
    created_at: datetime = Field(default_factory=utc_now)
    last_modified: Optional[datetime] = None

    # Denormalized sync flags, maintained by the repository on engine callbacks
    synced: bool = False
    last_synced: Optional[datetime] = None


class Sheet(BaseModel):
    """A named ledger. Maps to one remote container once synced."""

    id: str
    name: str
    created_at: datetime = Field(default_factory=utc_now)
    last_modified: Optional[datetime] = None

    remote_id: Optional[str] = None
    synced: bool = False  # True implies remote_id is set
    sync_status: SyncStatus = SyncStatus.PENDING
    last_synced: Optional[datetime] = None

    # Newest first; never reordered
    transactions: List[Transaction] = Field(default_factory=list)

    def find_transaction(self, transaction_id: str) -> Optional[Transaction]:
        return next((t for t in self.transactions if t.id == transaction_id), None)


class SheetTotals(BaseModel):
    debit: Decimal = Decimal("0")
    credit: Decimal = Decimal("0")
    balance: Decimal = Decimal("0")
