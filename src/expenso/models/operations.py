"""Durable sync operations.

Two collections live in the DurableStore:

  * the sync queue: coarse container-level operations (create sheet, create
    category). Removed on success or when the retry ceiling is hit.
  * pending operations: fine-grained transaction create/update/delete.
    Marked synced on success and kept as an audit trail until the
    retention window expires.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from expenso.models.ledger import utc_now


class OperationType(str, Enum):
    """Known sync-queue operation types. Anything else is dropped on dispatch."""

    CREATE_SHEET = "CREATE_SHEET"
    CREATE_CATEGORY = "CREATE_CATEGORY"


class PendingKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class SyncQueueOperation(BaseModel):
    id: str
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    enqueued_at: datetime = Field(default_factory=utc_now)
    retry_count: int = 0
    last_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None


class PendingEntityOperation(BaseModel):
    id: str
    kind: PendingKind
    payload: Dict[str, Any] = Field(default_factory=dict)
    enqueued_at: datetime = Field(default_factory=utc_now)
    synced: bool = False
    synced_at: Optional[datetime] = None
    retry_count: int = 0
    last_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @property
    def sheet_id(self) -> Optional[str]:
        return self.payload.get("sheet_id")

    @property
    def transaction_id(self) -> Optional[str]:
        return (self.payload.get("transaction") or {}).get("id")
