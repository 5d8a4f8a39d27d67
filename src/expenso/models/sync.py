"""Sync audit log model."""
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from expenso.models.ledger import utc_now


class SyncLog(SQLModel, table=True):
    """Records each executed sync cycle for audit and debugging."""

    id: Optional[int] = Field(default=None, primary_key=True)
    namespace: str = Field(default="", index=True)
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: Optional[datetime] = None
    status: str = "running"  # "running", "success", "partial", "error"
    items_synced: int = 0
    items_remaining: int = 0
    error_message: Optional[str] = None
