"""Key-value document table backing the DurableStore."""
from datetime import datetime
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from expenso.models.ledger import utc_now


class StoredDocument(SQLModel, table=True):
    """One JSON document per (namespace, key)."""

    __table_args__ = (UniqueConstraint("namespace", "key", name="uq_document_namespace_key"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    namespace: str = Field(default="", index=True)  # "" = not scoped to a user
    key: str = Field(index=True)
    value_json: str
    updated_at: datetime = Field(default_factory=utc_now)
