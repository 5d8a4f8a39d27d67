"""
DurableStore — best-effort JSON document persistence, namespaced per user.

Every call catches its own failures and reports them as a falsy return value
instead of raising: a mutation the user already sees in the UI must never be
crashed by a persistence error. Callers that need to tell "not persisted"
apart from "persisted" check the boolean result.
"""
import hashlib
import json
import logging
import re
from typing import Any, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from expenso.models.document import StoredDocument
from expenso.models.ledger import utc_now

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9]")


def user_namespace(user_id: Optional[str]) -> str:
    """Derive a stable document namespace from a user identifier.

    The readable prefix is not unique on its own ("a.b" and "a_b" sanitize to
    the same string), so a digest of the raw identifier is appended.
    """
    if not user_id:
        return ""
    user_id = user_id.strip().lower()
    digest = hashlib.sha256(user_id.encode("utf-8")).hexdigest()[:10]
    return f"{_UNSAFE_CHARS.sub('_', user_id)}_{digest}"


class DurableStore:
    """get/set/remove of JSON-serializable documents.

    Usage:
        store = DurableStore(engine).for_user("someone@example.com")
        store.set("categories", ["Misc", "Food"])
        store.get("categories")  # → ["Misc", "Food"]
    """

    def __init__(self, engine, namespace: str = ""):
        """
        Args:
            engine: SQLAlchemy engine (SQLModel create_engine result).
            namespace: Document namespace; "" means unscoped.
        """
        self.engine = engine
        self.namespace = namespace

    def for_user(self, user_id: Optional[str]) -> "DurableStore":
        """Return a store sharing this engine, scoped to user_id."""
        return DurableStore(self.engine, user_namespace(user_id))

    def get(self, key: str) -> Any:
        """Return the stored document, or None if absent or unreadable."""
        _, value = self.read(key)
        return value

    def read(self, key: str) -> Tuple[bool, Any]:
        """Return (ok, document).

        An absent key reads as (True, None). ok is False only when the read
        itself failed, so read-modify-write callers can skip writing back a
        document they never saw.
        """
        try:
            with Session(self.engine) as s:
                doc = self._find(s, key)
                if doc is None:
                    return True, None
                return True, json.loads(doc.value_json)
        except (SQLAlchemyError, ValueError) as exc:
            logger.error("Failed reading %r from store: %s", key, exc)
            return False, None

    def set(self, key: str, value: Any) -> bool:
        """Replace the document under key. Returns False on any failure."""
        try:
            value_json = json.dumps(value)
        except (TypeError, ValueError) as exc:
            logger.error("Document %r is not JSON-serializable: %s", key, exc)
            return False

        try:
            with Session(self.engine) as s:
                doc = self._find(s, key)
                if doc is None:
                    doc = StoredDocument(namespace=self.namespace, key=key, value_json=value_json)
                else:
                    doc.value_json = value_json
                    doc.updated_at = utc_now()
                s.add(doc)
                s.commit()
            return True
        except SQLAlchemyError as exc:
            logger.error("Failed writing %r to store: %s", key, exc)
            return False

    def remove(self, key: str) -> bool:
        """Delete the document under key. Removing a missing key succeeds."""
        try:
            with Session(self.engine) as s:
                doc = self._find(s, key)
                if doc is not None:
                    s.delete(doc)
                    s.commit()
            return True
        except SQLAlchemyError as exc:
            logger.error("Failed removing %r from store: %s", key, exc)
            return False

    def _find(self, session: Session, key: str) -> Optional[StoredDocument]:
        return session.exec(
            select(StoredDocument).where(
                StoredDocument.namespace == self.namespace,
                StoredDocument.key == key,
            )
        ).first()
