"""
RemoteAdapter contract: the two remote calls the SyncEngine needs.

Implementations raise AuthRequiredError when the user must re-authorize and
TransientRemoteError for anything worth retrying. Any other exception is
treated by the engine as transient.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional


class RemoteAdapter(ABC):
    @abstractmethod
    async def create_container(self, name: str, owner_id: str) -> str:
        """Create the remote container for a sheet and return its remote id."""

    @abstractmethod
    async def append_record(self, container_id: str, record: Dict[str, Any]) -> None:
        """Append one record to an existing container."""


def build_record(
    transaction: Dict[str, Any],
    *,
    sheet_name: str,
    action: str,
    updates: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Translate a transaction snapshot into an append-only remote record.

    The remote log is append-only: an update appends the new state and a
    delete appends an annotated record with the amount negated, so summing
    the amount column still yields the live total.
    """
    created_at = str(transaction.get("created_at") or "")
    date, _, time = created_at.partition("T")
    amount = str(transaction.get("amount", "0"))
    if action == "delete" and not amount.startswith("-"):
        amount = f"-{amount}"

    record = {
        "transaction_id": transaction.get("id"),
        "date": date,
        "time": time[:8],
        "kind": transaction.get("kind"),
        "amount": amount,
        "category": transaction.get("category"),
        "purpose": transaction.get("purpose"),
        "sheet_name": sheet_name,
        "action": action,
    }
    if updates:
        record["updates"] = updates
    return record
