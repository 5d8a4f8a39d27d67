"""
Typed publish/subscribe for sync lifecycle events.

Delivery is synchronous fan-out in subscription order, at most once per
emit. A listener that raises is logged and skipped; the remaining listeners
still receive the event.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)


class SyncEventType(str, Enum):
    SYNC_STARTED = "sync_started"
    SYNC_PROGRESS = "sync_progress"            # message, current, total
    SYNC_COMPLETED = "sync_completed"          # syncedItems, remaining
    SYNC_FAILED = "sync_failed"                # error
    SYNC_SKIPPED = "sync_skipped"              # reason
    OPERATION_QUEUED = "operation_queued"      # operationId, operationType
    OPERATION_RETRY = "operation_retry"        # operationId, retryCount, retryDelay
    OPERATION_FAILED = "operation_failed"      # operationId, retryCount, error
    MANUAL_SYNC_TRIGGERED = "manual_sync_triggered"
    AUTH_REQUIRED = "auth_required"            # operationId, error
    SYNC_DATA_CLEARED = "sync_data_cleared"


@dataclass(frozen=True)
class SyncEvent:
    type: SyncEventType
    data: Dict[str, Any] = field(default_factory=dict)


Listener = Callable[[SyncEvent], None]


class EventBus:
    def __init__(self):
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener. Returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event_type: SyncEventType, **data: Any) -> SyncEvent:
        event = SyncEvent(type=event_type, data=data)
        # Copy so listeners may unsubscribe while being notified
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Sync event listener failed on %s", event_type.value)
        return event

    def clear(self) -> None:
        self._listeners.clear()
