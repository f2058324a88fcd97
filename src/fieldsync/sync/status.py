"""Sync status snapshots and the listener list they are published to."""
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)


@dataclass
class SyncStatus:
    """What a consumer needs to render connectivity and sync state."""

    is_online: bool
    is_syncing: bool
    pending_count: int

    @property
    def has_pending_changes(self) -> bool:
        return self.pending_count > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isOnline": self.is_online,
            "isSyncing": self.is_syncing,
            "pendingCount": self.pending_count,
            "hasPendingChanges": self.has_pending_changes,
        }


StatusListener = Callable[[SyncStatus], Any]


class StatusBroadcaster:
    """
    Observer list for SyncStatus events.

    Listeners may be plain callables or coroutine functions. A listener that
    raises is logged and skipped; it never affects the engine or other listeners.
    """

    def __init__(self):
        self._listeners: List[StatusListener] = []
        self.last_status: SyncStatus = SyncStatus(is_online=False, is_syncing=False, pending_count=0)

    def add_listener(self, listener: StatusListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: StatusListener) -> None:
        self._listeners = [cb for cb in self._listeners if cb != listener]

    async def publish(self, status: SyncStatus) -> None:
        self.last_status = status
        for listener in list(self._listeners):
            try:
                result = listener(status)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Sync status listener %r failed", listener)
