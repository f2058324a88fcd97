"""Tests for SyncStatus and StatusBroadcaster."""
from unittest.mock import AsyncMock, MagicMock

import pytest

from fieldsync.sync.status import StatusBroadcaster, SyncStatus


class TestSyncStatus:
    def test_has_pending_changes(self):
        assert SyncStatus(True, False, 2).has_pending_changes is True
        assert SyncStatus(True, False, 0).has_pending_changes is False

    def test_to_dict(self):
        assert SyncStatus(is_online=False, is_syncing=False, pending_count=1).to_dict() == {
            "isOnline": False,
            "isSyncing": False,
            "pendingCount": 1,
            "hasPendingChanges": True,
        }


class TestStatusBroadcaster:
    @pytest.mark.asyncio
    async def test_sync_and_async_listeners(self):
        broadcaster = StatusBroadcaster()
        plain = MagicMock()
        coro = AsyncMock()
        broadcaster.add_listener(plain)
        broadcaster.add_listener(coro)

        status = SyncStatus(True, True, 3)
        await broadcaster.publish(status)

        plain.assert_called_once_with(status)
        coro.assert_awaited_once_with(status)
        assert broadcaster.last_status == status

    @pytest.mark.asyncio
    async def test_listener_error_is_contained(self):
        broadcaster = StatusBroadcaster()
        broadcaster.add_listener(MagicMock(side_effect=ValueError("render failed")))
        after = MagicMock()
        broadcaster.add_listener(after)

        await broadcaster.publish(SyncStatus(True, False, 0))
        after.assert_called_once()

    @pytest.mark.asyncio
    async def test_add_is_idempotent_and_remove_works(self):
        broadcaster = StatusBroadcaster()
        listener = MagicMock()
        broadcaster.add_listener(listener)
        broadcaster.add_listener(listener)
        await broadcaster.publish(SyncStatus(True, False, 0))
        assert listener.call_count == 1

        broadcaster.remove_listener(listener)
        await broadcaster.publish(SyncStatus(True, False, 0))
        assert listener.call_count == 1
