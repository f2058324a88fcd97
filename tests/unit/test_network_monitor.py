"""Tests for NetworkMonitor transitions and probing."""
from unittest.mock import MagicMock

import httpx
import pytest

from fieldsync.sync.network import NetworkMonitor


class TestTransitions:
    @pytest.mark.asyncio
    async def test_listener_fires_on_transition_only(self):
        monitor = NetworkMonitor(initially_online=True)
        seen = []
        monitor.on_change(seen.append)

        assert await monitor.set_online(True) is False
        assert await monitor.set_online(False) is True
        assert await monitor.set_online(False) is False
        assert await monitor.set_online(True) is True
        assert seen == [False, True]

    @pytest.mark.asyncio
    async def test_async_listener_is_awaited(self):
        monitor = NetworkMonitor(initially_online=False)
        seen = []

        async def listener(online):
            seen.append(online)

        monitor.on_change(listener)
        await monitor.set_online(True)
        assert seen == [True]
        assert monitor.is_online

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_block_others(self):
        monitor = NetworkMonitor(initially_online=True)
        broken = MagicMock(side_effect=RuntimeError("boom"))
        seen = []
        monitor.on_change(broken)
        monitor.on_change(seen.append)

        await monitor.set_online(False)
        broken.assert_called_once_with(False)
        assert seen == [False]

    @pytest.mark.asyncio
    async def test_removed_listener_not_called(self):
        monitor = NetworkMonitor(initially_online=True)
        seen = []
        monitor.on_change(seen.append)
        monitor.remove_listener(seen.append)
        await monitor.set_online(False)
        assert seen == []


class TestProbe:
    @pytest.mark.asyncio
    async def test_any_response_means_online(self):
        monitor = NetworkMonitor(
            initially_online=False,
            probe_url="https://remote.example/ping",
            transport=httpx.MockTransport(lambda request: httpx.Response(503)),
        )
        assert await monitor.probe() is True

    @pytest.mark.asyncio
    async def test_connect_error_means_offline(self):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        monitor = NetworkMonitor(
            initially_online=True,
            probe_url="https://remote.example/ping",
            transport=httpx.MockTransport(handler),
        )
        seen = []
        monitor.on_change(seen.append)
        assert await monitor.check() is False
        assert seen == [False]

    @pytest.mark.asyncio
    async def test_no_probe_url_keeps_state(self):
        monitor = NetworkMonitor(initially_online=False)
        assert await monitor.check() is False
