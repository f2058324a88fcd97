"""
Network monitor: tracks connectivity and announces transitions.

Connectivity is normally pushed in by the host through set_online() (an OS
network callback, a mobile shell, a test). When a probe URL is configured,
check() can also derive it by making a cheap HTTP request; the scheduler
runs check() periodically for hosts that have no connectivity events.

Listeners fire only on transitions, never on a repeated state.
"""
import inspect
import logging
from typing import Any, Callable, List, Optional

import httpx

logger = logging.getLogger(__name__)

ConnectivityListener = Callable[[bool], Any]


class NetworkMonitor:
    """
    Args:
        initially_online: Assumed state before the first signal or probe.
        probe_url: URL requested by probe(); empty disables probing.
        probe_timeout: Seconds before a probe counts as offline.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        *,
        initially_online: bool = True,
        probe_url: str = "",
        probe_timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._online = initially_online
        self.probe_url = probe_url
        self.probe_timeout = probe_timeout
        self._transport = transport
        self._listeners: List[ConnectivityListener] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def on_change(self, listener: ConnectivityListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: ConnectivityListener) -> None:
        self._listeners = [cb for cb in self._listeners if cb != listener]

    async def set_online(self, online: bool) -> bool:
        """
        Record the current connectivity state.

        Returns:
            True if this was a transition (listeners were notified).
        """
        online = bool(online)
        if online == self._online:
            return False
        self._online = online
        logger.info("Connectivity changed: %s", "online" if online else "offline")

        for listener in list(self._listeners):
            try:
                result = listener(online)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Connectivity listener %r failed", listener)
        return True

    async def probe(self) -> bool:
        """Return True if the probe URL answers at all (any HTTP status)."""
        if not self.probe_url:
            return self._online
        try:
            async with httpx.AsyncClient(timeout=self.probe_timeout, transport=self._transport) as client:
                await client.head(self.probe_url)
            return True
        except httpx.HTTPError as e:
            logger.debug("Connectivity probe failed: %s", e)
            return False

    async def check(self) -> bool:
        """Probe and publish the result. Returns the current state."""
        await self.set_online(await self.probe())
        return self._online
