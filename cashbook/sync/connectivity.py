"""
Connectivity tracking.

The platform reports online/offline transitions through ``report``. When a
probe is configured, ``check`` also verifies reachability actively before a
network call.
"""

import asyncio
from typing import Awaitable, Callable, Optional

import requests
import structlog

logger = structlog.get_logger(__name__)

ConnectivityListener = Callable[[bool], Awaitable[None]]
ConnectivityProbe = Callable[[], Awaitable[bool]]


class HttpConnectivityProbe:
    """Considers the device online if a HEAD request gets any non-5xx answer."""

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        session: Optional[requests.Session] = None,
    ):
        self._url = url
        self._timeout = timeout
        self._session = session or requests.Session()

    async def __call__(self) -> bool:
        try:
            response = await asyncio.to_thread(
                self._session.head,
                self._url,
                timeout=self._timeout,
                allow_redirects=True,
            )
        except requests.RequestException as e:
            logger.info("connectivity_probe_failed", url=self._url, error=str(e))
            return False
        return response.status_code < 500


class ConnectivityMonitor:
    """Current online state plus listeners for transitions."""

    def __init__(
        self,
        probe: Optional[ConnectivityProbe] = None,
        initially_online: bool = True,
    ):
        self._probe = probe
        self._online = initially_online
        self._listeners: list[ConnectivityListener] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def subscribe(self, listener: ConnectivityListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def check(self) -> bool:
        """Refresh the state from the probe (if any) and return it."""
        if self._probe is not None:
            await self.report(await self._probe())
        return self._online

    async def report(self, online: bool) -> None:
        """Record the platform's view of connectivity; notifies on change."""
        previous = self._online
        self._online = online
        if previous == online:
            return

        logger.info("connectivity_changed", online=online)
        for listener in list(self._listeners):
            try:
                await listener(online)
            except Exception as e:
                logger.error("connectivity_listener_failed", error=str(e))
