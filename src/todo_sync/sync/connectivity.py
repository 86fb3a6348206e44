"""Connectivity tracking for the sync engine.

The monitor is a small piece of state with transition callbacks: the engine
registers ``on_online`` to run a pass as soon as the network comes back and
consults ``online`` to skip timer-triggered passes while offline. The state is
either pushed in by the host application (``set_online``) or probed
periodically over HTTP (``probe_loop``).
"""

import asyncio
import logging
from typing import Callable, List, Optional

import httpx


logger = logging.getLogger(__name__)


class ConnectivityMonitor:
    """Online/offline state with callbacks for connect and disconnect edges."""

    def __init__(self, online: bool = True):
        self._online = online
        self._listeners: List[Callable[[bool], None]] = []
        self._online_callbacks: List[Callable[[], None]] = []
        self._probe_task: Optional[asyncio.Task] = None

    @property
    def online(self) -> bool:
        return self._online

    def is_online(self) -> bool:
        return self._online

    def add_listener(self, callback: Callable[[bool], None]):
        """Called with the new state on every transition."""
        self._listeners.append(callback)

    def on_online(self, callback: Callable[[], None]):
        """Called on every offline -> online transition."""
        self._online_callbacks.append(callback)

    def set_online(self, online: bool):
        """Record the current state, firing callbacks only on a change."""
        if online == self._online:
            return
        self._online = online
        logger.info("Connectivity restored" if online else "Connectivity lost")

        for callback in list(self._listeners):
            try:
                callback(online)
            except Exception as e:
                logger.error(f"Connectivity listener error: {e}")

        if online:
            for callback in list(self._online_callbacks):
                try:
                    callback()
                except Exception as e:
                    logger.error(f"Connectivity callback error: {e}")

    async def probe(self, url: str, client: httpx.AsyncClient, timeout: float = 5.0) -> bool:
        """Probe ``url`` once; any HTTP response counts as online."""
        try:
            await client.head(url, timeout=timeout)
            online = True
        except httpx.HTTPError as e:
            logger.debug(f"Connectivity probe to {url} failed: {e}")
            online = False
        self.set_online(online)
        return online

    async def probe_loop(self, url: str, interval: float = 30.0,
                         client: Optional[httpx.AsyncClient] = None, timeout: float = 5.0):
        """Probe ``url`` every ``interval`` seconds until cancelled."""
        own_client = client is None
        client = client or httpx.AsyncClient()
        try:
            while True:
                await self.probe(url, client, timeout)
                await asyncio.sleep(interval)
        finally:
            if own_client:
                await client.aclose()

    def start_probing(self, url: str, interval: float = 30.0, **kwargs) -> asyncio.Task:
        if self._probe_task is None or self._probe_task.done():
            self._probe_task = asyncio.create_task(self.probe_loop(url, interval, **kwargs))
        return self._probe_task

    async def stop_probing(self):
        if self._probe_task is not None:
            self._probe_task.cancel()
            await asyncio.gather(self._probe_task, return_exceptions=True)
            self._probe_task = None
