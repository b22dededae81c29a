# src/outbox/connectors/connectivity.py

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

import httpx

from ..core.ports import ConnectivityStatus, Unsubscribe

logger = logging.getLogger(__name__)

StatusCallback = Callable[[ConnectivityStatus], None]


class _ConnectivityBase:
    def __init__(self, initial: ConnectivityStatus = ConnectivityStatus.ONLINE) -> None:
        self._status = initial
        self._subscribers: list[StatusCallback] = []

    @property
    def status(self) -> ConnectivityStatus:
        return self._status

    def is_online(self) -> bool:
        return self._status == ConnectivityStatus.ONLINE

    def subscribe(self, on_status_change: StatusCallback) -> Unsubscribe:
        self._subscribers.append(on_status_change)
        on_status_change(self._status)

        def _unsubscribe() -> None:
            if on_status_change in self._subscribers:
                self._subscribers.remove(on_status_change)

        return _unsubscribe

    def _set_status(self, status: ConnectivityStatus) -> None:
        if status == self._status:
            return
        self._status = status
        logger.info("Connectivity changed -> %s", status.value)
        for cb in list(self._subscribers):
            try:
                cb(status)
            except Exception:
                logger.exception("Connectivity subscriber failed")


class ManualConnectivityMonitor(_ConnectivityBase):
    """Status flipped by hand (console /online, /offline; tests)."""

    def set_online(self, online: bool) -> None:
        self._set_status(ConnectivityStatus.ONLINE if online else ConnectivityStatus.OFFLINE)


class HttpConnectivityMonitor(_ConnectivityBase):
    """
    Probes a URL with httpx every interval_seconds.

    Any HTTP response counts as online (the network path works); transport
    errors and timeouts count as offline. To stop the monitor, cancel run().
    """

    def __init__(
        self,
        probe_url: str,
        *,
        interval_seconds: float = 15.0,
        timeout_seconds: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        # Until the first probe answers we assume online; the runner retries if wrong.
        super().__init__(ConnectivityStatus.ONLINE)
        self._probe_url = probe_url
        self._interval = max(0.5, float(interval_seconds))
        self._client = client
        self._owns_client = client is None
        self._timeout = httpx.Timeout(timeout_seconds)

    async def probe_once(self) -> ConnectivityStatus:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        try:
            resp = await self._client.head(self._probe_url)
            logger.debug("Connectivity probe %s -> %s", self._probe_url, resp.status_code)
            status = ConnectivityStatus.ONLINE
        except httpx.TransportError as e:
            logger.debug("Connectivity probe %s failed: %s", self._probe_url, e)
            status = ConnectivityStatus.OFFLINE
        self._set_status(status)
        return status

    async def run(self) -> None:
        logger.info("Connectivity monitor probing %s every %.1fs", self._probe_url, self._interval)
        try:
            while True:
                try:
                    await self.probe_once()
                except Exception:
                    # Status stays as it was; try again next interval.
                    logger.exception("Connectivity probe %s crashed", self._probe_url)
                await asyncio.sleep(self._interval)
        finally:
            if self._owns_client and self._client is not None:
                await self._client.aclose()
                self._client = None
