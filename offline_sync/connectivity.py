import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable

import asyncpg
import httpx

from offline_sync.config import HTTP_TIMEOUT, POLL_INTERVAL, PROBE_URL
from offline_sync.db import get_connection
from offline_sync.errors import LocalStorageError
from offline_sync.models import ConnectivityState, utcnow
from offline_sync.storage import LocalStorage
from offline_sync.timer import PeriodicTimer
from offline_sync.write_queue import WriteQueue

logger = logging.getLogger(__name__)

LAST_ONLINE_NAMESPACE = "connectivity:last_online"

Probe = Callable[[], Awaitable[bool]]


def http_probe(url: str | None = PROBE_URL, timeout: float = HTTP_TIMEOUT) -> Probe:
    """Online means the health URL answered with anything but a 5xx."""
    if not url:
        raise ValueError("Missing PROBE_URL configuration.")

    async def probe() -> bool:
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.get(url)
            return response.status_code < 500
        except httpx.HTTPError as e:
            logger.debug(f"HTTP probe to {url} failed: {e}")
            return False

    return probe


def postgres_probe(connection_factory=get_connection) -> Probe:
    async def probe() -> bool:
        try:
            async with connection_factory() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except (asyncpg.PostgresError, OSError, ConnectionError, asyncio.TimeoutError) as e:
            logger.debug(f"Postgres probe failed: {e}")
            return False

    return probe


async def always_online() -> bool:
    return True


class ConnectivityMonitor:
    """Tracks online/offline transitions and kicks off a sync pass on reconnect.

    Until the first probe answers, the client is considered offline.
    """

    def __init__(
        self,
        probe: Probe,
        queue: WriteQueue,
        engine=None,
        storage: LocalStorage | None = None,
        poll_interval: float = POLL_INTERVAL,
    ):
        self.probe = probe
        self.queue = queue
        self.engine = engine
        self.storage = storage or queue.storage
        self.poll_interval = poll_interval
        self._online: bool | None = None
        self._last_online_at = self._load_last_online()
        self._timer: PeriodicTimer | None = None

    @property
    def is_offline(self) -> bool:
        return self._online is not True

    @property
    def last_online_at(self) -> datetime | None:
        return self._last_online_at

    def _load_last_online(self) -> datetime | None:
        try:
            blob = self.storage.read(LAST_ONLINE_NAMESPACE)
            return datetime.fromisoformat(blob.decode()) if blob else None
        except (LocalStorageError, ValueError) as e:
            logger.warning(f"Could not load last online timestamp: {e}")
            return None

    def _record_online(self) -> None:
        self._last_online_at = utcnow()
        try:
            self.storage.write(LAST_ONLINE_NAMESPACE, self._last_online_at.isoformat().encode())
        except LocalStorageError:
            logger.exception("Failed to persist last online timestamp")

    def current_status(self) -> ConnectivityState:
        try:
            pending = self.queue.pending_count()
        except LocalStorageError:
            logger.exception("Could not count pending items")
            pending = 0
        return ConnectivityState(
            is_offline=self.is_offline,
            last_online_at=self._last_online_at,
            pending_count=pending,
        )

    async def check(self) -> ConnectivityState:
        """Polls the probe once and reacts to a status change."""
        try:
            online = bool(await self.probe())
        except Exception as e:
            logger.warning(f"Connectivity probe raised, assuming offline: {e}")
            online = False

        was_online = self._online
        self._online = online

        if online and was_online is not True:
            self._record_online()
            logger.info("Connectivity restored")
            if self.engine is not None:
                await self.engine.sync_once()
        elif not online and was_online is True:
            logger.warning("Connectivity lost, writes will be queued")
        return self.current_status()

    async def start(self) -> None:
        await self.check()
        if self._timer is None:
            self._timer = PeriodicTimer(self.poll_interval, self.check, name="connectivity-poll")
        self._timer.start()

    async def stop(self) -> None:
        if self._timer:
            await self._timer.stop()
