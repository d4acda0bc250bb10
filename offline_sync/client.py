import asyncio
import logging
from typing import Any, Awaitable, Callable

from offline_sync.config import ITEM_TIMEOUT, POLL_INTERVAL, SYNC_INTERVAL
from offline_sync.connectivity import ConnectivityMonitor, Probe, always_online
from offline_sync.engine import SyncEngine, SyncLease
from offline_sync.mirror import MirrorStore
from offline_sync.models import ConnectivityState, Operation, SyncResult, WriteResult
from offline_sync.remote import RemoteStore
from offline_sync.storage import LocalStorage
from offline_sync.write_queue import WriteQueue, validate_mutation

logger = logging.getLogger(__name__)


class OfflineClient:
    """What domain consumers talk to instead of the remote store.

    Wires the mirror, the write queue, the sync engine and the connectivity
    monitor around one shared LocalStorage.
    """

    def __init__(
        self,
        storage: LocalStorage,
        remote: RemoteStore,
        probe: Probe | None = None,
        poll_interval: float = POLL_INTERVAL,
        sync_interval: float = SYNC_INTERVAL,
        item_timeout: float = ITEM_TIMEOUT,
        use_lease: bool = True,
    ):
        self.storage = storage
        self.remote = remote
        self.sync_interval = sync_interval
        self.item_timeout = item_timeout
        self.mirror = MirrorStore(storage)
        self.queue = WriteQueue(storage, self.mirror)
        self.engine = SyncEngine(
            self.queue,
            remote,
            self.mirror,
            item_timeout=item_timeout,
            lease=SyncLease(storage) if use_lease else None,
        )
        self.monitor = ConnectivityMonitor(
            probe or always_online,
            self.queue,
            engine=self.engine,
            storage=storage,
            poll_interval=poll_interval,
        )

    # --- Consumer API ---

    def enqueue(self, operation, table_name: str, record_id=None, data=None) -> str:
        return self.queue.enqueue(operation, table_name, record_id, data)

    async def sync_once(self) -> SyncResult:
        return await self.engine.sync_once()

    def pending_count(self) -> int:
        return self.queue.pending_count()

    def mirror_get(self, table_name: str, key) -> dict[str, Any] | None:
        return self.mirror.get(table_name, key)

    def status(self) -> ConnectivityState:
        return self.monitor.current_status()

    @property
    def is_offline(self) -> bool:
        return self.monitor.is_offline

    async def write(self, operation, table_name: str, record_id=None, data=None) -> WriteResult:
        """Writes straight to the remote store when possible, otherwise queues the mutation.

        A record that already has queued mutations is always queued too, so the
        remote sees its changes in the order they were made.
        """
        op = validate_mutation(operation, table_name, record_id, data)
        if op is not Operation.INSERT:
            record_id = self.queue.remote_id_for(table_name, record_id) or record_id
        direct = not self.monitor.is_offline and not (
            record_id is not None and self.queue.has_pending_for(table_name, record_id)
        )
        if direct:
            try:
                remote_id = await asyncio.wait_for(
                    self.engine.apply_mutation(op, table_name, None if record_id is None else str(record_id), data),
                    timeout=self.item_timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(f"Remote {op.value} on {table_name} timed out, queueing it")
            except Exception as e:
                logger.warning(f"Remote {op.value} on {table_name} failed, queueing it: {e}")
            else:
                key = str(remote_id) if op is Operation.INSERT and remote_id is not None else record_id
                if op is Operation.DELETE:
                    self.mirror.remove(table_name, key)
                elif op is Operation.UPDATE:
                    self.mirror.merge(table_name, key, dict(data))
                elif key is not None:
                    self.mirror.put(table_name, key, dict(data))
                return WriteResult(queued=False, record_id=None if key is None else str(key))

        client_id = self.queue.enqueue(op, table_name, record_id, data)
        return WriteResult(
            queued=True,
            client_id=client_id,
            record_id=None if record_id is None else str(record_id),
        )

    async def read(self, table_name: str, key, fetch: Callable[[], Awaitable[dict[str, Any] | None]]):
        """Reads through the remote store, falling back to the mirror when it is unreachable."""
        if not self.monitor.is_offline:
            try:
                data = await asyncio.wait_for(fetch(), timeout=self.item_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Remote read of {table_name}/{key} timed out, using local mirror")
            except Exception as e:
                logger.warning(f"Remote read of {table_name}/{key} failed, using local mirror: {e}")
            else:
                if data is not None:
                    self.mirror.put(table_name, key, data)
                    return data
        return self.mirror.get(table_name, key)

    # --- Lifecycle ---

    async def start(self) -> None:
        await self.monitor.start()
        self.engine.start_periodic(lambda: not self.monitor.is_offline, self.sync_interval)

    async def stop(self) -> None:
        await self.engine.stop_periodic()
        await self.monitor.stop()
