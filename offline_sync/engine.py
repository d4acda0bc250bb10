import asyncio
import json
import logging
import os
import socket
import time
import uuid
from typing import Any, Callable

from offline_sync.config import ITEM_TIMEOUT, SYNC_INTERVAL, SYNC_LEASE_TTL
from offline_sync.mirror import MirrorStore
from offline_sync.models import Operation, QueueItem, SyncResult
from offline_sync.remote import RemoteStore
from offline_sync.storage import LocalStorage
from offline_sync.timer import PeriodicTimer
from offline_sync.write_queue import WriteQueue

logger = logging.getLogger(__name__)

LEASE_NAMESPACE = "sync:lease"


class SyncLease:
    """Storage-backed lease so only one context sharing the storage replays at a time."""

    def __init__(self, storage: LocalStorage, ttl: float = SYNC_LEASE_TTL, owner: str | None = None):
        self.storage = storage
        self.ttl = ttl
        self.owner = owner or f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"

    def _holder(self, blob: bytes | None) -> dict | None:
        if not blob:
            return None
        try:
            holder = json.loads(blob)
        except ValueError:
            logger.warning("Unreadable sync lease record, treating it as free")
            return None
        return holder if isinstance(holder, dict) else None

    def acquire(self) -> bool:
        """Takes or renews the lease. False while another owner holds an unexpired lease."""
        def take(blob):
            now = time.time()
            holder = self._holder(blob)
            if holder and holder.get("owner") != self.owner and holder.get("expires_at", 0) > now:
                return blob, False
            lease = {"owner": self.owner, "expires_at": now + self.ttl}
            return json.dumps(lease).encode(), True

        return self.storage.update(LEASE_NAMESPACE, take)

    renew = acquire

    def release(self) -> None:
        def drop(blob):
            holder = self._holder(blob)
            if holder and holder.get("owner") == self.owner:
                return None, True
            return blob, False

        self.storage.update(LEASE_NAMESPACE, drop)


class SyncEngine:
    """Replays the write queue against the remote store.

    Delivery is at-least-once per item until the remote accepts it. One failing
    item never stops the pass; items waiting on an unsynced INSERT are deferred.
    """

    def __init__(
        self,
        queue: WriteQueue,
        remote: RemoteStore,
        mirror: MirrorStore | None = None,
        item_timeout: float = ITEM_TIMEOUT,
        lease: SyncLease | None = None,
    ):
        self.queue = queue
        self.remote = remote
        self.mirror = mirror or queue.mirror
        self.item_timeout = item_timeout
        self.lease = lease
        self._inflight: asyncio.Task | None = None
        self._timer: PeriodicTimer | None = None

    @property
    def syncing(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    async def sync_once(self) -> SyncResult:
        """Runs one sync pass. A call made while a pass is running gets that pass's result."""
        task = self._inflight
        if task is None or task.done():
            task = self._inflight = asyncio.get_running_loop().create_task(self._run_pass())
        else:
            logger.info("Sync pass already in progress, joining it")
        # Shielded so a cancelled caller cannot abort the pass for everyone else
        return await asyncio.shield(task)

    async def apply_mutation(self, operation: Operation, table_name: str, record_id=None, data=None) -> Any:
        """Sends one mutation to the remote store. Returns the new id for INSERT."""
        if operation is Operation.INSERT:
            return await self.remote.create(table_name, dict(data or {}))
        if operation is Operation.UPDATE:
            await self.remote.update(table_name, record_id, dict(data or {}))
        else:
            await self.remote.delete(table_name, record_id)
        return None

    async def _run_pass(self) -> SyncResult:
        if self.lease and not self.lease.acquire():
            logger.info("Another context holds the sync lease, skipping this pass")
            return SyncResult(skipped=True)
        try:
            result = await self._replay()
        finally:
            if self.lease:
                self.lease.release()
        self.queue.compact()
        logger.info(
            f"Sync pass finished: {result.succeeded} succeeded, "
            f"{result.failed} failed, {result.deferred} deferred"
        )
        return result

    async def _replay(self) -> SyncResult:
        result = SyncResult()
        pending = self.queue.pending_items()
        if not pending:
            logger.info("No pending items to sync.")
            return result

        logger.info(f"Replaying {len(pending)} pending item(s)")
        for snapshot in pending:
            if self.lease and not self.lease.renew():
                logger.warning("Sync lease lost mid-pass, stopping replay")
                break

            # Re-read: an earlier INSERT in this pass may have re-addressed the item
            item = self.queue.get(snapshot.client_id)
            if item is None or item.processed:
                continue
            if item.depends_on:
                item = self._resolve_dependency(item)
                if item.depends_on:
                    logger.info(
                        f"Deferring {item.operation.value} {item.table_name}/{item.record_id} "
                        f"({item.client_id}): waiting for {item.depends_on}"
                    )
                    result.deferred += 1
                    continue
            elif item.operation is not Operation.INSERT:
                item = self._readdress(item)

            try:
                remote_id = await asyncio.wait_for(
                    self.apply_mutation(item.operation, item.table_name, item.record_id, item.data),
                    timeout=self.item_timeout,
                )
            except asyncio.TimeoutError:
                self._failed(item, f"Timed out after {self.item_timeout}s")
                result.failed += 1
                continue
            except Exception as e:
                self._failed(item, f"{type(e).__name__}: {e}")
                result.failed += 1
                continue

            self._succeeded(item, remote_id)
            result.succeeded += 1
        return result

    def _resolve_dependency(self, item: QueueItem) -> QueueItem:
        dependency = self.queue.get(item.depends_on)
        if dependency is not None and not dependency.processed:
            return item
        remote_id = self.queue.remote_id_for(item.table_name, item.depends_on)
        if remote_id is not None:
            # The INSERT was applied but its dependents were never re-addressed
            self.queue.resolve_dependents(item.depends_on, remote_id)
            return self.queue.get(item.client_id) or item
        # Dependency gone without an id: replay as addressed
        return item.model_copy(update={"depends_on": None})

    def _readdress(self, item: QueueItem) -> QueueItem:
        # Queued by client_id after its INSERT had already been applied
        remote_id = self.queue.remote_id_for(item.table_name, item.record_id)
        if remote_id is None or remote_id == item.record_id:
            return item
        self.queue.readdress(item.client_id, remote_id)
        logger.info(f"Re-addressed {item.client_id} from {item.record_id} to remote id {remote_id}")
        return item.model_copy(update={"record_id": remote_id})

    def _succeeded(self, item: QueueItem, remote_id) -> None:
        if item.operation is Operation.INSERT:
            remote_key = None if remote_id is None else str(remote_id)
            self.queue.mark_processed(item.client_id, remote_id=remote_key)
            if remote_key is not None:
                local_key = item.record_id or item.client_id
                # The local entry may already carry later queued UPDATEs
                data = self.mirror.get(item.table_name, local_key) or item.data or {}
                self.mirror.put(item.table_name, remote_key, data)
                self.queue.resolve_dependents(item.client_id, remote_key)
        else:
            self.queue.mark_processed(item.client_id)
            if item.operation is Operation.DELETE:
                self.mirror.remove(item.table_name, item.record_id)
        logger.info(
            f"Synced {item.operation.value} {item.table_name}/{remote_id or item.record_id or item.client_id}"
        )

    def _failed(self, item: QueueItem, error: str) -> None:
        self.queue.mark_failed(item.client_id, error)
        logger.warning(
            f"Sync failed for {item.operation.value} {item.table_name}/{item.record_id or item.client_id} "
            f"(attempt {item.attempts + 1}): {error}"
        )

    def start_periodic(self, is_online: Callable[[], bool], interval: float = SYNC_INTERVAL) -> None:
        """Catches items queued after transient remote failures while staying online."""
        async def tick():
            if is_online():
                await self.sync_once()

        if self._timer is None:
            self._timer = PeriodicTimer(interval, tick, name="periodic-sync")
        self._timer.start()

    async def stop_periodic(self) -> None:
        if self._timer:
            await self._timer.stop()
