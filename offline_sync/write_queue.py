import json
import logging
import uuid
from collections.abc import Mapping
from typing import Any, Callable

from pydantic import ValidationError

from offline_sync.errors import InvalidMutationError, LocalStorageError
from offline_sync.mirror import MirrorStore
from offline_sync.models import QUEUE_ADAPTER, Operation, QueueItem, utcnow
from offline_sync.storage import LocalStorage

logger = logging.getLogger(__name__)

QUEUE_NAMESPACE = "queue"

ALIAS_PREFIX = "ids:"


def validate_mutation(operation, table_name, record_id=None, data=None) -> Operation:
    """Rejects mutations that could never be replayed. Returns the parsed operation."""
    try:
        op = Operation(str(getattr(operation, "value", operation)).upper())
    except ValueError:
        raise InvalidMutationError(f"Unknown operation {operation!r}") from None

    if not isinstance(table_name, str) or not table_name:
        raise InvalidMutationError("table_name must be a non-empty string")
    if op in (Operation.UPDATE, Operation.DELETE) and record_id in (None, ""):
        raise InvalidMutationError(f"{op.value} on {table_name} requires a record_id")

    if op in (Operation.INSERT, Operation.UPDATE):
        if not isinstance(data, Mapping):
            raise InvalidMutationError(f"{op.value} on {table_name} requires a data mapping")
        if op is Operation.UPDATE and not data:
            raise InvalidMutationError(f"UPDATE on {table_name} has no fields to set")
    if data is not None:
        if not isinstance(data, Mapping) or not all(isinstance(key, str) for key in data):
            raise InvalidMutationError(f"Payload for {table_name} must be a mapping with string keys")
        try:
            json.dumps(dict(data))
        except (TypeError, ValueError) as e:
            raise InvalidMutationError(f"Payload for {table_name} is not JSON-serializable: {e}") from e
    return op


def _load(blob: bytes | None) -> list[QueueItem]:
    if not blob:
        return []
    try:
        return QUEUE_ADAPTER.validate_json(blob)
    except ValidationError as e:
        raise LocalStorageError(f"Write queue log is corrupted: {e}") from e


def _dump(items: list[QueueItem]) -> bytes:
    return QUEUE_ADAPTER.dump_json(items)


def _alias_namespace(table_name: str) -> str:
    return f"{ALIAS_PREFIX}{table_name}"


def _load_aliases(table_name: str, blob: bytes | None) -> dict[str, str]:
    if not blob:
        return {}
    try:
        aliases = json.loads(blob)
    except ValueError as e:
        raise LocalStorageError(f"Id aliases for {table_name!r} are corrupted: {e}") from e
    if not isinstance(aliases, dict):
        raise LocalStorageError(f"Id aliases for {table_name!r} are not a mapping")
    return aliases


def _numbered_insert(item: QueueItem) -> bool:
    return item.processed and item.operation is Operation.INSERT and item.remote_id is not None


class WriteQueue:
    """Ordered, durable log of mutations waiting for the remote store.

    The log only grows, except for in-place status updates and ``compact()``.
    Every mutation is a single atomic read-modify-write against storage.
    Log order is replay order.

    Once an INSERT has been applied, its client_id stays usable as an address:
    the remote id is read from the log, and after compaction from the
    ``ids:<table>`` alias partition.
    """

    def __init__(self, storage: LocalStorage, mirror: MirrorStore | None = None):
        self.storage = storage
        self.mirror = mirror or MirrorStore(storage)

    def _mutate(self, fn: Callable[[list[QueueItem]], tuple[bool, Any]]):
        def apply(blob):
            items = _load(blob)
            changed, result = fn(items)
            return (_dump(items) if changed else blob), result

        return self.storage.update(QUEUE_NAMESPACE, apply)

    def enqueue(self, operation, table_name: str, record_id=None, data: Mapping | None = None) -> str:
        """Appends a mutation to the log and returns its client_id.

        Raises LocalStorageError only when nothing was queued.
        """
        op = validate_mutation(operation, table_name, record_id, data)
        record_id = None if record_id is None else str(record_id)
        data = None if data is None else dict(data)
        client_id = str(uuid.uuid4())
        aliased = None if op is Operation.INSERT else self.aliases(table_name).get(record_id)

        def append(items: list[QueueItem]):
            target, depends_on = record_id, None
            if op is not Operation.INSERT:
                insert = next((
                    existing for existing in items
                    if existing.client_id == record_id
                    and existing.operation is Operation.INSERT
                    and existing.table_name == table_name
                ), None)
                if insert is None:
                    target = aliased or record_id
                elif not insert.processed:
                    depends_on = insert.client_id
                elif insert.remote_id is not None:
                    target = insert.remote_id

            created_at = utcnow()
            if items:
                # The wall clock may step back; created_at never goes below log order
                created_at = max(created_at, max(item.created_at for item in items))

            items.append(QueueItem(
                client_id=client_id,
                operation=op,
                table_name=table_name,
                record_id=target,
                data=data,
                created_at=created_at,
                depends_on=depends_on,
            ))
            return True, (target, depends_on)

        target, depends_on = self._mutate(append)

        try:
            self._mirror_mutation(op, table_name, client_id, record_id, target, data)
        except LocalStorageError as e:
            logger.error(f"Mirror update for queued {client_id} failed, the mutation stays queued: {e}")

        suffix = f" (waits for {depends_on})" if depends_on else ""
        if target != record_id and op is not Operation.INSERT:
            suffix = f" (addressed to remote id {target})"
        logger.info(f"Queued {op.value} on {table_name}/{record_id or client_id} as {client_id}{suffix}")
        return client_id

    def _mirror_mutation(self, op: Operation, table_name: str, client_id: str, record_id, target, data) -> None:
        if op is Operation.INSERT:
            self.mirror.put(table_name, client_id, data)
            return
        # A client_id that already has a remote id keeps its mirror alias current too
        keys = [target] if target == record_id else [target, record_id]
        for key in keys:
            if op is Operation.DELETE:
                self.mirror.remove(table_name, key)
            else:
                self.mirror.merge(table_name, key, data)

    def all_items(self) -> list[QueueItem]:
        return _load(self.storage.read(QUEUE_NAMESPACE))

    def get(self, client_id: str) -> QueueItem | None:
        for item in self.all_items():
            if item.client_id == client_id:
                return item
        return None

    def pending_items(self) -> list[QueueItem]:
        """Unprocessed items in the order they were enqueued."""
        return [item for item in self.all_items() if not item.processed]

    def pending_count(self) -> int:
        return sum(1 for item in self.all_items() if not item.processed)

    def has_pending_for(self, table_name: str, record_id) -> bool:
        """True if a queued, unprocessed item targets this record or is its INSERT."""
        key = str(record_id)
        return any(
            not item.processed and item.table_name == table_name
            and (item.record_id == key or item.client_id == key)
            for item in self.all_items()
        )

    def aliases(self, table_name: str) -> dict[str, str]:
        """client_id -> remote id for compacted INSERTs of one table."""
        return _load_aliases(table_name, self.storage.read(_alias_namespace(table_name)))

    def remote_id_for(self, table_name: str, client_id) -> str | None:
        """Remote id of an applied INSERT, looked up by the client_id it was queued under."""
        if client_id is None:
            return None
        key = str(client_id)
        for item in self.all_items():
            if item.client_id == key and item.operation is Operation.INSERT and item.table_name == table_name:
                return item.remote_id
        return self.aliases(table_name).get(key)

    def mark_processed(self, client_id: str, remote_id: str | None = None) -> bool:
        def apply(items: list[QueueItem]):
            for item in items:
                if item.client_id == client_id:
                    if item.processed:
                        return False, False
                    item.processed = True
                    item.error = None
                    item.last_attempt_at = utcnow()
                    if remote_id is not None:
                        item.remote_id = str(remote_id)
                    return True, True
            return False, False

        return self._mutate(apply)

    def mark_failed(self, client_id: str, error: str) -> bool:
        def apply(items: list[QueueItem]):
            for item in items:
                if item.client_id == client_id:
                    # A processed item stays processed
                    if item.processed:
                        return False, False
                    item.error = error
                    item.attempts += 1
                    item.last_attempt_at = utcnow()
                    return True, True
            return False, False

        return self._mutate(apply)

    def readdress(self, client_id: str, record_id: str) -> bool:
        """Points one unprocessed item at a different record id."""
        def apply(items: list[QueueItem]):
            for item in items:
                if item.client_id == client_id and not item.processed:
                    item.record_id = str(record_id)
                    return True, True
            return False, False

        return self._mutate(apply)

    def resolve_dependents(self, client_id: str, remote_id: str) -> int:
        """Points items waiting on an INSERT at the id the remote store assigned to it."""
        def apply(items: list[QueueItem]):
            resolved = 0
            for item in items:
                if item.depends_on == client_id and not item.processed:
                    item.record_id = str(remote_id)
                    item.depends_on = None
                    resolved += 1
            return resolved > 0, resolved

        resolved = self._mutate(apply)
        if resolved:
            logger.info(f"Re-addressed {resolved} queued item(s) from {client_id} to remote id {remote_id}")
        return resolved

    def _remember_remote_ids(self, items: list[QueueItem]) -> set[str]:
        by_table: dict[str, dict[str, str]] = {}
        for item in items:
            if _numbered_insert(item):
                by_table.setdefault(item.table_name, {})[item.client_id] = item.remote_id

        for table_name, ids in by_table.items():
            def apply(blob, table_name=table_name, ids=ids):
                aliases = _load_aliases(table_name, blob)
                aliases.update(ids)
                return json.dumps(aliases).encode(), None

            self.storage.update(_alias_namespace(table_name), apply)
        return {client_id for ids in by_table.values() for client_id in ids}

    def compact(self) -> int:
        """Drops processed items. Items appended concurrently are untouched.

        An applied INSERT is only dropped once its remote id is in the alias
        partition, so its client_id stays resolvable.
        """
        remembered = self._remember_remote_ids(self.all_items())

        def apply(items: list[QueueItem]):
            kept = [
                item for item in items
                if not item.processed or (_numbered_insert(item) and item.client_id not in remembered)
            ]
            removed = len(items) - len(kept)
            items[:] = kept
            return removed > 0, removed

        removed = self._mutate(apply)
        if removed:
            logger.info(f"Compacted write queue: removed {removed} processed item(s)")
        return removed
