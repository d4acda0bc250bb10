import json
import logging
from typing import Any

from offline_sync.errors import LocalStorageError
from offline_sync.storage import LocalStorage

logger = logging.getLogger(__name__)

MIRROR_PREFIX = "mirror:"


def _namespace(table_name: str) -> str:
    return f"{MIRROR_PREFIX}{table_name}"


def _decode(table_name: str, blob: bytes | None) -> dict[str, Any]:
    if not blob:
        return {}
    try:
        table = json.loads(blob)
    except ValueError as e:
        raise LocalStorageError(f"Mirror partition {table_name!r} is corrupted: {e}") from e
    if not isinstance(table, dict):
        raise LocalStorageError(f"Mirror partition {table_name!r} is not a mapping")
    return table


def _encode(table: dict[str, Any]) -> bytes | None:
    # An emptied partition is dropped instead of kept as "{}"
    return json.dumps(table).encode() if table else None


class MirrorStore:
    """Best-effort local copy of records, one storage partition per table.

    Keys are record identifiers, or the client_id of a queued INSERT that the
    remote store has not numbered yet. A miss means "unknown locally", never
    "does not exist remotely".
    """

    def __init__(self, storage: LocalStorage):
        self.storage = storage

    def get(self, table_name: str, key) -> dict[str, Any] | None:
        try:
            table = _decode(table_name, self.storage.read(_namespace(table_name)))
        except LocalStorageError:
            logger.exception(f"Mirror read failed for {table_name}/{key}, treating as absent")
            return None
        return table.get(str(key))

    def all(self, table_name: str) -> dict[str, dict[str, Any]]:
        try:
            return _decode(table_name, self.storage.read(_namespace(table_name)))
        except LocalStorageError:
            logger.exception(f"Mirror read failed for {table_name}, treating as empty")
            return {}

    def put(self, table_name: str, key, data: dict[str, Any]) -> None:
        def apply(blob):
            table = _decode(table_name, blob)
            table[str(key)] = data
            return _encode(table), None

        self.storage.update(_namespace(table_name), apply)
        logger.debug(f"Mirror updated: {table_name}/{key}")

    def merge(self, table_name: str, key, data: dict[str, Any]) -> dict[str, Any]:
        """Applies a partial update on top of the local entry and returns the result."""
        def apply(blob):
            table = _decode(table_name, blob)
            current = table.get(str(key))
            merged = {**(current if isinstance(current, dict) else {}), **data}
            table[str(key)] = merged
            return _encode(table), merged

        merged = self.storage.update(_namespace(table_name), apply)
        logger.debug(f"Mirror merged: {table_name}/{key}")
        return merged

    def remove(self, table_name: str, key) -> bool:
        def apply(blob):
            table = _decode(table_name, blob)
            removed = table.pop(str(key), None) is not None
            return _encode(table), removed

        removed = self.storage.update(_namespace(table_name), apply)
        if removed:
            logger.debug(f"Mirror entry removed: {table_name}/{key}")
        return removed

    def tables(self) -> list[str]:
        return [ns[len(MIRROR_PREFIX):] for ns in self.storage.namespaces(MIRROR_PREFIX)]
