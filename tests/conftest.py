import itertools

import pytest

from offline_sync.errors import RecordNotFoundError, RemoteStoreError
from offline_sync.mirror import MirrorStore
from offline_sync.storage import MemoryStorage, SqliteStorage
from offline_sync.write_queue import WriteQueue


class FakeRemote:
    """In-memory remote store that records every call in order."""

    def __init__(self, first_id=1):
        self.tables: dict[str, dict[str, dict]] = {}
        self.calls: list[tuple] = []
        # table name -> number of upcoming calls to reject
        self.failures: dict[str, int] = {}
        self._ids = itertools.count(first_id)

    def _maybe_fail(self, table_name):
        remaining = self.failures.get(table_name, 0)
        if remaining:
            self.failures[table_name] = remaining - 1
            raise RemoteStoreError(f"{table_name} unavailable")

    async def create(self, table_name, data):
        self.calls.append(("create", table_name, None, dict(data)))
        self._maybe_fail(table_name)
        new_id = next(self._ids)
        self.tables.setdefault(table_name, {})[str(new_id)] = dict(data)
        return new_id

    async def update(self, table_name, record_id, data):
        self.calls.append(("update", table_name, record_id, dict(data)))
        self._maybe_fail(table_name)
        table = self.tables.setdefault(table_name, {})
        if record_id not in table:
            raise RecordNotFoundError(table_name, record_id)
        table[record_id].update(data)

    async def delete(self, table_name, record_id):
        self.calls.append(("delete", table_name, record_id, None))
        self._maybe_fail(table_name)
        self.tables.setdefault(table_name, {}).pop(record_id, None)


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def sqlite_storage(tmp_path):
    storage = SqliteStorage(tmp_path / "offline.db")
    yield storage
    storage.close()


@pytest.fixture
def mirror(storage):
    return MirrorStore(storage)


@pytest.fixture
def queue(storage, mirror):
    return WriteQueue(storage, mirror)


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def remote_factory():
    return FakeRemote
