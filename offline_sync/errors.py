class OfflineSyncError(Exception):
    """Base class for every error raised by offline_sync."""


class LocalStorageError(OfflineSyncError):
    """Durable local storage is unavailable, full or holds unreadable data."""


class InvalidMutationError(OfflineSyncError, ValueError):
    """A mutation was rejected before it reached the queue."""


class RemoteStoreError(OfflineSyncError):
    """The remote store failed to apply a mutation. Always retryable."""


class RecordNotFoundError(RemoteStoreError):
    def __init__(self, table_name: str, record_id):
        super().__init__(f"Record {record_id!r} not found in {table_name!r}")
        self.table_name = table_name
        self.record_id = record_id
