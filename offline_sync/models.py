from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, TypeAdapter


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Operation(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class QueueItem(BaseModel):
    """One durable mutation intent waiting to be replayed against the remote store."""
    client_id: str
    operation: Operation
    table_name: str
    record_id: str | None = None
    data: dict[str, Any] | None = None
    created_at: datetime = Field(default_factory=utcnow)
    processed: bool = False
    error: str | None = None
    attempts: int = 0
    last_attempt_at: datetime | None = None
    # Identifier assigned by the remote store once an INSERT is applied
    remote_id: str | None = None
    # client_id of an earlier, still unsynced INSERT this item targets
    depends_on: str | None = None


QUEUE_ADAPTER = TypeAdapter(list[QueueItem])


class ConnectivityState(BaseModel):
    is_offline: bool
    last_online_at: datetime | None = None
    pending_count: int = 0


class SyncResult(BaseModel):
    succeeded: int = 0
    failed: int = 0
    deferred: int = 0
    # Another context held the sync lease, so this pass did nothing
    skipped: bool = False


class WriteResult(BaseModel):
    queued: bool
    client_id: str | None = None
    record_id: str | None = None
