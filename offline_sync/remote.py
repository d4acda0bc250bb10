from typing import Any, Protocol


class RemoteStore(Protocol):
    """The backing store the queue is replayed against.

    Any exception raised by these calls is treated as a retryable failure.
    """

    async def create(self, table_name: str, data: dict[str, Any]) -> Any: ...

    async def update(self, table_name: str, record_id: str, data: dict[str, Any]) -> None: ...

    async def delete(self, table_name: str, record_id: str) -> None: ...
