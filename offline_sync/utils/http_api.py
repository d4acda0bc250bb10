import logging
from typing import Any

import httpx

from offline_sync.config import HTTP_TIMEOUT, REMOTE_API_TOKEN, REMOTE_API_URL
from offline_sync.errors import RecordNotFoundError, RemoteStoreError

logger = logging.getLogger(__name__)


class HttpRemoteStore:
    """REST flavour of the remote store.

    POST /{table} creates and must answer with the new record (or at least its
    id field), PATCH /{table}/{id} updates, DELETE /{table}/{id} removes.
    """

    def __init__(
        self,
        base_url: str | None = REMOTE_API_URL,
        token: str | None = REMOTE_API_TOKEN,
        timeout: float = HTTP_TIMEOUT,
        id_field: str = "id",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not base_url:
            raise ValueError("Missing REMOTE_API_URL configuration.")
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.id_field = id_field
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept-Encoding": "gzip"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _request(self, method: str, path: str, table_name: str, record_id=None, json=None) -> httpx.Response:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers(),
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, json=json)
                response.raise_for_status()
                return response
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404 and record_id is not None:
                raise RecordNotFoundError(table_name, record_id) from e
            raise RemoteStoreError(f"HTTP Error: {e.response.status_code} - {e.response.text}") from e
        except httpx.RequestError as e:
            raise RemoteStoreError(f"Network Error: {e}") from e

    async def create(self, table_name: str, data: dict[str, Any]) -> Any:
        response = await self._request("POST", f"/{table_name}", table_name, json=data)
        try:
            body = response.json()
        except ValueError as e:
            raise RemoteStoreError(f"Invalid API response format for {table_name}: {e}") from e
        if not isinstance(body, dict) or self.id_field not in body:
            raise RemoteStoreError(f"Invalid API response format for {table_name}: {body}")
        logger.info(f"Created {table_name} record {body[self.id_field]}")
        return body[self.id_field]

    async def update(self, table_name: str, record_id: str, data: dict[str, Any]) -> None:
        await self._request("PATCH", f"/{table_name}/{record_id}", table_name, record_id, json=data)
        logger.info(f"Updated {table_name}/{record_id}")

    async def delete(self, table_name: str, record_id: str) -> None:
        try:
            await self._request("DELETE", f"/{table_name}/{record_id}", table_name, record_id)
        except RecordNotFoundError:
            logger.info(f"{table_name}/{record_id} was already deleted remotely")
            return
        logger.info(f"Deleted {table_name}/{record_id}")
