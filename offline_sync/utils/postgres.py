import logging
from typing import Any

import asyncpg

from offline_sync.db import get_connection
from offline_sync.errors import RecordNotFoundError, RemoteStoreError

logger = logging.getLogger(__name__)

DEFAULT_KEY_COLUMNS = {"settings": "key"}
# Tables keyed by a natural key: a replayed UPDATE creates the row when it is missing
DEFAULT_UPSERT_TABLES = frozenset({"settings"})


def quote_ident(name: str) -> str:
    return '"' + str(name).replace('"', '""') + '"'


def _affected_rows(status: str) -> int:
    # asyncpg returns command tags such as "UPDATE 1" / "DELETE 0"
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0


class PostgresRemoteStore:
    """Applies queued mutations to a Postgres database with generated SQL.

    Tables are addressed by their key column ("id" unless overridden). Keys are
    compared as text so client-side string identifiers work for any key type.
    """

    def __init__(
        self,
        connection_factory=get_connection,
        key_columns: dict[str, str] | None = None,
        upsert_tables=None,
    ):
        self._connection = connection_factory
        self.key_columns = {**DEFAULT_KEY_COLUMNS, **(key_columns or {})}
        self.upsert_tables = DEFAULT_UPSERT_TABLES if upsert_tables is None else frozenset(upsert_tables)

    def key_column(self, table_name: str) -> str:
        return self.key_columns.get(table_name, "id")

    async def _run(self, method: str, sql: str, *args):
        try:
            async with self._connection() as conn:
                return await getattr(conn, method)(sql, *args)
        except (asyncpg.PostgresError, OSError, ConnectionError) as e:
            raise RemoteStoreError(f"{type(e).__name__}: {e}") from e

    async def create(self, table_name: str, data: dict[str, Any]) -> Any:
        key = quote_ident(self.key_column(table_name))
        if data:
            columns = ", ".join(quote_ident(column) for column in data)
            placeholders = ", ".join(f"${i}" for i in range(1, len(data) + 1))
            sql = f"INSERT INTO {quote_ident(table_name)} ({columns}) VALUES ({placeholders}) RETURNING {key}"
        else:
            sql = f"INSERT INTO {quote_ident(table_name)} DEFAULT VALUES RETURNING {key}"
        new_id = await self._run("fetchval", sql, *data.values())
        logger.info(f"Inserted into {table_name}, remote id {new_id}")
        return new_id

    async def update(self, table_name: str, record_id: str, data: dict[str, Any]) -> None:
        if not data:
            raise RemoteStoreError(f"Nothing to update for {table_name}/{record_id}")
        if table_name in self.upsert_tables:
            await self._upsert(table_name, record_id, data)
            return
        assignments = ", ".join(f"{quote_ident(column)} = ${i}" for i, column in enumerate(data, start=1))
        sql = (
            f"UPDATE {quote_ident(table_name)} SET {assignments} "
            f"WHERE {quote_ident(self.key_column(table_name))}::text = ${len(data) + 1}"
        )
        status = await self._run("execute", sql, *data.values(), str(record_id))
        if _affected_rows(status) == 0:
            raise RecordNotFoundError(table_name, record_id)
        logger.info(f"Updated {table_name}/{record_id}")

    async def _upsert(self, table_name: str, record_id: str, data: dict[str, Any]) -> None:
        key_column = self.key_column(table_name)
        fields = {column: value for column, value in data.items() if column != key_column}
        columns = [key_column, *fields]
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        if fields:
            assignments = ", ".join(f"{quote_ident(column)} = EXCLUDED.{quote_ident(column)}" for column in fields)
            conflict = f"DO UPDATE SET {assignments}"
        else:
            conflict = "DO NOTHING"
        sql = (
            f"INSERT INTO {quote_ident(table_name)} ({', '.join(quote_ident(column) for column in columns)}) "
            f"VALUES ({placeholders}) ON CONFLICT ({quote_ident(key_column)}) {conflict}"
        )
        await self._run("execute", sql, str(record_id), *fields.values())
        logger.info(f"Upserted {table_name}/{record_id}")

    async def delete(self, table_name: str, record_id: str) -> None:
        sql = (
            f"DELETE FROM {quote_ident(table_name)} "
            f"WHERE {quote_ident(self.key_column(table_name))}::text = $1"
        )
        status = await self._run("execute", sql, str(record_id))
        if _affected_rows(status) == 0:
            # Replayed DELETE of a row that is already gone
            logger.info(f"{table_name}/{record_id} was already deleted remotely")
        else:
            logger.info(f"Deleted {table_name}/{record_id}")
