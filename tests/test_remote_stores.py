import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from offline_sync.errors import RecordNotFoundError, RemoteStoreError
from offline_sync.utils.http_api import HttpRemoteStore
from offline_sync.utils.postgres import PostgresRemoteStore, quote_ident


def make_connection_factory(conn):
    ctx = MagicMock()
    ctx.__aenter__ = AsyncMock(return_value=conn)
    ctx.__aexit__ = AsyncMock(return_value=False)
    return lambda: ctx


class TestPostgresRemoteStore:

    async def test_create_builds_insert_returning_key(self):
        conn = MagicMock()
        conn.fetchval = AsyncMock(return_value=42)
        store = PostgresRemoteStore(make_connection_factory(conn))

        new_id = await store.create("users", {"email": "a@b.com", "name": "Ada"})

        assert new_id == 42
        conn.fetchval.assert_awaited_once_with(
            'INSERT INTO "users" ("email", "name") VALUES ($1, $2) RETURNING "id"',
            "a@b.com", "Ada",
        )

    async def test_create_without_fields(self):
        conn = MagicMock()
        conn.fetchval = AsyncMock(return_value=1)
        store = PostgresRemoteStore(make_connection_factory(conn))

        await store.create("scans", {})

        conn.fetchval.assert_awaited_once_with('INSERT INTO "scans" DEFAULT VALUES RETURNING "id"')

    async def test_update_uses_table_key_column(self):
        conn = MagicMock()
        conn.execute = AsyncMock(return_value="UPDATE 1")
        store = PostgresRemoteStore(make_connection_factory(conn), key_columns={"modules": "slug"})

        await store.update("modules", "billing", {"enabled": True})

        conn.execute.assert_awaited_once_with(
            'UPDATE "modules" SET "enabled" = $1 WHERE "slug"::text = $2', True, "billing",
        )

    async def test_update_of_natural_key_table_is_an_upsert(self):
        conn = MagicMock()
        conn.execute = AsyncMock(return_value="INSERT 0 1")
        store = PostgresRemoteStore(make_connection_factory(conn))

        await store.update("settings", "theme", {"value": "dark"})

        conn.execute.assert_awaited_once_with(
            'INSERT INTO "settings" ("key", "value") VALUES ($1, $2) '
            'ON CONFLICT ("key") DO UPDATE SET "value" = EXCLUDED."value"',
            "theme", "dark",
        )

    async def test_upsert_with_only_the_key_does_nothing_on_conflict(self):
        conn = MagicMock()
        conn.execute = AsyncMock(return_value="INSERT 0 0")
        store = PostgresRemoteStore(make_connection_factory(conn), upsert_tables={"tags"})

        await store.update("tags", "7", {"id": "7"})

        conn.execute.assert_awaited_once_with(
            'INSERT INTO "tags" ("id") VALUES ($1) ON CONFLICT ("id") DO NOTHING', "7",
        )

    async def test_update_of_missing_row_fails(self):
        conn = MagicMock()
        conn.execute = AsyncMock(return_value="UPDATE 0")
        store = PostgresRemoteStore(make_connection_factory(conn))

        with pytest.raises(RecordNotFoundError):
            await store.update("users", "99", {"name": "Ada"})

    async def test_delete_of_missing_row_is_accepted(self):
        conn = MagicMock()
        conn.execute = AsyncMock(return_value="DELETE 0")
        store = PostgresRemoteStore(make_connection_factory(conn))

        await store.delete("users", "99")

        conn.execute.assert_awaited_once_with('DELETE FROM "users" WHERE "id"::text = $1', "99")

    async def test_driver_errors_become_remote_errors(self):
        conn = MagicMock()
        conn.fetchval = AsyncMock(side_effect=OSError("connection reset"))
        store = PostgresRemoteStore(make_connection_factory(conn))

        with pytest.raises(RemoteStoreError):
            await store.create("users", {"email": "a@b.com"})

    async def test_missing_pool_is_a_remote_error(self):
        def no_pool():
            raise ConnectionError("Database pool not available")

        with pytest.raises(RemoteStoreError):
            await PostgresRemoteStore(no_pool).delete("users", "1")

    def test_quote_ident_escapes_quotes(self):
        assert quote_ident('we"ird') == '"we""ird"'


class TestHttpRemoteStore:

    def make_store(self, handler, **kwargs):
        return HttpRemoteStore("http://remote/api", token="secret",
                               transport=httpx.MockTransport(handler), **kwargs)

    async def test_create_posts_and_returns_id(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(201, json={"id": 42, **json.loads(request.content)})

        new_id = await self.make_store(handler).create("users", {"email": "a@b.com"})

        assert new_id == 42
        assert seen[0].method == "POST"
        assert seen[0].url.path == "/api/users"
        assert seen[0].headers["Authorization"] == "Bearer secret"

    async def test_create_with_invalid_body(self):
        store = self.make_store(lambda request: httpx.Response(200, json={"ok": True}))

        with pytest.raises(RemoteStoreError):
            await store.create("users", {"email": "a@b.com"})

    async def test_update_patches_record(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(204)

        await self.make_store(handler).update("users", "7", {"name": "Ada"})

        assert seen[0].method == "PATCH"
        assert seen[0].url.path == "/api/users/7"
        assert json.loads(seen[0].content) == {"name": "Ada"}

    async def test_update_404_is_record_not_found(self):
        store = self.make_store(lambda request: httpx.Response(404))

        with pytest.raises(RecordNotFoundError):
            await store.update("users", "7", {"name": "Ada"})

    async def test_delete_404_is_accepted(self):
        store = self.make_store(lambda request: httpx.Response(404))
        await store.delete("users", "7")

    async def test_server_error(self):
        store = self.make_store(lambda request: httpx.Response(503, text="maintenance"))

        with pytest.raises(RemoteStoreError, match="503"):
            await store.delete("users", "7")

    async def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(RemoteStoreError, match="Network Error"):
            await self.make_store(handler).create("users", {"email": "a@b.com"})

    def test_requires_base_url(self):
        with pytest.raises(ValueError):
            HttpRemoteStore(None)
