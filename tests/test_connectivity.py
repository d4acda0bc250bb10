import asyncio
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from offline_sync.connectivity import (
    LAST_ONLINE_NAMESPACE,
    ConnectivityMonitor,
    http_probe,
    postgres_probe,
)
from offline_sync.errors import LocalStorageError
from offline_sync.models import SyncResult


class ScriptedProbe:
    def __init__(self, *answers):
        self.answers = list(answers)

    async def __call__(self):
        answer = self.answers.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer


@pytest.fixture
def engine():
    engine = MagicMock()
    engine.sync_once = AsyncMock(return_value=SyncResult())
    return engine


class TestConnectivityMonitor:

    def test_offline_until_first_probe(self, queue, engine):
        monitor = ConnectivityMonitor(ScriptedProbe(), queue, engine)
        status = monitor.current_status()

        assert status.is_offline is True
        assert status.last_online_at is None
        assert status.pending_count == 0

    async def test_coming_online_triggers_one_sync(self, queue, engine):
        monitor = ConnectivityMonitor(ScriptedProbe(True, True, True), queue, engine)

        await monitor.check()
        await monitor.check()
        await monitor.check()

        assert engine.sync_once.await_count == 1
        assert monitor.current_status().is_offline is False

    async def test_each_reconnect_triggers_a_sync(self, queue, engine):
        monitor = ConnectivityMonitor(ScriptedProbe(True, False, True), queue, engine)

        await monitor.check()
        status = await monitor.check()
        assert status.is_offline is True
        await monitor.check()

        assert engine.sync_once.await_count == 2

    async def test_going_offline_has_no_side_effect(self, queue, engine):
        monitor = ConnectivityMonitor(ScriptedProbe(True, False), queue, engine)
        await monitor.check()
        first_online = monitor.last_online_at

        await monitor.check()

        assert engine.sync_once.await_count == 1
        assert monitor.last_online_at == first_online

    async def test_probe_error_counts_as_offline(self, queue, engine):
        monitor = ConnectivityMonitor(ScriptedProbe(OSError("no route")), queue, engine)

        status = await monitor.check()

        assert status.is_offline is True
        engine.sync_once.assert_not_awaited()

    async def test_last_online_is_persisted(self, queue, engine, storage):
        monitor = ConnectivityMonitor(ScriptedProbe(True), queue, engine)
        await monitor.check()

        assert storage.read(LAST_ONLINE_NAMESPACE) is not None
        reloaded = ConnectivityMonitor(ScriptedProbe(), queue, engine)
        assert reloaded.last_online_at == monitor.last_online_at

    async def test_pending_count_reflects_queue(self, queue, engine):
        monitor = ConnectivityMonitor(ScriptedProbe(False), queue, engine)
        queue.enqueue("INSERT", "users", data={"n": 1})
        queue.enqueue("INSERT", "users", data={"n": 2})

        status = await monitor.check()

        assert status.pending_count == 2

    def test_status_never_fails(self, queue, engine, monkeypatch):
        monitor = ConnectivityMonitor(ScriptedProbe(), queue, engine)

        def broken():
            raise LocalStorageError("unreadable")

        monkeypatch.setattr(queue, "pending_count", broken)
        assert monitor.current_status().pending_count == 0

    async def test_poll_loop(self, queue, engine):
        monitor = ConnectivityMonitor(ScriptedProbe(False, False, True, True, True, True),
                                      queue, engine, poll_interval=0.01)

        await monitor.start()
        for _ in range(100):
            if engine.sync_once.await_count:
                break
            await asyncio.sleep(0.01)
        await monitor.stop()

        assert engine.sync_once.await_count == 1


class TestProbes:

    async def test_http_probe(self, monkeypatch):
        def handler(request):
            return httpx.Response(200 if request.url.path == "/health" else 503)

        transport = httpx.MockTransport(handler)
        original = httpx.AsyncClient

        def client_factory(*args, **kwargs):
            return original(*args, transport=transport, **kwargs)

        monkeypatch.setattr(httpx, "AsyncClient", client_factory)

        assert await http_probe("http://remote/health")() is True
        assert await http_probe("http://remote/down")() is False

    async def test_http_probe_network_error(self, monkeypatch):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        transport = httpx.MockTransport(handler)
        original = httpx.AsyncClient
        monkeypatch.setattr(httpx, "AsyncClient", lambda *a, **kw: original(*a, transport=transport, **kw))

        assert await http_probe("http://remote/health")() is False

    def test_http_probe_requires_url(self):
        with pytest.raises(ValueError):
            http_probe(None)

    async def test_postgres_probe(self):
        conn = MagicMock()
        conn.fetchval = AsyncMock(return_value=1)
        ctx = MagicMock()
        ctx.__aenter__ = AsyncMock(return_value=conn)
        ctx.__aexit__ = AsyncMock(return_value=False)

        assert await postgres_probe(lambda: ctx)() is True

    async def test_postgres_probe_without_pool(self):
        def no_pool():
            raise ConnectionError("Database pool not available")

        assert await postgres_probe(no_pool)() is False
