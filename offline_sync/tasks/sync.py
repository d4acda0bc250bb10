import asyncio
import logging

from offline_sync.client import OfflineClient
from offline_sync.db import db_pool
from offline_sync.utils.postgres import PostgresRemoteStore
from offline_sync.worker import celery_app, get_local_storage
from offline_sync.write_queue import WriteQueue

logger = logging.getLogger(__name__)


def build_client() -> OfflineClient:
    return OfflineClient(get_local_storage(), PostgresRemoteStore())


async def _sync_pending() -> dict:
    # The asyncpg pool is bound to the loop asyncio.run creates for this task
    async with db_pool() as pool:
        if pool is None:
            logger.info("Remote store unreachable, leaving queue for the next run")
            return {"succeeded": 0, "failed": 0, "deferred": 0, "skipped": True}
        client = build_client()
        result = await client.sync_once()
    return result.model_dump()


@celery_app.task(name="sync_pending")
def sync_pending_task():
    """Celery task: replays queued mutations against the remote store."""
    logger.info("Running sync_pending task")
    result = asyncio.run(_sync_pending())
    logger.info(f"sync_pending finished: {result}")
    return result


@celery_app.task(name="compact_queue")
def compact_queue_task():
    """Celery task: drops processed items from the write queue."""
    removed = WriteQueue(get_local_storage()).compact()
    logger.info(f"compact_queue removed {removed} item(s)")
    return removed
