import logging

from celery import Celery
from celery.signals import worker_process_init, worker_process_shutdown

from offline_sync.config import (
    CELERY_BROKER_URL,
    CELERY_RESULT_BACKEND,
    LOG_FILE,
    LOG_LEVEL,
    OFFLINE_DB_PATH,
    SYNC_INTERVAL,
)
from offline_sync.storage import SqliteStorage

# --- Logging ---
logging.basicConfig(
    level=LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(LOG_FILE),
        logging.StreamHandler(),
    ]
)
logger = logging.getLogger(__name__)

celery_app = Celery(
    'offline_sync',
    broker=CELERY_BROKER_URL,
    backend=CELERY_RESULT_BACKEND,
    include=['offline_sync.tasks.sync'],
)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,
    beat_schedule={
        'sync-pending-mutations': {
            'task': 'sync_pending',
            'schedule': SYNC_INTERVAL,
        },
        'compact-write-queue-hourly': {
            'task': 'compact_queue',
            'schedule': 3600.0,
        },
    }
)

# Opened after fork, one per worker process
LOCAL_STORAGE: SqliteStorage | None = None


def get_local_storage() -> SqliteStorage:
    global LOCAL_STORAGE
    if LOCAL_STORAGE is None:
        LOCAL_STORAGE = SqliteStorage(OFFLINE_DB_PATH)
    return LOCAL_STORAGE


@worker_process_init.connect
def on_worker_init(**kwargs):
    """Opens the local storage when a worker process starts."""
    logger.info("Worker process initializing... Opening local storage.")
    get_local_storage()


@worker_process_shutdown.connect
def on_worker_shutdown(**kwargs):
    """Closes the local storage when a worker process stops."""
    global LOCAL_STORAGE
    logger.info("Worker process shutting down... Closing local storage.")
    if LOCAL_STORAGE is not None:
        LOCAL_STORAGE.close()
        LOCAL_STORAGE = None


if __name__ == '__main__':
    celery_app.start()
