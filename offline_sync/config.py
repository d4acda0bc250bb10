import os

# --- Remote store ---
DATABASE_URL = os.getenv("DATABASE_URL")
REMOTE_API_URL = os.getenv("REMOTE_API_URL")
REMOTE_API_TOKEN = os.getenv("REMOTE_API_TOKEN")
PROBE_URL = os.getenv("PROBE_URL")

# --- Local durable storage ---
OFFLINE_DB_PATH = os.getenv("OFFLINE_DB_PATH", "offline_sync.db")

# --- Timeouts and intervals (seconds) ---
HTTP_TIMEOUT = float(os.getenv("HTTP_TIMEOUT", "15.0"))
ITEM_TIMEOUT = float(os.getenv("ITEM_TIMEOUT", "15.0"))
POLL_INTERVAL = float(os.getenv("POLL_INTERVAL", "5.0"))
SYNC_INTERVAL = float(os.getenv("SYNC_INTERVAL", "300.0"))
SYNC_LEASE_TTL = float(os.getenv("SYNC_LEASE_TTL", "120.0"))

# --- Worker ---
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://redis:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "redis://redis:6379/0")
LOG_FILE = os.getenv("LOG_FILE", "offline_sync_worker.log")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
