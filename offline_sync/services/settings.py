import logging

from offline_sync.client import OfflineClient
from offline_sync.db import get_connection
from offline_sync.errors import LocalStorageError
from offline_sync.models import Operation

logger = logging.getLogger(__name__)

SETTINGS_TABLE = "settings"


class SettingsService:
    """Key/value application settings that keep working offline.

    Remote reads refresh the local mirror; offline or failed writes are queued
    as UPDATE settings/<key> and replayed by the sync engine. The Postgres
    remote store replays UPDATEs on ``settings`` as upserts, so a key set
    offline is created remotely if it does not exist yet.
    """

    def __init__(self, client: OfflineClient, connection_factory=get_connection):
        self.client = client
        self._connection = connection_factory

    def _local_value(self, key: str) -> str | None:
        setting = self.client.mirror_get(SETTINGS_TABLE, key)
        return setting.get("value") if setting else None

    async def get_setting(self, key: str, default: str = "", is_offline: bool = False) -> str:
        if not is_offline:
            try:
                async with self._connection() as conn:
                    value = await conn.fetchval("SELECT value FROM settings WHERE key = $1", key)
                if value is not None:
                    self.client.mirror.put(SETTINGS_TABLE, key, {"value": value})
                    return value
            except Exception as e:
                logger.error(f"Error getting setting {key}: {e}")

        value = self._local_value(key)
        return default if value is None else value

    async def set_setting(self, key: str, value: str, is_offline: bool = False) -> bool:
        if not is_offline:
            try:
                async with self._connection() as conn:
                    await conn.execute("""
                        INSERT INTO settings (key, value, updated_at)
                        VALUES ($1, $2, now())
                        ON CONFLICT (key) DO UPDATE SET
                            value = EXCLUDED.value,
                            updated_at = now()
                    """, key, value)
                self.client.mirror.put(SETTINGS_TABLE, key, {"value": value})
                logger.info(f"Setting {key} saved")
                return True
            except Exception as e:
                logger.error(f"Error setting {key}, queueing for sync: {e}")

        try:
            self.client.enqueue(Operation.UPDATE, SETTINGS_TABLE, key, {"value": value})
            return True
        except LocalStorageError as e:
            logger.error(f"Error queueing setting update for {key}: {e}")
            return False

    async def get_all_settings(self, is_offline: bool = False) -> dict[str, str]:
        settings: dict[str, str] = {}
        if not is_offline:
            try:
                async with self._connection() as conn:
                    rows = await conn.fetch("SELECT key, value FROM settings")
                settings = {row["key"]: row["value"] for row in rows}
            except Exception as e:
                logger.error(f"Error getting all settings: {e}")

        # Local values win: they include changes not synced yet
        for key, setting in self.client.mirror.all(SETTINGS_TABLE).items():
            if isinstance(setting, dict) and "value" in setting:
                settings[key] = setting["value"]
        return settings
