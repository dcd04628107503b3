"""SQLite-backed durable key-value store with a synced area and a local area.

Values are stored as JSON. Each area has a byte quota; writes that would push
an area past its quota trigger a best-effort trim of history/feedback and one
retry.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Optional, Union

import aiosqlite

from taskguard.config import StorageConfig

logger = logging.getLogger(__name__)

LOCAL = "local"
SYNC = "sync"
AREAS = (LOCAL, SYNC)


class StorageKeys:
    API_KEY = "api_key"
    TASKS = "tasks"
    CURRENT_TASK = "current_task"
    ENABLED = "enabled"
    TASK_VALIDATION_ENABLED = "task_validation_enabled"
    ALLOWLIST = "allowlist"
    BLOCKED_SITES = "blocked_sites"
    STATS = "stats"
    FEEDBACK = "feedback"
    TEMPORARY_BYPASS = "temporary_bypass"
    ONE_TIME_BYPASS = "one_time_bypass"


SETTINGS_KEYS = [
    StorageKeys.API_KEY,
    StorageKeys.TASKS,
    StorageKeys.CURRENT_TASK,
    StorageKeys.ENABLED,
    StorageKeys.TASK_VALIDATION_ENABLED,
    StorageKeys.ALLOWLIST,
]


class StorageError(Exception):
    """Raised when the underlying database cannot be read or written."""


class QuotaExceededError(StorageError):
    """Raised when a write would push an area past its byte quota."""


TRIMMABLE_KEYS = (StorageKeys.BLOCKED_SITES, StorageKeys.FEEDBACK)


def _encoded_size(data: dict) -> int:
    return len(json.dumps(data, separators=(",", ":")))


def _decode_rows(rows) -> dict[str, Any]:
    decoded = {}
    for key, value in rows:
        try:
            decoded[key] = json.loads(value)
        except json.JSONDecodeError as e:
            raise StorageError(f"Corrupt value for {key!r}: {e}") from e
    return decoded


def _drop_older_half(data: dict[str, Any]) -> dict[str, Any]:
    """History and feedback lists cut to their newer half; other keys omitted."""
    return {
        key: value[len(value) // 2:]
        for key, value in data.items()
        if key in TRIMMABLE_KEYS and isinstance(value, list) and value
    }


class KeyValueStore:
    def __init__(self, db_path: str, limits: Optional[StorageConfig] = None):
        self.db_path = db_path
        self.limits = limits or StorageConfig()
        self.quotas = {SYNC: self.limits.sync_max_bytes, LOCAL: self.limits.local_max_bytes}
        self._db: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()

    async def connect(self):
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self.db_path)
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS kv (
                area TEXT NOT NULL,
                key TEXT NOT NULL,
                value TEXT NOT NULL,
                PRIMARY KEY (area, key)
            )
        """)
        await self._db.commit()

    async def close(self):
        if self._db:
            await self._db.close()
            self._db = None

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StorageError("Store is not connected")
        return self._db

    # ── Reads ────────────────────────────────────────────────────────────────

    async def get(self, keys: Union[str, list[str]], area: str = LOCAL) -> dict[str, Any]:
        keys = [keys] if isinstance(keys, str) else list(keys)
        if not keys:
            return {}
        placeholders = ",".join("?" for _ in keys)
        try:
            cursor = await self._conn().execute(
                f"SELECT key, value FROM kv WHERE area = ? AND key IN ({placeholders})",
                (area, *keys),
            )
            rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise StorageError(f"Storage get failed: {e}") from e
        return _decode_rows(rows)

    async def get_all(self, area: str = LOCAL) -> dict[str, Any]:
        try:
            cursor = await self._conn().execute(
                "SELECT key, value FROM kv WHERE area = ?", (area,)
            )
            rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise StorageError(f"Storage get_all failed: {e}") from e
        return _decode_rows(rows)

    # ── Writes ───────────────────────────────────────────────────────────────

    def clean_for_storage(self, data: dict[str, Any]) -> dict[str, Any]:
        """Trim bounded collections to their configured caps, keeping the newest."""
        cleaned = dict(data)
        caps = {
            StorageKeys.BLOCKED_SITES: self.limits.max_blocked_sites,
            StorageKeys.TASKS: self.limits.max_tasks,
            StorageKeys.FEEDBACK: self.limits.max_feedback,
        }
        for key, cap in caps.items():
            value = cleaned.get(key)
            if isinstance(value, list) and len(value) > cap:
                cleaned[key] = value[-cap:]
        return cleaned

    async def set(self, data: dict[str, Any], area: str = LOCAL):
        cleaned = self.clean_for_storage(data)
        try:
            await self._write(cleaned, area)
        except QuotaExceededError as e:
            logger.warning("%s; trimming %s storage and retrying", e, area)
            await self.cleanup_area(area)
            # Outgoing history/feedback lists replace the stored ones, so trim them too
            cleaned.update(_drop_older_half(cleaned))
            await self._write(cleaned, area)
        logger.debug("Stored %s in %s storage", list(cleaned), area)

    async def _write(self, data: dict[str, Any], area: str, check_quota: bool = True):
        async with self._write_lock:
            if check_quota:
                projected = {**await self.get_all(area), **data}
                size = _encoded_size(projected)
                if size > self.quotas[area]:
                    raise QuotaExceededError(
                        f"{area} storage quota exceeded ({size} > {self.quotas[area]} bytes)"
                    )
            try:
                await self._conn().executemany(
                    "INSERT OR REPLACE INTO kv (area, key, value) VALUES (?, ?, ?)",
                    [(area, key, json.dumps(value)) for key, value in data.items()],
                )
                await self._conn().commit()
            except aiosqlite.Error as e:
                raise StorageError(f"Storage set failed: {e}") from e

    async def remove(self, keys: Union[str, list[str]], area: str = LOCAL):
        keys = [keys] if isinstance(keys, str) else list(keys)
        try:
            await self._conn().executemany(
                "DELETE FROM kv WHERE area = ? AND key = ?",
                [(area, key) for key in keys],
            )
            await self._conn().commit()
        except aiosqlite.Error as e:
            raise StorageError(f"Storage remove failed: {e}") from e
        logger.debug("Removed %s from %s storage", keys, area)

    async def clear(self, area: str = LOCAL):
        try:
            await self._conn().execute("DELETE FROM kv WHERE area = ?", (area,))
            await self._conn().commit()
        except aiosqlite.Error as e:
            raise StorageError(f"Storage clear failed: {e}") from e
        logger.info("%s storage cleared", area)

    # ── Maintenance ──────────────────────────────────────────────────────────

    async def cleanup_area(self, area: str = LOCAL):
        """Drop the older half of the history and feedback lists in ``area``."""
        trimmed = _drop_older_half(await self.get(list(TRIMMABLE_KEYS), area))
        if trimmed:
            await self._write(trimmed, area, check_quota=False)
            logger.info(
                "Trimmed %s storage: %s",
                area, {k: len(v) for k, v in trimmed.items()},
            )

    async def emergency_cleanup(self):
        """Clear any area that is already over quota (e.g. after a config change)."""
        for area in AREAS:
            try:
                size = _encoded_size(await self.get_all(area))
                if size > self.quotas[area]:
                    logger.warning("Emergency cleanup: clearing oversized %s storage (%d bytes)", area, size)
                    await self.clear(area)
            except StorageError as e:
                logger.error("Emergency cleanup failed for %s: %s", area, e)

    async def migrate_sync_to_local(self) -> bool:
        """Copy synced keys that the local area lacks, then clear the sync area.

        Keys already present locally win. Returns True when anything was copied.
        """
        sync_data = await self.get_all(SYNC)
        local_data = await self.get_all(LOCAL)
        missing = {k: v for k, v in sync_data.items() if k not in local_data}
        if not missing:
            return False
        logger.info("Migrating %d keys from sync to local storage", len(missing))
        await self.set(missing, LOCAL)
        await self.clear(SYNC)
        return True

    async def storage_info(self) -> dict:
        info = {}
        for area in AREAS:
            data = await self.get_all(area)
            info[area] = {
                "size": _encoded_size(data),
                "keys": len(data),
                "limit": self.quotas[area],
            }
        return info
