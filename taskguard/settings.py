"""User settings backed by the durable store.

Every read goes to the store; nothing here is cached across calls, so edits
made through the API (or a restart) are visible to the next navigation.
"""

import logging
import time
from typing import Callable, Optional

from pydantic import ValidationError

from taskguard.models import CurrentTask, FeedbackEntry, Settings
from taskguard.storage import LOCAL, SETTINGS_KEYS, SYNC, KeyValueStore, StorageError, StorageKeys
from taskguard.urls import extract_hostname

logger = logging.getLogger(__name__)


class SettingsError(ValueError):
    """Raised for invalid user input (bad task index, empty host, ...)."""


def mask_secret(secret: str, visible: int = 4) -> str:
    if not secret or len(secret) <= visible:
        return "***"
    return "***" + secret[-visible:]


class SettingsManager:
    def __init__(
        self,
        store: KeyValueStore,
        fallback_api_key: str = "",
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.fallback_api_key = fallback_api_key
        self._clock = clock

    async def load(self) -> Settings:
        """Read settings from the local area, migrating from sync on first use.

        Storage failures yield defaults (empty allowlist, no key), which makes
        the gatekeeper fail open rather than grant anything.
        """
        try:
            result = await self.store.get(SETTINGS_KEYS, LOCAL)
            if not result.get(StorageKeys.API_KEY) and not result.get(StorageKeys.TASKS):
                synced = await self.store.get(SETTINGS_KEYS, SYNC)
                if synced:
                    logger.info("No key or tasks in local storage, migrating from sync")
                    await self.store.migrate_sync_to_local()
                    # Local edits always win over legacy synced values
                    result = {**synced, **result}
        except StorageError as e:
            logger.error("Error loading settings, using defaults: %s", e)
            return Settings(api_key=self.fallback_api_key)

        allowlist = result.get(StorageKeys.ALLOWLIST)
        current = result.get(StorageKeys.CURRENT_TASK)
        try:
            current_task = CurrentTask.model_validate(current) if current else None
        except ValidationError:
            logger.warning("Discarding malformed current task: %r", current)
            current_task = None

        return Settings(
            api_key=result.get(StorageKeys.API_KEY) or self.fallback_api_key,
            tasks=[t for t in result.get(StorageKeys.TASKS) or [] if isinstance(t, str)],
            current_task=current_task,
            enabled=result.get(StorageKeys.ENABLED) is not False,
            allowlist=allowlist if isinstance(allowlist, list) else [],
            task_validation_enabled=result.get(StorageKeys.TASK_VALIDATION_ENABLED) is not False,
        )

    # ── Tasks ────────────────────────────────────────────────────────────────

    async def add_task(self, text: str) -> list[str]:
        text = (text or "").strip()
        if not text:
            raise SettingsError("Task text is required")
        settings = await self.load()
        tasks = settings.tasks
        if text not in tasks:
            tasks.append(text)
            await self.store.set({StorageKeys.TASKS: tasks}, LOCAL)
        return tasks

    async def delete_task(self, index: int) -> list[str]:
        settings = await self.load()
        tasks = settings.tasks
        if not 0 <= index < len(tasks):
            raise SettingsError(f"No task at index {index}")
        removed = tasks.pop(index)
        updates: dict = {StorageKeys.TASKS: tasks}
        current = settings.current_task
        if current and current.source_index is not None:
            if current.source_index == index:
                updates[StorageKeys.CURRENT_TASK] = None
            elif current.source_index > index:
                updates[StorageKeys.CURRENT_TASK] = current.model_copy(
                    update={"source_index": current.source_index - 1}
                ).model_dump()
        await self.store.set(updates, LOCAL)
        logger.info("Deleted task %r", removed)
        return tasks

    async def set_current_task(self, index: Optional[int] = None, text: Optional[str] = None) -> CurrentTask:
        settings = await self.load()
        if isinstance(index, int) and 0 <= index < len(settings.tasks):
            selected = CurrentTask(text=settings.tasks[index], source_index=index, set_at=self._clock())
        elif isinstance(text, str) and text.strip():
            selected = CurrentTask(text=text.strip(), set_at=self._clock())
        else:
            raise SettingsError("Provide a valid task index or text")
        await self.store.set({StorageKeys.CURRENT_TASK: selected.model_dump()}, LOCAL)
        logger.info("Current task set: %r", selected.text)
        return selected

    async def clear_current_task(self):
        await self.store.set({StorageKeys.CURRENT_TASK: None}, LOCAL)
        logger.info("Current task cleared")

    # ── Allowlist ────────────────────────────────────────────────────────────

    async def add_to_allowlist(self, host: Optional[str] = None, url: Optional[str] = None) -> list[str]:
        if not host and url:
            host = extract_hostname(url)
        normalized = (host or "").lower().strip()
        if not normalized:
            raise SettingsError("host is required")

        allowlist = (await self.load()).allowlist
        if not any(str(h).lower().strip() == normalized for h in allowlist):
            allowlist.append(normalized)
            await self.store.set({StorageKeys.ALLOWLIST: allowlist}, LOCAL)
            logger.info("Added %s to allowlist", normalized)
        return allowlist

    async def remove_from_allowlist(self, host: str) -> list[str]:
        normalized = (host or "").lower().strip()
        allowlist = [
            h for h in (await self.load()).allowlist
            if str(h).lower().strip() != normalized
        ]
        await self.store.set({StorageKeys.ALLOWLIST: allowlist}, LOCAL)
        return allowlist

    # ── Toggles and credentials ──────────────────────────────────────────────

    async def set_enabled(self, enabled: bool):
        await self.store.set({StorageKeys.ENABLED: bool(enabled)}, LOCAL)
        logger.info("Gatekeeper toggled %s", "ON" if enabled else "OFF")

    async def set_api_key(self, api_key: str):
        await self.store.set({StorageKeys.API_KEY: api_key.strip()}, LOCAL)
        logger.info("API key updated (%s)", mask_secret(api_key))

    async def set_task_validation_enabled(self, enabled: bool):
        await self.store.set({StorageKeys.TASK_VALIDATION_ENABLED: bool(enabled)}, LOCAL)

    # ── Feedback ─────────────────────────────────────────────────────────────

    async def record_feedback(self, url: str, reason: str, correct: bool) -> FeedbackEntry:
        entry = FeedbackEntry(url=url, reason=reason, correct=correct, timestamp=self._clock())
        stored = await self.store.get(StorageKeys.FEEDBACK, LOCAL)
        feedback = stored.get(StorageKeys.FEEDBACK) or []
        feedback.append(entry.model_dump())
        # The store trims to the configured cap, keeping the newest entries
        await self.store.set({StorageKeys.FEEDBACK: feedback}, LOCAL)
        return entry
