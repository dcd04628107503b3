"""Temporary and one-time bypass windows.

A temporary bypass exempts a URL (or anything on its origin) until a deadline.
A one-time bypass exempts exactly one matching navigation and is deleted from
the store the moment it matches.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Literal, Optional

from pydantic import ValidationError

from taskguard.models import OneTimeBypass, TemporaryBypass
from taskguard.storage import LOCAL, KeyValueStore, StorageError, StorageKeys
from taskguard.urls import matches_url_or_origin

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BypassCheck:
    skip: bool
    kind: Optional[Literal["temporary", "one_time"]] = None


NO_BYPASS = BypassCheck(skip=False)


class BypassManager:
    def __init__(
        self,
        store: KeyValueStore,
        default_minutes: int = 10,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.default_minutes = default_minutes
        self._clock = clock
        self._one_time_lock = asyncio.Lock()

    async def grant_temporary(self, url: str, minutes: Optional[int] = None) -> TemporaryBypass:
        minutes = minutes or self.default_minutes
        bypass = TemporaryBypass(url=url, until=self._clock() + minutes * 60)
        await self.store.set({StorageKeys.TEMPORARY_BYPASS: bypass.model_dump()}, LOCAL)
        logger.info("Temporary bypass for %s (%d minutes)", url, minutes)
        return bypass

    async def grant_one_time(self, url: str) -> OneTimeBypass:
        bypass = OneTimeBypass(url=url)
        await self.store.set({StorageKeys.ONE_TIME_BYPASS: bypass.model_dump()}, LOCAL)
        logger.info("One-time bypass set for %s", url)
        return bypass

    async def check(self, url: str) -> BypassCheck:
        """Temporary bypass first, then one-time. Read errors count as no bypass."""
        if await self._check_temporary(url):
            return BypassCheck(skip=True, kind="temporary")
        if await self._consume_one_time(url):
            return BypassCheck(skip=True, kind="one_time")
        return NO_BYPASS

    async def _check_temporary(self, url: str) -> bool:
        try:
            stored = await self.store.get(StorageKeys.TEMPORARY_BYPASS, LOCAL)
            raw = stored.get(StorageKeys.TEMPORARY_BYPASS)
            if not raw:
                return False
            bypass = TemporaryBypass.model_validate(raw)
        except (StorageError, ValidationError) as e:
            logger.warning("Could not read temporary bypass: %s", e)
            return False

        if self._clock() >= bypass.until:
            await self._discard_expired()
            return False

        if matches_url_or_origin(url, bypass.url):
            logger.info("Temporary bypass active for %s (until %.0f)", url, bypass.until)
            return True
        return False

    async def _discard_expired(self):
        try:
            await self.store.remove(StorageKeys.TEMPORARY_BYPASS, LOCAL)
        except StorageError as e:
            logger.debug("Could not remove expired bypass: %s", e)

    async def _consume_one_time(self, url: str) -> bool:
        async with self._one_time_lock:
            try:
                stored = await self.store.get(StorageKeys.ONE_TIME_BYPASS, LOCAL)
                raw = stored.get(StorageKeys.ONE_TIME_BYPASS)
                if not raw:
                    return False
                bypass = OneTimeBypass.model_validate(raw)
            except (StorageError, ValidationError) as e:
                logger.warning("Could not read one-time bypass: %s", e)
                return False

            if not matches_url_or_origin(url, bypass.url):
                return False

            try:
                await self.store.remove(StorageKeys.ONE_TIME_BYPASS, LOCAL)
            except StorageError as e:
                # Not removed means it could be reused, so do not honor it
                logger.error("Could not consume one-time bypass for %s: %s", url, e)
                return False

            logger.info("One-time bypass used for %s", url)
            return True
