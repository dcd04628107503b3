"""Running focus statistics and the blocked-site history ring buffer."""

import logging
import math
import time
from collections import deque
from typing import Callable

from pydantic import ValidationError

from taskguard.models import BlockedSiteRecord, Stats, StatsSnapshot
from taskguard.storage import LOCAL, KeyValueStore, StorageError, StorageKeys

logger = logging.getLogger(__name__)


def _round_half_up(value: float) -> int:
    # round() is banker's rounding; 2.5 minutes must count as 3
    return int(math.floor(value + 0.5))


def calculate_focus_score(blocked_count: int, analyzed_count: int) -> int:
    if not analyzed_count:
        return 0
    return min(100, _round_half_up(blocked_count / analyzed_count * 100))


def calculate_time_saved(blocked_count: int, minutes_per_distraction: float = 2.5) -> int:
    return _round_half_up(blocked_count * minutes_per_distraction)


class StatsAggregator:
    """Counters live in memory and are written through to the store on every change.

    Mutating in memory before awaiting the write keeps concurrent updates from
    losing increments.
    """

    def __init__(self, store: KeyValueStore, minutes_per_distraction: float = 2.5):
        self.store = store
        self.minutes_per_distraction = minutes_per_distraction
        self._stats = Stats()

    async def load(self):
        try:
            stored = await self.store.get(StorageKeys.STATS, LOCAL)
            raw = stored.get(StorageKeys.STATS)
            self._stats = Stats.model_validate(raw) if raw else Stats()
        except (StorageError, ValidationError) as e:
            logger.error("Could not load stats, starting from zero: %s", e)
            self._stats = Stats()

    async def _persist(self):
        try:
            await self.store.set({StorageKeys.STATS: self._stats.model_dump()}, LOCAL)
        except StorageError as e:
            logger.error("Could not persist stats: %s", e)

    async def record_analysis(self):
        self._stats.analyzed_count += 1
        await self._persist()
        logger.debug("Analyzed count: %d", self._stats.analyzed_count)

    async def record_block(self):
        self._stats.blocked_count += 1
        await self._persist()

    async def reset(self):
        self._stats = Stats()
        await self._persist()
        logger.info("Stats reset")

    def snapshot(self) -> StatsSnapshot:
        blocked = self._stats.blocked_count
        analyzed = self._stats.analyzed_count
        return StatsSnapshot(
            analyzed_count=analyzed,
            blocked_count=blocked,
            focus_score=calculate_focus_score(blocked, analyzed),
            time_saved_minutes=calculate_time_saved(blocked, self.minutes_per_distraction),
        )


class BlockHistory:
    """Bounded history of suggested blocks, oldest evicted first. Not used for decisions."""

    def __init__(self, store: KeyValueStore, max_records: int = 30, clock: Callable[[], float] = time.time):
        self.store = store
        self.max_records = max_records
        self._clock = clock
        self._records: deque[BlockedSiteRecord] = deque(maxlen=max_records)

    async def load(self):
        try:
            stored = await self.store.get(StorageKeys.BLOCKED_SITES, LOCAL)
            raw = stored.get(StorageKeys.BLOCKED_SITES) or []
            self._records = deque(
                (BlockedSiteRecord.model_validate(r) for r in raw), maxlen=self.max_records
            )
        except (StorageError, ValidationError) as e:
            logger.error("Could not load block history: %s", e)
            self._records = deque(maxlen=self.max_records)

    async def append(self, url: str, reason: str) -> BlockedSiteRecord:
        record = BlockedSiteRecord(
            url=url[:100],
            timestamp=self._clock(),
            reason=f"Suggest: {reason[:50]}",
        )
        self._records.append(record)
        try:
            await self.store.set(
                {StorageKeys.BLOCKED_SITES: [r.model_dump() for r in self._records]}, LOCAL
            )
        except StorageError as e:
            logger.error("Could not persist block history: %s", e)
        return record

    def records(self) -> list[BlockedSiteRecord]:
        return list(self._records)

    async def clear(self):
        self._records.clear()
        await self.store.remove(StorageKeys.BLOCKED_SITES, LOCAL)

    def __len__(self) -> int:
        return len(self._records)
