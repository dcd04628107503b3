"""In-memory decision cache with TTL expiry, batch eviction and a periodic sweep.

Decisions are keyed by URL, task text and the leading entries of the recent-URL
window, so the same URL can cache differently under a different task or
browsing context.
"""

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Optional

from taskguard.models import Decision

logger = logging.getLogger(__name__)


def generate_cache_key(url: str, task_text: Optional[str], recent_urls: list[str], context_size: int = 3) -> str:
    # JSON keeps fields unambiguous when a URL or task contains separators
    return json.dumps([url, task_text or "", list(recent_urls[:context_size])])


@dataclass
class CacheEntry:
    key: str
    decision: Decision
    timestamp: float


class DecisionCache:
    def __init__(
        self,
        max_age_seconds: float = 24 * 60 * 60,
        max_size: int = 1000,
        eviction_batch: int = 10,
        cleanup_interval_seconds: float = 24 * 60 * 60,
        clock: Callable[[], float] = time.time,
    ):
        self.max_age = max_age_seconds
        self.max_size = max_size
        self.eviction_batch = eviction_batch
        self.cleanup_interval = cleanup_interval_seconds
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._cleanup_task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._entries)

    def _is_expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.timestamp > self.max_age

    def get(self, key: str) -> Optional[Decision]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._is_expired(entry, self._clock()):
            del self._entries[key]
            return None
        return entry.decision

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    def set(self, key: str, decision: Decision):
        if key not in self._entries and len(self._entries) >= self.max_size:
            self._evict_oldest(self.eviction_batch)
        self._entries[key] = CacheEntry(key=key, decision=decision, timestamp=self._clock())
        logger.debug("Cached decision for key %s...", key[:50])

    def delete(self, key: str):
        self._entries.pop(key, None)

    def clear(self):
        self._entries.clear()
        logger.info("Decision cache cleared")

    def cleanup(self) -> int:
        """Remove every expired entry. Returns the number removed."""
        now = self._clock()
        expired = [k for k, e in self._entries.items() if self._is_expired(e, now)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.info("Cache cleanup: removed %d expired entries", len(expired))
        return len(expired)

    def _evict_oldest(self, count: int):
        oldest = sorted(self._entries.values(), key=lambda e: e.timestamp)[:count]
        for entry in oldest:
            del self._entries[entry.key]
        logger.info("Evicted %d oldest cache entries", len(oldest))

    def stats(self) -> dict:
        now = self._clock()
        ages = [now - e.timestamp for e in self._entries.values()]
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "expired_count": sum(1 for a in ages if a > self.max_age),
            "average_age_seconds": sum(ages) / len(ages) if ages else 0,
            "max_age_seconds": self.max_age,
        }

    def entries(self, limit: int = 10) -> list[dict]:
        """Most recent entries first, keys truncated for display."""
        now = self._clock()
        recent = sorted(self._entries.values(), key=lambda e: e.timestamp, reverse=True)[:limit]
        return [
            {
                "key": _truncate(e.key),
                "timestamp": e.timestamp,
                "age_seconds": now - e.timestamp,
                "should_block": e.decision.should_block,
                "reason": e.decision.reason[:50],
                "confidence": e.decision.confidence,
            }
            for e in recent
        ]

    def search(self, pattern: str) -> list[dict]:
        regex = re.compile(pattern, re.IGNORECASE)
        return [
            {"key": _truncate(e.key), "timestamp": e.timestamp, "decision": e.decision}
            for e in self._entries.values()
            if regex.search(e.key)
        ]

    # ── Background sweep ─────────────────────────────────────────────────────

    def start_cleanup_timer(self):
        self.stop_cleanup_timer()
        self._cleanup_task = asyncio.create_task(self._sweep_forever())
        logger.info("Cache cleanup timer started (every %ss)", self.cleanup_interval)

    def stop_cleanup_timer(self):
        if self._cleanup_task:
            self._cleanup_task.cancel()
            self._cleanup_task = None

    async def _sweep_forever(self):
        try:
            while True:
                await asyncio.sleep(self.cleanup_interval)
                self.cleanup()
        except asyncio.CancelledError:
            # Timer stopped on shutdown
            pass


def _truncate(key: str, limit: int = 100) -> str:
    return key[:limit] + ("..." if len(key) > limit else "")
