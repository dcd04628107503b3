"""Gatekeeper: decides block/allow for each committed navigation.

Per navigation: system-URL filter -> recent-URL window -> bypass -> allowlist
-> cache -> (miss) oracle -> normalize -> cache store -> stats -> notify.
"""

import asyncio
import logging

from taskguard.bypass import BypassManager
from taskguard.cache import DecisionCache, generate_cache_key
from taskguard.models import Decision, NavigationEvent, NavigationOutcome, Settings
from taskguard.normalizer import DecisionNormalizer
from taskguard.notifier import NotificationController
from taskguard.oracle import ClassificationOracle
from taskguard.recent import RecentUrlWindow
from taskguard.settings import SettingsManager
from taskguard.stats import StatsAggregator
from taskguard.urls import is_allowlisted, is_system_url

logger = logging.getLogger(__name__)

SYSTEM_URL_DECISION = Decision(
    should_block=False,
    reason="System URL",
    activity_understanding="System URL - always allowed",
    confidence=1.0,
)

ALLOWLISTED_DECISION = Decision(
    should_block=False,
    reason="Allowlisted",
    activity_understanding="Site is on the allowlist",
    confidence=1.0,
)


class Gatekeeper:
    def __init__(
        self,
        settings: SettingsManager,
        bypass: BypassManager,
        recent: RecentUrlWindow,
        cache: DecisionCache,
        oracle: ClassificationOracle,
        normalizer: DecisionNormalizer,
        notifier: NotificationController,
        stats: StatsAggregator,
        cache_context_size: int = 3,
    ):
        self.settings = settings
        self.bypass = bypass
        self.recent = recent
        self.cache = cache
        self.oracle = oracle
        self.normalizer = normalizer
        self.notifier = notifier
        self.stats = stats
        self.cache_context_size = cache_context_size
        self._inflight: dict[str, asyncio.Task] = {}

    async def handle_navigation(self, event: NavigationEvent) -> NavigationOutcome:
        """Run the full pipeline for one navigation. Never raises; errors allow."""
        try:
            return await self._handle(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Error handling navigation to %s: %s", event.url, e)
            return NavigationOutcome(outcome="error")

    async def _handle(self, event: NavigationEvent) -> NavigationOutcome:
        if not event.is_main_frame:
            return NavigationOutcome(outcome="ignored")

        if is_system_url(event.url):
            logger.debug("Skipping system URL: %s", event.url)
            return NavigationOutcome(outcome="system", decision=SYSTEM_URL_DECISION)

        settings = await self.settings.load()
        if not settings.enabled:
            logger.debug("Gatekeeper disabled, skipping %s", event.url)
            return NavigationOutcome(outcome="disabled")

        # Tracked before bypass/allowlist so exempted visits still count as context
        self.recent.add(event.url)

        check = await self.bypass.check(event.url)
        if check.skip:
            return NavigationOutcome(outcome="bypassed")

        if is_allowlisted(event.url, settings.allowlist):
            logger.info("URL is allowlisted: %s", event.url)
            return NavigationOutcome(outcome="allowlisted", decision=ALLOWLISTED_DECISION)

        key = self._cache_key(event.url, settings)
        cached = self.cache.get(key)
        if cached is not None:
            logger.info("Cache hit for %s (block=%s)", event.url, cached.should_block)
            notified = await self._notify_if_blocking(event, cached, settings)
            return NavigationOutcome(outcome="cache_hit", decision=cached, notified=notified)

        decision, originated = await self._classify_shared(key, event.url, settings)
        if originated:
            await self.stats.record_analysis()
        notified = await self._notify_if_blocking(event, decision, settings)
        return NavigationOutcome(outcome="classified", decision=decision, notified=notified)

    async def analyze(self, url: str) -> Decision:
        """Classify ``url`` under the current task without notifying or recording a visit."""
        if is_system_url(url):
            return SYSTEM_URL_DECISION
        settings = await self.settings.load()
        key = self._cache_key(url, settings)
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        decision, _ = await self._classify_shared(key, url, settings)
        return decision

    def _cache_key(self, url: str, settings: Settings) -> str:
        return generate_cache_key(
            url, settings.task_text, self.recent.urls(), self.cache_context_size
        )

    async def _classify_shared(self, key: str, url: str, settings: Settings) -> tuple[Decision, bool]:
        """Share one oracle call among concurrent identical requests.

        Returns the decision and whether this caller started the classification.
        The task is shielded so it still completes and caches if the caller is
        cancelled.
        """
        task = self._inflight.get(key)
        originated = task is None
        if originated:
            task = asyncio.create_task(
                self._classify_and_store(key, url, settings.task_text, self.recent.urls(), settings.api_key)
            )
            self._inflight[key] = task
            task.add_done_callback(lambda t: self._forget(key, t))
        else:
            logger.info("Joining in-flight classification for %s", url)
        return await asyncio.shield(task), originated

    async def _classify_and_store(
        self, key: str, url: str, task_text: str, recent_urls: list[str], api_key: str
    ) -> Decision:
        raw = await self.oracle.classify(url, task_text, recent_urls, api_key)
        decision = self.normalizer.normalize(raw)
        if decision.cacheable:
            self.cache.set(key, decision)
        logger.info(
            "Classified %s: block=%s confidence=%.2f reason=%r",
            url, decision.should_block, decision.confidence, decision.reason,
        )
        return decision

    async def _notify_if_blocking(self, event: NavigationEvent, decision: Decision, settings: Settings) -> bool:
        if not decision.should_block:
            return False
        return await self.notifier.maybe_notify(
            event.url, decision, event.tab_id,
            task_text=settings.task_text, enabled=settings.enabled,
        )

    def _forget(self, key: str, task: asyncio.Task):
        if self._inflight.get(key) is task:
            del self._inflight[key]

    def inflight_count(self) -> int:
        return len(self._inflight)
