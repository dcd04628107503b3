"""End-to-end tests for the navigation pipeline with a mocked Claude client."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from taskguard.bypass import BypassManager
from taskguard.cache import DecisionCache
from taskguard.gatekeeper import Gatekeeper
from taskguard.models import NavigationEvent
from taskguard.normalizer import DecisionNormalizer
from taskguard.notifier import BADGE_ALERT, BadgeController, InMemoryBadge, NotificationController, PromptQueue
from taskguard.recent import RecentUrlWindow
from taskguard.settings import SettingsManager
from taskguard.stats import BlockHistory, StatsAggregator

YOUTUBE = "https://youtube.com/watch?v=abc"

BLOCK_JSON = (
    '{"shouldBlock": true, "reason": "Entertainment video unrelated to Python", '
    '"activityUnderstanding": "Writing Python code", "confidence": 0.9}'
)
ALLOW_JSON = (
    '{"shouldBlock": false, "reason": "Python documentation", '
    '"activityUnderstanding": "Writing Python code", "confidence": 0.9}'
)


def nav(url, tab_id=1, main_frame=True):
    return NavigationEvent(url=url, tab_id=tab_id, is_main_frame=main_frame)


@pytest_asyncio.fixture
async def build(store, clock, make_oracle):
    """Build a gatekeeper over a real store whose oracle answers with ``responses``."""
    created = []

    async def _build(*responses, task="Write Python code"):
        oracle, create, _ = make_oracle(*responses)
        settings = SettingsManager(store, fallback_api_key="sk-test", clock=clock)
        if task:
            await settings.set_current_task(text=task)
        stats = StatsAggregator(store)
        badge = BadgeController(InMemoryBadge(), flash_seconds=0.05)
        created.append(badge)
        gatekeeper = Gatekeeper(
            settings=settings,
            bypass=BypassManager(store, clock=clock),
            recent=RecentUrlWindow(),
            cache=DecisionCache(clock=clock),
            oracle=oracle,
            normalizer=DecisionNormalizer(),
            notifier=NotificationController(
                PromptQueue(), badge, BlockHistory(store, clock=clock), stats, clock=clock
            ),
            stats=stats,
        )
        return gatekeeper, create

    yield _build
    for badge in created:
        badge.cancel()


class TestPipeline:
    @pytest.mark.asyncio
    async def test_off_task_video_is_blocked_and_prompted(self, build):
        gatekeeper, create = await build(BLOCK_JSON)

        outcome = await gatekeeper.handle_navigation(nav(YOUTUBE, tab_id=42))

        assert outcome.outcome == "classified"
        assert outcome.decision.should_block
        assert outcome.notified
        prompt = gatekeeper.notifier.presenter.pop(42)
        assert prompt.current_task_text == "Write Python code"
        assert gatekeeper.notifier.badge.surface.get() == BADGE_ALERT
        assert gatekeeper.stats.snapshot().analyzed_count == 1
        assert gatekeeper.stats.snapshot().blocked_count == 1
        assert len(gatekeeper.notifier.history) == 1
        create.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_repeat_visit_hits_cache(self, build, clock):
        gatekeeper, create = await build(BLOCK_JSON)
        await gatekeeper.handle_navigation(nav(YOUTUBE))
        clock.advance(10)

        outcome = await gatekeeper.handle_navigation(nav(YOUTUBE))

        assert outcome.outcome == "cache_hit"
        assert outcome.decision.should_block
        assert outcome.notified
        assert create.await_count == 1
        assert gatekeeper.stats.snapshot().analyzed_count == 1
        assert gatekeeper.stats.snapshot().blocked_count == 2

    @pytest.mark.asyncio
    async def test_related_site_allowed_quietly(self, build):
        gatekeeper, _ = await build(ALLOW_JSON)
        outcome = await gatekeeper.handle_navigation(nav("https://docs.python.org/3/"))

        assert outcome.outcome == "classified"
        assert not outcome.decision.should_block
        assert not outcome.notified
        assert len(gatekeeper.notifier.presenter) == 0

    @pytest.mark.asyncio
    async def test_contradictory_allow_is_overridden(self, build):
        gatekeeper, _ = await build(
            '{"shouldBlock": false, "reason": "Gaming news is unrelated to the task", "confidence": 0.8}'
        )
        outcome = await gatekeeper.handle_navigation(nav("https://ign.com"))
        assert outcome.decision.should_block
        assert outcome.notified

    @pytest.mark.asyncio
    async def test_no_task_allows(self, build):
        gatekeeper, create = await build(task=None)
        outcome = await gatekeeper.handle_navigation(nav(YOUTUBE))
        assert not outcome.decision.should_block
        assert outcome.decision.reason == "No current task selected"
        create.assert_not_awaited()


class TestShortCircuits:
    @pytest.mark.asyncio
    async def test_subframe_ignored(self, build):
        gatekeeper, create = await build()
        outcome = await gatekeeper.handle_navigation(nav(YOUTUBE, main_frame=False))
        assert outcome.outcome == "ignored"
        assert len(gatekeeper.recent) == 0

    @pytest.mark.asyncio
    async def test_system_url(self, build):
        gatekeeper, create = await build()
        outcome = await gatekeeper.handle_navigation(nav("chrome://extensions"))
        assert outcome.outcome == "system"
        assert not outcome.decision.should_block
        create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_disabled_skips_everything(self, build):
        gatekeeper, create = await build(BLOCK_JSON)
        await gatekeeper.settings.set_enabled(False)

        outcome = await gatekeeper.handle_navigation(nav(YOUTUBE))

        assert outcome.outcome == "disabled"
        assert len(gatekeeper.recent) == 0
        create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_allowlisted(self, build):
        gatekeeper, create = await build(BLOCK_JSON)
        await gatekeeper.settings.add_to_allowlist(host="*.youtube.com")

        outcome = await gatekeeper.handle_navigation(nav("https://www.youtube.com/watch?v=1"))

        assert outcome.outcome == "allowlisted"
        assert gatekeeper.recent.urls() == ["https://www.youtube.com/watch?v=1"]
        create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_temporary_bypass(self, build, clock):
        gatekeeper, create = await build(BLOCK_JSON)
        await gatekeeper.bypass.grant_temporary(YOUTUBE, minutes=10)

        assert (await gatekeeper.handle_navigation(nav("https://youtube.com/feed"))).outcome == "bypassed"

        clock.advance(10 * 60)
        assert (await gatekeeper.handle_navigation(nav("https://youtube.com/feed"))).outcome == "classified"
        create.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_one_time_bypass_used_once(self, build):
        gatekeeper, create = await build(BLOCK_JSON)
        await gatekeeper.bypass.grant_one_time(YOUTUBE)

        first = await gatekeeper.handle_navigation(nav(YOUTUBE))
        second = await gatekeeper.handle_navigation(nav(YOUTUBE))

        assert first.outcome == "bypassed"
        assert second.outcome == "classified"
        assert second.decision.should_block


class TestFailures:
    @pytest.mark.asyncio
    async def test_fail_open_is_not_cached(self, build, api_errors):
        gatekeeper, create = await build(api_errors.unauthorized(), BLOCK_JSON)

        first = await gatekeeper.handle_navigation(nav(YOUTUBE))
        second = await gatekeeper.handle_navigation(nav(YOUTUBE))

        assert not first.decision.should_block
        assert first.decision.confidence == 0.0
        assert second.outcome == "classified"
        assert second.decision.should_block
        assert create.await_count == 2

    @pytest.mark.asyncio
    async def test_unexpected_error_yields_error_outcome(self, build):
        gatekeeper, _ = await build()
        gatekeeper.settings.load = AsyncMock(side_effect=RuntimeError("corrupt"))
        outcome = await gatekeeper.handle_navigation(nav(YOUTUBE))
        assert outcome.outcome == "error"
        assert outcome.decision is None


class TestInflightDedup:
    @pytest.mark.asyncio
    async def test_concurrent_identical_navigations_share_one_call(self, build):
        gatekeeper, create = await build()

        async def slow_answer(**kwargs):
            await asyncio.sleep(0.05)
            return SimpleNamespace(content=[SimpleNamespace(type="text", text=BLOCK_JSON)])

        create.side_effect = slow_answer

        outcomes = await asyncio.gather(
            gatekeeper.handle_navigation(nav(YOUTUBE, tab_id=1)),
            gatekeeper.handle_navigation(nav(YOUTUBE, tab_id=2)),
        )

        assert create.await_count == 1
        assert all(o.decision.should_block for o in outcomes)
        assert gatekeeper.stats.snapshot().analyzed_count == 1
        assert gatekeeper.stats.snapshot().blocked_count == 2
        assert sum(o.notified for o in outcomes) == 1
        assert gatekeeper.inflight_count() == 0


@pytest.mark.asyncio
async def test_analyze_does_not_notify(build):
    gatekeeper, create = await build(BLOCK_JSON)

    decision = await gatekeeper.analyze(YOUTUBE)
    again = await gatekeeper.analyze(YOUTUBE)

    assert decision.should_block
    assert again == decision
    assert create.await_count == 1
    assert len(gatekeeper.notifier.presenter) == 0
    assert gatekeeper.stats.snapshot().blocked_count == 0
