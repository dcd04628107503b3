"""Debounced block prompts and the transient "!" badge.

Bookkeeping (history, blocked counter) happens for every blocking decision;
the debounce only limits how often the user is actually nudged.
"""

import asyncio
import logging
import time
from typing import Callable, Optional, Protocol

from taskguard.models import BadgeState, BlockPrompt, Decision
from taskguard.stats import BlockHistory, StatsAggregator

logger = logging.getLogger(__name__)

BADGE_ON = BadgeState(text="ON", color="#6b46c1")
BADGE_OFF = BadgeState(text="OFF", color="#9ca3af")
BADGE_ALERT = BadgeState(text="!", color="#ef4444")


def badge_for(enabled: bool) -> BadgeState:
    return BADGE_ON if enabled else BADGE_OFF


class Presenter(Protocol):
    async def show_block_prompt(self, tab_id: int, prompt: BlockPrompt) -> None: ...


class BadgeSurface(Protocol):
    def get(self) -> BadgeState: ...
    def set(self, state: BadgeState) -> None: ...


class PromptQueue:
    """Holds the latest block prompt per tab until the extension polls for it."""

    def __init__(self):
        self._pending: dict[int, BlockPrompt] = {}

    async def show_block_prompt(self, tab_id: int, prompt: BlockPrompt) -> None:
        self._pending[tab_id] = prompt

    def pop(self, tab_id: int) -> Optional[BlockPrompt]:
        return self._pending.pop(tab_id, None)

    def __len__(self) -> int:
        return len(self._pending)


class InMemoryBadge:
    """Badge state mirrored by the extension via ``GET /badge``."""

    def __init__(self, initial: BadgeState = BADGE_ON):
        self._state = initial

    def get(self) -> BadgeState:
        return self._state

    def set(self, state: BadgeState) -> None:
        self._state = state


class BadgeController:
    def __init__(self, surface: BadgeSurface, flash_seconds: float = 8.0):
        self.surface = surface
        self.flash_seconds = flash_seconds
        self._restore_to: Optional[BadgeState] = None
        self._restore_task: Optional[asyncio.Task] = None

    @property
    def flashing(self) -> bool:
        return self._restore_task is not None and not self._restore_task.done()

    def show_enabled(self, enabled: bool):
        """Reflect the enabled toggle. During a flash, retarget the restore instead."""
        state = badge_for(enabled)
        if self.flashing:
            self._restore_to = state
        else:
            self.surface.set(state)

    def flash(self, enabled: bool):
        """Show the alert badge, restoring the pre-flash state after ``flash_seconds``.

        The restore target is captured now. A flash during a flash keeps the
        original target so the alert badge is never restored onto itself.
        """
        if self.flashing:
            self._restore_task.cancel()
        else:
            previous = self.surface.get()
            if not previous or not previous.text:
                previous = badge_for(enabled)
            self._restore_to = previous

        self.surface.set(BADGE_ALERT)
        self._restore_task = asyncio.create_task(self._restore_after(self.flash_seconds))

    async def _restore_after(self, seconds: float):
        try:
            await asyncio.sleep(seconds)
            if self._restore_to is not None:
                self.surface.set(self._restore_to)
                logger.debug("Badge restored to %s", self._restore_to.text)
        except asyncio.CancelledError:
            # Re-armed by a newer flash, or shut down
            pass

    def cancel(self):
        if self.flashing:
            self._restore_task.cancel()
            if self._restore_to is not None:
                self.surface.set(self._restore_to)


class NotificationController:
    def __init__(
        self,
        presenter: Presenter,
        badge: BadgeController,
        history: BlockHistory,
        stats: StatsAggregator,
        debounce_seconds: float = 4.0,
        clock: Callable[[], float] = time.time,
    ):
        self.presenter = presenter
        self.badge = badge
        self.history = history
        self.stats = stats
        self.debounce_seconds = debounce_seconds
        self._clock = clock
        self._last_dispatch: Optional[float] = None

    async def maybe_notify(
        self,
        url: str,
        decision: Decision,
        tab_id: int,
        task_text: str = "",
        enabled: bool = True,
    ) -> bool:
        """Record the block, then nudge the user unless one was sent recently.

        Returns True when a prompt was actually dispatched.
        """
        reason = decision.reason or "Potentially distracting"
        activity = decision.activity_understanding or "Unable to understand activities"

        await self.history.append(url, reason)
        await self.stats.record_block()

        now = self._clock()
        if self._last_dispatch is not None and now - self._last_dispatch < self.debounce_seconds:
            logger.info("Debouncing block prompt for %s (too soon since last one)", url)
            return False
        self._last_dispatch = now

        prompt = BlockPrompt(
            url=url,
            reason=reason,
            activity_understanding=activity,
            current_task_text=task_text or "No active task",
        )
        try:
            await self.presenter.show_block_prompt(tab_id, prompt)
            logger.info("Block prompt sent to tab %d for %s", tab_id, url)
        except Exception as e:
            # The tab may be gone or unable to render; the badge still nudges
            logger.warning("Failed to send block prompt to tab %d: %s", tab_id, e)

        try:
            self.badge.flash(enabled)
        except Exception as e:
            logger.warning("Failed to set badge: %s", e)
        return True
