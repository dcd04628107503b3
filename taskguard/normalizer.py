"""Resolves contradictions between an oracle verdict and its stated reason."""

import logging
from typing import Iterable, Optional

from taskguard.config import DEFAULT_UNRELATED_SIGNALS
from taskguard.models import Decision

logger = logging.getLogger(__name__)


class DecisionNormalizer:
    """Flip an allow into a block when the reason itself says the site is off-task.

    Only applies when the oracle's confidence reaches the threshold. A block is
    never downgraded.
    """

    def __init__(self, unrelated_signals: Optional[Iterable[str]] = None, confidence_threshold: float = 0.6):
        signals = DEFAULT_UNRELATED_SIGNALS if unrelated_signals is None else unrelated_signals
        self.unrelated_signals = [s.lower() for s in signals if s]
        self.confidence_threshold = confidence_threshold

    def has_unrelated_signal(self, reason: str) -> bool:
        lower = (reason or "").lower()
        return any(signal in lower for signal in self.unrelated_signals)

    def normalize(self, decision: Decision) -> Decision:
        if decision.should_block:
            return decision
        if decision.confidence >= self.confidence_threshold and self.has_unrelated_signal(decision.reason):
            logger.info("Overriding allow to block: reason signals unrelated site (%r)", decision.reason)
            return decision.model_copy(update={"should_block": True})
        return decision
