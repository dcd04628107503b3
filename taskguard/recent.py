"""Bounded, de-duplicating window of recently visited URLs used as oracle context."""

import logging

from taskguard.urls import is_system_url

logger = logging.getLogger(__name__)


class RecentUrlWindow:
    def __init__(self, max_urls: int = 5):
        self.max_urls = max_urls
        self._urls: list[str] = []

    def add(self, url: str):
        """Move ``url`` to the front, dropping duplicates and the overflow."""
        if not url or is_system_url(url):
            return
        already_tracked = url in self._urls
        self._urls = [url] + [u for u in self._urls if u != url]
        del self._urls[self.max_urls:]
        logger.debug(
            "Recent URL %s: %s (%d tracked)",
            "moved" if already_tracked else "added", url, len(self._urls),
        )

    def urls(self) -> list[str]:
        return list(self._urls)

    def context(self, size: int) -> list[str]:
        return self._urls[:size]

    def clear(self):
        self._urls.clear()

    def __len__(self) -> int:
        return len(self._urls)
