"""Pytest configuration and fixtures for Task Guard tests."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import anthropic
import httpx
import pytest
import pytest_asyncio

from taskguard.config import AnthropicConfig, StorageConfig
from taskguard.oracle import ClassificationOracle
from taskguard.storage import KeyValueStore

ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"


class FakeClock:
    """Deterministic clock; tests move time with ``advance``."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def store(tmp_path):
    """A connected store backed by a temporary SQLite file."""
    kv = KeyValueStore(str(tmp_path / "taskguard.db"), limits=StorageConfig())
    await kv.connect()
    yield kv
    await kv.close()


def text_response(text: str):
    return SimpleNamespace(content=[SimpleNamespace(type="text", text=text)])


def status_error(cls, status: int):
    request = httpx.Request("POST", ANTHROPIC_URL)
    return cls(f"HTTP {status}", response=httpx.Response(status, request=request), body=None)


def connection_error():
    return anthropic.APIConnectionError(request=httpx.Request("POST", ANTHROPIC_URL))


@pytest.fixture
def api_errors():
    """Builders for the SDK exceptions the oracle distinguishes."""
    return SimpleNamespace(
        unauthorized=lambda: status_error(anthropic.AuthenticationError, 401),
        forbidden=lambda: status_error(anthropic.PermissionDeniedError, 403),
        rate_limited=lambda: status_error(anthropic.RateLimitError, 429),
        server=lambda: status_error(anthropic.InternalServerError, 500),
        connection=connection_error,
    )


@pytest.fixture
def make_oracle():
    """Build an oracle whose client returns ``responses`` in order.

    Items may be strings (response text) or exceptions (raised). Returns the
    oracle plus the mocked ``messages.create`` and the backoff sleep mock.
    """
    def _make(*responses, **config_overrides):
        client = MagicMock()
        client.messages.create = AsyncMock(
            side_effect=[r if isinstance(r, Exception) else text_response(r) for r in responses]
        )
        sleep = AsyncMock()
        config = AnthropicConfig(api_key="sk-test", **config_overrides)
        oracle = ClassificationOracle(config, client_factory=lambda key: client, sleep=sleep)
        return oracle, client.messages.create, sleep

    return _make
