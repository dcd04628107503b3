"""YAML configuration for Task Guard, validated into pydantic sections."""

import logging
import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"

DEFAULT_UNRELATED_SIGNALS = [
    "not related",
    "not relevant",
    "unrelated",
    "irrelevant",
    "distracting",
    "off-topic",
    "different topic",
    "different domain",
]


class ApiConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8765


class DatabaseConfig(BaseModel):
    path: str = "data/taskguard.db"


class AnthropicConfig(BaseModel):
    api_key: str = ""
    model: str = "claude-sonnet-4-20250514"
    max_tokens: int = 200
    temperature: float = 0.3
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    jitter_seconds: float = 1.0
    request_timeout_seconds: float = 15.0
    total_timeout_seconds: float = 30.0


class CacheConfig(BaseModel):
    max_age_seconds: float = 24 * 60 * 60
    max_size: int = 1000
    eviction_batch: int = 10
    cleanup_interval_seconds: float = 24 * 60 * 60


class TimingConfig(BaseModel):
    temporary_bypass_minutes: int = 10
    notification_debounce_seconds: float = 4.0
    badge_flash_seconds: float = 8.0
    recent_url_window: int = 5
    cache_context_size: int = 3


class NormalizerConfig(BaseModel):
    unrelated_signals: list[str] = Field(default_factory=lambda: list(DEFAULT_UNRELATED_SIGNALS))
    confidence_threshold: float = 0.6


class StatsConfig(BaseModel):
    average_minutes_per_distraction: float = 2.5
    max_blocked_history: int = 30


class StorageConfig(BaseModel):
    sync_max_bytes: int = 50_000
    local_max_bytes: int = 500_000
    max_blocked_sites: int = 50
    max_tasks: int = 20
    max_feedback: int = 200


class Config(BaseModel):
    api: ApiConfig = Field(default_factory=ApiConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    anthropic: AnthropicConfig = Field(default_factory=AnthropicConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    timing: TimingConfig = Field(default_factory=TimingConfig)
    normalizer: NormalizerConfig = Field(default_factory=NormalizerConfig)
    stats: StatsConfig = Field(default_factory=StatsConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)


def load_config(path: Optional[str] = None) -> Config:
    """Load config from YAML, falling back to defaults for anything missing.

    The path comes from the argument, then ``TASKGUARD_CONFIG``, then the
    packaged ``config.yaml``. ``ANTHROPIC_API_KEY`` overrides the file's key.
    """
    config_path = Path(path or os.environ.get("TASKGUARD_CONFIG", str(DEFAULT_CONFIG_PATH)))

    raw = {}
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
    else:
        logger.warning("Config not found at %s, using defaults", config_path)

    config = Config.model_validate(raw)

    env_key = os.environ.get("ANTHROPIC_API_KEY")
    if env_key:
        config.anthropic.api_key = env_key
    return config
