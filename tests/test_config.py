"""Tests for YAML config loading."""

from taskguard.config import DEFAULT_UNRELATED_SIGNALS, load_config


def test_packaged_defaults(monkeypatch):
    monkeypatch.delenv("TASKGUARD_CONFIG", raising=False)
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    config = load_config()

    assert config.api.port == 8765
    assert config.anthropic.max_attempts == 3
    assert config.cache.max_size == 1000
    assert config.timing.notification_debounce_seconds == 4
    assert config.timing.badge_flash_seconds == 8
    assert config.normalizer.unrelated_signals == DEFAULT_UNRELATED_SIGNALS


def test_partial_file_overrides(tmp_path, monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    path = tmp_path / "config.yaml"
    path.write_text("cache:\n  max_size: 50\ntiming:\n  temporary_bypass_minutes: 15\n")

    config = load_config(str(path))

    assert config.cache.max_size == 50
    assert config.cache.eviction_batch == 10
    assert config.timing.temporary_bypass_minutes == 15


def test_env_path_and_api_key(tmp_path, monkeypatch):
    path = tmp_path / "custom.yaml"
    path.write_text("anthropic:\n  api_key: sk-from-file\n  model: claude-test\n")
    monkeypatch.setenv("TASKGUARD_CONFIG", str(path))
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-from-env")

    config = load_config()

    assert config.anthropic.model == "claude-test"
    assert config.anthropic.api_key == "sk-from-env"


def test_missing_file_uses_defaults(tmp_path, monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    config = load_config(str(tmp_path / "nope.yaml"))
    assert config.database.path == "data/taskguard.db"


def test_empty_file_uses_defaults(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    assert load_config(str(path)).stats.max_blocked_history == 30
