"""Tests for settings.toml/.env loading and validation."""

from __future__ import annotations

import pytest

from src.main import initial_settings
from src.shell.config import Config, load_config

SETTINGS = """
[general]
log_level = "DEBUG"
timezone = "UTC"
default_user_id = "ops"
monitored_symbols = ["MNQ"]

[lab]
require_manual_approval = true
auto_promote_threshold = 70
auto_promote_tier = "A"
start_playing = false

[scheduler]
min_interval_hours = 0.5

[failure]
min_sharpe_ratio = 0.5
stagnation_days = 2

[api]
port = 9001
"""


@pytest.fixture
def clean_env(monkeypatch):
    monkeypatch.delenv("API_KEY", raising=False)
    monkeypatch.delenv("STRATEGY_LAB_DB", raising=False)
    return monkeypatch


def _write(tmp_path, text: str):
    path = tmp_path / "settings.toml"
    path.write_text(text)
    return path


def test_load_from_file(tmp_path, clean_env):
    config = load_config(_write(tmp_path, SETTINGS))
    assert config.log_level == "DEBUG"
    assert config.default_user_id == "ops"
    assert config.monitored_symbols == ["MNQ"]
    assert config.lab.require_manual_approval is True
    assert config.lab.auto_promote_threshold == 70
    assert config.lab.research_depth == "CONTINUOUS_SCAN"
    assert config.scheduler.min_interval_hours == 0.5
    assert config.scheduler.base_interval_hours == 2.0
    assert config.failure.min_sharpe_ratio == 0.5
    assert config.failure.stagnation_days == 2
    assert config.failure.max_drawdown_pct == 25.0
    assert config.api.port == 9001
    assert config.api.api_key == ""
    assert config.db_path.endswith("strategy_lab.db")


def test_missing_file_uses_defaults(tmp_path, clean_env):
    config = load_config(tmp_path / "absent.toml")
    assert config.lab.auto_promote_threshold == 65
    assert config.api.port == 8090


def test_env_overrides(tmp_path, clean_env):
    clean_env.setenv("API_KEY", "s3cret")
    clean_env.setenv("STRATEGY_LAB_DB", str(tmp_path / "lab.db"))
    config = load_config(_write(tmp_path, SETTINGS))
    assert config.api.api_key == "s3cret"
    assert config.db_path == str(tmp_path / "lab.db")


@pytest.mark.parametrize("override, message", [
    ('[lab]\nauto_promote_threshold = 20\n', "auto_promote_threshold"),
    ('[lab]\nauto_promote_tier = "S"\n', "auto_promote_tier"),
    ('[general]\ntimezone = "Mars/Olympus"\n', "Invalid timezone"),
    ('[scheduler]\nmin_interval_hours = 8.0\n', "scheduler intervals"),
    ('[failure]\ndegradation_window = 1\n', "degradation_window"),
    ('[api]\nport = 70000\n', "api.port"),
])
def test_validation_errors(tmp_path, clean_env, override, message):
    with pytest.raises(ValueError, match=message):
        load_config(_write(tmp_path, override))


def test_initial_settings_seed_and_persisted():
    config = Config()
    config.lab.auto_promote_threshold = 80
    config.lab.start_playing = False

    seeded = initial_settings(config, None)
    assert seeded.auto_promote_threshold == 80
    assert seeded.is_playing is False

    restored = initial_settings(config, {"auto_promote_threshold": 55, "is_playing": True})
    assert restored.auto_promote_threshold == 55
    assert restored.is_playing is True
