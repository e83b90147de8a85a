"""Configuration loading: merges settings.toml and .env."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv


PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
CONFIG_DIR = PROJECT_ROOT / "config"


@dataclass
class LabConfig:
    """Operator defaults applied when no persisted lab_settings row exists."""
    require_manual_approval: bool = False
    auto_promote_threshold: int = 65
    auto_promote_tier: str = "B"
    research_depth: str = "CONTINUOUS_SCAN"
    start_playing: bool = True


@dataclass
class SchedulerConfig:
    tick_seconds: int = 60
    min_interval_hours: float = 1.0
    base_interval_hours: float = 2.0
    max_interval_hours: float = 6.0
    failure_scan_minutes: int = 30
    auto_promotion_minutes: int = 15


@dataclass
class FailureThresholdConfig:
    min_sharpe_ratio: float = 0.3
    max_drawdown_pct: float = 25.0
    min_win_rate: float = 35.0
    stagnation_days: int = 3
    degradation_window: int = 5
    degradation_threshold_pct: float = 15.0


@dataclass
class PromotionConfig:
    novelty_population_limit: int = 500
    backfill_batch: int = 100


@dataclass
class ApiConfig:
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 8090
    api_key: str = ""


@dataclass
class Config:
    log_level: str = "INFO"
    timezone: str = "America/New_York"
    db_path: str = ""
    default_user_id: str = "default"
    monitored_symbols: list[str] = field(default_factory=lambda: ["MES", "MNQ"])
    lab: LabConfig = field(default_factory=LabConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    failure: FailureThresholdConfig = field(default_factory=FailureThresholdConfig)
    promotion: PromotionConfig = field(default_factory=PromotionConfig)
    api: ApiConfig = field(default_factory=ApiConfig)


def load_config(settings_path: Path | None = None) -> Config:
    """Load config from settings.toml and .env."""
    load_dotenv(PROJECT_ROOT / ".env")

    config = Config()
    config.db_path = str(PROJECT_ROOT / "data" / "strategy_lab.db")

    settings_path = settings_path or CONFIG_DIR / "settings.toml"
    if settings_path.exists():
        with open(settings_path, "rb") as f:
            settings = tomllib.load(f)

        general = settings.get("general", {})
        config.log_level = general.get("log_level", config.log_level)
        config.timezone = general.get("timezone", config.timezone)
        config.default_user_id = general.get("default_user_id", config.default_user_id)
        config.monitored_symbols = general.get("monitored_symbols", config.monitored_symbols)

        lab = settings.get("lab", {})
        config.lab.require_manual_approval = lab.get("require_manual_approval", config.lab.require_manual_approval)
        config.lab.auto_promote_threshold = lab.get("auto_promote_threshold", config.lab.auto_promote_threshold)
        config.lab.auto_promote_tier = lab.get("auto_promote_tier", config.lab.auto_promote_tier)
        config.lab.research_depth = lab.get("research_depth", config.lab.research_depth)
        config.lab.start_playing = lab.get("start_playing", config.lab.start_playing)

        sched = settings.get("scheduler", {})
        config.scheduler.tick_seconds = sched.get("tick_seconds", config.scheduler.tick_seconds)
        config.scheduler.min_interval_hours = sched.get("min_interval_hours", config.scheduler.min_interval_hours)
        config.scheduler.base_interval_hours = sched.get("base_interval_hours", config.scheduler.base_interval_hours)
        config.scheduler.max_interval_hours = sched.get("max_interval_hours", config.scheduler.max_interval_hours)
        config.scheduler.failure_scan_minutes = sched.get("failure_scan_minutes", config.scheduler.failure_scan_minutes)
        config.scheduler.auto_promotion_minutes = sched.get("auto_promotion_minutes", config.scheduler.auto_promotion_minutes)

        failure = settings.get("failure", {})
        for key in vars(config.failure):
            if key in failure:
                setattr(config.failure, key, failure[key])

        promotion = settings.get("promotion", {})
        config.promotion.novelty_population_limit = promotion.get(
            "novelty_population_limit", config.promotion.novelty_population_limit)
        config.promotion.backfill_batch = promotion.get("backfill_batch", config.promotion.backfill_batch)

        api = settings.get("api", {})
        config.api.enabled = api.get("enabled", config.api.enabled)
        config.api.host = api.get("host", config.api.host)
        config.api.port = api.get("port", config.api.port)

    # Environment variables (secrets, deployment overrides)
    config.api.api_key = os.getenv("API_KEY", "")
    config.db_path = os.getenv("STRATEGY_LAB_DB") or config.db_path

    _validate_config(config)

    return config


def _validate_config(config: Config) -> None:
    """Validate config values are within sane ranges."""
    from zoneinfo import ZoneInfo

    errors = []

    if config.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        errors.append(f"log_level must be a standard level name, got '{config.log_level}'")
    if not config.default_user_id:
        errors.append("default_user_id must not be empty")
    if not config.monitored_symbols:
        errors.append("At least one monitored symbol must be configured")

    if not (50 <= config.lab.auto_promote_threshold <= 95):
        errors.append(f"lab.auto_promote_threshold must be 50-95, got {config.lab.auto_promote_threshold}")
    if config.lab.auto_promote_tier not in ("A", "B", "C", "ANY"):
        errors.append(f"lab.auto_promote_tier must be A, B, C or ANY, got '{config.lab.auto_promote_tier}'")

    s = config.scheduler
    if s.tick_seconds < 1:
        errors.append(f"scheduler.tick_seconds must be >= 1, got {s.tick_seconds}")
    if not (0 < s.min_interval_hours <= s.base_interval_hours <= s.max_interval_hours):
        errors.append(
            "scheduler intervals must satisfy 0 < min <= base <= max, got "
            f"{s.min_interval_hours}/{s.base_interval_hours}/{s.max_interval_hours}"
        )
    if s.failure_scan_minutes < 1:
        errors.append(f"scheduler.failure_scan_minutes must be >= 1, got {s.failure_scan_minutes}")
    if s.auto_promotion_minutes < 1:
        errors.append(f"scheduler.auto_promotion_minutes must be >= 1, got {s.auto_promotion_minutes}")

    f = config.failure
    if not (0 < f.max_drawdown_pct <= 100):
        errors.append(f"failure.max_drawdown_pct must be 0-100, got {f.max_drawdown_pct}")
    if not (0 <= f.min_win_rate <= 100):
        errors.append(f"failure.min_win_rate must be 0-100, got {f.min_win_rate}")
    if f.stagnation_days < 1:
        errors.append(f"failure.stagnation_days must be >= 1, got {f.stagnation_days}")
    if f.degradation_window < 2:
        errors.append(f"failure.degradation_window must be >= 2, got {f.degradation_window}")

    if config.promotion.novelty_population_limit < 1:
        errors.append(f"promotion.novelty_population_limit must be >= 1, got {config.promotion.novelty_population_limit}")

    if config.api.enabled:
        if not (1 <= config.api.port <= 65535):
            errors.append(f"api.port must be 1-65535, got {config.api.port}")

    try:
        ZoneInfo(config.timezone)
    except (KeyError, Exception):
        errors.append(f"Invalid timezone: '{config.timezone}'")

    if errors:
        raise ValueError("Config validation failed:\n  " + "\n  ".join(errors))
