"""Operator settings for the lab.

One LabSettings instance is injected into the engine, promoter and API.
Every setter clamps numerics to a safe range on write. snapshot()/restore()
round-trip through the lab_settings table so operator changes survive a
restart.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

import structlog

log = structlog.get_logger()

PROMOTE_TIERS = ("A", "B", "C", "ANY")
QC_TIERS = ("A", "B", "AB")
RESEARCH_DEPTHS = ("CONTINUOUS_SCAN", "FOCUSED_BURST", "FRONTIER_RESEARCH")
RESEARCH_MODELS = ("QUICK", "BALANCED", "DEEP")
RECENCY_WINDOWS = ("HOUR", "DAY", "WEEK", "MONTH", "YEAR")


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


@dataclass
class PromotionGate:
    """Numeric gate used by fast-track and trials auto-promotion."""
    min_trades: int = 50
    min_sharpe: float = 1.0
    min_win_rate: float = 50.0
    max_drawdown: float = 20.0

    def clamped(self) -> PromotionGate:
        return PromotionGate(
            min_trades=int(_clamp(int(self.min_trades), 10, 500)),
            min_sharpe=float(_clamp(float(self.min_sharpe), 0.5, 5.0)),
            min_win_rate=float(_clamp(float(self.min_win_rate), 40, 80)),
            max_drawdown=float(_clamp(float(self.max_drawdown), 5, 50)),
        )


@dataclass
class LabSettings:
    is_playing: bool = True
    paused_reason: str | None = None
    require_manual_approval: bool = False
    auto_promote_threshold: int = 65
    auto_promote_tier: str = "B"
    research_depth: str = "CONTINUOUS_SCAN"
    research_model: str = "BALANCED"
    recency: str = "WEEK"
    custom_focus: str = ""
    cost_efficiency_mode: bool = False
    qc_daily_limit: int = 150
    qc_weekly_limit: int = 500
    qc_auto_trigger: bool = True
    qc_threshold: int = 80
    qc_tier: str = "AB"
    fast_track: PromotionGate = field(
        default_factory=lambda: PromotionGate(50, 1.5, 55.0, 15.0)
    )
    trials_auto_promote: PromotionGate = field(
        default_factory=lambda: PromotionGate(50, 1.0, 50.0, 20.0)
    )

    # --- Setters ---

    def set_playing(self, playing: bool, reason: str | None = None) -> None:
        self.is_playing = bool(playing)
        self.paused_reason = None if playing else (reason or "Paused by operator")
        log.info("settings.playing", is_playing=self.is_playing, reason=self.paused_reason)

    def set_manual_approval(self, required: bool) -> None:
        self.require_manual_approval = bool(required)

    def set_auto_promote_threshold(self, value: int) -> None:
        self.auto_promote_threshold = int(_clamp(int(value), 50, 95))

    def set_auto_promote_tier(self, tier: str) -> None:
        tier = str(tier).upper()
        if tier not in PROMOTE_TIERS:
            raise ValueError(f"auto_promote_tier must be one of {PROMOTE_TIERS}, got {tier}")
        self.auto_promote_tier = tier

    def set_research_depth(self, depth: str) -> None:
        depth = str(depth).upper()
        if depth not in RESEARCH_DEPTHS:
            raise ValueError(f"research_depth must be one of {RESEARCH_DEPTHS}, got {depth}")
        self.research_depth = depth

    def set_research_hints(
        self, model: str | None = None, recency: str | None = None, custom_focus: str | None = None,
    ) -> None:
        if model is not None:
            model = str(model).upper()
            if model not in RESEARCH_MODELS:
                raise ValueError(f"research_model must be one of {RESEARCH_MODELS}, got {model}")
            self.research_model = model
        if recency is not None:
            recency = str(recency).upper()
            if recency not in RECENCY_WINDOWS:
                raise ValueError(f"recency must be one of {RECENCY_WINDOWS}, got {recency}")
            self.recency = recency
        if custom_focus is not None:
            self.custom_focus = str(custom_focus).strip()[:500]

    def set_cost_efficiency_mode(self, enabled: bool) -> None:
        self.cost_efficiency_mode = bool(enabled)

    @property
    def effective_research_model(self) -> str:
        return "QUICK" if self.cost_efficiency_mode else self.research_model

    def set_qc_limits(
        self,
        daily: int | None = None,
        weekly: int | None = None,
        auto_trigger: bool | None = None,
        threshold: int | None = None,
        tier: str | None = None,
    ) -> None:
        if daily is not None:
            self.qc_daily_limit = int(_clamp(int(daily), 1, 150))
        if weekly is not None:
            self.qc_weekly_limit = int(_clamp(int(weekly), 5, 500))
        if auto_trigger is not None:
            self.qc_auto_trigger = bool(auto_trigger)
        if threshold is not None:
            self.qc_threshold = int(_clamp(int(threshold), 50, 95))
        if tier is not None:
            tier = str(tier).upper()
            if tier not in QC_TIERS:
                raise ValueError(f"qc_tier must be one of {QC_TIERS}, got {tier}")
            self.qc_tier = tier

    def set_fast_track(self, **values: Any) -> None:
        self.fast_track = PromotionGate(**{**asdict(self.fast_track), **values}).clamped()

    def set_trials_auto_promote(self, **values: Any) -> None:
        self.trials_auto_promote = PromotionGate(
            **{**asdict(self.trials_auto_promote), **values}
        ).clamped()

    # --- Bulk update / persistence ---

    def update(self, changes: dict[str, Any]) -> list[str]:
        """Apply a partial update (API PATCH body). Returns the keys applied.

        Unknown keys raise ValueError so a typo never silently no-ops.
        """
        applied = []
        for key, value in changes.items():
            if key == "is_playing":
                self.set_playing(value, changes.get("paused_reason"))
            elif key == "paused_reason":
                continue
            elif key == "require_manual_approval":
                self.set_manual_approval(value)
            elif key == "auto_promote_threshold":
                self.set_auto_promote_threshold(value)
            elif key == "auto_promote_tier":
                self.set_auto_promote_tier(value)
            elif key == "research_depth":
                self.set_research_depth(value)
            elif key in ("research_model", "recency", "custom_focus"):
                self.set_research_hints(**{"model" if key == "research_model" else key: value})
            elif key == "cost_efficiency_mode":
                self.set_cost_efficiency_mode(value)
            elif key.startswith("qc_"):
                name = {"qc_daily_limit": "daily", "qc_weekly_limit": "weekly",
                        "qc_auto_trigger": "auto_trigger", "qc_threshold": "threshold",
                        "qc_tier": "tier"}.get(key)
                if name is None:
                    raise ValueError(f"Unknown setting: {key}")
                self.set_qc_limits(**{name: value})
            elif key == "fast_track":
                self.set_fast_track(**_gate_fields(value))
            elif key == "trials_auto_promote":
                self.set_trials_auto_promote(**_gate_fields(value))
            else:
                raise ValueError(f"Unknown setting: {key}")
            applied.append(key)
        return applied

    def snapshot(self) -> dict[str, Any]:
        data = asdict(self)
        data["effective_research_model"] = self.effective_research_model
        return data

    @classmethod
    def restore(cls, data: dict[str, Any] | None) -> LabSettings:
        """Rebuild from a snapshot, re-applying every clamp. Bad keys are logged and dropped."""
        settings = cls()
        if not data:
            return settings
        data = {k: v for k, v in data.items() if k != "effective_research_model"}
        for key, value in data.items():
            if key == "is_playing":
                settings.set_playing(value, data.get("paused_reason"))
                continue
            try:
                settings.update({key: value})
            except (ValueError, TypeError) as e:
                log.warning("settings.restore_skipped", key=key, error=str(e))
        return settings


def _gate_fields(value: Any) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ValueError("promotion gate must be an object")
    allowed = {"min_trades", "min_sharpe", "min_win_rate", "max_drawdown"}
    unknown = set(value) - allowed
    if unknown:
        raise ValueError(f"Unknown gate fields: {sorted(unknown)}")
    return value
