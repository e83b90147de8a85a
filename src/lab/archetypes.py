"""Archetype & threshold resolver.

Maps a free-text strategy name (plus optional explicit or rules-embedded
archetype) to one canonical archetype, and maps archetype/timeframe to the
minimum evaluation window used by the failure detector and recycle engine.

Everything here is pure. Resolution is fail-closed: when nothing matches,
the result carries an ArchetypeUndeterminable error and no archetype.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Optional

import structlog

from src.lab.errors import ArchetypeInvalid, ArchetypeUndeterminable, ValidationError
from src.shell.contract import EvalThresholds, StrategyClass

log = structlog.get_logger()

STRATEGY_ARCHETYPES = (
    "breakout",
    "orb_breakout",
    "rth_breakout",
    "breakout_retest",
    "mean_reversion",
    "exhaustion_fade",
    "gap_fade",
    "gap_fill",
    "gap_and_go",
    "reversal",
    "reversal_hunter",
    "vwap",
    "vwap_bounce",
    "vwap_reclaim",
    "vwap_scalper",
    "trend",
    "trend_following",
    "trend_ema_cross",
    "trend_macd",
    "momentum_surge",
    "scalping",
    "micro_pullback",
    "range_scalper",
)

# Entry logic family each archetype executes with
ARCHETYPE_TO_ENTRY_CONDITION = {
    "breakout": "BREAKOUT",
    "orb_breakout": "BREAKOUT",
    "rth_breakout": "BREAKOUT",
    "breakout_retest": "BREAKOUT",
    "gap_and_go": "BREAKOUT",
    "mean_reversion": "MEAN_REVERSION",
    "exhaustion_fade": "MEAN_REVERSION",
    "gap_fade": "GAP_FADE",
    "gap_fill": "GAP_FILL",
    "reversal": "REVERSAL",
    "reversal_hunter": "REVERSAL",
    "vwap": "VWAP_TOUCH",
    "vwap_bounce": "VWAP_TOUCH",
    "vwap_reclaim": "VWAP_TOUCH",
    "vwap_scalper": "VWAP_TOUCH",
    "trend": "TREND_CONTINUATION",
    "trend_following": "TREND_CONTINUATION",
    "trend_ema_cross": "TREND_CONTINUATION",
    "trend_macd": "TREND_CONTINUATION",
    "momentum_surge": "MOMENTUM_SURGE",
    # scalping and micro_pullback trade short EMA crosses, not range bounds
    "scalping": "TREND_CONTINUATION",
    "micro_pullback": "TREND_CONTINUATION",
    "range_scalper": "RANGE_SCALP",
}

ARCHETYPE_ALIASES = {
    # mean reversion
    "mean_revert": "mean_reversion",
    "mean_rev": "mean_reversion",
    "mean_reversion_bb": "mean_reversion",
    "mean_reversion_keltner": "mean_reversion",
    "reversion": "mean_reversion",
    "exhaustion": "exhaustion_fade",
    # vwap
    "vwap_deviation_bands": "vwap",
    "vwap_touch": "vwap",
    # momentum ("momo" is trader slang)
    "momentum": "momentum_surge",
    "momentum_burst": "momentum_surge",
    "momo": "momentum_surge",
    "momo_burst": "momentum_surge",
    "momo_alpha": "momentum_surge",
    "momo_surge": "momentum_surge",
    "trend_momentum": "momentum_surge",
    "mtf_momentum": "momentum_surge",
    "volume_spike": "momentum_surge",
    "volume_surge": "momentum_surge",
    "sentiment": "momentum_surge",
    # scalping
    "scalper": "scalping",
    "scalp": "scalping",
    "range_scalp": "range_scalper",
    "micro_pull": "micro_pullback",
    "tick_scalp": "scalping",
    "tick_arb": "range_scalper",
    "micro_vac": "scalping",
    "micro_vacuum": "scalping",
    "session_scalp": "scalping",
    "orderflow_scalp": "scalping",
    "echo": "scalping",
    # gap / fade / session
    "fade": "gap_fade",
    "fader": "gap_fade",
    "gap": "gap_fade",
    "gap_trading": "gap_fade",
    "overnight": "gap_fade",
    "overnight_unwind": "gap_fade",
    "overnight_fade": "gap_fade",
    "session_fade": "gap_fade",
    "asia_unwind": "gap_fade",
    "unwind": "gap_fade",
    # reversal
    "hunter": "reversal_hunter",
    "reversal_trading": "reversal",
    "orderflow_reversal": "reversal",
    "trap": "reversal",
    "fade_trap": "reversal",
    # trend
    "trend_follow": "trend_following",
    "ema_cross": "trend_ema_cross",
    "adx_trend": "trend_following",
    "mtf_ema_pullback": "trend_following",
    "mtf_pullback": "trend_following",
    "ema_pullback": "trend_following",
    "pullback": "trend_following",
    "mtf_trend": "trend_following",
    "grind": "trend_following",
    "macd": "trend_macd",
    "macd_cross": "trend_macd",
    "macd_crossover": "trend_macd",
    "macd_signal": "trend_macd",
    # breakout / volatility
    "orb": "orb_breakout",
    "opening_range_breakout": "orb_breakout",
    "break_retest": "orb_breakout",
    "rth": "rth_breakout",
    "vol_squeeze": "breakout",
    "vol_squeeze_momo": "momentum_surge",
    "vol_compression": "breakout",
    "vol_comp": "breakout",
    "volcomp": "breakout",
    "volatility_regime": "breakout",
    "volatility_squeeze": "breakout",
    "volatility_compression": "breakout",
    "adx_breakout": "breakout",
    "session_breakout": "breakout",
    "squeeze_breakout": "breakout",
    "consolidation_break": "breakout",
    "crush": "breakout",
    "vol_crush": "breakout",
    # arb / auction / liquidity variants trade back to value
    "arb": "mean_reversion",
    "arbitrage": "mean_reversion",
    "stat_arb": "mean_reversion",
    "pair_trade": "mean_reversion",
    "vol_arb": "mean_reversion",
    "volatility_arb": "mean_reversion",
    "bb_adx": "mean_reversion",
    "vol_adx": "mean_reversion",
    "auction": "mean_reversion",
    "auction_liquidity": "mean_reversion",
    "liquidity_sweep": "mean_reversion",
    "liquidity_hunt": "mean_reversion",
    "range_fade": "mean_reversion",
    "range_reversion": "mean_reversion",
    "delta_divergence": "mean_reversion",
    "delta_fade": "mean_reversion",
    "diverge": "mean_reversion",
    "bounce": "mean_reversion",
    "ceiling_fade": "mean_reversion",
    "complacency_fade": "mean_reversion",
    "sentiment_fade": "mean_reversion",
    "peak_fade": "mean_reversion",
    "grind_fade": "mean_reversion",
    "quiet_range": "mean_reversion",
}

_INSTRUMENT_PREFIX = re.compile(
    r"^(mes|mnq|es|nq|ym|mym|rtm|m2k|cl|gc|nasdaq|spx|dowfutures|sp500|emini)_"
)

# Last-resort name inference. First match wins, so specific keywords come
# before generic ones ("squeeze" must beat "vol").
NAME_KEYWORDS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("squeeze", "compression"), "breakout"),
    (("arb",), "mean_reversion"),
    (("momo", "momentum"), "trend_following"),
    (("scalp",), "scalping"),
    (("gap",), "gap_fade"),
    (("fade",), "gap_fade"),
    (("revert", "reversal"), "mean_reversion"),
    (("vwap",), "vwap_bounce"),
    (("break",), "breakout"),
    (("trend",), "trend_following"),
    (("range", "mean"), "mean_reversion"),
    (("vol",), "breakout"),
    (("hybrid",), "scalping"),
    (("ema", "pullback"), "trend_following"),
    (("macd", "mtf"), "trend_following"),
    (("overnight", "unwind"), "gap_fade"),
    (("auction", "liquidity"), "mean_reversion"),
    (("cross", "signal"), "trend_following"),
)


# Per-archetype minimum evaluation windows (upper-case keys)
ARCHETYPE_EVAL_THRESHOLDS: dict[str, EvalThresholds] = {
    "SCALPING": EvalThresholds(75, 3, 2, "High-frequency scalping needs a large sample"),
    "RANGE_SCALP": EvalThresholds(80, 3, 2, "Range scalping needs a large sample"),
    "RANGE_SCALPER": EvalThresholds(80, 3, 2, "Range scalping needs a large sample"),
    "INTRADAY": EvalThresholds(40, 5, 2, "Intraday strategies"),
    "MEAN_REVERSION": EvalThresholds(60, 5, 2, "Mean reversion needs many round trips"),
    "MOMENTUM_SURGE": EvalThresholds(50, 5, 2, "Momentum bursts"),
    "VWAP_TOUCH": EvalThresholds(50, 5, 2, "VWAP touches"),
    "VWAP_BOUNCE": EvalThresholds(50, 5, 2, "VWAP bounces"),
    "BREAKOUT": EvalThresholds(40, 5, 2, "Breakouts trade less often"),
    "RTH_BREAKOUT": EvalThresholds(40, 5, 2, "Regular-hours breakouts"),
    "SWING": EvalThresholds(20, 7, 2, "Swing holds span days"),
    "TREND_FOLLOWING": EvalThresholds(30, 7, 2, "Trend following needs several trends"),
    "TREND_CONTINUATION": EvalThresholds(30, 7, 2, "Trend continuation"),
    "POSITION": EvalThresholds(10, 14, 2, "Position trades are sparse"),
    "GAP_FADE": EvalThresholds(25, 10, 2, "One gap per session at most"),
    "GAP_FILL": EvalThresholds(25, 10, 2, "One gap per session at most"),
    "DEFAULT": EvalThresholds(30, 3, 2, "Default evaluation window"),
}

CLASS_MIN_TRADES = {
    StrategyClass.SCALPING: 75,
    StrategyClass.INTRADAY: 40,
    StrategyClass.SWING: 20,
    StrategyClass.POSITION: 10,
}

CLASS_MIN_DAYS = {
    StrategyClass.SCALPING: 3,
    StrategyClass.INTRADAY: 3,
    StrategyClass.SWING: 7,
    StrategyClass.POSITION: 14,
}


@dataclass
class ArchetypeResolution:
    archetype: Optional[str]
    source: str = ""   # explicit / rules / name / keyword
    errors: list[ValidationError] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return self.archetype is not None and not self.errors


def _normalize_key(value: str) -> str:
    key = re.sub(r"\s+", "_", value.lower().strip())
    return re.sub(r"[-+]", "_", key)


def normalize_archetype(value: str | None) -> Optional[str]:
    """Canonicalize an archetype or archetype-like name. None when unknown."""
    if not value or not value.strip():
        return None
    key = _normalize_key(value)

    if key in STRATEGY_ARCHETYPES:
        return key
    if key in ARCHETYPE_ALIASES:
        return ARCHETYPE_ALIASES[key]

    stripped = _INSTRUMENT_PREFIX.sub("", key)
    if stripped in STRATEGY_ARCHETYPES:
        return stripped
    if stripped in ARCHETYPE_ALIASES:
        return ARCHETYPE_ALIASES[stripped]

    for archetype in STRATEGY_ARCHETYPES:
        if archetype in key:
            return archetype

    # Alias keys only count as whole words ("handicap" must not match "gap")
    for alias, archetype in ARCHETYPE_ALIASES.items():
        if re.search(rf"(^|_){re.escape(alias)}(_|$)", key):
            return archetype
    return None


def infer_archetype_from_name(strategy_name: str | None) -> Optional[str]:
    """Infer from a "{SYMBOL} {Strategy}" style name, then the keyword table."""
    if not strategy_name or not strategy_name.strip():
        return None

    archetype = normalize_archetype(strategy_name)
    if archetype:
        return archetype

    parts = strategy_name.split()
    if len(parts) >= 2:
        archetype = normalize_archetype(" ".join(parts[1:]))
        if archetype:
            return archetype

    return match_name_keywords(strategy_name)


def match_name_keywords(strategy_name: str) -> Optional[str]:
    lower = strategy_name.lower()
    for keywords, archetype in NAME_KEYWORDS:
        if any(k in lower for k in keywords):
            return archetype
    return None


def resolve_archetype(
    strategy_name: str | None,
    archetype_name: str | None = None,
    rules_archetype: str | None = None,
    trace_id: str = "",
) -> ArchetypeResolution:
    """Resolve the canonical archetype in priority order, failing closed.

    1. explicit archetype name, if it maps to the vocabulary
    2. archetype embedded in the rules payload
    3. inference from the strategy name
    An explicit name that is not recognized is recorded as a warning and
    resolution continues; only total failure produces an error.
    """
    result = ArchetypeResolution(archetype=None)

    if archetype_name:
        archetype = normalize_archetype(archetype_name)
        if archetype:
            result.archetype = archetype
            result.source = "explicit"
        else:
            result.warnings.append(ArchetypeInvalid(archetype_name).message)

    if result.archetype is None and rules_archetype:
        archetype = normalize_archetype(rules_archetype)
        if archetype:
            result.archetype = archetype
            result.source = "rules"
            result.warnings.append(f"Using archetype '{archetype}' from rules payload.")

    if result.archetype is None and strategy_name:
        archetype = infer_archetype_from_name(strategy_name)
        if archetype:
            result.archetype = archetype
            result.source = "name"
            result.warnings.append(
                f"Inferred archetype '{archetype}' from strategy name '{strategy_name}'."
            )

    if result.archetype is None:
        result.errors.append(ArchetypeUndeterminable(strategy_name or ""))
        log.warning("archetype.undeterminable", trace_id=trace_id,
                    strategy=strategy_name, archetype_name=archetype_name)
    else:
        log.debug("archetype.resolved", trace_id=trace_id, strategy=strategy_name,
                  archetype=result.archetype, source=result.source)
    return result


def entry_condition_for(archetype: str) -> str:
    return ARCHETYPE_TO_ENTRY_CONDITION.get(archetype, "TREND_CONTINUATION")


def detect_strategy_class(timeframe: str | list[str] | None) -> StrategyClass:
    """Timeframe bands: 1-3m scalping, 5-30m/1h intraday, 2-4h/daily swing, weekly/monthly position."""
    tf = timeframe[0] if isinstance(timeframe, list) and timeframe else timeframe
    if not tf or not isinstance(tf, str):
        return StrategyClass.INTRADAY

    # "1M" is monthly; every other comparison is case-insensitive
    if tf.strip() == "1M":
        return StrategyClass.POSITION
    lower = tf.strip().lower()

    if re.fullmatch(r"[1-3]m", lower):
        return StrategyClass.SCALPING
    if re.fullmatch(r"(5|10|15|30)m", lower) or lower == "1h":
        return StrategyClass.INTRADAY
    if re.fullmatch(r"(2|4)h", lower) or lower in ("1d", "daily"):
        return StrategyClass.SWING
    if lower in ("1w", "weekly", "monthly", "1mo"):
        return StrategyClass.POSITION
    return StrategyClass.INTRADAY


def get_eval_thresholds(archetype: str | None, timeframe: str | list[str] | None) -> EvalThresholds:
    if archetype:
        key = archetype.upper().replace("-", "_").replace(" ", "_")
        if key in ARCHETYPE_EVAL_THRESHOLDS:
            return ARCHETYPE_EVAL_THRESHOLDS[key]

    strategy_class = detect_strategy_class(timeframe)
    return EvalThresholds(
        min_trades=CLASS_MIN_TRADES[strategy_class],
        min_days=CLASS_MIN_DAYS[strategy_class],
        min_regimes=2,
        description=f"{strategy_class.value} strategy (timeframe-derived)",
    )


def normalize_name_to_slug(name: str) -> str:
    """Lower-case and strip everything but [a-z0-9] ("Vol Comp Break" == "VolCompBreak")."""
    return re.sub(r"[^a-z0-9]", "", (name or "").lower())
