"""Confidence & regime scoring.

The generator normally supplies a confidence score and breakdown. When it
does not, ConfidenceScorer fills them in at the boundary. The regime-affinity
bonus is always applied here, producing the adjusted score used for every
downstream decision.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from src.shell.contract import (
    ConfidenceBreakdown,
    FailureContext,
    RegimeTrigger,
    ResearchCandidate,
)

WEIGHTS = {
    "research_confidence": 0.30,
    "structural_soundness": 0.25,
    "historical_validation": 0.30,
    "regime_robustness": 0.15,
}

_REGIME_ORDER = (
    RegimeTrigger.VOLATILITY_SPIKE,
    RegimeTrigger.VOLATILITY_COMPRESSION,
    RegimeTrigger.TRENDING_STRONG,
    RegimeTrigger.RANGE_BOUND,
    RegimeTrigger.LIQUIDITY_THIN,
    RegimeTrigger.NEWS_SHOCK,
    RegimeTrigger.MACRO_EVENT_CLUSTER,
)

# Bonus per regime, columns in _REGIME_ORDER. NONE is always 0.
_AFFINITY_ROWS = {
    "breakout_retest":     (15, -10, 20, -15, 5, 10, 5),
    "mean_reversion":      (-10, 5, -20, 25, -10, -15, -10),
    "trend_following":     (10, -15, 25, -25, 0, 5, 5),
    "momentum":            (20, -10, 20, -15, -5, 15, 10),
    "range":               (-15, 10, -20, 25, 0, -20, -10),
    "volatility_breakout": (25, 15, 10, -10, 5, 20, 15),
    "session_transition":  (10, 5, 10, 5, -10, 5, 5),
    "liquidity_trap":      (15, -5, 5, 10, 25, 10, 5),
    "open_drive":          (20, -10, 15, -10, 5, 10, 5),
    "structure_break":     (20, -5, 15, -15, 10, 15, 10),
    "gap_fade":            (10, 5, -10, 15, 0, 5, 0),
    "tick_scalper":        (15, -15, 10, 5, -20, 10, 5),
    "vwap_reversion":      (-5, 10, -15, 20, -10, -10, -5),
    "atr_expansion":       (25, 10, 15, -10, 5, 20, 15),
    "bollinger_squeeze":   (10, 25, 5, 15, 0, 5, 5),
    "rsi_divergence":      (5, 10, -10, 20, -5, -5, 0),
    "order_flow":          (15, 0, 15, 5, -15, 10, 10),
    "delta_divergence":    (10, 5, 10, 10, -10, 5, 5),
}

REGIME_AFFINITY: dict[str, dict[RegimeTrigger, int]] = {
    name: {**dict(zip(_REGIME_ORDER, row)), RegimeTrigger.NONE: 0}
    for name, row in _AFFINITY_ROWS.items()
}

TIER_THRESHOLDS = (("A", 80), ("B", 65), ("C", 50))
TIER_MEMBERS = {
    "ANY": ("A", "B", "C", "D"),
    "A": ("A",),
    "B": ("A", "B"),
    "C": ("A", "B", "C"),
}


def _affinity_key(archetype: str) -> str:
    return re.sub(r"[^a-z_]", "_", archetype.lower())


def regime_bonus(archetype: Optional[str], regime: RegimeTrigger | str | None) -> int:
    if not archetype or not regime:
        return 0
    row = REGIME_AFFINITY.get(_affinity_key(archetype))
    if row is None:
        return 0
    try:
        regime = RegimeTrigger(regime)
    except ValueError:
        return 0
    return row.get(regime, 0)


def regime_match_label(bonus: int) -> str:
    if bonus >= 20:
        return "OPTIMAL"
    if bonus >= 5:
        return "FAVORABLE"
    if bonus >= -5:
        return "NEUTRAL"
    return "UNFAVORABLE"


@dataclass(frozen=True)
class AdjustedScore:
    original: int
    bonus: int
    adjusted: int
    regime: str
    match: str


def adjust_score(
    confidence: int,
    regime: RegimeTrigger | str | None,
    *archetypes: Optional[str],
) -> AdjustedScore:
    """Apply the regime bonus for the first archetype name with an affinity row.

    Several names may be given (e.g. the generator's raw archetype, then the
    canonical one); unknown names are skipped.
    """
    try:
        regime_value = RegimeTrigger(regime).value if regime else RegimeTrigger.NONE.value
    except ValueError:
        regime_value = RegimeTrigger.NONE.value
    bonus = 0
    for archetype in archetypes:
        if archetype and _affinity_key(archetype) in REGIME_AFFINITY:
            bonus = regime_bonus(archetype, regime_value)
            break
    adjusted = max(0, min(100, int(confidence) + bonus))
    return AdjustedScore(
        original=int(confidence),
        bonus=bonus,
        adjusted=adjusted,
        regime=regime_value,
        match=regime_match_label(bonus),
    )


def score_tier(score: int) -> str:
    for tier, floor in TIER_THRESHOLDS:
        if score >= floor:
            return tier
    return "D"


def tier_allowed(tier: str, min_tier: str) -> bool:
    return tier in TIER_MEMBERS.get(min_tier, TIER_MEMBERS["ANY"])


class ConfidenceScorer:
    """Deterministic 0-100 confidence from evidence, rule structure and hypothesis text."""

    def score(
        self,
        candidate: ResearchCandidate,
        source_failure: FailureContext | None = None,
        backtest: dict | None = None,
    ) -> tuple[int, ConfidenceBreakdown]:
        breakdown = ConfidenceBreakdown(
            research_confidence=self._research(candidate),
            structural_soundness=self._structural(candidate),
            historical_validation=self._historical(candidate, source_failure),
            regime_robustness=self._regime_robustness(candidate),
        )
        raw = sum(getattr(breakdown, k) * w for k, w in WEIGHTS.items())
        raw += self._backtest_bonus(backtest)
        return round(min(raw, 100)), breakdown

    def _research(self, c: ResearchCandidate) -> int:
        tiers = [e.source_tier.upper() for e in c.evidence]
        primary = tiers.count("PRIMARY")
        secondary = tiers.count("SECONDARY")

        if primary >= 2:
            citations = 30
        elif primary == 1 and secondary >= 1:
            citations = 25
        elif primary == 1 or secondary >= 2:
            citations = 20
        elif tiers:
            citations = 10
        else:
            citations = 0

        if len(tiers) >= 3 and primary >= 1:
            consensus = 30
        elif len(tiers) >= 2:
            consensus = 20
        elif tiers:
            consensus = 10
        else:
            consensus = 0

        novelty = min(len(c.novelty_justification.distinct_deltas) * 10, 20)

        hypothesis = c.hypothesis.lower()
        alignment = 20 if any(w in hypothesis for w in ("regime", "when", "during")) else 10

        return min(citations + consensus + novelty + alignment, 100)

    def _structural(self, c: ResearchCandidate) -> int:
        rules = c.rules
        if rules is None:
            return 10
        has_entry, has_exit = bool(rules.entry), bool(rules.exit)
        has_risk, has_invalidation = bool(rules.risk), bool(rules.invalidation)

        completeness = 0
        if has_entry and has_exit:
            if has_risk and has_invalidation:
                completeness = 30
            elif has_risk or has_invalidation:
                completeness = 20
            else:
                completeness = 10

        if has_entry and has_exit:
            symmetry = 25
        elif has_entry or has_exit:
            symmetry = 10
        else:
            symmetry = 0

        invalidation = 25 if has_invalidation else 0

        if rules.filters:
            stability = 20
        elif has_risk:
            stability = 15
        else:
            stability = 10

        return min(completeness + symmetry + invalidation + stability, 100)

    def _historical(self, c: ResearchCandidate, source_failure: FailureContext | None) -> int:
        # failure-informed research starts from a known baseline
        score = 25 + 20 + 15 if source_failure else 15 + 15 + 10

        closest = c.novelty_justification.closest_known
        if closest:
            score += min(len(closest) * 10, 30)
        elif len(c.evidence) >= 2:
            score += 25
        elif len(c.evidence) == 1:
            score += 15
        else:
            score += 10
        return min(score, 100)

    def _regime_robustness(self, c: ResearchCandidate) -> int:
        hypothesis = c.hypothesis.lower()
        causal = "because" in hypothesis or "due to" in hypothesis
        regime = "regime" in hypothesis

        if causal and regime:
            score = 40
        elif causal or regime:
            score = 25
        elif len(hypothesis) > 50:
            score = 15
        else:
            score = 10

        score += 30 if ("volatility" in hypothesis or "vol" in hypothesis) else 15
        score += 30 if ("liquidity" in hypothesis or "volume" in hypothesis) else 15
        return min(score, 100)

    @staticmethod
    def _backtest_bonus(backtest: dict | None) -> int:
        if not backtest:
            return 0
        bonus = 0
        if (backtest.get("sharpe_ratio") or 0) > 1.5:
            bonus += 5
        if backtest.get("max_drawdown_pct") is not None and backtest["max_drawdown_pct"] < 15:
            bonus += 5
        if (backtest.get("win_rate") or 0) > 50:
            bonus += 5
        return bonus
