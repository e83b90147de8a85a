"""Tests for confidence scoring, regime adjustment and the disposition gate."""

from __future__ import annotations

from src.lab.disposition import decide_disposition
from src.lab.scoring import (
    ConfidenceScorer,
    adjust_score,
    regime_bonus,
    regime_match_label,
    score_tier,
    tier_allowed,
)
from src.shell.contract import (
    CandidateRules,
    ConfidenceBreakdown,
    Disposition,
    Evidence,
    FailureContext,
    NoveltyJustification,
    RegimeTrigger,
    ResearchCandidate,
)


def _strong_candidate() -> ResearchCandidate:
    return ResearchCandidate(
        strategy_name="MES VWAP Fade",
        hypothesis="Price reverts to VWAP during a low volume regime because liquidity providers fade extremes",
        rules=CandidateRules(
            entry=["close 2 ATR below VWAP"],
            exit=["touch VWAP"],
            risk=["stop 12 ticks"],
            filters=["RTH only"],
            invalidation=["trend day detected"],
        ),
        evidence=[
            Evidence(title="a", source_tier="PRIMARY"),
            Evidence(title="b", source_tier="PRIMARY"),
            Evidence(title="c", source_tier="SECONDARY"),
        ],
        novelty_justification=NoveltyJustification(distinct_deltas=["session filter", "ATR bands"]),
    )


class TestRegimeAdjustment:
    def test_bonus_lookup(self):
        assert regime_bonus("mean_reversion", RegimeTrigger.RANGE_BOUND) == 25
        assert regime_bonus("mean_reversion", "TRENDING_STRONG") == -20
        assert regime_bonus("unknown_archetype", RegimeTrigger.RANGE_BOUND) == 0
        assert regime_bonus("mean_reversion", RegimeTrigger.NONE) == 0
        assert regime_bonus("mean_reversion", None) == 0

    def test_adjusted_score(self):
        score = adjust_score(70, "RANGE_BOUND", "mean_reversion")
        assert score.original == 70
        assert score.bonus == 25
        assert score.adjusted == 95
        assert score.match == "OPTIMAL"
        assert score.regime == "RANGE_BOUND"

    def test_clamped_to_range(self):
        assert adjust_score(90, RegimeTrigger.TRENDING_STRONG, "trend_following").adjusted == 100
        low = adjust_score(10, RegimeTrigger.TRENDING_STRONG, "mean_reversion")
        assert low.adjusted == 0
        assert low.match == "UNFAVORABLE"

    def test_no_regime_means_no_bonus(self):
        score = adjust_score(62, None, "mean_reversion")
        assert score.bonus == 0
        assert score.adjusted == 62
        assert score.regime == "NONE"
        assert adjust_score(62, "SOLAR_FLARE", "mean_reversion").regime == "NONE"

    def test_first_archetype_with_affinity_row_wins(self):
        score = adjust_score(50, "RANGE_BOUND", "momentum_surge", "mean_reversion")
        assert score.bonus == 25
        assert score.adjusted == 75

    def test_match_labels(self):
        assert regime_match_label(20) == "OPTIMAL"
        assert regime_match_label(5) == "FAVORABLE"
        assert regime_match_label(-5) == "NEUTRAL"
        assert regime_match_label(-6) == "UNFAVORABLE"


class TestTiers:
    def test_tier_boundaries(self):
        assert score_tier(80) == "A"
        assert score_tier(79) == "B"
        assert score_tier(65) == "B"
        assert score_tier(64) == "C"
        assert score_tier(50) == "C"
        assert score_tier(49) == "D"

    def test_tier_allowed(self):
        assert tier_allowed("A", "B")
        assert not tier_allowed("C", "B")
        assert tier_allowed("D", "ANY")
        assert not tier_allowed("B", "A")


class TestConfidenceScorer:
    def test_strong_candidate_breakdown(self):
        total, breakdown = ConfidenceScorer().score(_strong_candidate())
        assert breakdown.research_confidence == 100
        assert breakdown.structural_soundness == 100
        assert breakdown.historical_validation == 65
        assert breakdown.regime_robustness == 100
        assert 89 <= total <= 90

    def test_failure_context_raises_historical(self):
        failure = FailureContext(reason_codes=["LOW_SHARPE"])
        _, breakdown = ConfidenceScorer().score(_strong_candidate(), source_failure=failure)
        assert breakdown.historical_validation == 85

    def test_backtest_bonus_capped(self):
        total, _ = ConfidenceScorer().score(
            _strong_candidate(),
            backtest={"sharpe_ratio": 2.0, "max_drawdown_pct": 10, "win_rate": 60},
        )
        assert total == 100

    def test_bare_candidate(self):
        total, breakdown = ConfidenceScorer().score(ResearchCandidate(strategy_name="x", hypothesis="x"))
        assert breakdown.research_confidence == 10
        assert breakdown.structural_soundness == 10
        assert breakdown.historical_validation == 50
        assert total < 40


def _breakdown(research: int = 50, structural: int = 50) -> ConfidenceBreakdown:
    return ConfidenceBreakdown(
        research_confidence=research,
        structural_soundness=structural,
        historical_validation=50,
        regime_robustness=50,
    )


class TestDisposition:
    def test_hard_gate_beats_score(self):
        d = decide_disposition(_breakdown(structural=5), 99, 65, False)
        assert d.disposition == Disposition.REJECTED
        assert d.reason_code == "HARD_GATE"

    def test_experimental_path(self):
        d = decide_disposition(_breakdown(research=5, structural=20), 30, 65, False)
        assert d.disposition == Disposition.QUEUED
        assert d.reason_code == "EXPERIMENTAL"
        d = decide_disposition(_breakdown(research=5, structural=20), 30, 65, True)
        assert d.disposition == Disposition.PENDING_REVIEW

    def test_experimental_needs_solid_structure(self):
        d = decide_disposition(_breakdown(research=5, structural=10), 30, 65, False)
        assert d.disposition == Disposition.REJECTED
        assert d.reason_code == "LOW_SCORE"

    def test_auto_promote(self):
        d = decide_disposition(_breakdown(), 70, 65, False)
        assert d.disposition == Disposition.SENT_TO_LAB
        assert d.reason_code == "AUTO_PROMOTED"

    def test_score_equal_to_threshold_promotes(self):
        d = decide_disposition(_breakdown(), 65, 65, False)
        assert d.disposition == Disposition.SENT_TO_LAB
        assert d.reason == "Score 65 >= 65, auto-promoted"

    def test_manual_approval_holds_promotion(self):
        d = decide_disposition(_breakdown(), 70, 65, True)
        assert d.disposition == Disposition.PENDING_REVIEW
        assert d.reason_code == "AWAITING_APPROVAL"

    def test_queue_floor(self):
        assert decide_disposition(_breakdown(), 40, 65, False).disposition == Disposition.QUEUED
        d = decide_disposition(_breakdown(), 39, 65, False)
        assert d.disposition == Disposition.REJECTED
        assert d.reason_code == "LOW_SCORE"
