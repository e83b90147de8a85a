"""Tests for the recycle decision rules."""

from __future__ import annotations

from src.lab.recycle import determine_recycle_decision, evaluate_recycle_decision
from src.shell.contract import FailureReason, RecycleDecision, Severity


class TestEvaluateRecycle:
    def test_catastrophic_drawdown_kills_without_data(self):
        ev = evaluate_recycle_decision("scalping", "1m", 10, 1, {"max_drawdown_r": 11.0})
        assert ev.decision == RecycleDecision.KILL
        assert ev.is_catastrophic
        assert not ev.meets_min_eval
        assert ev.reasons == ["Catastrophic DD: 11.0R > 10R limit"]

    def test_insufficient_data(self):
        ev = evaluate_recycle_decision("breakout", "5m", 10, 1, {"sharpe": 1.0})
        assert ev.decision == RecycleDecision.INSUFFICIENT_DATA
        assert ev.required_trades == 40
        assert ev.required_days == 5

    def test_scalping_needs_larger_sample(self):
        ev = evaluate_recycle_decision("scalping", "1m", 45, 10, {"sharpe": -0.5})
        assert ev.decision == RecycleDecision.INSUFFICIENT_DATA
        assert ev.required_trades == 75
        assert not ev.meets_min_eval

    def test_continue(self):
        ev = evaluate_recycle_decision("breakout", "5m", 50, 6, {"sharpe": 0.5, "expectancy": 0.1})
        assert ev.decision == RecycleDecision.CONTINUE
        assert ev.meets_min_eval

    def test_iteration_cap_kills(self):
        ev = evaluate_recycle_decision("breakout", "5m", 50, 6, {"sharpe": 0.1, "expectancy": 0.0},
                                       iteration_count=4)
        assert ev.decision == RecycleDecision.KILL
        assert not ev.is_catastrophic

    def test_hard_floor_replaces(self):
        ev = evaluate_recycle_decision("breakout", "5m", 50, 6, {"sharpe": -0.5, "expectancy": 0.0})
        assert ev.decision == RecycleDecision.REPLACE
        ev = evaluate_recycle_decision("breakout", "5m", 50, 6, {"sharpe": 0.1, "expectancy": -0.2})
        assert ev.decision == RecycleDecision.REPLACE

    def test_soft_miss_tweaks(self):
        ev = evaluate_recycle_decision("breakout", "5m", 50, 6, {"sharpe": 0.1, "expectancy": 0.05})
        assert ev.decision == RecycleDecision.TWEAK

    def test_soft_drawdown_blocks_continue(self):
        ev = evaluate_recycle_decision("breakout", "5m", 50, 6,
                                       {"sharpe": 0.8, "expectancy": 0.2, "max_drawdown_r": 7.5})
        assert ev.decision == RecycleDecision.TWEAK
        assert ev.reasons == ["Drawdown 7.5R above soft limit 6R, tighten risk"]


class TestDetermineRecycle:
    def test_rework_limit(self):
        v = determine_recycle_decision([FailureReason.LOW_WIN_RATE], Severity.MINOR, rework_attempts=2)
        assert v.decision == RecycleDecision.KILL
        assert v.reason == "Failed twice after rework - structural issue"

    def test_structural_flaw(self):
        v = determine_recycle_decision(["STRUCTURAL_FLAW"], "MINOR")
        assert v.decision == RecycleDecision.KILL

    def test_regime_mismatch_with_known_regime(self):
        v = determine_recycle_decision(["REGIME_MISMATCH"], "MINOR", regime_at_detection="VOLATILITY_SPIKE")
        assert v.decision == RecycleDecision.REPLACE
        assert "VOLATILITY_SPIKE" in v.reason

    def test_regime_mismatch_unknown_regime_is_single_mode(self):
        v = determine_recycle_decision(["REGIME_MISMATCH"], "MINOR")
        assert v.decision == RecycleDecision.TWEAK
        assert v.reason == "Single failure mode - parameter refinement"

    def test_critical_multi_factor(self):
        codes = ["LOW_SHARPE", "HIGH_DRAWDOWN", "LOW_WIN_RATE"]
        v = determine_recycle_decision(codes, "CRITICAL")
        assert v.decision == RecycleDecision.KILL
        assert v.reason == "Critical multi-factor failure - unfixable"

    def test_negative_expectancy(self):
        v = determine_recycle_decision(["EXCESSIVE_LOSSES", "LOW_SHARPE"], "MAJOR")
        assert v.decision == RecycleDecision.KILL

    def test_tweak_paths(self):
        assert determine_recycle_decision(["TIMING_INEFFICIENCY"], "MINOR").decision == RecycleDecision.TWEAK
        assert determine_recycle_decision(["LOW_WIN_RATE"], "MINOR").decision == RecycleDecision.TWEAK
        assert determine_recycle_decision(["STAGNATION"], "MINOR").decision == RecycleDecision.TWEAK
        v = determine_recycle_decision(["HIGH_DRAWDOWN"], "CRITICAL")
        assert v.decision == RecycleDecision.TWEAK
        assert v.reason.startswith("Drawdown breach")

    def test_multiple_modes_replace(self):
        v = determine_recycle_decision(["LOW_WIN_RATE", "LOW_SHARPE"], "MAJOR")
        assert v.decision == RecycleDecision.REPLACE
