"""Recycle decision engine.

evaluate_recycle_decision() gates on the minimum evaluation window and the
catastrophic drawdown kill-switch. determine_recycle_decision() maps a failing
bot's reason codes to CONTINUE/TWEAK/REPLACE/KILL. Both are pure.
"""

from __future__ import annotations

from typing import Iterable

from src.lab.archetypes import get_eval_thresholds
from src.shell.contract import (
    FailureReason,
    RecycleDecision,
    RecycleEvaluation,
    RecycleVerdict,
    Severity,
)

SOFT_SHARPE_FLOOR = 0.2
HARD_SHARPE_FLOOR = -0.2
SOFT_EXPECTANCY_FLOOR = 0.0
HARD_EXPECTANCY_FLOOR = -0.1
MAX_DD_SOFT_R = 6.0
MAX_DD_HARD_R = 10.0
MAX_TWEAK_ITERATIONS = 2
MAX_REPLACE_ITERATIONS = 2
MAX_REWORK_ATTEMPTS = 2


def evaluate_recycle_decision(
    archetype: str | None,
    timeframe: str | list[str] | None,
    current_trades: int,
    current_days: float,
    metrics: dict[str, float],
    iteration_count: int = 0,
) -> RecycleEvaluation:
    """Verdict for one bot. metrics keys: sharpe, expectancy (R), max_drawdown_r, win_rate.

    A drawdown beyond MAX_DD_HARD_R kills the bot even with zero trades.
    """
    thresholds = get_eval_thresholds(archetype, timeframe)
    meets_min_eval = (
        current_trades >= thresholds.min_trades and current_days >= thresholds.min_days
    )

    def verdict(decision: RecycleDecision, reason: str, catastrophic: bool = False) -> RecycleEvaluation:
        return RecycleEvaluation(
            decision=decision,
            reasons=[reason],
            meets_min_eval=meets_min_eval,
            current_trades=current_trades,
            required_trades=thresholds.min_trades,
            current_days=current_days,
            required_days=thresholds.min_days,
            metrics=dict(metrics),
            is_catastrophic=catastrophic,
            iteration_count=iteration_count,
        )

    drawdown_r = metrics.get("max_drawdown_r")
    if drawdown_r is not None and drawdown_r > MAX_DD_HARD_R:
        return verdict(
            RecycleDecision.KILL,
            f"Catastrophic DD: {drawdown_r:.1f}R > {MAX_DD_HARD_R:g}R limit",
            catastrophic=True,
        )

    if not meets_min_eval:
        return verdict(
            RecycleDecision.INSUFFICIENT_DATA,
            f"Insufficient data: {current_trades}/{thresholds.min_trades} trades, "
            f"{current_days:g}/{thresholds.min_days} days",
        )

    sharpe = metrics.get("sharpe") or 0.0
    expectancy = metrics.get("expectancy") or 0.0

    drawdown_ok = drawdown_r is None or drawdown_r <= MAX_DD_SOFT_R

    if sharpe >= SOFT_SHARPE_FLOOR and expectancy >= SOFT_EXPECTANCY_FLOOR and drawdown_ok:
        return verdict(
            RecycleDecision.CONTINUE,
            f"Performance acceptable: Sharpe={sharpe:.2f}, Expectancy={expectancy:.3f}R",
        )

    max_iterations = MAX_TWEAK_ITERATIONS + MAX_REPLACE_ITERATIONS
    if iteration_count >= max_iterations:
        return verdict(
            RecycleDecision.KILL,
            f"Max iterations exceeded: {iteration_count} >= {max_iterations}",
        )

    if sharpe < HARD_SHARPE_FLOOR or expectancy < HARD_EXPECTANCY_FLOOR:
        return verdict(
            RecycleDecision.REPLACE,
            f"Structural failure: Sharpe={sharpe:.2f} (floor={HARD_SHARPE_FLOOR}), "
            f"Expectancy={expectancy:.3f}R (floor={HARD_EXPECTANCY_FLOOR}R)",
        )

    if not drawdown_ok:
        return verdict(
            RecycleDecision.TWEAK,
            f"Drawdown {drawdown_r:.1f}R above soft limit {MAX_DD_SOFT_R:g}R, tighten risk",
        )
    return verdict(
        RecycleDecision.TWEAK,
        f"Parameter sensitivity: Sharpe={sharpe:.2f} (soft floor={SOFT_SHARPE_FLOOR}), needs tuning",
    )


def determine_recycle_decision(
    reason_codes: Iterable[FailureReason | str],
    severity: Severity | str,
    rework_attempts: int = 0,
    regime_at_detection: str = "UNKNOWN",
) -> RecycleVerdict:
    """First matching rule wins."""
    codes = {FailureReason(c) for c in reason_codes}
    severity = Severity(severity)
    has = codes.__contains__

    if rework_attempts >= MAX_REWORK_ATTEMPTS:
        return RecycleVerdict(RecycleDecision.KILL, "Failed twice after rework - structural issue")

    if has(FailureReason.STRUCTURAL_FLAW):
        return RecycleVerdict(RecycleDecision.KILL, "Structural logic flaw detected")

    if has(FailureReason.REGIME_MISMATCH) and regime_at_detection and regime_at_detection != "UNKNOWN":
        return RecycleVerdict(
            RecycleDecision.REPLACE,
            f"Regime mismatch in {regime_at_detection} - generate new archetype",
        )

    if severity == Severity.CRITICAL and len(codes) >= 3:
        return RecycleVerdict(RecycleDecision.KILL, "Critical multi-factor failure - unfixable")

    if has(FailureReason.EXCESSIVE_LOSSES) and has(FailureReason.LOW_SHARPE):
        return RecycleVerdict(RecycleDecision.KILL, "Negative expectancy across regimes")

    if has(FailureReason.REGIME_MISMATCH) and len(codes) >= 3:
        return RecycleVerdict(RecycleDecision.REPLACE, "Regime permanently hostile - thesis invalidated")

    if has(FailureReason.TIMING_INEFFICIENCY) or has(FailureReason.RISK_MISCALIBRATION):
        return RecycleVerdict(RecycleDecision.TWEAK, "Entry/exit imbalance or risk miscalibration")

    if has(FailureReason.LOW_WIN_RATE) and not has(FailureReason.LOW_SHARPE):
        return RecycleVerdict(
            RecycleDecision.TWEAK, "Win rate below expectation - parameter adjustment needed"
        )

    if has(FailureReason.STAGNATION):
        return RecycleVerdict(RecycleDecision.TWEAK, "Stagnation detected - timing inefficiency")

    if codes == {FailureReason.HIGH_DRAWDOWN}:
        return RecycleVerdict(
            RecycleDecision.TWEAK, "Drawdown breach - risk envelope adjustment needed"
        )

    if has(FailureReason.DEGRADATION) and has(FailureReason.REGIME_MISMATCH):
        return RecycleVerdict(RecycleDecision.REPLACE, "Regime shift invalidated thesis")

    if len(codes) >= 2:
        return RecycleVerdict(
            RecycleDecision.REPLACE, "Multiple failure modes - better alternative needed"
        )

    return RecycleVerdict(RecycleDecision.TWEAK, "Single failure mode - parameter refinement")
