"""Failure detector: scans TRIALS bots for statistically meaningful failure.

Performance checks (Sharpe, drawdown, win rate) only run once a bot has the
minimum trade count for its timeframe class. Stagnation and degradation are
checked regardless. When the current generation carries R-multiple metrics,
the recycle evaluation runs first and a catastrophic drawdown forces KILL.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import structlog

from src.lab.archetypes import CLASS_MIN_TRADES, detect_strategy_class
from src.lab.recycle import determine_recycle_decision, evaluate_recycle_decision
from src.shell.activity import ActivityLogger
from src.shell.config import FailureThresholdConfig
from src.shell.contract import (
    FailureDetection,
    FailureMetrics,
    FailureReason,
    RecycleDecision,
    Severity,
)
from src.shell.store import LabStore

log = structlog.get_logger()

NO_TRADES_DAYS = 999
SEVERITY_RANK = {Severity.CRITICAL: 0, Severity.MAJOR: 1, Severity.MINOR: 2, Severity.NONE: 3}


def _parse_ts(value: str | None) -> Optional[datetime]:
    if not value:
        return None
    ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def _metric(metrics: dict, key: str) -> float:
    try:
        return float(metrics.get(key) or 0)
    except (TypeError, ValueError):
        return 0.0


def classify_severity(codes: list[FailureReason]) -> Severity:
    if len(codes) >= 3 or FailureReason.HIGH_DRAWDOWN in codes:
        return Severity.CRITICAL
    if len(codes) >= 2:
        return Severity.MAJOR
    if codes:
        return Severity.MINOR
    return Severity.NONE


def most_critical(detections: list[FailureDetection]) -> Optional[FailureDetection]:
    """CRITICAL before MAJOR, then most reason codes. MINOR failures never qualify."""
    eligible = [d for d in detections if d.severity in (Severity.CRITICAL, Severity.MAJOR)]
    if not eligible:
        return None
    return sorted(eligible, key=lambda d: (SEVERITY_RANK[d.severity], -len(d.reason_codes)))[0]


class FailureDetector:
    def __init__(
        self, store: LabStore, activity: ActivityLogger, thresholds: FailureThresholdConfig,
    ) -> None:
        self._store = store
        self._activity = activity
        self._t = thresholds

    async def detect(self, bot_id: str, trace_id: str = "", now: datetime | None = None) -> FailureDetection:
        now = now or datetime.now(timezone.utc)
        bot = await self._store.get_trials_bot(bot_id)
        if bot is None:
            return FailureDetection(
                bot_id=bot_id,
                bot_name="Unknown",
                is_failure=False,
                reason_codes=[],
                reasons=["Bot not found or not in TRIALS stage"],
                severity=Severity.NONE,
                meets_evaluation_threshold=False,
                metrics=FailureMetrics(),
                detected_at=now,
            )

        metrics = bot.get("metrics") or {}
        strategy_config = bot.get("strategy_config") or {}
        timeframe = strategy_config.get("timeframes") or bot.get("timeframe") or "5m"
        strategy_class = detect_strategy_class(timeframe)
        min_trades = CLASS_MIN_TRADES[strategy_class]
        regime = bot.get("regime_at_creation") or "UNKNOWN"

        trades = await self._store.trade_summary(bot_id, bot.get("gen_id"))
        trade_count = int(trades.get("trade_count") or 0)
        last_trade = _parse_ts(trades.get("last_trade_time"))
        first_trade = _parse_ts(trades.get("first_trade_time"))
        days_since_last = int((now - last_trade).total_seconds() // 86400) if last_trade else NO_TRADES_DAYS
        days_trading = (now - first_trade).total_seconds() / 86400 if first_trade else 0.0

        sharpe = _metric(metrics, "sharpe_ratio")
        max_dd = _metric(metrics, "max_drawdown_pct")
        win_rate = _metric(metrics, "win_rate")
        degradation = await self._degradation(bot_id)

        codes: list[FailureReason] = []
        reasons: list[str] = []

        # R-multiple metrics enable the recycle evaluation, which may kill outright
        evaluation = None
        if "max_drawdown_r" in metrics or "expectancy_r" in metrics:
            evaluation = evaluate_recycle_decision(
                bot.get("archetype"),
                timeframe,
                trade_count,
                round(days_trading, 1),
                {
                    "sharpe": sharpe,
                    "expectancy": _metric(metrics, "expectancy_r"),
                    "max_drawdown_r": _metric(metrics, "max_drawdown_r"),
                    "win_rate": win_rate,
                },
                iteration_count=int(bot.get("rework_attempts") or 0),
            )
            if evaluation.is_catastrophic:
                codes.append(FailureReason.HIGH_DRAWDOWN)
                reasons.extend(evaluation.reasons)

        if trade_count >= min_trades:
            if sharpe < self._t.min_sharpe_ratio:
                codes.append(FailureReason.LOW_SHARPE)
                reasons.append(f"Sharpe ratio {sharpe:.2f} below minimum {self._t.min_sharpe_ratio}")
            if max_dd > self._t.max_drawdown_pct and FailureReason.HIGH_DRAWDOWN not in codes:
                codes.append(FailureReason.HIGH_DRAWDOWN)
                reasons.append(f"Max drawdown {max_dd:.1f}% exceeds limit {self._t.max_drawdown_pct}%")
            if win_rate < self._t.min_win_rate:
                codes.append(FailureReason.LOW_WIN_RATE)
                reasons.append(f"Win rate {win_rate:.1f}% below minimum {self._t.min_win_rate}%")

        if days_since_last >= self._t.stagnation_days and trade_count > 0:
            codes.append(FailureReason.STAGNATION)
            reasons.append(f"No trades for {days_since_last} days (threshold: {self._t.stagnation_days})")

        if degradation >= self._t.degradation_threshold_pct:
            codes.append(FailureReason.DEGRADATION)
            reasons.append(
                f"Performance degraded {degradation:.1f}% over {self._t.degradation_window} generations"
            )

        if FailureReason.LOW_SHARPE in codes or FailureReason.HIGH_DRAWDOWN in codes:
            codes.append(FailureReason.UNDERPERFORMANCE)

        severity = classify_severity(codes)
        detection = FailureDetection(
            bot_id=bot_id,
            bot_name=bot["name"],
            is_failure=severity != Severity.NONE,
            reason_codes=codes,
            reasons=reasons,
            severity=severity,
            meets_evaluation_threshold=trade_count >= min_trades,
            metrics=FailureMetrics(
                sharpe_ratio=sharpe,
                max_drawdown_pct=max_dd,
                win_rate=win_rate,
                trade_count=trade_count,
                days_since_last_trade=days_since_last,
                degradation_pct=round(degradation, 2),
            ),
            regime_at_detection=regime,
            strategy_class=strategy_class,
            min_trades_required=min_trades,
            recycle_evaluation=evaluation,
            detected_at=now,
        )

        if detection.is_failure:
            if evaluation is not None and evaluation.is_catastrophic:
                detection.recycle_decision = RecycleDecision.KILL
                detection.recycle_reason = evaluation.reasons[0]
            else:
                verdict = determine_recycle_decision(
                    codes, severity, int(bot.get("rework_attempts") or 0), regime,
                )
                detection.recycle_decision = verdict.decision
                detection.recycle_reason = verdict.reason
            await self._record(detection, trace_id)
        return detection

    async def _degradation(self, bot_id: str) -> float:
        """Percent Sharpe decline from the oldest to the newest of the last N generations."""
        recent = await self._store.recent_generation_metrics(bot_id, self._t.degradation_window)
        if len(recent) < 2:
            return 0.0
        latest = _metric(recent[0], "sharpe_ratio")
        earliest = _metric(recent[-1], "sharpe_ratio")
        if earliest <= 0:
            return 0.0
        return (earliest - latest) / earliest * 100

    async def _record(self, detection: FailureDetection, trace_id: str) -> None:
        severity = {Severity.CRITICAL: "error", Severity.MAJOR: "warning"}.get(detection.severity, "info")
        log.warning("failure.detected", trace_id=trace_id, bot_id=detection.bot_id,
                    severity=detection.severity.value,
                    codes=[c.value for c in detection.reason_codes],
                    decision=detection.recycle_decision.value if detection.recycle_decision else None)
        await self._activity.failure(
            f"Failure detected: {detection.bot_name}: {'; '.join(detection.reasons)}",
            severity=severity,
            detail={
                "bot_id": detection.bot_id,
                "reason_codes": [c.value for c in detection.reason_codes],
                "severity": detection.severity.value,
                "metrics": vars(detection.metrics),
                "regime_at_detection": detection.regime_at_detection,
                "strategy_class": detection.strategy_class.value if detection.strategy_class else None,
                "min_trades_required": detection.min_trades_required,
                "recycle_decision": detection.recycle_decision.value if detection.recycle_decision else None,
                "recycle_reason": detection.recycle_reason,
            },
            trace_id=trace_id,
        )

    async def scan(self, trace_id: str = "", now: datetime | None = None) -> list[FailureDetection]:
        """Evaluate every TRIALS bot. Per-bot errors are logged and skipped."""
        bot_ids = await self._store.trials_bot_ids()
        failures = []
        for bot_id in bot_ids:
            try:
                detection = await self.detect(bot_id, trace_id, now)
            except Exception as e:
                log.error("failure.scan_error", trace_id=trace_id, bot_id=bot_id, error=str(e), exc_info=True)
                continue
            if detection.is_failure:
                failures.append(detection)
        log.info("failure.scan_complete", trace_id=trace_id, scanned=len(bot_ids), failures=len(failures))
        return failures
