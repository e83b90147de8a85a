"""Tests for TRIALS failure detection against seeded bots and backtest trades."""

from __future__ import annotations

import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

from src.lab.failure import FailureDetector, classify_severity, most_critical
from src.shell.activity import ActivityLogger
from src.shell.config import FailureThresholdConfig
from src.shell.contract import (
    FailureDetection,
    FailureMetrics,
    FailureReason,
    RecycleDecision,
    Severity,
    StrategyClass,
)
from src.shell.database import Database
from src.shell.store import LabStore

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)
BAD_METRICS = {"sharpe_ratio": 0.1, "max_drawdown_pct": 30.0, "win_rate": 30.0}
GOOD_METRICS = {"sharpe_ratio": 1.4, "max_drawdown_pct": 8.0, "win_rate": 55.0}


async def _make_db():
    f = tempfile.NamedTemporaryFile(suffix=".db", delete=False)
    f.close()
    db = Database(f.name)
    await db.connect()
    return db, f.name


async def _seed_bot(
    db: Database,
    store: LabStore,
    generations: list[dict],
    trades: int = 0,
    last_trade_days_ago: float = 0.0,
    stage: str = "TRIALS",
    name: str = "MES ORB",
) -> str:
    """Insert a bot with one generation per metrics dict; trades land on the newest."""
    bot_id = await store.insert_bot({
        "user_id": "user-1", "name": name, "stage": stage, "archetype": "orb_breakout",
        "symbol": "MES", "timeframe": "5m", "strategy_config": {"timeframes": ["5m"]},
        "max_contracts_per_trade": 1, "max_contracts_per_symbol": 2,
        "current_generation": len(generations),
    })
    gen_id = None
    for number, metrics in enumerate(generations, start=1):
        gen_id = await store.insert_generation({
            "bot_id": bot_id, "generation_number": number, "metrics": metrics,
            "regime_at_creation": "TRENDING_STRONG",
        })
    last = NOW - timedelta(days=last_trade_days_ago)
    rows = [
        (bot_id, gen_id, (last - timedelta(hours=i)).isoformat(), None, -10.0, -0.5)
        for i in range(trades)
    ]
    if rows:
        await db.executemany(
            "INSERT INTO backtest_trades (bot_id, generation_id, entry_time, exit_time, pnl, r_multiple) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            rows,
        )
        await db.commit()
    return bot_id


def _detector(db: Database, store: LabStore) -> FailureDetector:
    return FailureDetector(store, ActivityLogger(db), FailureThresholdConfig())


def _detection(severity: Severity, codes: int, bot_id: str = "b") -> FailureDetection:
    return FailureDetection(
        bot_id=bot_id, bot_name=bot_id, is_failure=severity != Severity.NONE,
        reason_codes=[FailureReason.LOW_WIN_RATE] * codes, reasons=[], severity=severity,
        meets_evaluation_threshold=True, metrics=FailureMetrics(),
    )


def test_classify_severity():
    assert classify_severity([]) == Severity.NONE
    assert classify_severity([FailureReason.STAGNATION]) == Severity.MINOR
    assert classify_severity([FailureReason.HIGH_DRAWDOWN]) == Severity.CRITICAL
    assert classify_severity([FailureReason.LOW_SHARPE, FailureReason.LOW_WIN_RATE]) == Severity.MAJOR
    assert classify_severity([FailureReason.LOW_SHARPE, FailureReason.LOW_WIN_RATE,
                              FailureReason.STAGNATION]) == Severity.CRITICAL


def test_most_critical():
    minor = _detection(Severity.MINOR, 1, "minor")
    major = _detection(Severity.MAJOR, 2, "major")
    critical_small = _detection(Severity.CRITICAL, 1, "critical_small")
    critical_big = _detection(Severity.CRITICAL, 4, "critical_big")
    assert most_critical([minor]) is None
    assert most_critical([major, minor]).bot_id == "major"
    assert most_critical([major, critical_small, critical_big]).bot_id == "critical_big"


class TestDetect:
    @pytest.mark.asyncio
    async def test_multi_factor_failure(self):
        db, db_path = await _make_db()
        try:
            store = LabStore(db)
            bot_id = await _seed_bot(db, store, [BAD_METRICS], trades=45)
            d = await _detector(db, store).detect(bot_id, trace_id="t1", now=NOW)

            assert d.is_failure
            assert d.reason_codes == [
                FailureReason.LOW_SHARPE, FailureReason.HIGH_DRAWDOWN,
                FailureReason.LOW_WIN_RATE, FailureReason.UNDERPERFORMANCE,
            ]
            assert d.severity == Severity.CRITICAL
            assert d.meets_evaluation_threshold
            assert d.strategy_class == StrategyClass.INTRADAY
            assert d.min_trades_required == 40
            assert d.metrics.trade_count == 45
            assert d.regime_at_detection == "TRENDING_STRONG"
            assert d.recycle_decision == RecycleDecision.KILL
            assert d.recycle_reason == "Critical multi-factor failure - unfixable"

            rows = await db.fetchall("SELECT * FROM activity_log WHERE category = 'FAILURE'")
            assert len(rows) == 1
            assert rows[0]["severity"] == "error"
            assert rows[0]["trace_id"] == "t1"
        finally:
            await db.close()
            os.unlink(db_path)

    @pytest.mark.asyncio
    async def test_below_minimum_trades_is_not_judged(self):
        db, db_path = await _make_db()
        try:
            store = LabStore(db)
            bot_id = await _seed_bot(db, store, [BAD_METRICS], trades=10)
            d = await _detector(db, store).detect(bot_id, now=NOW)
            assert not d.is_failure
            assert d.severity == Severity.NONE
            assert not d.meets_evaluation_threshold
            assert d.recycle_decision is None
            assert await db.fetchval("SELECT COUNT(*) FROM activity_log") == 0
        finally:
            await db.close()
            os.unlink(db_path)

    @pytest.mark.asyncio
    async def test_stagnation(self):
        db, db_path = await _make_db()
        try:
            store = LabStore(db)
            bot_id = await _seed_bot(db, store, [GOOD_METRICS], trades=10, last_trade_days_ago=5)
            d = await _detector(db, store).detect(bot_id, now=NOW)
            assert d.reason_codes == [FailureReason.STAGNATION]
            assert d.severity == Severity.MINOR
            assert d.metrics.days_since_last_trade == 5
            assert d.recycle_decision == RecycleDecision.TWEAK
        finally:
            await db.close()
            os.unlink(db_path)

    @pytest.mark.asyncio
    async def test_degradation_across_generations(self):
        db, db_path = await _make_db()
        try:
            store = LabStore(db)
            gens = [{"sharpe_ratio": 2.0}, {"sharpe_ratio": 1.5}, {"sharpe_ratio": 1.0}]
            bot_id = await _seed_bot(db, store, gens)
            d = await _detector(db, store).detect(bot_id, now=NOW)
            assert d.reason_codes == [FailureReason.DEGRADATION]
            assert d.metrics.degradation_pct == 50.0
            assert d.metrics.days_since_last_trade == 999
        finally:
            await db.close()
            os.unlink(db_path)

    @pytest.mark.asyncio
    async def test_catastrophic_drawdown_forces_kill(self):
        db, db_path = await _make_db()
        try:
            store = LabStore(db)
            bot_id = await _seed_bot(db, store, [{"max_drawdown_r": 12.0, "expectancy_r": -0.5}])
            d = await _detector(db, store).detect(bot_id, now=NOW)
            assert d.recycle_evaluation.is_catastrophic
            assert d.reason_codes == [FailureReason.HIGH_DRAWDOWN, FailureReason.UNDERPERFORMANCE]
            assert d.severity == Severity.CRITICAL
            assert d.recycle_decision == RecycleDecision.KILL
            assert d.recycle_reason == "Catastrophic DD: 12.0R > 10R limit"
        finally:
            await db.close()
            os.unlink(db_path)

    @pytest.mark.asyncio
    async def test_unknown_bot(self):
        db, db_path = await _make_db()
        try:
            store = LabStore(db)
            d = await _detector(db, store).detect("missing", now=NOW)
            assert not d.is_failure
            assert d.bot_name == "Unknown"
        finally:
            await db.close()
            os.unlink(db_path)


@pytest.mark.asyncio
async def test_scan_only_reports_trials_failures():
    db, db_path = await _make_db()
    try:
        store = LabStore(db)
        failing = await _seed_bot(db, store, [BAD_METRICS], trades=45, name="Failing")
        await _seed_bot(db, store, [GOOD_METRICS], trades=45, name="Healthy")
        await _seed_bot(db, store, [BAD_METRICS], trades=45, stage="PAPER", name="Graduated")

        failures = await _detector(db, store).scan(now=NOW)
        assert [f.bot_id for f in failures] == [failing]
    finally:
        await db.close()
        os.unlink(db_path)
