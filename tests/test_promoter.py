"""Tests for candidate -> TRIALS bot promotion."""

from __future__ import annotations

import os
import tempfile
from unittest.mock import AsyncMock, patch

import pytest

from src.lab.novelty import rules_hash
from src.lab.promoter import BotPromoter, parse_risk_rules, validate_risk_config
from src.shell.activity import ActivityLogger
from src.shell.database import Database
from src.shell.store import LabStore

USER_ID = "user-1"


async def _make_db():
    f = tempfile.NamedTemporaryFile(suffix=".db", delete=False)
    f.close()
    db = Database(f.name)
    await db.connect()
    return db, f.name


async def _setup(db: Database) -> tuple[LabStore, BotPromoter]:
    store = LabStore(db)
    return store, BotPromoter(store, ActivityLogger(db), USER_ID)


async def _insert_candidate(store: LabStore, name: str = "MES ORB Retest", **overrides) -> str:
    rules = overrides.pop("rules", {
        "entry": ["retest of opening range high"],
        "exit": ["2R target"],
        "risk": ["stop 12 ticks", "target 40 ticks"],
        "invalidation": ["close back inside range"],
    })
    data = {
        "strategy_name": name,
        "archetype_name": "orb_breakout",
        "hypothesis": "Opening range retests hold on trend days",
        "rules": rules,
        "rules_hash": rules_hash(rules),
        "confidence_score": 70,
        "adjusted_score": 75,
        "regime_trigger": "TRENDING_STRONG",
        "disposition": "QUEUED",
        "disposition_reason": "Score 75 >= 65, auto-promoted",
        "source": "SCHEDULED_RESEARCH",
        "instrument_universe": ["MES", "MNQ"],
        "timeframe_preferences": ["5m"],
        "session_mode_preference": "RTH_US",
    }
    data.update(overrides)
    return await store.insert_candidate(data)


def test_parse_risk_rules():
    parsed = parse_risk_rules([
        "stop 12 ticks", "target 40 ticks", "max 2 contracts", "daily loss $300", "3 trades per day",
    ])
    assert parsed == {
        "stop_loss_ticks": 12,
        "take_profit_ticks": 40,
        "max_position_size": 2,
        "max_daily_loss": 300,
        "max_daily_trades": 3,
    }
    assert parse_risk_rules(["be careful"]) == {}


def test_validate_risk_config():
    assert validate_risk_config({"stop_loss_ticks": 8, "max_position_size": 1}, 1) == []
    codes = {e.code for e in validate_risk_config({"stop_loss_ticks": 0, "max_position_size": 500}, 0)}
    assert codes == {"RISK_STOP_LOSS_MISSING", "RISK_POSITION_SIZE_INVALID", "RISK_CONTRACT_CAP_MISSING"}


class TestPromote:
    @pytest.mark.asyncio
    async def test_creates_trials_bot(self):
        db, db_path = await _make_db()
        try:
            store, promoter = await _setup(db)
            cid = await _insert_candidate(store)

            result = await promoter.promote(cid, trace_id="t1")
            assert result.success
            assert not result.linked_existing
            assert result.warnings == []

            bot = await store.get_bot(result.bot_id)
            assert bot["stage"] == "TRIALS"
            assert bot["symbol"] == "MES"
            assert bot["archetype"] == "orb_breakout"
            assert bot["risk_config"]["stop_loss_ticks"] == 12
            assert bot["risk_config"]["take_profit_ticks"] == 40
            assert bot["strategy_config"]["session_mode"] == "RTH_US"
            assert bot["source_candidate_id"] == cid

            candidate = await store.get_candidate(cid)
            assert candidate["disposition"] == "SENT_TO_LAB"
            assert candidate["created_bot_id"] == result.bot_id

            gen = await db.fetchone("SELECT * FROM bot_generations WHERE bot_id = ?", (result.bot_id,))
            assert gen["generation_number"] == 1
            assert gen["regime_at_creation"] == "TRENDING_STRONG"

            jobs = await store.jobs_for_bot(result.bot_id)
            assert len(jobs) == 1
            assert jobs[0]["job_type"] == "BACKTESTER"
            assert jobs[0]["priority"] == 50
            assert jobs[0]["payload"]["reason"] == "INITIAL_BACKTEST"
            assert jobs[0]["payload"]["entry_condition_type"] == "BREAKOUT"
            assert jobs[0]["payload"]["trace_id"] == "t1"

            change = await db.fetchone("SELECT * FROM bot_stage_changes WHERE bot_id = ?", (result.bot_id,))
            assert (change["from_stage"], change["to_stage"]) == ("CANDIDATE", "TRIALS")
            assert change["decision"] == "AUTO_PROMOTED"
        finally:
            await db.close()
            os.unlink(db_path)

    @pytest.mark.asyncio
    async def test_second_promotion_is_idempotent(self):
        db, db_path = await _make_db()
        try:
            store, promoter = await _setup(db)
            cid = await _insert_candidate(store)
            first = await promoter.promote(cid)
            second = await promoter.promote(cid)
            assert second.success
            assert second.linked_existing
            assert second.bot_id == first.bot_id
            assert await db.fetchval("SELECT COUNT(*) FROM bots") == 1
        finally:
            await db.close()
            os.unlink(db_path)

    @pytest.mark.asyncio
    async def test_slug_duplicate_links_existing_bot(self):
        db, db_path = await _make_db()
        try:
            store, promoter = await _setup(db)
            first = await promoter.promote(await _insert_candidate(store, "MES ORB Retest"))

            dup = await _insert_candidate(store, "mes-orb-RETEST", rules={"entry": ["other"], "exit": ["x"],
                                                                           "risk": ["stop 8 ticks"]})
            result = await promoter.promote(dup)
            assert result.success
            assert result.linked_existing
            assert result.bot_id == first.bot_id
            assert (await store.get_candidate(dup))["created_bot_id"] == first.bot_id
            assert await db.fetchval("SELECT COUNT(*) FROM bots") == 1
        finally:
            await db.close()
            os.unlink(db_path)

    @pytest.mark.asyncio
    async def test_missing_candidate(self):
        db, db_path = await _make_db()
        try:
            _, promoter = await _setup(db)
            result = await promoter.promote("nope")
            assert not result.success
            assert not result.reverted
            assert "not found" in result.error
        finally:
            await db.close()
            os.unlink(db_path)


class TestRevert:
    @pytest.mark.asyncio
    async def test_unsupported_symbol_reverts(self):
        db, db_path = await _make_db()
        try:
            store, promoter = await _setup(db)
            cid = await _insert_candidate(store, instrument_universe=["BTC"])
            result = await promoter.promote(cid)
            assert not result.success
            assert result.reverted
            assert "Unsupported symbol: BTC" in result.error

            candidate = await store.get_candidate(cid)
            assert candidate["disposition"] == "QUEUED"
            assert candidate["disposition_reason"].endswith("(bot creation failed, reverted to QUEUED)")
            assert candidate["created_bot_id"] is None
            assert await db.fetchval("SELECT COUNT(*) FROM bots") == 0
        finally:
            await db.close()
            os.unlink(db_path)

    @pytest.mark.asyncio
    async def test_invalid_session_and_archetype(self):
        db, db_path = await _make_db()
        try:
            store, promoter = await _setup(db)
            cid = await _insert_candidate(store, "Purple Lighthouse", archetype_name="???",
                                          session_mode_preference="WHENEVER")
            result = await promoter.promote(cid)
            assert result.reverted
            assert "Invalid session mode" in result.error
            assert "Cannot determine archetype" in result.error
        finally:
            await db.close()
            os.unlink(db_path)

    @pytest.mark.asyncio
    async def test_insert_failure_reverts(self):
        db, db_path = await _make_db()
        try:
            store, promoter = await _setup(db)
            cid = await _insert_candidate(store)
            with patch.object(store, "insert_bot", AsyncMock(side_effect=RuntimeError("disk full"))):
                result = await promoter.promote(cid)
            assert result.reverted
            assert "disk full" in result.error
            assert (await store.get_candidate(cid))["disposition"] == "QUEUED"

            rows = await db.fetchall("SELECT * FROM activity_log WHERE category = 'PROMOTION'")
            assert rows[-1]["severity"] == "error"
        finally:
            await db.close()
            os.unlink(db_path)

    @pytest.mark.asyncio
    async def test_post_create_failures_only_warn(self):
        db, db_path = await _make_db()
        try:
            store, promoter = await _setup(db)
            cid = await _insert_candidate(store)
            with patch.object(store, "insert_job", AsyncMock(side_effect=RuntimeError("queue down"))):
                result = await promoter.promote(cid)
            assert result.success
            assert result.warnings == ["job: queue down"]
            assert await store.get_bot(result.bot_id) is not None
        finally:
            await db.close()
            os.unlink(db_path)
