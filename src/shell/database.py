"""SQLite database: single source of truth for lab state."""

from __future__ import annotations

import aiosqlite
import structlog

log = structlog.get_logger()

SCHEMA = """
-- Research candidates (one row per surviving, non-merged idea)
CREATE TABLE IF NOT EXISTS strategy_candidates (
    id TEXT PRIMARY KEY,
    strategy_name TEXT NOT NULL,
    archetype_name TEXT NOT NULL,          -- canonical, resolved before insert
    hypothesis TEXT NOT NULL,
    rules TEXT NOT NULL,                   -- JSON {entry, exit, risk, filters, invalidation}
    rules_hash TEXT NOT NULL UNIQUE,
    confidence_score INTEGER NOT NULL,     -- generator/scorer input, audit only
    adjusted_score INTEGER NOT NULL,       -- confidence + regime bonus, clamped; canonical
    regime_bonus INTEGER NOT NULL DEFAULT 0,
    regime_trigger TEXT,
    confidence_breakdown TEXT,             -- JSON
    novelty_score INTEGER,
    disposition TEXT NOT NULL,
    disposition_reason TEXT,
    source TEXT NOT NULL,
    source_lab_bot_id TEXT,
    lineage_chain TEXT,                    -- JSON list of ancestor bot ids
    recycled_from_id TEXT,
    research_cycle_id TEXT,
    created_bot_id TEXT,
    merge_count INTEGER NOT NULL DEFAULT 0,
    instrument_universe TEXT,              -- JSON list
    timeframe_preferences TEXT,            -- JSON list
    session_mode_preference TEXT,
    evidence TEXT,                         -- JSON list
    novelty_justification TEXT,            -- JSON
    explainers TEXT,                       -- JSON
    trace_id TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

-- Bots in the lifecycle pipeline
CREATE TABLE IF NOT EXISTS bots (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    stage TEXT NOT NULL DEFAULT 'TRIALS',
    status TEXT NOT NULL DEFAULT 'ACTIVE',
    archetype TEXT,
    symbol TEXT NOT NULL,
    timeframe TEXT,
    strategy_config TEXT,                  -- JSON
    risk_config TEXT,                      -- JSON
    max_contracts_per_trade INTEGER NOT NULL,
    max_contracts_per_symbol INTEGER NOT NULL,
    current_generation INTEGER NOT NULL DEFAULT 1,
    rework_attempts INTEGER NOT NULL DEFAULT 0,
    source_candidate_id TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS bot_generations (
    id TEXT PRIMARY KEY,
    bot_id TEXT NOT NULL REFERENCES bots(id),
    generation_number INTEGER NOT NULL,
    strategy_config TEXT,                  -- JSON
    risk_config TEXT,                      -- JSON
    metrics TEXT,                          -- JSON, written by the backtester
    mutation_reason TEXT,
    summary_title TEXT,
    regime_at_creation TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    UNIQUE(bot_id, generation_number)
);

CREATE TABLE IF NOT EXISTS bot_jobs (
    id TEXT PRIMARY KEY,
    bot_id TEXT NOT NULL REFERENCES bots(id),
    user_id TEXT NOT NULL,
    job_type TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'QUEUED',
    priority INTEGER NOT NULL DEFAULT 0,
    payload TEXT,                          -- JSON
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS bot_stage_changes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    bot_id TEXT NOT NULL REFERENCES bots(id),
    from_stage TEXT NOT NULL,
    to_stage TEXT NOT NULL,
    decision TEXT NOT NULL,
    reasons TEXT,                          -- JSON
    triggered_by TEXT NOT NULL,
    created_at TEXT DEFAULT (datetime('now'))
);

-- Written by the external backtester, read by the failure detector
CREATE TABLE IF NOT EXISTS backtest_trades (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    bot_id TEXT NOT NULL,
    generation_id TEXT NOT NULL,
    entry_time TEXT NOT NULL,
    exit_time TEXT,
    pnl REAL,
    r_multiple REAL
);

CREATE TABLE IF NOT EXISTS feedback_loops (
    tracking_id TEXT PRIMARY KEY,
    source_bot_id TEXT NOT NULL,
    state TEXT NOT NULL,
    failure_reason_codes TEXT NOT NULL,    -- JSON list
    candidate_ids TEXT NOT NULL DEFAULT '[]',
    best_candidate_id TEXT,
    resolution_code TEXT,
    resolution_notes TEXT,
    replacement_bot_id TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS research_cycles (
    cycle_id TEXT PRIMARY KEY,
    timestamp TEXT NOT NULL,
    trigger TEXT NOT NULL,
    depth TEXT,
    candidates_generated INTEGER NOT NULL DEFAULT 0,
    sent_to_lab INTEGER NOT NULL DEFAULT 0,
    queued INTEGER NOT NULL DEFAULT 0,
    rejected INTEGER NOT NULL DEFAULT 0,
    merged INTEGER NOT NULL DEFAULT 0,
    duration_ms INTEGER NOT NULL DEFAULT 0
);

-- Unified audit timeline
CREATE TABLE IF NOT EXISTS activity_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    category TEXT NOT NULL,               -- CANDIDATE, PROMOTION, FAILURE, FEEDBACK, CYCLE, SYSTEM
    severity TEXT NOT NULL DEFAULT 'info',
    summary TEXT NOT NULL,
    detail TEXT,
    trace_id TEXT
);

-- Operator settings snapshot (single row)
CREATE TABLE IF NOT EXISTS lab_settings (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    settings TEXT NOT NULL,               -- JSON
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_candidates_disposition ON strategy_candidates(disposition, created_at);
CREATE INDEX IF NOT EXISTS idx_candidates_name ON strategy_candidates(strategy_name);
CREATE INDEX IF NOT EXISTS idx_bots_user ON bots(user_id, stage);
CREATE INDEX IF NOT EXISTS idx_generations_bot ON bot_generations(bot_id, generation_number);
CREATE INDEX IF NOT EXISTS idx_backtest_trades_gen ON backtest_trades(bot_id, generation_id);
CREATE INDEX IF NOT EXISTS idx_feedback_source ON feedback_loops(source_bot_id, state);
CREATE INDEX IF NOT EXISTS idx_activity_ts ON activity_log(timestamp);
CREATE INDEX IF NOT EXISTS idx_activity_trace ON activity_log(trace_id);
"""

# Migrations for existing databases (columns added after initial schema)
MIGRATIONS = [
    ("strategy_candidates", "recycled_from_id",
     "ALTER TABLE strategy_candidates ADD COLUMN recycled_from_id TEXT"),
    ("strategy_candidates", "research_cycle_id",
     "ALTER TABLE strategy_candidates ADD COLUMN research_cycle_id TEXT"),
    ("activity_log", "trace_id", "ALTER TABLE activity_log ADD COLUMN trace_id TEXT"),
]


class Database:
    def __init__(self, db_path: str):
        self._path = db_path
        self._conn: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        self._conn = await aiosqlite.connect(self._path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA foreign_keys=ON")
        await self._conn.executescript(SCHEMA)
        await self._run_migrations()
        await self._conn.commit()
        log.info("database.connected", path=self._path)

    async def _run_migrations(self) -> None:
        """Apply column additions to existing databases."""
        for table, column, sql in MIGRATIONS:
            cursor = await self._conn.execute(f"PRAGMA table_info({table})")
            columns = [row[1] for row in await cursor.fetchall()]
            if column not in columns:
                await self._conn.execute(sql)
                log.info("database.migration", table=table, column=column)

    async def close(self) -> None:
        if self._conn:
            await self._conn.commit()
            await self._conn.close()
            self._conn = None
            log.info("database.closed")

    @property
    def conn(self) -> aiosqlite.Connection:
        if not self._conn:
            raise RuntimeError("Database not connected")
        return self._conn

    async def execute(self, sql: str, params: tuple = ()) -> aiosqlite.Cursor:
        return await self.conn.execute(sql, params)

    async def executemany(self, sql: str, params: list[tuple]) -> aiosqlite.Cursor:
        return await self.conn.executemany(sql, params)

    async def fetchone(self, sql: str, params: tuple = ()) -> dict | None:
        cursor = await self.conn.execute(sql, params)
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def fetchall(self, sql: str, params: tuple = ()) -> list[dict]:
        cursor = await self.conn.execute(sql, params)
        rows = await cursor.fetchall()
        return [dict(r) for r in rows]

    async def fetchval(self, sql: str, params: tuple = ()):
        cursor = await self.conn.execute(sql, params)
        row = await cursor.fetchone()
        return row[0] if row else None

    async def commit(self) -> None:
        await self.conn.commit()
