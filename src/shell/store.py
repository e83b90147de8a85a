"""Lab Store: owns every SQL statement the lab issues.

JSON columns are encoded on write and decoded on read, so callers only
ever see plain dicts/lists.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any

import structlog

from src.shell.contract import (
    ACTIVE_DISPOSITIONS,
    CycleStats,
    Disposition,
    FeedbackLoop,
    FeedbackState,
    PipelineSnapshot,
    TERMINAL_FEEDBACK_STATES,
)
from src.shell.database import Database

log = structlog.get_logger()

JSON_COLUMNS = {
    "rules", "confidence_breakdown", "lineage_chain", "instrument_universe",
    "timeframe_preferences", "evidence", "novelty_justification", "explainers",
    "strategy_config", "risk_config", "metrics", "payload", "reasons",
    "failure_reason_codes", "candidate_ids",
}

CANDIDATE_COLUMNS = (
    "id", "strategy_name", "archetype_name", "hypothesis", "rules", "rules_hash",
    "confidence_score", "adjusted_score", "regime_bonus", "regime_trigger",
    "confidence_breakdown", "novelty_score", "disposition", "disposition_reason",
    "source", "source_lab_bot_id", "lineage_chain", "recycled_from_id",
    "research_cycle_id", "created_bot_id", "instrument_universe",
    "timeframe_preferences", "session_mode_preference", "evidence",
    "novelty_justification", "explainers", "trace_id",
)

# Listing order for "ALL": items needing attention first
_DISPOSITION_ORDER_SQL = """CASE disposition
    WHEN 'QUEUED_FOR_QC' THEN 0
    WHEN 'SENT_TO_LAB' THEN 1
    WHEN 'PENDING_REVIEW' THEN 2
    WHEN 'QUEUED' THEN 3
    ELSE 4 END"""


def new_id() -> str:
    return str(uuid.uuid4())


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _encode(column: str, value: Any) -> Any:
    if column in JSON_COLUMNS and value is not None and not isinstance(value, str):
        return json.dumps(value, default=str)
    if hasattr(value, "value"):  # str enums
        return value.value
    return value


def _decode(row: dict | None) -> dict | None:
    if row is None:
        return None
    for column in row.keys() & JSON_COLUMNS:
        raw = row[column]
        if isinstance(raw, str):
            try:
                row[column] = json.loads(raw)
            except json.JSONDecodeError:
                log.warning("store.bad_json", column=column, id=row.get("id"))
    return row


class LabStore:
    def __init__(self, db: Database) -> None:
        self._db = db

    @property
    def db(self) -> Database:
        return self._db

    # --- Candidates: dedup ---

    async def find_candidate_by_hash(self, rules_hash: str) -> dict | None:
        return _decode(await self._db.fetchone(
            "SELECT * FROM strategy_candidates WHERE rules_hash = ?", (rules_hash,)
        ))

    async def find_active_candidate_by_name(self, strategy_name: str) -> dict | None:
        placeholders = ",".join("?" for _ in ACTIVE_DISPOSITIONS)
        return _decode(await self._db.fetchone(
            f"""SELECT * FROM strategy_candidates
                WHERE strategy_name = ? AND disposition IN ({placeholders})
                ORDER BY created_at DESC LIMIT 1""",
            (strategy_name, *(d.value for d in ACTIVE_DISPOSITIONS)),
        ))

    async def increment_merge_count(self, candidate_id: str) -> None:
        await self._db.execute(
            """UPDATE strategy_candidates
               SET merge_count = merge_count + 1, updated_at = ?
               WHERE id = ?""",
            (_now(), candidate_id),
        )
        await self._db.commit()

    # --- Candidates: CRUD ---

    async def insert_candidate(self, data: dict[str, Any]) -> str:
        data = {**data, "id": data.get("id") or new_id()}
        columns = [c for c in CANDIDATE_COLUMNS if c in data]
        await self._db.execute(
            f"INSERT INTO strategy_candidates ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)})",
            tuple(_encode(c, data[c]) for c in columns),
        )
        await self._db.commit()
        return data["id"]

    async def get_candidate(self, candidate_id: str) -> dict | None:
        return _decode(await self._db.fetchone(
            "SELECT * FROM strategy_candidates WHERE id = ?", (candidate_id,)
        ))

    async def update_candidate(self, candidate_id: str, **fields: Any) -> None:
        if not fields:
            return
        unknown = set(fields) - set(CANDIDATE_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown candidate columns: {sorted(unknown)}")
        assignments = ", ".join(f"{c} = ?" for c in fields)
        await self._db.execute(
            f"UPDATE strategy_candidates SET {assignments}, updated_at = ? WHERE id = ?",
            (*(_encode(c, v) for c, v in fields.items()), _now(), candidate_id),
        )
        await self._db.commit()

    async def novelty_population(self, exclude_id: str | None = None, limit: int = 500) -> list[dict]:
        rows = await self._db.fetchall(
            """SELECT id, archetype_name, hypothesis, rules FROM strategy_candidates
               WHERE id != ? ORDER BY created_at DESC LIMIT ?""",
            (exclude_id or "", limit),
        )
        return [_decode(r) for r in rows]

    async def candidates_missing_novelty(self, limit: int = 100) -> list[dict]:
        rows = await self._db.fetchall(
            """SELECT id, archetype_name, hypothesis, rules FROM strategy_candidates
               WHERE novelty_score IS NULL ORDER BY created_at DESC LIMIT ?""",
            (limit,),
        )
        return [_decode(r) for r in rows]

    async def candidates_by_disposition(self, disposition: str | None, limit: int = 50) -> list[dict]:
        if disposition:
            rows = await self._db.fetchall(
                """SELECT * FROM strategy_candidates WHERE disposition = ?
                   ORDER BY created_at DESC, rowid DESC LIMIT ?""",
                (disposition, limit),
            )
        else:
            rows = await self._db.fetchall(
                f"""SELECT * FROM strategy_candidates
                    ORDER BY {_DISPOSITION_ORDER_SQL}, created_at DESC, rowid DESC LIMIT ?""",
                (limit,),
            )
        return [_decode(r) for r in rows]

    async def lineage_rows(self) -> list[dict]:
        return await self._db.fetchall(
            "SELECT id, strategy_name, recycled_from_id FROM strategy_candidates"
        )

    async def disposition_counts(self, days: int | None = None) -> dict[str, int]:
        sql = "SELECT disposition, COUNT(*) AS n FROM strategy_candidates"
        params: tuple = ()
        if days is not None:
            sql += " WHERE created_at >= datetime('now', ?)"
            params = (f"-{int(days)} days",)
        sql += " GROUP BY disposition"
        rows = await self._db.fetchall(sql, params)
        return {r["disposition"]: r["n"] for r in rows}

    async def pipeline_snapshot(self) -> PipelineSnapshot:
        counts = await self.disposition_counts()
        return PipelineSnapshot(
            pending_review=counts.get(Disposition.PENDING_REVIEW.value, 0),
            in_lab=counts.get(Disposition.SENT_TO_LAB.value, 0),
        )

    # --- Bots ---

    async def bots_for_user(self, user_id: str) -> list[dict]:
        return await self._db.fetchall(
            "SELECT id, name, stage, status FROM bots WHERE user_id = ?", (user_id,)
        )

    async def get_bot(self, bot_id: str) -> dict | None:
        return _decode(await self._db.fetchone("SELECT * FROM bots WHERE id = ?", (bot_id,)))

    async def insert_bot(self, data: dict[str, Any]) -> str:
        bot_id = data.get("id") or new_id()
        await self._db.execute(
            """INSERT INTO bots
               (id, user_id, name, stage, archetype, symbol, timeframe, strategy_config,
                risk_config, max_contracts_per_trade, max_contracts_per_symbol,
                current_generation, source_candidate_id)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                bot_id, data["user_id"], data["name"], _encode("stage", data["stage"]),
                data.get("archetype"), data["symbol"], data.get("timeframe"),
                _encode("strategy_config", data.get("strategy_config")),
                _encode("risk_config", data.get("risk_config")),
                data["max_contracts_per_trade"], data["max_contracts_per_symbol"],
                data.get("current_generation", 1), data.get("source_candidate_id"),
            ),
        )
        await self._db.commit()
        return bot_id

    async def insert_generation(self, data: dict[str, Any]) -> str:
        gen_id = data.get("id") or new_id()
        await self._db.execute(
            """INSERT INTO bot_generations
               (id, bot_id, generation_number, strategy_config, risk_config, metrics,
                mutation_reason, summary_title, regime_at_creation)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                gen_id, data["bot_id"], data["generation_number"],
                _encode("strategy_config", data.get("strategy_config")),
                _encode("risk_config", data.get("risk_config")),
                _encode("metrics", data.get("metrics")),
                data.get("mutation_reason"), data.get("summary_title"),
                data.get("regime_at_creation"),
            ),
        )
        await self._db.commit()
        return gen_id

    async def insert_job(self, data: dict[str, Any]) -> str:
        job_id = data.get("id") or new_id()
        await self._db.execute(
            """INSERT INTO bot_jobs (id, bot_id, user_id, job_type, status, priority, payload)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                job_id, data["bot_id"], data["user_id"], data["job_type"],
                data.get("status", "QUEUED"), data.get("priority", 0),
                _encode("payload", data.get("payload")),
            ),
        )
        await self._db.commit()
        return job_id

    async def insert_stage_change(
        self, bot_id: str, from_stage: str, to_stage: str, decision: str,
        reasons: dict | list, triggered_by: str,
    ) -> None:
        await self._db.execute(
            """INSERT INTO bot_stage_changes
               (bot_id, from_stage, to_stage, decision, reasons, triggered_by)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (bot_id, from_stage, to_stage, decision, _encode("reasons", reasons), triggered_by),
        )
        await self._db.commit()

    async def jobs_for_bot(self, bot_id: str) -> list[dict]:
        rows = await self._db.fetchall("SELECT * FROM bot_jobs WHERE bot_id = ?", (bot_id,))
        return [_decode(r) for r in rows]

    # --- Failure detection reads ---

    async def trials_bot_ids(self) -> list[str]:
        rows = await self._db.fetchall(
            "SELECT id FROM bots WHERE stage = 'TRIALS' AND status != 'ARCHIVED'"
        )
        return [r["id"] for r in rows]

    async def get_trials_bot(self, bot_id: str) -> dict | None:
        """Bot joined with its current generation, or None when not in TRIALS."""
        return _decode(await self._db.fetchone(
            """SELECT b.id, b.name, b.stage, b.archetype, b.timeframe, b.strategy_config,
                      b.rework_attempts, g.id AS gen_id, g.generation_number, g.metrics,
                      g.regime_at_creation
               FROM bots b
               LEFT JOIN bot_generations g
                 ON g.bot_id = b.id AND g.generation_number = b.current_generation
               WHERE b.id = ? AND b.stage = 'TRIALS'""",
            (bot_id,),
        ))

    async def trade_summary(self, bot_id: str, generation_id: str | None) -> dict:
        row = await self._db.fetchone(
            """SELECT COUNT(*) AS trade_count, MIN(entry_time) AS first_trade_time,
                      MAX(entry_time) AS last_trade_time
               FROM backtest_trades WHERE bot_id = ? AND generation_id = ?""",
            (bot_id, generation_id or ""),
        )
        return row or {"trade_count": 0, "first_trade_time": None, "last_trade_time": None}

    async def recent_generation_metrics(self, bot_id: str, limit: int) -> list[dict]:
        """Metrics of the last N generations, newest first."""
        rows = await self._db.fetchall(
            """SELECT metrics FROM bot_generations WHERE bot_id = ?
               ORDER BY generation_number DESC LIMIT ?""",
            (bot_id, limit),
        )
        return [(_decode(r) or {}).get("metrics") or {} for r in rows]

    # --- Feedback loops ---

    @staticmethod
    def _loop_from_row(row: dict | None) -> FeedbackLoop | None:
        row = _decode(row)
        if row is None:
            return None
        return FeedbackLoop(
            tracking_id=row["tracking_id"],
            source_bot_id=row["source_bot_id"],
            state=FeedbackState(row["state"]),
            failure_reason_codes=row["failure_reason_codes"] or [],
            candidate_ids=row["candidate_ids"] or [],
            best_candidate_id=row["best_candidate_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            resolution_code=row["resolution_code"],
            resolution_notes=row["resolution_notes"],
            replacement_bot_id=row["replacement_bot_id"],
        )

    async def find_active_loop(self, source_bot_id: str) -> FeedbackLoop | None:
        terminal = tuple(s.value for s in TERMINAL_FEEDBACK_STATES)
        return self._loop_from_row(await self._db.fetchone(
            f"""SELECT * FROM feedback_loops
                WHERE source_bot_id = ? AND state NOT IN ({",".join("?" for _ in terminal)})
                ORDER BY created_at DESC LIMIT 1""",
            (source_bot_id, *terminal),
        ))

    async def get_loop(self, tracking_id: str) -> FeedbackLoop | None:
        return self._loop_from_row(await self._db.fetchone(
            "SELECT * FROM feedback_loops WHERE tracking_id = ?", (tracking_id,)
        ))

    async def insert_loop(self, source_bot_id: str, state: FeedbackState, reason_codes: list[str]) -> str:
        tracking_id = new_id()
        now = _now()
        await self._db.execute(
            """INSERT INTO feedback_loops
               (tracking_id, source_bot_id, state, failure_reason_codes, candidate_ids,
                created_at, updated_at)
               VALUES (?, ?, ?, ?, '[]', ?, ?)""",
            (tracking_id, source_bot_id, state.value, json.dumps(reason_codes), now, now),
        )
        await self._db.commit()
        return tracking_id

    async def save_loop(self, loop: FeedbackLoop) -> None:
        loop.updated_at = _now()
        await self._db.execute(
            """UPDATE feedback_loops
               SET state = ?, failure_reason_codes = ?, candidate_ids = ?, best_candidate_id = ?,
                   resolution_code = ?, resolution_notes = ?, replacement_bot_id = ?, updated_at = ?
               WHERE tracking_id = ?""",
            (
                loop.state.value, json.dumps(loop.failure_reason_codes),
                json.dumps(loop.candidate_ids), loop.best_candidate_id,
                loop.resolution_code, loop.resolution_notes, loop.replacement_bot_id,
                loop.updated_at, loop.tracking_id,
            ),
        )
        await self._db.commit()

    async def list_loops(self, active_only: bool = False, limit: int = 50) -> list[FeedbackLoop]:
        sql = "SELECT * FROM feedback_loops"
        params: list = []
        if active_only:
            terminal = [s.value for s in TERMINAL_FEEDBACK_STATES]
            sql += f" WHERE state NOT IN ({','.join('?' for _ in terminal)})"
            params.extend(terminal)
        sql += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(limit)
        rows = await self._db.fetchall(sql, tuple(params))
        return [self._loop_from_row(r) for r in rows]

    # --- Research cycles ---

    async def insert_cycle(self, stats: CycleStats) -> None:
        await self._db.execute(
            """INSERT INTO research_cycles
               (cycle_id, timestamp, trigger, depth, candidates_generated, sent_to_lab,
                queued, rejected, merged, duration_ms)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                stats.cycle_id, stats.timestamp.isoformat(), stats.trigger, stats.depth,
                stats.candidates_generated, stats.sent_to_lab, stats.queued,
                stats.rejected, stats.merged, stats.duration_ms,
            ),
        )
        await self._db.commit()

    async def recent_cycles(self, limit: int = 20) -> list[CycleStats]:
        """Last N cycles, oldest first."""
        rows = await self._db.fetchall(
            "SELECT * FROM research_cycles ORDER BY timestamp DESC LIMIT ?", (limit,)
        )
        return [
            CycleStats(
                cycle_id=r["cycle_id"],
                timestamp=datetime.fromisoformat(r["timestamp"]),
                trigger=r["trigger"],
                candidates_generated=r["candidates_generated"],
                sent_to_lab=r["sent_to_lab"],
                queued=r["queued"],
                rejected=r["rejected"],
                merged=r["merged"],
                duration_ms=r["duration_ms"],
                depth=r["depth"] or "",
            )
            for r in reversed(rows)
        ]

    # --- Settings ---

    async def load_settings(self) -> dict | None:
        row = await self._db.fetchone("SELECT settings FROM lab_settings WHERE id = 1")
        return json.loads(row["settings"]) if row else None

    async def save_settings(self, settings: dict) -> None:
        await self._db.execute(
            """INSERT INTO lab_settings (id, settings, updated_at) VALUES (1, ?, ?)
               ON CONFLICT(id) DO UPDATE SET settings = excluded.settings,
                                             updated_at = excluded.updated_at""",
            (json.dumps(settings, default=str), _now()),
        )
        await self._db.commit()
