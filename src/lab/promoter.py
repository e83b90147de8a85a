"""Bot lifecycle promoter: turns an approved candidate into a TRIALS bot.

Order of operations:
  1. already promoted -> return the linked bot
  2. slug duplicate guard against the user's bots -> link instead of create
  3. fail-closed validation (archetype, symbol, session mode, risk config)
  4. bot insert (failure reverts the candidate to QUEUED)
  5. generation 1, baseline BACKTESTER job, CANDIDATE -> TRIALS stage change
     (each of these only warns on failure; the bot stays)
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from src.lab.archetypes import entry_condition_for, normalize_name_to_slug, resolve_archetype
from src.lab.errors import BotCreationError, ValidationError, format_validation_errors
from src.shell.activity import ActivityLogger
from src.shell.contract import BotStage, Disposition
from src.shell.store import LabStore

log = structlog.get_logger()

DEFAULT_RISK_CONFIG = {
    "stop_loss_ticks": 16,
    "take_profit_ticks": 80,
    "max_position_size": 1,
    "max_daily_trades": 5,
    "max_daily_loss": 200,
    "max_drawdown_pct": 5,
}
MAX_CONTRACTS_PER_TRADE = 1
MAX_CONTRACTS_PER_SYMBOL = 2
DEFAULT_SYMBOL = "MES"

SUPPORTED_SYMBOLS = ("MES", "MNQ", "ES", "NQ", "YM", "MYM", "RTY", "M2K", "CL", "MCL", "GC", "MGC")
SESSION_MODES = ("FULL_24x5", "RTH_US", "ETH", "CUSTOM")

BASELINE_JOB_TYPE = "BACKTESTER"
BASELINE_JOB_PRIORITY = 50
TRIGGERED_BY = "strategy_lab_engine"

# "stop 12 ticks", "take profit: 40 ticks", "max 2 contracts", "daily loss $300"
_RISK_PATTERNS = (
    ("stop_loss_ticks", re.compile(r"stop[\w\s-]*?(\d+(?:\.\d+)?)\s*ticks?")),
    ("take_profit_ticks", re.compile(r"(?:take[\s-]*profit|target|tp)[\w\s:-]*?(\d+(?:\.\d+)?)\s*ticks?")),
    ("max_daily_loss", re.compile(r"daily\s+loss[\w\s:]*?\$?(\d+(?:\.\d+)?)")),
    ("max_daily_trades", re.compile(r"(\d+)\s+trades?\s+(?:per|a)\s+day|daily\s+trades?[\w\s:]*?(\d+)")),
    ("max_position_size", re.compile(r"(?:max(?:imum)?\s+)?(\d+)\s+contracts?")),
)


@dataclass
class PromotionResult:
    success: bool
    bot_id: Optional[str] = None
    linked_existing: bool = False
    reverted: bool = False
    error: Optional[str] = None
    warnings: list[str] = field(default_factory=list)


def parse_risk_rules(risk_rules: list[str]) -> dict[str, float]:
    """Pull numeric risk settings out of free-text risk rules."""
    found: dict[str, float] = {}
    for rule in risk_rules:
        text = rule.lower()
        for key, pattern in _RISK_PATTERNS:
            if key in found:
                continue
            match = pattern.search(text)
            if match:
                value = next(g for g in match.groups() if g is not None)
                found[key] = float(value) if "." in value else int(value)
    return found


def validate_risk_config(risk: dict[str, Any], max_contracts_per_trade: int) -> list[ValidationError]:
    errors = []
    stop = risk.get("stop_loss_ticks")
    if not stop or stop <= 0:
        errors.append(ValidationError(
            "RISK_STOP_LOSS_MISSING", "stop_loss_ticks",
            "Stop loss must be a positive number of ticks", "SEV-0",
        ))
    size = risk.get("max_position_size")
    if not size or size <= 0 or size > 100:
        errors.append(ValidationError(
            "RISK_POSITION_SIZE_INVALID", "max_position_size",
            "Max position size must be between 1 and 100", "SEV-0",
        ))
    if not max_contracts_per_trade or max_contracts_per_trade <= 0:
        errors.append(ValidationError(
            "RISK_CONTRACT_CAP_MISSING", "max_contracts_per_trade",
            "Contract cap per trade must be positive", "SEV-0",
        ))
    if not risk.get("take_profit_ticks"):
        log.warning("promoter.no_take_profit", risk=risk)
    return errors


class BotPromoter:
    def __init__(self, store: LabStore, activity: ActivityLogger, default_user_id: str) -> None:
        self._store = store
        self._activity = activity
        self._user_id = default_user_id
        # serializes slug check + insert so two promotions cannot create the same bot
        self._lock = asyncio.Lock()

    async def promote(self, candidate_id: str, trace_id: str = "", source: str = "engine") -> PromotionResult:
        async with self._lock:
            return await self._promote(candidate_id, trace_id, source)

    async def _promote(self, candidate_id: str, trace_id: str, source: str) -> PromotionResult:
        candidate = await self._store.get_candidate(candidate_id)
        if candidate is None:
            return PromotionResult(success=False, error=f"Candidate not found: {candidate_id}")

        if candidate.get("created_bot_id"):
            return PromotionResult(success=True, bot_id=candidate["created_bot_id"], linked_existing=True)

        # Duplicate guard
        slug = normalize_name_to_slug(candidate["strategy_name"])
        for bot in await self._store.bots_for_user(self._user_id):
            if normalize_name_to_slug(bot["name"]) == slug:
                log.warning("promoter.duplicate_guard", trace_id=trace_id,
                            candidate=candidate["strategy_name"], existing=bot["name"], bot_id=bot["id"])
                await self._store.update_candidate(
                    candidate_id, created_bot_id=bot["id"], disposition=Disposition.SENT_TO_LAB,
                )
                await self._activity.promotion(
                    f"Linked '{candidate['strategy_name']}' to existing bot '{bot['name']}'",
                    detail={"candidate_id": candidate_id, "bot_id": bot["id"], "slug": slug},
                    trace_id=trace_id,
                )
                return PromotionResult(success=True, bot_id=bot["id"], linked_existing=True)

        # Fail-closed validation
        rules = candidate.get("rules") or {}
        resolution = resolve_archetype(
            candidate["strategy_name"], candidate.get("archetype_name"), rules.get("archetype"), trace_id,
        )
        errors: list[ValidationError] = list(resolution.errors)

        raw_symbol = (candidate.get("instrument_universe") or [DEFAULT_SYMBOL])[0]
        symbol = str(raw_symbol).strip().upper()
        if symbol not in SUPPORTED_SYMBOLS:
            errors.append(ValidationError(
                "SYMBOL_UNSUPPORTED", "instrument_universe", f"Unsupported symbol: {raw_symbol}",
            ))

        session_mode = candidate.get("session_mode_preference") or "FULL_24x5"
        if session_mode not in SESSION_MODES:
            errors.append(ValidationError(
                "SESSION_MODE_INVALID", "session_mode_preference", f"Invalid session mode: {session_mode}",
            ))

        risk_config = {**DEFAULT_RISK_CONFIG, **parse_risk_rules(rules.get("risk") or [])}
        errors.extend(validate_risk_config(risk_config, MAX_CONTRACTS_PER_TRADE))

        if errors:
            return await self._revert(candidate, format_validation_errors(errors), trace_id)

        archetype = resolution.archetype
        timeframes = candidate.get("timeframe_preferences") or ["5m"]
        instruments = candidate.get("instrument_universe") or [DEFAULT_SYMBOL]
        strategy_config = {
            "archetype_name": archetype,
            "entry_rules": rules.get("entry") or [],
            "exit_rules": rules.get("exit") or [],
            "risk_model": {
                "risk": rules.get("risk") or [],
                "invalidation": rules.get("invalidation") or [],
                "filters": rules.get("filters") or [],
            },
            "hypothesis": candidate["hypothesis"],
            "timeframes": timeframes,
            "instruments": instruments,
            "session_mode": session_mode,
            "source": "strategy_lab_auto",
            "candidate_id": candidate_id,
            "confidence": candidate.get("adjusted_score"),
        }

        try:
            bot_id = await self._store.insert_bot({
                "user_id": self._user_id,
                "name": candidate["strategy_name"],
                "stage": BotStage.TRIALS,
                "archetype": archetype,
                "symbol": symbol,
                "timeframe": timeframes[0],
                "strategy_config": strategy_config,
                "risk_config": risk_config,
                "max_contracts_per_trade": MAX_CONTRACTS_PER_TRADE,
                "max_contracts_per_symbol": MAX_CONTRACTS_PER_SYMBOL,
                "current_generation": 1,
                "source_candidate_id": candidate_id,
            })
        except Exception as e:
            log.error("promoter.bot_create_failed", trace_id=trace_id, candidate_id=candidate_id,
                      error=str(e), exc_info=True)
            return await self._revert(candidate, str(BotCreationError(str(e))), trace_id)

        await self._store.update_candidate(
            candidate_id, disposition=Disposition.SENT_TO_LAB, created_bot_id=bot_id,
        )
        log.info("promoter.bot_created", trace_id=trace_id, bot_id=bot_id,
                 name=candidate["strategy_name"], archetype=archetype, symbol=symbol)

        result = PromotionResult(success=True, bot_id=bot_id)
        await self._post_create(result, candidate, archetype, strategy_config, risk_config, trace_id)

        await self._activity.promotion(
            f"Promoted '{candidate['strategy_name']}' to TRIALS",
            detail={
                "candidate_id": candidate_id,
                "bot_id": bot_id,
                "archetype": archetype,
                "adjusted_score": candidate.get("adjusted_score"),
                "source": source,
                "warnings": result.warnings,
            },
            trace_id=trace_id,
        )
        return result

    async def _post_create(
        self,
        result: PromotionResult,
        candidate: dict,
        archetype: str,
        strategy_config: dict,
        risk_config: dict,
        trace_id: str,
    ) -> None:
        """Generation, job and stage change. Failures are recorded as warnings only."""
        bot_id = result.bot_id

        try:
            await self._store.insert_generation({
                "bot_id": bot_id,
                "generation_number": 1,
                "strategy_config": strategy_config,
                "risk_config": risk_config,
                "mutation_reason": "STRATEGY_LAB_PROMOTE",
                "summary_title": "Strategy Lab promotion",
                "regime_at_creation": candidate.get("regime_trigger"),
            })
        except Exception as e:
            log.warning("promoter.generation_failed", trace_id=trace_id, bot_id=bot_id, error=str(e))
            result.warnings.append(f"generation: {e}")

        try:
            await self._store.insert_job({
                "bot_id": bot_id,
                "user_id": self._user_id,
                "job_type": BASELINE_JOB_TYPE,
                "priority": BASELINE_JOB_PRIORITY,
                "payload": {
                    "trace_id": trace_id,
                    "candidate_id": candidate["id"],
                    "archetype": archetype,
                    "entry_condition_type": entry_condition_for(archetype),
                    "timeframes": strategy_config["timeframes"],
                    "instruments": strategy_config["instruments"],
                    "reason": "INITIAL_BACKTEST",
                    "iteration": 1,
                },
            })
        except Exception as e:
            log.warning("promoter.job_failed", trace_id=trace_id, bot_id=bot_id, error=str(e))
            result.warnings.append(f"job: {e}")

        try:
            await self._store.insert_stage_change(
                bot_id,
                BotStage.CANDIDATE.value,
                BotStage.TRIALS.value,
                "AUTO_PROMOTED",
                {"candidate_id": candidate["id"], "adjusted_score": candidate.get("adjusted_score")},
                TRIGGERED_BY,
            )
        except Exception as e:
            log.warning("promoter.stage_change_failed", trace_id=trace_id, bot_id=bot_id, error=str(e))
            result.warnings.append(f"stage_change: {e}")

    async def _revert(self, candidate: dict, error: str, trace_id: str) -> PromotionResult:
        reason = f"{candidate.get('disposition_reason') or 'Promotion'} (bot creation failed, reverted to QUEUED)"
        await self._store.update_candidate(
            candidate["id"], disposition=Disposition.QUEUED, disposition_reason=reason,
        )
        log.error("promoter.reverted", trace_id=trace_id, candidate_id=candidate["id"], error=error)
        await self._activity.promotion(
            f"Promotion of '{candidate['strategy_name']}' failed, reverted to QUEUED",
            severity="error",
            detail={"candidate_id": candidate["id"], "error": error},
            trace_id=trace_id,
        )
        return PromotionResult(success=False, reverted=True, error=error)
