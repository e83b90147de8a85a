"""Strategy Lab Engine: the candidate-to-bot lifecycle control loop.

One research cycle:
    generator -> dedup (hash, name) -> archetype resolution -> regime-adjusted
    score -> disposition gate -> persist + novelty -> promote (SENT_TO_LAB)

Candidates within a cycle are processed sequentially: later candidates'
dedup reads the rows written for earlier ones. Cycles never overlap; the
interval check and cycle-start stamp are taken under one asyncio.Lock, and
a request arriving mid-cycle is dropped.
"""

from __future__ import annotations

import asyncio
import copy
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol

import structlog

from src.lab.archetypes import resolve_archetype
from src.lab.disposition import decide_disposition
from src.lab.errors import GeneratorError, format_validation_errors
from src.lab.failure import FailureDetector, most_critical
from src.lab.feedback import RESEARCHING_STATES, FeedbackCoordinator
from src.lab.generator import CandidateGenerator
from src.lab.lineage import LineageMap
from src.lab.novelty import novelty_score, rules_hash
from src.lab.promoter import BotPromoter
from src.lab.scheduler import AdaptiveScheduler
from src.lab.scoring import ConfidenceScorer, adjust_score, score_tier, tier_allowed
from src.lab.settings import LabSettings
from src.shell.activity import ActivityLogger
from src.shell.contract import (
    CandidateSource,
    CycleStats,
    Disposition,
    FailureContext,
    FailureDetection,
    GenerationContext,
    ProcessResult,
    RegimeTrigger,
    ResearchCandidate,
)
from src.shell.store import LabStore
from src.utils.logging import trace_context

log = structlog.get_logger()


class RegimeDetector(Protocol):
    async def detect(self, symbol: str) -> Optional[RegimeTrigger]: ...


@dataclass
class ResearchActivity:
    """Snapshot read by status observers without taking the cycle lock."""
    is_active: bool = False
    phase: str = "IDLE"          # IDLE / INITIALIZING / RESEARCHING / EVALUATING / COMPLETE
    started_at: Optional[str] = None
    message: str = ""
    candidates_found: int = 0
    trace_id: Optional[str] = None


def new_trace_id() -> str:
    return uuid.uuid4().hex[:16]


class StrategyLabEngine:
    def __init__(
        self,
        store: LabStore,
        activity: ActivityLogger,
        settings: LabSettings,
        generator: CandidateGenerator,
        scheduler: AdaptiveScheduler,
        promoter: BotPromoter,
        failure_detector: FailureDetector,
        feedback: FeedbackCoordinator,
        regime_detector: RegimeDetector | None = None,
        monitored_symbols: list[str] | None = None,
        scorer: ConfidenceScorer | None = None,
        novelty_population_limit: int = 500,
    ) -> None:
        self._store = store
        self._activity = activity
        self.settings = settings
        self._generator = generator
        self.scheduler = scheduler
        self._promoter = promoter
        self._failures = failure_detector
        self.feedback = feedback
        self._regime_detector = regime_detector
        self._symbols = monitored_symbols or ["MES"]
        self._scorer = scorer or ConfidenceScorer()
        self._novelty_limit = novelty_population_limit
        self._cycle_lock = asyncio.Lock()
        self._last_regime: RegimeTrigger = RegimeTrigger.NONE
        self.research_activity = ResearchActivity()

    @property
    def is_cycle_running(self) -> bool:
        return self._cycle_lock.locked()

    # --- Scheduling ---

    async def tick(self, now: datetime | None = None) -> Optional[CycleStats]:
        """Single entry point for the process scheduler. Runs a cycle when one is due."""
        return await self.run_cycle(now=now)

    async def run_cycle(
        self,
        forced: bool = False,
        source_bot_id: str | None = None,
        source_failure: FailureContext | None = None,
        regime_trigger: RegimeTrigger | None = None,
        now: datetime | None = None,
    ) -> Optional[CycleStats]:
        """Run one research cycle if permitted. Returns None when skipped."""
        if not self.settings.is_playing and not forced:
            return None
        if self._cycle_lock.locked():
            log.warning("lab.cycle_in_progress", forced=forced, source_bot_id=source_bot_id)
            return None

        async with self._cycle_lock:
            now = now or datetime.now(timezone.utc)
            snapshot = await self._store.pipeline_snapshot()
            self.scheduler.compute_mode(snapshot, now)
            if not self.scheduler.should_run(now, forced):
                return None

            if source_bot_id:
                trigger = "LAB_FEEDBACK"
            elif forced:
                trigger = "FORCED"
            else:
                trigger = "SCHEDULED"
            # stamp before running so a failing cycle does not retry every tick
            self.scheduler.mark_cycle_started(now, trigger)

            trace_id = new_trace_id()
            if regime_trigger is None and (not forced or self.scheduler.always_check_regime):
                regime_trigger = await self._check_regime(trace_id)
            if regime_trigger is not None and not source_bot_id:
                trigger = "REGIME_BURST"

            context = GenerationContext(
                regime_trigger=regime_trigger,
                source_bot_id=source_bot_id,
                source_failure=source_failure,
                trace_id=trace_id,
            )
            with trace_context(trace_id, cycle_trigger=trigger):
                return await self._execute_cycle(context, trigger, now)

    async def _check_regime(self, trace_id: str) -> Optional[RegimeTrigger]:
        if self._regime_detector is None:
            return None
        for symbol in self._symbols:
            try:
                regime = await self._regime_detector.detect(symbol)
            except Exception as e:
                log.warning("lab.regime_check_failed", trace_id=trace_id, symbol=symbol, error=str(e))
                continue
            if regime and regime != RegimeTrigger.NONE:
                log.info("lab.regime_trigger", trace_id=trace_id, symbol=symbol, regime=regime.value)
                self._last_regime = regime
                return regime
        return None

    async def _execute_cycle(self, ctx: GenerationContext, trigger: str, now: datetime) -> Optional[CycleStats]:
        started = time.monotonic()
        cycle_id = f"{now:%Y%m%d_%H%M%S}_{uuid.uuid4().hex[:6]}"
        depth = self.scheduler.state.mode.value
        self.research_activity = ResearchActivity(
            is_active=True, phase="INITIALIZING", started_at=now.isoformat(),
            message=f"{trigger} research cycle starting", trace_id=ctx.trace_id,
        )
        log.info("lab.cycle_start", trace_id=ctx.trace_id, cycle_id=cycle_id, trigger=trigger,
                 depth=depth, regime=ctx.regime_trigger.value if ctx.regime_trigger else None,
                 source_bot_id=ctx.source_bot_id)

        self.research_activity.phase = "RESEARCHING"
        try:
            result = await self._generator.generate(ctx)
        except Exception as e:
            if isinstance(e, GeneratorError):
                log.warning("lab.generator_unavailable", trace_id=ctx.trace_id, error=str(e))
            else:
                log.error("lab.generator_failed", trace_id=ctx.trace_id, error=str(e), exc_info=True)
            await self._activity.cycle(f"Research cycle abandoned: {e}", severity="error",
                                       detail={"cycle_id": cycle_id, "trigger": trigger},
                                       trace_id=ctx.trace_id)
            self._finish_activity(f"Cycle abandoned: {e}")
            return None

        if not result.success:
            log.warning("lab.generator_unsuccessful", trace_id=ctx.trace_id, error=result.error)
            await self._activity.cycle(f"Research cycle skipped: {result.error}", severity="warning",
                                       detail={"cycle_id": cycle_id, "trigger": trigger},
                                       trace_id=ctx.trace_id)
            self._finish_activity(f"Cycle skipped: {result.error}")
            return None

        self.research_activity.phase = "EVALUATING"
        self.research_activity.candidates_found = len(result.candidates)
        stats = CycleStats(cycle_id=cycle_id, timestamp=now, trigger=trigger,
                           candidates_generated=len(result.candidates), depth=depth)

        for candidate in result.candidates:
            try:
                outcome = await self.process_candidate(candidate, ctx, cycle_id)
            except Exception as e:
                log.error("lab.candidate_failed", trace_id=ctx.trace_id,
                          strategy=candidate.strategy_name, error=str(e), exc_info=True)
                continue
            if outcome.disposition == Disposition.SENT_TO_LAB:
                stats.sent_to_lab += 1
            elif outcome.disposition in (Disposition.QUEUED, Disposition.PENDING_REVIEW):
                stats.queued += 1
            elif outcome.disposition == Disposition.MERGED:
                stats.merged += 1
            else:
                stats.rejected += 1

        stats.duration_ms = int((time.monotonic() - started) * 1000)
        self.scheduler.record_cycle(stats)
        await self._store.insert_cycle(stats)
        await self._activity.cycle(
            f"Research cycle complete: {stats.candidates_generated} generated, "
            f"{stats.sent_to_lab} to lab, {stats.queued} queued, {stats.rejected} rejected, "
            f"{stats.merged} merged",
            detail=stats.to_dict(),
            trace_id=ctx.trace_id,
        )
        log.info("lab.cycle_complete", trace_id=ctx.trace_id, **{
            k: v for k, v in stats.to_dict().items() if k not in ("timestamp", "trigger")
        })
        self._finish_activity(f"Found {stats.candidates_generated} candidates")
        return stats

    def _finish_activity(self, message: str) -> None:
        self.research_activity.is_active = False
        self.research_activity.phase = "COMPLETE"
        self.research_activity.message = message

    # --- Candidate processing ---

    async def process_candidate(
        self, candidate: ResearchCandidate, ctx: GenerationContext, cycle_id: str | None = None,
    ) -> ProcessResult:
        trace_id = ctx.trace_id

        # Exact structure duplicate
        digest = rules_hash(candidate.rules)
        existing = await self._store.find_candidate_by_hash(digest)
        if existing:
            return await self._merge(candidate, existing, "rules hash", trace_id)

        existing = await self._store.find_active_candidate_by_name(candidate.strategy_name)
        if existing:
            return await self._merge(candidate, existing, "strategy name", trace_id)

        # Fail closed before any scoring
        resolution = resolve_archetype(
            candidate.strategy_name, candidate.archetype_name, candidate.rules.archetype, trace_id,
        )
        if not resolution.valid:
            reason = format_validation_errors(resolution.errors)
            log.warning("lab.archetype_rejected", trace_id=trace_id,
                        strategy=candidate.strategy_name, reason=reason)
            await self._activity.candidate(
                f"Rejected '{candidate.strategy_name}': no determinable archetype",
                severity="warning",
                detail={"reason_code": "ARCHETYPE_REQUIRED",
                        "errors": [e.to_dict() for e in resolution.errors]},
                trace_id=trace_id,
            )
            return ProcessResult(Disposition.REJECTED, None, reason, "ARCHETYPE_REQUIRED")

        confidence, breakdown = candidate.confidence_score, candidate.breakdown
        if not any(asdict(breakdown).values()):
            # generator's own score wins; the breakdown still feeds the gate
            scored, breakdown = self._scorer.score(candidate, ctx.source_failure)
            confidence = confidence or scored

        regime = ctx.regime_trigger or RegimeTrigger.NONE
        score = adjust_score(confidence, regime, candidate.archetype_name, resolution.archetype)
        decision = decide_disposition(
            breakdown,
            score.adjusted,
            self.settings.auto_promote_threshold,
            self.settings.require_manual_approval,
        )

        if ctx.source_bot_id:
            source = CandidateSource.LAB_FEEDBACK
        elif ctx.regime_trigger:
            source = CandidateSource.BURST_RESEARCH
        else:
            source = CandidateSource.SCHEDULED_RESEARCH

        candidate_id = await self._store.insert_candidate({
            "strategy_name": candidate.strategy_name,
            "archetype_name": resolution.archetype,
            "hypothesis": candidate.hypothesis,
            "rules": candidate.rules.to_dict(),
            "rules_hash": digest,
            "confidence_score": confidence,
            "adjusted_score": score.adjusted,
            "regime_bonus": score.bonus,
            "regime_trigger": score.regime,
            "confidence_breakdown": breakdown.to_dict(),
            "disposition": decision.disposition,
            "disposition_reason": decision.reason,
            "source": source,
            "source_lab_bot_id": ctx.source_bot_id,
            "lineage_chain": [ctx.source_bot_id] if ctx.source_bot_id else [],
            "research_cycle_id": cycle_id,
            "instrument_universe": candidate.instrument_universe,
            "timeframe_preferences": candidate.timeframe_preferences,
            "session_mode_preference": candidate.session_mode_preference,
            "evidence": [asdict(e) for e in candidate.evidence],
            "novelty_justification": asdict(candidate.novelty_justification),
            "explainers": candidate.explainers,
            "trace_id": trace_id,
        })

        row = {"id": candidate_id, "archetype_name": resolution.archetype,
               "hypothesis": candidate.hypothesis, "rules": candidate.rules.to_dict()}
        population = await self._store.novelty_population(candidate_id, self._novelty_limit)
        await self._store.update_candidate(candidate_id, novelty_score=novelty_score(row, population))

        disposition, reason = decision.disposition, decision.reason
        if disposition == Disposition.SENT_TO_LAB:
            promotion = await self._promoter.promote(candidate_id, trace_id)
            if promotion.success:
                if ctx.source_bot_id:
                    await self.feedback.link_candidate(ctx.source_bot_id, candidate_id, trace_id)
            else:
                disposition = Disposition.QUEUED
                reason = f"{reason} (bot creation failed, reverted to QUEUED)"

        log.info("lab.candidate_disposed", trace_id=trace_id, candidate_id=candidate_id,
                 strategy=candidate.strategy_name, archetype=resolution.archetype,
                 disposition=disposition.value, adjusted_score=score.adjusted,
                 regime_bonus=score.bonus)
        await self._activity.candidate(
            f"{disposition.value}: '{candidate.strategy_name}' (score {score.adjusted})",
            detail={
                "candidate_id": candidate_id,
                "archetype": resolution.archetype,
                "confidence_score": confidence,
                "adjusted_score": score.adjusted,
                "regime": score.regime,
                "regime_bonus": score.bonus,
                "regime_match": score.match,
                "reason": reason,
                "reason_code": decision.reason_code,
                "source": source.value,
                "warnings": resolution.warnings,
            },
            trace_id=trace_id,
        )
        return ProcessResult(disposition, candidate_id, reason, decision.reason_code)

    async def _merge(self, candidate: ResearchCandidate, existing: dict, matched_on: str,
                     trace_id: str) -> ProcessResult:
        await self._store.increment_merge_count(existing["id"])
        reason = f"Duplicate of {existing['id']} ({matched_on})"
        log.info("lab.candidate_merged", trace_id=trace_id, strategy=candidate.strategy_name,
                 into=existing["id"], matched_on=matched_on)
        await self._activity.candidate(
            f"MERGED: '{candidate.strategy_name}' into '{existing['strategy_name']}'",
            detail={"merged_into": existing["id"], "matched_on": matched_on},
            trace_id=trace_id,
        )
        return ProcessResult(Disposition.MERGED, existing["id"], reason, "DUPLICATE")

    # --- Auto-promotion & novelty backfill ---

    async def evaluate_auto_promotions(self, trace_id: str | None = None) -> dict:
        """Promote PENDING_REVIEW candidates that clear the operator threshold and tier."""
        trace_id = trace_id or new_trace_id()
        summary: dict = {"promoted": [], "skipped": []}
        if self.settings.require_manual_approval:
            return summary

        threshold = self.settings.auto_promote_threshold
        min_tier = self.settings.auto_promote_tier
        pending = await self._store.candidates_by_disposition(Disposition.PENDING_REVIEW.value, 100)
        with trace_context(trace_id):
            for row in pending:
                score = row.get("adjusted_score")
                if score is None:
                    score = adjust_score(row.get("confidence_score") or 0, self._last_regime,
                                         row.get("archetype_name")).adjusted
                tier = score_tier(score)
                if score < threshold:
                    summary["skipped"].append(
                        {"id": row["id"], "reason": f"Score {score} below threshold {threshold}"})
                    continue
                if not tier_allowed(tier, min_tier):
                    summary["skipped"].append(
                        {"id": row["id"], "reason": f"Tier {tier} does not meet minimum tier {min_tier}"})
                    continue
                result = await self._promoter.promote(row["id"], trace_id, source="auto_promotion")
                if result.success:
                    summary["promoted"].append({"id": row["id"], "bot_id": result.bot_id, "tier": tier})
                else:
                    summary["skipped"].append({"id": row["id"], "reason": result.error})

        if summary["promoted"]:
            log.info("lab.auto_promotions", trace_id=trace_id, promoted=len(summary["promoted"]),
                     skipped=len(summary["skipped"]))
        return summary

    async def backfill_novelty_scores(self, batch: int = 100) -> int:
        missing = await self._store.candidates_missing_novelty(batch)
        for row in missing:
            population = await self._store.novelty_population(row["id"], self._novelty_limit)
            await self._store.update_candidate(row["id"], novelty_score=novelty_score(row, population))
        if missing:
            log.info("lab.novelty_backfilled", count=len(missing))
        return len(missing)

    # --- Failure feedback ---

    async def process_failures_and_trigger_research(self, trace_id: str | None = None) -> dict:
        """Scan TRIALS bots; open a feedback loop for the most critical failure and research it."""
        trace_id = trace_id or new_trace_id()
        with trace_context(trace_id):
            failures = await self._failures.scan(trace_id)
        target = most_critical(failures)
        if target is None:
            return {"processed": len(failures), "research_triggered": False}

        await self._activity.feedback(
            f"Bot {target.bot_name} failure triggered research: "
            f"{', '.join(c.value for c in target.reason_codes)}",
            detail={"bot_id": target.bot_id, "total_failures": len(failures),
                    "recycle_decision": target.recycle_decision.value if target.recycle_decision else None},
            trace_id=trace_id,
        )
        stats = await self.trigger_feedback_research(target, trace_id)
        return {
            "processed": len(failures),
            "research_triggered": stats is not None,
            "bot_id": target.bot_id,
        }

    async def trigger_feedback_research(self, detection: FailureDetection, trace_id: str) -> Optional[CycleStats]:
        tracking_id = await self.feedback.create_loop(detection.bot_id, detection.reason_codes, trace_id)
        loop = await self.feedback.get(tracking_id)
        if loop is None or loop.state not in RESEARCHING_STATES:
            log.info("lab.feedback_busy", trace_id=trace_id, tracking_id=tracking_id,
                     state=loop.state.value if loop else None)
            return None
        await self.feedback.start_research(tracking_id, trace_id)
        return await self.run_cycle(
            forced=True,
            source_bot_id=detection.bot_id,
            source_failure=detection.to_failure_context(),
        )

    # --- Read side ---

    async def candidates_by_disposition(self, disposition: str | None = None, limit: int = 50) -> list[dict]:
        """Rows for one disposition (None/'ALL' for everything) with lineage fields."""
        if disposition and disposition.upper() == "ALL":
            disposition = None
        rows = await self._store.candidates_by_disposition(disposition, limit)
        lineage = LineageMap(await self._store.lineage_rows())
        return [lineage.enrich(r) for r in rows]

    async def status(self, now: datetime | None = None) -> dict:
        now = now or datetime.now(timezone.utc)
        counts = await self._store.disposition_counts(days=7)
        last = self.scheduler.last_cycle_at
        return {
            "is_playing": self.settings.is_playing,
            "paused_reason": self.settings.paused_reason,
            "is_cycle_running": self.is_cycle_running,
            "adaptive": self.scheduler.state.to_dict(),
            "last_cycle_at": last.isoformat() if last else None,
            "next_cycle_at": self.scheduler.next_cycle_at(now).isoformat(),
            "research_activity": asdict(self.research_activity),
            "last_7_days": {
                "total": sum(counts.values()),
                "pending_review": counts.get(Disposition.PENDING_REVIEW.value, 0),
                "sent_to_lab": counts.get(Disposition.SENT_TO_LAB.value, 0),
                "queued": counts.get(Disposition.QUEUED.value, 0),
            },
            "recent_cycles": [s.to_dict() for s in self.scheduler.recent_cycles(5)],
            "active_feedback_loops": len(await self.feedback.active_loops()),
            "current_regime": self._last_regime.value,
        }

    # --- Operator controls ---

    async def update_settings(self, changes: dict) -> dict:
        """Apply a partial update all-or-nothing, then persist it."""
        updated = copy.deepcopy(self.settings)
        applied = updated.update(changes)
        self.settings = updated
        await self._store.save_settings(self.settings.snapshot())
        await self._activity.system(f"Lab settings updated: {', '.join(applied)}",
                                    detail={k: changes[k] for k in applied})
        return self.settings.snapshot()

    async def set_playing(self, playing: bool, reason: str | None = None) -> dict:
        self.settings.set_playing(playing, reason)
        await self._store.save_settings(self.settings.snapshot())
        await self._activity.system("Lab resumed" if playing else f"Lab paused: {self.settings.paused_reason}")
        return self.settings.snapshot()

    async def restore_history(self) -> None:
        """Reload cycle stats so the adaptive mode survives a restart."""
        for stats in await self._store.recent_cycles(20):
            self.scheduler.record_cycle(stats)
        if self.scheduler.history:
            self.scheduler.last_cycle_at = self.scheduler.history[-1].timestamp
