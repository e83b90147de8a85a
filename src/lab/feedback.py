"""Feedback-loop coordinator.

Persistent state machine tracking one failing bot from detection to its
replacement or abandonment:

    IDLE -> FAILURE_DETECTED -> RESEARCHING_REPAIR | RESEARCHING_REPLACEMENT
         -> CANDIDATE_FOUND -> CANDIDATE_TESTING -> RESOLVED | ABANDONED

At most one non-terminal loop exists per source bot. Terminal loops are
final; a later failure on the same bot opens a fresh loop.
"""

from __future__ import annotations

from typing import Iterable, Optional

import structlog

from src.lab.errors import InvalidTransition
from src.shell.activity import ActivityLogger
from src.shell.contract import (
    FailureReason,
    FeedbackLoop,
    FeedbackState,
    ResolutionCode,
    TERMINAL_FEEDBACK_STATES,
)
from src.shell.store import LabStore

log = structlog.get_logger()

S = FeedbackState

TRANSITIONS: dict[FeedbackState, set[FeedbackState]] = {
    S.IDLE: {S.FAILURE_DETECTED},
    S.FAILURE_DETECTED: {
        S.RESEARCHING_REPAIR, S.RESEARCHING_REPLACEMENT, S.CANDIDATE_FOUND,
        S.RESOLVED, S.ABANDONED,
    },
    S.RESEARCHING_REPAIR: {
        S.RESEARCHING_REPAIR, S.RESEARCHING_REPLACEMENT, S.CANDIDATE_FOUND,
        S.RESOLVED, S.ABANDONED,
    },
    S.RESEARCHING_REPLACEMENT: {
        S.RESEARCHING_REPAIR, S.RESEARCHING_REPLACEMENT, S.CANDIDATE_FOUND,
        S.RESOLVED, S.ABANDONED,
    },
    # a later candidate replaces the current best (last write wins)
    S.CANDIDATE_FOUND: {S.CANDIDATE_FOUND, S.CANDIDATE_TESTING, S.RESOLVED, S.ABANDONED},
    S.CANDIDATE_TESTING: {S.CANDIDATE_FOUND, S.RESOLVED, S.ABANDONED},
    S.RESOLVED: set(),
    S.ABANDONED: set(),
}

RESEARCHING_STATES = (S.FAILURE_DETECTED, S.RESEARCHING_REPAIR, S.RESEARCHING_REPLACEMENT)
REPAIRABLE_CODES = (FailureReason.STAGNATION.value, FailureReason.LOW_SHARPE.value)
DEFAULT_ABANDON_NOTE = "No suitable replacement found"


def research_branch(reason_codes: Iterable[str]) -> FeedbackState:
    """Single STAGNATION or LOW_SHARPE failures are repaired; everything else replaced."""
    codes = [str(getattr(c, "value", c)) for c in reason_codes]
    if len(codes) == 1 and codes[0] in REPAIRABLE_CODES:
        return S.RESEARCHING_REPAIR
    return S.RESEARCHING_REPLACEMENT


class FeedbackCoordinator:
    def __init__(self, store: LabStore, activity: ActivityLogger) -> None:
        self._store = store
        self._activity = activity

    async def _transition(self, loop: FeedbackLoop, target: FeedbackState, trace_id: str = "") -> None:
        if target not in TRANSITIONS[loop.state]:
            raise InvalidTransition(loop.tracking_id, loop.state.value, target.value)
        previous = loop.state
        loop.state = target
        await self._store.save_loop(loop)
        log.info("feedback.transition", tracking_id=loop.tracking_id, bot_id=loop.source_bot_id,
                 previous=previous.value, state=target.value, trace_id=trace_id)
        await self._activity.feedback(
            f"Feedback loop {previous.value} -> {target.value}",
            detail={
                "tracking_id": loop.tracking_id,
                "source_bot_id": loop.source_bot_id,
                "candidate_ids": loop.candidate_ids,
                "best_candidate_id": loop.best_candidate_id,
            },
            trace_id=trace_id,
        )

    async def _require(self, tracking_id: str) -> FeedbackLoop:
        loop = await self._store.get_loop(tracking_id)
        if loop is None:
            raise KeyError(f"Feedback loop not found: {tracking_id}")
        return loop

    # --- Queries ---

    async def get(self, tracking_id: str) -> Optional[FeedbackLoop]:
        return await self._store.get_loop(tracking_id)

    async def loop_for_bot(self, bot_id: str) -> Optional[FeedbackLoop]:
        return await self._store.find_active_loop(bot_id)

    async def active_loops(self) -> list[FeedbackLoop]:
        return await self._store.list_loops(active_only=True, limit=500)

    async def all_loops(self, limit: int = 50) -> list[FeedbackLoop]:
        return await self._store.list_loops(limit=limit)

    # --- Operations ---

    async def create_loop(self, bot_id: str, reason_codes: Iterable[str], trace_id: str = "") -> str:
        """Open a loop for a failing bot. Returns the existing id when one is already active."""
        existing = await self._store.find_active_loop(bot_id)
        if existing:
            log.info("feedback.loop_exists", tracking_id=existing.tracking_id, bot_id=bot_id,
                     state=existing.state.value, trace_id=trace_id)
            return existing.tracking_id

        codes = [str(getattr(c, "value", c)) for c in reason_codes]
        tracking_id = await self._store.insert_loop(bot_id, S.FAILURE_DETECTED, codes)
        log.info("feedback.loop_created", tracking_id=tracking_id, bot_id=bot_id,
                 reasons=codes, trace_id=trace_id)
        await self._activity.feedback(
            f"Feedback loop opened for bot {bot_id}: {', '.join(codes)}",
            detail={"tracking_id": tracking_id, "source_bot_id": bot_id, "reason_codes": codes},
            trace_id=trace_id,
        )
        return tracking_id

    async def start_research(self, tracking_id: str, trace_id: str = "") -> FeedbackState:
        loop = await self._require(tracking_id)
        target = research_branch(loop.failure_reason_codes)
        await self._transition(loop, target, trace_id)
        return target

    async def link_candidate(self, source_bot_id: str, candidate_id: str, trace_id: str = "") -> bool:
        """Attach a promoted candidate to the bot's active loop. False when no loop is open."""
        loop = await self._store.find_active_loop(source_bot_id)
        if loop is None:
            return False
        if S.CANDIDATE_FOUND not in TRANSITIONS[loop.state]:
            log.warning("feedback.link_skipped", tracking_id=loop.tracking_id,
                        state=loop.state.value, candidate_id=candidate_id, trace_id=trace_id)
            return False
        if candidate_id not in loop.candidate_ids:
            loop.candidate_ids.append(candidate_id)
        loop.best_candidate_id = candidate_id
        await self._transition(loop, S.CANDIDATE_FOUND, trace_id)
        return True

    async def mark_candidate_testing(self, tracking_id: str, trace_id: str = "") -> None:
        loop = await self._require(tracking_id)
        await self._transition(loop, S.CANDIDATE_TESTING, trace_id)

    async def resolve(
        self,
        tracking_id: str,
        resolution_code: ResolutionCode | str = ResolutionCode.MANUAL,
        replacement_bot_id: str | None = None,
        notes: str | None = None,
        trace_id: str = "",
    ) -> FeedbackLoop:
        """Close the loop. An ABANDONED code routes to abandon()."""
        code = ResolutionCode(resolution_code)
        if code == ResolutionCode.ABANDONED:
            return await self.abandon(tracking_id, notes, trace_id)

        loop = await self._require(tracking_id)
        if loop.state in TERMINAL_FEEDBACK_STATES:
            raise InvalidTransition(tracking_id, loop.state.value, S.RESOLVED.value)
        loop.resolution_code = code.value
        loop.resolution_notes = notes
        loop.replacement_bot_id = replacement_bot_id
        await self._transition(loop, S.RESOLVED, trace_id)
        return loop

    async def abandon(self, tracking_id: str, note: str | None = None, trace_id: str = "") -> FeedbackLoop:
        loop = await self._require(tracking_id)
        if loop.state in TERMINAL_FEEDBACK_STATES:
            raise InvalidTransition(tracking_id, loop.state.value, S.ABANDONED.value)
        loop.resolution_code = ResolutionCode.ABANDONED.value
        loop.resolution_notes = note or DEFAULT_ABANDON_NOTE
        await self._transition(loop, S.ABANDONED, trace_id)
        return loop
