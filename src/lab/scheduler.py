"""Adaptive research scheduler.

Holds the process-wide mode/interval state and the cycle-stats history.
Everything here is synchronous and takes `now` explicitly so the timing
rules can be tested without a clock. The engine owns the lock that makes
should_run() + mark_cycle_started() atomic.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

import structlog

from src.shell.contract import CycleStats, PipelineSnapshot, SchedulerMode

log = structlog.get_logger()

MIN_INTERVAL = timedelta(hours=1)
BASE_INTERVAL = timedelta(hours=2)
MAX_INTERVAL = timedelta(hours=6)

PENDING_BACKLOG_LIMIT = 5
IN_LAB_LIMIT = 3
SUCCESS_WINDOW = 10
MIN_SUCCESS_SAMPLES = 3
LOW_SUCCESS_RATE = 0.2
DISCOVERY_DROUGHT = timedelta(hours=8)
NO_DISCOVERY_ASSUMED = timedelta(hours=12)
STATS_HISTORY_LIMIT = 20


@dataclass
class AdaptiveState:
    mode: SchedulerMode = SchedulerMode.BALANCED
    interval: timedelta = BASE_INTERVAL
    reason: str = "Initial balanced mode"

    def to_dict(self) -> dict:
        return {
            "mode": self.mode.value,
            "interval_seconds": int(self.interval.total_seconds()),
            "reason": self.reason,
        }


@dataclass
class AdaptiveScheduler:
    min_interval: timedelta = MIN_INTERVAL
    base_interval: timedelta = BASE_INTERVAL
    max_interval: timedelta = MAX_INTERVAL
    state: AdaptiveState = field(default_factory=AdaptiveState)
    last_cycle_at: Optional[datetime] = None
    last_cycle_by_trigger: dict[str, datetime] = field(default_factory=dict)
    history: list[CycleStats] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.base_interval = max(self.min_interval, min(self.max_interval, self.base_interval))
        self.state.interval = self.base_interval

    # --- Mode ---

    def success_rate(self) -> float:
        recent = self.history[-SUCCESS_WINDOW:]
        if not recent:
            return 0.5
        return sum(1 for s in recent if s.sent_to_lab > 0) / len(recent)

    def time_since_discovery(self, now: datetime) -> timedelta:
        successes = [s for s in self.history[-SUCCESS_WINDOW:] if s.sent_to_lab > 0]
        if not successes:
            return NO_DISCOVERY_ASSUMED
        return now - successes[-1].timestamp

    def compute_mode(self, snapshot: PipelineSnapshot, now: datetime) -> AdaptiveState:
        """Recompute mode and interval. First matching rule wins."""
        recent = self.history[-SUCCESS_WINDOW:]
        rate = self.success_rate()
        since = self.time_since_discovery(now)

        if snapshot.pending_review >= PENDING_BACKLOG_LIMIT or snapshot.in_lab >= IN_LAB_LIMIT:
            state = AdaptiveState(
                SchedulerMode.DEEP_RESEARCH, self.max_interval,
                f"Pipeline full ({snapshot.pending_review} pending, {snapshot.in_lab} in lab) "
                "- slowing to deep research",
            )
        elif rate < LOW_SUCCESS_RATE and len(recent) >= MIN_SUCCESS_SAMPLES:
            state = AdaptiveState(
                SchedulerMode.DEEP_RESEARCH, self.max_interval,
                f"Low discovery rate ({round(rate * 100)}%) - switching to deeper research",
            )
        elif since > DISCOVERY_DROUGHT:
            state = AdaptiveState(
                SchedulerMode.SCANNING, self.min_interval,
                f"No discoveries in {round(since.total_seconds() / 3600)}h - accelerating scans",
            )
        elif snapshot.pending_review == 0 and snapshot.in_lab == 0:
            state = AdaptiveState(
                SchedulerMode.SCANNING, self.min_interval,
                "Pipeline empty - scanning for new opportunities",
            )
        else:
            state = AdaptiveState(
                SchedulerMode.BALANCED, self.base_interval,
                "Normal operation - balanced discovery pace",
            )

        if state.mode != self.state.mode:
            log.info("scheduler.mode_changed", previous=self.state.mode.value,
                     mode=state.mode.value, reason=state.reason)
        self.state = state
        return state

    @property
    def always_check_regime(self) -> bool:
        return self.state.mode == SchedulerMode.SCANNING

    # --- Timing ---

    def should_run(self, now: datetime, forced: bool = False) -> bool:
        """True when a cycle is due. Forced requests bypass the interval only."""
        if forced or self.last_cycle_at is None:
            return True
        return now - self.last_cycle_at >= self.state.interval

    def mark_cycle_started(self, now: datetime, trigger: str = "SCHEDULED") -> None:
        self.last_cycle_at = now
        self.last_cycle_by_trigger[trigger] = now

    def next_cycle_at(self, now: datetime) -> datetime:
        if self.last_cycle_at is None:
            return now + self.state.interval
        return self.last_cycle_at + self.state.interval

    # --- Stats ---

    def record_cycle(self, stats: CycleStats) -> None:
        self.history.append(stats)
        if len(self.history) > STATS_HISTORY_LIMIT:
            del self.history[: len(self.history) - STATS_HISTORY_LIMIT]

    def recent_cycles(self, limit: int = 5) -> list[CycleStats]:
        return self.history[-limit:]
