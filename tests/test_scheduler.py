"""Tests for the adaptive research scheduler."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from src.lab.scheduler import AdaptiveScheduler
from src.shell.contract import CycleStats, PipelineSnapshot, SchedulerMode

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


def _stats(sent: int, at: datetime, n: int = 0) -> CycleStats:
    return CycleStats(cycle_id=f"c{n}", timestamp=at, trigger="SCHEDULED", sent_to_lab=sent)


class TestComputeMode:
    def test_fresh_scheduler_scans(self):
        s = AdaptiveScheduler()
        state = s.compute_mode(PipelineSnapshot(0, 0), NOW)
        assert state.mode == SchedulerMode.SCANNING
        assert state.interval == timedelta(hours=1)
        assert s.always_check_regime

    def test_full_pipeline_slows_down(self):
        s = AdaptiveScheduler()
        state = s.compute_mode(PipelineSnapshot(pending_review=5, in_lab=0), NOW)
        assert state.mode == SchedulerMode.DEEP_RESEARCH
        assert state.interval == timedelta(hours=6)
        state = s.compute_mode(PipelineSnapshot(pending_review=0, in_lab=3), NOW)
        assert state.mode == SchedulerMode.DEEP_RESEARCH

    def test_low_success_rate_goes_deep(self):
        s = AdaptiveScheduler()
        for i in range(3):
            s.record_cycle(_stats(0, NOW - timedelta(hours=i), i))
        state = s.compute_mode(PipelineSnapshot(1, 1), NOW)
        assert state.mode == SchedulerMode.DEEP_RESEARCH
        assert "0%" in state.reason

    def test_balanced_after_recent_discovery(self):
        s = AdaptiveScheduler()
        s.record_cycle(_stats(1, NOW - timedelta(hours=1)))
        state = s.compute_mode(PipelineSnapshot(1, 1), NOW)
        assert state.mode == SchedulerMode.BALANCED
        assert state.interval == timedelta(hours=2)
        assert not s.always_check_regime

    def test_drought_accelerates(self):
        s = AdaptiveScheduler()
        s.record_cycle(_stats(1, NOW - timedelta(hours=9)))
        state = s.compute_mode(PipelineSnapshot(1, 1), NOW)
        assert state.mode == SchedulerMode.SCANNING
        assert "9h" in state.reason

    def test_base_interval_clamped(self):
        s = AdaptiveScheduler(base_interval=timedelta(hours=12))
        assert s.base_interval == timedelta(hours=6)
        assert s.state.interval == timedelta(hours=6)


class TestTiming:
    def test_first_cycle_always_due(self):
        s = AdaptiveScheduler()
        assert s.should_run(NOW)
        assert s.next_cycle_at(NOW) == NOW + timedelta(hours=2)

    def test_interval_respected(self):
        s = AdaptiveScheduler()
        s.mark_cycle_started(NOW)
        assert not s.should_run(NOW + timedelta(minutes=30))
        assert s.should_run(NOW + timedelta(minutes=30), forced=True)
        assert s.should_run(NOW + timedelta(hours=2))
        assert s.next_cycle_at(NOW) == NOW + timedelta(hours=2)

    def test_trigger_stamp(self):
        s = AdaptiveScheduler()
        s.mark_cycle_started(NOW, "FORCED")
        assert s.last_cycle_by_trigger == {"FORCED": NOW}


def test_history_capped():
    s = AdaptiveScheduler()
    for i in range(25):
        s.record_cycle(_stats(0, NOW, i))
    assert len(s.history) == 20
    assert s.history[0].cycle_id == "c5"
    assert [c.cycle_id for c in s.recent_cycles(2)] == ["c23", "c24"]
