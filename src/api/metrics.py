"""Prometheus /metrics endpoint: exports candidate pipeline and scheduler gauges."""

from __future__ import annotations

from datetime import datetime, timezone

import structlog
from aiohttp import web
from prometheus_client import CollectorRegistry, Gauge, Info, generate_latest

from src.api import API_VERSION, ctx_key
from src.shell.contract import Disposition, SchedulerMode

log = structlog.get_logger()

# Custom registry avoids pytest conflicts with the global default registry.
registry = CollectorRegistry()

# --- Pipeline gauges ---
candidates_total = Gauge("sl_candidates", "Candidates by disposition", ["disposition"], registry=registry)
active_feedback_loops = Gauge("sl_active_feedback_loops", "Non-terminal feedback loops", registry=registry)

# --- Scheduler gauges ---
adaptive_interval = Gauge("sl_adaptive_interval_seconds", "Current research interval", registry=registry)
adaptive_mode = Gauge("sl_adaptive_mode", "Current scheduler mode (1=active)", ["mode"], registry=registry)
lab_playing = Gauge("sl_lab_playing", "Lab playing (1=yes, 0=paused)", registry=registry)
cycle_running = Gauge("sl_cycle_running", "Research cycle in progress (1=yes)", registry=registry)
cycle_age = Gauge("sl_last_cycle_age_seconds", "Seconds since the last cycle started", registry=registry)

# --- Last cycle ---
last_cycle_generated = Gauge("sl_last_cycle_generated", "Candidates generated in the last cycle", registry=registry)
last_cycle_sent = Gauge("sl_last_cycle_sent_to_lab", "Candidates sent to lab in the last cycle", registry=registry)
last_cycle_queued = Gauge("sl_last_cycle_queued", "Candidates queued in the last cycle", registry=registry)
last_cycle_rejected = Gauge("sl_last_cycle_rejected", "Candidates rejected in the last cycle", registry=registry)
last_cycle_duration = Gauge("sl_last_cycle_duration_ms", "Duration of the last cycle", registry=registry)

# --- System ---
uptime = Gauge("sl_uptime_seconds", "Process uptime in seconds", registry=registry)
system_info = Info("sl_system", "Strategy lab metadata", registry=registry)


async def metrics_handler(request: web.Request) -> web.Response:
    """Prometheus scrape endpoint. Reads current state and returns text metrics."""
    ctx = request.app[ctx_key]
    engine = ctx["engine"]
    store = ctx["store"]

    try:
        now = datetime.now(timezone.utc)

        counts = await store.disposition_counts()
        for disposition in Disposition:
            candidates_total.labels(disposition=disposition.value).set(counts.get(disposition.value, 0))
        active_feedback_loops.set(len(await engine.feedback.active_loops()))

        state = engine.scheduler.state
        adaptive_interval.set(state.interval.total_seconds())
        for mode in SchedulerMode:
            adaptive_mode.labels(mode=mode.value).set(1 if mode == state.mode else 0)
        lab_playing.set(1 if engine.settings.is_playing else 0)
        cycle_running.set(1 if engine.is_cycle_running else 0)

        last_at = engine.scheduler.last_cycle_at
        if last_at:
            cycle_age.set((now - last_at).total_seconds())

        recent = engine.scheduler.recent_cycles(1)
        if recent:
            last = recent[-1]
            last_cycle_generated.set(last.candidates_generated)
            last_cycle_sent.set(last.sent_to_lab)
            last_cycle_queued.set(last.queued)
            last_cycle_rejected.set(last.rejected)
            last_cycle_duration.set(last.duration_ms)

        started_at = ctx.get("started_at")
        if started_at:
            uptime.set((now - started_at).total_seconds())

        system_info.info({"version": API_VERSION, "research_depth": engine.settings.research_depth})

    except Exception as e:
        log.error("metrics.collect_error", error=str(e), error_type=type(e).__name__)

    output = generate_latest(registry)
    resp = web.Response(body=output)
    resp.content_type = "text/plain"
    resp.headers["Content-Type"] = "text/plain; version=0.0.4; charset=utf-8"
    return resp
