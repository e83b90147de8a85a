"""Strategy Lab: process entry point.

Wires the lab components, restores persisted operator settings and runs the
research scheduler until shutdown.

Startup: load config -> connect DB -> restore settings -> wire engine -> start API -> start scheduler
Shutdown: stop scheduler -> stop API -> close DB
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys
from datetime import datetime, timedelta
from pathlib import Path

import structlog
from aiohttp import web
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from src.api.server import create_app as create_api_app
from src.lab.engine import RegimeDetector, StrategyLabEngine
from src.lab.failure import FailureDetector
from src.lab.feedback import FeedbackCoordinator
from src.lab.generator import CandidateGenerator, NullCandidateGenerator
from src.lab.promoter import BotPromoter
from src.lab.scheduler import AdaptiveScheduler
from src.lab.settings import LabSettings
from src.shell.activity import ActivityLogger
from src.shell.config import Config, load_config
from src.shell.database import Database
from src.shell.store import LabStore
from src.utils.logging import setup_logging

log = structlog.get_logger()


def initial_settings(config: Config, persisted: dict | None) -> LabSettings:
    """Persisted operator settings win; config only seeds a fresh database."""
    if persisted:
        return LabSettings.restore(persisted)
    return LabSettings(
        is_playing=config.lab.start_playing,
        require_manual_approval=config.lab.require_manual_approval,
        auto_promote_threshold=config.lab.auto_promote_threshold,
        auto_promote_tier=config.lab.auto_promote_tier,
        research_depth=config.lab.research_depth,
    )


class StrategyLab:
    """Main application that owns the engine and its scheduled jobs."""

    def __init__(
        self,
        generator: CandidateGenerator | None = None,
        regime_detector: RegimeDetector | None = None,
    ) -> None:
        self._generator = generator or NullCandidateGenerator()
        self._regime_detector = regime_detector
        self._config: Config | None = None
        self._db: Database | None = None
        self._store: LabStore | None = None
        self._activity: ActivityLogger | None = None
        self._engine: StrategyLabEngine | None = None
        self._scheduler: AsyncIOScheduler | None = None
        self._api_runner: web.AppRunner | None = None
        self._running = False

    @property
    def engine(self) -> StrategyLabEngine | None:
        return self._engine

    async def setup(self, config: Config | None = None) -> StrategyLabEngine:
        """Connect storage and wire components. Does not start any jobs."""
        self._config = config or load_config()
        setup_logging(self._config.log_level)
        log.info("config.loaded", db_path=self._config.db_path, symbols=self._config.monitored_symbols)

        self._db = Database(self._config.db_path)
        await self._db.connect()
        self._store = LabStore(self._db)
        self._activity = ActivityLogger(self._db)

        settings = initial_settings(self._config, await self._store.load_settings())
        await self._store.save_settings(settings.snapshot())

        sched = self._config.scheduler
        scheduler = AdaptiveScheduler(
            min_interval=timedelta(hours=sched.min_interval_hours),
            base_interval=timedelta(hours=sched.base_interval_hours),
            max_interval=timedelta(hours=sched.max_interval_hours),
        )
        self._engine = StrategyLabEngine(
            store=self._store,
            activity=self._activity,
            settings=settings,
            generator=self._generator,
            scheduler=scheduler,
            promoter=BotPromoter(self._store, self._activity, self._config.default_user_id),
            failure_detector=FailureDetector(self._store, self._activity, self._config.failure),
            feedback=FeedbackCoordinator(self._store, self._activity),
            regime_detector=self._regime_detector,
            monitored_symbols=self._config.monitored_symbols,
            novelty_population_limit=self._config.promotion.novelty_population_limit,
        )
        await self._engine.restore_history()
        return self._engine

    async def start(self) -> None:
        """Full startup sequence. Blocks until stop() is called."""
        log.info("lab.starting")
        await self.setup()

        if self._config.api.enabled:
            api_app = create_api_app(self._config, self._engine, self._activity, self._store)
            self._api_runner = web.AppRunner(api_app)
            await self._api_runner.setup()
            site = web.TCPSite(self._api_runner, self._config.api.host, self._config.api.port)
            await site.start()
            log.info("api.started", host=self._config.api.host, port=self._config.api.port)

        self._scheduler = AsyncIOScheduler(timezone=self._config.timezone)
        self._setup_jobs()
        self._scheduler.start()

        await self._activity.system(
            "Strategy lab online",
            detail={"is_playing": self._engine.settings.is_playing,
                    "generator": type(self._generator).__name__},
        )
        self._running = True
        log.info("lab.started", playing=self._engine.settings.is_playing)

        while self._running:
            await asyncio.sleep(1)

    def _setup_jobs(self) -> None:
        """Configure all scheduled jobs."""
        sched = self._config.scheduler

        # Research tick: the engine decides whether a cycle is due
        self._scheduler.add_job(
            self._tick, IntervalTrigger(seconds=sched.tick_seconds),
            id="lab_tick", name="Research Tick",
            next_run_time=datetime.now() + timedelta(seconds=10),
        )

        self._scheduler.add_job(
            self._failure_scan, IntervalTrigger(minutes=sched.failure_scan_minutes),
            id="failure_scan", name="Failure Scan",
            next_run_time=datetime.now() + timedelta(minutes=1),
        )

        self._scheduler.add_job(
            self._auto_promotion, IntervalTrigger(minutes=sched.auto_promotion_minutes),
            id="auto_promotion", name="Auto Promotion",
        )

        log.info("scheduler.configured", tick_seconds=sched.tick_seconds,
                 failure_scan_minutes=sched.failure_scan_minutes,
                 auto_promotion_minutes=sched.auto_promotion_minutes)

    async def _tick(self) -> None:
        try:
            await self._engine.tick()
        except Exception as e:
            log.error("lab.tick_failed", error=str(e), exc_info=True)

    async def _failure_scan(self) -> None:
        try:
            await self._engine.process_failures_and_trigger_research()
        except Exception as e:
            log.error("lab.failure_scan_failed", error=str(e), exc_info=True)

    async def _auto_promotion(self) -> None:
        try:
            await self._engine.evaluate_auto_promotions()
            await self._engine.backfill_novelty_scores(self._config.promotion.backfill_batch)
        except Exception as e:
            log.error("lab.auto_promotion_failed", error=str(e), exc_info=True)

    async def stop(self) -> None:
        """Graceful shutdown sequence."""
        log.info("lab.stopping")
        self._running = False

        if self._scheduler:
            self._scheduler.shutdown(wait=False)

        if self._api_runner:
            await self._api_runner.cleanup()

        if self._db:
            if self._activity:
                await self._activity.system("Strategy lab shutting down")
            await self._db.close()

        log.info("lab.stopped")


LOCK_FILE = Path(__file__).resolve().parent.parent / "data" / "strategy_lab.pid"


def _acquire_lock() -> None:
    """Ensure only one instance runs. Write PID to lockfile."""
    current_pid = os.getpid()
    if LOCK_FILE.exists():
        try:
            old_pid = int(LOCK_FILE.read_text().strip())
        except (ValueError, OSError):
            log.warning("lockfile.corrupt")
            old_pid = None

        if old_pid is not None and old_pid != current_pid:
            try:
                os.kill(old_pid, 0)  # signal 0 = just check existence
                print(f"ERROR: Another instance is running (PID {old_pid}). Exiting.", file=sys.stderr)
                sys.exit(1)
            except (ProcessLookupError, PermissionError):
                log.warning("lockfile.stale", old_pid=old_pid)

    LOCK_FILE.parent.mkdir(parents=True, exist_ok=True)
    LOCK_FILE.write_text(str(current_pid))


def _release_lock() -> None:
    """Remove PID lockfile on exit."""
    try:
        if LOCK_FILE.exists() and LOCK_FILE.read_text().strip() == str(os.getpid()):
            LOCK_FILE.unlink()
    except OSError as e:
        log.warning("lockfile.release_failed", error=str(e))


async def main() -> None:
    _acquire_lock()

    lab = StrategyLab()

    # Handle SIGTERM/SIGINT for graceful shutdown
    loop = asyncio.get_running_loop()

    _stop_task = None

    def signal_handler():
        nonlocal _stop_task
        if _stop_task is None:
            _stop_task = asyncio.create_task(lab.stop())

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await lab.start()
    except KeyboardInterrupt:
        pass
    finally:
        if lab._running:
            await lab.stop()
        _release_lock()


def run() -> None:
    """Entry point for pyproject.toml script."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
