"""Timeout Scheduler - Background sweeps that keep durable runs moving

Handles:
- Approval / signal / timer / dispatch deadlines
- Scheduled runs whose start time arrived
- Run time ceilings (max_time_hours)
- Re-dispatch of executing steps left without a live worker (crash recovery)
- Re-advance of runs whose last run update was lost (reconciliation)

Sweeps are safe to run on several servers at once: every step and run change
they make is a compare-and-set, so a lost race is simply skipped.
"""
import asyncio
import os
import socket
from typing import Callable, Dict, Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..config.settings import settings
from ..services.scenario_run_service import ScenarioRunService, get_run_service
from ..utils.logger import get_logger, set_correlation_id
from ..utils.idgen import generate_correlation_id, generate_id
from ..utils.time import utc_now

logger = get_logger(__name__)


class TimeoutScheduler:
    """
    Scheduler using APScheduler interval jobs

    Each job runs the blocking sweep in a worker thread so the event loop
    keeps serving requests.
    """

    def __init__(self, service: Optional[ScenarioRunService] = None):
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._service = service
        self._is_running = False
        self._server_id = self._generate_server_id()
        self._sweep_counts: Dict[str, int] = {}

    def _generate_server_id(self) -> str:
        """Generate unique server identifier for log correlation"""
        hostname = socket.gethostname()
        pid = os.getpid()
        unique = generate_id()[:8]
        return f"{hostname}-{pid}-{unique}"

    @property
    def service(self) -> ScenarioRunService:
        if self._service is None:
            self._service = get_run_service()
        return self._service

    def start(self) -> None:
        """Start the scheduler"""
        if self._is_running:
            logger.warning("Scheduler already running")
            return

        self.scheduler = AsyncIOScheduler()
        interval = settings.scheduler_interval_seconds

        self.scheduler.add_job(
            self._process_timeouts,
            trigger=IntervalTrigger(seconds=interval),
            id="process_timeouts",
            name="Expire approval, signal and dispatch deadlines",
            replace_existing=True
        )

        self.scheduler.add_job(
            self._start_due_runs,
            trigger=IntervalTrigger(seconds=interval),
            id="start_due_runs",
            name="Start scheduled runs",
            replace_existing=True
        )

        # Time ceilings are coarse (hours); once a minute is enough
        self.scheduler.add_job(
            self._enforce_time_ceilings,
            trigger=IntervalTrigger(seconds=60),
            id="enforce_time_ceilings",
            name="Fail runs past their time ceiling",
            replace_existing=True
        )

        self.scheduler.add_job(
            self._recover_stalled_dispatches,
            trigger=IntervalTrigger(minutes=5),
            id="recover_stalled_dispatches",
            name="Re-dispatch stalled executing steps",
            replace_existing=True
        )

        self.scheduler.add_job(
            self._reconcile_runs,
            trigger=IntervalTrigger(seconds=60),
            id="reconcile_runs",
            name="Re-advance runs left without progress",
            replace_existing=True
        )

        self.scheduler.start()
        self._is_running = True
        logger.info(
            "Scheduler started",
            extra={
                "server_id": self._server_id,
                "interval_seconds": interval,
                "stalled_dispatch_minutes": settings.stalled_dispatch_minutes
            }
        )

    def stop(self) -> None:
        """Stop the scheduler"""
        if self.scheduler:
            self.scheduler.shutdown()
            self._is_running = False
            logger.info("Timeout scheduler stopped")

    @property
    def is_running(self) -> bool:
        """Check if scheduler is running"""
        return self._is_running

    async def _run_sweep(self, name: str, sweep: Callable[[], int]) -> int:
        """Run one sweep off the event loop; errors are logged, never raised"""
        set_correlation_id(generate_correlation_id())
        start_time = utc_now()
        try:
            count = await asyncio.to_thread(sweep)
        except Exception as e:
            logger.error(
                f"Error in {name} job: {e}",
                extra={"error_type": type(e).__name__, "error": str(e), "server_id": self._server_id},
                exc_info=True
            )
            return 0

        if count:
            self._sweep_counts[name] = self._sweep_counts.get(name, 0) + count
            duration_ms = (utc_now() - start_time).total_seconds() * 1000
            logger.info(
                f"{name}: {count} item(s) handled",
                extra={
                    "count": count,
                    "duration_ms": round(duration_ms, 2),
                    "server_id": self._server_id,
                    "total": self._sweep_counts[name]
                }
            )
        return count

    async def _process_timeouts(self) -> int:
        return await self._run_sweep("process_timeouts", self.service.orchestrator.process_timeouts)

    async def _start_due_runs(self) -> int:
        return await self._run_sweep("start_due_runs", self.service.orchestrator.start_due_runs)

    async def _enforce_time_ceilings(self) -> int:
        return await self._run_sweep("enforce_time_ceilings", self.service.orchestrator.enforce_time_ceilings)

    async def _recover_stalled_dispatches(self) -> int:
        return await self._run_sweep(
            "recover_stalled_dispatches", self.service.orchestrator.recover_stalled_dispatches
        )

    async def _reconcile_runs(self) -> int:
        return await self._run_sweep("reconcile_runs", self.service.orchestrator.reconcile_runs)


# Global scheduler instance
_scheduler: Optional[TimeoutScheduler] = None


def get_scheduler() -> TimeoutScheduler:
    """Get or create scheduler instance"""
    global _scheduler
    if _scheduler is None:
        _scheduler = TimeoutScheduler()
    return _scheduler


def start_scheduler() -> None:
    """Start the global scheduler"""
    scheduler = get_scheduler()
    scheduler.start()


def stop_scheduler() -> None:
    """Stop the global scheduler"""
    global _scheduler
    if _scheduler:
        _scheduler.stop()
        _scheduler = None
