"""Automatic periodic probing of all machines."""

from datetime import datetime
from typing import Any, Dict, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from machine_monitor.monitor import MachineMonitor


logger = structlog.get_logger(__name__)

PROBE_ALL_JOB_ID = "probe_all_machines"
MIN_INTERVAL_SECONDS = 5


class MonitorScheduler:
    """Runs MachineMonitor.probe_all on an interval using APScheduler."""

    def __init__(self, monitor: MachineMonitor, interval_seconds: int = 30):
        self.monitor = monitor
        self.interval_seconds = max(MIN_INTERVAL_SECONDS, int(interval_seconds))
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.last_run_at: Optional[datetime] = None
        self.last_result_count: Optional[int] = None

    @property
    def running(self) -> bool:
        return self.scheduler is not None and self.scheduler.running

    async def _run_cycle(self):
        """One scheduled probe-all cycle. Errors are logged so the job keeps firing."""
        try:
            results = await self.monitor.probe_all()
        except Exception:
            logger.exception("Scheduled probe cycle failed")
            return
        self.last_run_at = datetime.now()
        self.last_result_count = len(results)

    async def start(self):
        """Start periodic monitoring. Must be called from a running event loop."""
        if self.running:
            logger.warning("Monitoring scheduler already running")
            return

        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(
            func=self._run_cycle,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=PROBE_ALL_JOB_ID,
            name="Probe all machines",
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        logger.info("Monitoring scheduler started", interval_seconds=self.interval_seconds)

    async def stop(self):
        """Stop periodic monitoring."""
        if not self.running:
            return
        self.scheduler.shutdown(wait=False)
        self.scheduler = None
        logger.info("Monitoring scheduler stopped")

    def set_interval(self, seconds: int):
        """Change the interval, rescheduling the job if monitoring is running."""
        seconds = int(seconds)
        if seconds < MIN_INTERVAL_SECONDS:
            raise ValueError(f"interval must be at least {MIN_INTERVAL_SECONDS} seconds")
        self.interval_seconds = seconds
        if self.running:
            self.scheduler.reschedule_job(PROBE_ALL_JOB_ID, trigger=IntervalTrigger(seconds=seconds))
            logger.info("Monitoring interval changed", interval_seconds=seconds)

    def status(self) -> Dict[str, Any]:
        next_run_at = None
        if self.running:
            job = self.scheduler.get_job(PROBE_ALL_JOB_ID)
            if job is not None and job.next_run_time is not None:
                next_run_at = job.next_run_time.isoformat()
        return {
            "running": self.running,
            "intervalSeconds": self.interval_seconds,
            "nextRunAt": next_run_at,
            "lastRunAt": self.last_run_at.isoformat() if self.last_run_at else None,
            "lastResultCount": self.last_result_count,
        }
