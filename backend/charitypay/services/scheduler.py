"""
Background job scheduler.

Runs each registered job on its own fixed interval inside the application's
event loop. A job never overlaps with itself; executions are recorded in a
JobTracker.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from charitypay.core.config import settings
from charitypay.services.job_tracker import JobExecution, JobResult, JobTracker
from charitypay.services.ledger import clear_pending_balances
from charitypay.services.processor import PaymentProcessor
from charitypay.services.round_ups import process_due_round_ups
from charitypay.services.scheduled_donations import recover_stale_locks, run_due_scheduled_donations

logger = logging.getLogger(__name__)

JobFunc = Callable[[], Awaitable[Optional[JobResult]]]

SCHEDULED_DONATIONS_JOB = "scheduled_donations"
ROUND_UPS_JOB = "round_ups"
LOCK_RECOVERY_JOB = "lock_recovery"
BALANCE_CLEARING_JOB = "balance_clearing"


class UnknownJobError(KeyError):
    pass


class JobAlreadyRunningError(RuntimeError):
    pass


@dataclass
class Job:
    name: str
    func: JobFunc
    interval_seconds: float


class BackgroundScheduler:
    """Interval scheduler for the donation background jobs."""

    def __init__(self, tracker: Optional[JobTracker] = None):
        self.tracker = tracker or JobTracker()
        self.jobs: Dict[str, Job] = {}
        self.running = False
        self._tasks: List[asyncio.Task] = []
        self._locks: Dict[str, asyncio.Lock] = {}

    def register(self, name: str, func: JobFunc, interval_seconds: float) -> None:
        self.jobs[name] = Job(name=name, func=func, interval_seconds=interval_seconds)
        self._locks[name] = asyncio.Lock()

    async def run_job(self, name: str) -> JobExecution:
        """Run a job once now. Raises JobAlreadyRunningError if it is mid-run."""
        job = self.jobs.get(name)
        if job is None:
            raise UnknownJobError(name)
        lock = self._locks[name]
        if lock.locked():
            raise JobAlreadyRunningError(f"Job '{name}' is already running")

        async with lock:
            execution = self.tracker.start(name)
            try:
                result = await job.func()
            except Exception as exc:
                logger.exception(f"Job '{name}' raised")
                self.tracker.fail(execution, exc)
            else:
                self.tracker.complete(execution, result)
            return execution

    async def _job_loop(self, job: Job) -> None:
        while self.running:
            try:
                await self.run_job(job.name)
            except JobAlreadyRunningError:
                logger.debug(f"Job '{job.name}' still running; skipping this tick")
            await asyncio.sleep(job.interval_seconds)

    def start(self) -> None:
        if self.running:
            logger.warning("Background scheduler is already running.")
            return
        self.running = True
        self._tasks = [
            asyncio.create_task(self._job_loop(job), name=f"job:{job.name}")
            for job in self.jobs.values()
        ]
        logger.info(f"Background scheduler started with jobs: {', '.join(self.jobs)}")

    async def stop(self) -> None:
        if not self.running:
            return
        self.running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Background scheduler stopped.")


def build_scheduler(
    session_factory: async_sessionmaker,
    processor: PaymentProcessor,
    tracker: Optional[JobTracker] = None,
) -> BackgroundScheduler:
    """Scheduler with the recurring, round-up, lock recovery and balance clearing jobs registered."""
    scheduler = BackgroundScheduler(tracker)
    scheduler.register(
        SCHEDULED_DONATIONS_JOB,
        lambda: run_due_scheduled_donations(session_factory, processor),
        settings.SCHEDULED_DONATIONS_INTERVAL_SECONDS,
    )
    scheduler.register(
        ROUND_UPS_JOB,
        lambda: process_due_round_ups(session_factory, processor),
        settings.ROUND_UP_INTERVAL_SECONDS,
    )
    scheduler.register(
        LOCK_RECOVERY_JOB,
        lambda: recover_stale_locks(session_factory, processor=processor),
        settings.LOCK_SWEEP_INTERVAL_SECONDS,
    )
    scheduler.register(
        BALANCE_CLEARING_JOB,
        lambda: clear_pending_balances(session_factory),
        settings.BALANCE_CLEARING_INTERVAL_SECONDS,
    )
    return scheduler
