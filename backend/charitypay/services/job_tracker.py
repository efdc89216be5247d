"""
In-memory history of background job executions.
"""
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Deque, Dict, List, Optional

from charitypay.models.base import utcnow

logger = logging.getLogger(__name__)

MAX_EXECUTIONS_PER_JOB = 50


@dataclass
class JobResult:
    """Counts returned by one run of a batch job."""
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)

    def record_error(self, reference: str, error: BaseException) -> None:
        self.failed += 1
        self.errors.append(f"{reference}: {error}")


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class JobExecution:
    job_name: str
    started_at: datetime
    status: ExecutionStatus = ExecutionStatus.RUNNING
    finished_at: Optional[datetime] = None
    result: Optional[JobResult] = None
    error: Optional[str] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()


@dataclass
class JobStats:
    job_name: str
    total_runs: int
    successful_runs: int
    failed_runs: int
    running: bool
    last_run: Optional[JobExecution]
    average_duration_seconds: Optional[float]

    @property
    def success_rate(self) -> Optional[float]:
        finished = self.successful_runs + self.failed_runs
        return self.successful_runs / finished if finished else None


class JobTracker:
    """Keeps the last MAX_EXECUTIONS_PER_JOB executions per job name."""

    def __init__(self, max_executions: int = MAX_EXECUTIONS_PER_JOB):
        self.max_executions = max_executions
        self._executions: Dict[str, Deque[JobExecution]] = {}

    def start(self, job_name: str) -> JobExecution:
        execution = JobExecution(job_name=job_name, started_at=utcnow())
        history = self._executions.setdefault(job_name, deque(maxlen=self.max_executions))
        history.append(execution)
        logger.info(f"Job '{job_name}' started")
        return execution

    def complete(self, execution: JobExecution, result: Optional[JobResult]) -> None:
        execution.status = ExecutionStatus.COMPLETED
        execution.finished_at = utcnow()
        execution.result = result
        if result is not None:
            logger.info(
                f"Job '{execution.job_name}' finished in {execution.duration_seconds:.2f}s: "
                f"{result.processed} processed, {result.succeeded} succeeded, "
                f"{result.failed} failed, {result.skipped} skipped"
            )

    def fail(self, execution: JobExecution, error: BaseException) -> None:
        execution.status = ExecutionStatus.FAILED
        execution.finished_at = utcnow()
        execution.error = str(error) or error.__class__.__name__
        logger.error(f"Job '{execution.job_name}' failed: {execution.error}")

    def is_running(self, job_name: str) -> bool:
        history = self._executions.get(job_name)
        return bool(history) and history[-1].status == ExecutionStatus.RUNNING

    def history(self, job_name: str) -> List[JobExecution]:
        return list(self._executions.get(job_name, ()))

    def stats(self, job_name: str) -> JobStats:
        history = self.history(job_name)
        finished = [e for e in history if e.duration_seconds is not None]
        return JobStats(
            job_name=job_name,
            total_runs=len(history),
            successful_runs=sum(1 for e in history if e.status == ExecutionStatus.COMPLETED),
            failed_runs=sum(1 for e in history if e.status == ExecutionStatus.FAILED),
            running=self.is_running(job_name),
            last_run=history[-1] if history else None,
            average_duration_seconds=(
                sum(e.duration_seconds for e in finished) / len(finished) if finished else None
            ),
        )

    def job_names(self) -> List[str]:
        return list(self._executions)
