"""
Pydantic schemas for background job endpoints.
"""
from typing import Optional
from datetime import datetime
from pydantic import BaseModel

from charitypay.services.job_tracker import JobExecution, JobStats


class JobExecutionResponse(BaseModel):
    job_name: str
    status: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = []
    error: Optional[str] = None

    @classmethod
    def from_execution(cls, execution: JobExecution) -> "JobExecutionResponse":
        result = execution.result
        return cls(
            job_name=execution.job_name,
            status=execution.status.value,
            started_at=execution.started_at,
            finished_at=execution.finished_at,
            duration_seconds=execution.duration_seconds,
            processed=result.processed if result else 0,
            succeeded=result.succeeded if result else 0,
            failed=result.failed if result else 0,
            skipped=result.skipped if result else 0,
            errors=list(result.errors) if result else [],
            error=execution.error,
        )


class JobStatsResponse(BaseModel):
    job_name: str
    total_runs: int
    successful_runs: int
    failed_runs: int
    success_rate: Optional[float] = None
    running: bool
    average_duration_seconds: Optional[float] = None
    last_run: Optional[JobExecutionResponse] = None

    @classmethod
    def from_stats(cls, stats: JobStats) -> "JobStatsResponse":
        return cls(
            job_name=stats.job_name,
            total_runs=stats.total_runs,
            successful_runs=stats.successful_runs,
            failed_runs=stats.failed_runs,
            success_rate=stats.success_rate,
            running=stats.running,
            average_duration_seconds=stats.average_duration_seconds,
            last_run=JobExecutionResponse.from_execution(stats.last_run) if stats.last_run else None,
        )
