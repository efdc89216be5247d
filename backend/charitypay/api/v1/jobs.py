"""
Background job status and manual triggers.
"""
from fastapi import APIRouter, Depends, HTTPException, status

from charitypay.api.deps import get_scheduler
from charitypay.schemas.jobs import JobExecutionResponse, JobStatsResponse
from charitypay.services.scheduler import BackgroundScheduler, JobAlreadyRunningError, UnknownJobError

router = APIRouter()


@router.get("", response_model=list[JobStatsResponse])
async def list_jobs(scheduler: BackgroundScheduler = Depends(get_scheduler)):
    """Execution statistics for every registered job."""
    return [
        JobStatsResponse.from_stats(scheduler.tracker.stats(name))
        for name in scheduler.jobs
    ]


@router.post("/{job_name}/run", response_model=JobExecutionResponse)
async def run_job(job_name: str, scheduler: BackgroundScheduler = Depends(get_scheduler)):
    """Run a job once, now."""
    try:
        execution = await scheduler.run_job(job_name)
    except UnknownJobError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown job '{job_name}'"
        )
    except JobAlreadyRunningError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e)
        )
    return JobExecutionResponse.from_execution(execution)
