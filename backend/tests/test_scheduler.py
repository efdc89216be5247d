"""
Tests for the background scheduler and job tracker.
"""
import asyncio
import pytest

from charitypay.services.job_tracker import ExecutionStatus, JobResult, JobTracker
from charitypay.services.scheduler import (
    BALANCE_CLEARING_JOB,
    LOCK_RECOVERY_JOB,
    ROUND_UPS_JOB,
    SCHEDULED_DONATIONS_JOB,
    BackgroundScheduler,
    JobAlreadyRunningError,
    UnknownJobError,
    build_scheduler,
)
from tests.fakes import FakeProcessor


class TestJobTracker:
    """Test execution history and statistics."""

    def test_keeps_last_executions(self):
        tracker = JobTracker(max_executions=50)
        for i in range(60):
            execution = tracker.start("sweep")
            tracker.complete(execution, JobResult(processed=i))

        history = tracker.history("sweep")
        assert len(history) == 50
        assert history[0].result.processed == 10
        assert history[-1].result.processed == 59

    def test_stats(self):
        tracker = JobTracker()
        tracker.complete(tracker.start("sweep"), JobResult(processed=2, succeeded=2))
        tracker.fail(tracker.start("sweep"), RuntimeError("database unavailable"))
        running = tracker.start("sweep")

        stats = tracker.stats("sweep")
        assert stats.total_runs == 3
        assert stats.successful_runs == 1
        assert stats.failed_runs == 1
        assert stats.success_rate == 0.5
        assert stats.running is True
        assert stats.last_run is running
        assert stats.average_duration_seconds is not None

        failed = tracker.history("sweep")[1]
        assert failed.status == ExecutionStatus.FAILED
        assert failed.error == "database unavailable"

    def test_unknown_job_stats(self):
        stats = JobTracker().stats("never_ran")
        assert stats.total_runs == 0
        assert stats.success_rate is None
        assert stats.last_run is None

    def test_record_error(self):
        result = JobResult(processed=1)
        result.record_error("sd_1", RuntimeError("boom"))
        assert result.failed == 1
        assert result.errors == ["sd_1: boom"]


class TestBackgroundScheduler:
    """Test running registered jobs."""

    @pytest.mark.asyncio
    async def test_run_job_records_result(self):
        scheduler = BackgroundScheduler()

        async def job():
            return JobResult(processed=3, succeeded=3)

        scheduler.register("sweep", job, interval_seconds=60)
        execution = await scheduler.run_job("sweep")
        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.result.succeeded == 3

    @pytest.mark.asyncio
    async def test_failing_job_is_recorded(self):
        scheduler = BackgroundScheduler()

        async def job():
            raise RuntimeError("processor outage")

        scheduler.register("sweep", job, interval_seconds=60)
        execution = await scheduler.run_job("sweep")
        assert execution.status == ExecutionStatus.FAILED
        assert execution.error == "processor outage"

    @pytest.mark.asyncio
    async def test_job_never_overlaps_itself(self):
        scheduler = BackgroundScheduler()
        release = asyncio.Event()

        async def job():
            await release.wait()
            return JobResult()

        scheduler.register("sweep", job, interval_seconds=60)
        first = asyncio.create_task(scheduler.run_job("sweep"))
        await asyncio.sleep(0)
        with pytest.raises(JobAlreadyRunningError):
            await scheduler.run_job("sweep")
        release.set()
        assert (await first).status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unknown_job(self):
        with pytest.raises(UnknownJobError):
            await BackgroundScheduler().run_job("nope")

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        scheduler = BackgroundScheduler()
        ran = asyncio.Event()

        async def job():
            ran.set()
            return JobResult()

        scheduler.register("sweep", job, interval_seconds=3600)
        scheduler.start()
        await asyncio.wait_for(ran.wait(), timeout=1)
        await scheduler.stop()
        assert scheduler.running is False
        assert scheduler.tracker.stats("sweep").total_runs == 1

    @pytest.mark.asyncio
    async def test_build_scheduler_registers_jobs(self, session_factory):
        scheduler = build_scheduler(session_factory, FakeProcessor())
        assert set(scheduler.jobs) == {
            SCHEDULED_DONATIONS_JOB, ROUND_UPS_JOB, LOCK_RECOVERY_JOB, BALANCE_CLEARING_JOB,
        }

        execution = await scheduler.run_job(LOCK_RECOVERY_JOB)
        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.result.processed == 0

        execution = await scheduler.run_job(BALANCE_CLEARING_JOB)
        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.result.processed == 0
