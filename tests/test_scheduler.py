import asyncio
import logging
from datetime import datetime, timedelta, timezone

import pytest

from app.scheduling.scheduler import JobScheduler, Schedule

HOURLY = Schedule.cron("0 * * * *")


async def wait_for(event: asyncio.Event) -> None:
    await asyncio.wait_for(event.wait(), timeout=2)


class TestScheduleJob:
    @pytest.mark.asyncio
    async def test_second_request_while_pending_is_ignored(self):
        scheduler = JobScheduler()
        scheduler.start()
        started, release = asyncio.Event(), asyncio.Event()

        async def slow():
            started.set()
            await release.wait()

        async def other():
            return None

        first = scheduler.schedule_job("X", HOURLY, slow, run_immediately=True)
        await wait_for(started)

        assert scheduler.schedule_job("X", HOURLY, other) is None
        assert scheduler.get("X") is first
        assert first.running is True
        assert scheduler.next_run_time("X") is not None

        release.set()
        await scheduler.shutdown()
        assert first.running is False

    @pytest.mark.asyncio
    async def test_rescheduling_idle_job_replaces_it(self):
        scheduler = JobScheduler()

        async def noop():
            return None

        first = scheduler.schedule_job("X", HOURLY, noop)
        second = scheduler.schedule_job("X", Schedule.every(5), noop)

        assert second is not None and second is not first
        assert scheduler.get("X") is second
        assert first.active is False
        await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_bounded_schedule_already_ended_is_not_armed(self):
        scheduler = JobScheduler()

        async def noop():
            return None

        ended = datetime.now(timezone.utc) - timedelta(minutes=1)
        assert scheduler.schedule_job("late", Schedule.every(5, end=ended), noop) is None
        assert scheduler.get("late") is None
        await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_failed_invocation_keeps_schedule(self, caplog):
        scheduler = JobScheduler()
        scheduler.start()
        called = asyncio.Event()

        async def broken():
            called.set()
            raise RuntimeError("upstream down")

        with caplog.at_level(logging.INFO, logger="app.scheduling.scheduler"):
            scheduler.schedule_job("X", HOURLY, broken, run_immediately=True)
            await wait_for(called)
            await asyncio.sleep(0)

        assert 'Error running first invocation of job "X"' in caplog.text
        assert scheduler.get("X") is not None
        assert scheduler.next_run_time("X") is not None
        await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_success_is_logged(self, caplog):
        scheduler = JobScheduler()
        done = asyncio.Event()

        async def ok():
            done.set()

        with caplog.at_level(logging.INFO, logger="app.scheduling.scheduler"):
            scheduler.schedule_job("X", HOURLY, ok, run_immediately=True)
            await wait_for(done)
            await scheduler.shutdown()

        assert 'Job "X" scheduled' in caplog.text
        assert 'Job "X" completed successfully!' in caplog.text

    def test_cron_needs_five_fields(self):
        with pytest.raises(ValueError):
            Schedule.cron("* * *").trigger(timezone.utc)

    def test_schedule_needs_cron_or_interval(self):
        with pytest.raises(ValueError):
            Schedule().trigger(timezone.utc)


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_removes_idle_job(self):
        scheduler = JobScheduler()

        async def noop():
            return None

        scheduler.schedule_job("X", HOURLY, noop)
        assert scheduler.cancel("X") is True
        assert scheduler.get("X") is None
        assert scheduler.next_run_time("X") is None
        assert scheduler.cancel("X") is False
        await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_job_can_cancel_itself(self):
        scheduler = JobScheduler()
        scheduler.start()
        inside, release = asyncio.Event(), asyncio.Event()

        async def self_cancelling():
            scheduler.cancel("sweep")
            inside.set()
            await release.wait()

        async def noop():
            return None

        job = scheduler.schedule_job("sweep", Schedule.every(5), self_cancelling, run_immediately=True)
        await wait_for(inside)

        assert scheduler.next_run_time("sweep") is None
        assert scheduler.schedule_job("sweep", HOURLY, noop) is None
        assert scheduler.get("sweep") is job

        release.set()
        await scheduler.shutdown()
        assert scheduler.get("sweep") is None

class TestBoundedSchedule:
    @pytest.mark.asyncio
    async def test_every_tick_before_end_runs(self):
        scheduler = JobScheduler()
        scheduler.start()
        ticks = []

        async def sweep():
            ticks.append(datetime.now(timezone.utc))

        # 0.3s ticks, ending between the second and third
        end = datetime.now(timezone.utc) + timedelta(seconds=0.75)
        job = scheduler.schedule_job("sweep", Schedule.every(0.005, end=end), sweep)
        assert job is not None

        await asyncio.sleep(1.5)

        assert len(ticks) == 2
        assert all(tick < end for tick in ticks)
        assert job.armed is False
        assert job.active is True
        assert scheduler.get("sweep") is None
        await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_last_tick_still_running_keeps_job_registered(self):
        scheduler = JobScheduler()
        scheduler.start()
        started, release = asyncio.Event(), asyncio.Event()

        async def slow():
            started.set()
            await release.wait()

        async def noop():
            return None

        end = datetime.now(timezone.utc) + timedelta(seconds=0.45)
        job = scheduler.schedule_job("sweep", Schedule.every(0.005, end=end), slow)
        await wait_for(started)
        await asyncio.sleep(0.3)

        assert job.armed is False
        assert scheduler.get("sweep") is job
        assert scheduler.schedule_job("sweep", HOURLY, noop) is None

        release.set()
        await scheduler.shutdown()
        assert scheduler.get("sweep") is None



class TestShutdown:
    @pytest.mark.asyncio
    async def test_shutdown_waits_for_in_flight_jobs(self):
        scheduler = JobScheduler()
        scheduler.start()
        started = asyncio.Event()
        finished = []

        async def slow():
            started.set()
            await asyncio.sleep(0.05)
            finished.append(True)

        scheduler.schedule_job("X", HOURLY, slow, run_immediately=True)
        await wait_for(started)
        await scheduler.shutdown()

        assert finished == [True]

    @pytest.mark.asyncio
    async def test_no_new_jobs_after_shutdown(self):
        scheduler = JobScheduler()
        await scheduler.shutdown()

        async def noop():
            return None

        assert scheduler.schedule_job("X", HOURLY, noop) is None
