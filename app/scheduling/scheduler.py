from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable
from zoneinfo import ZoneInfo

from apscheduler.events import EVENT_JOB_REMOVED, JobEvent
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)

JobCallback = Callable[[], Awaitable[Any]]


@dataclass(frozen=True)
class Schedule:
    """Either a cron expression or a fixed interval, optionally ending at ``end``."""

    cron_expr: str | None = None
    minutes: float | None = None
    end: datetime | None = None

    @classmethod
    def cron(cls, expr: str, end: datetime | None = None) -> Schedule:
        return cls(cron_expr=expr, end=end)

    @classmethod
    def every(cls, minutes: float, end: datetime | None = None) -> Schedule:
        return cls(minutes=minutes, end=end)

    def trigger(self, timezone: ZoneInfo) -> BaseTrigger:
        if self.cron_expr:
            fields = self.cron_expr.split()
            if len(fields) != 5:
                raise ValueError(f"Expected 5 cron fields, got {self.cron_expr!r}")
            minute, hour, day, month, day_of_week = fields
            return CronTrigger(
                minute=minute,
                hour=hour,
                day=day,
                month=month,
                day_of_week=day_of_week,
                end_date=self.end,
                timezone=timezone,
            )
        if self.minutes:
            return IntervalTrigger(minutes=self.minutes, end_date=self.end, timezone=timezone)
        raise ValueError("Schedule needs a cron expression or an interval")


@dataclass(eq=False)
class Job:
    name: str
    schedule: Schedule
    callback: JobCallback = field(repr=False)
    running: bool = False
    active: bool = True
    # false once the trigger has no further fire times
    armed: bool = True


class JobScheduler:
    """Named jobs on an APScheduler event loop scheduler.

    A name maps to at most one job; an invocation of a job never overlaps
    with another invocation of the same job.
    """

    def __init__(self, timezone: str = "UTC") -> None:
        self.timezone = ZoneInfo(timezone)
        self._loop = asyncio.get_running_loop()
        self._scheduler = AsyncIOScheduler(timezone=self.timezone, event_loop=self._loop)
        self._scheduler.add_listener(self._on_removed, EVENT_JOB_REMOVED)
        self._jobs: dict[str, Job] = {}
        self._in_flight: set[asyncio.Task] = set()
        self._accepting = True

    def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()

    def get(self, name: str) -> Job | None:
        return self._jobs.get(name)

    def jobs(self) -> list[Job]:
        return list(self._jobs.values())

    def next_run_time(self, name: str) -> datetime | None:
        job = self._scheduler.get_job(name)
        if job is None:
            return None
        next_run = getattr(job, "next_run_time", None)
        if next_run is None:
            next_run = job.trigger.get_next_fire_time(None, datetime.now(self.timezone))
        return next_run

    def schedule_job(
        self,
        name: str,
        schedule: Schedule,
        callback: JobCallback,
        run_immediately: bool = False,
    ) -> Job | None:
        if not self._accepting:
            logger.warning('Scheduler is shutting down; not scheduling "%s"', name)
            return None

        existing = self._jobs.get(name)
        if existing is not None and existing.running:
            logger.warning('Job "%s" already has an invocation in flight; ignoring schedule request', name)
            return None
        if existing is not None:
            self.cancel(name)

        trigger = schedule.trigger(self.timezone)
        first_run = trigger.get_next_fire_time(None, datetime.now(self.timezone))
        job = Job(name=name, schedule=schedule, callback=callback)
        self._jobs[name] = job

        if first_run is None:
            job.armed = False
            logger.info('Job "%s" has no future runs; not scheduling it', name)
        else:
            self._scheduler.add_job(
                self._fire,
                trigger,
                args=[name],
                id=name,
                name=name,
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
            logger.info('Job "%s" scheduled. Next run at %s', name, first_run.isoformat())

        if run_immediately:
            logger.info('Invoking job "%s" immediately...', name)
            self._spawn(job, immediate=True)
        elif not job.armed:
            self._jobs.pop(name, None)
            return None
        return job

    def cancel(self, name: str) -> bool:
        job = self._jobs.get(name)
        if job is None:
            return False
        job.active = False
        try:
            self._scheduler.remove_job(name)
        except JobLookupError:
            pass
        if not job.running:
            self._jobs.pop(name, None)
        logger.info('Job "%s" cancelled', name)
        return True

    async def _fire(self, name: str) -> None:
        job = self._jobs.get(name)
        if job is None or not job.active:
            return
        if job.running:
            logger.warning('Job "%s" is still running; skipping this tick', name)
            return
        self._spawn(job)

    def _spawn(self, job: Job, immediate: bool = False) -> None:
        if not self._accepting:
            return
        job.running = True
        task = asyncio.get_running_loop().create_task(self._invoke(job, immediate))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def _invoke(self, job: Job, immediate: bool) -> None:
        label = "first invocation of " if immediate else ""
        try:
            await job.callback()
        except Exception:
            logger.exception('Error running %sjob "%s"', label, job.name)
        else:
            logger.info('Job "%s" completed successfully!', job.name)
        finally:
            job.running = False
            if not (job.active and job.armed):
                self._release(job)
            elif not immediate:
                next_run = self.next_run_time(job.name)
                if next_run is not None:
                    logger.info('Next "%s" run scheduled for %s', job.name, next_run.isoformat())

    def _release(self, job: Job) -> None:
        if not job.running and self._jobs.get(job.name) is job:
            self._jobs.pop(job.name)

    def _on_removed(self, event: JobEvent) -> None:
        job = self._jobs.get(event.job_id)
        if job is None or not job.active:
            return
        # APScheduler drops an exhausted job right after submitting its last
        # tick, so the entry must outlive that tick's _fire call.
        logger.info('Job "%s" has no further runs', event.job_id)
        job.armed = False
        self._loop.call_soon(self._release, job)

    async def shutdown(self) -> None:
        """Stop new invocations and wait for the ones already running."""
        self._accepting = False
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        if self._in_flight:
            logger.info("Waiting for %s running job(s) to finish...", len(self._in_flight))
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)
        logger.info("Scheduler stopped")
