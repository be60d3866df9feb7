from __future__ import annotations

import asyncio
import logging
import signal
from datetime import date
from functools import partial

from app.attendance.engine import ReconciliationEngine
from app.attendance.matching import get_matcher
from app.attendance.models import AbsentSet, AttendanceWindow
from app.common.errors import ApiError
from app.config import ConfigError, Settings, ensure_directories, load_settings
from app.scheduling.scheduler import JobScheduler, Schedule
from app.schoolpass.client import SchoolPassClient
from app.schoolpass.service import RosterGateway
from app.unifi.client import UnifiAccessClient
from app.unifi.service import AccessLogGateway

logger = logging.getLogger("attendance")

ATTENDANCE_JOB = "Automated Attendance"
LATE_ARRIVALS_JOB = "Late Arrivals Handler"


def configure_logging(level: str = "INFO") -> None:
    ensure_directories()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
        handlers=[
            logging.FileHandler("logs/app.log", encoding="utf-8"),
            logging.StreamHandler(),
        ],
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)


class AttendanceAutomation:
    def __init__(
        self,
        settings: Settings,
        scheduler: JobScheduler,
        roster: RosterGateway,
        access_log: AccessLogGateway,
        engine: ReconciliationEngine,
    ) -> None:
        self.settings = settings
        self.scheduler = scheduler
        self.roster = roster
        self.access_log = access_log
        self.engine = engine

    def start(self) -> None:
        self.scheduler.schedule_job(
            ATTENDANCE_JOB,
            Schedule.cron(self.settings.attendance_schedule),
            self.run_attendance,
            run_immediately=self.settings.run_immediately,
        )
        self.scheduler.start()

    async def run_attendance(self) -> None:
        await self.roster.authenticate(self.settings.schoolpass_username, self.settings.schoolpass_password)

        result = await self.engine.evaluate_window()
        if not result.school_day:
            return
        if not len(result.absent):
            logger.info("Every eligible student was seen at a door. No late arrival checks needed")
            return

        _, _, dismissal = self.engine.window.on(result.day)
        self.scheduler.schedule_job(
            LATE_ARRIVALS_JOB,
            Schedule.every(self.settings.update_interval, end=dismissal),
            partial(self.handle_late_arrivals, result.absent, result.day),
        )

    async def handle_late_arrivals(self, absent: AbsentSet, day: date) -> None:
        sweep = await self.engine.sweep_late_arrivals(absent, day)
        if sweep.finished:
            logger.info("Canceling future late arrival checks...")
            self.scheduler.cancel(LATE_ARRIVALS_JOB)

    async def shutdown(self) -> None:
        await self.scheduler.shutdown()
        await self.roster.client.close()
        await self.access_log.client.close()


def build_automation(settings: Settings) -> AttendanceAutomation:
    """Wire clients, gateways and the engine. Must be called inside a running event loop."""
    schoolpass = SchoolPassClient(
        timeout=settings.request_timeout,
        max_concurrency=settings.max_concurrent_requests,
    )
    roster = RosterGateway(
        schoolpass,
        dismissal_location_pattern=settings.dismissal_location_pattern,
        dry_run=settings.dry_run,
        restore_change_types=settings.restore_change_types,
        timezone=settings.timezone,
    )
    access_log = AccessLogGateway(
        UnifiAccessClient(
            settings.unifi_server,
            settings.unifi_token,
            verify=settings.unifi_verify_tls,
            timeout=settings.request_timeout,
            max_concurrency=settings.max_concurrent_requests,
        )
    )
    engine = ReconciliationEngine(
        roster,
        access_log,
        AttendanceWindow(settings.attendance_start, settings.attendance_end, settings.school_dismissal),
        settings.threshold,
        matcher=get_matcher(settings.match_strategy),
        timezone=settings.timezone,
    )
    return AttendanceAutomation(settings, JobScheduler(settings.timezone), roster, access_log, engine)


async def serve(settings: Settings) -> None:
    automation = build_automation(settings)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    if settings.dry_run:
        logger.warning("DRY RUN enabled. No attendance will be written to SchoolPass")
    automation.start()
    try:
        await stop.wait()
        logger.info("Shutdown signal received. Draining scheduled jobs...")
    finally:
        await automation.shutdown()


def main() -> None:
    settings = load_settings()
    configure_logging(settings.log_level)
    asyncio.run(serve(settings))


if __name__ == "__main__":
    try:
        main()
    except (ConfigError, ApiError) as exc:
        logger.error("Attendance automation failed: %s", exc)
        raise
