from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, Protocol, Sequence
from zoneinfo import ZoneInfo

from app.attendance.matching import ExternalIdMatcher, MemberMatcher
from app.attendance.models import (
    AbsentSet,
    AttendanceStatus,
    AttendanceWindow,
    MarkResult,
    Member,
    ScanEvent,
)

logger = logging.getLogger(__name__)


class Roster(Protocol):
    async def get_eligible_roster(self) -> list[Member]: ...

    async def mark_members(self, status: AttendanceStatus, members: Sequence[Member]) -> MarkResult: ...


class AccessLog(Protocol):
    async def get_scan_events(self, start: datetime, end: datetime) -> list[ScanEvent]: ...


@dataclass
class WindowResult:
    day: date
    total: int
    present: int
    absent: AbsentSet
    school_day: bool
    mark_result: MarkResult | None = None


@dataclass
class SweepResult:
    promoted: list[Member] = field(default_factory=list)
    remaining: int = 0
    finished: bool = False
    mark_result: MarkResult | None = None


class ReconciliationEngine:
    """Computes who was seen at a door and drives the Absent / Late Arrival writes."""

    def __init__(
        self,
        roster: Roster,
        access_log: AccessLog,
        window: AttendanceWindow,
        threshold: int,
        *,
        matcher: MemberMatcher | None = None,
        timezone: str = "UTC",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.roster = roster
        self.access_log = access_log
        self.window = window
        self.threshold = threshold
        self.matcher = matcher or ExternalIdMatcher()
        tz = ZoneInfo(timezone)
        self.clock = clock or (lambda: datetime.now(tz))

    def _actors(self, events: Sequence[ScanEvent]) -> set[str]:
        return {self.matcher.scan_key(event) for event in events}

    async def evaluate_window(self, day: date | None = None) -> WindowResult:
        day = day or self.clock().date()
        start, end, _ = self.window.on(day)

        logger.info("Fetching students from SchoolPass...")
        members = await self.roster.get_eligible_roster()
        by_key: dict[str, Member] = {}
        for member in members:
            by_key[self.matcher.member_key(member)] = member
        logger.info("Found %s eligible students", len(by_key))

        logger.info("Querying door logs between %s and %s...", start.isoformat(), end.isoformat())
        events = await self.access_log.get_scan_events(start, end)
        actors = self._actors(events)
        logger.info("Found %s door access events from %s unique actors", len(events), len(actors))

        absent = AbsentSet(by_key)
        for member in absent.pop_matching(actors):
            logger.debug('Marking "%s" as present', member.display_name)

        total = len(by_key)
        present = total - len(absent)
        logger.info("Attendance report: present=%s absent=%s", present, len(absent))

        if present < self.threshold:
            logger.warning(
                "Attendance threshold of %s not met (present=%s). Not a school day; no further action will be taken",
                self.threshold,
                present,
            )
            return WindowResult(day=day, total=total, present=present, absent=absent, school_day=False)

        logger.info("Attendance threshold of %s met! Marking students as absent...", self.threshold)
        result = await self.roster.mark_members(AttendanceStatus.ABSENT, absent.members())
        self._log_marks(result, AttendanceStatus.ABSENT)
        return WindowResult(
            day=day,
            total=total,
            present=present,
            absent=absent,
            school_day=True,
            mark_result=result,
        )

    async def sweep_late_arrivals(
        self,
        absent: AbsentSet,
        day: date,
        now: datetime | None = None,
    ) -> SweepResult:
        now = now or self.clock()
        _, end, dismissal = self.window.on(day)
        logger.info("Received %s students still marked as absent", len(absent))

        sweep = SweepResult()
        if len(absent):
            events = await self.access_log.get_scan_events(end, now)
            actors = self._actors(events)
            logger.info("Found %s door access events from %s unique actors", len(events), len(actors))

            sweep.promoted = absent.pop_matching(actors)
            if sweep.promoted:
                for member in sweep.promoted:
                    logger.debug('Marking "%s" as late arrival', member.display_name)
                sweep.mark_result = await self.roster.mark_members(AttendanceStatus.LATE_ARRIVAL, sweep.promoted)
                self._log_marks(sweep.mark_result, AttendanceStatus.LATE_ARRIVAL)

        sweep.remaining = len(absent)
        if not sweep.remaining:
            logger.info("All students now accounted for. Ending late arrival checks")
            sweep.finished = True
        elif now >= dismissal:
            logger.info("School dismissal reached with %s students still absent. Ending late arrival checks", sweep.remaining)
            sweep.finished = True
        return sweep

    @staticmethod
    def _log_marks(result: MarkResult, status: AttendanceStatus) -> None:
        if result.failure:
            logger.error(
                'Marked %s/%s students as "%s"; %s failed',
                result.success,
                result.total,
                status.value,
                result.failure,
            )
        else:
            logger.info('%s students marked as "%s"', result.success, status.value)
