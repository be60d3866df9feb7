from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Iterable
from zoneinfo import ZoneInfo

from app.attendance.models import AttendanceStatus, MarkResult, Member
from app.common.cache import MemoryCache
from app.schoolpass.client import SchoolPassClient

logger = logging.getLogger(__name__)

BUS_CHANGE_TYPE = "Bus"
# SchoolPass user type used when staff create dismissal changes
STAFF_USER_TYPE = 4


@dataclass(frozen=True)
class CachedChange:
    change: dict[str, Any]
    series: dict[str, Any] | None


def normalize_member(row: dict[str, Any], profile: dict[str, Any]) -> Member:
    student_id = int(row["studentId"])
    first_name = str(row.get("firstName") or profile.get("firstName") or "").strip()
    last_name = str(row.get("lastName") or profile.get("lastName") or "").strip()
    external_id = profile.get("externalId") or row.get("externalId") or student_id
    return Member(
        id=str(external_id).strip(),
        student_id=student_id,
        display_name=" ".join(part for part in (first_name, last_name) if part) or f"Student {student_id}",
        current_status=row.get("attendanceStatus"),
        first_name=first_name,
        last_name=last_name,
        profile=profile,
    )


class RosterGateway:
    def __init__(
        self,
        client: SchoolPassClient,
        *,
        dismissal_location_pattern: str = "",
        dry_run: bool = False,
        restore_change_types: Iterable[str] = (BUS_CHANGE_TYPE,),
        profile_cache: MemoryCache[int, dict[str, Any]] | None = None,
        change_cache: MemoryCache[int, CachedChange] | None = None,
        timezone: str = "UTC",
        today: Callable[[], date] | None = None,
    ) -> None:
        self.client = client
        self.pattern = re.compile(dismissal_location_pattern)
        self.dry_run = dry_run
        self.restore_change_types = frozenset(restore_change_types)
        self.profile_cache = profile_cache if profile_cache is not None else MemoryCache()
        self.change_cache = change_cache if change_cache is not None else MemoryCache()
        tz = ZoneInfo(timezone)
        self._today = today or (lambda: datetime.now(tz).date())

    async def authenticate(self, username: str, password: str) -> None:
        await self.client.authenticate(username, password)

    async def get_groupings(self, matching_only: bool = True) -> list[dict[str, Any]]:
        classrooms = await self.client.get_attendance_classrooms()
        if not matching_only:
            return classrooms
        return [c for c in classrooms if self.pattern.search(str(c.get("dismissalLocationName") or ""))]

    async def get_eligible_roster(self) -> list[Member]:
        classrooms = await self.get_groupings()
        batches = await asyncio.gather(*(self._fetch_classroom(c) for c in classrooms))

        roster: dict[str, Member] = {}
        for batch in batches:
            for member in batch:
                if member.id in roster:
                    logger.debug("Student %s (%s) listed in more than one classroom", member.display_name, member.id)
                roster[member.id] = member
        return list(roster.values())

    async def _fetch_classroom(self, classroom: dict[str, Any]) -> list[Member]:
        logger.info('Fetching students from "%s" classroom', classroom.get("dismissalLocationName"))
        rows = await self.client.get_student_attendance(
            int(classroom["dismissalLocationId"]),
            str(classroom.get("date") or self._today().isoformat()),
        )
        members = []
        for row in rows:
            if row.get("studentId") is None:
                continue
            profile = await self._profile(int(row["studentId"]))
            members.append(normalize_member(row, profile))
        return members

    async def _profile(self, student_id: int) -> dict[str, Any]:
        cached = self.profile_cache.get(student_id)
        if cached is not None:
            return cached
        profile = await self.client.get_student_profile(student_id)
        self.profile_cache.set(student_id, profile)
        return profile

    async def mark_members(self, status: AttendanceStatus, members: Iterable[Member]) -> MarkResult:
        day = self._today()
        members = list(members)
        results = await asyncio.gather(
            *(self._mark_member(status, member, day) for member in members),
            return_exceptions=True,
        )

        info = MarkResult()
        for member, result in zip(members, results):
            if isinstance(result, BaseException):
                info.failure += 1
                logger.error(
                    'Error marking student "%s" (%s) as "%s": %s',
                    member.display_name,
                    member.id,
                    status.value,
                    result,
                )
            else:
                info.success += 1
        return info

    async def _mark_member(self, status: AttendanceStatus, member: Member, day: date) -> None:
        if member.current_status == status.value:
            logger.debug('Student "%s" already marked as "%s"', member.display_name, status.value)
            return

        if status is AttendanceStatus.ABSENT:
            await self._remember_change(member, day)

        if self.dry_run:
            logger.info('[DRY RUN] Student "%s" marked as "%s"', member.display_name, status.value)
        else:
            await self.client.set_student_attendance(status, member.student_id)
        member.current_status = status.value

        if status in (AttendanceStatus.PRESENT, AttendanceStatus.LATE_ARRIVAL):
            await self._restore_change(member, status, day)

    async def _remember_change(self, member: Member, day: date) -> None:
        try:
            calendar = await self.client.get_student_calendar(member.student_id, day, day)
            daily = calendar.get("dailyList") or []
            if not daily:
                return
            change = daily[-1]
            if change.get("isDefault") or change.get("changeSeriesId") is None:
                logger.debug(
                    'Student "%s" is on their default dismissal or has no change series. Skipping caching',
                    member.display_name,
                )
                return
            series_list = await self.client.get_student_changes(member.student_id)
        except Exception as exc:
            logger.error(
                'Unable to snapshot dismissal change for "%s" (%s); it will not be restored: %s',
                member.display_name,
                member.id,
                exc,
            )
            return

        series = next((s for s in series_list if s.get("seriesId") == change["changeSeriesId"]), None)
        self.change_cache.set(member.student_id, CachedChange(change=change, series=series))

    async def _restore_change(self, member: Member, status: AttendanceStatus, day: date) -> None:
        cached = self.change_cache.get(member.student_id)
        if cached is None:
            return
        change, series = cached.change, cached.series
        change_type = str(change.get("studentChangeType"))
        if change_type not in self.restore_change_types:
            logger.info(
                'Student "%s" has a cached "%s" change which is not restorable. Dropping it',
                member.display_name,
                change_type,
            )
            self.change_cache.delete(member.student_id)
            return

        logger.info(
            'Student "%s" being marked as "%s" from absent. Patching student changes',
            member.display_name,
            status.value,
        )
        data: dict[str, Any] = {}
        try:
            bus_stop_id = None
            if change_type == BUS_CHANGE_TYPE:
                stops = await self.client.get_bus_stops(change["moveToId"])
                bus_stop_id = stops[0]["id"] if stops else None

            current = day.isoformat()
            modified_by = self.client.user.internal_id
            data = {
                "adType": change.get("adType"),
                "busStopId": bus_stop_id,
                "changeSeriesId": change.get("changeSeriesId"),
                "changeType": change.get("studentChangeType"),
                "dateSet": {
                    "dates": [],
                    # SchoolPass counts Sunday as day 0
                    "daysOfWeek": [day.isoweekday() % 7],
                    "endDate": current,
                    "startDate": current,
                    "recurringWeeks": 1,
                },
                "modifiedBy": modified_by,
                "moveToId": change.get("moveToId"),
                "notes": (series or {}).get("notes") or change.get("description"),
                "overwriteChanges": True,
                "studentId": member.student_id,
                "userType": STAFF_USER_TYPE,
            }
            if self.dry_run:
                logger.info('[DRY RUN] Student change restored for "%s": %s', member.display_name, data)
            else:
                await self.client.create_student_change(data)
        except Exception as exc:
            logger.error('Error patching student change for "%s": %s %s', member.display_name, exc, data)
        finally:
            self.change_cache.delete(member.student_id)
