from __future__ import annotations

from datetime import date, datetime, time, timezone
from typing import Any

import pytest

from app.attendance.models import AttendanceStatus, AttendanceWindow, MarkResult, Member, ScanEvent
from app.schoolpass.client import SchoolPassUser

UTC = timezone.utc
SCHOOL_DAY = date(2026, 10, 19)


class FakeRoster:
    """Stands in for RosterGateway; records every write."""

    def __init__(self, members: list[Member]) -> None:
        self.members = members
        self.writes: list[tuple[AttendanceStatus, list[str]]] = []
        self.authenticated = 0

    async def authenticate(self, username: str, password: str) -> None:
        self.authenticated += 1

    async def get_eligible_roster(self) -> list[Member]:
        return list(self.members)

    async def mark_members(self, status, members) -> MarkResult:
        members = list(members)
        self.writes.append((status, [m.id for m in members]))
        return MarkResult(success=len(members))


class FakeAccessLog:
    """Returns queued scan batches, one per query; empty once exhausted."""

    def __init__(self, *batches: list[ScanEvent]) -> None:
        self.batches = list(batches)
        self.queries: list[tuple[datetime, datetime]] = []

    async def get_scan_events(self, start: datetime, end: datetime) -> list[ScanEvent]:
        self.queries.append((start, end))
        return self.batches.pop(0) if self.batches else []


class FakeSchoolPassClient:
    def __init__(self) -> None:
        self.user = SchoolPassUser(internal_id=7, user_type=2)
        self.classrooms: list[dict[str, Any]] = []
        self.attendance: dict[int, list[dict[str, Any]]] = {}
        self.profiles: dict[int, dict[str, Any]] = {}
        self.calendars: dict[int, dict[str, Any]] = {}
        self.series: dict[int, list[dict[str, Any]]] = {}
        self.bus_stops: dict[int, list[dict[str, Any]]] = {}
        self.failing_students: set[int] = set()
        self.fail_change_creation = False
        self.profile_requests: list[int] = []
        self.calendar_requests: list[int] = []
        self.status_writes: list[tuple[AttendanceStatus, int]] = []
        self.created_changes: list[dict[str, Any]] = []

    async def authenticate(self, username: str, password: str) -> None:
        return None

    async def get_attendance_classrooms(self):
        return self.classrooms

    async def get_student_attendance(self, location_id: int, day: str):
        return self.attendance.get(location_id, [])

    async def get_student_profile(self, student_id: int):
        self.profile_requests.append(student_id)
        return self.profiles.get(student_id, {})

    async def set_student_attendance(self, status, student_id: int) -> None:
        if student_id in self.failing_students:
            raise RuntimeError(f"write rejected for {student_id}")
        self.status_writes.append((status, student_id))

    async def get_student_calendar(self, student_id: int, start: date, end: date):
        self.calendar_requests.append(student_id)
        return self.calendars.get(student_id, {"dailyList": []})

    async def get_student_changes(self, student_id: int):
        return self.series.get(student_id, [])

    async def create_student_change(self, change: dict[str, Any]) -> None:
        if self.fail_change_creation:
            raise RuntimeError("change rejected")
        self.created_changes.append(change)

    async def get_bus_stops(self, route_id: int):
        return self.bus_stops.get(route_id, [])

    async def close(self) -> None:
        return None


@pytest.fixture
def window() -> AttendanceWindow:
    return AttendanceWindow(
        start=time(8, 0, tzinfo=UTC),
        end=time(8, 30, tzinfo=UTC),
        school_dismissal=time(15, 0, tzinfo=UTC),
    )


@pytest.fixture
def make_member():
    def _make(member_id: int | str, name: str | None = None, status: str | None = None) -> Member:
        return Member(
            id=str(member_id),
            student_id=int(member_id),
            display_name=name or f"Student {member_id}",
            current_status=status,
        )

    return _make


@pytest.fixture
def make_scan():
    def _make(actor_id: int | str, name: str = "") -> ScanEvent:
        return ScanEvent(actor_id=str(actor_id), actor_display_name=name, timestamp=None)

    return _make


@pytest.fixture
def fake_roster_cls():
    return FakeRoster


@pytest.fixture
def fake_access_log_cls():
    return FakeAccessLog


@pytest.fixture
def schoolpass() -> FakeSchoolPassClient:
    return FakeSchoolPassClient()
