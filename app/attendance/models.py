from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time
from enum import Enum
from typing import Any, Iterable, Iterator


class AttendanceStatus(str, Enum):
    PRESENT = "Present"
    ABSENT = "Absent"
    LATE_ARRIVAL = "LateArrival"
    VIRTUAL = "Virtual"


@dataclass
class Member:
    id: str
    student_id: int
    display_name: str
    current_status: str | None = None
    first_name: str = ""
    last_name: str = ""
    profile: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class ScanEvent:
    actor_id: str
    actor_display_name: str
    timestamp: datetime | None


@dataclass(frozen=True)
class AttendanceWindow:
    start: time
    end: time
    school_dismissal: time

    def on(self, day: date) -> tuple[datetime, datetime, datetime]:
        return (
            datetime.combine(day, self.start),
            datetime.combine(day, self.end),
            datetime.combine(day, self.school_dismissal),
        )


@dataclass
class MarkResult:
    success: int = 0
    failure: int = 0

    @property
    def total(self) -> int:
        return self.success + self.failure


class AbsentSet:
    """Members not yet seen at a door. Entries can be removed but never added."""

    def __init__(self, members: dict[str, Member]) -> None:
        self._members = dict(members)

    def pop_matching(self, keys: Iterable[str]) -> list[Member]:
        removed = []
        for key in keys:
            member = self._members.pop(key, None)
            if member is not None:
                removed.append(member)
        return removed

    def keys(self) -> list[str]:
        return list(self._members)

    def members(self) -> list[Member]:
        return list(self._members.values())

    def __contains__(self, key: object) -> bool:
        return key in self._members

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._members))

    def __len__(self) -> int:
        return len(self._members)
