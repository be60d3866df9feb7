from __future__ import annotations

import warnings
from typing import Protocol

from app.attendance.models import Member, ScanEvent


class MemberMatcher(Protocol):
    name: str

    def member_key(self, member: Member) -> str: ...

    def scan_key(self, event: ScanEvent) -> str: ...


class ExternalIdMatcher:
    """Joins roster members and door scans on the stable external identifier."""

    name = "id"

    def member_key(self, member: Member) -> str:
        return member.id

    def scan_key(self, event: ScanEvent) -> str:
        return event.actor_id


class DisplayNameMatcher:
    """Legacy join on lower-cased display name.

    Collides on homonyms and breaks on spacing or casing differences between
    systems. Only enabled with ``MATCH_STRATEGY=name``.
    """

    name = "name"

    def __init__(self) -> None:
        warnings.warn(
            "Display-name matching is deprecated; use external id matching instead",
            DeprecationWarning,
            stacklevel=2,
        )

    @staticmethod
    def _normalize(value: str) -> str:
        return " ".join(value.lower().split())

    def member_key(self, member: Member) -> str:
        return self._normalize(member.display_name)

    def scan_key(self, event: ScanEvent) -> str:
        return self._normalize(event.actor_display_name)


def get_matcher(strategy: str) -> MemberMatcher:
    if strategy == "name":
        return DisplayNameMatcher()
    return ExternalIdMatcher()
