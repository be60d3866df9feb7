from __future__ import annotations

import asyncio
import logging
import math
from datetime import datetime, timezone
from typing import Any

from app.attendance.models import ScanEvent
from app.unifi.client import Topic, UnifiAccessClient

logger = logging.getLogger(__name__)

PAGE_SIZE = 50


def parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    cleaned = value.replace("Z", "+00:00")
    try:
        return datetime.fromisoformat(cleaned)
    except ValueError:
        return None


def to_scan_event(hit: dict[str, Any]) -> ScanEvent | None:
    source = hit.get("_source") or {}
    actor = source.get("actor") or {}
    actor_id = actor.get("alternate_id") or actor.get("id")
    if not actor_id:
        return None

    timestamp = parse_datetime(hit.get("@timestamp"))
    published = (source.get("event") or {}).get("published")
    if timestamp is None and isinstance(published, (int, float)):
        timestamp = datetime.fromtimestamp(published / 1000, tz=timezone.utc)
    return ScanEvent(
        actor_id=str(actor_id).strip(),
        actor_display_name=str(actor.get("display_name") or ""),
        timestamp=timestamp,
    )


class AccessLogGateway:
    def __init__(self, client: UnifiAccessClient, page_size: int = PAGE_SIZE) -> None:
        self.client = client
        self.page_size = page_size

    async def _page(self, page_num: int, since: int, until: int) -> dict[str, Any]:
        return await self.client.get_system_logs(
            Topic.DOOR_OPENINGS,
            since=since,
            until=until,
            page_num=page_num,
            page_size=self.page_size,
        )

    async def get_scan_events(self, start: datetime, end: datetime) -> list[ScanEvent]:
        since, until = int(start.timestamp()), int(end.timestamp())
        first = await self._page(1, since, until)
        hits: list[dict[str, Any]] = list((first.get("data") or {}).get("hits") or [])

        total = int((first.get("pagination") or {}).get("total") or 0)
        pages = math.ceil(total / self.page_size)
        rest = await asyncio.gather(*(self._page(n, since, until) for n in range(2, pages + 1)))
        for page in rest:
            hits.extend((page.get("data") or {}).get("hits") or [])

        events = [event for event in map(to_scan_event, hits) if event is not None]
        logger.debug("Fetched %s door events over %s pages", len(events), max(pages, 1))
        return events
