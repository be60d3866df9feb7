from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable

import httpx

from app.common.client import ResilientClient
from app.common.errors import UpstreamError

logger = logging.getLogger(__name__)

ENDPOINTS = {
    "system_logs": "system/logs",
}


class Topic(str, Enum):
    ALL = "all"
    CRITICAL = "critical"
    DOOR_OPENINGS = "door_openings"
    UPDATES = "updates"
    DEVICE_EVENTS = "device_events"
    ADMIN_ACTIVITY = "admin_activity"
    VISITOR = "visitor"


class UnifiAccessClient:
    def __init__(
        self,
        server: str,
        token: str,
        *,
        verify: bool = False,
        timeout: float = 30.0,
        max_concurrency: int = 10,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._http = ResilientClient(
            "UniFi Access",
            server.rstrip("/") + "/api/v1/developer/",
            headers={"Authorization": f"Bearer {token}"},
            timeout=timeout,
            verify=verify,
            max_concurrency=max_concurrency,
            transport=transport,
            sleep=sleep,
        )

    async def close(self) -> None:
        await self._http.close()

    async def get_system_logs(
        self,
        topic: Topic,
        *,
        since: int | None = None,
        until: int | None = None,
        actor_id: str | None = None,
        page_num: int = 1,
        page_size: int = 25,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"topic": topic.value}
        if since is not None:
            body["since"] = since
        if until is not None:
            body["until"] = until
        if actor_id is not None:
            body["actor_id"] = actor_id

        payload = await self._http.request(
            "POST",
            ENDPOINTS["system_logs"],
            params={"page_num": page_num, "page_size": page_size},
            json=body,
        )
        if not isinstance(payload, dict) or payload.get("code") != "SUCCESS":
            logger.error("Error fetching system logs: %s", payload)
            raise UpstreamError(200, payload, "Error fetching UniFi Access system logs")
        return payload
