from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Awaitable, Callable

import httpx

from app.attendance.models import AttendanceStatus
from app.common.client import ResilientClient
from app.common.errors import AuthError, UpstreamError

logger = logging.getLogger(__name__)

CONFIG_URL = "https://schoolpass.cloud/assets/runtime.config.json"

ENDPOINTS = {
    "find_user_info": "findspruserinfo",
    "auth_users": "Auth/users",
    "auth_token": "Auth/token",
    "attendance_classrooms": "classroom/getAllAttendanceInfo",
    "student_attendance": "classroom/GetStudentAttendanceInfo",
    "student_profile": "student/{id}/profile",
    "student_calendar": "studentChange/{id}/calendar",
    "student_changes": "studentChange/{id}/series",
    "create_student_change": "studentChange/{user_id}",
    "bus_stops": "bus/{id}/stops",
}

# Roster Service rejects bad handshakes with any of these
_HANDSHAKE_REJECTIONS = (400, 401, 403, 404)


@dataclass(frozen=True)
class SchoolPassUser:
    internal_id: int
    user_type: int


def _first(payload: Any) -> dict[str, Any] | None:
    if isinstance(payload, list) and payload:
        return payload[0]
    if isinstance(payload, dict) and payload:
        return payload
    return None


class SchoolPassClient:
    """Wire-level access to the SchoolPass API.

    ``authenticate`` walks the runtime config, tenant lookup, user lookup and
    token steps. After that, 401 responses re-run only the token step.
    """

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        max_concurrency: int = 10,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._homebase = ResilientClient(
            "SchoolPass homebase",
            timeout=timeout,
            max_concurrency=max_concurrency,
            transport=transport,
            sleep=sleep,
        )
        self._api = ResilientClient(
            "SchoolPass",
            timeout=timeout,
            refresh_auth=self._refresh_token,
            max_concurrency=max_concurrency,
            transport=transport,
            sleep=sleep,
        )
        self._school_code: int | None = None
        self._user: SchoolPassUser | None = None
        self._password = ""

    @property
    def user(self) -> SchoolPassUser:
        if self._user is None:
            raise AuthError("SchoolPass client used before authenticate()")
        return self._user

    async def close(self) -> None:
        await self._homebase.close()
        await self._api.close()

    async def authenticate(self, username: str, password: str) -> None:
        try:
            config = await self._homebase.request("GET", CONFIG_URL, allow_refresh=False)
            if not isinstance(config, dict) or not config.get("defaultHomeBaseUrl"):
                raise AuthError("SchoolPass runtime config is missing the homebase URL")
            bootstrap = f"Bearer {config['authToken']}"
            self._homebase.base_url = str(config["defaultHomeBaseUrl"]).rstrip("/") + "/"
            self._homebase.set_header("Authorization", bootstrap)

            connection = _first(
                await self._homebase.request(
                    "GET",
                    ENDPOINTS["find_user_info"],
                    params={"emailAddress": username},
                    allow_refresh=False,
                )
            )
            if connection is None:
                raise AuthError(f"No SchoolPass tenant found for {username}")
            school = connection["schoolConnection"]
            school_code = int(school["appCode"])

            self._api.base_url = str(school["apiUrl"]).rstrip("/") + "/api/"
            self._api.set_header("Authorization", bootstrap)
            self._api.set_header("Appcode", str(school_code))

            identity = _first(
                await self._api.request(
                    "POST",
                    ENDPOINTS["auth_users"],
                    json={
                        "schoolCode": school_code,
                        "authType": "credentials",
                        "email": username,
                        "password": password,
                    },
                    allow_refresh=False,
                )
            )
            if identity is None:
                raise AuthError(f"SchoolPass rejected credentials for {username}")

            self._school_code = school_code
            self._user = SchoolPassUser(
                internal_id=int(identity["user"]["internalId"]),
                user_type=int(identity["user"]["userType"]),
            )
            self._password = password
            await self._refresh_token()
        except UpstreamError as exc:
            if exc.status in _HANDSHAKE_REJECTIONS:
                raise AuthError(f"SchoolPass authentication failed with status {exc.status}") from exc
            raise
        except (KeyError, TypeError, ValueError) as exc:
            raise AuthError(f"Unexpected SchoolPass authentication payload: {exc}") from exc

        logger.info("Authenticated with SchoolPass school_code=%s", self._school_code)

    async def _refresh_token(self) -> None:
        user = self.user
        payload = await self._api.request(
            "POST",
            ENDPOINTS["auth_token"],
            json={
                "schoolCode": self._school_code,
                "userType": user.user_type,
                "userId": user.internal_id,
                "password": self._password,
                "authType": "credentials",
            },
            allow_refresh=False,
        )
        token = payload.get("access_token") if isinstance(payload, dict) else None
        if not token:
            raise AuthError("SchoolPass token response did not include an access token")
        self._api.set_header("Authorization", f"Bearer {token}")

    async def get_attendance_classrooms(self) -> list[dict[str, Any]]:
        payload = await self._api.request("GET", ENDPOINTS["attendance_classrooms"])
        return payload if isinstance(payload, list) else []

    async def get_student_attendance(self, location_id: int, day: str) -> list[dict[str, Any]]:
        payload = await self._api.request(
            "GET",
            ENDPOINTS["student_attendance"],
            params={"arrivalLocationId": location_id, "date": day},
        )
        return payload if isinstance(payload, list) else []

    async def get_student_profile(self, student_id: int) -> dict[str, Any]:
        payload = await self._api.request("GET", ENDPOINTS["student_profile"].format(id=student_id))
        return payload if isinstance(payload, dict) else {}

    async def set_student_attendance(self, status: AttendanceStatus, student_id: int) -> None:
        prefix = "mark" if status is AttendanceStatus.PRESENT else ""
        user = self.user
        await self._api.request(
            "POST",
            f"classroom/{prefix}student{status.value}",
            params={
                "studentId": student_id,
                "userId": user.internal_id,
                "userType": user.user_type,
            },
        )

    async def get_student_calendar(self, student_id: int, start: date, end: date) -> dict[str, Any]:
        payload = await self._api.request(
            "GET",
            ENDPOINTS["student_calendar"].format(id=student_id),
            params={"startDate": start.isoformat(), "endDate": end.isoformat()},
        )
        return payload if isinstance(payload, dict) else {}

    async def get_student_changes(self, student_id: int) -> list[dict[str, Any]]:
        payload = await self._api.request("GET", ENDPOINTS["student_changes"].format(id=student_id))
        return payload if isinstance(payload, list) else []

    async def create_student_change(self, change: dict[str, Any]) -> None:
        await self._api.request(
            "POST",
            ENDPOINTS["create_student_change"].format(user_id=self.user.internal_id),
            json=change,
        )

    async def get_bus_stops(self, route_id: int) -> list[dict[str, Any]]:
        payload = await self._api.request("GET", ENDPOINTS["bus_stops"].format(id=route_id))
        return payload if isinstance(payload, list) else []
