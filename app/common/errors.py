from __future__ import annotations

from typing import Any


class ApiError(Exception):
    """Base class for failures talking to an upstream API."""


class NetworkError(ApiError):
    """The request never produced an HTTP response."""


class AuthError(ApiError):
    """Credentials were rejected or could not be refreshed."""


class UpstreamError(ApiError):
    def __init__(self, status: int, body: Any, message: str | None = None) -> None:
        self.status = status
        self.body = body
        super().__init__(message or f"Upstream request failed with status {status}: {body!r}")
