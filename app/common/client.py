from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Any, Awaitable, Callable

import httpx

from app.common.errors import AuthError, NetworkError, UpstreamError

logger = logging.getLogger(__name__)

RATE_LIMIT_PADDING_SECONDS = 3
SERVER_ERROR_RETRIES = 3


def _retry_after(response: httpx.Response) -> float:
    raw = response.headers.get("retry-after", "").strip()
    try:
        return max(float(raw), 0.0)
    except ValueError:
        return 0.0


def _body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class ResilientClient:
    """Async HTTP client shared by both upstream integrations.

    Retries 429s forever (after ``retry-after`` + 3s), retries 500s up to three
    times with a 1-3s jittered wait, and refreshes credentials once on a 401
    when a ``refresh_auth`` callback is given.
    """

    def __init__(
        self,
        name: str,
        base_url: str = "",
        *,
        headers: dict[str, str] | None = None,
        timeout: float = 30.0,
        verify: bool = True,
        refresh_auth: Callable[[], Awaitable[None]] | None = None,
        max_concurrency: int = 10,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.name = name
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers=headers,
            verify=verify,
            transport=transport,
        )
        self._refresh_auth = refresh_auth
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._sleep = sleep

    @property
    def base_url(self) -> str:
        return str(self._client.base_url)

    @base_url.setter
    def base_url(self, value: str) -> None:
        self._client.base_url = value

    def set_header(self, name: str, value: str) -> None:
        self._client.headers[name] = value

    async def close(self) -> None:
        await self._client.aclose()

    async def _send(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None,
        json: Any,
    ) -> httpx.Response:
        async with self._semaphore:
            started = time.perf_counter()
            try:
                response = await self._client.request(method, path, params=params, json=json)
            except httpx.TransportError as exc:
                logger.error("%s %s %s failed: %s", self.name, method, path, exc)
                raise NetworkError(f"{self.name} {method} {path} failed: {exc}") from exc
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.debug(
            "%s %s %s -> %s (%.0f ms)",
            self.name,
            method,
            response.request.url,
            response.status_code,
            elapsed_ms,
        )
        return response

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        allow_refresh: bool = True,
    ) -> Any:
        refreshed = False
        server_errors = 0
        while True:
            response = await self._send(method, path, params, json)
            status = response.status_code
            if status < 400:
                return response.json() if response.content else None

            if status == 401:
                if refreshed or not allow_refresh or self._refresh_auth is None:
                    raise AuthError(f"{self.name} rejected credentials for {method} {path}")
                refreshed = True
                logger.warning("%s token possibly expired. Refreshing token...", self.name)
                try:
                    await self._refresh_auth()
                except Exception as exc:
                    logger.error("%s unable to refresh authentication token: %s", self.name, exc)
                    raise AuthError(f"{self.name} token refresh failed") from exc
                continue

            if status == 429:
                wait = _retry_after(response) + RATE_LIMIT_PADDING_SECONDS
                logger.warning("%s rate limit reached. Retrying after %s seconds", self.name, wait)
                await self._sleep(wait)
                continue

            if status == 500 and server_errors < SERVER_ERROR_RETRIES:
                server_errors += 1
                wait = random.uniform(1, 3)
                logger.warning(
                    "%s returned 500 for %s %s. Retry %s/%s in %.1fs",
                    self.name,
                    method,
                    path,
                    server_errors,
                    SERVER_ERROR_RETRIES,
                    wait,
                )
                await self._sleep(wait)
                continue

            body = _body(response)
            logger.error("%s %s %s failed with status %s: %s", self.name, method, path, status, body)
            raise UpstreamError(status, body)
