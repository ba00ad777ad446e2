"""HTTP client for the agent controller (session status, health, events)."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncIterator, Optional
from urllib.parse import urljoin

import httpx

from paneherd.constants import (
    EVENT_STREAM_PATH,
    HEALTH_PATH,
    HEALTH_REQUEST_TIMEOUT_S,
    SERVER_CHECK_ATTEMPTS,
    SERVER_CHECK_RETRY_DELAY_S,
    SERVER_CHECK_TIMEOUT_S,
    SESSION_STATUS_PATH,
    STATUS_REQUEST_TIMEOUT_S,
)
from paneherd.core.session_status import (
    AmbiguousResponseError,
    ControllerError,
    ControllerUnavailableError,
    StatusMap,
    parse_session_statuses,
)

logger = logging.getLogger(__name__)

__all__ = [
    "AmbiguousResponseError",
    "ControllerClient",
    "ControllerError",
    "ControllerUnavailableError",
    "ServerReachability",
]


class ControllerClient:
    """Async client for one controller base URL."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = STATUS_REQUEST_TIMEOUT_S,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._timeout_s = timeout_s
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _url(self, path: str) -> str:
        return urljoin(f"{self.base_url}/", path.lstrip("/"))

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport)
        return self._client

    async def aclose(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "ControllerClient":
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.aclose()

    async def session_statuses(self) -> StatusMap:
        """Fetch `{session_id: status}` for every session the controller reports.

        Raises:
            ControllerUnavailableError: Network error, timeout, or non-2xx answer.
            AmbiguousResponseError: The body is not JSON or has no known shape.
        """
        url = self._url(SESSION_STATUS_PATH)
        try:
            response = await self._get_client().get(url)
        except httpx.HTTPError as exc:
            raise ControllerUnavailableError(f"GET {url} failed: {exc}") from exc

        if not response.is_success:
            raise ControllerUnavailableError(f"GET {url} returned HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise AmbiguousResponseError(f"GET {url} returned non-JSON body") from exc
        return parse_session_statuses(payload)

    async def active_session_ids(self) -> frozenset[str]:
        return frozenset(await self.session_statuses())

    async def is_healthy(self, timeout_s: float = HEALTH_REQUEST_TIMEOUT_S) -> bool:
        """Ask the health endpoint; any 2xx answer means alive."""
        url = self._url(HEALTH_PATH)
        try:
            response = await self._get_client().get(url, timeout=timeout_s)
        except httpx.HTTPError as exc:
            logger.debug("Health check %s failed: %s", url, exc)
            return False
        return response.is_success

    async def events(self) -> AsyncIterator[dict[str, object]]:
        """Yield JSON events from the controller's server-sent event stream.

        The stream has no read timeout; it ends when the server closes it.

        Raises:
            ControllerUnavailableError: The stream could not be opened.
        """
        url = self._url(EVENT_STREAM_PATH)
        timeout = httpx.Timeout(self._timeout_s, read=None)
        try:
            async with self._get_client().stream("GET", url, timeout=timeout) as response:
                if not response.is_success:
                    raise ControllerUnavailableError(f"GET {url} returned HTTP {response.status_code}")
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:") :].strip()
                    if not data:
                        continue
                    try:
                        event = json.loads(data)
                    except json.JSONDecodeError:
                        logger.debug("Ignoring non-JSON event line: %s", data[:80])
                        continue
                    if isinstance(event, dict):
                        yield event
        except httpx.HTTPError as exc:
            raise ControllerUnavailableError(f"Event stream {url} failed: {exc}") from exc


class ServerReachability:
    """Memoized "controller is up" check, scoped to one manager.

    A positive answer is cached; a negative one is checked again next time.
    """

    def __init__(
        self,
        *,
        attempts: int = SERVER_CHECK_ATTEMPTS,
        timeout_s: float = SERVER_CHECK_TIMEOUT_S,
        retry_delay_s: float = SERVER_CHECK_RETRY_DELAY_S,
    ) -> None:
        self._attempts = attempts
        self._timeout_s = timeout_s
        self._retry_delay_s = retry_delay_s
        self._reachable_url: Optional[str] = None

    def reset(self) -> None:
        self._reachable_url = None

    async def check(self, client: ControllerClient) -> bool:
        if self._reachable_url == client.base_url:
            return True

        for attempt in range(1, self._attempts + 1):
            if await client.is_healthy(timeout_s=self._timeout_s):
                self._reachable_url = client.base_url
                logger.debug("Controller %s reachable (attempt %d)", client.base_url, attempt)
                return True
            if attempt < self._attempts:
                await asyncio.sleep(self._retry_delay_s)

        logger.info("Controller %s not reachable", client.base_url)
        return False
