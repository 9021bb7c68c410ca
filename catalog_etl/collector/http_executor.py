"""Plain HTTP executor for portals (or mirrors) that do not require scripts."""
from __future__ import annotations

import logging
from typing import Dict, Optional

import httpx

from catalog_etl.antibot.profile import DEFAULT_PROFILE, DeviceProfile
from catalog_etl.collector.executor import BrowserResponse
from catalog_etl.errors import TransportError

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT = httpx.Timeout(30.0)


class HttpxRequestExecutor:
    """``BrowserRequestExecutor`` implemented with ``httpx.AsyncClient``.

    There is no page to observe, so ``observed_header`` always returns None and
    the session falls back to cookies or a generated fingerprint.
    """

    def __init__(
        self,
        *,
        profile: Optional[DeviceProfile] = None,
        timeout: httpx.Timeout = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.profile = profile or DEFAULT_PROFILE
        self.timeout = timeout
        self.transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _new_client(self) -> httpx.AsyncClient:
        headers = {"User-Agent": self.profile.user_agent}
        headers.update(self.profile.browser_headers())
        return httpx.AsyncClient(
            timeout=self.timeout,
            headers=headers,
            follow_redirects=True,
            transport=self.transport,
        )

    def _require_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise TransportError("HTTP client is not open; call reset() first")
        return self._client

    async def reset(self) -> None:
        if self._client is not None:
            await self._client.aclose()
        self._client = self._new_client()

    async def open(self, url: str, timeout_ms: int) -> None:
        client = self._require_client()
        try:
            response = await client.get(url, timeout=timeout_ms / 1000)
        except httpx.HTTPError as exc:
            raise TransportError(f"navigation to {url} failed: {exc}") from exc
        if response.status_code >= 400:
            raise TransportError(
                f"navigation to {url} returned {response.status_code}",
                status=response.status_code,
            )

    async def scroll(self) -> None:
        return None

    async def cookies(self, url: str) -> Dict[str, str]:
        if self._client is None:
            return {}
        return {name: value for name, value in self._client.cookies.items()}

    def observed_header(self, name: str) -> Optional[str]:
        return None

    async def request(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Optional[str] = None,
    ) -> BrowserResponse:
        client = self._require_client()
        try:
            response = await client.request(method, url, headers=headers, content=body)
        except httpx.HTTPError as exc:
            raise TransportError(f"{method} {url} failed: {exc}") from exc
        LOGGER.debug("%s %s -> %s", method, url, response.status_code)
        return BrowserResponse(status=response.status_code, text=response.text)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
