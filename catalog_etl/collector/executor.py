"""Browser request execution capability.

Requests to the portal must originate from an open, script-executing
browsing context; everything above this module only relies on the
``BrowserRequestExecutor`` protocol.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Protocol
from urllib.parse import urlsplit

from playwright.async_api import (
    Browser,
    BrowserContext,
    Page,
    Playwright,
    Request,
    async_playwright,
)
from playwright.async_api import Error as PlaywrightError

from catalog_etl.antibot.profile import DEFAULT_PROFILE, DeviceProfile, create_stealth_context
from catalog_etl.errors import TransportError

LOGGER = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 30.0

_FETCH_SCRIPT = """
async ({ method, url, headers, body }) => {
    const response = await fetch(url, {
        method,
        headers,
        body: body === null ? undefined : body,
        credentials: 'include',
    });
    return { status: response.status, text: await response.text() };
}
"""

_SCROLL_SCRIPT = "window.scrollTo(0, document.body.scrollHeight / 2)"


@dataclass
class BrowserResponse:
    """Status and raw body of a request issued from the browsing context."""

    status: int
    text: str


class BrowserRequestExecutor(Protocol):
    """Capability to navigate, inspect and issue requests from a browsing context.

    Every method that talks to the network raises ``TransportError`` on failure.
    """

    async def reset(self) -> None:
        """Discard the current browsing context and open a fresh one."""
        ...

    async def open(self, url: str, timeout_ms: int) -> None:
        ...

    async def scroll(self) -> None:
        ...

    async def cookies(self, url: str) -> Dict[str, str]:
        ...

    def observed_header(self, name: str) -> Optional[str]:
        """Last value of an outgoing request header the page itself sent."""
        ...

    async def request(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Optional[str] = None,
    ) -> BrowserResponse:
        ...

    async def close(self) -> None:
        ...


class PlaywrightExecutor:
    """Executor backed by a headless Chromium driven through Playwright."""

    def __init__(
        self,
        *,
        headless: bool = True,
        profile: Optional[DeviceProfile] = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        self.headless = headless
        self.profile = profile or DEFAULT_PROFILE
        self.request_timeout = request_timeout
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None
        self._observed: Dict[str, str] = {}

    async def _ensure_browser(self) -> Browser:
        if self._browser is None:
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(
                headless=self.headless,
                args=["--disable-blink-features=AutomationControlled", "--no-sandbox"],
            )
            LOGGER.info("Browser started (headless=%s)", self.headless)
        return self._browser

    def _on_request(self, request: Request) -> None:
        for name, value in request.headers.items():
            self._observed[name.lower()] = value

    def _require_page(self) -> Page:
        if self._page is None:
            raise TransportError("browsing context is not open; call reset() first")
        return self._page

    async def reset(self) -> None:
        try:
            browser = await self._ensure_browser()
            if self._context is not None:
                await self._context.close()
            self._observed = {}
            self._context = await create_stealth_context(browser, profile=self.profile)
            self._page = await self._context.new_page()
        except PlaywrightError as exc:
            raise TransportError(f"could not open browsing context: {exc}") from exc
        self._page.on("request", self._on_request)

    async def open(self, url: str, timeout_ms: int) -> None:
        page = self._require_page()
        try:
            await page.goto(url, wait_until="networkidle", timeout=timeout_ms)
        except PlaywrightError as exc:
            raise TransportError(f"navigation to {url} failed: {exc}") from exc

    async def scroll(self) -> None:
        page = self._require_page()
        try:
            await page.evaluate(_SCROLL_SCRIPT)
        except PlaywrightError as exc:
            LOGGER.debug("Scroll failed: %s", exc)

    async def cookies(self, url: str) -> Dict[str, str]:
        if self._context is None:
            return {}
        parts = urlsplit(url)
        origin = f"{parts.scheme}://{parts.netloc}"
        try:
            cookies = await self._context.cookies(origin)
        except PlaywrightError as exc:
            raise TransportError(f"could not read cookies: {exc}") from exc
        return {cookie["name"]: cookie["value"] for cookie in cookies}

    def observed_header(self, name: str) -> Optional[str]:
        return self._observed.get(name.lower())

    async def request(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Optional[str] = None,
    ) -> BrowserResponse:
        page = self._require_page()
        payload = {"method": method, "url": url, "headers": headers, "body": body}
        try:
            result = await asyncio.wait_for(
                page.evaluate(_FETCH_SCRIPT, payload),
                timeout=self.request_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise TransportError(f"{method} {url} timed out") from exc
        except PlaywrightError as exc:
            raise TransportError(f"{method} {url} failed: {exc}") from exc
        return BrowserResponse(status=int(result["status"]), text=result["text"])

    async def close(self) -> None:
        if self._context is not None:
            await self._context.close()
            self._context = None
            self._page = None
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
            LOGGER.info("Browser closed")
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
