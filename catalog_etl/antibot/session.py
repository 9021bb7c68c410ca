"""Bootstrap of authenticated browsing sessions."""
from __future__ import annotations

import asyncio
import logging
import secrets
from typing import TYPE_CHECKING, Callable, Dict, Optional

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random,
)

from catalog_etl.antibot.pacing import Sleeper
from catalog_etl.config import SyncSettings
from catalog_etl.errors import FetchError, SessionAcquisitionError
from catalog_etl.models import SessionContext

if TYPE_CHECKING:
    from catalog_etl.collector.executor import BrowserRequestExecutor

LOGGER = logging.getLogger(__name__)

FINGERPRINT_HEADER = "x-device-fingerprint"
FINGERPRINT_COOKIE = "device_fingerprint"


def generate_fingerprint() -> str:
    """Random 32 hex character token."""
    return secrets.token_hex(16)


def resolve_fingerprint(
    observed: Optional[str],
    cookies: Dict[str, str],
    token_factory: Callable[[], str] = generate_fingerprint,
) -> str:
    """Pick the anti-bot token: observed header, then cookie, then a fresh token."""
    if observed:
        return observed
    if cookies.get(FINGERPRINT_COOKIE):
        return cookies[FINGERPRINT_COOKIE]
    LOGGER.debug("No fingerprint observed, generating one")
    return token_factory()


class SessionProvider:
    """Produces ``SessionContext`` values from a fresh browsing context.

    Parameters
    ----------
    executor : BrowserRequestExecutor
        Executor owning the browsing context
    settings : SyncSettings
        Run settings (listing URL, timeouts, settle delay, attempts)
    sleep : callable, optional
        Async sleeper, ``asyncio.sleep`` by default
    token_factory : callable, optional
        Fingerprint generator used when the portal exposed none
    """

    def __init__(
        self,
        executor: BrowserRequestExecutor,
        settings: SyncSettings,
        *,
        sleep: Optional[Sleeper] = None,
        token_factory: Callable[[], str] = generate_fingerprint,
    ) -> None:
        self.executor = executor
        self.settings = settings
        self._sleep = sleep or asyncio.sleep
        self._token_factory = token_factory
        self.acquisitions = 0

    async def acquire(self) -> SessionContext:
        """Reset the context, load the listing view and harvest credentials.

        Raises
        ------
        SessionAcquisitionError
            If the context cannot be opened or navigation fails or times out
        """
        url = self.settings.listing_url
        LOGGER.info("Acquiring session from %s", url)
        try:
            await self.executor.reset()
            await self.executor.open(url, self.settings.navigation_timeout_ms)
            await self._sleep(self.settings.settle_delay)
            await self.executor.scroll()
            await self._sleep(self.settings.settle_delay / 2)
            cookies = await self.executor.cookies(self.settings.base_url)
        except FetchError as exc:
            raise SessionAcquisitionError(f"session bootstrap failed: {exc}") from exc

        fingerprint = resolve_fingerprint(
            self.executor.observed_header(FINGERPRINT_HEADER),
            cookies,
            self._token_factory,
        )
        self.acquisitions += 1
        LOGGER.info(
            "Session acquired (%d cookies, fingerprint %s...)",
            len(cookies),
            fingerprint[:8],
        )
        return SessionContext(
            cookies=cookies,
            fingerprint=fingerprint,
            user_agent=self.settings.user_agent,
        )

    async def acquire_with_retry(self, attempts: Optional[int] = None) -> SessionContext:
        """Acquire with a bounded number of attempts, used at worker start."""
        attempts = attempts or self.settings.acquire_attempts
        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_random(1, 3),
            retry=retry_if_exception_type(SessionAcquisitionError),
            before_sleep=before_sleep_log(LOGGER, logging.WARNING),
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self.acquire()
        raise SessionAcquisitionError("session acquisition attempts exhausted")
