"""Page fetching with one-shot session refresh."""
from __future__ import annotations

import logging
from typing import Callable, Optional

from catalog_etl.antibot.session import SessionProvider
from catalog_etl.collector.pager import CategoryPager
from catalog_etl.errors import FetchError, SessionAcquisitionError
from catalog_etl.models import PageResult, SessionContext

LOGGER = logging.getLogger(__name__)


class SessionRefresher:
    """Owns the worker's single live session and recovers from blocks.

    A failed page costs at most one ``acquire()`` and one retry; a second
    failure hands ``None`` back so the caller can skip the category.
    """

    def __init__(
        self,
        provider: SessionProvider,
        pager: CategoryPager,
        *,
        session: Optional[SessionContext] = None,
        ttl_seconds: Optional[float] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.provider = provider
        self.pager = pager
        self.session = session
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else provider.settings.session_ttl
        self._clock = clock
        self.refreshes = 0

    def _now(self) -> Optional[float]:
        return self._clock() if self._clock else None

    async def ensure_session(self) -> SessionContext:
        """Return the live session, acquiring one if absent or past its TTL."""
        if self.session is None:
            self.session = await self.provider.acquire()
        elif self.session.is_expired(self.ttl_seconds, self._now()):
            LOGGER.info("Session older than %.0fs, renewing", self.ttl_seconds)
            self.session = await self.provider.acquire()
        return self.session

    async def fetch_page_resilient(
        self,
        category_id: str,
        page_number: int,
    ) -> Optional[PageResult]:
        """Fetch a page, refreshing the session once on a block or transport error.

        Returns
        -------
        PageResult or None
            None when the page could not be fetched even after a refresh
        """
        try:
            session = await self.ensure_session()
        except SessionAcquisitionError as exc:
            LOGGER.warning("No session for %s page %d: %s", category_id, page_number, exc)
            self.session = None
            return None

        try:
            return await self.pager.fetch_page(session, category_id, page_number)
        except FetchError as exc:
            LOGGER.warning(
                "%s page %d failed (%s), refreshing session",
                category_id,
                page_number,
                exc,
            )

        self.session = None
        self.refreshes += 1
        try:
            self.session = await self.provider.acquire()
        except SessionAcquisitionError as exc:
            LOGGER.warning("Session refresh failed for %s: %s", category_id, exc)
            return None

        try:
            return await self.pager.fetch_page(self.session, category_id, page_number)
        except FetchError as exc:
            LOGGER.warning(
                "Retry of %s page %d failed after refresh: %s",
                category_id,
                page_number,
                exc,
            )
            return None
