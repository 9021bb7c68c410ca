"""Single-page listing fetches for one category."""
from __future__ import annotations

import logging
import math
from typing import Any, Dict, List, Optional

import orjson
from pydantic import BaseModel, ValidationError

from catalog_etl.antibot.profile import DEFAULT_PROFILE, DeviceProfile
from catalog_etl.antibot.session import FINGERPRINT_HEADER
from catalog_etl.collector.executor import BrowserRequestExecutor
from catalog_etl.config import SyncSettings
from catalog_etl.errors import BlockedResponse, TransportError
from catalog_etl.mapper import get_external_id, to_record
from catalog_etl.models import Category, PageResult, Record, SessionContext

LOGGER = logging.getLogger(__name__)


class ListingPayload(BaseModel):
    """Shape every genuine listing response has; WAF pages never match it."""

    totalElements: int
    content: List[Dict[str, Any]]


def build_filter_body(category_id: str) -> Dict[str, Any]:
    return {
        "categories": [category_id],
        "tags": [],
        "publishers": [],
        "formats": [],
        "languages": [],
        "datasetTypes": [],
        "publishDate": {"fromDate": None, "toDate": None},
    }


def session_headers(
    session: SessionContext,
    base_url: str,
    profile: DeviceProfile = DEFAULT_PROFILE,
) -> Dict[str, str]:
    """Request headers carrying the session credentials."""
    headers = profile.browser_headers()
    headers.update(
        {
            "content-type": "application/json",
            "cookie": session.cookie_header(),
            FINGERPRINT_HEADER: session.fingerprint,
            "origin": base_url,
            "referer": f"{base_url}/ar/datasets",
        }
    )
    if session.user_agent:
        headers["user-agent"] = session.user_agent
    return headers


def parse_json_body(text: str, status: int) -> Any:
    """Decode a response body, treating anything non-JSON as a block page."""
    if not text or text.lstrip().startswith("<"):
        raise BlockedResponse("received HTML instead of JSON", status=status)
    try:
        return orjson.loads(text)
    except orjson.JSONDecodeError as exc:
        raise BlockedResponse(f"response is not JSON: {exc}", status=status) from exc


def total_pages(total_elements: int, page_size: int) -> int:
    """Number of pages needed to cover ``total_elements`` records."""
    if total_elements <= 0:
        return 0
    return math.ceil(total_elements / page_size)


class CategoryPager:
    """Fetches listing pages through the executor, without retries."""

    def __init__(
        self,
        executor: BrowserRequestExecutor,
        settings: SyncSettings,
        *,
        categories: Optional[Dict[str, Category]] = None,
        profile: DeviceProfile = DEFAULT_PROFILE,
    ) -> None:
        self.executor = executor
        self.settings = settings
        self.categories = categories or {}
        self.profile = profile
        self.calls = 0

    @property
    def page_size(self) -> int:
        return self.settings.page_size

    def total_pages(self, total_elements: int) -> int:
        return total_pages(total_elements, self.page_size)

    def listing_url(self, page_number: int) -> str:
        return (
            f"{self.settings.base_url}/api/datasets/list"
            f"?size={self.page_size}&page={page_number}&sort=updatedAt,DESC"
        )

    async def fetch_page(
        self,
        session: SessionContext,
        category_id: str,
        page_number: int,
    ) -> PageResult:
        """Fetch and parse one listing page.

        Parameters
        ----------
        session : SessionContext
            Live session whose cookies and fingerprint are attached
        category_id : str
            Category filter value
        page_number : int
            Zero-based page index

        Returns
        -------
        PageResult
            Total element count and the page's records, deduplicated by id

        Raises
        ------
        BlockedResponse
            The body is not a listing payload (HTML challenge, garbage)
        TransportError
            The executor failed, or a listing payload came with a non-2xx status
        """
        self.calls += 1
        body = orjson.dumps(build_filter_body(category_id)).decode()
        response = await self.executor.request(
            "POST",
            self.listing_url(page_number),
            session_headers(session, self.settings.base_url, self.profile),
            body,
        )

        data = parse_json_body(response.text, response.status)
        try:
            payload = ListingPayload.model_validate(data)
        except ValidationError as exc:
            raise BlockedResponse(
                f"unexpected listing payload: {exc.error_count()} error(s)",
                status=response.status,
            ) from exc

        if response.status >= 400:
            raise TransportError(
                f"listing returned HTTP {response.status}", status=response.status
            )

        category = self.categories.get(category_id) or Category(id=category_id)
        records: List[Record] = []
        seen: set[str] = set()
        for item in payload.content:
            external_id = get_external_id(item)
            if external_id is None:
                LOGGER.debug("Dropping listing item without id in %s", category_id)
                continue
            if external_id in seen:
                continue
            seen.add(external_id)
            records.append(to_record(item, category, self.settings.base_url))

        LOGGER.debug(
            "Fetched %s page %d: %d records (total %d)",
            category_id,
            page_number,
            len(records),
            payload.totalElements,
        )
        return PageResult(total_elements=payload.totalElements, records=records)
