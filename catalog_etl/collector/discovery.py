"""Category discovery through the portal's categories endpoint."""
from __future__ import annotations

import logging
from typing import Any, List

from catalog_etl.collector.executor import BrowserRequestExecutor
from catalog_etl.collector.pager import parse_json_body, session_headers
from catalog_etl.errors import BlockedResponse, TransportError
from catalog_etl.mapper import to_category
from catalog_etl.models import Category, SessionContext

LOGGER = logging.getLogger(__name__)


def _category_entries(data: Any) -> List[Any]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in ("content", "data", "categories"):
            if isinstance(data.get(key), list):
                return data[key]
    raise BlockedResponse("unexpected categories payload")


async def discover_categories(
    executor: BrowserRequestExecutor,
    session: SessionContext,
    base_url: str,
) -> List[Category]:
    """Fetch ``/api/categories`` and map every entry that carries an id."""
    base_url = base_url.rstrip("/")
    headers = session_headers(session, base_url)
    headers.pop("content-type", None)
    response = await executor.request("GET", f"{base_url}/api/categories", headers)
    data = parse_json_body(response.text, response.status)
    if response.status >= 400:
        raise TransportError(f"categories returned HTTP {response.status}", status=response.status)

    categories: List[Category] = []
    seen: set[str] = set()
    for raw in _category_entries(data):
        if not isinstance(raw, dict):
            continue
        category = to_category(raw)
        if category is None or category.id in seen:
            continue
        seen.add(category.id)
        categories.append(category)

    LOGGER.info(
        "Discovered %d categories (%d datasets expected)",
        len(categories),
        sum(c.expected_count for c in categories),
    )
    return categories
