from __future__ import annotations

import json
from typing import Dict, List, Optional, Tuple, Union
from urllib.parse import parse_qs, urlsplit

import pytest

from catalog_etl.antibot.session import SessionProvider
from catalog_etl.collector.executor import BrowserResponse
from catalog_etl.collector.pager import CategoryPager
from catalog_etl.collector.refresher import SessionRefresher
from catalog_etl.config import SyncSettings
from catalog_etl.errors import PersistenceError, TransportError
from catalog_etl.models import Category, Record, SessionContext
from catalog_etl.upsert import MemoryRecordStore

BASE_URL = "https://portal.test"

Scripted = Union[BrowserResponse, Exception]


def item(external_id: str, **extra) -> dict:
    data = {
        "id": external_id,
        "titleAr": f"مجموعة {external_id}",
        "titleEn": f"Dataset {external_id}",
        "descriptionAr": f"وصف {external_id}",
    }
    data.update(extra)
    return data


def listing_response(total: int, ids: List[str], status: int = 200) -> BrowserResponse:
    body = {"totalElements": total, "content": [item(i) for i in ids]}
    return BrowserResponse(status=status, text=json.dumps(body, ensure_ascii=False))


def blocked_response() -> BrowserResponse:
    return BrowserResponse(status=403, text="<html><body>Request blocked</body></html>")


def detail_response(resources: List[dict], **extra) -> BrowserResponse:
    body = {"resources": resources}
    body.update(extra)
    return BrowserResponse(status=200, text=json.dumps(body, ensure_ascii=False))


def paged_ids(prefix: str, total: int, page_size: int) -> List[List[str]]:
    ids = [f"{prefix}-{n}" for n in range(total)]
    return [ids[start:start + page_size] for start in range(0, total, page_size)]


class FakeExecutor:
    """Scripted ``BrowserRequestExecutor``.

    Listing responses are queued per ``(category, page)``; the last queued
    item is sticky so a single blocked response keeps blocking.
    """

    def __init__(
        self,
        *,
        observed: Optional[Dict[str, str]] = None,
        cookies: Optional[Dict[str, str]] = None,
        open_failures: int = 0,
    ) -> None:
        self.pages: Dict[Tuple[str, int], List[Scripted]] = {}
        self.details: Dict[str, Scripted] = {}
        self.observed = observed or {}
        self.cookie_jar = cookies if cookies is not None else {"session": "s1"}
        self.open_failures = open_failures
        self.requests: List[Tuple[str, str, Dict[str, str], Optional[str]]] = []
        self.opened: List[str] = []
        self.resets = 0
        self.closed = False

    def add_page(self, category_id: str, page: int, *responses: Scripted) -> None:
        self.pages.setdefault((category_id, page), []).extend(responses)

    def add_category(self, category_id: str, total: int, page_size: int = 100) -> None:
        chunks = paged_ids(category_id, total, page_size) or [[]]
        for page, ids in enumerate(chunks):
            self.add_page(category_id, page, listing_response(total, ids))

    def listing_calls(self, category_id: Optional[str] = None) -> List[Tuple[str, int]]:
        calls = []
        for method, url, _, body in self.requests:
            if method != "POST":
                continue
            category = json.loads(body)["categories"][0]
            page = int(parse_qs(urlsplit(url).query)["page"][0])
            if category_id is None or category == category_id:
                calls.append((category, page))
        return calls

    async def reset(self) -> None:
        self.resets += 1

    async def open(self, url: str, timeout_ms: int) -> None:
        self.opened.append(url)
        if self.open_failures > 0:
            self.open_failures -= 1
            raise TransportError(f"navigation to {url} timed out")

    async def scroll(self) -> None:
        return None

    async def cookies(self, url: str) -> Dict[str, str]:
        return dict(self.cookie_jar)

    def observed_header(self, name: str) -> Optional[str]:
        return self.observed.get(name)

    async def request(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Optional[str] = None,
    ) -> BrowserResponse:
        self.requests.append((method, url, headers, body))
        if method == "POST":
            category = json.loads(body)["categories"][0]
            page = int(parse_qs(urlsplit(url).query)["page"][0])
            queue = self.pages.get((category, page))
            if not queue:
                raise TransportError(f"no scripted page {category}/{page}")
            scripted = queue.pop(0) if len(queue) > 1 else queue[0]
        else:
            external_id = url.rstrip("/").rsplit("/", 1)[-1]
            scripted = self.details.get(external_id)
            if scripted is None:
                raise TransportError(f"no scripted detail {external_id}")
        if isinstance(scripted, Exception):
            raise scripted
        return scripted

    async def close(self) -> None:
        self.closed = True


class FailingStore(MemoryRecordStore):
    """Memory store rejecting writes for selected ids."""

    def __init__(self, failing_ids) -> None:
        super().__init__()
        self.failing_ids = set(failing_ids)

    async def upsert(self, record: Record) -> bool:
        if record.external_id in self.failing_ids:
            raise PersistenceError(record.external_id, "connection reset")
        return await super().upsert(record)


async def no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def settings(tmp_path) -> SyncSettings:
    return SyncSettings(
        base_url=BASE_URL,
        database_url="postgresql://unused",
        settle_delay=0.0,
        delay_between_pages=0.0,
        delay_between_categories=0.0,
        enrich_min_delay=0.0,
        checkpoint_dir=tmp_path / "checkpoints",
    )


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def store() -> MemoryRecordStore:
    return MemoryRecordStore()


@pytest.fixture
def session() -> SessionContext:
    return SessionContext(cookies={"session": "s0"}, fingerprint="f" * 32)


@pytest.fixture
def category() -> Category:
    return Category(id="health", display_name="الصحة")


@pytest.fixture
def provider(executor, settings) -> SessionProvider:
    return SessionProvider(executor, settings, sleep=no_sleep)


@pytest.fixture
def pager(executor, settings, category) -> CategoryPager:
    return CategoryPager(executor, settings, categories={category.id: category})


@pytest.fixture
def refresher(provider, pager, session) -> SessionRefresher:
    return SessionRefresher(provider, pager, session=session)
