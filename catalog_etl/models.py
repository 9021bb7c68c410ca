"""Pydantic models shared across the catalog sync components."""
from __future__ import annotations

import time
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncStatus(str, Enum):
    """Persistence status of a record."""
    PENDING = "PENDING"
    SYNCED = "SYNCED"
    FAILED = "FAILED"


class CategoryState(str, Enum):
    """Per (worker, category) crawl state."""
    PENDING = "pending"
    FETCHING_PAGE = "fetching_page"
    REFRESHING_SESSION = "refreshing_session"
    CATEGORY_DONE = "category_done"
    CATEGORY_SKIPPED = "category_skipped"


class EnrichmentOutcome(str, Enum):
    OK = "ok"
    SKIPPED = "skipped"
    ERROR = "error"


class Category(BaseModel):
    """Static catalog category, immutable for a run."""

    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str = ""
    expected_count: int = 0


class Resource(BaseModel):
    """Downloadable attachment of a record."""

    external_id: str = ""
    url: str
    display_name: str = "Resource"
    format: str = ""
    columns: List[str] = Field(default_factory=list)


class Record(BaseModel):
    """Catalog record keyed by the portal's own dataset id.

    ``resources`` and ``columns`` stay ``None`` when the payload did not
    carry them (listing pages never do), which tells the store to keep
    whatever an earlier enrichment pass wrote.
    """

    external_id: str
    name: str = ""
    name_localized: str = ""
    description: str = ""
    category: str = ""
    source_url: str = ""
    organization: Optional[str] = None
    resources: Optional[List[Resource]] = None
    columns: Optional[List[str]] = None
    sync_status: SyncStatus = SyncStatus.PENDING
    last_synced_at: Optional[datetime] = None


class PageResult(BaseModel):
    """One parsed listing page."""

    total_elements: int
    records: List[Record] = Field(default_factory=list)


class SessionContext(BaseModel):
    """Authenticated browsing state owned by exactly one worker."""

    model_config = ConfigDict(frozen=True)

    cookies: Dict[str, str] = Field(default_factory=dict)
    fingerprint: str
    user_agent: str = ""
    acquired_at: float = Field(default_factory=time.monotonic)

    def cookie_header(self) -> str:
        return "; ".join(f"{name}={value}" for name, value in self.cookies.items())

    def age(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.monotonic()) - self.acquired_at

    def is_expired(self, ttl_seconds: float, now: Optional[float] = None) -> bool:
        return self.age(now) >= ttl_seconds


class CrawlCheckpoint(BaseModel):
    """Advisory progress snapshot for one worker."""

    worker_index: int
    worker_count: int
    categories_completed: int = 0
    records_saved: int = 0
    current_category: Optional[str] = None
    current_page: int = 0
    timestamp: datetime = Field(default_factory=utcnow)


class CategoryResult(BaseModel):
    """Outcome of syncing one category."""

    category_id: str
    state: CategoryState = CategoryState.PENDING
    total_elements: int = 0
    pages_fetched: int = 0
    saved: int = 0
    failed: int = 0
    duplicates: int = 0
    enriched: int = 0


class WorkerReport(BaseModel):
    """Summary of one worker run."""

    worker_index: int
    worker_count: int
    categories: List[CategoryResult] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @property
    def records_saved(self) -> int:
        return sum(result.saved for result in self.categories)

    @property
    def records_failed(self) -> int:
        return sum(result.failed for result in self.categories)

    @property
    def skipped_categories(self) -> List[str]:
        return [
            result.category_id
            for result in self.categories
            if result.state == CategoryState.CATEGORY_SKIPPED
        ]


class EnrichmentReport(BaseModel):
    """Summary of one resource backfill run."""

    worker_index: int
    worker_count: int
    assigned: int = 0
    ok: int = 0
    skipped: int = 0
    errors: int = 0
    missing: int = 0
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @property
    def processed(self) -> int:
        return self.ok + self.skipped + self.errors
