"""Static category partitioning and the per-worker crawl loop."""
from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence, TypeVar

from catalog_etl.antibot.pacing import Sleeper, pause
from catalog_etl.checkpoint import Checkpointer
from catalog_etl.collector.enricher import ResourceEnricher
from catalog_etl.collector.refresher import SessionRefresher
from catalog_etl.errors import PersistenceError
from catalog_etl.models import (
    Category,
    CategoryResult,
    CategoryState,
    CrawlCheckpoint,
    EnrichmentOutcome,
    PageResult,
    WorkerReport,
    utcnow,
)
from catalog_etl.upsert import RecordUpserter

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


def partition_categories(categories: Sequence[T], worker_index: int, worker_count: int) -> List[T]:
    """Contiguous, balanced slice of ``categories`` for one worker.

    Slices for ``worker_index`` in ``range(worker_count)`` are disjoint and
    together cover the whole list; their sizes differ by at most one.

    Raises
    ------
    ValueError
        If ``worker_count < 1`` or ``worker_index`` is outside ``[0, worker_count)``
    """
    if worker_count < 1:
        raise ValueError(f"worker_count must be >= 1, got {worker_count}")
    if not 0 <= worker_index < worker_count:
        raise ValueError(
            f"worker_index must be in [0, {worker_count}), got {worker_index}"
        )
    total = len(categories)
    start = worker_index * total // worker_count
    end = (worker_index + 1) * total // worker_count
    return list(categories[start:end])


def resume_categories(
    categories: Sequence[Category],
    checkpoint: Optional[CrawlCheckpoint],
    worker_count: int,
) -> List[Category]:
    """Drop the categories a previous run of the same worker already finished."""
    if checkpoint is None:
        return list(categories)
    if checkpoint.worker_count != worker_count:
        LOGGER.warning(
            "Checkpoint was written for %d workers, not %d; starting over",
            checkpoint.worker_count,
            worker_count,
        )
        return list(categories)

    ids = [category.id for category in categories]
    if checkpoint.current_category in ids:
        return list(categories[ids.index(checkpoint.current_category):])
    if checkpoint.current_category is None:
        LOGGER.info("Previous run of this worker finished; nothing to resume")
        return []
    return list(categories)


class PartitionCoordinator:
    """Drives one worker's categories through the crawl state machine.

    Per category: ``PENDING -> FETCHING_PAGE(n)``; a good page is persisted
    and the loop moves to ``n + 1``; a blocked page goes through
    ``REFRESHING_SESSION`` and is retried once; a failed retry ends the
    category as ``CATEGORY_SKIPPED``. A category whose pages all arrived ends
    as ``CATEGORY_DONE``.
    """

    def __init__(
        self,
        worker_index: int,
        worker_count: int,
        categories: Sequence[Category],
        refresher: SessionRefresher,
        upserter: RecordUpserter,
        *,
        enricher: Optional[ResourceEnricher] = None,
        checkpointer: Optional[Checkpointer] = None,
        delay_between_pages: float = 1.0,
        delay_between_categories: float = 2.0,
        sleep: Optional[Sleeper] = None,
        completed_before: int = 0,
    ) -> None:
        self.worker_index = worker_index
        self.worker_count = worker_count
        self.categories = list(categories)
        self.refresher = refresher
        self.upserter = upserter
        self.enricher = enricher
        self.checkpointer = checkpointer
        self.delay_between_pages = delay_between_pages
        self.delay_between_categories = delay_between_categories
        self._sleep = sleep
        self.history: Dict[str, List[CategoryState]] = {}
        self.categories_completed = completed_before
        self.records_saved = 0
        self._stopping = False

    def request_stop(self) -> None:
        """Finish the current page, then stop before the next one."""
        LOGGER.info("[worker %d] Stop requested", self.worker_index)
        self._stopping = True

    def _transition(self, result: CategoryResult, state: CategoryState) -> None:
        LOGGER.debug(
            "[worker %d] %s: %s -> %s",
            self.worker_index,
            result.category_id,
            result.state.value,
            state.value,
        )
        result.state = state
        self.history.setdefault(result.category_id, []).append(state)

    def _progress(self, current_category: Optional[str], current_page: int = 0) -> CrawlCheckpoint:
        return CrawlCheckpoint(
            worker_index=self.worker_index,
            worker_count=self.worker_count,
            categories_completed=self.categories_completed,
            records_saved=self.records_saved,
            current_category=current_category,
            current_page=current_page,
        )

    async def _fetch(self, result: CategoryResult, page_number: int) -> Optional[PageResult]:
        refreshes = self.refresher.refreshes
        page = await self.refresher.fetch_page_resilient(result.category_id, page_number)
        if self.refresher.refreshes > refreshes:
            self._transition(result, CategoryState.REFRESHING_SESSION)
            if page is not None:
                self._transition(result, CategoryState.FETCHING_PAGE)
        return page

    async def _persist_page(self, page: PageResult, result: CategoryResult, seen: set[str]) -> None:
        for record in page.records:
            if record.external_id in seen:
                result.duplicates += 1
                continue
            seen.add(record.external_id)
            try:
                saved = await self.upserter.upsert(record)
            except PersistenceError:
                result.failed += 1
                continue
            result.saved += 1
            self.records_saved += 1

            if self.enricher is not None:
                outcome = await self.enricher.enrich(saved)
                if outcome == EnrichmentOutcome.OK:
                    result.enriched += 1

    async def sync_category(self, category: Category) -> CategoryResult:
        """Fetch every page of one category and persist its records."""
        result = CategoryResult(category_id=category.id)
        self.history[category.id] = [CategoryState.PENDING]
        self._transition(result, CategoryState.FETCHING_PAGE)

        page = await self._fetch(result, 0)
        if page is None:
            self._transition(result, CategoryState.CATEGORY_SKIPPED)
            return result

        result.total_elements = page.total_elements
        pages = self.refresher.pager.total_pages(page.total_elements)
        seen: set[str] = set()

        page_number = 0
        while True:
            result.pages_fetched += 1
            await self._persist_page(page, result, seen)
            if self.checkpointer is not None:
                self.checkpointer.maybe_persist(self._progress(category.id, page_number))

            page_number += 1
            if page_number >= pages:
                break
            if self._stopping:
                LOGGER.info(
                    "[worker %d] %s stopped at page %d", self.worker_index, category.id, page_number
                )
                break

            await pause(self.delay_between_pages, self.delay_between_pages / 2, self._sleep)
            page = await self._fetch(result, page_number)
            if page is None:
                LOGGER.warning(
                    "[worker %d] Skipping rest of %s after page %d",
                    self.worker_index,
                    category.id,
                    page_number,
                )
                self._transition(result, CategoryState.CATEGORY_SKIPPED)
                return result

        if self._stopping and page_number < pages:
            return result
        self._transition(result, CategoryState.CATEGORY_DONE)
        return result

    async def run(self) -> WorkerReport:
        """Process every assigned category in static order."""
        report = WorkerReport(worker_index=self.worker_index, worker_count=self.worker_count)
        LOGGER.info(
            "[worker %d/%d] Starting with %d categories",
            self.worker_index,
            self.worker_count,
            len(self.categories),
        )

        for position, category in enumerate(self.categories):
            if self._stopping:
                break
            if position > 0:
                await pause(
                    self.delay_between_categories, self.delay_between_categories / 2, self._sleep
                )

            result = await self.sync_category(category)
            report.categories.append(result)
            if result.state not in (CategoryState.CATEGORY_DONE, CategoryState.CATEGORY_SKIPPED):
                break

            self.categories_completed += 1
            LOGGER.info(
                "[worker %d] %s %s: saved %d/%d (failed %d, enriched %d)",
                self.worker_index,
                category.id,
                "done" if result.state == CategoryState.CATEGORY_DONE else "skipped",
                result.saved,
                result.total_elements,
                result.failed,
                result.enriched,
            )
            if self.checkpointer is not None:
                following = self.categories[position + 1] if position + 1 < len(self.categories) else None
                self.checkpointer.maybe_persist(
                    self._progress(following.id if following else None),
                    category_finished=True,
                )

        report.finished_at = utcnow()
        LOGGER.info(
            "[worker %d] Finished: %d categories, %d saved, %d failed, %d skipped",
            self.worker_index,
            self.categories_completed,
            report.records_saved,
            report.records_failed,
            len(report.skipped_categories),
        )
        return report
