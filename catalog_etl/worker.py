"""Assembly of one sync worker process."""
from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from catalog_etl.antibot.pacing import RateLimiter, Sleeper
from catalog_etl.antibot.session import SessionProvider
from catalog_etl.checkpoint import Checkpointer, FileCheckpointSink
from catalog_etl.collector.discovery import discover_categories
from catalog_etl.collector.enricher import EnrichmentBackfill, ResourceEnricher
from catalog_etl.collector.executor import BrowserRequestExecutor, PlaywrightExecutor
from catalog_etl.collector.http_executor import HttpxRequestExecutor
from catalog_etl.collector.pager import CategoryPager
from catalog_etl.collector.refresher import SessionRefresher
from catalog_etl.config import SyncSettings, load_categories
from catalog_etl.errors import PersistenceError
from catalog_etl.models import Category, EnrichmentReport, WorkerReport
from catalog_etl.partition import PartitionCoordinator, partition_categories, resume_categories
from catalog_etl.upsert import MemoryRecordStore, PostgresRecordStore, RecordStore, RecordUpserter

LOGGER = logging.getLogger(__name__)

EXECUTORS = ("playwright", "httpx")


@dataclass
class WorkerConfig:
    """Worker configuration."""

    worker_index: int
    worker_count: int
    categories_file: Optional[Path] = None
    enrich: bool = False
    dry_run: bool = False
    resume: bool = False
    executor: str = "playwright"
    handle_signals: bool = True


def build_executor(name: str, settings: SyncSettings) -> BrowserRequestExecutor:
    if name == "playwright":
        return PlaywrightExecutor(headless=settings.headless)
    if name == "httpx":
        return HttpxRequestExecutor()
    raise ValueError(f"Unknown executor: {name}. Available: {list(EXECUTORS)}")


def build_store(settings: SyncSettings, dry_run: bool) -> RecordStore:
    if dry_run:
        return MemoryRecordStore()
    return PostgresRecordStore(settings.database_url)


def _install_signal_handlers(request_stop: Callable[[], None]) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_stop)
        except (NotImplementedError, RuntimeError, ValueError) as exc:
            LOGGER.debug("Signal handler for %s not installed: %s", sig, exc)


async def run_worker(
    config: WorkerConfig,
    settings: SyncSettings,
    *,
    categories: Optional[List[Category]] = None,
    executor: Optional[BrowserRequestExecutor] = None,
    store: Optional[RecordStore] = None,
    sleep: Optional[Sleeper] = None,
) -> WorkerReport:
    """Run one worker over its slice of the category list.

    Raises
    ------
    SessionAcquisitionError
        If no session could be bootstrapped at start-up
    ValueError
        If the worker index/count pair is invalid
    """
    all_categories = categories if categories is not None else load_categories(config.categories_file)
    assigned = partition_categories(all_categories, config.worker_index, config.worker_count)

    checkpointer = Checkpointer(
        FileCheckpointSink(settings.checkpoint_dir),
        every_categories=settings.checkpoint_every_categories,
        every_seconds=settings.checkpoint_every_seconds,
    )
    remaining = assigned
    if config.resume:
        remaining = resume_categories(
            assigned, checkpointer.load(config.worker_index), config.worker_count
        )
        LOGGER.info(
            "[worker %d] Resuming with %d of %d categories",
            config.worker_index,
            len(remaining),
            len(assigned),
        )

    executor = executor or build_executor(config.executor, settings)
    store = store or build_store(settings, config.dry_run)
    try:
        try:
            await store.ensure_schema()
        except PersistenceError as exc:
            LOGGER.error(
                "[worker %d] Store unavailable, records will be counted as failed: %s",
                config.worker_index,
                exc,
            )

        provider = SessionProvider(executor, settings, sleep=sleep)
        session = await provider.acquire_with_retry()

        pager = CategoryPager(
            executor, settings, categories={category.id: category for category in all_categories}
        )
        refresher = SessionRefresher(provider, pager, session=session)
        upserter = RecordUpserter(store)
        enricher = None
        if config.enrich:
            limiter = RateLimiter(
                settings.enrich_min_delay, jitter=settings.enrich_min_delay / 2, sleep=sleep
            )
            enricher = ResourceEnricher(executor, refresher, upserter, limiter, settings.base_url)

        coordinator = PartitionCoordinator(
            config.worker_index,
            config.worker_count,
            remaining,
            refresher,
            upserter,
            enricher=enricher,
            checkpointer=checkpointer,
            delay_between_pages=settings.delay_between_pages,
            delay_between_categories=settings.delay_between_categories,
            sleep=sleep,
            completed_before=len(assigned) - len(remaining),
        )
        if config.handle_signals:
            _install_signal_handlers(coordinator.request_stop)
        return await coordinator.run()
    finally:
        await executor.close()
        await store.close()


async def run_discovery(
    settings: SyncSettings,
    *,
    executor_name: str = "playwright",
    executor: Optional[BrowserRequestExecutor] = None,
) -> List[Category]:
    """Bootstrap a session and list the portal's categories."""
    executor = executor or build_executor(executor_name, settings)
    try:
        session = await SessionProvider(executor, settings).acquire_with_retry()
        return await discover_categories(executor, session, settings.base_url)
    finally:
        await executor.close()


async def run_enrichment(
    config: WorkerConfig,
    settings: SyncSettings,
    *,
    executor: Optional[BrowserRequestExecutor] = None,
    store: Optional[RecordStore] = None,
    sleep: Optional[Sleeper] = None,
) -> EnrichmentReport:
    """Backfill resources for this worker's share of the unenriched records.

    The store's pending ids are split with the same contiguous partitioning
    as categories, so ``W`` enrichment workers never overlap.

    Raises
    ------
    PersistenceError
        If the pending ids cannot be read from the store
    SessionAcquisitionError
        If no session could be bootstrapped at start-up
    """
    executor = executor or build_executor(config.executor, settings)
    store = store or build_store(settings, config.dry_run)
    try:
        pending = await store.unenriched_ids()
        assigned = partition_categories(pending, config.worker_index, config.worker_count)
        LOGGER.info(
            "[worker %d] %d of %d unenriched records assigned",
            config.worker_index,
            len(assigned),
            len(pending),
        )
        if not assigned:
            return EnrichmentReport(
                worker_index=config.worker_index, worker_count=config.worker_count
            )

        provider = SessionProvider(executor, settings, sleep=sleep)
        session = await provider.acquire_with_retry()
        refresher = SessionRefresher(provider, CategoryPager(executor, settings), session=session)
        limiter = RateLimiter(
            settings.enrich_min_delay, jitter=settings.enrich_min_delay / 2, sleep=sleep
        )
        enricher = ResourceEnricher(
            executor, refresher, RecordUpserter(store), limiter, settings.base_url
        )
        backfill = EnrichmentBackfill(
            enricher,
            store,
            assigned,
            worker_index=config.worker_index,
            worker_count=config.worker_count,
        )
        if config.handle_signals:
            _install_signal_handlers(backfill.request_stop)
        return await backfill.run()
    finally:
        await executor.close()
        await store.close()
