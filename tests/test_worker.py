import asyncio

import pytest

from conftest import FakeExecutor, detail_response, no_sleep
from catalog_etl.checkpoint import FileCheckpointSink
from catalog_etl.errors import PersistenceError, SessionAcquisitionError
from catalog_etl.models import Category, CategoryState, CrawlCheckpoint, Record, Resource
from catalog_etl.upsert import MemoryRecordStore, RecordUpserter
from catalog_etl.worker import (
    WorkerConfig,
    build_executor,
    build_store,
    run_enrichment,
    run_worker,
)

CATEGORIES = [Category(id=name) for name in ("a", "b", "c", "d")]


def _config(**extra):
    data = {"worker_index": 1, "worker_count": 2, "handle_signals": False}
    data.update(extra)
    return WorkerConfig(**data)


def test_worker_syncs_only_its_slice(settings):
    executor = FakeExecutor()
    for category in CATEGORIES:
        executor.add_category(category.id, 3)
    store = MemoryRecordStore()

    report = asyncio.run(
        run_worker(
            _config(), settings, categories=CATEGORIES, executor=executor, store=store, sleep=no_sleep
        )
    )

    assert [r.category_id for r in report.categories] == ["c", "d"]
    assert all(r.state == CategoryState.CATEGORY_DONE for r in report.categories)
    assert sorted({record.category for record in store.records.values()}) == ["c", "d"]
    assert executor.resets == 1
    assert executor.closed is True
    assert FileCheckpointSink(settings.checkpoint_dir).read(1).categories_completed == 2


def test_worker_resume_skips_finished_categories(settings):
    FileCheckpointSink(settings.checkpoint_dir).write(
        CrawlCheckpoint(worker_index=1, worker_count=2, categories_completed=1, current_category="d")
    )
    executor = FakeExecutor()
    executor.add_category("d", 2)

    report = asyncio.run(
        run_worker(
            _config(resume=True),
            settings,
            categories=CATEGORIES,
            executor=executor,
            store=MemoryRecordStore(),
            sleep=no_sleep,
        )
    )

    assert [r.category_id for r in report.categories] == ["d"]
    assert executor.listing_calls("c") == []


def test_worker_fails_when_no_session_can_be_acquired(settings):
    executor = FakeExecutor(open_failures=100)

    with pytest.raises(SessionAcquisitionError):
        asyncio.run(
            run_worker(
                _config(),
                settings,
                categories=CATEGORIES,
                executor=executor,
                store=MemoryRecordStore(),
                sleep=no_sleep,
            )
        )
    assert executor.resets == settings.acquire_attempts
    assert executor.closed is True


def test_worker_enrichment_errors_do_not_stop_sync(settings):
    executor = FakeExecutor()
    executor.add_category("c", 1)
    executor.add_category("d", 1)

    report = asyncio.run(
        run_worker(
            _config(enrich=True),
            settings,
            categories=CATEGORIES,
            executor=executor,
            store=MemoryRecordStore(),
            sleep=no_sleep,
        )
    )

    assert [r.saved for r in report.categories] == [1, 1]
    assert [r.enriched for r in report.categories] == [0, 0]
    assert [m for m, *_ in executor.requests].count("GET") == 2


class UnavailableStore(MemoryRecordStore):
    """Store whose database is down for schema setup and every write."""

    async def ensure_schema(self):
        raise PersistenceError(None, "schema setup failed: connection refused")

    async def upsert(self, record):
        raise PersistenceError(record.external_id, "connection refused")


def test_worker_keeps_crawling_when_store_is_down(settings):
    executor = FakeExecutor()
    executor.add_category("c", 2)
    executor.add_category("d", 3)

    report = asyncio.run(
        run_worker(
            _config(),
            settings,
            categories=CATEGORIES,
            executor=executor,
            store=UnavailableStore(),
            sleep=no_sleep,
        )
    )

    assert executor.listing_calls() == [("c", 0), ("d", 0)]
    assert report.records_saved == 0
    assert report.records_failed == 5
    assert all(r.state == CategoryState.CATEGORY_DONE for r in report.categories)
    assert executor.closed is True


RESOURCE = Resource(external_id="r0", url="https://portal.test/files/r0.csv", format="CSV")


def _seeded_store():
    store = MemoryRecordStore()
    upserter = RecordUpserter(store)
    records = [Record(external_id="ds-0", name="Enriched", resources=[RESOURCE])]
    records += [Record(external_id=f"ds-{n}", name=f"Dataset {n}") for n in range(1, 5)]
    for record in records:
        asyncio.run(upserter.upsert(record))
    return store


def _details(executor, ids):
    for external_id in ids:
        executor.details[external_id] = detail_response(
            [{"id": f"{external_id}-csv", "url": f"https://portal.test/{external_id}.csv"}]
        )


def _detail_ids(executor):
    return [url.rsplit("/", 1)[-1] for method, url, *_ in executor.requests if method == "GET"]


def test_enrichment_backfills_only_records_without_resources(settings):
    store = _seeded_store()
    executor = FakeExecutor()
    _details(executor, ["ds-1", "ds-2", "ds-3"])

    report = asyncio.run(
        run_enrichment(
            _config(worker_index=0, worker_count=1),
            settings,
            executor=executor,
            store=store,
            sleep=no_sleep,
        )
    )

    assert _detail_ids(executor) == ["ds-1", "ds-2", "ds-3", "ds-4"]
    assert (report.assigned, report.ok, report.errors) == (4, 3, 1)
    assert store.records["ds-0"].resources == [RESOURCE]
    assert [r.external_id for r in store.records["ds-2"].resources] == ["ds-2-csv"]
    assert asyncio.run(store.unenriched_ids()) == ["ds-4"]
    assert executor.closed is True


def test_enrichment_splits_pending_ids_between_workers(settings):
    store = _seeded_store()
    executor = FakeExecutor()
    _details(executor, ["ds-1", "ds-2", "ds-3", "ds-4"])

    report = asyncio.run(
        run_enrichment(_config(), settings, executor=executor, store=store, sleep=no_sleep)
    )

    assert _detail_ids(executor) == ["ds-3", "ds-4"]
    assert report.ok == 2
    assert asyncio.run(store.unenriched_ids()) == ["ds-1", "ds-2"]


def test_enrichment_with_nothing_pending_skips_session(settings):
    executor = FakeExecutor()

    report = asyncio.run(
        run_enrichment(
            _config(), settings, executor=executor, store=MemoryRecordStore(), sleep=no_sleep
        )
    )

    assert report.assigned == 0
    assert executor.opened == []
    assert executor.closed is True


def test_builders(settings):
    assert isinstance(build_store(settings, dry_run=True), MemoryRecordStore)
    assert type(build_executor("httpx", settings)).__name__ == "HttpxRequestExecutor"
    with pytest.raises(ValueError):
        build_executor("selenium", settings)
