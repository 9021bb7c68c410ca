import asyncio

import pytest

from conftest import (
    BASE_URL,
    FailingStore,
    blocked_response,
    detail_response,
    listing_response,
    no_sleep,
)
from catalog_etl.antibot.pacing import RateLimiter
from catalog_etl.checkpoint import Checkpointer, FileCheckpointSink
from catalog_etl.collector.enricher import ResourceEnricher
from catalog_etl.collector.pager import CategoryPager
from catalog_etl.collector.refresher import SessionRefresher
from catalog_etl.models import Category, CategoryState
from catalog_etl.partition import PartitionCoordinator
from catalog_etl.upsert import RecordUpserter


def _coordinator(refresher, store, categories, **kwargs):
    return PartitionCoordinator(
        0,
        1,
        categories,
        refresher,
        RecordUpserter(store),
        delay_between_pages=0,
        delay_between_categories=0,
        sleep=no_sleep,
        **kwargs,
    )


def test_all_pages_are_fetched_and_saved(executor, refresher, store, category):
    executor.add_category("health", 250)
    coordinator = _coordinator(refresher, store, [category])

    report = asyncio.run(coordinator.run())

    assert executor.listing_calls() == [("health", 0), ("health", 1), ("health", 2)]
    assert len(store.records) == 250
    result = report.categories[0]
    assert result.state == CategoryState.CATEGORY_DONE
    assert (result.total_elements, result.pages_fetched, result.saved) == (250, 3, 250)
    assert report.records_saved == 250


def test_blocked_page_recovers_after_refresh(executor, provider, refresher, store, category):
    executor.add_category("health", 250)
    executor.pages[("health", 1)].insert(0, blocked_response())
    coordinator = _coordinator(refresher, store, [category])

    report = asyncio.run(coordinator.run())

    assert provider.acquisitions == 1
    assert executor.listing_calls() == [
        ("health", 0),
        ("health", 1),
        ("health", 1),
        ("health", 2),
    ]
    assert len(store.records) == 250
    assert report.categories[0].state == CategoryState.CATEGORY_DONE
    assert CategoryState.REFRESHING_SESSION in coordinator.history["health"]


def test_failed_retry_skips_rest_of_category(executor, provider, refresher, store, category):
    executor.add_category("health", 250)
    executor.pages[("health", 1)] = [blocked_response()]
    executor.add_category("justice", 10)
    coordinator = _coordinator(refresher, store, [category, Category(id="justice")])

    report = asyncio.run(coordinator.run())

    health, justice = report.categories
    assert health.state == CategoryState.CATEGORY_SKIPPED
    assert health.saved == 100
    assert provider.acquisitions == 1
    assert ("health", 2) not in executor.listing_calls()
    assert justice.state == CategoryState.CATEGORY_DONE
    assert justice.saved == 10
    assert report.skipped_categories == ["health"]
    assert coordinator.history["health"] == [
        CategoryState.PENDING,
        CategoryState.FETCHING_PAGE,
        CategoryState.REFRESHING_SESSION,
        CategoryState.CATEGORY_SKIPPED,
    ]


def test_unreachable_first_page_skips_category(executor, refresher, store, category):
    executor.add_page("health", 0, blocked_response())

    report = asyncio.run(_coordinator(refresher, store, [category]).run())

    assert report.categories[0].state == CategoryState.CATEGORY_SKIPPED
    assert report.categories[0].pages_fetched == 0
    assert store.records == {}


def test_duplicates_across_pages_are_saved_once(executor, refresher, store, category):
    executor.add_page("health", 0, listing_response(4, ["a", "b"]))
    executor.add_page("health", 1, listing_response(4, ["b", "c"]))
    refresher.pager.settings.page_size = 2

    report = asyncio.run(_coordinator(refresher, store, [category]).run())

    result = report.categories[0]
    assert result.saved == 3
    assert result.duplicates == 1
    assert sorted(store.records) == ["a", "b", "c"]


def test_persistence_failures_are_counted_and_skipped(executor, refresher, category):
    store = FailingStore({"health-3", "health-7"})
    executor.add_category("health", 10)

    report = asyncio.run(_coordinator(refresher, store, [category]).run())

    result = report.categories[0]
    assert result.state == CategoryState.CATEGORY_DONE
    assert result.saved == 8
    assert result.failed == 2
    assert report.records_failed == 2


def test_empty_category_is_done(executor, refresher, store, category):
    executor.add_page("health", 0, listing_response(0, []))

    report = asyncio.run(_coordinator(refresher, store, [category]).run())

    assert report.categories[0].state == CategoryState.CATEGORY_DONE
    assert executor.listing_calls() == [("health", 0)]


def test_records_are_enriched_when_enricher_given(executor, refresher, store, category):
    executor.add_category("health", 3)
    for n in range(3):
        executor.details[f"health-{n}"] = detail_response(
            [{"id": f"r{n}", "url": f"https://portal.test/r{n}.csv", "format": "csv"}]
        )
    upserter = RecordUpserter(store)
    enricher = ResourceEnricher(
        executor, refresher, upserter, RateLimiter(0, sleep=no_sleep), BASE_URL
    )
    coordinator = PartitionCoordinator(
        0, 1, [category], refresher, upserter,
        enricher=enricher, delay_between_pages=0, delay_between_categories=0, sleep=no_sleep,
    )

    report = asyncio.run(coordinator.run())

    assert report.categories[0].enriched == 3
    assert all(len(record.resources) == 1 for record in store.records.values())


def test_checkpoints_follow_finished_categories(executor, refresher, store, settings):
    executor.add_category("a", 5)
    executor.add_category("b", 5)
    sink = FileCheckpointSink(settings.checkpoint_dir)
    coordinator = _coordinator(
        refresher,
        store,
        [Category(id="a"), Category(id="b")],
        checkpointer=Checkpointer(sink, every_categories=1, every_seconds=3600),
    )

    asyncio.run(coordinator.run())

    snapshot = sink.read(0)
    assert snapshot.categories_completed == 2
    assert snapshot.records_saved == 10
    assert snapshot.current_category is None


def test_stop_request_ends_after_current_category(executor, refresher, store):
    executor.add_category("a", 5)
    executor.add_category("b", 5)
    coordinator = _coordinator(refresher, store, [Category(id="a"), Category(id="b")])

    async def _run():
        original = coordinator.sync_category

        async def _sync_then_stop(category):
            result = await original(category)
            coordinator.request_stop()
            return result

        coordinator.sync_category = _sync_then_stop
        return await coordinator.run()

    report = asyncio.run(_run())

    assert [r.category_id for r in report.categories] == ["a"]
    assert executor.listing_calls("b") == []


@pytest.mark.parametrize("total", [1, 99, 100, 101, 350])
def test_pagination_completeness(executor, provider, settings, session, store, total):
    category = Category(id="stats")
    executor.add_category("stats", total)
    pager = CategoryPager(executor, settings)
    refresher = SessionRefresher(provider, pager, session=session)

    report = asyncio.run(_coordinator(refresher, store, [category]).run())

    assert pager.calls == -(-total // 100)
    assert report.categories[0].saved == total
