import pytest

from catalog_etl.config import load_categories
from catalog_etl.models import Category, CrawlCheckpoint
from catalog_etl.partition import partition_categories, resume_categories


@pytest.fixture(scope="module")
def categories():
    return load_categories()


def test_partitions_cover_every_category_exactly_once(categories):
    for worker_count in range(1, len(categories) + 1):
        slices = [
            partition_categories(categories, index, worker_count)
            for index in range(worker_count)
        ]
        flattened = [category for chunk in slices for category in chunk]
        assert flattened == categories
        sizes = [len(chunk) for chunk in slices]
        assert max(sizes) - min(sizes) <= 1


def test_more_workers_than_categories_leaves_some_idle():
    categories = ["a", "b"]
    slices = [partition_categories(categories, index, 4) for index in range(4)]
    assert sorted(c for chunk in slices for c in chunk) == ["a", "b"]
    assert sum(1 for chunk in slices if not chunk) == 2


def test_three_workers_split_contiguously():
    categories = list("abcdefg")
    assert partition_categories(categories, 0, 3) == ["a", "b"]
    assert partition_categories(categories, 1, 3) == ["c", "d"]
    assert partition_categories(categories, 2, 3) == ["e", "f", "g"]


@pytest.mark.parametrize("index, count", [(0, 0), (-1, 3), (3, 3), (5, 2)])
def test_invalid_worker_arguments(index, count):
    with pytest.raises(ValueError):
        partition_categories(["a"], index, count)


def _categories(*ids):
    return [Category(id=i) for i in ids]


def test_resume_starts_at_current_category():
    cats = _categories("a", "b", "c")
    checkpoint = CrawlCheckpoint(worker_index=0, worker_count=2, current_category="b")
    assert [c.id for c in resume_categories(cats, checkpoint, 2)] == ["b", "c"]


def test_resume_after_finished_run_is_empty():
    cats = _categories("a", "b")
    checkpoint = CrawlCheckpoint(worker_index=0, worker_count=2, categories_completed=2)
    assert resume_categories(cats, checkpoint, 2) == []


def test_resume_ignores_foreign_checkpoints():
    cats = _categories("a", "b")
    other_layout = CrawlCheckpoint(worker_index=0, worker_count=5, current_category="b")
    unknown = CrawlCheckpoint(worker_index=0, worker_count=2, current_category="zzz")
    assert resume_categories(cats, other_layout, 2) == cats
    assert resume_categories(cats, unknown, 2) == cats
    assert resume_categories(cats, None, 2) == cats
