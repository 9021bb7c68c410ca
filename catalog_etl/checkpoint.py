"""Advisory progress snapshots, one file per worker."""
from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import Callable, Optional, Protocol

import orjson

from catalog_etl.models import CrawlCheckpoint

LOGGER = logging.getLogger(__name__)


class CheckpointSink(Protocol):
    def write(self, checkpoint: CrawlCheckpoint) -> None:
        ...

    def read(self, worker_index: int) -> Optional[CrawlCheckpoint]:
        ...


class FileCheckpointSink:
    """Writes ``worker-<i>.json`` files atomically (temp file + rename)."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def path_for(self, worker_index: int) -> Path:
        return self.directory / f"worker-{worker_index}.json"

    def write(self, checkpoint: CrawlCheckpoint) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(checkpoint.worker_index)
        tmp_path = path.with_name(path.name + ".tmp")
        tmp_path.write_bytes(
            orjson.dumps(checkpoint.model_dump(mode="json"), option=orjson.OPT_INDENT_2)
        )
        os.replace(tmp_path, path)

    def read(self, worker_index: int) -> Optional[CrawlCheckpoint]:
        path = self.path_for(worker_index)
        if not path.exists():
            return None
        return CrawlCheckpoint.model_validate(orjson.loads(path.read_bytes()))


class Checkpointer:
    """Persists progress every ``every_categories`` finished categories or
    ``every_seconds`` seconds, whichever comes first.

    Write failures are logged and swallowed; a checkpoint is never allowed to
    stop a crawl.
    """

    def __init__(
        self,
        sink: CheckpointSink,
        *,
        every_categories: int = 1,
        every_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.sink = sink
        self.every_categories = max(1, every_categories)
        self.every_seconds = every_seconds
        self._clock = clock
        self._last_persist = clock()
        self._categories_since = 0
        self.writes = 0

    def persist(self, progress: CrawlCheckpoint) -> bool:
        try:
            self.sink.write(progress)
        except (OSError, TypeError, ValueError) as exc:
            LOGGER.warning(
                "Could not write checkpoint for worker %d: %s", progress.worker_index, exc
            )
            return False
        finally:
            self._last_persist = self._clock()
            self._categories_since = 0
        self.writes += 1
        LOGGER.debug(
            "Checkpoint saved: worker %d, %d categories, %d records",
            progress.worker_index,
            progress.categories_completed,
            progress.records_saved,
        )
        return True

    def maybe_persist(self, progress: CrawlCheckpoint, category_finished: bool = False) -> bool:
        """Persist when one of the thresholds is reached; returns True if written."""
        if category_finished:
            self._categories_since += 1
        due = (
            self._categories_since >= self.every_categories
            or self._clock() - self._last_persist >= self.every_seconds
        )
        if not due:
            return False
        return self.persist(progress)

    def load(self, worker_index: int) -> Optional[CrawlCheckpoint]:
        try:
            return self.sink.read(worker_index)
        except (OSError, ValueError) as exc:
            LOGGER.warning("Ignoring unreadable checkpoint for worker %d: %s", worker_index, exc)
            return None
