"""Per-record detail fetch that attaches resources and inferred columns."""
from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from pydantic import ValidationError

from catalog_etl.antibot.pacing import RateLimiter
from catalog_etl.collector.executor import BrowserRequestExecutor
from catalog_etl.collector.pager import parse_json_body, session_headers
from catalog_etl.collector.refresher import SessionRefresher
from catalog_etl.errors import (
    BlockedResponse,
    EnrichmentError,
    FetchError,
    PersistenceError,
    SessionAcquisitionError,
    TransportError,
)
from catalog_etl.mapper import apply_detail, extract_resources
from catalog_etl.models import EnrichmentOutcome, EnrichmentReport, Record, utcnow
from catalog_etl.upsert import RecordStore, RecordUpserter

LOGGER = logging.getLogger(__name__)


class ResourceEnricher:
    """Fetches dataset details and merges them through the upserter.

    Failures never propagate: every call ends in an ``EnrichmentOutcome``.
    """

    def __init__(
        self,
        executor: BrowserRequestExecutor,
        refresher: SessionRefresher,
        upserter: RecordUpserter,
        limiter: RateLimiter,
        base_url: str,
    ) -> None:
        self.executor = executor
        self.refresher = refresher
        self.upserter = upserter
        self.limiter = limiter
        self.base_url = base_url.rstrip("/")

    def detail_url(self, external_id: str) -> str:
        return f"{self.base_url}/api/datasets/{external_id}"

    async def _fetch_detail(self, external_id: str) -> dict:
        session = await self.refresher.ensure_session()
        headers = session_headers(session, self.base_url)
        headers.pop("content-type", None)
        response = await self.executor.request("GET", self.detail_url(external_id), headers)
        detail = parse_json_body(response.text, response.status)
        if response.status >= 400:
            raise TransportError(f"detail returned HTTP {response.status}", status=response.status)
        if not isinstance(detail, dict):
            raise EnrichmentError(f"detail for {external_id} is not an object")
        return detail

    async def enrich(self, record: Record) -> EnrichmentOutcome:
        await self.limiter.wait()
        try:
            detail = await self._fetch_detail(record.external_id)
            if not extract_resources(detail):
                LOGGER.debug("No resources for %s", record.external_id)
                return EnrichmentOutcome.SKIPPED
            await self.upserter.upsert(apply_detail(record, detail))
        except BlockedResponse as exc:
            LOGGER.warning("Detail of %s blocked, dropping session: %s", record.external_id, exc)
            self.refresher.session = None
            return EnrichmentOutcome.ERROR
        except (
            FetchError,
            SessionAcquisitionError,
            EnrichmentError,
            PersistenceError,
            ValidationError,
        ) as exc:
            LOGGER.warning("Enrichment of %s failed: %s", record.external_id, exc)
            return EnrichmentOutcome.ERROR
        return EnrichmentOutcome.OK


class EnrichmentBackfill:
    """Enriches records already in the store that still have no resources.

    Picks up datasets synced without ``--enrich``, or whose enrichment
    failed, without re-crawling the listing.
    """

    def __init__(
        self,
        enricher: ResourceEnricher,
        store: RecordStore,
        external_ids: Sequence[str],
        *,
        worker_index: int = 0,
        worker_count: int = 1,
    ) -> None:
        self.enricher = enricher
        self.store = store
        self.external_ids: List[str] = list(external_ids)
        self.worker_index = worker_index
        self.worker_count = worker_count
        self._stopping = False

    def request_stop(self) -> None:
        LOGGER.info("[worker %d] Stop requested", self.worker_index)
        self._stopping = True

    async def _load(self, external_id: str) -> Optional[Record]:
        try:
            return await self.store.get(external_id)
        except PersistenceError as exc:
            LOGGER.warning("Could not load %s: %s", external_id, exc)
            return None

    async def run(self) -> EnrichmentReport:
        report = EnrichmentReport(
            worker_index=self.worker_index,
            worker_count=self.worker_count,
            assigned=len(self.external_ids),
        )
        LOGGER.info(
            "[worker %d/%d] Enriching %d records",
            self.worker_index,
            self.worker_count,
            len(self.external_ids),
        )

        for position, external_id in enumerate(self.external_ids, start=1):
            if self._stopping:
                break
            record = await self._load(external_id)
            if record is None:
                report.missing += 1
                continue

            outcome = await self.enricher.enrich(record)
            if outcome == EnrichmentOutcome.OK:
                report.ok += 1
            elif outcome == EnrichmentOutcome.SKIPPED:
                report.skipped += 1
            else:
                report.errors += 1

            if position % 100 == 0:
                LOGGER.info(
                    "[worker %d] Progress %d/%d (ok %d, errors %d)",
                    self.worker_index,
                    position,
                    len(self.external_ids),
                    report.ok,
                    report.errors,
                )

        report.finished_at = utcnow()
        LOGGER.info(
            "[worker %d] Enrichment finished: %d ok, %d skipped, %d errors, %d missing",
            self.worker_index,
            report.ok,
            report.skipped,
            report.errors,
            report.missing,
        )
        return report
