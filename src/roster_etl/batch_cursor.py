"""roster_etl.batch_cursor

Resumable skip/take cursor over the CRM source, plus the per-page pipeline.

State machine:

    idle → fetching → processing → fetching ...
                   ↘ completed            (empty or short page)
                   ↘ awaiting_next_batch  (batch mode, max_batches reached)
                   ↘ error                (fetch failed, or page write failed)

Each page is processed inside a store savepoint and committed on success
(unless dry-run), so a failing page leaves earlier pages intact.  The
returned progress item carries ``hasMore`` / ``nextSkip`` whenever the
caller has something to resume; after an error ``nextSkip`` is the failed
page's skip, so re-invoking retries that page.

Per-page pipeline (``process_page``):
    decode → extract → skip unresolvable → ClientIndex → cluster
           → FamilyMaterializer → RecordImporter
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from typing import Any, Protocol

from roster_etl.client_index import ClientIndex, collect_seeds
from roster_etl.extract import ExtractedContacts, decode_record, extract
from roster_etl.family_cluster import cluster_records
from roster_etl.family_materialize import FamilyMaterializer
from roster_etl.record_import import RecordImporter
from roster_etl.shared import ImportCounters, ImportProgress, ImportSettings, SourceFetchError
from roster_etl.store import RecordStore

log = logging.getLogger(__name__)

CURSOR_STATES = (
    "idle",
    "fetching",
    "processing",
    "completed",
    "error",
    "awaiting_next_batch",
)


class PageSource(Protocol):
    def fetch_page(self, kind: str, skip: int, take: int) -> list[dict[str, Any]]:
        ...


PageHandler = Callable[
    [RecordStore, str, Sequence[dict[str, Any]], ImportSettings, ImportCounters], int
]


# ---------------------------------------------------------------------------
# Page pipelines
# ---------------------------------------------------------------------------

def extract_records(
    kind: str,
    raw_records: Sequence[dict[str, Any]],
    counters: ImportCounters,
) -> list[ExtractedContacts]:
    """Decode + extract one page; unresolvable records are counted and dropped."""
    resolvable: list[ExtractedContacts] = []
    for raw in raw_records:
        contacts = extract(decode_record(raw, kind))
        counters.records_read += 1
        if contacts.unresolvable:
            counters.skipped_no_phone += 1
            log.debug("%s %s has no usable phone; skipped", kind, contacts.record.external_id)
            continue
        resolvable.append(contacts)
    return resolvable


def process_page(
    store: RecordStore,
    kind: str,
    raw_records: Sequence[dict[str, Any]],
    settings: ImportSettings,
    counters: ImportCounters,
) -> int:
    """Full lead/student pipeline for one page; returns records imported."""
    contacts = extract_records(kind, raw_records, counters)
    if not contacts:
        return 0

    index = ClientIndex(store, settings.organization_id, counters)
    index.build(collect_seeds(contacts, default_branch=settings.default_branch))

    result = cluster_records(contacts)
    counters.clusters_built += len(result.clusters)
    counters.clusters_merged += result.merges

    materializer = FamilyMaterializer(
        store, settings.organization_id, counters, default_branch=settings.default_branch
    )
    record_group = materializer.materialize(result, contacts, index)

    importer = RecordImporter(store, settings, counters)
    return importer.import_records(kind, contacts, record_group, index)


def process_client_page(
    store: RecordStore,
    kind: str,
    raw_records: Sequence[dict[str, Any]],
    settings: ImportSettings,
    counters: ImportCounters,
) -> int:
    """Guardian contacts → clients only; returns the number of phones resolved."""
    contacts = extract_records(kind, raw_records, counters)
    seeds = collect_seeds(contacts, include_own=False, default_branch=settings.default_branch)
    if not seeds:
        return 0
    index = ClientIndex(store, settings.organization_id, counters)
    index.build(seeds)
    return len(seeds)


# ---------------------------------------------------------------------------
# Cursor
# ---------------------------------------------------------------------------

class BatchCursor:
    def __init__(
        self,
        source: PageSource,
        store: RecordStore,
        settings: ImportSettings,
        counters: ImportCounters,
        kind: str,
        step: str,
        page_handler: PageHandler = process_page,
    ) -> None:
        self._source = source
        self._store = store
        self._settings = settings
        self._counters = counters
        self._kind = kind
        self._step = step
        self._page_handler = page_handler
        self.state = "idle"

    def _transition(self, state: str) -> None:
        if state not in CURSOR_STATES:
            raise ValueError(f"unknown cursor state: {state!r}")
        log.debug("cursor %s: %s → %s", self._step, self.state, state)
        self.state = state

    def _done(self, count: int, pages: int) -> ImportProgress:
        self._transition("completed")
        return ImportProgress(
            step=self._step,
            status="completed",
            count=count,
            message=f"Imported {count} {self._kind} records from {pages} page(s)",
            has_more=False if self._settings.batch_mode else None,
        )

    def _failed(self, count: int, skip: int, error: str) -> ImportProgress:
        self._transition("error")
        self._counters.pages_failed += 1
        return ImportProgress(
            step=self._step,
            status="error",
            count=count,
            error=error,
            has_more=True,
            next_skip=skip,
        )

    def run(self) -> ImportProgress:
        """Drive pages from ``settings.skip`` until done, paused or failed."""
        skip = self._settings.skip
        take = self._settings.take
        pages = 0
        count = 0

        while True:
            self._transition("fetching")
            try:
                raw_records = self._source.fetch_page(self._kind, skip, take)
            except SourceFetchError as exc:
                log.error("%s: fetch failed at skip=%d: %s", self._step, skip, exc)
                return self._failed(count, skip, str(exc))
            self._counters.pages_fetched += 1

            if not raw_records:
                return self._done(count, pages)

            self._transition("processing")
            try:
                with self._store.savepoint(f"page_{skip}"):
                    page_count = self._page_handler(
                        self._store, self._kind, raw_records, self._settings, self._counters
                    )
                if not self._settings.dry_run:
                    self._store.commit()
            except Exception as exc:
                log.exception("%s: page at skip=%d failed", self._step, skip)
                self._counters.warnings.append(f"page skip={skip} failed: {exc}")
                return self._failed(count, skip, str(exc))

            pages += 1
            count += page_count
            log.info(
                "%s: page skip=%d take=%d → %d records, %d imported",
                self._step, skip, take, len(raw_records), page_count,
            )

            if len(raw_records) < take:
                return self._done(count, pages)

            skip += take
            if self._settings.batch_mode and pages >= self._settings.max_batches:
                self._transition("awaiting_next_batch")
                return ImportProgress(
                    step=self._step,
                    status="completed",
                    count=count,
                    message=f"Imported {count} {self._kind} records; more pages available",
                    has_more=True,
                    next_skip=skip,
                )
