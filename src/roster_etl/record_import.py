"""roster_etl.record_import

Upserts the primary entities (leads / students) for one page.

Each resolvable record becomes one row in ``leads`` or ``students`` keyed by
``external_id`` (ON CONFLICT DO UPDATE), carrying:
  - client_id        : the record's own client, traceability only
  - family_group_id  : from the page's FamilyMaterializer map
  - status           : normalized via the status vocabulary
  - source_status    : the raw CRM label

Skips (counted, never fatal):
  - no family group  → skipped_no_family_group (also logged as a warning)
  - no external id   → skipped_no_external_id
Duplicate external ids within a page collapse to the last occurrence, since
one DO UPDATE statement cannot touch the same row twice.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import date
from typing import Any

from roster_etl.client_index import ClientIndex
from roster_etl.extract import ExtractedContacts
from roster_etl.normalize import normalize_email
from roster_etl.shared import ImportCounters, ImportSettings
from roster_etl.store import RecordStore, chunked

log = logging.getLogger(__name__)

RECORD_UPSERT_CHUNK = 200

TABLE_FOR_KIND = {"lead": "leads", "student": "students"}


def parse_source_date(value: str | None) -> date | None:
    """Leading YYYY-MM-DD of a CRM date/datetime string, or None."""
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


class RecordImporter:
    def __init__(
        self,
        store: RecordStore,
        settings: ImportSettings,
        counters: ImportCounters,
    ) -> None:
        self._store = store
        self._settings = settings
        self._counters = counters

    def build_row(
        self,
        contacts: ExtractedContacts,
        family_group_id: str,
        client_id: str | None,
    ) -> dict[str, Any]:
        rec = contacts.record
        row: dict[str, Any] = {
            "external_id": rec.external_id,
            "organization_id": self._settings.organization_id,
            "client_id": client_id,
            "family_group_id": family_group_id,
            "first_name": rec.first_name,
            "last_name": rec.last_name,
            "middle_name": rec.middle_name,
            "phone": contacts.own_phone,
            "email": normalize_email(rec.email),
            "branch": rec.primary_branch or self._settings.default_branch,
            "status": self._settings.vocabulary.classify(rec.kind, rec.status),
            "source_status": rec.status,
            "notes": rec.notes,
        }
        if rec.kind == "student":
            row["date_of_birth"] = parse_source_date(rec.date_of_birth)
            row["extra_fields"] = dict(rec.extra_fields)
        return row

    def import_records(
        self,
        kind: str,
        contacts: Sequence[ExtractedContacts],
        record_group: dict[int, str],
        index: ClientIndex,
    ) -> int:
        """Upsert every importable record; returns the number of rows written.

        ``record_group`` is keyed by position in ``contacts``.
        """
        table = TABLE_FOR_KIND[kind]
        rows: dict[str, dict[str, Any]] = {}
        for idx, c in enumerate(contacts):
            group_id = record_group.get(idx)
            if group_id is None:
                self._counters.skipped_no_family_group += 1
                msg = f"{kind} {c.record.external_id or '#' + str(idx)}: no family group resolved"
                log.warning(msg)
                self._counters.warnings.append(msg)
                continue
            if not c.record.external_id:
                self._counters.skipped_no_external_id += 1
                continue
            if c.record.external_id in rows:
                self._counters.duplicate_external_ids += 1
            rows[c.record.external_id] = self.build_row(c, group_id, index.get(c.own_phone))

        if not rows:
            return 0
        update_columns = [col for col in next(iter(rows.values())) if col != "external_id"]
        written = 0
        for batch in chunked(list(rows.values()), RECORD_UPSERT_CHUNK):
            result = self._store.upsert(
                table, batch,
                conflict_key=("external_id",),
                update_columns=update_columns,
                returning=("id",),
            )
            written += len(result)
        self._counters.records_imported += written
        return written
