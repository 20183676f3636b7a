"""roster_etl.shared

Shared pieces used by every import action: exceptions, run counters,
progress items returned to the caller, run settings, and report writing.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from roster_etl.status_rules import StatusVocabulary


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class BatchFatalError(Exception):
    """Raised when a whole invocation must abort (bad action, no organization)."""


class SourceFetchError(Exception):
    """Raised when a source page could not be fetched after retries."""


class StoreError(Exception):
    """Raised by a record store when a write violates a constraint."""


# ---------------------------------------------------------------------------
# Progress items
# ---------------------------------------------------------------------------

PROGRESS_STATUSES = ("pending", "in_progress", "completed", "error")


@dataclass
class ImportProgress:
    """One entry of the ``progress`` array returned to the caller.

    ``has_more`` is left as None for actions that completed synchronously;
    it is only emitted when the caller has something to resume.
    """

    step: str
    status: str = "pending"
    count: int | None = None
    message: str | None = None
    error: str | None = None
    has_more: bool | None = None
    next_skip: int | None = None

    def __post_init__(self) -> None:
        if self.status not in PROGRESS_STATUSES:
            raise ValueError(f"invalid progress status: {self.status!r}")

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"step": self.step, "status": self.status}
        if self.count is not None:
            d["count"] = self.count
        if self.message is not None:
            d["message"] = self.message
        if self.error is not None:
            d["error"] = self.error
        if self.has_more is not None:
            d["hasMore"] = self.has_more
        if self.next_skip is not None:
            d["nextSkip"] = self.next_skip
        return d


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

@dataclass
class ImportSettings:
    """Per-invocation settings threaded through the pipeline."""

    organization_id: str
    vocabulary: StatusVocabulary
    default_branch: str = "Main"
    skip: int = 0
    take: int = 100
    batch_mode: bool = False
    max_batches: int = 1
    dry_run: bool = False


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------

@dataclass
class ImportCounters:
    # Cursor
    pages_fetched: int = 0
    pages_failed: int = 0
    fetch_retries: int = 0
    # Records
    records_read: int = 0
    records_imported: int = 0
    skipped_no_phone: int = 0
    skipped_no_family_group: int = 0
    skipped_no_external_id: int = 0
    duplicate_external_ids: int = 0
    # Clients
    clients_matched_existing: int = 0
    clients_created: int = 0
    client_phones_inserted: int = 0
    client_branches_linked: int = 0
    clients_orphaned_by_race: int = 0
    # Families
    clusters_built: int = 0
    clusters_merged: int = 0
    family_groups_upserted: int = 0
    family_members_upserted: int = 0
    family_members_deduplicated: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# Report builder
# ---------------------------------------------------------------------------

def build_import_report(counters: ImportCounters, action: str, dry_run: bool) -> str:
    lines = [
        f"=== {action} Run Report ===",
        f"dry_run          : {dry_run}",
        "",
        "--- Cursor ---",
        f"pages_fetched    : {counters.pages_fetched}",
        f"pages_failed     : {counters.pages_failed}",
        f"fetch_retries    : {counters.fetch_retries}",
        "",
        "--- Records ---",
        f"records_read             : {counters.records_read}",
        f"records_imported         : {counters.records_imported}",
        f"skipped_no_phone         : {counters.skipped_no_phone}",
        f"skipped_no_family_group  : {counters.skipped_no_family_group}",
        f"skipped_no_external_id   : {counters.skipped_no_external_id}",
        f"duplicate_external_ids   : {counters.duplicate_external_ids}",
        "",
        "--- Clients ---",
        f"clients_matched_existing : {counters.clients_matched_existing}",
        f"clients_created          : {counters.clients_created}",
        f"client_phones_inserted   : {counters.client_phones_inserted}",
        f"client_branches_linked   : {counters.client_branches_linked}",
        f"clients_orphaned_by_race : {counters.clients_orphaned_by_race}",
        "",
        "--- Families ---",
        f"clusters_built               : {counters.clusters_built}",
        f"clusters_merged              : {counters.clusters_merged}",
        f"family_groups_upserted       : {counters.family_groups_upserted}",
        f"family_members_upserted      : {counters.family_members_upserted}",
        f"family_members_deduplicated  : {counters.family_members_deduplicated}",
    ]
    if counters.warnings:
        lines += ["", "--- Warnings (first 10) ---"]
        lines += [f"  {w}" for w in counters.warnings[:10]]
    return "\n".join(lines)


def write_run_report(
    run_id: str,
    started_at: str,
    action: str,
    dry_run: bool,
    params: dict[str, Any],
    response: dict[str, Any],
    counters: ImportCounters,
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "action": action,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        "dry_run": dry_run,
        "params": params,
        "response": response,
        "counters": counters.to_dict(),
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
