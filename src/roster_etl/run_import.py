"""roster_etl.run_import

Entry points for CRM lead/student imports.

``run_import_batch(action, params, ...)`` is the callable surface used by
schedulers: it returns ``{"progress": [...]}`` and never raises for
page-level problems.  Batch-fatal problems (unknown action, bad cursor
parameters, organization not found) come back as
``{"error": message, "progress": []}``.

Actions:
  import_leads      GetLeads    → clients, family groups, leads
  import_students   GetStudents → clients, family groups, students
  import_clients    GetStudents → guardian clients only (no families)
  preview_leads     one page, decoded and clustered in memory; no writes
  preview_students  same for students

Usage:
    roster-import --action import_students --db-dsn "$DSN" \\
        --organization-name "Example School" --api-url https://crm.example/Api/V2 \\
        --batch-mode --max-batches 5 --take 100
"""

from __future__ import annotations

import json
import logging
import os
import sys
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any

import click
import psycopg

from roster_etl.batch_cursor import (
    BatchCursor,
    PageHandler,
    PageSource,
    extract_records,
    process_client_page,
    process_page,
)
from roster_etl.family_cluster import cluster_records
from roster_etl.family_materialize import family_name_for
from roster_etl.normalize import parse_bool
from roster_etl.shared import (
    BatchFatalError,
    ImportCounters,
    ImportSettings,
    SourceFetchError,
    build_import_report,
    write_run_report,
)
from roster_etl.source_client import SourceClient
from roster_etl.status_rules import StatusVocabulary, StatusVocabularyError, load_status_vocabulary
from roster_etl.store import MemoryStore, PostgresStore, RecordStore

log = logging.getLogger(__name__)

IMPORT_ACTIONS: dict[str, tuple[str, PageHandler]] = {
    "import_leads": ("lead", process_page),
    "import_students": ("student", process_page),
    "import_clients": ("student", process_client_page),
}
PREVIEW_ACTIONS = {"preview_leads": "lead", "preview_students": "student"}
ALL_ACTIONS = tuple(IMPORT_ACTIONS) + tuple(PREVIEW_ACTIONS)

DEFAULT_TAKE = 100
PREVIEW_SAMPLE_SIZE = 5


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def resolve_organization(store: RecordStore, name: str | None) -> str:
    """Organization id by exact name; BatchFatalError when absent."""
    if not name:
        raise BatchFatalError("organization name is required")
    rows = store.select_in("organizations", "name", [name], columns=("id",))
    if not rows:
        raise BatchFatalError(f"organization '{name}' not found")
    return str(rows[0]["id"])


def _param(params: dict[str, Any], snake: str, camel: str, default: Any) -> Any:
    if snake in params and params[snake] is not None:
        return params[snake]
    if camel in params and params[camel] is not None:
        return params[camel]
    return default


def parse_cursor_params(params: dict[str, Any]) -> dict[str, Any]:
    """Validate ``{skip?, take?, batch_mode?, max_batches?}`` (camelCase accepted)."""
    try:
        skip = int(_param(params, "skip", "skip", 0))
        take = int(_param(params, "take", "take", DEFAULT_TAKE))
        max_batches = int(_param(params, "max_batches", "maxBatches", 1))
    except (TypeError, ValueError) as exc:
        raise BatchFatalError(f"invalid cursor parameters: {exc}") from exc
    batch_mode = parse_bool(_param(params, "batch_mode", "batchMode", False))
    if skip < 0 or take <= 0 or max_batches <= 0:
        raise BatchFatalError(
            f"invalid cursor parameters: skip={skip} take={take} max_batches={max_batches}"
        )
    return {"skip": skip, "take": take, "batch_mode": batch_mode, "max_batches": max_batches}


def preview_page(source: PageSource, kind: str, skip: int, take: int) -> dict[str, Any]:
    """Fetch, decode and cluster one page in memory; nothing is written."""
    raw_records = source.fetch_page(kind, skip, take)
    counters = ImportCounters()
    contacts = extract_records(kind, raw_records, counters)
    result = cluster_records(contacts)
    clusters = [
        {
            "name": family_name_for(c, contacts),
            "agentPhones": list(c.agent_phones),
            "records": [contacts[i].record.external_id for i in c.children],
            "singleton": c.singleton,
        }
        for c in result.clusters
    ]
    return {
        "preview": True,
        "total": len(raw_records),
        "sample": list(raw_records[:PREVIEW_SAMPLE_SIZE]),
        "clusters": clusters,
        "skippedNoPhone": counters.skipped_no_phone,
    }


# ---------------------------------------------------------------------------
# Batch entrypoint
# ---------------------------------------------------------------------------

def run_import_batch(
    action: str,
    params: dict[str, Any],
    store: RecordStore,
    source: PageSource,
    organization_name: str | None,
    vocabulary: StatusVocabulary | None = None,
    default_branch: str = "Main",
    dry_run: bool = False,
    counters: ImportCounters | None = None,
) -> dict[str, Any]:
    """Run one invocation of ``action`` and return the caller-facing response."""
    counters = counters if counters is not None else ImportCounters()
    try:
        if action not in ALL_ACTIONS:
            raise BatchFatalError(f"unknown action '{action}'")
        cursor_params = parse_cursor_params(params)

        if action in PREVIEW_ACTIONS:
            try:
                return preview_page(
                    source, PREVIEW_ACTIONS[action],
                    cursor_params["skip"], cursor_params["take"],
                )
            except SourceFetchError as exc:
                return {"error": str(exc), "progress": []}

        organization_id = resolve_organization(store, organization_name)
    except BatchFatalError as exc:
        log.error("%s: %s", action, exc)
        return {"error": str(exc), "progress": []}

    kind, handler = IMPORT_ACTIONS[action]
    settings = ImportSettings(
        organization_id=organization_id,
        vocabulary=vocabulary or load_status_vocabulary(),
        default_branch=default_branch,
        dry_run=dry_run,
        **cursor_params,
    )
    cursor = BatchCursor(
        source, store, settings, counters,
        kind=kind, step=action, page_handler=handler,
    )
    progress = cursor.run()
    if dry_run:
        store.rollback()
    return {"progress": [progress.to_dict()]}


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option("--action", required=True, type=click.Choice(ALL_ACTIONS), help="Import action")
@click.option("--db-dsn", default=None, help="PostgreSQL DSN")
@click.option(
    "--memory-store",
    is_flag=True,
    default=False,
    help="Use an in-process store instead of PostgreSQL (scratch runs, previews)",
)
@click.option("--organization-name", default=None, help="Organization the records belong to")
@click.option("--skip", default=0, type=int, show_default=True)
@click.option("--take", default=DEFAULT_TAKE, type=int, show_default=True)
@click.option("--batch-mode", is_flag=True, default=False, help="Stop after --max-batches pages")
@click.option("--max-batches", default=1, type=int, show_default=True)
@click.option("--api-url", default=None, help="CRM API base URL")
@click.option(
    "--api-key-env",
    default="SOURCE_API_KEY",
    show_default=True,
    help="Env var name holding the CRM API key",
)
@click.option(
    "--retry-base-delay",
    default=1.0,
    type=float,
    show_default=True,
    help="Seconds; retry n waits n times this",
)
@click.option("--default-branch", default="Main", show_default=True)
@click.option(
    "--status-vocabulary",
    default=None,
    type=click.Path(),
    help="YAML status vocabulary (defaults to the bundled one)",
)
@click.option("--dry-run", is_flag=True, default=False)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    show_default=True,
)
def main(
    action: str,
    db_dsn: str | None,
    memory_store: bool,
    organization_name: str | None,
    skip: int,
    take: int,
    batch_mode: bool,
    max_batches: int,
    api_url: str | None,
    api_key_env: str,
    retry_base_delay: float,
    default_branch: str,
    status_vocabulary: str | None,
    dry_run: bool,
    run_id: str | None,
    log_level: str,
) -> None:
    """CRM lead/student import CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.utcnow().isoformat()
    counters = ImportCounters()

    click.echo(f"[{run_id}] Starting {action} run (dry_run={dry_run})")

    # API key comes from env, never from CLI args
    api_key = os.environ.get(api_key_env, "")
    if not api_url or not api_key:
        click.echo(
            f"[{run_id}] FATAL: --api-url and env var {api_key_env} must be set", err=True
        )
        sys.exit(1)
    if not memory_store and not db_dsn:
        click.echo(f"[{run_id}] FATAL: --db-dsn is required without --memory-store", err=True)
        sys.exit(1)

    try:
        vocabulary = load_status_vocabulary(Path(status_vocabulary) if status_vocabulary else None)
    except (StatusVocabularyError, FileNotFoundError) as exc:
        click.echo(f"[{run_id}] FATAL: status vocabulary: {exc}", err=True)
        sys.exit(1)

    source = SourceClient(api_url, api_key, base_delay=retry_base_delay, counters=counters)
    params = {"skip": skip, "take": take, "batch_mode": batch_mode, "max_batches": max_batches}

    conn = None
    if memory_store:
        store: RecordStore = MemoryStore()
        if organization_name:
            store.insert("organizations", [{"name": organization_name}])
    else:
        conn = psycopg.connect(db_dsn, autocommit=False)
        store = PostgresStore(conn)

    try:
        response = run_import_batch(
            action, params, store, source, organization_name,
            vocabulary=vocabulary,
            default_branch=default_branch,
            dry_run=dry_run,
            counters=counters,
        )
    finally:
        if conn is not None:
            conn.close()

    click.echo(json.dumps(response, ensure_ascii=False, indent=2, default=str))
    if action in IMPORT_ACTIONS:
        click.echo(build_import_report(counters, action, dry_run))

    report_path = write_run_report(
        run_id, started_at, action, dry_run,
        {**params, "organization_name": organization_name, "api_url": api_url},
        response, counters,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")

    if dry_run:
        click.echo(f"[{run_id}] [dry-run] All changes rolled back.")

    if "error" in response:
        click.echo(f"[{run_id}] FATAL: {response['error']}", err=True)
        sys.exit(1)
    failed = [p for p in response.get("progress", []) if p.get("status") == "error"]
    if failed:
        click.echo(
            f"[{run_id}] page failed: {failed[0].get('error')}; resume with --skip {failed[0].get('nextSkip')}",
            err=True,
        )
        sys.exit(1)


if __name__ == "__main__":
    main()
