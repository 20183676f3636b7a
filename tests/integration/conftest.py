"""Integration test fixtures.

Applies migrations/*.sql against an ephemeral PostgreSQL database provided
by pytest-postgresql before each integration test.  Tests are skipped when
no PostgreSQL server binaries are installed.
"""

from __future__ import annotations

import shutil
from pathlib import Path

import psycopg
import pytest
from pytest_postgresql import factories

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent.parent
MIGRATIONS = [
    PROJECT_ROOT / "migrations" / "0001_extensions.sql",
    PROJECT_ROOT / "migrations" / "0002_core_entities.sql",
]

ORG_NAME = "Example School"

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


def _postgres_available() -> bool:
    return bool(shutil.which("pg_ctl") or shutil.which("pg_config"))


# ---------------------------------------------------------------------------
# Schema fixture: migrations applied for every test
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def db_conn(request):
    """Return (connection, dsn) with schema applied and one organization.

    Each test gets a fresh schema via function scope so tests are isolated.
    """
    if not _postgres_available():
        pytest.skip("PostgreSQL binaries not found")
    pg = request.getfixturevalue("postgresql")
    dsn = (
        f"host={pg.info.host} "
        f"port={pg.info.port} "
        f"dbname={pg.info.dbname} "
        f"user={pg.info.user} "
        f"password={pg.info.password or ''}"
    )
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        for migration in MIGRATIONS:
            conn.execute(migration.read_text(encoding="utf-8"))
        conn.execute("INSERT INTO organizations (name) VALUES (%s)", (ORG_NAME,))
        conn.autocommit = False
        yield conn, dsn
    finally:
        conn.close()
