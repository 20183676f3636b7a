"""Integration tests for the import pipeline over PostgresStore.

These tests run against an ephemeral PostgreSQL database with the full
schema applied via the db_conn fixture in conftest.py.
"""

from __future__ import annotations

from datetime import date
from typing import Any

import psycopg
import pytest

from roster_etl.batch_cursor import BatchCursor, process_page
from roster_etl.client_index import ClientIndex, ClientSeed
from roster_etl.shared import ImportCounters, ImportSettings, SourceFetchError
from roster_etl.status_rules import load_status_vocabulary
from roster_etl.store import PostgresStore
from roster_etl.run_import import run_import_batch

ORG_NAME = "Example School"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class ListSource:
    def __init__(self, records: list[dict[str, Any]], fail_at: set[int] | None = None) -> None:
        self.records = records
        self.fail_at = fail_at or set()

    def fetch_page(self, kind: str, skip: int, take: int) -> list[dict[str, Any]]:
        if skip in self.fail_at:
            raise SourceFetchError(f"HTTP 503 at skip={skip}")
        return self.records[skip:skip + take]


def _students(n: int) -> list[dict[str, Any]]:
    return [
        {
            "Id": 1000 + i,
            "FirstName": f"Kid{i}",
            "Mobile": f"8916{i:07d}",
            "StatusName": "Активный",
            "Agents": [{"FirstName": f"Parent{i}", "Mobile": f"8926{i:07d}"}],
        }
        for i in range(n)
    ]


def _count(conn, table: str) -> int:
    return conn.execute(f"SELECT count(*) FROM {table}").fetchone()[0]


def _org_id(conn) -> str:
    return str(conn.execute("SELECT id FROM organizations WHERE name = %s", (ORG_NAME,)).fetchone()[0])


@pytest.fixture(scope="module")
def vocabulary():
    return load_status_vocabulary()


# ---------------------------------------------------------------------------
# PostgresStore primitives
# ---------------------------------------------------------------------------

class TestPostgresStore:
    def test_upsert_do_nothing_and_reselect(self, db_conn):
        conn, _ = db_conn
        store = PostgresStore(conn)
        org = _org_id(conn)
        first = store.upsert(
            "family_groups", [{"name": "Family A", "branch": "North", "organization_id": org}],
            conflict_key=("name", "organization_id"), returning=("id",),
        )
        again = store.upsert(
            "family_groups", [{"name": "Family A", "branch": "South", "organization_id": org}],
            conflict_key=("name", "organization_id"), returning=("id",),
        )
        assert len(first) == 1
        assert again == []
        rows = store.select_in("family_groups", "name", ["Family A"], columns=("id", "branch"),
                               filters={"organization_id": org})
        assert rows == [{"id": first[0]["id"], "branch": "North"}]
        assert isinstance(rows[0]["id"], str)

    def test_upsert_do_update_with_jsonb(self, db_conn):
        conn, _ = db_conn
        store = PostgresStore(conn)
        org = _org_id(conn)
        group = store.insert("family_groups", [{"name": "Family A", "organization_id": org}])[0]["id"]
        base = {
            "external_id": "S1", "organization_id": org, "family_group_id": group,
            "status": "active", "extra_fields": {"Level": "A1"},
        }
        store.upsert("students", [base], conflict_key=("external_id",),
                     update_columns=("status", "extra_fields"))
        store.upsert("students", [{**base, "status": "paused", "extra_fields": {"Level": "B1"}}],
                     conflict_key=("external_id",), update_columns=("status", "extra_fields"))
        row = conn.execute("SELECT status, extra_fields FROM students").fetchone()
        assert row == ("paused", {"Level": "B1"})

    def test_savepoint_rolls_back_on_error(self, db_conn):
        conn, _ = db_conn
        store = PostgresStore(conn)
        org = _org_id(conn)
        store.insert("clients", [{"name": "kept", "organization_id": org}])
        with pytest.raises(psycopg.Error):
            with store.savepoint("page_0"):
                store.insert("clients", [{"name": "dropped", "organization_id": org}])
                store.insert("client_phone_numbers", [{"client_id": None, "phone": "79161112233"}])
        names = [r[0] for r in conn.execute("SELECT name FROM clients").fetchall()]
        assert names == ["kept"]


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class TestPipeline:
    def test_ann_and_ben_scenario(self, db_conn, vocabulary):
        conn, _ = db_conn
        page = [
            {"Id": "1", "FirstName": "Ann", "Agents": [{"FirstName": "Мария", "Mobile": "+7 (916) 111-22-33"}]},
            {"Id": "2", "FirstName": "Ben", "Agents": [{"FirstName": "Мария", "Mobile": "89161112233"}]},
        ]
        response = run_import_batch("import_students", {}, PostgresStore(conn), ListSource(page),
                                    ORG_NAME, vocabulary=vocabulary)
        assert response["progress"][0]["count"] == 2

        assert conn.execute("SELECT name FROM family_groups").fetchall() == [("Family Мария",)]
        assert conn.execute(
            "SELECT relationship_type, is_primary_contact FROM family_members"
        ).fetchall() == [("parent", True)]
        assert conn.execute("SELECT phone FROM client_phone_numbers").fetchall() == [("79161112233",)]
        assert conn.execute("SELECT count(DISTINCT family_group_id) FROM students").fetchone()[0] == 1

    def test_no_phone_record(self, db_conn, vocabulary):
        conn, _ = db_conn
        counters = ImportCounters()
        page = [{"Id": "9", "FirstName": "Ghost", "Agents": [{"FirstName": "Nobody"}]}]
        run_import_batch("import_leads", {}, PostgresStore(conn), ListSource(page), ORG_NAME,
                         vocabulary=vocabulary, counters=counters)
        assert counters.skipped_no_phone == 1
        for table in ("clients", "family_groups", "family_members", "leads"):
            assert _count(conn, table) == 0

    def test_rerun_is_idempotent(self, db_conn, vocabulary):
        conn, _ = db_conn
        records = _students(30)
        for _ in range(2):
            run_import_batch("import_students", {"take": 20}, PostgresStore(conn),
                             ListSource(records), ORG_NAME, vocabulary=vocabulary)
        assert _count(conn, "students") == 30
        assert _count(conn, "clients") == 60
        assert _count(conn, "family_groups") == 30
        assert _count(conn, "family_members") == 60
        bad = conn.execute(
            """
            SELECT g.id FROM family_groups g
            LEFT JOIN family_members m ON m.family_group_id = g.id AND m.is_primary_contact
            GROUP BY g.id HAVING count(m.id) <> 1
            """
        ).fetchall()
        assert bad == []
        assert conn.execute("SELECT DISTINCT status FROM students").fetchall() == [("active",)]

    def test_student_extras(self, db_conn, vocabulary):
        conn, _ = db_conn
        page = [{
            "Id": 7, "FirstName": "Kid", "Mobile": "89160000007", "Birthday": "2016-09-01T00:00:00",
            "ExtraFields": [{"Name": "Level", "Value": "A1"}],
        }]
        run_import_batch("import_students", {}, PostgresStore(conn), ListSource(page), ORG_NAME,
                         vocabulary=vocabulary)
        row = conn.execute("SELECT date_of_birth, extra_fields, status FROM students").fetchone()
        assert row == (date(2016, 9, 1), {"Level": "A1"}, "archived")

    def test_page_failure_keeps_committed_pages(self, db_conn, vocabulary):
        conn, dsn = db_conn
        store = PostgresStore(conn)
        org = _org_id(conn)
        settings = ImportSettings(organization_id=org, vocabulary=vocabulary, take=10)
        calls = {"n": 0}

        def failing_second_page(st, kind, raw_records, s, c):
            calls["n"] += 1
            written = process_page(st, kind, raw_records, s, c)
            if calls["n"] == 2:
                raise RuntimeError("simulated write failure")
            return written

        progress = BatchCursor(
            ListSource(_students(30)), store, settings, ImportCounters(),
            kind="student", step="import_students", page_handler=failing_second_page,
        ).run()
        assert progress.status == "error"
        assert progress.next_skip == 10

        with psycopg.connect(dsn) as other:
            assert _count(other, "students") == 10
            assert _count(other, "clients") == 20

    def test_dry_run_persists_nothing(self, db_conn, vocabulary):
        conn, dsn = db_conn
        response = run_import_batch("import_students", {}, PostgresStore(conn),
                                    ListSource(_students(5)), ORG_NAME,
                                    vocabulary=vocabulary, dry_run=True)
        assert response["progress"][0]["count"] == 5
        with psycopg.connect(dsn) as other:
            assert _count(other, "students") == 0
            assert _count(other, "clients") == 0


# ---------------------------------------------------------------------------
# Concurrent phone creation
# ---------------------------------------------------------------------------

class TestPhoneRace:
    def test_existing_owner_adopted(self, db_conn):
        conn, dsn = db_conn
        org = _org_id(conn)
        conn.commit()

        # A second session indexes the phone after our lookup would have run.
        with psycopg.connect(dsn) as other:
            owner = other.execute(
                "INSERT INTO clients (name, organization_id) VALUES ('Mom', %s) RETURNING id", (org,)
            ).fetchone()[0]
            other.execute(
                "INSERT INTO client_phone_numbers (client_id, phone) VALUES (%s, '79161112233')",
                (owner,),
            )

        counters = ImportCounters()
        index = ClientIndex(PostgresStore(conn), org, counters)
        index.create_missing({"79161112233": ClientSeed("79161112233", "Mom", None, ["North"])})

        assert index.get("79161112233") == str(owner)
        assert counters.clients_orphaned_by_race == 1
        assert _count(conn, "client_phone_numbers") == 1
