"""roster_etl.store

Record-store port used by the import engine, plus two adapters.

The engine only needs three bulk primitives:
  - select_in : rows whose ``column`` is in a key set (optionally filtered)
  - insert    : plain multi-row INSERT ... RETURNING
  - upsert    : multi-row INSERT ... ON CONFLICT (<explicit key>)
                DO NOTHING | DO UPDATE SET <columns>

plus page-scoped savepoints and commit/rollback.  Callers are responsible
for chunking (see ``chunked``); adapters execute one statement per call.

Adapters:
  PostgresStore: psycopg 3 connection, autocommit off.
  MemoryStore:   in-process tables with the same unique keys; used by unit
                 tests and by preview / scratch runs.
"""

from __future__ import annotations

import copy
import uuid
from collections.abc import Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from typing import Any, Protocol, TypeVar

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from roster_etl.shared import StoreError

T = TypeVar("T")

# Unique keys per table.  ON CONFLICT targets must be one of these.
UNIQUE_KEYS: dict[str, list[tuple[str, ...]]] = {
    "organizations": [("name",)],
    "clients": [],
    "client_phone_numbers": [("phone",)],
    "client_branches": [("client_id", "branch")],
    "family_groups": [("name", "organization_id")],
    "family_members": [("family_group_id", "client_id")],
    "leads": [("external_id",)],
    "students": [("external_id",)],
}


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    """Yield consecutive slices of at most ``size`` items."""
    if size <= 0:
        raise ValueError("chunk size must be positive")
    for i in range(0, len(items), size):
        yield items[i:i + size]


# ---------------------------------------------------------------------------
# Port
# ---------------------------------------------------------------------------

class RecordStore(Protocol):
    def select_in(
        self,
        table: str,
        column: str,
        values: Iterable[Any],
        columns: Sequence[str] = ("id",),
        filters: Mapping[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        ...

    def insert(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        returning: Sequence[str] = ("id",),
    ) -> list[dict[str, Any]]:
        ...

    def upsert(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        conflict_key: Sequence[str],
        update_columns: Sequence[str] | None = None,
        returning: Sequence[str] = ("id",),
    ) -> list[dict[str, Any]]:
        """Insert rows; on conflict do nothing (``update_columns`` None) or
        overwrite ``update_columns``.  Rows skipped by DO NOTHING are not
        returned, so callers re-select when they need every id."""
        ...

    def savepoint(self, name: str) -> Any:
        ...

    def commit(self) -> None:
        ...

    def rollback(self) -> None:
        ...


# ---------------------------------------------------------------------------
# PostgreSQL adapter
# ---------------------------------------------------------------------------

def _adapt(value: Any) -> Any:
    if isinstance(value, dict):
        return Jsonb(value)
    return value


def _plain(row: dict[str, Any]) -> dict[str, Any]:
    return {k: (str(v) if isinstance(v, uuid.UUID) else v) for k, v in row.items()}


class PostgresStore:
    """RecordStore over a psycopg connection (caller owns the connection)."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def _fetch(self, query: sql.Composable, params: Sequence[Any]) -> list[dict[str, Any]]:
        with self._conn.cursor(row_factory=dict_row) as cur:
            cur.execute(query, params)
            if cur.description is None:
                return []
            return [_plain(r) for r in cur.fetchall()]

    def select_in(
        self,
        table: str,
        column: str,
        values: Iterable[Any],
        columns: Sequence[str] = ("id",),
        filters: Mapping[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        keys = [str(v) for v in values]
        if not keys:
            return []
        # Compare as text so uuid and text key columns share one code path.
        where = [sql.SQL("{}::text = ANY(%s)").format(sql.Identifier(column))]
        params: list[Any] = [keys]
        for fcol, fval in (filters or {}).items():
            where.append(sql.SQL("{} = %s").format(sql.Identifier(fcol)))
            params.append(fval)
        query = sql.SQL("SELECT {cols} FROM {table} WHERE {where}").format(
            cols=sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            table=sql.Identifier(table),
            where=sql.SQL(" AND ").join(where),
        )
        return self._fetch(query, params)

    def _values_clause(
        self, rows: Sequence[Mapping[str, Any]]
    ) -> tuple[list[str], sql.Composable, list[Any]]:
        cols = list(rows[0].keys())
        row_sql = sql.SQL("({})").format(sql.SQL(", ").join([sql.Placeholder()] * len(cols)))
        params = [_adapt(row[c]) for row in rows for c in cols]
        return cols, sql.SQL(", ").join([row_sql] * len(rows)), params

    def insert(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        returning: Sequence[str] = ("id",),
    ) -> list[dict[str, Any]]:
        if not rows:
            return []
        cols, values, params = self._values_clause(rows)
        query = sql.SQL("INSERT INTO {table} ({cols}) VALUES {values} RETURNING {ret}").format(
            table=sql.Identifier(table),
            cols=sql.SQL(", ").join(sql.Identifier(c) for c in cols),
            values=values,
            ret=sql.SQL(", ").join(sql.Identifier(c) for c in returning),
        )
        return self._fetch(query, params)

    def upsert(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        conflict_key: Sequence[str],
        update_columns: Sequence[str] | None = None,
        returning: Sequence[str] = ("id",),
    ) -> list[dict[str, Any]]:
        if not rows:
            return []
        cols, values, params = self._values_clause(rows)
        if update_columns:
            action = sql.SQL("DO UPDATE SET {}").format(
                sql.SQL(", ").join(
                    sql.SQL("{c} = EXCLUDED.{c}").format(c=sql.Identifier(c))
                    for c in update_columns
                )
            )
        else:
            action = sql.SQL("DO NOTHING")
        query = sql.SQL(
            "INSERT INTO {table} ({cols}) VALUES {values} "
            "ON CONFLICT ({key}) {action} RETURNING {ret}"
        ).format(
            table=sql.Identifier(table),
            cols=sql.SQL(", ").join(sql.Identifier(c) for c in cols),
            values=values,
            key=sql.SQL(", ").join(sql.Identifier(c) for c in conflict_key),
            action=action,
            ret=sql.SQL(", ").join(sql.Identifier(c) for c in returning),
        )
        return self._fetch(query, params)

    @contextmanager
    def savepoint(self, name: str) -> Iterator[None]:
        ident = sql.Identifier(name)
        self._conn.execute(sql.SQL("SAVEPOINT {}").format(ident))
        try:
            yield
        except Exception:
            self._conn.execute(sql.SQL("ROLLBACK TO SAVEPOINT {}").format(ident))
            raise
        self._conn.execute(sql.SQL("RELEASE SAVEPOINT {}").format(ident))

    def commit(self) -> None:
        self._conn.commit()

    def rollback(self) -> None:
        self._conn.rollback()


# ---------------------------------------------------------------------------
# In-memory adapter
# ---------------------------------------------------------------------------

class MemoryStore:
    """In-process RecordStore enforcing ``UNIQUE_KEYS`` like PostgreSQL.

    NULL key parts never conflict.  A DO UPDATE upsert that would touch the
    same row twice in one call raises ``StoreError``, as PostgreSQL does.
    Commit/rollback work on snapshots so dry runs can be discarded.
    """

    def __init__(self, unique_keys: Mapping[str, list[tuple[str, ...]]] | None = None) -> None:
        self._unique_keys = dict(unique_keys or UNIQUE_KEYS)
        self.tables: dict[str, list[dict[str, Any]]] = {t: [] for t in self._unique_keys}
        self._committed = copy.deepcopy(self.tables)

    def rows(self, table: str) -> list[dict[str, Any]]:
        return self.tables.setdefault(table, [])

    @staticmethod
    def _key(row: Mapping[str, Any], cols: Sequence[str]) -> tuple[Any, ...] | None:
        key = tuple(row.get(c) for c in cols)
        return None if any(k is None for k in key) else key

    def _find_conflict(
        self, table: str, row: Mapping[str, Any], cols: Sequence[str]
    ) -> dict[str, Any] | None:
        key = self._key(row, cols)
        if key is None:
            return None
        for existing in self.rows(table):
            if self._key(existing, cols) == key:
                return existing
        return None

    def _check_unique(self, table: str, row: Mapping[str, Any]) -> None:
        for cols in self._unique_keys.get(table, []):
            if self._find_conflict(table, row, cols) is not None:
                raise StoreError(
                    f"duplicate key value violates unique constraint on "
                    f"{table}({', '.join(cols)}): {self._key(row, cols)!r}"
                )

    def _new_row(self, row: Mapping[str, Any]) -> dict[str, Any]:
        new = copy.deepcopy(dict(row))
        new.setdefault("id", str(uuid.uuid4()))
        return new

    @staticmethod
    def _project(row: Mapping[str, Any], columns: Sequence[str]) -> dict[str, Any]:
        return {c: row.get(c) for c in columns}

    def select_in(
        self,
        table: str,
        column: str,
        values: Iterable[Any],
        columns: Sequence[str] = ("id",),
        filters: Mapping[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        keys = {str(v) for v in values}
        out = []
        for row in self.rows(table):
            if row.get(column) is None or str(row[column]) not in keys:
                continue
            if any(row.get(fc) != fv for fc, fv in (filters or {}).items()):
                continue
            out.append(self._project(row, columns))
        return out

    def insert(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        returning: Sequence[str] = ("id",),
    ) -> list[dict[str, Any]]:
        staged: list[dict[str, Any]] = []
        for row in rows:
            new = self._new_row(row)
            self._check_unique(table, new)
            for other in staged:
                for cols in self._unique_keys.get(table, []):
                    k = self._key(new, cols)
                    if k is not None and k == self._key(other, cols):
                        raise StoreError(f"duplicate key in one insert on {table}({', '.join(cols)})")
            staged.append(new)
        self.rows(table).extend(staged)
        return [self._project(r, returning) for r in staged]

    def upsert(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        conflict_key: Sequence[str],
        update_columns: Sequence[str] | None = None,
        returning: Sequence[str] = ("id",),
    ) -> list[dict[str, Any]]:
        if tuple(conflict_key) not in self._unique_keys.get(table, []):
            raise StoreError(f"no unique constraint on {table}({', '.join(conflict_key)})")
        if update_columns:
            keys = [self._key(r, conflict_key) for r in rows]
            keys = [k for k in keys if k is not None]
            if len(keys) != len(set(keys)):
                raise StoreError(
                    "ON CONFLICT DO UPDATE command cannot affect row a second time"
                )
        out: list[dict[str, Any]] = []
        for row in rows:
            existing = self._find_conflict(table, row, conflict_key)
            if existing is None:
                new = self._new_row(row)
                self._check_unique(table, new)
                self.rows(table).append(new)
                out.append(self._project(new, returning))
            elif update_columns:
                for c in update_columns:
                    existing[c] = copy.deepcopy(row.get(c))
                out.append(self._project(existing, returning))
        return out

    @contextmanager
    def savepoint(self, name: str) -> Iterator[None]:
        snapshot = copy.deepcopy(self.tables)
        try:
            yield
        except Exception:
            self.tables = snapshot
            raise

    def commit(self) -> None:
        self._committed = copy.deepcopy(self.tables)

    def rollback(self) -> None:
        self.tables = copy.deepcopy(self._committed)
