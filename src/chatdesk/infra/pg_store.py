"""PostgreSQL implementation of the DurableStore interface.

Uses raw SQL with psycopg2 (no ORM). Identifiers are composed with
psycopg2.sql so table/column names never go through string formatting.

Upsert runs inside one transaction:

  1. INSERT ... ON CONFLICT (conflict columns) DO NOTHING RETURNING *
  2. Row returned -> inserted.
  3. Otherwise SELECT ... FOR UPDATE on the conflicting row, compute the
     merge, UPDATE ... RETURNING *.

The insert never raises on the identity key, and the row lock makes the
merge atomic with respect to concurrent deliveries for the same chat.
Lock conflicts and collisions on other unique constraints surface as
MaterializationConflict.
"""

from __future__ import annotations

import uuid
from typing import Any, Callable, Sequence

import psycopg2
from psycopg2 import errors as pg_errors
from psycopg2 import sql
from psycopg2.extensions import connection as PgConnection, cursor as PgCursor
from psycopg2.extras import Json

from chatdesk.errors import MaterializationConflict
from chatdesk.infra.db import fetchall, get_conn, txn
from chatdesk.infra.store import MergeFn, OnConflict, UpsertResult

_CONFLICT_ERRORS = (
    pg_errors.UniqueViolation,
    pg_errors.DeadlockDetected,
    pg_errors.SerializationFailure,
    pg_errors.LockNotAvailable,
)


def _adapt(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return Json(value)
    return value


def _where(predicate: dict[str, Any]) -> tuple[sql.Composable, list[Any]]:
    """Build `col = %s AND ...` (IS NULL for None values)."""
    parts: list[sql.Composable] = []
    params: list[Any] = []
    for col, value in predicate.items():
        if value is None:
            parts.append(sql.SQL("{} IS NULL").format(sql.Identifier(col)))
        else:
            parts.append(sql.SQL("{} = %s").format(sql.Identifier(col)))
            params.append(_adapt(value))
    if not parts:
        return sql.SQL("TRUE"), params
    return sql.SQL(" AND ").join(parts), params


def _row_to_dict(cur: PgCursor, row: tuple[Any, ...] | None) -> dict[str, Any] | None:
    if row is None:
        return None
    names = [desc[0] for desc in cur.description]
    result = {}
    for name, value in zip(names, row):
        result[name] = str(value) if isinstance(value, uuid.UUID) else value
    return result


class PostgresStore:
    """DurableStore over PostgreSQL.

    Args:
        conn_factory: Callable returning a new psycopg2 connection
                      (defaults to DATABASE_URL via get_conn).
    """

    def __init__(self, conn_factory: Callable[[], PgConnection] = get_conn) -> None:
        self._conn_factory = conn_factory

    def _run(self, fn: Callable[[PgCursor], Any], table: str, key: dict | None = None) -> Any:
        conn = self._conn_factory()
        try:
            with txn(conn) as cur:
                return fn(cur)
        except _CONFLICT_ERRORS as exc:
            raise MaterializationConflict(table, key) from exc
        finally:
            conn.close()

    def get(self, table: str, key: dict[str, Any]) -> dict[str, Any] | None:
        where, params = _where(key)
        query = sql.SQL("SELECT * FROM {} WHERE {} LIMIT 1").format(sql.Identifier(table), where)

        def op(cur: PgCursor) -> dict[str, Any] | None:
            cur.execute(query, params)
            return _row_to_dict(cur, cur.fetchone())

        return self._run(op, table, key)

    def exists(self, table: str, predicate: dict[str, Any]) -> bool:
        where, params = _where(predicate)
        query = sql.SQL("SELECT 1 FROM {} WHERE {} LIMIT 1").format(sql.Identifier(table), where)

        def op(cur: PgCursor) -> bool:
            cur.execute(query, params)
            return cur.fetchone() is not None

        return self._run(op, table, predicate)

    def select(
        self,
        table: str,
        predicate: dict[str, Any],
        order_by: str | None = None,
    ) -> list[dict[str, Any]]:
        where, params = _where(predicate)
        query = sql.SQL("SELECT * FROM {} WHERE {}").format(sql.Identifier(table), where)
        if order_by:
            query = query + sql.SQL(" ORDER BY {}").format(sql.Identifier(order_by))

        def op(cur: PgCursor) -> list[dict[str, Any]]:
            rows = fetchall(cur, query, params)
            return [_row_to_dict(cur, row) for row in rows]

        return self._run(op, table, predicate)

    def upsert(
        self,
        table: str,
        key: dict[str, Any],
        fields: dict[str, Any],
        conflict_columns: Sequence[str],
        *,
        merge: MergeFn | None = None,
        on_conflict: OnConflict = "update",
    ) -> UpsertResult:
        candidate = {**fields, **key}
        columns = list(candidate.keys())
        conflict_key = {col: candidate.get(col) for col in conflict_columns}

        insert_query = sql.SQL(
            "INSERT INTO {table} ({cols}) VALUES ({vals}) "
            "ON CONFLICT ({conflict}) DO NOTHING RETURNING *"
        ).format(
            table=sql.Identifier(table),
            cols=sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            vals=sql.SQL(", ").join(sql.Placeholder() * len(columns)),
            conflict=sql.SQL(", ").join(sql.Identifier(c) for c in conflict_columns),
        )
        insert_params = [_adapt(candidate[c]) for c in columns]

        def op(cur: PgCursor) -> UpsertResult:
            cur.execute(insert_query, insert_params)
            inserted = _row_to_dict(cur, cur.fetchone())
            if inserted is not None:
                return UpsertResult(row=inserted, inserted=True)

            if on_conflict == "nothing":
                return UpsertResult(row=None, inserted=False)

            where, params = _where(conflict_key)
            cur.execute(
                sql.SQL("SELECT * FROM {} WHERE {} FOR UPDATE").format(
                    sql.Identifier(table), where
                ),
                params,
            )
            existing = _row_to_dict(cur, cur.fetchone())
            if existing is None:
                # Row deleted between the insert attempt and the lock
                raise MaterializationConflict(table, conflict_key)

            updates = merge(dict(existing), dict(fields)) if merge else dict(fields)
            if not updates:
                return UpsertResult(row=existing, inserted=False)

            assignments = sql.SQL(", ").join(
                sql.SQL("{} = %s").format(sql.Identifier(c)) for c in updates
            )
            cur.execute(
                sql.SQL("UPDATE {} SET {}, updated_at = now() WHERE id = %s RETURNING *").format(
                    sql.Identifier(table), assignments
                ),
                [_adapt(v) for v in updates.values()] + [existing["id"]],
            )
            return UpsertResult(row=_row_to_dict(cur, cur.fetchone()), inserted=False)

        return self._run(op, table, conflict_key)

    def update(self, table: str, key: dict[str, Any], fields: dict[str, Any]) -> int:
        where, params = _where(key)
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(c)) for c in fields
        )
        query = sql.SQL("UPDATE {} SET {}, updated_at = now() WHERE {}").format(
            sql.Identifier(table), assignments, where
        )

        def op(cur: PgCursor) -> int:
            cur.execute(query, [_adapt(v) for v in fields.values()] + params)
            return cur.rowcount

        return self._run(op, table, key)


def is_available() -> bool:
    """Connectivity check used by the health route."""
    try:
        conn = get_conn()
    except (RuntimeError, psycopg2.Error):
        return False
    conn.close()
    return True
