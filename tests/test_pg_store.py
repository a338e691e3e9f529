"""Tests for the PostgreSQL DurableStore."""

import os
import uuid
from unittest.mock import MagicMock

import pytest
from psycopg2 import errors as pg_errors

from chatdesk.errors import MaterializationConflict
from chatdesk.infra.pg_store import PostgresStore


def _cursor(rows, columns=("id", "name")):
    """Cursor mock returning `rows` from consecutive fetchone() calls."""
    cur = MagicMock()
    cur.description = [(c,) for c in columns]
    cur.fetchone.side_effect = list(rows)
    return cur


def _store(cur):
    conn = MagicMock()
    conn.cursor.return_value.__enter__.return_value = cur
    return PostgresStore(conn_factory=lambda: conn), conn


class TestPostgresStoreUpsert:
    def test_insert_returns_row(self):
        row_id = uuid.uuid4()
        cur = _cursor([(row_id, "Maria")])
        store, conn = _store(cur)

        result = store.upsert("customers", {"phone": "1"}, {"name": "Maria"}, ["phone"])

        assert result.inserted is True
        assert result.row == {"id": str(row_id), "name": "Maria"}
        query = repr(cur.execute.call_args_list[0][0][0])
        assert "ON CONFLICT" in query
        conn.commit.assert_called_once()
        conn.close.assert_called_once()

    def test_conflict_with_nothing(self):
        cur = _cursor([None])
        store, _ = _store(cur)
        result = store.upsert("ticket_messages", {"k": "1"}, {}, ["k"], on_conflict="nothing")
        assert result.row is None
        assert result.inserted is False
        assert cur.execute.call_count == 1

    def test_conflict_merges_locked_row(self):
        cur = _cursor([None, ("c1", "Unnamed contact"), ("c1", "Maria")])
        store, _ = _store(cur)

        def merge(existing, fields):
            assert existing == {"id": "c1", "name": "Unnamed contact"}
            return {"name": "Maria"}

        result = store.upsert("customers", {"phone": "1"}, {"name": "x"}, ["phone"], merge=merge)

        assert result.inserted is False
        assert result.row == {"id": "c1", "name": "Maria"}
        assert cur.execute.call_count == 3
        update_params = cur.execute.call_args_list[2][0][1]
        assert update_params == ["Maria", "c1"]

    def test_empty_merge_skips_update(self):
        cur = _cursor([None, ("c1", "Maria")])
        store, _ = _store(cur)
        result = store.upsert("customers", {"phone": "1"}, {}, ["phone"], merge=lambda e, f: {})
        assert result.row == {"id": "c1", "name": "Maria"}
        assert cur.execute.call_count == 2

    def test_row_vanished_is_conflict(self):
        cur = _cursor([None, None])
        store, _ = _store(cur)
        with pytest.raises(MaterializationConflict):
            store.upsert("customers", {"phone": "1"}, {}, ["phone"])

    def test_unique_violation_maps_to_conflict(self):
        cur = MagicMock()
        cur.execute.side_effect = pg_errors.UniqueViolation("dup")
        store, conn = _store(cur)
        with pytest.raises(MaterializationConflict):
            store.upsert("customers", {"phone": "1"}, {}, ["phone"])
        conn.rollback.assert_called_once()

    def test_json_fields_adapted(self):
        cur = _cursor([("m1", "x")])
        store, _ = _store(cur)
        store.upsert("ticket_messages", {"k": "1"}, {"media_ref": {"url": "u"}}, ["k"])
        params = cur.execute.call_args_list[0][0][1]
        assert type(params[0]).__name__ == "Json"


class TestPostgresStoreQueries:
    def test_update_rowcount(self):
        cur = MagicMock()
        cur.rowcount = 1
        store, _ = _store(cur)
        assert store.update("ticket_messages", {"id": "m1"}, {"processing_status": "failed"}) == 1
        assert cur.execute.call_args[0][1] == ["failed", "m1"]

    def test_get_none(self):
        cur = _cursor([None])
        store, _ = _store(cur)
        assert store.get("customers", {"phone": "1"}) is None

    def test_exists_null_predicate(self):
        cur = _cursor([(1,)])
        store, _ = _store(cur)
        assert store.exists("chats", {"name": None}) is True
        assert cur.execute.call_args[0][1] == []


@pytest.mark.skipif(
    not os.environ.get("DATABASE_URL"),
    reason="DATABASE_URL not set - skipping PostgresStore integration tests",
)
class TestPostgresStoreIntegration:
    """Requires the schema from migrations/versions/001_initial_schema.py."""

    def test_customer_upsert_is_idempotent(self):
        from chatdesk.domain.customers import resolve_customer
        from chatdesk.infra.db import txn

        scope = f"test-{uuid.uuid4()}"
        store = PostgresStore()
        try:
            first = resolve_customer(store, scope, "5511999999999", None, "5511999999999")
            second = resolve_customer(store, scope, "5511999999999", "Maria", "5511999999999")
            assert first["id"] == second["id"]
            assert second["display_name"] == "Maria"
        finally:
            with txn() as cur:
                cur.execute("DELETE FROM customers WHERE client_scope_id = %s", (scope,))
