"""Durable store interface and the in-memory implementation.

The pipeline only needs "durable keyed records with conditional upsert and
point queries". Tables are addressed by name and rows are plain dicts.

Upsert contract
───────────────
    upsert(table, key, fields, conflict_columns, merge=..., on_conflict=...)

- No row with the same conflict columns -> insert key + fields,
  UpsertResult(row, inserted=True).
- Row exists, on_conflict="nothing" -> untouched,
  UpsertResult(None, inserted=False). A unique-constraint conflict is a
  normal outcome here, not an exception.
- Row exists, on_conflict="update" -> fields to write are
  merge(existing_row, fields) when a merge function is given (it may return
  {} to leave the row as is), otherwise `fields`;
  UpsertResult(row_after_update, inserted=False).

The lookup, merge and write happen atomically with respect to other
upserts on the same key. A collision the store cannot resolve on its own
(another unique constraint, row vanished mid-upsert, lock conflicts) is
raised as MaterializationConflict.
"""

from __future__ import annotations

import copy
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Literal, Protocol, Sequence

from chatdesk.errors import MaterializationConflict
from chatdesk.infra.time import utc_now

MergeFn = Callable[[dict[str, Any], dict[str, Any]], dict[str, Any]]
OnConflict = Literal["update", "nothing"]

# Unique constraints per table (mirrors migrations/versions/001_initial_schema.py)
UNIQUE_KEYS: dict[str, list[tuple[str, ...]]] = {
    "instances": [("instance_id",)],
    "customers": [("client_scope_id", "phone")],
    "tickets": [("client_scope_id", "chat_id")],
    "ticket_messages": [("instance_id", "provider_message_id")],
    "chats": [("instance_id", "chat_id")],
    "processed_events": [("instance_id", "source", "external_id")],
}


@dataclass(frozen=True)
class UpsertResult:
    """Outcome of an upsert."""

    row: dict[str, Any] | None
    inserted: bool


class DurableStore(Protocol):
    """Operations the pipeline needs from durable storage."""

    def get(self, table: str, key: dict[str, Any]) -> dict[str, Any] | None:
        ...

    def exists(self, table: str, predicate: dict[str, Any]) -> bool:
        ...

    def select(
        self,
        table: str,
        predicate: dict[str, Any],
        order_by: str | None = None,
    ) -> list[dict[str, Any]]:
        ...

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
        ...

    def update(self, table: str, key: dict[str, Any], fields: dict[str, Any]) -> int:
        ...


def _matches(row: dict[str, Any], predicate: dict[str, Any]) -> bool:
    return all(row.get(col) == value for col, value in predicate.items())


class MemoryStore:
    """Thread-safe in-process DurableStore.

    Enforces the same unique constraints as the PostgreSQL schema so
    dedup-by-constraint behaves identically. Used in tests and in
    single-process development (STORE_BACKEND=memory).
    """

    def __init__(self, unique_keys: dict[str, list[tuple[str, ...]]] | None = None) -> None:
        self._tables: dict[str, list[dict[str, Any]]] = {}
        self._unique_keys = unique_keys if unique_keys is not None else UNIQUE_KEYS
        self._lock = threading.RLock()

    def _rows(self, table: str) -> list[dict[str, Any]]:
        return self._tables.setdefault(table, [])

    def _find(self, table: str, predicate: dict[str, Any]) -> dict[str, Any] | None:
        for row in self._rows(table):
            if _matches(row, predicate):
                return row
        return None

    def _violates_unique(self, table: str, candidate: dict[str, Any], ignore: dict | None) -> bool:
        for columns in self._unique_keys.get(table, []):
            if any(candidate.get(col) is None for col in columns):
                continue
            for row in self._rows(table):
                if row is ignore:
                    continue
                if all(row.get(col) == candidate.get(col) for col in columns):
                    return True
        return False

    def get(self, table: str, key: dict[str, Any]) -> dict[str, Any] | None:
        with self._lock:
            row = self._find(table, key)
            return copy.deepcopy(row) if row is not None else None

    def exists(self, table: str, predicate: dict[str, Any]) -> bool:
        with self._lock:
            return self._find(table, predicate) is not None

    def select(
        self,
        table: str,
        predicate: dict[str, Any],
        order_by: str | None = None,
    ) -> list[dict[str, Any]]:
        with self._lock:
            rows = [copy.deepcopy(r) for r in self._rows(table) if _matches(r, predicate)]
        if order_by:
            rows.sort(key=lambda r: r.get(order_by))
        return rows

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
        conflict_key = {col: candidate.get(col) for col in conflict_columns}
        now = utc_now()

        with self._lock:
            existing = self._find(table, conflict_key)

            if existing is None:
                if self._violates_unique(table, candidate, ignore=None):
                    raise MaterializationConflict(table, conflict_key)
                row = {"id": str(uuid.uuid4()), "created_at": now, "updated_at": now}
                row.update(copy.deepcopy(candidate))
                self._rows(table).append(row)
                return UpsertResult(row=copy.deepcopy(row), inserted=True)

            if on_conflict == "nothing":
                return UpsertResult(row=None, inserted=False)

            updates = merge(copy.deepcopy(existing), dict(fields)) if merge else dict(fields)
            if updates:
                proposed = {**existing, **updates}
                if self._violates_unique(table, proposed, ignore=existing):
                    raise MaterializationConflict(table, conflict_key)
                existing.update(copy.deepcopy(updates))
                existing["updated_at"] = now
            return UpsertResult(row=copy.deepcopy(existing), inserted=False)

    def update(self, table: str, key: dict[str, Any], fields: dict[str, Any]) -> int:
        now = utc_now()
        count = 0
        with self._lock:
            for row in self._rows(table):
                if _matches(row, key):
                    row.update(copy.deepcopy(fields))
                    row["updated_at"] = now
                    count += 1
        return count

    def count(self, table: str, predicate: dict[str, Any] | None = None) -> int:
        """Number of rows matching `predicate` (all rows if None)."""
        with self._lock:
            return sum(1 for r in self._rows(table) if _matches(r, predicate or {}))
