"""Conflict-tolerant upsert shared by the customer and ticket materializers."""

from __future__ import annotations

from typing import Any, Sequence

from chatdesk.errors import MaterializationConflict
from chatdesk.infra.backoff import CONFLICT_RETRY_POLICY, BackoffController, BackoffPolicy
from chatdesk.infra.store import DurableStore, MergeFn
from chatdesk.observability.logging import get_logger
from chatdesk.observability.redaction import safe_log_context

logger = get_logger(__name__)

_RETRY_POLICY = BackoffPolicy(
    max_attempts=CONFLICT_RETRY_POLICY.max_attempts,
    initial_delay=CONFLICT_RETRY_POLICY.initial_delay,
    max_delay=CONFLICT_RETRY_POLICY.max_delay,
    retry_on=(MaterializationConflict,),
)

_default_controller = BackoffController()


def upsert_entity(
    store: DurableStore,
    table: str,
    key: dict[str, Any],
    fields: dict[str, Any],
    *,
    merge: MergeFn,
    controller: BackoffController | None = None,
) -> dict[str, Any]:
    """Upsert a row keyed by `key`, retrying once on a concurrent collision.

    If the retry collides as well, the row written by the competing caller
    is re-read and returned: the other writer has materialized the same
    entity, which is the outcome this call wanted.

    Raises:
        MaterializationConflict: Collision persisted and no row can be read back.
    """
    conflict_columns: Sequence[str] = list(key.keys())
    runner = controller or _default_controller

    def attempt() -> dict[str, Any]:
        result = store.upsert(table, key, fields, conflict_columns, merge=merge)
        if result.row is None:
            raise MaterializationConflict(table, key)
        return result.row

    try:
        return runner.run(attempt, _RETRY_POLICY, label=f"upsert:{table}")
    except MaterializationConflict:
        row = store.get(table, key)
        if row is None:
            raise
        logger.info(
            "upsert conflict resolved by re-read",
            extra={"extra_fields": safe_log_context(table=table)},
        )
        return row
