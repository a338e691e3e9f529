"""Dedup/Idempotency layer keyed on (instance_id, provider_message_id).

Two surfaces are consulted, in order:

  1. A DedupCache (fast, advisory). Process-local LRU by default; a shared
     cache over the processed_events table for multi-process deployments.
  2. The durable message store (ticket_messages unique key), which is the
     correctness backstop and survives cache loss.

A cache mark is either a pending claim or completed:

  - mark() takes a pending claim before the durable write, so two
    near-simultaneous deliveries cannot both proceed.
  - complete() is called once the message row exists. Only completed
    marks short-circuit a redelivery.
  - A pending claim older than claim_ttl is treated as abandoned (crash,
    failed release) and the next delivery takes it over, so a lost
    claim delays a message but never drops it.
"""

from __future__ import annotations

import os
import threading
import time
from collections import OrderedDict
from typing import Callable, Protocol

from chatdesk.infra.db import fetchone, txn
from chatdesk.infra.store import DurableStore
from chatdesk.observability.logging import get_logger, message_id_prefix
from chatdesk.observability.redaction import safe_log_context

logger = get_logger(__name__)

DedupKey = tuple[str, str]

DEFAULT_CACHE_SIZE = int(os.environ.get("DEDUP_CACHE_SIZE", "10000"))
DEFAULT_CLAIM_TTL_SECONDS = float(os.environ.get("DEDUP_CLAIM_TTL_SECONDS", "60"))

MESSAGES_TABLE = "ticket_messages"
PROCESSED_EVENTS_SOURCE = "whatsapp"


class DedupCache(Protocol):
    def seen(self, key: DedupKey) -> bool:
        """True only for a completed mark."""
        ...

    def mark(self, key: DedupKey) -> bool:
        """Take a pending claim; False if a completed mark or a live claim exists."""
        ...

    def complete(self, key: DedupKey) -> None:
        ...

    def forget(self, key: DedupKey) -> None:
        ...


class LocalDedupCache:
    """Thread-safe, bounded LRU of marks.

    Args:
        max_size: Maximum number of keys kept.
        claim_ttl: Seconds after which a pending claim may be taken over.
        clock: Monotonic clock (injectable for tests).
    """

    def __init__(
        self,
        max_size: int = DEFAULT_CACHE_SIZE,
        claim_ttl: float = DEFAULT_CLAIM_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self._max_size = max_size
        self._claim_ttl = claim_ttl
        self._clock = clock
        # key -> (completed, marked_at)
        self._keys: OrderedDict[DedupKey, tuple[bool, float]] = OrderedDict()
        self._lock = threading.Lock()

    def _put(self, key: DedupKey, completed: bool) -> None:
        self._keys[key] = (completed, self._clock())
        self._keys.move_to_end(key)
        while len(self._keys) > self._max_size:
            self._keys.popitem(last=False)

    def seen(self, key: DedupKey) -> bool:
        with self._lock:
            state = self._keys.get(key)
            if state is None or not state[0]:
                return False
            self._keys.move_to_end(key)
            return True

    def mark(self, key: DedupKey) -> bool:
        with self._lock:
            state = self._keys.get(key)
            if state is not None:
                completed, marked_at = state
                if completed or self._clock() - marked_at < self._claim_ttl:
                    self._keys.move_to_end(key)
                    return False
            self._put(key, completed=False)
            return True

    def complete(self, key: DedupKey) -> None:
        with self._lock:
            self._put(key, completed=True)

    def forget(self, key: DedupKey) -> None:
        with self._lock:
            self._keys.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)


class PgDedupCache:
    """Shared dedup cache over the processed_events table.

    A row with completed_at NULL is a pending claim; updated_at is when it
    was taken. mark() inserts the row, or takes over a pending claim older
    than claim_ttl, in one statement; the row count tells whether this
    process won the key.
    """

    def __init__(
        self,
        source: str = PROCESSED_EVENTS_SOURCE,
        claim_ttl: float = DEFAULT_CLAIM_TTL_SECONDS,
    ) -> None:
        self._source = source
        self._claim_ttl = claim_ttl

    def seen(self, key: DedupKey) -> bool:
        instance_id, external_id = key
        with txn() as cur:
            row = fetchone(
                cur,
                """
                SELECT 1 FROM processed_events
                WHERE instance_id = %s AND source = %s AND external_id = %s
                  AND completed_at IS NOT NULL
                """,
                (instance_id, self._source, external_id),
            )
            return row is not None

    def mark(self, key: DedupKey) -> bool:
        instance_id, external_id = key
        with txn() as cur:
            cur.execute(
                """
                INSERT INTO processed_events (instance_id, source, external_id)
                VALUES (%s, %s, %s)
                ON CONFLICT (instance_id, source, external_id) DO UPDATE
                SET updated_at = now()
                WHERE processed_events.completed_at IS NULL
                  AND processed_events.updated_at < now() - make_interval(secs => %s)
                """,
                (instance_id, self._source, external_id, self._claim_ttl),
            )
            return cur.rowcount == 1

    def complete(self, key: DedupKey) -> None:
        instance_id, external_id = key
        with txn() as cur:
            cur.execute(
                """
                INSERT INTO processed_events (instance_id, source, external_id, completed_at)
                VALUES (%s, %s, %s, now())
                ON CONFLICT (instance_id, source, external_id) DO UPDATE
                SET completed_at = now(), updated_at = now()
                WHERE processed_events.completed_at IS NULL
                """,
                (instance_id, self._source, external_id),
            )

    def forget(self, key: DedupKey) -> None:
        instance_id, external_id = key
        with txn() as cur:
            cur.execute(
                """
                DELETE FROM processed_events
                WHERE instance_id = %s AND source = %s AND external_id = %s
                  AND completed_at IS NULL
                """,
                (instance_id, self._source, external_id),
            )


class IdempotencyGuard:
    """Decides whether a message event still needs materialization.

    Args:
        store: Durable store holding ticket_messages.
        cache: Injected dedup cache (LocalDedupCache when omitted).
    """

    def __init__(self, store: DurableStore, cache: DedupCache | None = None) -> None:
        self._store = store
        self._cache = cache if cache is not None else LocalDedupCache()

    @property
    def cache(self) -> DedupCache:
        return self._cache

    def should_process(self, instance_id: str, provider_message_id: str) -> bool:
        """True when neither the cache nor the store has the message."""
        key = (instance_id, provider_message_id)
        if self._cache.seen(key):
            return False
        if self._store.exists(
            MESSAGES_TABLE,
            {"instance_id": instance_id, "provider_message_id": provider_message_id},
        ):
            # Warm the cache so the next redelivery skips the store lookup
            self._complete_quietly(key)
            return False
        return True

    def claim(self, instance_id: str, provider_message_id: str) -> bool:
        """should_process + a pending mark as one step.

        Returns True for exactly one of several concurrent callers sharing
        this guard's cache.
        """
        if not self.should_process(instance_id, provider_message_id):
            return False
        claimed = self._cache.mark((instance_id, provider_message_id))
        if not claimed:
            logger.info(
                "concurrent delivery holds the claim",
                extra={
                    "extra_fields": safe_log_context(
                        message_id=message_id_prefix(provider_message_id)
                    )
                },
            )
        return claimed

    def complete(self, instance_id: str, provider_message_id: str) -> None:
        """Settle a claim once the message row exists."""
        self._complete_quietly((instance_id, provider_message_id))

    def release(self, instance_id: str, provider_message_id: str) -> None:
        """Drop a pending claim after a failure before the durable write.

        A release that fails is logged and left to expire after claim_ttl,
        so it never hides the failure that caused it.
        """
        try:
            self._cache.forget((instance_id, provider_message_id))
        except Exception:
            logger.warning(
                "dedup claim release failed, claim will expire",
                extra={
                    "extra_fields": safe_log_context(
                        message_id=message_id_prefix(provider_message_id)
                    )
                },
                exc_info=True,
            )

    def _complete_quietly(self, key: DedupKey) -> None:
        # Only called once the message row exists
        try:
            self._cache.complete(key)
        except Exception:
            logger.warning(
                "dedup cache update failed",
                extra={"extra_fields": safe_log_context(message_id=message_id_prefix(key[1]))},
                exc_info=True,
            )
