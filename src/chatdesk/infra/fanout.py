"""Change notification fan-out for live viewers.

Best-effort, at-least-once: a notification published with no subscriber
listening is dropped. Nothing is queued or persisted; durability lives in
the stored row. Publishing never raises into the caller.

Backends:
- InMemoryBroadcaster: process-local subscriber registry (tests, dev).
- PgNotifyBroadcaster: PostgreSQL NOTIFY, consumed with LISTEN by the
  realtime gateway in front of the dashboards.
"""

from __future__ import annotations

import json
import threading
from typing import Any, Callable, Protocol

from chatdesk.infra.db import txn
from chatdesk.observability.logging import get_logger
from chatdesk.observability.redaction import safe_log_context

logger = get_logger(__name__)

TICKET_MESSAGES_CHANNEL = "ticket_messages"

Subscriber = Callable[[dict[str, Any]], None]


class Broadcaster(Protocol):
    def publish(self, channel: str, payload: dict[str, Any]) -> int:
        """Publish payload; returns the number of local deliveries (or 1/0)."""
        ...


class InMemoryBroadcaster:
    """Process-local fan-out with optional per-ticket filtering."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[tuple[str | None, Subscriber]]] = {}
        self._lock = threading.Lock()

    def subscribe(
        self,
        channel: str,
        callback: Subscriber,
        ticket_id: str | None = None,
    ) -> Callable[[], None]:
        """Register a subscriber. Returns a function that unsubscribes it."""
        entry = (ticket_id, callback)
        with self._lock:
            self._subscribers.setdefault(channel, []).append(entry)

        def unsubscribe() -> None:
            with self._lock:
                subs = self._subscribers.get(channel, [])
                if entry in subs:
                    subs.remove(entry)

        return unsubscribe

    def publish(self, channel: str, payload: dict[str, Any]) -> int:
        with self._lock:
            targets = list(self._subscribers.get(channel, []))

        delivered = 0
        for ticket_filter, callback in targets:
            if ticket_filter is not None and ticket_filter != payload.get("ticket_id"):
                continue
            try:
                callback(payload)
                delivered += 1
            except Exception:
                logger.exception(
                    "fan-out subscriber failed",
                    extra={"extra_fields": safe_log_context(channel=channel)},
                )
        return delivered


class PgNotifyBroadcaster:
    """Fan-out through PostgreSQL NOTIFY (payload must stay under 8000 bytes)."""

    def publish(self, channel: str, payload: dict[str, Any]) -> int:
        try:
            with txn() as cur:
                cur.execute(
                    "SELECT pg_notify(%s, %s)",
                    (channel, json.dumps(payload, default=str, ensure_ascii=False)),
                )
        except Exception:
            logger.warning(
                "pg_notify failed, notification dropped",
                extra={"extra_fields": safe_log_context(channel=channel)},
                exc_info=True,
            )
            return 0
        return 1
