"""Message store and change fan-out.

Insert is the second dedup backstop: the (instance_id, provider_message_id)
unique key turns a redelivered message into a `duplicate` result instead of
an error. After an insert, a ticket-scoped notification is published so
live viewers can replace optimistic placeholders (see reconcile.py).

Messages are immutable once stored except processing_status and
media_annotation.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Literal

from chatdesk.infra.fanout import TICKET_MESSAGES_CHANNEL, Broadcaster
from chatdesk.infra.store import DurableStore
from chatdesk.infra.time import from_epoch_ms, to_epoch_ms
from chatdesk.observability.logging import get_logger, message_id_prefix
from chatdesk.observability.redaction import safe_log_context

logger = get_logger(__name__)

MESSAGES_TABLE = "ticket_messages"

# pg_notify payloads are capped at 8000 bytes
NOTIFY_CONTENT_MAX_BYTES = 4000

ProcessingStatus = Literal["received", "processed", "analyzed", "failed"]
PROCESSING_STATUSES = ("received", "processed", "analyzed", "failed")


@dataclass
class Message:
    ticket_id: str
    instance_id: str
    provider_message_id: str
    from_me: bool
    sender_name: str
    content: str
    message_type: str
    timestamp: int
    media_ref: dict[str, Any] | None = None
    remote_jid: str | None = None
    chat_id: str | None = None
    processing_status: ProcessingStatus = "received"
    media_annotation: str | None = None
    correlation_id: str | None = None
    id: str | None = field(default=None, compare=False)

    def to_fields(self) -> dict[str, Any]:
        return {
            "ticket_id": self.ticket_id,
            "from_me": self.from_me,
            "sender_name": self.sender_name,
            "content": self.content,
            "message_type": self.message_type,
            "media_ref": self.media_ref,
            "remote_jid": self.remote_jid,
            "chat_id": self.chat_id,
            "timestamp": from_epoch_ms(self.timestamp),
            "processing_status": self.processing_status,
            "media_annotation": self.media_annotation,
            "correlation_id": self.correlation_id,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Message":
        ts = row.get("timestamp")
        return cls(
            id=row.get("id"),
            ticket_id=row["ticket_id"],
            instance_id=row["instance_id"],
            provider_message_id=row["provider_message_id"],
            from_me=bool(row.get("from_me")),
            sender_name=row.get("sender_name") or "",
            content=row.get("content") or "",
            message_type=row.get("message_type") or "text",
            timestamp=to_epoch_ms(ts) if ts is not None else 0,
            media_ref=row.get("media_ref"),
            remote_jid=row.get("remote_jid"),
            chat_id=row.get("chat_id"),
            processing_status=row.get("processing_status") or "received",
            media_annotation=row.get("media_annotation"),
            correlation_id=row.get("correlation_id"),
        )


@dataclass(frozen=True)
class StoreResult:
    status: Literal["inserted", "duplicate"]
    row: dict[str, Any] | None = None

    @property
    def inserted(self) -> bool:
        return self.status == "inserted"


def _json_size(text: str) -> int:
    return len(json.dumps(text, ensure_ascii=False).encode("utf-8"))


def _truncate_for_notify(text: str, max_bytes: int) -> tuple[str, bool]:
    # Measured as encoded JSON so escapes count against the limit
    if _json_size(text) <= max_bytes:
        return text, False
    cut = text.encode("utf-8")[:max_bytes].decode("utf-8", errors="ignore")
    while cut and _json_size(cut) > max_bytes:
        cut = cut[: len(cut) * 3 // 4]
    return cut, True


def change_notification(row: dict[str, Any]) -> dict[str, Any]:
    """Notification payload for live viewers.

    Carries what a viewer needs to reconcile an optimistic entry (chat,
    content, timestamp, correlation id). Content longer than
    NOTIFY_CONTENT_MAX_BYTES is cut and flagged with content_truncated.
    Sender names are not included.
    """
    ts = row.get("timestamp")
    content, truncated = _truncate_for_notify(row.get("content") or "", NOTIFY_CONTENT_MAX_BYTES)
    return {
        "ticket_id": row.get("ticket_id"),
        "chat_id": row.get("chat_id"),
        "message_id": row.get("id"),
        "provider_message_id": row.get("provider_message_id"),
        "instance_id": row.get("instance_id"),
        "from_me": row.get("from_me"),
        "message_type": row.get("message_type"),
        "timestamp": to_epoch_ms(ts) if ts is not None else None,
        "content": content,
        "content_truncated": truncated,
        "correlation_id": row.get("correlation_id"),
    }


def store_message(
    store: DurableStore,
    broadcaster: Broadcaster | None,
    message: Message,
) -> StoreResult:
    """Insert a message unless it already exists, then fan out.

    Returns:
        StoreResult("inserted", row) or StoreResult("duplicate").
    """
    result = store.upsert(
        MESSAGES_TABLE,
        {"instance_id": message.instance_id, "provider_message_id": message.provider_message_id},
        message.to_fields(),
        ("instance_id", "provider_message_id"),
        on_conflict="nothing",
    )

    if not result.inserted:
        logger.info(
            "duplicate message ignored",
            extra={
                "extra_fields": safe_log_context(
                    message_id=message_id_prefix(message.provider_message_id)
                )
            },
        )
        return StoreResult("duplicate")

    row = result.row or {}
    if broadcaster is not None:
        try:
            broadcaster.publish(TICKET_MESSAGES_CHANNEL, change_notification(row))
        except Exception:
            logger.warning(
                "message fan-out failed",
                extra={"extra_fields": safe_log_context(ticket_id=row.get("ticket_id"))},
                exc_info=True,
            )
    return StoreResult("inserted", row)


def get_message(store: DurableStore, instance_id: str, provider_message_id: str) -> dict[str, Any] | None:
    return store.get(
        MESSAGES_TABLE,
        {"instance_id": instance_id, "provider_message_id": provider_message_id},
    )


def update_processing_status(
    store: DurableStore,
    message_id: str,
    status: ProcessingStatus,
    annotation: str | None = None,
) -> bool:
    """Set processing_status (and the media annotation when given).

    Returns True if a message row was updated.

    Raises:
        ValueError: Unknown status.
    """
    if status not in PROCESSING_STATUSES:
        raise ValueError(f"invalid processing status: {status}")
    fields: dict[str, Any] = {"processing_status": status}
    if annotation is not None:
        fields["media_annotation"] = annotation
    return store.update(MESSAGES_TABLE, {"id": message_id}, fields) > 0
