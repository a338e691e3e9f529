"""Ticket materializer: one open conversation per (client_scope_id, chat_id)."""

from __future__ import annotations

from typing import Any

from chatdesk.infra.backoff import BackoffController
from chatdesk.infra.store import DurableStore
from chatdesk.infra.time import from_epoch_ms

from .materialize import upsert_entity

TICKETS_TABLE = "tickets"

PREVIEW_MAX_LENGTH = 255


def ticket_title(customer_name: str) -> str:
    return f"Conversation with {customer_name}"


def truncate_preview(text: str | None) -> str:
    return (text or "")[:PREVIEW_MAX_LENGTH]


def _freshness_merge(preview: str, message_at, title: str, customer_id: str):
    def merge(existing: dict[str, Any], _fields: dict[str, Any]) -> dict[str, Any]:
        updates: dict[str, Any] = {}
        current = existing.get("last_message_at")
        # Older (out-of-order) deliveries never move freshness backwards
        if current is None or message_at >= current:
            updates["last_message_preview"] = preview
            updates["last_message_at"] = message_at
        if existing.get("title") != title:
            updates["title"] = title
        if existing.get("customer_id") != customer_id:
            updates["customer_id"] = customer_id
        return updates

    return merge


def resolve_ticket(
    store: DurableStore,
    client_scope_id: str,
    chat_id: str,
    instance_id: str,
    customer_id: str,
    message_preview: str | None,
    message_timestamp: int,
    customer_name: str,
    *,
    controller: BackoffController | None = None,
) -> dict[str, Any]:
    """Find or create the ticket for a chat and advance its freshness.

    Args:
        message_timestamp: Message time in milliseconds since epoch.
        customer_name: Current customer display name (drives the title).

    Returns:
        The ticket row after insert or update.
    """
    preview = truncate_preview(message_preview)
    message_at = from_epoch_ms(message_timestamp)
    title = ticket_title(customer_name)

    return upsert_entity(
        store,
        TICKETS_TABLE,
        {"client_scope_id": client_scope_id, "chat_id": chat_id},
        {
            "customer_id": customer_id,
            "instance_id": instance_id,
            "status": "open",
            "title": title,
            "last_message_preview": preview,
            "last_message_at": message_at,
        },
        merge=_freshness_merge(preview, message_at, title, customer_id),
        controller=controller,
    )
