"""Instance, chat and contact event handlers.

An instance row maps a provider instance to its client scope and keeps the
latest QR / connection state reported by the provider. This module only
records those events; it never drives the provider session.
"""

from __future__ import annotations

import os
from datetime import timedelta
from typing import Any

from chatdesk.errors import UnknownInstanceError
from chatdesk.infra.store import DurableStore
from chatdesk.infra.time import from_epoch_ms, utc_now
from chatdesk.observability.logging import get_logger
from chatdesk.observability.redaction import safe_log_context
from chatdesk.whatsapp.jid import phone_from_chat_id
from chatdesk.whatsapp.models import ChatUpdated, ConnectionChanged, ContactUpdated, QrUpdated

from .customers import apply_contact_name
from .names import DEFAULT_NAME_POLICY, NamePolicy

logger = get_logger(__name__)

INSTANCES_TABLE = "instances"
CHATS_TABLE = "chats"

QR_TTL = timedelta(seconds=60)


def register_instance(store: DurableStore, instance_id: str, client_scope_id: str) -> dict[str, Any]:
    """Create (or re-scope) the instance row. Used by provisioning."""
    result = store.upsert(
        INSTANCES_TABLE,
        {"instance_id": instance_id},
        {"client_scope_id": client_scope_id, "state": "close"},
        ("instance_id",),
        merge=lambda existing, fields: (
            {"client_scope_id": client_scope_id}
            if existing.get("client_scope_id") != client_scope_id
            else {}
        ),
    )
    return result.row or {}


def resolve_client_scope(store: DurableStore, instance_id: str) -> str:
    """Client scope owning an instance.

    Falls back to DEFAULT_CLIENT_SCOPE_ID (if set) for unregistered instances.

    Raises:
        UnknownInstanceError: Instance not registered and no fallback scope.
    """
    row = store.get(INSTANCES_TABLE, {"instance_id": instance_id})
    if row and row.get("client_scope_id"):
        return row["client_scope_id"]

    fallback = os.environ.get("DEFAULT_CLIENT_SCOPE_ID")
    if fallback:
        return fallback
    raise UnknownInstanceError(f"instance not registered: {instance_id}")


def _update_instance(store: DurableStore, instance_id: str, fields: dict[str, Any]) -> None:
    updated = store.update(INSTANCES_TABLE, {"instance_id": instance_id}, fields)
    if updated == 0:
        raise UnknownInstanceError(f"instance not registered: {instance_id}")


def handle_qr_updated(store: DurableStore, event: QrUpdated) -> None:
    """Store the latest QR code; it expires 60 s after it was observed."""
    _update_instance(
        store,
        event.instance_id,
        {
            "state": "connecting",
            "qr_code": event.qr_code,
            "has_qr_code": True,
            "qr_expires_at": utc_now() + QR_TTL,
            "last_event_at": from_epoch_ms(event.timestamp),
        },
    )


def handle_connection_changed(store: DurableStore, event: ConnectionChanged) -> None:
    fields: dict[str, Any] = {
        "state": event.state,
        "last_event_at": from_epoch_ms(event.timestamp),
    }
    if event.state == "open":
        fields.update(
            {
                "qr_code": None,
                "has_qr_code": False,
                "qr_expires_at": None,
            }
        )
        if event.profile_name:
            fields["profile_name"] = event.profile_name
        if event.profile_pic_url:
            fields["profile_pic_url"] = event.profile_pic_url
        if event.owner_jid:
            fields["owner_jid"] = event.owner_jid
    _update_instance(store, event.instance_id, fields)
    logger.info(
        "instance connection state changed",
        extra={"extra_fields": safe_log_context(state=event.state, raw_state=event.raw_state)},
    )


def _upsert_chat(store: DurableStore, instance_id: str, chat_id: str, fields: dict[str, Any]) -> dict[str, Any]:
    def merge(existing: dict[str, Any], new: dict[str, Any]) -> dict[str, Any]:
        # Absent values never erase what is already known
        return {k: v for k, v in new.items() if v is not None and existing.get(k) != v}

    result = store.upsert(
        CHATS_TABLE,
        {"instance_id": instance_id, "chat_id": chat_id},
        fields,
        ("instance_id", "chat_id"),
        merge=merge,
    )
    return result.row or {}


def handle_chat_updated(store: DurableStore, event: ChatUpdated) -> dict[str, Any]:
    return _upsert_chat(
        store,
        event.instance_id,
        event.chat_id,
        {
            "remote_jid": event.remote_jid,
            "name": event.name,
            "is_group": event.is_group,
            "unread_count": event.unread_count,
        },
    )


def handle_contact_updated(
    store: DurableStore,
    event: ContactUpdated,
    *,
    policy: NamePolicy = DEFAULT_NAME_POLICY,
) -> bool:
    """Record contact details and upgrade the customer's name if it improves.

    Returns True if a customer name changed.
    """
    if event.is_group:
        return False
    _upsert_chat(
        store,
        event.instance_id,
        event.chat_id,
        {
            "remote_jid": event.remote_jid,
            "name": event.name,
            "is_group": False,
            "profile_pic_url": event.profile_pic_url,
        },
    )
    client_scope_id = resolve_client_scope(store, event.instance_id)
    return apply_contact_name(
        store,
        client_scope_id,
        phone_from_chat_id(event.chat_id),
        event.name,
        policy=policy,
    )
