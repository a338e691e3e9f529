"""Builders from single provider records to canonical events.

Dialect adapters locate the record inside their envelope and delegate
here, so extraction rules are identical across dialects.

Two message record shapes exist:
- keyed:  {"key": {"id", "remoteJid", "fromMe", "participant"},
           "pushName", "message": {...}, "messageTimestamp"}
- flat:   {"keyId", "keyRemoteJid", "keyFromMe", "keyParticipant",
           "pushName", "messageType", "content": {...} | "text",
           "messageTimestamp"}
"""

from __future__ import annotations

from typing import Any

from chatdesk.errors import NormalizationError

from . import content as c
from .jid import canonical_chat_id, is_broadcast_jid, is_group_jid
from .models import (
    ChatUpdated,
    ConnectionChanged,
    ContactUpdated,
    MessageReceived,
    QrUpdated,
    Skipped,
)

_OPEN_STATES = {"open", "connected", "online"}
_CONNECTING_STATES = {"connecting", "qr", "qrcode", "pairing", "refused"}


def _str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


def _require_jid(value: Any) -> str:
    remote_jid = _str(value)
    if not remote_jid:
        raise NormalizationError("missing remoteJid")
    return remote_jid


def connection_state(raw_state: str | None) -> str:
    """Collapse provider connection states to open / connecting / close."""
    state = (raw_state or "").strip().lower()
    if state in _OPEN_STATES:
        return "open"
    if state in _CONNECTING_STATES:
        return "connecting"
    return "close"


def _message_event(
    *,
    instance_id: str,
    message_id: Any,
    remote_jid: Any,
    from_me: Any,
    participant: Any,
    push_name: Any,
    message: dict[str, Any],
    declared_type: str | None,
    timestamp: Any,
    inline_base64: str | None,
    received_ms: int,
    dialect: str,
) -> MessageReceived | Skipped:
    provider_message_id = _str(message_id)
    if not provider_message_id:
        raise NormalizationError("missing message id")
    jid = _require_jid(remote_jid)

    if is_broadcast_jid(jid):
        return Skipped("broadcast chat", "messages.upsert")

    message = c.unwrap_message(message)
    if c.is_noise(message):
        return Skipped("protocol message", "messages.upsert")

    return MessageReceived(
        instance_id=instance_id,
        timestamp=c.parse_timestamp(timestamp, received_ms),
        provider_message_id=provider_message_id,
        chat_id=canonical_chat_id(jid),
        remote_jid=jid,
        from_me=_bool(from_me),
        body=c.extract_body(message),
        message_type=c.message_type(message, declared_type),
        is_group=is_group_jid(jid),
        sender_display_name=_str(push_name),
        participant=_str(participant),
        media_ref=c.extract_media_ref(message, inline_base64=inline_base64),
        dialect=dialect,
    )


def message_from_keyed(
    instance_id: str,
    record: dict[str, Any],
    received_ms: int,
    dialect: str,
) -> MessageReceived | Skipped:
    """Build a MessageReceived from a keyed record (Evolution / Baileys)."""
    key = record.get("key")
    if not isinstance(key, dict):
        raise NormalizationError("missing message key")
    message = record.get("message")
    if not isinstance(message, dict):
        message = {}

    return _message_event(
        instance_id=instance_id,
        message_id=key.get("id"),
        remote_jid=key.get("remoteJid"),
        from_me=key.get("fromMe"),
        participant=key.get("participant") or record.get("participant"),
        push_name=record.get("pushName") or record.get("verifiedBizName"),
        message=message,
        declared_type=record.get("messageType"),
        timestamp=record.get("messageTimestamp"),
        inline_base64=message.get("base64") or record.get("base64"),
        received_ms=received_ms,
        dialect=dialect,
    )


def _flat_message(record: dict[str, Any]) -> dict[str, Any]:
    """Rebuild a keyed-style `message` object from a flat record's content."""
    body = record.get("content")
    declared = record.get("messageType") or ""

    if isinstance(body, str):
        return {"conversation": body}
    if not isinstance(body, dict):
        return {}

    known = set(c.MEDIA_KINDS) | set(c.OTHER_KINDS) | {"conversation", "extendedTextMessage"}
    if known.intersection(body):
        return body
    if declared in c.MEDIA_KINDS or declared in c.OTHER_KINDS:
        return {declared: body}
    if declared in c.MEDIA_KINDS.values():
        return {f"{declared}Message": body}

    text = body.get("text") or body.get("conversation") or body.get("caption")
    if isinstance(text, str):
        return {"conversation": text}
    return body


def message_from_flat(
    instance_id: str,
    record: dict[str, Any],
    received_ms: int,
    dialect: str,
) -> MessageReceived | Skipped:
    """Build a MessageReceived from a flat record (CodeChat / legacy)."""
    message = _flat_message(record)
    body = record.get("content")
    inline = body.get("base64") if isinstance(body, dict) else None

    return _message_event(
        instance_id=instance_id,
        message_id=record.get("keyId"),
        remote_jid=record.get("keyRemoteJid"),
        from_me=record.get("keyFromMe"),
        participant=record.get("keyParticipant"),
        push_name=record.get("pushName"),
        message=message,
        declared_type=record.get("messageType"),
        timestamp=record.get("messageTimestamp"),
        inline_base64=inline or record.get("base64"),
        received_ms=received_ms,
        dialect=dialect,
    )


def qr_from_record(instance_id: str, record: dict[str, Any], timestamp: int) -> QrUpdated:
    """QR payloads carry either {"qrcode": {...}} or the fields at top level."""
    qr = record.get("qrcode") if isinstance(record.get("qrcode"), dict) else record
    code = _str(qr.get("base64")) or _str(qr.get("code"))
    if not code:
        raise NormalizationError("missing qr code")
    return QrUpdated(
        instance_id=instance_id,
        timestamp=timestamp,
        qr_code=code,
        pairing_code=_str(qr.get("pairingCode")),
    )


def connection_from_record(
    instance_id: str, record: dict[str, Any], timestamp: int
) -> ConnectionChanged:
    raw_state = _str(record.get("state")) or _str(record.get("status")) or _str(
        record.get("connection")
    )
    if raw_state is None:
        raise NormalizationError("missing connection state")
    return ConnectionChanged(
        instance_id=instance_id,
        timestamp=timestamp,
        state=connection_state(raw_state),  # type: ignore[arg-type]
        raw_state=raw_state,
        profile_name=_str(record.get("profileName")),
        profile_pic_url=_str(record.get("profilePictureUrl")),
        owner_jid=_str(record.get("wuid")) or _str(record.get("ownerJid")),
    )


def _record_jid(record: dict[str, Any]) -> str:
    return _require_jid(record.get("remoteJid") or record.get("id") or record.get("jid"))


def chat_from_record(
    instance_id: str, record: dict[str, Any], timestamp: int
) -> ChatUpdated | Skipped:
    jid = _record_jid(record)
    if is_broadcast_jid(jid):
        return Skipped("broadcast chat", "chats.upsert")
    unread = record.get("unreadMessages", record.get("unreadCount", 0))
    try:
        unread_count = max(0, int(unread or 0))
    except (TypeError, ValueError):
        unread_count = 0
    return ChatUpdated(
        instance_id=instance_id,
        timestamp=timestamp,
        chat_id=canonical_chat_id(jid),
        remote_jid=jid,
        name=_str(record.get("name")) or _str(record.get("pushName")),
        is_group=is_group_jid(jid),
        unread_count=unread_count,
    )


def contact_from_record(
    instance_id: str, record: dict[str, Any], timestamp: int
) -> ContactUpdated | Skipped:
    jid = _record_jid(record)
    if is_broadcast_jid(jid):
        return Skipped("broadcast chat", "contacts.upsert")
    return ContactUpdated(
        instance_id=instance_id,
        timestamp=timestamp,
        chat_id=canonical_chat_id(jid),
        remote_jid=jid,
        name=_str(record.get("pushName")) or _str(record.get("name")),
        profile_pic_url=_str(record.get("profilePictureUrl"))
        or _str(record.get("profilePicUrl")),
        is_group=is_group_jid(jid),
    )
