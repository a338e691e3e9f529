"""Payload builders shared by the test modules (plain functions, not fixtures)."""

from __future__ import annotations

from typing import Any

INSTANCE_ID = "acme-01"
CLIENT_SCOPE_ID = "scope-acme"
PHONE = "5511999999999"
REMOTE_JID = f"{PHONE}@s.whatsapp.net"


def evolution_message(
    message_id: str = "MSG1",
    text: str | None = "Oi",
    push_name: str | None = "Maria",
    remote_jid: str = REMOTE_JID,
    from_me: bool = False,
    timestamp: Any = 1714560000,
    message: dict[str, Any] | None = None,
    instance: str = INSTANCE_ID,
) -> dict[str, Any]:
    """Evolution messages.upsert envelope with one keyed record."""
    data: dict[str, Any] = {
        "key": {"id": message_id, "remoteJid": remote_jid, "fromMe": from_me},
        "message": message if message is not None else {"conversation": text},
        "messageTimestamp": timestamp,
    }
    if push_name is not None:
        data["pushName"] = push_name
    return {
        "event": "messages.upsert",
        "instance": instance,
        "data": data,
        "date_time": "2024-05-01T12:00:00.000Z",
    }


def image_message(
    url: str = "https://mmg.example/enc/abc",
    media_key: Any = "bWVkaWEta2V5",
    caption: str | None = None,
    inline_base64: str | None = None,
) -> dict[str, Any]:
    image: dict[str, Any] = {
        "url": url,
        "mediaKey": media_key,
        "directPath": "/v/t62/abc",
        "mimetype": "image/jpeg",
        "fileLength": "2048",
    }
    if caption is not None:
        image["caption"] = caption
    message: dict[str, Any] = {"imageMessage": image}
    if inline_base64 is not None:
        message["base64"] = inline_base64
    return message


def codechat_message(
    message_id: str = "MSG1",
    text: str = "Oi",
    push_name: str | None = "Maria",
    remote_jid: str = REMOTE_JID,
    instance_name: str = INSTANCE_ID,
) -> dict[str, Any]:
    """CodeChat messagesUpsert envelope with one flat record."""
    return {
        "event": "messagesUpsert",
        "instance": {"name": instance_name, "instanceId": 7},
        "data": {
            "keyId": message_id,
            "keyRemoteJid": remote_jid,
            "keyFromMe": False,
            "pushName": push_name,
            "messageType": "conversation",
            "content": {"text": text},
            "messageTimestamp": 1714560000,
        },
    }


def flat_message(
    message_id: str = "MSG1",
    text: str = "Oi",
    push_name: str | None = "Maria",
    instance_id: Any = INSTANCE_ID,
) -> dict[str, Any]:
    """Legacy flat payload without an event envelope."""
    return {
        "keyId": message_id,
        "keyRemoteJid": REMOTE_JID,
        "keyFromMe": False,
        "pushName": push_name,
        "messageType": "conversation",
        "content": {"text": text},
        "messageTimestamp": 1714560000,
        "instanceId": instance_id,
    }
