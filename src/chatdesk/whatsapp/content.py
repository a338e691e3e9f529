"""Message content extraction shared by all payload dialects.

Works on the Baileys-style `message` object:
    {"conversation": "..."} | {"extendedTextMessage": {"text": "..."}} |
    {"imageMessage": {"url", "mediaKey", "directPath", "mimetype", "caption"}} | ...
"""

from __future__ import annotations

import base64
import math
import re
from datetime import datetime, timezone
from typing import Any

from chatdesk.errors import NormalizationError

from .models import MediaRef

# Containers whose inner `message` holds the real content
WRAPPER_KEYS = (
    "ephemeralMessage",
    "viewOnceMessage",
    "viewOnceMessageV2",
    "viewOnceMessageV2Extension",
    "documentWithCaptionMessage",
    "editedMessage",
)

MEDIA_KINDS: dict[str, str] = {
    "imageMessage": "image",
    "videoMessage": "video",
    "audioMessage": "audio",
    "documentMessage": "document",
    "stickerMessage": "sticker",
}

OTHER_KINDS: dict[str, str] = {
    "locationMessage": "location",
    "liveLocationMessage": "location",
    "contactMessage": "contact",
    "contactsArrayMessage": "contact",
}

MARKERS: dict[str, str] = {
    "image": "[Image]",
    "video": "[Video]",
    "audio": "[Audio]",
    "document": "[Document]",
    "sticker": "[Sticker]",
    "location": "[Location]",
    "contact": "[Contact]",
}

FALLBACK_MARKER = "[Message]"

# Message keys that carry no conversational content
NOISE_KEYS = (
    "protocolMessage",
    "reactionMessage",
    "senderKeyDistributionMessage",
    "messageContextInfo",
    "pollUpdateMessage",
)

# Flat-dialect messageType aliases
_TYPE_ALIASES: dict[str, str] = {
    "conversation": "text",
    "extendedTextMessage": "text",
    "text": "text",
    **MEDIA_KINDS,
    **{v: v for v in MEDIA_KINDS.values()},
    **OTHER_KINDS,
}

_EPOCH_SECONDS_LIMIT = 10**11
_DIGITS = re.compile(r"^-?\d+(\.\d+)?$")


def unwrap_message(message: dict[str, Any] | None) -> dict[str, Any]:
    """Peel wrapper containers (ephemeral, view-once, ...) off a message."""
    current = message or {}
    for _ in range(4):
        for wrapper in WRAPPER_KEYS:
            inner = current.get(wrapper)
            if isinstance(inner, dict) and isinstance(inner.get("message"), dict):
                current = inner["message"]
                break
        else:
            return current
    return current


def is_noise(message: dict[str, Any]) -> bool:
    """True if the message only carries protocol/reaction payloads."""
    keys = [k for k in message if k != "base64"]
    return bool(keys) and all(k in NOISE_KEYS for k in keys)


def message_type(message: dict[str, Any], declared: str | None = None) -> str:
    """Canonical message type: text, image, video, audio, document, sticker, ..."""
    if message.get("conversation") or "extendedTextMessage" in message:
        return "text"
    for key, kind in MEDIA_KINDS.items():
        if key in message:
            return kind
    for key, kind in OTHER_KINDS.items():
        if key in message:
            return kind
    if declared:
        return _TYPE_ALIASES.get(declared, "text")
    return "text"


def extract_body(message: dict[str, Any]) -> str:
    """Message body by precedence: text -> media caption -> media marker.

    First non-empty candidate wins.
    """
    text = message.get("conversation")
    if isinstance(text, str) and text.strip():
        return text

    extended = message.get("extendedTextMessage")
    if isinstance(extended, dict):
        text = extended.get("text")
        if isinstance(text, str) and text.strip():
            return text

    for key in ("imageMessage", "videoMessage", "documentMessage"):
        media = message.get(key)
        if isinstance(media, dict):
            caption = media.get("caption")
            if isinstance(caption, str) and caption.strip():
                return caption

    kind = message_type(message)
    return MARKERS.get(kind, FALLBACK_MARKER)


def media_key_to_base64(value: Any) -> str | None:
    """Normalize a mediaKey to a base64 string.

    Providers send it as a base64 string, a list of byte values, or a
    JSON-serialized Uint8Array ({"0": 12, "1": 250, ...}).
    """
    if value is None or value == "":
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, dict) and value and all(k.isdigit() for k in value):
        value = [value[k] for k in sorted(value, key=int)]
    if isinstance(value, list):
        try:
            return base64.b64encode(bytes(value)).decode("ascii")
        except (TypeError, ValueError) as exc:
            raise NormalizationError("mediaKey byte out of range") from exc
    raise NormalizationError("unsupported mediaKey encoding")


def _as_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        if isinstance(value, dict) and "low" in value:
            return int(value.get("low") or 0) + (int(value.get("high") or 0) << 32)
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return None


def extract_media_ref(
    message: dict[str, Any],
    inline_base64: str | None = None,
) -> MediaRef | None:
    """MediaRef for image/video/audio/document/sticker messages, else None."""
    for key, content_type in MEDIA_KINDS.items():
        media = message.get(key)
        if not isinstance(media, dict):
            continue
        return MediaRef(
            content_type=content_type,
            mime_type=media.get("mimetype") or "application/octet-stream",
            url=media.get("url") or None,
            media_key=media_key_to_base64(media.get("mediaKey")),
            direct_path=media.get("directPath") or None,
            inline_base64=inline_base64 or media.get("base64") or None,
            file_name=media.get("fileName") or None,
            file_length=_as_int(media.get("fileLength")),
            seconds=_as_int(media.get("seconds")),
        )
    return None


def parse_timestamp(value: Any, default_ms: int) -> int:
    """Normalize a provider timestamp to milliseconds since epoch.

    Accepts epoch seconds or millis (numbers below 10^11 are seconds),
    numeric strings, ISO-8601 strings and protobuf longs ({"low", "high"}).
    Missing values fall back to `default_ms`.

    Raises:
        NormalizationError: If the value is present but unparseable.
    """
    if value is None or value == "":
        return default_ms

    if isinstance(value, dict):
        number = _as_int(value)
        if number is None:
            raise NormalizationError("invalid timestamp")
        value = number

    if isinstance(value, str):
        stripped = value.strip()
        if _DIGITS.match(stripped):
            value = float(stripped)
        else:
            try:
                parsed = datetime.fromisoformat(stripped.replace("Z", "+00:00"))
            except ValueError as exc:
                raise NormalizationError("invalid timestamp") from exc
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return int(parsed.timestamp() * 1000)

    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise NormalizationError("invalid timestamp")
    if not math.isfinite(value):
        raise NormalizationError("non-finite timestamp")

    if value < _EPOCH_SECONDS_LIMIT:
        return int(value * 1000)
    return int(value)


# Canonical (dotted, lowercase) event name -> event family
EVENT_KINDS: dict[str, str] = {
    "messages.upsert": "message",
    "message.upsert": "message",
    "messages.set": "message",
    "send.message": "message",
    "qrcode.updated": "qr",
    "qr.updated": "qr",
    "qr.code.updated": "qr",
    "connection.update": "connection",
    "connection.updated": "connection",
    "status.instance": "connection",
    "chats.upsert": "chat",
    "chats.update": "chat",
    "chats.set": "chat",
    "contacts.upsert": "contact",
    "contacts.update": "contact",
    "contacts.set": "contact",
}

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def canonical_event_name(name: str) -> str:
    """Map provider event names to dotted lowercase.

    "messages.upsert", "MESSAGES_UPSERT", "messagesUpsert" and
    "qr-updated" all become "messages.upsert" / "qr.updated".
    """
    name = name.strip()
    if "." in name:
        return name.lower()
    if "_" in name or "-" in name:
        return re.sub(r"[_\-]+", ".", name).lower()
    return _CAMEL_BOUNDARY.sub(".", name).lower()


def event_family(name: str | None) -> str | None:
    """Event family (message, qr, connection, chat, contact) or None if unknown."""
    if not name or not isinstance(name, str):
        return None
    return EVENT_KINDS.get(canonical_event_name(name))
